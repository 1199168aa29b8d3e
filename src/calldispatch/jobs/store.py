"""
Persistence gateway for call jobs.

``JobStore.transition`` is the only way job status changes. It is a
compare-and-set: a single ``UPDATE ... WHERE id = :id AND status IN (...)``
whose row count tells the caller whether it won. Everything that races
(dispatcher instances, webhook deliveries, the stall sweep) relies on it.
"""

from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from calldispatch.jobs.models import (
    AssignmentOutcome,
    CallAssignment,
    CallHistory,
    CallJob,
    CallRetry,
    JobStatus,
    is_legal_transition,
)
from calldispatch.shared.clock import Clock, default_clock
from calldispatch.shared.logging import get_logger

logger = get_logger(__name__)


class JobStore:
    """Job store backed by an async SQLAlchemy session."""

    def __init__(self, session: AsyncSession, clock: Clock | None = None) -> None:
        """Initialize store with database session.

        Args:
            session: Async database session.
            clock: Time source; defaults to the system clock.
        """
        self._session = session
        self._clock = clock or default_clock()

    async def enqueue(self, job: CallJob) -> int:
        """Persist a new pending job and return its id."""
        now = self._clock.now()
        job.status = JobStatus.PENDING
        job.attempt_count = 0
        job.created_at = now
        job.updated_at = now
        self._session.add(job)
        await self._session.flush()
        logger.info(
            "Job enqueued",
            extra={
                "job_id": job.id,
                "call_id": job.call_id,
                "priority": job.priority,
                "scheduled_at": job.scheduled_at,
            },
        )
        return job.id

    async def get(self, job_id: int) -> CallJob | None:
        stmt = (
            select(CallJob)
            .where(CallJob.id == job_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_call_id(self, call_id: str) -> CallJob | None:
        stmt = (
            select(CallJob)
            .where(CallJob.call_id == call_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_external_call_id(self, external_call_id: str) -> CallJob | None:
        stmt = (
            select(CallJob)
            .where(CallJob.external_call_id == external_call_id)
            .order_by(CallJob.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def peek_next_eligible(
        self,
        now: datetime | None = None,
        exclude_ids: Iterable[int] = (),
    ) -> CallJob | None:
        """Return the most urgent dispatchable job without claiming it.

        Eligible means pending, scheduled time (if any) reached and retry
        backoff (if any) elapsed. Ordered by priority, then creation time,
        then insertion order.
        """
        now = now or self._clock.now()
        stmt = (
            select(CallJob)
            .outerjoin(CallRetry, CallRetry.job_id == CallJob.id)
            .where(
                CallJob.status == JobStatus.PENDING,
                or_(CallJob.scheduled_at.is_(None), CallJob.scheduled_at <= now),
                or_(CallRetry.next_retry_at.is_(None), CallRetry.next_retry_at <= now),
            )
            .order_by(CallJob.priority.asc(), CallJob.created_at.asc(), CallJob.id.asc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        excluded = list(exclude_ids)
        if excluded:
            stmt = stmt.where(CallJob.id.not_in(excluded))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def transition(
        self,
        job_id: int,
        from_statuses: Iterable[JobStatus],
        to_status: JobStatus,
        **fields: Any,
    ) -> bool:
        """Compare-and-set the status of a job.

        Args:
            job_id: Job to transition.
            from_statuses: Statuses the job is expected to be in.
            to_status: Target status.
            **fields: Extra column values written in the same UPDATE.

        Returns:
            True if exactly this call moved the job, False otherwise
            (including when no requested pair is a legal transition).
        """
        legal = [s for s in from_statuses if is_legal_transition(s, to_status)]
        if not legal:
            logger.warning(
                "Illegal job transition requested",
                extra={"job_id": job_id, "to_status": to_status.value},
            )
            return False

        stmt = (
            update(CallJob)
            .where(CallJob.id == job_id, CallJob.status.in_(legal))
            .values(status=to_status, updated_at=self._clock.now(), **fields)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        moved = result.rowcount == 1
        logger.debug(
            "Job transition",
            extra={
                "job_id": job_id,
                "from_statuses": [s.value for s in legal],
                "to_status": to_status.value,
                "applied": moved,
            },
        )
        return moved

    async def annotate(self, job_id: int, expected_status: JobStatus, **fields: Any) -> bool:
        """Write fields on a job only while it is still in ``expected_status``."""
        stmt = (
            update(CallJob)
            .where(CallJob.id == job_id, CallJob.status == expected_status)
            .values(updated_at=self._clock.now(), **fields)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def count_in_flight(self) -> int:
        stmt = select(func.count()).select_from(CallJob).where(CallJob.status == JobStatus.IN_FLIGHT)
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def list_stalled(self, cutoff: datetime, limit: int = 100) -> Sequence[CallJob]:
        """In-flight jobs assigned before ``cutoff`` (no terminal event since)."""
        stmt = (
            select(CallJob)
            .where(
                CallJob.status == JobStatus.IN_FLIGHT,
                or_(CallJob.last_assigned_at.is_(None), CallJob.last_assigned_at < cutoff),
            )
            .order_by(CallJob.last_assigned_at.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def promote_due(self, now: datetime | None = None) -> int:
        """Stamp scheduled pending jobs whose time has come.

        Eligibility itself is time-filtered in ``peek_next_eligible``; the
        stamp records when a scheduled job entered the dispatchable pool.
        """
        now = now or self._clock.now()
        stmt = (
            update(CallJob)
            .where(
                CallJob.status == JobStatus.PENDING,
                CallJob.scheduled_at.is_not(None),
                CallJob.scheduled_at <= now,
                CallJob.promoted_at.is_(None),
            )
            .values(promoted_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return int(result.rowcount or 0)

    # Assignment audit trail

    async def record_assignment(
        self,
        job_id: int,
        provider_id: int,
        attempt_number: int,
    ) -> CallAssignment:
        assignment = CallAssignment(
            job_id=job_id,
            provider_id=provider_id,
            attempt_number=attempt_number,
            assigned_at=self._clock.now(),
            outcome=AssignmentOutcome.ASSIGNED,
        )
        self._session.add(assignment)
        await self._session.flush()
        return assignment

    async def close_assignment(
        self,
        job_id: int,
        outcome: AssignmentOutcome,
        provider_response: dict[str, Any] | None = None,
    ) -> int:
        """Close the open assignment of a job. Returns rows closed."""
        values: dict[str, Any] = {"outcome": outcome, "closed_at": self._clock.now()}
        if provider_response is not None:
            values["provider_response"] = provider_response
        stmt = (
            update(CallAssignment)
            .where(
                CallAssignment.job_id == job_id,
                CallAssignment.outcome == AssignmentOutcome.ASSIGNED,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return int(result.rowcount or 0)

    async def attach_provider_response(self, assignment_id: int, response: dict[str, Any]) -> None:
        stmt = (
            update(CallAssignment)
            .where(CallAssignment.id == assignment_id)
            .values(provider_response=response)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def list_assignments(self, job_id: int) -> Sequence[CallAssignment]:
        stmt = (
            select(CallAssignment)
            .where(CallAssignment.job_id == job_id)
            .order_by(CallAssignment.id.asc())
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    # Retry and history records

    async def get_retry_record(self, job_id: int) -> CallRetry | None:
        stmt = (
            select(CallRetry)
            .where(CallRetry.job_id == job_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def add_history(self, entry: CallHistory) -> CallHistory:
        self._session.add(entry)
        await self._session.flush()
        return entry

    async def list_history(self, job_id: int) -> Sequence[CallHistory]:
        stmt = select(CallHistory).where(CallHistory.job_id == job_id)
        result = await self._session.execute(stmt)
        return result.scalars().all()
