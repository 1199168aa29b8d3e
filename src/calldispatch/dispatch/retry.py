"""
Retry handling for failed call attempts.

Every failure path (initiation error, provider-reported failure, stall) ends
in ``RetryManager.handle_failure``. It first claims the job with
``in_flight -> failed_retryable``; only the caller that wins that
compare-and-set releases the provider slot and decides between requeue
(with exponential backoff) and terminal failure.
"""

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession

from calldispatch.jobs.models import AssignmentOutcome, CallHistory, CallRetry, JobStatus
from calldispatch.jobs.store import JobStore
from calldispatch.providers.availability import AvailabilityTracker
from calldispatch.shared.clock import Clock, default_clock
from calldispatch.shared.logging import get_logger

logger = get_logger(__name__)


class RetryDecision(str, Enum):
    """What happened to a job handed to the retry manager."""

    REQUEUED = "requeued"
    EXHAUSTED = "exhausted"
    REJECTED = "rejected"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class RetryPolicy:
    """Retry ceiling and exponential backoff."""

    max_retries: int = 3
    base_delay_seconds: int = 60

    def backoff(self, retry_count: int) -> timedelta:
        """Delay before the retry that follows ``retry_count`` earlier retries."""
        return timedelta(seconds=self.base_delay_seconds * (2**retry_count))

    def allows_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_retries


class RetryManager:
    """Requeues or terminates failed jobs."""

    def __init__(
        self,
        tracker: AvailabilityTracker,
        policy: RetryPolicy | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._tracker = tracker
        self._policy = policy or RetryPolicy()
        self._clock = clock or default_clock()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def handle_failure(
        self,
        session: AsyncSession,
        job_id: int,
        error: str,
        *,
        retryable: bool = True,
        provider_response: dict | None = None,
    ) -> RetryDecision:
        """Route an in-flight job that failed.

        Runs inside the caller's transaction; the caller commits.

        Args:
            session: Session whose transaction the changes join.
            job_id: Failed job.
            error: Human-readable reason, stored as ``last_error``.
            retryable: False for provider rejections, which never retry.
            provider_response: Optional provider payload for the audit trail.

        Returns:
            The decision taken, or SKIPPED if another actor already moved
            the job out of ``in_flight``.
        """
        store = JobStore(session, self._clock)
        job = await store.get(job_id)
        if job is None:
            logger.warning("Failure reported for unknown job", extra={"job_id": job_id})
            return RetryDecision.SKIPPED

        provider_id = job.provider_id
        claimed = await store.transition(
            job_id,
            [JobStatus.IN_FLIGHT],
            JobStatus.FAILED_RETRYABLE,
            last_error=error,
        )
        if not claimed:
            logger.info(
                "Failure handoff lost the race; job already moved",
                extra={"job_id": job_id, "status": job.status.value},
            )
            return RetryDecision.SKIPPED

        now = self._clock.now()
        if provider_id is not None:
            await self._tracker.release_slot(session, provider_id)
        await store.close_assignment(
            job_id,
            AssignmentOutcome.FAILED,
            {"error": error, **(provider_response or {})},
        )

        retry = await store.get_retry_record(job_id)
        if retry is None:
            retry = CallRetry(job_id=job_id, retry_count=0, created_at=now)
            session.add(retry)
        retry.last_error = error
        retry.last_provider_id = provider_id
        retry.updated_at = now

        if retryable and self._policy.allows_retry(retry.retry_count):
            retry.next_retry_at = now + self._policy.backoff(retry.retry_count)
            retry.retry_count += 1
            await session.flush()
            await store.transition(
                job_id,
                [JobStatus.FAILED_RETRYABLE],
                JobStatus.PENDING,
                provider_id=None,
                external_call_id=None,
            )
            logger.info(
                "Job requeued for retry",
                extra={
                    "job_id": job_id,
                    "retry_count": retry.retry_count,
                    "next_retry_at": retry.next_retry_at,
                    "error": error,
                },
            )
            return RetryDecision.REQUEUED

        retry.next_retry_at = None
        await session.flush()
        await store.transition(
            job_id,
            [JobStatus.FAILED_RETRYABLE],
            JobStatus.FAILED,
            completed_at=now,
        )
        await store.add_history(
            CallHistory(
                job_id=job_id,
                owner_id=job.owner_id,
                provider_id=provider_id,
                external_call_id=job.external_call_id,
                attempt_number=job.attempt_count,
                status=JobStatus.FAILED,
                error=error,
                call_ended_at=now,
                created_at=now,
            )
        )
        decision = RetryDecision.EXHAUSTED if retryable else RetryDecision.REJECTED
        logger.warning(
            "Job failed permanently",
            extra={
                "job_id": job_id,
                "decision": decision.value,
                "retry_count": retry.retry_count,
                "error": error,
            },
        )
        return decision
