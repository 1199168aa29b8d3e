"""
Completion reconciler.

Applies canonical provider events to jobs. Every transition goes through
the job store compare-and-set, so duplicate or out-of-order deliveries
resolve to exactly one effective outcome: the first terminal event for an
in-flight job wins and later ones are reported as stale.
"""

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession

from calldispatch.billing.usage import UsageLedgerFactory
from calldispatch.dispatch.errors import StaleEvent, UnknownCorrelationId
from calldispatch.dispatch.retry import RetryDecision, RetryManager
from calldispatch.jobs.models import AssignmentOutcome, CallHistory, CallJob, JobStatus
from calldispatch.jobs.store import JobStore
from calldispatch.providers.availability import AvailabilityTracker
from calldispatch.providers.interface import CallOutcome, CanonicalEvent
from calldispatch.shared.clock import Clock, default_clock
from calldispatch.shared.logging import get_logger

logger = get_logger(__name__)


class ReconcileStatus(str, Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"
    STALE = "stale"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ReconcileResult:
    """How an inbound event was applied."""

    status: ReconcileStatus
    job_id: int | None = None
    job_status: JobStatus | None = None
    detail: str | None = None


class CompletionReconciler:
    """Turns provider events into job transitions."""

    def __init__(
        self,
        tracker: AvailabilityTracker,
        retry_manager: RetryManager,
        usage_factory: UsageLedgerFactory,
        clock: Clock | None = None,
    ) -> None:
        self._tracker = tracker
        self._retry_manager = retry_manager
        self._usage_factory = usage_factory
        self._clock = clock or default_clock()

    async def handle_event(self, session: AsyncSession, event: CanonicalEvent) -> ReconcileResult:
        """Apply one event inside the caller's transaction.

        Args:
            session: Session whose transaction the changes join; caller commits.
            event: Normalized provider event.

        Returns:
            PROCESSED when the job changed state, IGNORED for progress
            events, STALE when the job already left ``in_flight``, UNKNOWN
            when no job matches the event.
        """
        store = JobStore(session, self._clock)
        try:
            job = await self._resolve(store, event)
            if not event.outcome.is_terminal:
                logger.debug(
                    "Progress event",
                    extra={"job_id": job.id, "outcome": event.outcome.value},
                )
                return ReconcileResult(ReconcileStatus.IGNORED, job.id, job.status, event.outcome.value)
            if job.status != JobStatus.IN_FLIGHT:
                raise StaleEvent(job.id, job.status.value)
            # call_id survives retries; the external id tells attempts apart.
            if (
                event.external_call_id
                and job.external_call_id
                and event.external_call_id != job.external_call_id
            ):
                raise StaleEvent(job.id, f"on call {job.external_call_id}, not {event.external_call_id}")

            if event.outcome == CallOutcome.COMPLETED:
                applied = await self._complete(session, store, job, event)
            elif event.outcome == CallOutcome.CANCELED:
                applied = await self._cancel(session, store, job, event)
            else:
                applied = await self._fail(session, job, event)
            if not applied:
                raise StaleEvent(job.id, "no longer in_flight")
        except UnknownCorrelationId as exc:
            logger.warning(
                "Event for unknown job",
                extra={
                    "call_id": exc.correlation_id,
                    "external_call_id": exc.external_call_id,
                    "outcome": event.outcome.value,
                },
            )
            return ReconcileResult(ReconcileStatus.UNKNOWN, detail=str(exc))
        except StaleEvent as exc:
            logger.info(
                "Stale event ignored",
                extra={"job_id": exc.job_id, "status": exc.status, "outcome": event.outcome.value},
            )
            current = await store.get(exc.job_id)
            return ReconcileResult(
                ReconcileStatus.STALE,
                exc.job_id,
                current.status if current is not None else None,
                str(exc),
            )

        current = await store.get(job.id)
        return ReconcileResult(
            ReconcileStatus.PROCESSED,
            job.id,
            current.status if current is not None else None,
            event.outcome.value,
        )

    async def _resolve(self, store: JobStore, event: CanonicalEvent) -> CallJob:
        job = None
        if event.job_correlation_id:
            job = await store.get_by_call_id(event.job_correlation_id)
        if job is None and event.external_call_id:
            job = await store.get_by_external_call_id(event.external_call_id)
        if job is None:
            raise UnknownCorrelationId(event.job_correlation_id, event.external_call_id)
        return job

    async def _complete(
        self,
        session: AsyncSession,
        store: JobStore,
        job: CallJob,
        event: CanonicalEvent,
    ) -> bool:
        now = self._clock.now()
        provider_id = job.provider_id
        external_call_id = job.external_call_id or event.external_call_id
        won = await store.transition(
            job.id,
            [JobStatus.IN_FLIGHT],
            JobStatus.COMPLETED,
            completed_at=now,
            external_call_id=external_call_id,
            last_error=None,
        )
        if not won:
            return False

        if provider_id is not None:
            await self._tracker.release_slot(session, provider_id)
        await store.close_assignment(job.id, AssignmentOutcome.COMPLETED, event.raw_payload)

        started_at = None
        if event.duration_seconds is not None:
            started_at = event.received_at - timedelta(seconds=event.duration_seconds)
        await store.add_history(
            CallHistory(
                job_id=job.id,
                owner_id=job.owner_id,
                provider_id=provider_id,
                external_call_id=external_call_id,
                attempt_number=job.attempt_count,
                status=JobStatus.COMPLETED,
                duration_seconds=event.duration_seconds,
                recording_url=event.recording_url,
                transcript=event.transcript,
                call_started_at=started_at,
                call_ended_at=event.received_at,
                created_at=now,
            )
        )
        await self._usage_factory(session).record_completed_call(job.owner_id, event.duration_seconds)
        logger.info(
            "Call completed",
            extra={
                "job_id": job.id,
                "provider_id": provider_id,
                "external_call_id": external_call_id,
                "duration_seconds": event.duration_seconds,
            },
        )
        return True

    async def _cancel(
        self,
        session: AsyncSession,
        store: JobStore,
        job: CallJob,
        event: CanonicalEvent,
    ) -> bool:
        now = self._clock.now()
        provider_id = job.provider_id
        error = event.error_message or "Call canceled by provider"
        won = await store.transition(
            job.id,
            [JobStatus.IN_FLIGHT],
            JobStatus.CANCELED,
            completed_at=now,
            last_error=error,
        )
        if not won:
            return False

        if provider_id is not None:
            await self._tracker.release_slot(session, provider_id)
        await store.close_assignment(job.id, AssignmentOutcome.FAILED, event.raw_payload)
        await store.add_history(
            CallHistory(
                job_id=job.id,
                owner_id=job.owner_id,
                provider_id=provider_id,
                external_call_id=job.external_call_id or event.external_call_id,
                attempt_number=job.attempt_count,
                status=JobStatus.CANCELED,
                duration_seconds=event.duration_seconds,
                error=error,
                call_ended_at=event.received_at,
                created_at=now,
            )
        )
        logger.info("Call canceled by provider", extra={"job_id": job.id, "provider_id": provider_id})
        return True

    async def _fail(self, session: AsyncSession, job: CallJob, event: CanonicalEvent) -> bool:
        error = event.error_message or f"Call ended with outcome {event.outcome.value}"
        decision = await self._retry_manager.handle_failure(
            session,
            job.id,
            error,
            retryable=True,
            provider_response=event.raw_payload or None,
        )
        return decision != RetryDecision.SKIPPED
