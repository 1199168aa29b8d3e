"""
Stall detection for jobs whose terminal event never arrived.
"""

from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calldispatch.dispatch.config import DispatchConfig
from calldispatch.dispatch.reconciler import CompletionReconciler, ReconcileStatus
from calldispatch.dispatch.retry import RetryDecision, RetryManager
from calldispatch.jobs.models import CallJob
from calldispatch.jobs.store import JobStore
from calldispatch.providers.factory import AdapterRegistry
from calldispatch.providers.interface import CanonicalEvent
from calldispatch.providers.repository import ProviderRepository
from calldispatch.shared.clock import Clock, default_clock
from calldispatch.shared.logging import correlation_scope, get_logger

logger = get_logger(__name__)


class StallSweeper:
    """Finds in-flight jobs older than the stall timeout and fails them over.

    Before declaring a job stalled the provider is asked for the call's
    current status; a terminal answer is applied as if it had arrived by
    webhook. Anything else, a stale answer included, hands the job to the
    retry manager.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        adapters: AdapterRegistry,
        reconciler: CompletionReconciler,
        retry_manager: RetryManager,
        config: DispatchConfig,
        clock: Clock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._adapters = adapters
        self._reconciler = reconciler
        self._retry_manager = retry_manager
        self._config = config
        self._clock = clock or default_clock()

    async def sweep(self) -> list[int]:
        """Handle one batch of stalled jobs. Returns the ids acted upon."""
        cutoff = self._clock.now() - timedelta(minutes=self._config.stall_timeout_minutes)
        async with self._session_factory() as session:
            stalled = list(
                await JobStore(session, self._clock).list_stalled(
                    cutoff, limit=self._config.stall_sweep_batch_size
                )
            )

        handled: list[int] = []
        for job in stalled:
            with correlation_scope(job.call_id):
                try:
                    if await self._handle(job):
                        handled.append(job.id)
                except Exception:
                    logger.exception("Stall handling failed", extra={"job_id": job.id})

        if stalled:
            logger.info(
                "Stall sweep finished",
                extra={"stalled": len(stalled), "handled": len(handled)},
            )
        return handled

    async def _handle(self, job: CallJob) -> bool:
        event = await self._poll_provider(job)
        async with self._session_factory() as session:
            if event is not None and event.outcome.is_terminal:
                result = await self._reconciler.handle_event(session, event)
                logger.info(
                    "Polled provider status for stalled job",
                    extra={"job_id": job.id, "outcome": event.outcome.value, "result": result.status.value},
                )
                if result.status == ReconcileStatus.PROCESSED:
                    await session.commit()
                    return True

            error = (
                f"Call stalled: no provider event within {self._config.stall_timeout_minutes} minutes"
            )
            decision = await self._retry_manager.handle_failure(session, job.id, error, retryable=True)
            await session.commit()

        logger.warning(
            "Stalled job handed to retry",
            extra={"job_id": job.id, "decision": decision.value},
        )
        return decision != RetryDecision.SKIPPED

    async def _poll_provider(self, job: CallJob) -> CanonicalEvent | None:
        if not job.external_call_id or job.provider_id is None:
            return None
        async with self._session_factory() as session:
            provider = await ProviderRepository(session).get_by_id(job.provider_id)
        if provider is None:
            return None
        try:
            event = await self._adapters.get(provider).fetch_call_status(job.external_call_id)
        except Exception as exc:
            logger.warning(
                "Provider status poll failed",
                extra={"job_id": job.id, "provider_id": provider.id, "error": str(exc)},
            )
            return None
        if event is not None and event.job_correlation_id is None:
            event = event.model_copy(update={"job_correlation_id": job.call_id})
        return event
