"""
Scheduler/dispatcher: pulls eligible jobs and hands them to providers.

One ``run_tick`` call is one cooperative, non-overlapping dispatch round:

1. Budget is the global concurrency limit minus jobs already in flight.
2. Up to ``budget`` jobs are claimed one by one. Each claim selects a
   provider, compare-and-sets ``pending -> in_flight`` and records the
   assignment in one short transaction. The first time no provider has
   capacity, claiming stops for this tick.
3. The claimed batch is initiated concurrently, outside any transaction,
   each call under its own timeout. Failures go straight to the retry
   manager; a failing job never aborts the rest of the batch.
"""

from dataclasses import dataclass, field
from typing import Any

import anyio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calldispatch.dispatch.config import DispatchConfig
from calldispatch.dispatch.retry import RetryDecision, RetryManager
from calldispatch.jobs.models import CallJob, JobStatus
from calldispatch.jobs.store import JobStore
from calldispatch.providers.availability import AvailabilityTracker
from calldispatch.providers.factory import AdapterRegistry
from calldispatch.providers.interface import (
    CallInitiationRequest,
    CallInitiationResult,
    ProviderRejected,
    ProviderUnavailable,
    Recipient,
)
from calldispatch.providers.models import Provider
from calldispatch.shared.clock import Clock, default_clock
from calldispatch.shared.logging import correlation_scope, get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Claim:
    """A job this tick won, ready to be initiated."""

    job_id: int
    call_id: str
    attempt_number: int
    assignment_id: int
    provider: Provider
    recipient: Recipient
    payload: dict[str, Any]


@dataclass
class DispatchTickResult:
    """Summary of one dispatch tick."""

    budget: int = 0
    skipped: bool = False
    capacity_starved: bool = False
    lost_races: int = 0
    initiated: list[int] = field(default_factory=list)
    failed: dict[int, RetryDecision] = field(default_factory=dict)

    @property
    def claimed(self) -> int:
        return len(self.initiated) + len(self.failed)


class Dispatcher:
    """Moves pending jobs to in-flight and starts their calls."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        adapters: AdapterRegistry,
        tracker: AvailabilityTracker,
        retry_manager: RetryManager,
        config: DispatchConfig,
        clock: Clock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._adapters = adapters
        self._tracker = tracker
        self._retry_manager = retry_manager
        self._config = config
        self._clock = clock or default_clock()

    async def run_tick(self) -> DispatchTickResult:
        """Run a single dispatch round.

        Returns:
            What was claimed, initiated and failed in this round.
        """
        result = DispatchTickResult()
        async with self._session_factory() as session:
            in_flight = await JobStore(session, self._clock).count_in_flight()

        result.budget = self._config.global_concurrency_limit - in_flight
        if result.budget <= 0:
            result.skipped = True
            logger.debug(
                "Dispatch tick skipped; global concurrency budget exhausted",
                extra={"in_flight": in_flight},
            )
            return result

        claims = await self._claim_batch(result)
        if claims:
            await self._initiate_batch(claims, result)

        if result.claimed or result.capacity_starved:
            logger.info(
                "Dispatch tick finished",
                extra={
                    "budget": result.budget,
                    "initiated": len(result.initiated),
                    "failed": len(result.failed),
                    "lost_races": result.lost_races,
                    "capacity_starved": result.capacity_starved,
                },
            )
        return result

    async def _claim_batch(self, result: DispatchTickResult) -> list[Claim]:
        claims: list[Claim] = []
        skip: set[int] = set()
        # A lost race does not consume budget but must not spin forever either.
        max_lost = result.budget

        while len(claims) < result.budget and result.lost_races <= max_lost:
            async with self._session_factory() as session:
                store = JobStore(session, self._clock)
                job = await store.peek_next_eligible(exclude_ids=skip)
                if job is None:
                    break

                provider = await self._tracker.select_provider(session, job.pinned_provider_id)
                if provider is None:
                    result.capacity_starved = True
                    logger.info(
                        "No provider capacity; leaving remaining jobs pending",
                        extra={"job_id": job.id, "claimed": len(claims)},
                    )
                    break

                job_id = job.id
                claim = await self._claim(session, store, job, provider)
                if claim is None:
                    # Rollback expires ``job``; only the captured id is safe to read.
                    await session.rollback()
                    skip.add(job_id)
                    result.lost_races += 1
                    continue

                await session.commit()
                claims.append(claim)
        return claims

    async def _claim(
        self,
        session: AsyncSession,
        store: JobStore,
        job: CallJob,
        provider: Provider,
    ) -> Claim | None:
        now = self._clock.now()
        won = await store.transition(
            job.id,
            [JobStatus.PENDING],
            JobStatus.IN_FLIGHT,
            provider_id=provider.id,
            external_call_id=None,
            attempt_count=CallJob.attempt_count + 1,
            last_assigned_at=now,
        )
        if not won:
            logger.info("Job claimed elsewhere", extra={"job_id": job.id})
            return None

        attempt_number = job.attempt_count + 1
        assignment = await store.record_assignment(job.id, provider.id, attempt_number)
        await self._tracker.acquire_slot(session, provider.id)
        logger.info(
            "Job assigned",
            extra={
                "job_id": job.id,
                "call_id": job.call_id,
                "provider_id": provider.id,
                "attempt": attempt_number,
            },
        )
        return Claim(
            job_id=job.id,
            call_id=job.call_id,
            attempt_number=attempt_number,
            assignment_id=assignment.id,
            provider=provider,
            recipient=Recipient(
                phone=job.recipient_phone,
                name=job.recipient_name,
                email=job.recipient_email,
            ),
            payload=dict(job.payload or {}),
        )

    async def _initiate_batch(self, claims: list[Claim], result: DispatchTickResult) -> None:
        limiter = anyio.CapacityLimiter(max(1, min(result.budget, len(claims))))
        async with anyio.create_task_group() as tg:
            for claim in claims:
                tg.start_soon(self._initiate_one, claim, limiter, result)

    async def _initiate_one(
        self,
        claim: Claim,
        limiter: anyio.CapacityLimiter,
        result: DispatchTickResult,
    ) -> None:
        with correlation_scope(claim.call_id):
            request = CallInitiationRequest(
                correlation_id=claim.call_id,
                recipient=claim.recipient,
                callback_url=self._config.callback_url(claim.provider.kind),
                payload=claim.payload,
            )
            async with limiter:
                try:
                    adapter = self._adapters.get(claim.provider)
                    with anyio.fail_after(self._config.initiation_timeout_seconds):
                        outcome = await adapter.initiate_call(request)
                except ProviderRejected as exc:
                    await self._fail(claim, f"Provider rejected call: {exc.message}", False, exc.provider_response, result)
                    return
                except ProviderUnavailable as exc:
                    await self._fail(claim, f"Provider unavailable: {exc.message}", True, exc.provider_response, result)
                    return
                except TimeoutError:
                    timeout = self._config.initiation_timeout_seconds
                    await self._fail(claim, f"Call initiation timed out after {timeout}s", True, None, result)
                    return
                except Exception as exc:
                    logger.exception("Unexpected error initiating call", extra={"job_id": claim.job_id})
                    await self._fail(claim, f"Unexpected initiation error: {exc}", True, None, result)
                    return

            await self._record_initiated(claim, outcome)
            result.initiated.append(claim.job_id)

    async def _record_initiated(self, claim: Claim, outcome: CallInitiationResult) -> None:
        async with self._session_factory() as session:
            store = JobStore(session, self._clock)
            recorded = await store.annotate(
                claim.job_id,
                JobStatus.IN_FLIGHT,
                external_call_id=outcome.external_call_id,
            )
            await store.attach_provider_response(
                claim.assignment_id,
                {"status": outcome.provider_status, "response": outcome.raw_response},
            )
            await session.commit()

        logger.info(
            "Call initiated",
            extra={
                "job_id": claim.job_id,
                "provider_id": claim.provider.id,
                "external_call_id": outcome.external_call_id,
                "provider_status": outcome.provider_status,
                "recorded": recorded,
            },
        )

    async def _fail(
        self,
        claim: Claim,
        error: str,
        retryable: bool,
        provider_response: dict[str, Any] | None,
        result: DispatchTickResult,
    ) -> None:
        logger.warning(
            "Call initiation failed",
            extra={
                "job_id": claim.job_id,
                "provider_id": claim.provider.id,
                "retryable": retryable,
                "error": error,
            },
        )
        try:
            async with self._session_factory() as session:
                decision = await self._retry_manager.handle_failure(
                    session,
                    claim.job_id,
                    error,
                    retryable=retryable,
                    provider_response=provider_response,
                )
                await session.commit()
        except Exception:
            # The stall sweep will pick the job up again.
            logger.exception("Failure handoff failed", extra={"job_id": claim.job_id})
            return
        result.failed[claim.job_id] = decision
