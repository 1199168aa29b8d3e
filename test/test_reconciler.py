"""
Tests for the completion reconciler.
"""

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calldispatch.billing.models import UserCallUsage
from calldispatch.dispatch.engine import DispatchEngine
from calldispatch.dispatch.reconciler import ReconcileStatus
from calldispatch.jobs.models import AssignmentOutcome, JobStatus
from calldispatch.jobs.store import JobStore
from calldispatch.providers.interface import CallOutcome, CanonicalEvent
from calldispatch.providers.models import ProviderAvailability

from conftest import FakeClock, load_job


async def _usage(session_factory: async_sessionmaker[AsyncSession], owner_id: str = "owner-1") -> UserCallUsage:
    async with session_factory() as session:
        result = await session.execute(select(UserCallUsage).where(UserCallUsage.owner_id == owner_id))
        return result.scalar_one()


async def _apply(engine: DispatchEngine, session_factory, event: CanonicalEvent):
    async with session_factory() as session:
        result = await engine.reconciler.handle_event(session, event)
        await session.commit()
    return result


@pytest_asyncio.fixture
async def in_flight_job(engine: DispatchEngine, make_provider, make_job, make_usage):
    await make_usage(calls_remaining=5, minutes_remaining=30)
    provider, _ = await make_provider()
    job = await make_job()
    await engine.dispatch_once()
    return job, provider


class TestCompletion:
    @pytest.mark.asyncio
    async def test_completed_event_finalizes_job(
        self,
        engine: DispatchEngine,
        session_factory: async_sessionmaker[AsyncSession],
        in_flight_job,
    ) -> None:
        job, provider = in_flight_job

        result = await _apply(
            engine,
            session_factory,
            CanonicalEvent(
                job_correlation_id=job.call_id,
                external_call_id="MOCK_CALL_000001",
                outcome=CallOutcome.COMPLETED,
                duration_seconds=125,
                recording_url="https://rec.example.com/1.mp3",
                transcript="Hi",
            ),
        )

        assert result.status == ReconcileStatus.PROCESSED
        assert result.job_status == JobStatus.COMPLETED
        completed = await load_job(session_factory, job.id)
        assert completed.completed_at is not None

        async with session_factory() as session:
            store = JobStore(session)
            history = await store.list_history(job.id)
            assignments = await store.list_assignments(job.id)
            availability = await session.get(ProviderAvailability, provider.id)
        assert len(history) == 1
        assert history[0].duration_seconds == 125
        assert history[0].recording_url == "https://rec.example.com/1.mp3"
        assert history[0].call_started_at is not None
        assert assignments[-1].outcome == AssignmentOutcome.COMPLETED
        assert availability is not None and availability.current_in_flight == 0

        usage = await _usage(session_factory)
        assert usage.calls_used == 1
        assert usage.calls_remaining == 4
        assert usage.minutes_used == 3
        assert usage.minutes_remaining == 27

    @pytest.mark.asyncio
    async def test_duplicate_completion_is_stale_and_charged_once(
        self,
        engine: DispatchEngine,
        session_factory: async_sessionmaker[AsyncSession],
        in_flight_job,
    ) -> None:
        job, _ = in_flight_job
        event = CanonicalEvent(job_correlation_id=job.call_id, outcome=CallOutcome.COMPLETED, duration_seconds=60)

        first = await _apply(engine, session_factory, event)
        second = await _apply(engine, session_factory, event)

        assert first.status == ReconcileStatus.PROCESSED
        assert second.status == ReconcileStatus.STALE
        assert second.job_status == JobStatus.COMPLETED
        async with session_factory() as session:
            assert len(await JobStore(session).list_history(job.id)) == 1
        assert (await _usage(session_factory)).calls_used == 1

    @pytest.mark.asyncio
    async def test_failure_after_completion_changes_nothing(
        self,
        engine: DispatchEngine,
        session_factory: async_sessionmaker[AsyncSession],
        in_flight_job,
    ) -> None:
        job, _ = in_flight_job
        await _apply(
            engine,
            session_factory,
            CanonicalEvent(job_correlation_id=job.call_id, outcome=CallOutcome.COMPLETED),
        )

        late = await _apply(
            engine,
            session_factory,
            CanonicalEvent(job_correlation_id=job.call_id, outcome=CallOutcome.FAILED, error_message="late"),
        )

        assert late.status == ReconcileStatus.STALE
        reloaded = await load_job(session_factory, job.id)
        assert reloaded.status == JobStatus.COMPLETED
        assert reloaded.last_error is None

    @pytest.mark.asyncio
    async def test_resolves_by_external_call_id(
        self,
        engine: DispatchEngine,
        session_factory: async_sessionmaker[AsyncSession],
        in_flight_job,
    ) -> None:
        job, _ = in_flight_job

        result = await _apply(
            engine,
            session_factory,
            CanonicalEvent(external_call_id="MOCK_CALL_000001", outcome=CallOutcome.COMPLETED),
        )

        assert result.status == ReconcileStatus.PROCESSED
        assert result.job_id == job.id

    @pytest.mark.asyncio
    async def test_late_event_from_previous_attempt_is_stale(
        self,
        engine: DispatchEngine,
        session_factory: async_sessionmaker[AsyncSession],
        clock: FakeClock,
        in_flight_job,
    ) -> None:
        job, _ = in_flight_job
        first = await _apply(
            engine,
            session_factory,
            CanonicalEvent(
                job_correlation_id=job.call_id,
                external_call_id="MOCK_CALL_000001",
                outcome=CallOutcome.NO_ANSWER,
            ),
        )
        assert first.job_status == JobStatus.PENDING

        clock.advance(seconds=61)
        redispatched = await engine.dispatch_once()
        assert redispatched.initiated == [job.id]

        for outcome in (CallOutcome.FAILED, CallOutcome.COMPLETED):
            late = await _apply(
                engine,
                session_factory,
                CanonicalEvent(
                    job_correlation_id=job.call_id,
                    external_call_id="MOCK_CALL_000001",
                    outcome=outcome,
                    duration_seconds=30,
                ),
            )
            assert late.status == ReconcileStatus.STALE
            assert late.job_status == JobStatus.IN_FLIGHT

        current = await load_job(session_factory, job.id)
        assert current.external_call_id == "MOCK_CALL_000002"
        assert current.attempt_count == 2
        async with session_factory() as session:
            retry = await JobStore(session).get_retry_record(job.id)
        assert retry is not None and retry.retry_count == 1
        assert (await _usage(session_factory)).calls_used == 0

        result = await _apply(
            engine,
            session_factory,
            CanonicalEvent(
                job_correlation_id=job.call_id,
                external_call_id="MOCK_CALL_000002",
                outcome=CallOutcome.COMPLETED,
            ),
        )
        assert result.status == ReconcileStatus.PROCESSED
        assert result.job_status == JobStatus.COMPLETED


class TestNonCompletion:
    @pytest.mark.asyncio
    async def test_progress_event_is_ignored(
        self,
        engine: DispatchEngine,
        session_factory: async_sessionmaker[AsyncSession],
        in_flight_job,
    ) -> None:
        job, _ = in_flight_job

        result = await _apply(
            engine,
            session_factory,
            CanonicalEvent(job_correlation_id=job.call_id, outcome=CallOutcome.RINGING),
        )

        assert result.status == ReconcileStatus.IGNORED
        assert (await load_job(session_factory, job.id)).status == JobStatus.IN_FLIGHT

    @pytest.mark.asyncio
    async def test_no_answer_goes_to_retry(
        self,
        engine: DispatchEngine,
        session_factory: async_sessionmaker[AsyncSession],
        in_flight_job,
    ) -> None:
        job, _ = in_flight_job

        result = await _apply(
            engine,
            session_factory,
            CanonicalEvent(job_correlation_id=job.call_id, outcome=CallOutcome.NO_ANSWER),
        )

        assert result.status == ReconcileStatus.PROCESSED
        assert result.job_status == JobStatus.PENDING
        requeued = await load_job(session_factory, job.id)
        assert requeued.last_error == "Call ended with outcome no_answer"
        assert (await _usage(session_factory)).calls_used == 0

    @pytest.mark.asyncio
    async def test_provider_cancel_is_terminal(
        self,
        engine: DispatchEngine,
        session_factory: async_sessionmaker[AsyncSession],
        in_flight_job,
    ) -> None:
        job, _ = in_flight_job

        result = await _apply(
            engine,
            session_factory,
            CanonicalEvent(job_correlation_id=job.call_id, outcome=CallOutcome.CANCELED),
        )

        assert result.job_status == JobStatus.CANCELED
        async with session_factory() as session:
            history = await JobStore(session).list_history(job.id)
        assert [h.status for h in history] == [JobStatus.CANCELED]

    @pytest.mark.asyncio
    async def test_unknown_correlation_id(
        self,
        engine: DispatchEngine,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        result = await _apply(
            engine,
            session_factory,
            CanonicalEvent(job_correlation_id="does-not-exist", outcome=CallOutcome.COMPLETED),
        )

        assert result.status == ReconcileStatus.UNKNOWN
        assert result.job_id is None
