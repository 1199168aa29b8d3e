"""
Tests for provider availability probing and selection.
"""

import anyio
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calldispatch.dispatch.errors import NoProviderAvailable
from calldispatch.providers.availability import AvailabilityTracker
from calldispatch.providers.factory import AdapterRegistry
from calldispatch.providers.interface import HealthProbe
from calldispatch.providers.models import HealthStatus
from calldispatch.providers.repository import ProviderRepository

from conftest import FakeClock


class _HangingAdapter:
    async def probe_health(self) -> HealthProbe:
        await anyio.sleep(5)
        return HealthProbe(healthy=True)

    async def count_active_calls(self) -> int:
        return 0


class _ExplodingAdapter:
    async def probe_health(self) -> HealthProbe:
        raise RuntimeError("socket closed")

    async def count_active_calls(self) -> int:
        return 0


@pytest.fixture
def tracker(
    session_factory: async_sessionmaker[AsyncSession],
    registry: AdapterRegistry,
    clock: FakeClock,
) -> AvailabilityTracker:
    return AvailabilityTracker(session_factory, registry, probe_timeout_seconds=0.1, clock=clock)


class TestRefresh:
    @pytest.mark.asyncio
    async def test_healthy_probe_goes_online_and_overwrites_count(
        self,
        tracker: AvailabilityTracker,
        make_provider,
        clock: FakeClock,
    ) -> None:
        provider, adapter = await make_provider(health=HealthStatus.OFFLINE, in_flight=4)
        adapter.configure_active_calls(2)

        snapshots = await tracker.refresh()

        assert len(snapshots) == 1
        snapshot = snapshots[0]
        assert snapshot.provider_id == provider.id
        assert snapshot.health == HealthStatus.ONLINE
        assert snapshot.current_in_flight == 2
        assert snapshot.available_slots == 8
        assert snapshot.last_probe_at == clock.now()

    @pytest.mark.asyncio
    async def test_unhealthy_but_reachable_is_degraded(
        self,
        tracker: AvailabilityTracker,
        make_provider,
    ) -> None:
        _, adapter = await make_provider()
        adapter.configure_health(healthy=False, reachable=True)

        [snapshot] = await tracker.refresh()

        assert snapshot.health == HealthStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_unreachable_is_offline_and_keeps_count(
        self,
        tracker: AvailabilityTracker,
        make_provider,
    ) -> None:
        _, adapter = await make_provider(in_flight=3)
        adapter.configure_health(healthy=False, reachable=False)

        [snapshot] = await tracker.refresh()

        assert snapshot.health == HealthStatus.OFFLINE
        assert snapshot.current_in_flight == 3

    @pytest.mark.asyncio
    async def test_probe_timeout_marks_degraded(
        self,
        tracker: AvailabilityTracker,
        registry: AdapterRegistry,
        make_provider,
    ) -> None:
        provider, _ = await make_provider()
        registry.bind(provider.id, _HangingAdapter())  # type: ignore[arg-type]

        [snapshot] = await tracker.refresh()

        assert snapshot.health == HealthStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_probe_exception_does_not_drop_others(
        self,
        tracker: AvailabilityTracker,
        registry: AdapterRegistry,
        make_provider,
    ) -> None:
        broken, _ = await make_provider("broken")
        healthy, _ = await make_provider("healthy", health=HealthStatus.OFFLINE)
        registry.bind(broken.id, _ExplodingAdapter())  # type: ignore[arg-type]

        snapshots = {s.provider_id: s for s in await tracker.refresh()}

        assert snapshots[broken.id].health == HealthStatus.DEGRADED
        assert snapshots[healthy.id].health == HealthStatus.ONLINE

    @pytest.mark.asyncio
    async def test_inactive_providers_are_not_probed(
        self,
        tracker: AvailabilityTracker,
        make_provider,
    ) -> None:
        await make_provider(is_active=False)

        assert await tracker.refresh() == []


class TestSelection:
    @pytest.mark.asyncio
    async def test_priority_breaks_capacity_tie(
        self,
        tracker: AvailabilityTracker,
        db_session: AsyncSession,
        make_provider,
    ) -> None:
        await make_provider("second", priority=2)
        first, _ = await make_provider("first", priority=1)

        selected = await tracker.select_provider(db_session)

        assert selected is not None and selected.id == first.id

    @pytest.mark.asyncio
    async def test_full_provider_is_skipped(
        self,
        tracker: AvailabilityTracker,
        db_session: AsyncSession,
        make_provider,
    ) -> None:
        await make_provider("full", concurrency_limit=2, in_flight=2)

        assert await tracker.select_provider(db_session) is None
        with pytest.raises(NoProviderAvailable):
            await tracker.require_provider(db_session)

    @pytest.mark.asyncio
    async def test_release_floors_at_zero(
        self,
        tracker: AvailabilityTracker,
        session_factory: async_sessionmaker[AsyncSession],
        make_provider,
    ) -> None:
        provider, _ = await make_provider(in_flight=0)

        async with session_factory() as session:
            await tracker.release_slot(session, provider.id)
            await tracker.release_slot(session, provider.id)
            await tracker.acquire_slot(session, provider.id)
            await session.commit()

        async with session_factory() as session:
            availability = await ProviderRepository(session).get_availability(provider.id)
        assert availability is not None and availability.current_in_flight == 1
