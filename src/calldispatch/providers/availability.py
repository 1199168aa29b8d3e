"""
Provider availability tracking and capacity-based selection.

Snapshot counters are advisory. The dispatcher bumps ``current_in_flight`` on
assignment and the reconciler/retry manager drop it on completion, but the
periodic probe overwrites it with what the provider itself reports, which is
how transient overshoot corrects itself. Job assignment safety never depends
on these numbers.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

import anyio
from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calldispatch.dispatch.errors import NoProviderAvailable
from calldispatch.providers.factory import AdapterRegistry
from calldispatch.providers.interface import HealthProbe
from calldispatch.providers.models import HealthStatus, Provider, ProviderAvailability
from calldispatch.providers.repository import ProviderRepository
from calldispatch.shared.clock import Clock, default_clock
from calldispatch.shared.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class AvailabilitySnapshot:
    """Read-only view of one provider's live state."""

    provider_id: int
    provider_name: str
    health: HealthStatus
    current_in_flight: int
    concurrency_limit: int
    latency_ms: int | None
    last_probe_at: datetime | None

    @property
    def available_slots(self) -> int:
        return max(0, self.concurrency_limit - self.current_in_flight)


@dataclass(frozen=True)
class _ProbeOutcome:
    health: HealthStatus
    active_calls: int | None
    latency_ms: int | None
    detail: dict[str, Any]


def _health_from_probe(probe: HealthProbe) -> HealthStatus:
    if probe.healthy:
        return HealthStatus.ONLINE
    if probe.reachable:
        return HealthStatus.DEGRADED
    return HealthStatus.OFFLINE


class AvailabilityTracker:
    """Owns the per-provider availability snapshots."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        adapters: AdapterRegistry,
        probe_timeout_seconds: float = 10.0,
        clock: Clock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._adapters = adapters
        self._probe_timeout = probe_timeout_seconds
        self._clock = clock or default_clock()

    async def refresh(self) -> list[AvailabilitySnapshot]:
        """Probe every active provider and persist fresh snapshots.

        Probes run concurrently, each under its own timeout. A probe that
        raises or times out marks the provider degraded; it is never dropped.
        """
        async with self._session_factory() as session:
            providers = list(await ProviderRepository(session).list_active())

        outcomes: dict[int, _ProbeOutcome] = {}
        async with anyio.create_task_group() as tg:
            for provider in providers:
                tg.start_soon(self._probe_one, provider, outcomes)

        now = self._clock.now()
        snapshots: list[AvailabilitySnapshot] = []
        async with self._session_factory() as session:
            repo = ProviderRepository(session)
            for provider in providers:
                outcome = outcomes[provider.id]
                availability = await repo.get_availability(provider.id)
                if availability is None:
                    availability = ProviderAvailability(provider_id=provider.id, current_in_flight=0)
                    session.add(availability)
                availability.health = outcome.health
                availability.latency_ms = outcome.latency_ms
                availability.last_probe_detail = outcome.detail
                availability.last_probe_at = now
                availability.updated_at = now
                if outcome.active_calls is not None:
                    availability.current_in_flight = outcome.active_calls
                snapshots.append(self._to_snapshot(provider, availability))
            await session.commit()

        logger.info(
            "Provider availability refreshed",
            extra={
                "providers": len(snapshots),
                "online": sum(1 for s in snapshots if s.health == HealthStatus.ONLINE),
            },
        )
        return snapshots

    async def _probe_one(self, provider: Provider, outcomes: dict[int, _ProbeOutcome]) -> None:
        try:
            adapter = self._adapters.get(provider)
            with anyio.fail_after(self._probe_timeout):
                probe = await adapter.probe_health()
                active = await adapter.count_active_calls() if probe.reachable else None
        except TimeoutError:
            logger.warning("Provider probe timed out", extra={"provider_id": provider.id})
            outcomes[provider.id] = _ProbeOutcome(
                HealthStatus.DEGRADED, None, None, {"error": "probe timed out"}
            )
            return
        except Exception as exc:
            logger.warning(
                "Provider probe failed",
                extra={"provider_id": provider.id, "error": str(exc)},
                exc_info=True,
            )
            outcomes[provider.id] = _ProbeOutcome(HealthStatus.DEGRADED, None, None, {"error": str(exc)})
            return

        outcomes[provider.id] = _ProbeOutcome(
            health=_health_from_probe(probe),
            active_calls=active,
            latency_ms=probe.latency_ms,
            detail=probe.detail,
        )

    async def select_provider(
        self,
        session: AsyncSession,
        pinned_provider_id: int | None = None,
    ) -> Provider | None:
        """Pick the provider for the next assignment, or None (backpressure).

        A pinned provider wins when it is itself eligible; otherwise the most
        spare capacity wins, ties broken by configured priority.
        """
        base = (
            select(Provider)
            .join(ProviderAvailability, ProviderAvailability.provider_id == Provider.id)
            .where(
                Provider.is_active.is_(True),
                ProviderAvailability.health == HealthStatus.ONLINE,
                ProviderAvailability.current_in_flight < Provider.concurrency_limit,
            )
        )

        if pinned_provider_id is not None:
            result = await session.execute(base.where(Provider.id == pinned_provider_id))
            pinned = result.scalar_one_or_none()
            if pinned is not None:
                return pinned
            logger.info(
                "Pinned provider not eligible; falling back to capacity selection",
                extra={"provider_id": pinned_provider_id},
            )

        stmt = base.order_by(
            (Provider.concurrency_limit - ProviderAvailability.current_in_flight).desc(),
            Provider.priority.asc(),
            Provider.id.asc(),
        ).limit(1)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def require_provider(
        self,
        session: AsyncSession,
        pinned_provider_id: int | None = None,
    ) -> Provider:
        provider = await self.select_provider(session, pinned_provider_id)
        if provider is None:
            raise NoProviderAvailable("No online provider with spare capacity")
        return provider

    async def acquire_slot(self, session: AsyncSession, provider_id: int) -> None:
        stmt = (
            update(ProviderAvailability)
            .where(ProviderAvailability.provider_id == provider_id)
            .values(
                current_in_flight=ProviderAvailability.current_in_flight + 1,
                updated_at=self._clock.now(),
            )
            .execution_options(synchronize_session=False)
        )
        await session.execute(stmt)

    async def release_slot(self, session: AsyncSession, provider_id: int) -> None:
        stmt = (
            update(ProviderAvailability)
            .where(ProviderAvailability.provider_id == provider_id)
            .values(
                current_in_flight=case(
                    (ProviderAvailability.current_in_flight > 0, ProviderAvailability.current_in_flight - 1),
                    else_=0,
                ),
                updated_at=self._clock.now(),
            )
            .execution_options(synchronize_session=False)
        )
        await session.execute(stmt)

    async def snapshots(self, session: AsyncSession) -> list[AvailabilitySnapshot]:
        stmt = (
            select(Provider, ProviderAvailability)
            .join(ProviderAvailability, ProviderAvailability.provider_id == Provider.id)
            .order_by(Provider.priority.asc(), Provider.id.asc())
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return [self._to_snapshot(provider, availability) for provider, availability in result.all()]

    @staticmethod
    def _to_snapshot(provider: Provider, availability: ProviderAvailability) -> AvailabilitySnapshot:
        return AvailabilitySnapshot(
            provider_id=provider.id,
            provider_name=provider.name,
            health=availability.health,
            current_in_flight=availability.current_in_flight,
            concurrency_limit=provider.concurrency_limit,
            latency_ms=availability.latency_ms,
            last_probe_at=availability.last_probe_at,
        )
