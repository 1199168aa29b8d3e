"""
Pytest configuration and shared fixtures.

Database tests run against a throwaway SQLite file per test (aiosqlite);
time is driven by ``FakeClock`` so ticks, backoff and stall timeouts are
deterministic.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

import calldispatch.models  # noqa: F401
from calldispatch.billing.models import UserCallUsage
from calldispatch.dispatch.config import DispatchConfig
from calldispatch.dispatch.engine import DispatchEngine
from calldispatch.jobs.models import CallJob
from calldispatch.jobs.store import JobStore
from calldispatch.providers.adapters.mock import MockCallProvider
from calldispatch.providers.factory import AdapterRegistry
from calldispatch.providers.models import HealthStatus, Provider, ProviderKind
from calldispatch.providers.repository import ProviderRepository
from calldispatch.shared.database import Base

T0 = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0) -> None:
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs: float) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def db_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'calldispatch.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def registry() -> AdapterRegistry:
    return AdapterRegistry()


@pytest.fixture
def dispatch_config() -> DispatchConfig:
    return DispatchConfig(
        global_concurrency_limit=20,
        max_retries=3,
        retry_base_delay_seconds=60,
        stall_timeout_minutes=30,
        initiation_timeout_seconds=2.0,
        probe_timeout_seconds=2.0,
        webhook_base_url="https://hooks.example.com",
    )


@pytest.fixture
def engine(
    session_factory: async_sessionmaker[AsyncSession],
    dispatch_config: DispatchConfig,
    registry: AdapterRegistry,
    clock: FakeClock,
) -> DispatchEngine:
    return DispatchEngine(session_factory, dispatch_config, adapters=registry, clock=clock)


MakeProvider = Callable[..., Awaitable[tuple[Provider, MockCallProvider]]]


@pytest.fixture
def make_provider(
    session_factory: async_sessionmaker[AsyncSession],
    registry: AdapterRegistry,
) -> MakeProvider:
    """Register a provider backed by a scriptable in-memory adapter."""

    async def _make(
        name: str = "mock-a",
        *,
        concurrency_limit: int = 10,
        priority: int = 1,
        health: HealthStatus = HealthStatus.ONLINE,
        in_flight: int = 0,
        is_active: bool = True,
    ) -> tuple[Provider, MockCallProvider]:
        async with session_factory() as session:
            repo = ProviderRepository(session)
            provider = await repo.create(
                name=name,
                kind=ProviderKind.MOCK,
                concurrency_limit=concurrency_limit,
                priority=priority,
                is_active=is_active,
                api_key="mock-key",
            )
            availability = await repo.get_availability(provider.id)
            assert availability is not None
            availability.health = health
            availability.current_in_flight = in_flight
            await session.commit()

        adapter = MockCallProvider()
        adapter.configure_active_calls(in_flight)
        registry.bind(provider.id, adapter)
        return provider, adapter

    return _make


MakeJob = Callable[..., Awaitable[CallJob]]


@pytest.fixture
def make_job(
    session_factory: async_sessionmaker[AsyncSession],
    clock: FakeClock,
) -> MakeJob:
    """Enqueue a pending job."""

    async def _make(
        *,
        owner_id: str = "owner-1",
        phone: str = "+14155551234",
        priority: int = 5,
        scheduled_at: datetime | None = None,
        pinned_provider_id: int | None = None,
        payload: dict[str, Any] | None = None,
    ) -> CallJob:
        async with session_factory() as session:
            job = CallJob(
                owner_id=owner_id,
                recipient_phone=phone,
                recipient_name="Ada Lovelace",
                priority=priority,
                scheduled_at=scheduled_at,
                pinned_provider_id=pinned_provider_id,
                payload=payload or {"script": "Hello Ada", "variables": {}},
            )
            await JobStore(session, clock).enqueue(job)
            await session.commit()
            return job

    return _make


@pytest.fixture
def make_usage(
    session_factory: async_sessionmaker[AsyncSession],
    clock: FakeClock,
) -> Callable[..., Awaitable[None]]:
    async def _make(owner_id: str = "owner-1", calls_remaining: int = 10, minutes_remaining: int = 100) -> None:
        async with session_factory() as session:
            session.add(
                UserCallUsage(
                    owner_id=owner_id,
                    calls_remaining=calls_remaining,
                    minutes_remaining=minutes_remaining,
                    billing_period_start=clock.now() - timedelta(days=1),
                    billing_period_end=clock.now() + timedelta(days=30),
                )
            )
            await session.commit()

    return _make


async def load_job(session_factory: async_sessionmaker[AsyncSession], job_id: int) -> CallJob:
    async with session_factory() as session:
        job = await JobStore(session).get(job_id)
        assert job is not None
        return job


@pytest_asyncio.fixture
async def api_client(
    session_factory: async_sessionmaker[AsyncSession],
    registry: AdapterRegistry,
    engine: DispatchEngine,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to the app with DB, adapters and reconciler overridden."""
    from calldispatch.main import app
    from calldispatch.providers.factory import get_adapter_registry
    from calldispatch.shared.database import get_db_session
    from calldispatch.webhooks.router import get_reconciler

    async def _override_get_db_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db_session] = _override_get_db_session
    app.dependency_overrides[get_adapter_registry] = lambda: registry
    app.dependency_overrides[get_reconciler] = lambda: engine.reconciler

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
