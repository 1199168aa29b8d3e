"""
Dispatch engine: wires the periodic actors together and runs them.

Five loops run independently, each on its own cadence:

- dispatch: ``Dispatcher.run_tick``
- probe: ``AvailabilityTracker.refresh``
- promotion: ``JobStore.promote_due``
- stall sweep: ``StallSweeper.sweep``
- resource sync: ``ResourceSync.sync``

A tick of one loop never overlaps the next tick of the same loop. Every
actor is also reachable through a ``*_once`` method so tests can drive the
engine deterministically without timers.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calldispatch.billing.usage import UsageLedgerFactory, sql_usage_ledger_factory
from calldispatch.dispatch.config import DispatchConfig, get_dispatch_config
from calldispatch.dispatch.dispatcher import Dispatcher, DispatchTickResult
from calldispatch.dispatch.reconciler import CompletionReconciler
from calldispatch.dispatch.retry import RetryManager, RetryPolicy
from calldispatch.dispatch.stall import StallSweeper
from calldispatch.jobs.store import JobStore
from calldispatch.providers.availability import AvailabilitySnapshot, AvailabilityTracker
from calldispatch.providers.factory import AdapterRegistry, get_adapter_registry
from calldispatch.providers.resources import ResourceSync, ResourceSyncResult
from calldispatch.shared.clock import Clock, default_clock
from calldispatch.shared.logging import get_logger

logger = get_logger(__name__)


class PeriodicTask:
    """Runs an async callable every ``interval_seconds`` until stopped."""

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], Awaitable[Any]],
    ) -> None:
        self.name = name
        self._interval = interval_seconds
        self._func = func
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background loop."""
        if self._running:
            logger.warning("Periodic task already running", extra={"task": self.name})
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name=f"calldispatch-{self.name}")
        logger.info(
            "Periodic task started",
            extra={"task": self.name, "interval_seconds": self._interval},
        )

    async def stop(self) -> None:
        """Stop the background loop and wait for it to exit."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Periodic task stopped", extra={"task": self.name})

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self._func()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Periodic task iteration failed", extra={"task": self.name})
            await asyncio.sleep(self._interval)


class DispatchEngine:
    """Owns the engine components and their loops."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: DispatchConfig | None = None,
        adapters: AdapterRegistry | None = None,
        usage_factory: UsageLedgerFactory | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or get_dispatch_config()
        self.clock = clock or default_clock()
        self.adapters = adapters or get_adapter_registry()
        self._session_factory = session_factory

        self.tracker = AvailabilityTracker(
            session_factory,
            self.adapters,
            probe_timeout_seconds=self.config.probe_timeout_seconds,
            clock=self.clock,
        )
        self.retry_manager = RetryManager(
            self.tracker,
            RetryPolicy(
                max_retries=self.config.max_retries,
                base_delay_seconds=self.config.retry_base_delay_seconds,
            ),
            clock=self.clock,
        )
        self.reconciler = CompletionReconciler(
            self.tracker,
            self.retry_manager,
            usage_factory or sql_usage_ledger_factory(self.clock),
            clock=self.clock,
        )
        self.dispatcher = Dispatcher(
            session_factory,
            self.adapters,
            self.tracker,
            self.retry_manager,
            self.config,
            clock=self.clock,
        )
        self.stall_sweeper = StallSweeper(
            session_factory,
            self.adapters,
            self.reconciler,
            self.retry_manager,
            self.config,
            clock=self.clock,
        )
        self.resource_sync = ResourceSync(
            session_factory,
            self.adapters,
            timeout_seconds=self.config.resource_sync_timeout_seconds,
            clock=self.clock,
        )

        self._tasks = [
            PeriodicTask("probe", self.config.probe_interval_seconds, self.probe_once),
            PeriodicTask("promotion", self.config.promotion_interval_seconds, self.promote_once),
            PeriodicTask("dispatch", self.config.dispatch_interval_seconds, self.dispatch_once),
            PeriodicTask("stall-sweep", self.config.stall_sweep_interval_seconds, self.sweep_once),
            PeriodicTask("resource-sync", self.config.resource_sync_interval_seconds, self.sync_resources_once),
        ]

    @property
    def running(self) -> bool:
        return any(task.running for task in self._tasks)

    async def dispatch_once(self) -> DispatchTickResult:
        return await self.dispatcher.run_tick()

    async def probe_once(self) -> list[AvailabilitySnapshot]:
        return await self.tracker.refresh()

    async def promote_once(self) -> int:
        async with self._session_factory() as session:
            promoted = await JobStore(session, self.clock).promote_due()
            await session.commit()
        if promoted:
            logger.info("Scheduled jobs became due", extra={"promoted": promoted})
        return promoted

    async def sweep_once(self) -> list[int]:
        return await self.stall_sweeper.sweep()

    async def sync_resources_once(self) -> list[ResourceSyncResult]:
        return await self.resource_sync.sync()

    async def start(self) -> None:
        """Start all periodic loops; the probe runs first so selection has data."""
        logger.info(
            "Dispatch engine starting",
            extra={
                "global_concurrency_limit": self.config.global_concurrency_limit,
                "dispatch_interval_seconds": self.config.dispatch_interval_seconds,
            },
        )
        try:
            await self.probe_once()
        except Exception:
            logger.exception("Initial provider probe failed")
        for task in self._tasks:
            await task.start()

    async def stop(self) -> None:
        for task in self._tasks:
            await task.stop()
        logger.info("Dispatch engine stopped")

    async def run_forever(self) -> None:
        """Run the loops until cancelled."""
        await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()
