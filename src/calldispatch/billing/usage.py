"""
Call allowance accounting.

The engine only needs two things from billing: how many calls an owner may
still place, and a way to charge a completed call. ``UsageLedger`` is that
boundary; ``SqlUsageLedger`` implements it on the ``user_call_usage`` table.
"""

import math
from collections.abc import Callable
from typing import Protocol

from sqlalchemy import case, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from calldispatch.billing.models import UserCallUsage
from calldispatch.shared.clock import Clock, default_clock
from calldispatch.shared.logging import get_logger

logger = get_logger(__name__)


class UsageLedger(Protocol):
    """Protocol for the billing collaborator."""

    async def remaining_calls(self, owner_id: str) -> int:
        """Calls the owner may still place; 0 when there is no allowance."""
        ...

    async def record_completed_call(self, owner_id: str, duration_seconds: int | None) -> None:
        """Charge one completed call against the owner's allowance."""
        ...


UsageLedgerFactory = Callable[[AsyncSession], UsageLedger]


def billable_minutes(duration_seconds: int | None) -> int:
    """Whole minutes charged for a call, rounded up."""
    if not duration_seconds or duration_seconds <= 0:
        return 0
    return math.ceil(duration_seconds / 60)


class SqlUsageLedger:
    """UsageLedger backed by ``user_call_usage``; shares the caller's session."""

    def __init__(self, session: AsyncSession, clock: Clock | None = None) -> None:
        self._session = session
        self._clock = clock or default_clock()

    async def remaining_calls(self, owner_id: str) -> int:
        now = self._clock.now()
        stmt = select(UserCallUsage.calls_remaining).where(
            UserCallUsage.owner_id == owner_id,
            or_(UserCallUsage.billing_period_end.is_(None), UserCallUsage.billing_period_end >= now),
        )
        result = await self._session.execute(stmt)
        remaining = result.scalar_one_or_none()
        return int(remaining) if remaining is not None else 0

    async def record_completed_call(self, owner_id: str, duration_seconds: int | None) -> None:
        minutes = billable_minutes(duration_seconds)
        stmt = (
            update(UserCallUsage)
            .where(UserCallUsage.owner_id == owner_id)
            .values(
                calls_used=UserCallUsage.calls_used + 1,
                calls_remaining=case(
                    (UserCallUsage.calls_remaining > 0, UserCallUsage.calls_remaining - 1),
                    else_=0,
                ),
                minutes_used=UserCallUsage.minutes_used + minutes,
                minutes_remaining=case(
                    (UserCallUsage.minutes_remaining > minutes, UserCallUsage.minutes_remaining - minutes),
                    else_=0,
                ),
                updated_at=self._clock.now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            logger.warning("No usage row for owner; call not charged", extra={"owner_id": owner_id})
        else:
            logger.info(
                "Usage recorded",
                extra={"owner_id": owner_id, "minutes": minutes},
            )


def sql_usage_ledger_factory(clock: Clock | None = None) -> UsageLedgerFactory:
    def _factory(session: AsyncSession) -> UsageLedger:
        return SqlUsageLedger(session, clock)

    return _factory
