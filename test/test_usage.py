"""Tests for call allowance accounting."""

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calldispatch.billing.models import UserCallUsage
from calldispatch.billing.usage import SqlUsageLedger, billable_minutes

from conftest import FakeClock


@pytest.mark.parametrize(
    ("seconds", "minutes"),
    [(None, 0), (0, 0), (-5, 0), (1, 1), (60, 1), (61, 2), (125, 3)],
)
def test_billable_minutes_rounds_up(seconds: int | None, minutes: int) -> None:
    assert billable_minutes(seconds) == minutes


class TestSqlUsageLedger:
    @pytest.mark.asyncio
    async def test_remaining_calls(
        self,
        db_session: AsyncSession,
        make_usage,
        clock: FakeClock,
    ) -> None:
        await make_usage("owner-1", calls_remaining=7)
        ledger = SqlUsageLedger(db_session, clock)

        assert await ledger.remaining_calls("owner-1") == 7
        assert await ledger.remaining_calls("nobody") == 0

    @pytest.mark.asyncio
    async def test_expired_billing_period_has_no_allowance(
        self,
        db_session: AsyncSession,
        make_usage,
        clock: FakeClock,
    ) -> None:
        await make_usage("owner-1", calls_remaining=7)
        clock.advance(days=31)

        assert await SqlUsageLedger(db_session, clock).remaining_calls("owner-1") == 0

    @pytest.mark.asyncio
    async def test_record_completed_call_floors_at_zero(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        make_usage,
        clock: FakeClock,
    ) -> None:
        await make_usage("owner-1", calls_remaining=1, minutes_remaining=2)

        async with session_factory() as session:
            ledger = SqlUsageLedger(session, clock)
            await ledger.record_completed_call("owner-1", 300)
            await ledger.record_completed_call("owner-1", 30)
            await session.commit()

        async with session_factory() as session:
            usage = (
                await session.execute(select(UserCallUsage).where(UserCallUsage.owner_id == "owner-1"))
            ).scalar_one()
        assert usage.calls_used == 2
        assert usage.calls_remaining == 0
        assert usage.minutes_used == 6
        assert usage.minutes_remaining == 0
        assert usage.updated_at == clock.now()

    @pytest.mark.asyncio
    async def test_missing_usage_row_is_not_an_error(
        self,
        db_session: AsyncSession,
        clock: FakeClock,
    ) -> None:
        await SqlUsageLedger(db_session, clock).record_completed_call("nobody", 60)

        result = await db_session.execute(select(UserCallUsage))
        assert result.scalars().all() == []
