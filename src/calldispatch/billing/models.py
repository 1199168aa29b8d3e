"""
SQLAlchemy model for per-owner call allowance.
"""

from datetime import datetime

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from calldispatch.shared.database import Base, UTCDateTime, utcnow


class UserCallUsage(Base):
    """Remaining and consumed call allowance for one owner."""

    __tablename__ = "user_call_usage"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    calls_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    calls_remaining: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    minutes_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    minutes_remaining: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    billing_period_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    billing_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
