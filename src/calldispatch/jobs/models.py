"""
SQLAlchemy models for call jobs and their audit trail.

A job moves through ``JobStatus`` only along ``ALLOWED_TRANSITIONS``; the
store enforces it with a guarded UPDATE, never with an in-memory check.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from calldispatch.shared.database import Base, UTCDateTime, enum_column, utcnow


class JobStatus(str, Enum):
    """Lifecycle status of a call job."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    FAILED_RETRYABLE = "failed_retryable"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED}
)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.IN_FLIGHT, JobStatus.CANCELED}),
    JobStatus.IN_FLIGHT: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED_RETRYABLE, JobStatus.CANCELED}
    ),
    JobStatus.FAILED_RETRYABLE: frozenset({JobStatus.PENDING, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELED: frozenset(),
}


def is_legal_transition(from_status: JobStatus, to_status: JobStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


class AssignmentOutcome(str, Enum):
    """Outcome of a single job-to-provider assignment."""

    ASSIGNED = "assigned"
    FAILED = "failed"
    COMPLETED = "completed"


def _new_call_id() -> str:
    return uuid4().hex


class CallJob(Base):
    """A queued outbound call request."""

    __tablename__ = "call_jobs"
    __table_args__ = (
        Index("ix_call_jobs_dispatch_order", "status", "priority", "created_at", "id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    call_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        index=True,
        default=_new_call_id,
    )
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    recipient_phone: Mapped[str] = mapped_column(String(32), nullable=False)
    recipient_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    recipient_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    scheduled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    promoted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    status: Mapped[JobStatus] = mapped_column(
        enum_column(JobStatus, "job_status"),
        nullable=False,
        default=JobStatus.PENDING,
    )

    provider_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("call_providers.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    pinned_provider_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("call_providers.id", ondelete="SET NULL"),
        nullable=True,
    )
    external_call_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    last_assigned_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return f"<CallJob(id={self.id}, call_id={self.call_id}, status={self.status})>"


class CallAssignment(Base):
    """Append-only record binding a job to a provider for one attempt."""

    __tablename__ = "call_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("call_jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("call_providers.id", ondelete="CASCADE"),
        nullable=False,
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    assigned_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    outcome: Mapped[AssignmentOutcome] = mapped_column(
        enum_column(AssignmentOutcome, "assignment_outcome"),
        nullable=False,
        default=AssignmentOutcome.ASSIGNED,
    )
    provider_response: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<CallAssignment(job_id={self.job_id}, provider_id={self.provider_id}, "
            f"outcome={self.outcome})>"
        )


class CallRetry(Base):
    """Per-job retry bookkeeping; created on the first failure."""

    __tablename__ = "call_retries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("call_jobs.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_provider_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)


class CallHistory(Base):
    """Final record of a job that reached a terminal outcome."""

    __tablename__ = "call_history"
    __table_args__ = (UniqueConstraint("job_id", name="uq_call_history_job"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("call_jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    provider_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    external_call_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[JobStatus] = mapped_column(enum_column(JobStatus, "job_status"), nullable=False)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recording_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    transcript: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    call_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    call_ended_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
