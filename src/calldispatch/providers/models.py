"""
SQLAlchemy models for the provider registry and live availability.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Boolean, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from calldispatch.shared.database import Base, UTCDateTime, enum_column, utcnow


class ProviderKind(str, Enum):
    """Supported call provider integrations."""

    VAPI = "vapi"
    SYNTHFLOW = "synthflow"
    MOCK = "mock"


class HealthStatus(str, Enum):
    """Health reported by the last availability probe."""

    ONLINE = "online"
    DEGRADED = "degraded"
    OFFLINE = "offline"


class Provider(Base):
    """A configured call-service integration."""

    __tablename__ = "call_providers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    kind: Mapped[ProviderKind] = mapped_column(
        enum_column(ProviderKind, "provider_kind"),
        nullable=False,
    )
    concurrency_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Opaque to the engine; only the adapter interprets them.
    api_key: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    api_secret: Mapped[str | None] = mapped_column(String(512), nullable=True)
    base_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    configuration: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    def __repr__(self) -> str:
        return f"<Provider(id={self.id}, name={self.name}, kind={self.kind})>"


class ProviderAvailability(Base):
    """Live capacity/health snapshot, one row per provider.

    ``current_in_flight`` is advisory: the dispatcher and reconciler nudge it
    between probes and the next probe overwrites it with the provider's own
    active-call count.
    """

    __tablename__ = "provider_availability"

    provider_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("call_providers.id", ondelete="CASCADE"),
        primary_key=True,
    )
    current_in_flight: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    health: Mapped[HealthStatus] = mapped_column(
        enum_column(HealthStatus, "provider_health"),
        nullable=False,
        default=HealthStatus.OFFLINE,
    )
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_probe_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_probe_detail: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    def available_slots(self, concurrency_limit: int) -> int:
        return max(0, concurrency_limit - self.current_in_flight)


class ProviderAssistant(Base):
    """Assistant configured at a provider, mirrored by the resource sync."""

    __tablename__ = "provider_assistants"
    __table_args__ = (UniqueConstraint("provider_id", "external_id", name="uq_provider_assistants_external"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("call_providers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    voice_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    synced_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)


class ProviderPhoneNumber(Base):
    """Outbound caller number owned at a provider."""

    __tablename__ = "provider_phone_numbers"
    __table_args__ = (UniqueConstraint("provider_id", "external_id", name="uq_provider_phone_numbers_external"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("call_providers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    number: Mapped[str] = mapped_column(String(32), nullable=False)
    capabilities: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    synced_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
