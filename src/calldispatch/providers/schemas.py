"""
Pydantic schemas for the provider registry API.

Credentials are write-only: responses only say whether a key is set.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from calldispatch.providers.models import HealthStatus, ProviderKind


class ProviderCreate(BaseModel):
    """Schema for registering a provider."""

    name: str = Field(..., min_length=1, max_length=100)
    kind: ProviderKind
    concurrency_limit: int = Field(default=10, ge=1, le=1000)
    priority: int = Field(default=1, ge=1, le=100, description="Lower wins capacity ties")
    is_active: bool = True
    api_key: str = Field(default="", max_length=512)
    api_secret: str | None = Field(default=None, max_length=512)
    base_url: str | None = Field(default=None, max_length=512)
    configuration: dict[str, Any] = Field(default_factory=dict)


class ProviderUpdate(BaseModel):
    """Schema for patching a provider; omitted fields stay unchanged."""

    concurrency_limit: int | None = Field(default=None, ge=1, le=1000)
    priority: int | None = Field(default=None, ge=1, le=100)
    is_active: bool | None = None
    api_key: str | None = Field(default=None, max_length=512)
    api_secret: str | None = Field(default=None, max_length=512)
    base_url: str | None = Field(default=None, max_length=512)
    configuration: dict[str, Any] | None = None


class AvailabilityResponse(BaseModel):
    health: HealthStatus
    current_in_flight: int
    available_slots: int
    latency_ms: int | None
    last_probe_at: datetime | None


class ProviderResponse(BaseModel):
    """Schema for provider response."""

    id: int
    name: str
    kind: ProviderKind
    concurrency_limit: int
    priority: int
    is_active: bool
    has_api_key: bool
    base_url: str | None
    created_at: datetime
    updated_at: datetime
    availability: AvailabilityResponse | None = None


class AssistantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    provider_id: int
    external_id: str
    name: str
    description: str | None
    voice_id: str | None
    synced_at: datetime


class PhoneNumberResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    provider_id: int
    external_id: str
    number: str
    capabilities: dict[str, Any] | None
    synced_at: datetime


class CallResourcesResponse(BaseModel):
    """Active assistants and caller numbers usable at submission."""

    assistants: list[AssistantResponse]
    phone_numbers: list[PhoneNumberResponse]
