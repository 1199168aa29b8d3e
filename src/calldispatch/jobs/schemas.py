"""
Pydantic schemas for the job submission API.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from calldispatch.jobs.models import JobStatus


class RecipientIn(BaseModel):
    """Who to call."""

    phone: str = Field(
        ...,
        min_length=3,
        max_length=32,
        description="Phone number in E.164 format",
    )
    name: str | None = Field(default=None, max_length=255)
    email: EmailStr | None = Field(default=None)


class JobCreate(BaseModel):
    """Schema for submitting a call job."""

    owner_id: str = Field(..., min_length=1, max_length=255)
    recipient: RecipientIn
    template_id: str = Field(..., min_length=1, max_length=255)
    variables: dict[str, Any] = Field(default_factory=dict)
    scheduled_at: datetime | None = Field(
        default=None,
        description="Dispatch no earlier than this instant; omit for immediate",
    )
    priority: int = Field(default=5, ge=1, le=10, description="1 is most urgent")
    pinned_provider_id: int | None = Field(default=None)
    assistant_id: str | None = Field(
        default=None,
        max_length=255,
        description="Provider assistant id; overrides the template's assistant",
    )
    phone_number_id: str | None = Field(
        default=None,
        max_length=255,
        description="Provider id of the caller number to dial from",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)


class JobResponse(BaseModel):
    """Schema for job status."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    call_id: str
    owner_id: str
    status: JobStatus
    priority: int
    scheduled_at: datetime | None
    provider_id: int | None
    pinned_provider_id: int | None
    external_call_id: str | None
    attempt_count: int
    last_error: str | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None
