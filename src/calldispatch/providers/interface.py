"""
Call provider adapter interface definition.

Every provider integration implements ``CallProvider``. The engine only ever
sees the types in this module; provider field names, status vocabularies and
authentication stay inside the adapters.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field

from calldispatch.providers.models import ProviderKind


class CallOutcome(str, Enum):
    """Canonical call outcome shared by all providers."""

    QUEUED = "queued"
    RINGING = "ringing"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    NO_ANSWER = "no_answer"
    BUSY = "busy"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_OUTCOMES

    @property
    def is_failure(self) -> bool:
        return self in FAILURE_OUTCOMES


FAILURE_OUTCOMES: frozenset[CallOutcome] = frozenset(
    {CallOutcome.FAILED, CallOutcome.NO_ANSWER, CallOutcome.BUSY}
)
TERMINAL_OUTCOMES: frozenset[CallOutcome] = FAILURE_OUTCOMES | {
    CallOutcome.COMPLETED,
    CallOutcome.CANCELED,
}


@dataclass(frozen=True)
class Recipient:
    """Who to call."""

    phone: str
    name: str | None = None
    email: str | None = None


@dataclass(frozen=True)
class CallInitiationRequest:
    """Request to initiate an outbound call."""

    correlation_id: str
    recipient: Recipient
    callback_url: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CallInitiationResult:
    """Response from call initiation."""

    external_call_id: str
    provider_status: str
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class HealthProbe:
    """Result of a provider health probe."""

    healthy: bool
    latency_ms: int | None = None
    detail: dict[str, Any] = field(default_factory=dict)
    reachable: bool = True


@dataclass(frozen=True)
class AssistantInfo:
    """An assistant as listed by the provider."""

    external_id: str
    name: str
    description: str | None = None
    voice_id: str | None = None


@dataclass(frozen=True)
class PhoneNumberInfo:
    """A caller number as listed by the provider."""

    external_id: str
    number: str
    is_active: bool = True
    capabilities: dict[str, Any] | None = None


class CanonicalEvent(BaseModel):
    """Provider-neutral inbound call event."""

    model_config = ConfigDict(frozen=True)

    job_correlation_id: str | None = None
    external_call_id: str | None = None
    outcome: CallOutcome
    raw_status: str | None = None
    duration_seconds: int | None = None
    recording_url: str | None = None
    transcript: str | None = None
    error_message: str | None = None
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    raw_payload: dict[str, Any] = Field(default_factory=dict)


class CallProviderError(Exception):
    """Base exception for call provider errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        provider_response: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.provider_response = provider_response or {}


class ProviderRejected(CallProviderError):
    """The provider refused the request as invalid; retrying will not help."""


class ProviderUnavailable(CallProviderError):
    """Network failure, timeout or provider-side error; safe to retry."""


class WebhookParseError(CallProviderError):
    """Error parsing an inbound provider event."""


def classify_http_status(status_code: int) -> type[CallProviderError]:
    """Map an HTTP error status to the retryable/non-retryable error class."""
    if status_code == 429 or status_code >= 500:
        return ProviderUnavailable
    return ProviderRejected


class CallProvider(ABC):
    """Abstract interface for call providers."""

    kind: ClassVar[ProviderKind]

    @abstractmethod
    async def initiate_call(self, request: CallInitiationRequest) -> CallInitiationResult:
        """Start an outbound call.

        Raises:
            ProviderRejected: The provider refused the request.
            ProviderUnavailable: Network failure, timeout or provider error.
        """

    @abstractmethod
    async def probe_health(self) -> HealthProbe:
        """Check whether the provider is accepting calls."""

    @abstractmethod
    async def count_active_calls(self) -> int:
        """Number of calls currently active at the provider."""

    @abstractmethod
    def normalize_inbound_event(self, payload: dict[str, Any]) -> CanonicalEvent:
        """Translate a provider webhook body into a ``CanonicalEvent``.

        Raises:
            WebhookParseError: The payload is not a usable event.
        """

    @classmethod
    @abstractmethod
    def matches_payload(cls, payload: dict[str, Any]) -> bool:
        """Whether a webhook body looks like it came from this provider."""

    async def fetch_call_status(self, external_call_id: str) -> CanonicalEvent | None:
        """Poll the provider for a call's state; None if unsupported."""
        return None

    async def list_assistants(self) -> list[AssistantInfo] | None:
        """Assistants configured at the provider; None if unsupported."""
        return None

    async def list_phone_numbers(self) -> list[PhoneNumberInfo] | None:
        """Caller numbers owned at the provider; None if unsupported."""
        return None

    async def close(self) -> None:
        """Release network resources held by the adapter."""
        return None
