"""
Mock call provider adapter for testing and local development.

Scriptable: failures, health, active-call count and initiation latency can all
be configured, and every initiation request is recorded.
"""

from collections import deque
from typing import Any

import anyio

from calldispatch.providers.config import AdapterSettings
from calldispatch.providers.interface import (
    AssistantInfo,
    CallInitiationRequest,
    CallInitiationResult,
    CallOutcome,
    CallProvider,
    CallProviderError,
    CanonicalEvent,
    HealthProbe,
    PhoneNumberInfo,
    ProviderUnavailable,
    WebhookParseError,
)
from calldispatch.providers.models import ProviderKind
from calldispatch.shared.logging import get_logger

logger = get_logger(__name__)


class MockCallProvider(CallProvider):
    """In-memory call provider."""

    kind = ProviderKind.MOCK

    def __init__(self, settings: AdapterSettings | None = None) -> None:
        self._settings = settings or AdapterSettings()
        self.reset()

    def reset(self) -> None:
        self._calls: list[CallInitiationRequest] = []
        self._next_call_id = 1
        self._failure: CallProviderError | None = None
        self._queued_failures: deque[CallProviderError] = deque()
        self._healthy = True
        self._reachable = True
        self._active_calls = 0
        self._delay_seconds = 0.0
        self._statuses: dict[str, CanonicalEvent] = {}
        self._assistants: list[AssistantInfo] | None = None
        self._phone_numbers: list[PhoneNumberInfo] | None = None
        self._resource_error: CallProviderError | None = None

    def configure_failure(self, error: CallProviderError | None = None) -> None:
        """Fail every initiation with ``error`` (``None`` clears it)."""
        self._failure = error

    def queue_failures(self, *errors: CallProviderError) -> None:
        """Fail the next ``len(errors)`` initiations, in order."""
        self._queued_failures.extend(errors)

    def configure_health(self, healthy: bool = True, reachable: bool = True) -> None:
        self._healthy = healthy
        self._reachable = reachable

    def configure_active_calls(self, count: int) -> None:
        self._active_calls = count

    def configure_delay(self, seconds: float) -> None:
        self._delay_seconds = seconds

    def configure_call_status(self, external_call_id: str, event: CanonicalEvent) -> None:
        """Answer ``fetch_call_status`` for ``external_call_id`` with ``event``."""
        self._statuses[external_call_id] = event

    def configure_resources(
        self,
        assistants: list[AssistantInfo] | None = None,
        phone_numbers: list[PhoneNumberInfo] | None = None,
        error: CallProviderError | None = None,
    ) -> None:
        """Answer the resource listings; ``error`` makes both raise."""
        self._assistants = assistants
        self._phone_numbers = phone_numbers
        self._resource_error = error

    @property
    def calls(self) -> list[CallInitiationRequest]:
        return self._calls.copy()

    def get_last_call(self) -> CallInitiationRequest | None:
        return self._calls[-1] if self._calls else None

    async def initiate_call(self, request: CallInitiationRequest) -> CallInitiationResult:
        logger.info(
            "Mock: Initiating call",
            extra={"to": request.recipient.phone, "call_id": request.correlation_id},
        )
        if self._delay_seconds:
            await anyio.sleep(self._delay_seconds)

        self._calls.append(request)
        if self._queued_failures:
            raise self._queued_failures.popleft()
        if self._failure is not None:
            raise self._failure

        external_call_id = f"MOCK_CALL_{self._next_call_id:06d}"
        self._next_call_id += 1
        return CallInitiationResult(
            external_call_id=external_call_id,
            provider_status=CallOutcome.QUEUED.value,
            raw_response={"mock": True, "call_id": request.correlation_id, "id": external_call_id},
        )

    async def probe_health(self) -> HealthProbe:
        return HealthProbe(
            healthy=self._healthy and self._reachable,
            latency_ms=0,
            detail={"mock": True},
            reachable=self._reachable,
        )

    async def count_active_calls(self) -> int:
        if not self._reachable:
            raise ProviderUnavailable("Mock provider unreachable", error_code="UNREACHABLE")
        return self._active_calls

    async def fetch_call_status(self, external_call_id: str) -> CanonicalEvent | None:
        return self._statuses.get(external_call_id)

    async def list_assistants(self) -> list[AssistantInfo] | None:
        if self._resource_error is not None:
            raise self._resource_error
        return None if self._assistants is None else list(self._assistants)

    async def list_phone_numbers(self) -> list[PhoneNumberInfo] | None:
        if self._resource_error is not None:
            raise self._resource_error
        return None if self._phone_numbers is None else list(self._phone_numbers)

    @classmethod
    def matches_payload(cls, payload: dict[str, Any]) -> bool:
        return payload.get("provider") == ProviderKind.MOCK.value

    def normalize_inbound_event(self, payload: dict[str, Any]) -> CanonicalEvent:
        try:
            outcome = CallOutcome(str(payload.get("status", "")).lower())
        except ValueError as e:
            raise WebhookParseError(
                f"Invalid status: {payload.get('status')}",
                error_code="INVALID_STATUS",
                provider_response=payload,
            ) from e

        return CanonicalEvent(
            job_correlation_id=payload.get("correlation_id"),
            external_call_id=payload.get("external_call_id"),
            outcome=outcome,
            raw_status=outcome.value,
            duration_seconds=payload.get("duration_seconds"),
            recording_url=payload.get("recording_url"),
            transcript=payload.get("transcript"),
            error_message=payload.get("error_message"),
            raw_payload=payload,
        )

    @staticmethod
    def generate_webhook_payload(
        correlation_id: str | None,
        status: CallOutcome | str = CallOutcome.COMPLETED,
        external_call_id: str | None = None,
        duration_seconds: int | None = None,
        **extra: Any,
    ) -> dict[str, Any]:
        """Build a webhook body in the mock provider's format."""
        payload: dict[str, Any] = {
            "provider": ProviderKind.MOCK.value,
            "correlation_id": correlation_id,
            "external_call_id": external_call_id,
            "status": status.value if isinstance(status, CallOutcome) else status,
        }
        if duration_seconds is not None:
            payload["duration_seconds"] = duration_seconds
        payload.update(extra)
        return payload
