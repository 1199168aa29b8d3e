"""
Vapi call provider adapter.

Outbound calls go to ``POST /v1/calls`` with Bearer auth; the job correlation
id travels in ``assistant_options.server_call_metadata.system_call_id`` and
comes back as ``metadata.system_call_id`` on webhooks.
"""

from typing import Any

from calldispatch.providers.adapters.base import HttpCallProvider, as_int, as_text
from calldispatch.providers.interface import (
    AssistantInfo,
    CallInitiationRequest,
    CallInitiationResult,
    CallOutcome,
    CallProviderError,
    CanonicalEvent,
    HealthProbe,
    PhoneNumberInfo,
    ProviderRejected,
    WebhookParseError,
)
from calldispatch.providers.models import ProviderKind
from calldispatch.shared.logging import get_logger

logger = get_logger(__name__)

VAPI_STATUS_MAP: dict[str, CallOutcome] = {
    "queued": CallOutcome.QUEUED,
    "ringing": CallOutcome.RINGING,
    "in-progress": CallOutcome.IN_PROGRESS,
    "forwarding": CallOutcome.IN_PROGRESS,
    "completed": CallOutcome.COMPLETED,
    "ended": CallOutcome.COMPLETED,
    "failed": CallOutcome.FAILED,
    "busy": CallOutcome.BUSY,
    "no-answer": CallOutcome.NO_ANSWER,
    "canceled": CallOutcome.CANCELED,
}


def _items(data: dict[str, Any], key: str) -> list[dict[str, Any]]:
    """List body under ``key``, or a bare JSON array."""
    items = data.get(key)
    if items is None:
        items = data.get("data")
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


class VapiAdapter(HttpCallProvider):
    """Vapi REST API and webhook format."""

    kind = ProviderKind.VAPI

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._settings.api_key}"}

    def _build_call_body(self, request: CallInitiationRequest) -> dict[str, Any]:
        payload = request.payload
        recipient = request.recipient
        name_parts = (recipient.name or "").split()
        metadata = dict(payload.get("metadata") or {})

        body: dict[str, Any] = {
            "recipient": {"phone_number": recipient.phone},
            "assistant": {
                "assistant_id": payload.get("assistant_id")
                or self._settings.options.get("assistant_id"),
                "first_name": name_parts[0] if name_parts else "User",
                "last_name": " ".join(name_parts[1:]),
            },
            "assistant_options": {
                "prompt": payload.get("script", ""),
                "interruptions_enabled": True,
                "endpointing_sensitivity": metadata.get("endpointing_sensitivity", "medium"),
                "server_call_metadata": {
                    **metadata,
                    "system_call_id": request.correlation_id,
                    "variable_values": payload.get("variables") or {},
                },
            },
            "record": True,
            "transcribe": True,
            "webhook_url": request.callback_url,
        }
        if payload.get("voice"):
            body["assistant"]["voice_id"] = payload["voice"]
        phone_number_id = payload.get("phone_number_id") or self._settings.options.get(
            "phone_number_id"
        )
        if phone_number_id:
            body["phone_number_id"] = phone_number_id
        return body

    async def initiate_call(self, request: CallInitiationRequest) -> CallInitiationResult:
        """Initiate an outbound call via Vapi.

        Args:
            request: Call initiation request.

        Returns:
            Result with the Vapi call id.

        Raises:
            ProviderRejected: Missing phone number or a 4xx from Vapi.
            ProviderUnavailable: Network failure, timeout or 5xx/429.
        """
        if not request.recipient.phone:
            raise ProviderRejected("Recipient phone number is required", error_code="MISSING_PHONE")

        logger.info(
            "Initiating Vapi call",
            extra={"call_id": request.correlation_id, "to": request.recipient.phone},
        )
        data = await self._request("POST", "/v1/calls", json=self._build_call_body(request))

        external_id = data.get("id")
        if not external_id:
            raise ProviderRejected(
                "Vapi response did not include a call id",
                error_code="MISSING_CALL_ID",
                provider_response=data,
            )
        return CallInitiationResult(
            external_call_id=str(external_id),
            provider_status=str(data.get("status", "queued")),
            raw_response=data,
        )

    async def probe_health(self) -> HealthProbe:
        try:
            data, latency_ms = await self._timed_get("/health")
        except CallProviderError as e:
            return self._failed_probe(e)
        return HealthProbe(
            healthy=data.get("status") == "OK",
            latency_ms=as_int(data.get("latency")) or latency_ms,
            detail=data,
        )

    async def count_active_calls(self) -> int:
        data = await self._request("GET", "/v1/calls", params={"status": "in-progress", "limit": 1})
        meta = data.get("meta") or {}
        return as_int(meta.get("total")) or 0

    async def fetch_call_status(self, external_call_id: str) -> CanonicalEvent | None:
        data = await self._request("GET", f"/v1/calls/{external_call_id}")
        return self._event_from_call(data, correlation_id=None)

    async def list_assistants(self) -> list[AssistantInfo]:
        data = await self._request("GET", "/v1/assistants")
        return [
            AssistantInfo(
                external_id=str(item["id"]),
                name=str(item.get("name") or item["id"]),
                description=as_text(item.get("description")),
                voice_id=as_text(item.get("voice_id")),
            )
            for item in _items(data, "assistants")
            if item.get("id")
        ]

    async def list_phone_numbers(self) -> list[PhoneNumberInfo]:
        data = await self._request("GET", "/v1/phone-numbers")
        numbers: list[PhoneNumberInfo] = []
        for item in _items(data, "phone_numbers"):
            if not item.get("id") or not item.get("phone_number"):
                continue
            capabilities = item.get("capabilities")
            numbers.append(
                PhoneNumberInfo(
                    external_id=str(item["id"]),
                    number=str(item["phone_number"]),
                    is_active=str(item.get("status") or "active").lower() == "active",
                    capabilities=capabilities if isinstance(capabilities, dict) else None,
                )
            )
        return numbers

    @classmethod
    def matches_payload(cls, payload: dict[str, Any]) -> bool:
        return "call_id" in payload

    def normalize_inbound_event(self, payload: dict[str, Any]) -> CanonicalEvent:
        """Parse a Vapi webhook body into a CanonicalEvent.

        Raises:
            WebhookParseError: If ``status`` is missing.
        """
        if not payload.get("status"):
            raise WebhookParseError(
                "Missing status in Vapi webhook payload",
                error_code="MISSING_STATUS",
                provider_response=payload,
            )
        metadata = payload.get("metadata") or {}
        correlation_id = metadata.get("system_call_id") if isinstance(metadata, dict) else None
        return self._event_from_call(
            {**payload, "id": payload.get("call_id")},
            correlation_id=correlation_id,
        )

    def _event_from_call(self, data: dict[str, Any], correlation_id: str | None) -> CanonicalEvent:
        raw_status = str(data.get("status") or "").lower()
        outcome = VAPI_STATUS_MAP.get(raw_status)
        if outcome is None:
            logger.warning(
                "Unknown Vapi call status",
                extra={"status": raw_status, "external_call_id": data.get("id")},
            )
            outcome = CallOutcome.IN_PROGRESS

        return CanonicalEvent(
            job_correlation_id=as_text(correlation_id),
            external_call_id=str(data["id"]) if data.get("id") else None,
            outcome=outcome,
            raw_status=raw_status,
            duration_seconds=as_int(data.get("duration")),
            recording_url=as_text(data.get("recording_url")),
            transcript=as_text(data.get("transcript")),
            error_message=as_text(data.get("error") or data.get("ended_reason")),
            raw_payload=data,
        )
