"""
SynthFlow call provider adapter.

Authenticates with ``X-API-Key``/``X-API-Secret`` headers. The job
correlation id is sent as ``metadata.externalId`` and echoed back on webhooks,
which use upper-case status names and camelCase fields.
"""

from typing import Any

from calldispatch.providers.adapters.base import HttpCallProvider, as_int, as_text
from calldispatch.providers.interface import (
    CallInitiationRequest,
    CallInitiationResult,
    CallOutcome,
    CallProviderError,
    CanonicalEvent,
    HealthProbe,
    ProviderRejected,
    WebhookParseError,
)
from calldispatch.providers.models import ProviderKind
from calldispatch.shared.logging import get_logger

logger = get_logger(__name__)

SYNTHFLOW_STATUS_MAP: dict[str, CallOutcome] = {
    "QUEUED": CallOutcome.QUEUED,
    "CONNECTING": CallOutcome.RINGING,
    "IN_PROGRESS": CallOutcome.IN_PROGRESS,
    "CONNECTED": CallOutcome.IN_PROGRESS,
    "COMPLETED": CallOutcome.COMPLETED,
    "FAILED": CallOutcome.FAILED,
    "ERROR": CallOutcome.FAILED,
    "NO_ANSWER": CallOutcome.NO_ANSWER,
    "BUSY": CallOutcome.BUSY,
    "CANCELLED": CallOutcome.CANCELED,
}

DEFAULT_MAX_DURATION_SECONDS = 600


def _nested(data: dict[str, Any], key: str, field: str) -> Any:
    value = data.get(key)
    return value.get(field) if isinstance(value, dict) else None


class SynthflowAdapter(HttpCallProvider):
    """SynthFlow REST API and webhook format."""

    kind = ProviderKind.SYNTHFLOW

    def _auth_headers(self) -> dict[str, str]:
        headers = {"X-API-Key": self._settings.api_key}
        if self._settings.api_secret:
            headers["X-API-Secret"] = self._settings.api_secret
        return headers

    def _build_call_body(self, request: CallInitiationRequest) -> dict[str, Any]:
        payload = request.payload
        metadata = dict(payload.get("metadata") or {})
        options = self._settings.options
        return {
            "destination": {
                "phoneNumber": request.recipient.phone,
                "contactName": request.recipient.name or "User",
                "email": request.recipient.email,
            },
            "conversation": {
                "scriptContent": payload.get("script", ""),
                "voiceType": payload.get("voice") or options.get("voice_type", "natural"),
                "language": metadata.get("language") or options.get("language", "en-US"),
                "allowInterruptions": True,
            },
            "settings": {
                "recordCall": True,
                "generateTranscription": True,
                "callbackUrl": request.callback_url,
                "maxDuration": metadata.get("max_duration")
                or options.get("max_duration", DEFAULT_MAX_DURATION_SECONDS),
                "fallbackMessage": metadata.get("fallback_message"),
            },
            "metadata": {
                **metadata,
                "variables": payload.get("variables") or {},
                "externalId": request.correlation_id,
            },
        }

    async def initiate_call(self, request: CallInitiationRequest) -> CallInitiationResult:
        if not request.recipient.phone:
            raise ProviderRejected("Recipient phone number is required", error_code="MISSING_PHONE")

        logger.info(
            "Initiating SynthFlow call",
            extra={"call_id": request.correlation_id, "to": request.recipient.phone},
        )
        data = await self._request("POST", "/api/calls", json=self._build_call_body(request))

        external_id = data.get("callId")
        if not external_id:
            raise ProviderRejected(
                "SynthFlow response did not include a callId",
                error_code="MISSING_CALL_ID",
                provider_response=data,
            )
        return CallInitiationResult(
            external_call_id=str(external_id),
            provider_status=str(data.get("status", "QUEUED")),
            raw_response=data,
        )

    async def probe_health(self) -> HealthProbe:
        try:
            data, latency_ms = await self._timed_get("/api/system/status")
        except CallProviderError as e:
            return self._failed_probe(e)
        return HealthProbe(
            healthy=bool(data.get("healthy")),
            latency_ms=as_int(data.get("responseTime")) or latency_ms,
            detail=data,
        )

    async def count_active_calls(self) -> int:
        data = await self._request("GET", "/api/calls/active/count")
        return as_int(data.get("count")) or 0

    async def fetch_call_status(self, external_call_id: str) -> CanonicalEvent | None:
        data = await self._request("GET", f"/api/calls/{external_call_id}")
        return self._to_event(data)

    @classmethod
    def matches_payload(cls, payload: dict[str, Any]) -> bool:
        return "callId" in payload

    def normalize_inbound_event(self, payload: dict[str, Any]) -> CanonicalEvent:
        if not payload.get("status"):
            raise WebhookParseError(
                "Missing status in SynthFlow webhook payload",
                error_code="MISSING_STATUS",
                provider_response=payload,
            )
        return self._to_event(payload)

    def _to_event(self, data: dict[str, Any]) -> CanonicalEvent:
        raw_status = str(data.get("status") or "").upper()
        outcome = SYNTHFLOW_STATUS_MAP.get(raw_status)
        if outcome is None:
            logger.warning(
                "Unknown SynthFlow call status",
                extra={"status": raw_status, "external_call_id": data.get("callId")},
            )
            outcome = CallOutcome.IN_PROGRESS

        return CanonicalEvent(
            job_correlation_id=as_text(_nested(data, "metadata", "externalId")),
            external_call_id=as_text(data.get("callId")),
            outcome=outcome,
            raw_status=raw_status,
            duration_seconds=as_int(data.get("durationSeconds")),
            recording_url=as_text(_nested(data, "recording", "url")),
            transcript=as_text(_nested(data, "transcription", "text")),
            error_message=as_text(data.get("errorMessage") or data.get("error")),
            raw_payload=data,
        )
