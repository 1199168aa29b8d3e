"""
Shared HTTP plumbing for REST-based call provider adapters.
"""

import time
from typing import Any

import httpx

from calldispatch.providers.config import AdapterSettings
from calldispatch.providers.interface import (
    CallProvider,
    CallProviderError,
    HealthProbe,
    ProviderUnavailable,
    classify_http_status,
)
from calldispatch.shared.logging import get_logger

logger = get_logger(__name__)

# error_code for transport-level failures (DNS, connect, read timeout)
UNREACHABLE = "UNREACHABLE"


class HttpCallProvider(CallProvider):
    """Base adapter owning an ``httpx.AsyncClient`` and error classification."""

    def __init__(
        self,
        settings: AdapterSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize adapter.

        Args:
            settings: Credentials and connection options.
            http_client: Optional pre-built client (tests inject one backed by
                ``httpx.MockTransport``).
        """
        self._settings = settings or AdapterSettings()
        self._base_url = self._settings.resolved_base_url(self.kind)
        self._client = http_client
        self._owns_client = http_client is None

    def _auth_headers(self) -> dict[str, str]:
        return {}

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers={"Content-Type": "application/json", **self._auth_headers()},
                timeout=self._settings.timeout_seconds,
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """Send a request and return the decoded JSON body.

        Raises:
            ProviderRejected: 4xx other than 429.
            ProviderUnavailable: 429, 5xx, timeouts and transport errors.
        """
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            error_data: dict[str, Any] = {}
            try:
                body = e.response.json()
                error_data = body if isinstance(body, dict) else {"body": body}
            except ValueError:
                error_data = {"body": e.response.text}

            error_cls = classify_http_status(e.response.status_code)
            logger.error(
                "Provider API error",
                extra={
                    "provider_kind": self.kind.value,
                    "path": path,
                    "status_code": e.response.status_code,
                    "error": error_data,
                },
            )
            raise error_cls(
                message=f"{self.kind.value} API error: {e.response.status_code}",
                error_code=str(e.response.status_code),
                provider_response=error_data,
            ) from e
        except httpx.RequestError as e:
            logger.error(
                "Provider request failed",
                extra={"provider_kind": self.kind.value, "path": path, "error": str(e)},
            )
            raise ProviderUnavailable(
                message=f"{self.kind.value} request failed: {e}",
                error_code=UNREACHABLE,
            ) from e

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderUnavailable(
                message=f"{self.kind.value} returned a non-JSON body",
                error_code="INVALID_RESPONSE",
            ) from e
        return data if isinstance(data, dict) else {"data": data}

    async def _timed_get(self, path: str) -> tuple[dict[str, Any], int]:
        started = time.perf_counter()
        data = await self._request("GET", path)
        return data, int((time.perf_counter() - started) * 1000)

    def _failed_probe(self, error: CallProviderError) -> HealthProbe:
        """Probe result for a health endpoint that errored."""
        return HealthProbe(
            healthy=False,
            detail={"error": error.message, "error_code": error.error_code},
            reachable=error.error_code != UNREACHABLE,
        )


def as_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def as_text(value: Any) -> str | None:
    return None if value is None else str(value)
