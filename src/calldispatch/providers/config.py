"""
Adapter configuration derived from a provider registry entry.
"""

from dataclasses import dataclass, field
from typing import Any

from calldispatch.providers.models import Provider, ProviderKind

DEFAULT_BASE_URLS: dict[ProviderKind, str] = {
    ProviderKind.VAPI: "https://api.vapi.ai",
    ProviderKind.SYNTHFLOW: "https://api.synthflow.ai",
    ProviderKind.MOCK: "http://mock.invalid",
}


@dataclass(frozen=True)
class AdapterSettings:
    """Connection settings handed to a concrete adapter."""

    api_key: str = ""
    api_secret: str | None = None
    base_url: str | None = None
    timeout_seconds: float = 30.0
    options: dict[str, Any] = field(default_factory=dict)

    def resolved_base_url(self, kind: ProviderKind) -> str:
        return (self.base_url or DEFAULT_BASE_URLS[kind]).rstrip("/")


def settings_from_provider(provider: Provider) -> AdapterSettings:
    """Build AdapterSettings from a Provider registry entity."""
    configuration = dict(provider.configuration or {})
    timeout = float(configuration.pop("timeout_seconds", 30.0))
    return AdapterSettings(
        api_key=provider.api_key or "",
        api_secret=provider.api_secret,
        base_url=provider.base_url,
        timeout_seconds=timeout,
        options=configuration,
    )
