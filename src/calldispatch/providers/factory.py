"""
Provider adapter factory.

``AdapterRegistry`` is the only place that branches on ``ProviderKind``: it
builds (and caches) one adapter per registry entry, and detects which kind
produced an inbound webhook body.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any

from calldispatch.providers.adapters.mock import MockCallProvider
from calldispatch.providers.adapters.synthflow import SynthflowAdapter
from calldispatch.providers.adapters.vapi import VapiAdapter
from calldispatch.providers.config import AdapterSettings, settings_from_provider
from calldispatch.providers.interface import CallProvider
from calldispatch.providers.models import Provider, ProviderKind
from calldispatch.shared.logging import get_logger

logger = get_logger(__name__)

ADAPTER_CLASSES: dict[ProviderKind, type[CallProvider]] = {
    ProviderKind.VAPI: VapiAdapter,
    ProviderKind.SYNTHFLOW: SynthflowAdapter,
    ProviderKind.MOCK: MockCallProvider,
}


def _mask(s: str | None, keep: int = 6) -> str:
    if not s:
        return ""
    if len(s) <= keep:
        return "*" * len(s)
    return f"{s[:keep]}***"


def build_adapter(kind: ProviderKind, settings: AdapterSettings | None = None) -> CallProvider:
    """Instantiate the adapter class registered for ``kind``."""
    try:
        adapter_cls = ADAPTER_CLASSES[kind]
    except KeyError:
        raise ValueError(f"Unsupported provider kind: {kind}") from None
    return adapter_cls(settings or AdapterSettings())  # type: ignore[call-arg]


class AdapterRegistry:
    """Caches live adapters per provider and parsers per kind."""

    def __init__(self) -> None:
        self._adapters: dict[int, tuple[Any, CallProvider]] = {}
        self._bound: dict[int, CallProvider] = {}
        self._parsers: dict[ProviderKind, CallProvider] = {}
        self._retired: list[CallProvider] = []

    def bind(self, provider_id: int, adapter: CallProvider) -> None:
        """Pin a ready-made adapter to a provider id (used by tests and tooling)."""
        self._bound[provider_id] = adapter

    def get(self, provider: Provider) -> CallProvider:
        """Adapter for a registry entry; rebuilt when the entry changes."""
        bound = self._bound.get(provider.id)
        if bound is not None:
            return bound

        version = provider.updated_at
        cached = self._adapters.get(provider.id)
        if cached is not None and cached[0] == version:
            return cached[1]

        settings = settings_from_provider(provider)
        logger.info(
            "Provider adapter resolved",
            extra={
                "provider_id": provider.id,
                "provider_name": provider.name,
                "provider_kind": provider.kind.value,
                "api_key": _mask(settings.api_key),
                "base_url": settings.base_url,
            },
        )
        if cached is not None:
            self._retired.append(cached[1])
        adapter = build_adapter(provider.kind, settings)
        self._adapters[provider.id] = (version, adapter)
        return adapter

    def parser_for(self, kind: ProviderKind) -> CallProvider:
        """Credential-less adapter used only to normalize inbound events."""
        parser = self._parsers.get(kind)
        if parser is None:
            parser = build_adapter(kind)
            self._parsers[kind] = parser
        return parser

    def detect_kind(self, payload: dict[str, Any]) -> ProviderKind | None:
        """Guess which provider sent ``payload`` from its shape."""
        for kind, adapter_cls in ADAPTER_CLASSES.items():
            if adapter_cls.matches_payload(payload):
                return kind
        return None

    async def close(self) -> None:
        adapters = [adapter for _, adapter in self._adapters.values()]
        adapters.extend(self._parsers.values())
        adapters.extend(self._retired)
        for adapter in adapters:
            await adapter.close()
        self._adapters.clear()
        self._parsers.clear()
        self._retired.clear()


@lru_cache(maxsize=1)
def get_adapter_registry() -> AdapterRegistry:
    """Process-wide adapter registry."""
    return AdapterRegistry()
