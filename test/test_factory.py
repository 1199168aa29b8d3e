"""Tests for adapter construction and webhook kind detection."""

from datetime import datetime, timezone

import pytest

from calldispatch.providers.adapters.mock import MockCallProvider
from calldispatch.providers.adapters.synthflow import SynthflowAdapter
from calldispatch.providers.adapters.vapi import VapiAdapter
from calldispatch.providers.config import settings_from_provider
from calldispatch.providers.factory import AdapterRegistry, _mask, build_adapter
from calldispatch.providers.models import Provider, ProviderKind


def _provider(kind: ProviderKind = ProviderKind.VAPI, **overrides) -> Provider:
    values = dict(
        id=7,
        name="vapi-main",
        kind=kind,
        api_key="sk_live_1234567890",
        api_secret=None,
        base_url="https://vapi.internal",
        configuration={"timeout_seconds": 5, "assistant_id": "asst_1"},
        updated_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )
    values.update(overrides)
    return Provider(**values)


class TestBuildAdapter:
    @pytest.mark.parametrize(
        ("kind", "cls"),
        [
            (ProviderKind.VAPI, VapiAdapter),
            (ProviderKind.SYNTHFLOW, SynthflowAdapter),
            (ProviderKind.MOCK, MockCallProvider),
        ],
    )
    def test_kind_to_class(self, kind: ProviderKind, cls: type) -> None:
        assert isinstance(build_adapter(kind), cls)

    def test_settings_from_provider(self) -> None:
        settings = settings_from_provider(_provider())

        assert settings.api_key == "sk_live_1234567890"
        assert settings.timeout_seconds == 5.0
        assert settings.options == {"assistant_id": "asst_1"}
        assert settings.resolved_base_url(ProviderKind.VAPI) == "https://vapi.internal"

    def test_mask(self) -> None:
        assert _mask("sk_live_1234567890") == "sk_liv***"
        assert _mask("abc") == "***"
        assert _mask(None) == ""


class TestAdapterRegistry:
    def test_adapter_cached_until_provider_changes(self) -> None:
        registry = AdapterRegistry()
        provider = _provider()

        first = registry.get(provider)
        assert registry.get(provider) is first

        provider.updated_at = datetime(2025, 2, 1, tzinfo=timezone.utc)
        assert registry.get(provider) is not first

    def test_bound_adapter_wins(self) -> None:
        registry = AdapterRegistry()
        adapter = MockCallProvider()
        registry.bind(7, adapter)

        assert registry.get(_provider()) is adapter

    @pytest.mark.parametrize(
        ("payload", "kind"),
        [
            ({"call_id": "v1", "status": "ended"}, ProviderKind.VAPI),
            ({"callId": "s1", "status": "COMPLETED"}, ProviderKind.SYNTHFLOW),
            ({"provider": "mock", "status": "completed"}, ProviderKind.MOCK),
            ({"foo": "bar"}, None),
        ],
    )
    def test_detect_kind(self, payload: dict, kind: ProviderKind | None) -> None:
        assert AdapterRegistry().detect_kind(payload) == kind

    @pytest.mark.asyncio
    async def test_close_clears_cache(self) -> None:
        registry = AdapterRegistry()
        first = registry.get(_provider())

        await registry.close()

        assert registry.get(_provider()) is not first
