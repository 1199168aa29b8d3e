"""
Tests for the provider registry API.
"""

import pytest
from httpx import AsyncClient

from calldispatch.providers.models import HealthStatus


def _provider_body(**overrides) -> dict:
    body = {
        "name": "vapi-main",
        "kind": "vapi",
        "concurrency_limit": 5,
        "priority": 2,
        "api_key": "sk_live_secret",
        "configuration": {"assistant_id": "asst_1"},
    }
    body.update(overrides)
    return body


class TestProviderRegistryApi:
    @pytest.mark.asyncio
    async def test_create_starts_offline_and_hides_key(self, api_client: AsyncClient) -> None:
        response = await api_client.post("/api/providers", json=_provider_body())

        assert response.status_code == 201
        data = response.json()
        assert data["kind"] == "vapi"
        assert data["has_api_key"] is True
        assert "api_key" not in data
        assert data["availability"]["health"] == HealthStatus.OFFLINE.value
        assert data["availability"]["available_slots"] == 5

    @pytest.mark.asyncio
    async def test_duplicate_name_is_409(self, api_client: AsyncClient) -> None:
        await api_client.post("/api/providers", json=_provider_body())

        response = await api_client.post("/api/providers", json=_provider_body())

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_unknown_kind_is_422(self, api_client: AsyncClient) -> None:
        response = await api_client.post("/api/providers", json=_provider_body(kind="twilio"))

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_list_and_get(self, api_client: AsyncClient) -> None:
        created = (await api_client.post("/api/providers", json=_provider_body())).json()
        await api_client.post("/api/providers", json=_provider_body(name="synthflow-eu", kind="synthflow"))

        listed = await api_client.get("/api/providers")
        fetched = await api_client.get(f"/api/providers/{created['id']}")

        assert listed.status_code == 200
        assert {p["name"] for p in listed.json()} == {"vapi-main", "synthflow-eu"}
        assert fetched.json()["name"] == "vapi-main"

    @pytest.mark.asyncio
    async def test_get_unknown_is_404(self, api_client: AsyncClient) -> None:
        response = await api_client.get("/api/providers/999")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_patch_updates_only_given_fields(self, api_client: AsyncClient) -> None:
        created = (
            await api_client.post("/api/providers", json=_provider_body(base_url="https://vapi.internal"))
        ).json()

        response = await api_client.patch(
            f"/api/providers/{created['id']}",
            json={"concurrency_limit": 12, "priority": None, "base_url": None},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["concurrency_limit"] == 12
        assert data["priority"] == 2
        assert data["base_url"] is None
        assert data["has_api_key"] is True
