"""
Tests for the job submission API.
"""

from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calldispatch.billing.models import UserCallUsage
from calldispatch.dispatch.engine import DispatchEngine
from calldispatch.jobs.models import JobStatus
from calldispatch.providers.interface import AssistantInfo, PhoneNumberInfo

from conftest import load_job

# The API runs on the system clock, so allowances here never expire.


async def _grant_calls(
    session_factory: async_sessionmaker[AsyncSession],
    owner_id: str = "owner-1",
    calls_remaining: int = 5,
) -> None:
    async with session_factory() as session:
        session.add(UserCallUsage(owner_id=owner_id, calls_remaining=calls_remaining, minutes_remaining=60))
        await session.commit()


def _job_body(**overrides) -> dict:
    body = {
        "owner_id": "owner-1",
        "recipient": {"phone": "+14155551234", "name": "Ada", "email": "ada@example.com"},
        "template_id": "default",
        "variables": {"name": "Ada", "message": "Your order shipped."},
    }
    body.update(overrides)
    return body


class TestSubmitJob:
    @pytest.mark.asyncio
    async def test_submit_creates_pending_job(
        self,
        api_client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await _grant_calls(session_factory)

        response = await api_client.post("/api/jobs", json=_job_body(priority=2))

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == JobStatus.PENDING.value
        assert data["priority"] == 2
        assert data["attempt_count"] == 0
        assert len(data["call_id"]) == 32

    @pytest.mark.asyncio
    async def test_no_allowance_is_403(self, api_client: AsyncClient) -> None:
        response = await api_client.post("/api/jobs", json=_job_body())

        assert response.status_code == 403
        assert response.json()["details"]["remaining_calls"] == 0

    @pytest.mark.asyncio
    async def test_past_schedule_is_400(
        self,
        api_client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await _grant_calls(session_factory)
        past = datetime.now(timezone.utc) - timedelta(hours=1)

        response = await api_client.post("/api/jobs", json=_job_body(scheduled_at=past.isoformat()))

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_future_schedule_is_kept(
        self,
        api_client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await _grant_calls(session_factory)
        future = datetime.now(timezone.utc) + timedelta(hours=2)

        response = await api_client.post("/api/jobs", json=_job_body(scheduled_at=future.isoformat()))

        assert response.status_code == 201
        assert response.json()["scheduled_at"] is not None

    @pytest.mark.asyncio
    async def test_unknown_template_is_404(
        self,
        api_client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await _grant_calls(session_factory)

        response = await api_client.post("/api/jobs", json=_job_body(template_id="missing"))

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_unknown_pinned_provider_is_400(
        self,
        api_client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await _grant_calls(session_factory)

        response = await api_client.post("/api/jobs", json=_job_body(pinned_provider_id=999))

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_invalid_priority_is_422(self, api_client: AsyncClient) -> None:
        response = await api_client.post("/api/jobs", json=_job_body(priority=11))

        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_synced_assistant_and_number_flow_into_payload(
        self,
        api_client: AsyncClient,
        engine: DispatchEngine,
        session_factory: async_sessionmaker[AsyncSession],
        make_provider,
    ) -> None:
        await _grant_calls(session_factory)
        _, adapter = await make_provider()
        adapter.configure_resources(
            assistants=[AssistantInfo("asst_sales", "Sales")],
            phone_numbers=[PhoneNumberInfo("pn_1", "+14155550100")],
        )
        await engine.sync_resources_once()

        response = await api_client.post(
            "/api/jobs",
            json=_job_body(assistant_id="asst_sales", phone_number_id="pn_1"),
        )

        assert response.status_code == 201
        job = await load_job(session_factory, response.json()["id"])
        assert job.payload["assistant_id"] == "asst_sales"
        assert job.payload["phone_number_id"] == "pn_1"

    @pytest.mark.asyncio
    async def test_unsynced_phone_number_is_400(
        self,
        api_client: AsyncClient,
        engine: DispatchEngine,
        session_factory: async_sessionmaker[AsyncSession],
        make_provider,
    ) -> None:
        await _grant_calls(session_factory)
        _, adapter = await make_provider()
        adapter.configure_resources(phone_numbers=[PhoneNumberInfo("pn_off", "+14155550100", is_active=False)])
        await engine.sync_resources_once()

        inactive = await api_client.post("/api/jobs", json=_job_body(phone_number_id="pn_off"))
        unknown = await api_client.post("/api/jobs", json=_job_body(assistant_id="asst_missing"))

        assert inactive.status_code == 400
        assert inactive.json()["details"]["phone_number_id"] == "pn_off"
        assert unknown.status_code == 400

    @pytest.mark.asyncio
    async def test_resource_must_belong_to_pinned_provider(
        self,
        api_client: AsyncClient,
        engine: DispatchEngine,
        session_factory: async_sessionmaker[AsyncSession],
        make_provider,
    ) -> None:
        await _grant_calls(session_factory)
        _, owner = await make_provider("owner")
        pinned, _ = await make_provider("pinned", priority=2)
        owner.configure_resources(assistants=[AssistantInfo("asst_1", "Support")])
        await engine.sync_resources_once()

        response = await api_client.post(
            "/api/jobs",
            json=_job_body(assistant_id="asst_1", pinned_provider_id=pinned.id),
        )

        assert response.status_code == 400


class TestJobLifecycleApi:
    @pytest.mark.asyncio
    async def test_get_and_cancel(
        self,
        api_client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await _grant_calls(session_factory)
        job_id = (await api_client.post("/api/jobs", json=_job_body())).json()["id"]

        fetched = await api_client.get(f"/api/jobs/{job_id}")
        assert fetched.status_code == 200
        assert fetched.json()["id"] == job_id

        canceled = await api_client.post(f"/api/jobs/{job_id}/cancel")
        assert canceled.status_code == 200
        assert canceled.json()["status"] == JobStatus.CANCELED.value
        assert canceled.json()["last_error"] == "Canceled by user"

        again = await api_client.post(f"/api/jobs/{job_id}/cancel")
        assert again.status_code == 409

    @pytest.mark.asyncio
    async def test_unknown_job_is_404(self, api_client: AsyncClient) -> None:
        response = await api_client.get("/api/jobs/424242")

        assert response.status_code == 404
