"""
Administrative API for the provider registry.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from calldispatch.providers.models import Provider, ProviderAvailability, ProviderKind
from calldispatch.providers.repository import ProviderRepository
from calldispatch.providers.schemas import (
    AssistantResponse,
    AvailabilityResponse,
    CallResourcesResponse,
    PhoneNumberResponse,
    ProviderCreate,
    ProviderResponse,
    ProviderUpdate,
)
from calldispatch.shared.database import get_db_session
from calldispatch.shared.exceptions import ConflictError, NotFoundError
from calldispatch.shared.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/providers", tags=["providers"])

_NULLABLE_FIELDS = frozenset({"api_secret", "base_url"})


def get_provider_repository(
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> ProviderRepository:
    """Dependency for provider repository."""
    return ProviderRepository(session)


def _to_response(provider: Provider, availability: ProviderAvailability | None) -> ProviderResponse:
    return ProviderResponse(
        id=provider.id,
        name=provider.name,
        kind=provider.kind,
        concurrency_limit=provider.concurrency_limit,
        priority=provider.priority,
        is_active=provider.is_active,
        has_api_key=bool(provider.api_key),
        base_url=provider.base_url,
        created_at=provider.created_at,
        updated_at=provider.updated_at,
        availability=(
            AvailabilityResponse(
                health=availability.health,
                current_in_flight=availability.current_in_flight,
                available_slots=availability.available_slots(provider.concurrency_limit),
                latency_ms=availability.latency_ms,
                last_probe_at=availability.last_probe_at,
            )
            if availability is not None
            else None
        ),
    )


async def _load(repo: ProviderRepository, provider_id: int) -> Provider:
    provider = await repo.get_by_id(provider_id)
    if provider is None:
        raise NotFoundError(f"Provider {provider_id} not found")
    return provider


@router.get("", response_model=list[ProviderResponse])
async def list_providers(
    repo: Annotated[ProviderRepository, Depends(get_provider_repository)],
) -> list[ProviderResponse]:
    providers = await repo.list_all()
    return [_to_response(p, await repo.get_availability(p.id)) for p in providers]


@router.get("/resources", response_model=CallResourcesResponse)
async def list_call_resources(
    repo: Annotated[ProviderRepository, Depends(get_provider_repository)],
    provider_id: int | None = None,
    kind: ProviderKind | None = None,
) -> CallResourcesResponse:
    """Synced assistants and caller numbers of active providers."""
    providers = {p.id: p for p in await repo.list_active()}
    if provider_id is not None:
        if provider_id not in providers:
            raise NotFoundError(f"Provider {provider_id} not found or inactive")
        providers = {provider_id: providers[provider_id]}
    if kind is not None:
        providers = {pid: p for pid, p in providers.items() if p.kind == kind}

    assistants = [a for a in await repo.list_assistants(provider_id) if a.provider_id in providers]
    phone_numbers = [n for n in await repo.list_phone_numbers(provider_id) if n.provider_id in providers]
    return CallResourcesResponse(
        assistants=[AssistantResponse.model_validate(a) for a in assistants],
        phone_numbers=[PhoneNumberResponse.model_validate(n) for n in phone_numbers],
    )


@router.get("/{provider_id}", response_model=ProviderResponse)
async def get_provider(
    provider_id: int,
    repo: Annotated[ProviderRepository, Depends(get_provider_repository)],
) -> ProviderResponse:
    provider = await _load(repo, provider_id)
    return _to_response(provider, await repo.get_availability(provider_id))


@router.post(
    "",
    response_model=ProviderResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"description": "Provider name already registered"}},
)
async def create_provider(
    data: ProviderCreate,
    repo: Annotated[ProviderRepository, Depends(get_provider_repository)],
) -> ProviderResponse:
    """Register a provider. It stays offline until the next probe."""
    if await repo.get_by_name(data.name) is not None:
        raise ConflictError(f"Provider {data.name} already exists")

    provider = await repo.create(**data.model_dump())
    logger.info(
        "Provider registered",
        extra={"provider_id": provider.id, "provider_name": provider.name, "provider_kind": provider.kind.value},
    )
    return _to_response(provider, await repo.get_availability(provider.id))


@router.patch("/{provider_id}", response_model=ProviderResponse)
async def update_provider(
    provider_id: int,
    data: ProviderUpdate,
    repo: Annotated[ProviderRepository, Depends(get_provider_repository)],
) -> ProviderResponse:
    provider = await _load(repo, provider_id)
    changes = {
        key: value
        for key, value in data.model_dump(exclude_unset=True).items()
        if value is not None or key in _NULLABLE_FIELDS
    }
    provider = await repo.update(provider, **changes)
    logger.info(
        "Provider updated",
        extra={"provider_id": provider_id, "fields": sorted(changes)},
    )
    return _to_response(provider, await repo.get_availability(provider_id))
