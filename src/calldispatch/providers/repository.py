"""
Repository for provider registry database operations.
"""

from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from calldispatch.providers.interface import AssistantInfo, PhoneNumberInfo
from calldispatch.providers.models import (
    Provider,
    ProviderAssistant,
    ProviderAvailability,
    ProviderPhoneNumber,
)


class ProviderRepository:
    """Repository for provider registry entries."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: Async database session.
        """
        self._session = session

    async def get_by_id(self, provider_id: int) -> Provider | None:
        stmt = select(Provider).where(Provider.id == provider_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_name(self, name: str) -> Provider | None:
        stmt = select(Provider).where(Provider.name == name)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_all(self) -> Sequence[Provider]:
        stmt = select(Provider).order_by(Provider.priority.asc(), Provider.id.asc())
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def list_active(self) -> Sequence[Provider]:
        stmt = (
            select(Provider)
            .where(Provider.is_active.is_(True))
            .order_by(Provider.priority.asc(), Provider.id.asc())
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def create(self, **values: Any) -> Provider:
        """Create a provider together with its (offline) availability row."""
        provider = Provider(**values)
        self._session.add(provider)
        await self._session.flush()
        self._session.add(ProviderAvailability(provider_id=provider.id))
        await self._session.flush()
        await self._session.refresh(provider)
        return provider

    async def update(self, provider: Provider, **values: Any) -> Provider:
        for key, value in values.items():
            setattr(provider, key, value)
        await self._session.flush()
        await self._session.refresh(provider)
        return provider

    async def get_availability(self, provider_id: int) -> ProviderAvailability | None:
        stmt = (
            select(ProviderAvailability)
            .where(ProviderAvailability.provider_id == provider_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_assistants(
        self,
        provider_id: int | None = None,
        active_only: bool = True,
    ) -> Sequence[ProviderAssistant]:
        stmt = select(ProviderAssistant).order_by(ProviderAssistant.provider_id, ProviderAssistant.name)
        if provider_id is not None:
            stmt = stmt.where(ProviderAssistant.provider_id == provider_id)
        if active_only:
            stmt = stmt.where(ProviderAssistant.is_active.is_(True))
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def list_phone_numbers(
        self,
        provider_id: int | None = None,
        active_only: bool = True,
    ) -> Sequence[ProviderPhoneNumber]:
        stmt = select(ProviderPhoneNumber).order_by(ProviderPhoneNumber.provider_id, ProviderPhoneNumber.number)
        if provider_id is not None:
            stmt = stmt.where(ProviderPhoneNumber.provider_id == provider_id)
        if active_only:
            stmt = stmt.where(ProviderPhoneNumber.is_active.is_(True))
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def find_active_assistant(
        self,
        external_id: str,
        provider_id: int | None = None,
    ) -> ProviderAssistant | None:
        stmt = select(ProviderAssistant).where(
            ProviderAssistant.external_id == external_id,
            ProviderAssistant.is_active.is_(True),
        )
        if provider_id is not None:
            stmt = stmt.where(ProviderAssistant.provider_id == provider_id)
        result = await self._session.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    async def find_active_phone_number(
        self,
        external_id: str,
        provider_id: int | None = None,
    ) -> ProviderPhoneNumber | None:
        stmt = select(ProviderPhoneNumber).where(
            ProviderPhoneNumber.external_id == external_id,
            ProviderPhoneNumber.is_active.is_(True),
        )
        if provider_id is not None:
            stmt = stmt.where(ProviderPhoneNumber.provider_id == provider_id)
        result = await self._session.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    async def sync_assistants(
        self,
        provider_id: int,
        assistants: Iterable[AssistantInfo],
        synced_at: datetime,
    ) -> int:
        """Upsert the provider's assistants and deactivate the ones it no longer lists.

        Returns:
            Number of distinct assistants the provider listed.
        """
        rows = {a.external_id: a for a in await self.list_assistants(provider_id, active_only=False)}
        seen: set[str] = set()
        for info in assistants:
            row = rows.get(info.external_id)
            if row is None:
                row = ProviderAssistant(provider_id=provider_id, external_id=info.external_id, created_at=synced_at)
                self._session.add(row)
                rows[info.external_id] = row
            row.name = info.name
            row.description = info.description
            row.voice_id = info.voice_id
            row.is_active = True
            row.synced_at = synced_at
            seen.add(info.external_id)

        for external_id, row in rows.items():
            if external_id not in seen:
                row.is_active = False
        await self._session.flush()
        return len(seen)

    async def sync_phone_numbers(
        self,
        provider_id: int,
        phone_numbers: Iterable[PhoneNumberInfo],
        synced_at: datetime,
    ) -> int:
        """Same as ``sync_assistants`` for caller numbers; the provider's status wins."""
        rows = {p.external_id: p for p in await self.list_phone_numbers(provider_id, active_only=False)}
        seen: set[str] = set()
        for info in phone_numbers:
            row = rows.get(info.external_id)
            if row is None:
                row = ProviderPhoneNumber(provider_id=provider_id, external_id=info.external_id, created_at=synced_at)
                self._session.add(row)
                rows[info.external_id] = row
            row.number = info.number
            row.capabilities = info.capabilities
            row.is_active = info.is_active
            row.synced_at = synced_at
            seen.add(info.external_id)

        for external_id, row in rows.items():
            if external_id not in seen:
                row.is_active = False
        await self._session.flush()
        return len(seen)
