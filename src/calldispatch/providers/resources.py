"""
Provider resource sync.

Mirrors each active provider's assistants and caller numbers into local
tables so submissions can be checked against them and clients can list
them. Listings the adapter does not support are skipped. One provider
failing never stops the others.
"""

from dataclasses import dataclass

import anyio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calldispatch.providers.factory import AdapterRegistry
from calldispatch.providers.models import Provider
from calldispatch.providers.repository import ProviderRepository
from calldispatch.shared.clock import Clock, default_clock
from calldispatch.shared.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ResourceSyncResult:
    """What one provider's sync stored; None means not listed."""

    provider_id: int
    assistants: int | None = None
    phone_numbers: int | None = None
    errors: list[str] | None = None


class ResourceSync:
    """Refreshes ``provider_assistants`` and ``provider_phone_numbers``."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        adapters: AdapterRegistry,
        timeout_seconds: float = 30.0,
        clock: Clock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._adapters = adapters
        self._timeout = timeout_seconds
        self._clock = clock or default_clock()

    async def sync(self) -> list[ResourceSyncResult]:
        async with self._session_factory() as session:
            providers = list(await ProviderRepository(session).list_active())

        results: list[ResourceSyncResult] = []
        for provider in providers:
            try:
                results.append(await self._sync_provider(provider))
            except Exception as exc:
                logger.exception("Resource sync failed", extra={"provider_id": provider.id})
                results.append(ResourceSyncResult(provider.id, errors=[str(exc)]))

        logger.info(
            "Provider resources synced",
            extra={
                "providers": len(results),
                "failed": sum(1 for r in results if r.errors),
            },
        )
        return results

    async def _sync_provider(self, provider: Provider) -> ResourceSyncResult:
        adapter = self._adapters.get(provider)
        result = ResourceSyncResult(provider.id)
        errors: list[str] = []

        assistants = await self._fetch(provider, "assistants", adapter.list_assistants, errors)
        phone_numbers = await self._fetch(provider, "phone_numbers", adapter.list_phone_numbers, errors)

        if assistants is not None or phone_numbers is not None:
            now = self._clock.now()
            async with self._session_factory() as session:
                repo = ProviderRepository(session)
                if assistants is not None:
                    result.assistants = await repo.sync_assistants(provider.id, assistants, now)
                if phone_numbers is not None:
                    result.phone_numbers = await repo.sync_phone_numbers(provider.id, phone_numbers, now)
                await session.commit()

        if errors:
            result.errors = errors
        logger.info(
            "Provider resources refreshed",
            extra={
                "provider_id": provider.id,
                "assistants": result.assistants,
                "phone_numbers": result.phone_numbers,
            },
        )
        return result

    async def _fetch(self, provider, resource, listing, errors):
        # A failed listing leaves the stored rows as they were.
        try:
            with anyio.fail_after(self._timeout):
                return await listing()
        except TimeoutError:
            errors.append(f"{resource}: timed out")
            logger.warning(
                "Provider resource listing timed out",
                extra={"provider_id": provider.id, "resource": resource},
            )
        except Exception as exc:
            errors.append(f"{resource}: {exc}")
            logger.warning(
                "Provider resource listing failed",
                extra={"provider_id": provider.id, "resource": resource, "error": str(exc)},
            )
        return None
