"""
FastAPI router for inbound provider call events.

Providers post call status changes here. The body is normalized by the
matching adapter into a ``CanonicalEvent`` and applied by the completion
reconciler in the request's transaction.

Status codes tell the provider whether to redeliver:
- 200: processed, a progress update, or a duplicate/stale delivery
- 400: body cannot be parsed or carries no correlation id
- 404: no job matches the event
- 500: internal error; the transaction is rolled back
"""

from functools import lru_cache
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from calldispatch.billing.usage import sql_usage_ledger_factory
from calldispatch.dispatch.config import get_dispatch_config
from calldispatch.dispatch.reconciler import CompletionReconciler, ReconcileStatus
from calldispatch.dispatch.retry import RetryManager, RetryPolicy
from calldispatch.providers.availability import AvailabilityTracker
from calldispatch.providers.factory import AdapterRegistry, get_adapter_registry
from calldispatch.providers.interface import CallProviderError
from calldispatch.providers.models import ProviderKind
from calldispatch.shared.database import get_database_manager, get_db_session
from calldispatch.shared.logging import correlation_scope, get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks/calls", tags=["webhooks"])


@lru_cache(maxsize=1)
def get_reconciler() -> CompletionReconciler:
    """Reconciler for webhook requests; stateless apart from its collaborators."""
    config = get_dispatch_config()
    tracker = AvailabilityTracker(
        get_database_manager().session_factory,
        get_adapter_registry(),
        probe_timeout_seconds=config.probe_timeout_seconds,
    )
    retry_manager = RetryManager(
        tracker,
        RetryPolicy(max_retries=config.max_retries, base_delay_seconds=config.retry_base_delay_seconds),
    )
    return CompletionReconciler(tracker, retry_manager, sql_usage_ledger_factory())


async def _read_payload(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be a JSON object")
    return payload


async def _handle(
    kind: ProviderKind,
    payload: dict[str, Any],
    adapters: AdapterRegistry,
    reconciler: CompletionReconciler,
    session: AsyncSession,
) -> dict[str, Any]:
    try:
        event = adapters.parser_for(kind).normalize_inbound_event(payload)
    except CallProviderError as exc:
        logger.warning(
            "Unparseable provider event",
            extra={"provider_kind": kind.value, "error": exc.message, "error_code": exc.error_code},
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)

    if not event.job_correlation_id and not event.external_call_id:
        logger.warning("Provider event without correlation id", extra={"provider_kind": kind.value})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing correlation id")

    with correlation_scope(event.job_correlation_id or event.external_call_id):
        try:
            result = await reconciler.handle_event(session, event)
        except Exception:
            await session.rollback()
            logger.exception(
                "Failed to apply provider event",
                extra={"provider_kind": kind.value, "outcome": event.outcome.value},
            )
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to process event",
            )

        if result.status == ReconcileStatus.UNKNOWN:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown call")

        logger.info(
            "Provider event handled",
            extra={
                "provider_kind": kind.value,
                "outcome": event.outcome.value,
                "result": result.status.value,
                "job_id": result.job_id,
            },
        )
    return {
        "ok": True,
        "result": result.status.value,
        "job_id": result.job_id,
        "job_status": result.job_status.value if result.job_status else None,
    }


@router.post("", status_code=status.HTTP_200_OK)
async def receive_call_event(
    request: Request,
    adapters: Annotated[AdapterRegistry, Depends(get_adapter_registry)],
    reconciler: Annotated[CompletionReconciler, Depends(get_reconciler)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> dict[str, Any]:
    """Shared endpoint; the provider is recognized from the body shape."""
    payload = await _read_payload(request)
    kind = adapters.detect_kind(payload)
    if kind is None:
        logger.warning("Could not detect provider for event", extra={"keys": sorted(payload)[:20]})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unrecognized event format")
    return await _handle(kind, payload, adapters, reconciler, session)


@router.post("/{kind}", status_code=status.HTTP_200_OK)
async def receive_provider_call_event(
    kind: str,
    request: Request,
    adapters: Annotated[AdapterRegistry, Depends(get_adapter_registry)],
    reconciler: Annotated[CompletionReconciler, Depends(get_reconciler)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> dict[str, Any]:
    """Per-provider endpoint used as the callback URL at initiation."""
    try:
        provider_kind = ProviderKind(kind)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown provider kind: {kind}")
    payload = await _read_payload(request)
    return await _handle(provider_kind, payload, adapters, reconciler, session)
