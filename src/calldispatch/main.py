"""
FastAPI application entry point.
"""

from __future__ import annotations

import asyncio
import hashlib
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

import calldispatch.models  # noqa: F401
from calldispatch import __version__
from calldispatch.config import get_settings
from calldispatch.dispatch.engine import DispatchEngine
from calldispatch.jobs.router import router as jobs_router
from calldispatch.providers.factory import get_adapter_registry
from calldispatch.providers.router import router as providers_router
from calldispatch.shared.database import db_manager
from calldispatch.shared.exceptions import (
    AppError,
    ConflictError,
    NotFoundError,
    QuotaExceeded,
    ValidationError,
)
from calldispatch.shared.logging import get_logger, setup_logging
from calldispatch.webhooks.router import router as webhooks_router

logger = get_logger(__name__)


def _advisory_lock_id(key: str) -> int:
    """Derive a stable signed bigint lock id from an arbitrary string key."""
    digest = hashlib.blake2b(key.encode("utf-8"), digest_size=8).digest()
    # Use 63-bit positive space to avoid signed bigint surprises.
    return int.from_bytes(digest, "big", signed=False) & 0x7FFF_FFFF_FFFF_FFFF


async def _engine_supervisor(app: FastAPI) -> None:
    """Run the dispatch engine only on the process that becomes DB lock leader.

    Keeps a single engine alive under ``uvicorn --workers N`` and multiple
    replicas. Non-PostgreSQL databases (local SQLite) run the engine directly.
    """
    settings = get_settings()
    lock_id = _advisory_lock_id(settings.engine_lock_key)
    retry_sleep = 5

    logger.info(
        "Engine supervisor starting",
        extra={"engine_enabled": settings.engine_enabled, "lock_id": lock_id},
    )

    if db_manager.engine.dialect.name != "postgresql":
        engine = DispatchEngine(db_manager.session_factory)
        app.state.dispatch_engine = engine
        await engine.run_forever()
        return

    while True:
        try:
            # Dedicated connection used to hold the advisory lock.
            async with db_manager.engine.connect() as conn:
                res = await conn.execute(
                    text("SELECT pg_try_advisory_lock(:lock_id)"),
                    {"lock_id": lock_id},
                )
                acquired = bool(res.scalar())

                if not acquired:
                    logger.info(
                        "Engine leader lock busy; standby",
                        extra={"lock_id": lock_id, "sleep_seconds": retry_sleep},
                    )
                    await asyncio.sleep(retry_sleep)
                    continue

                logger.info("Engine leader lock acquired", extra={"lock_id": lock_id})
                engine = DispatchEngine(db_manager.session_factory)
                app.state.dispatch_engine = engine
                await engine.run_forever()

        except asyncio.CancelledError:
            logger.info("Engine supervisor cancelled; stopping")
            raise
        except Exception:
            logger.exception(
                "Engine supervisor error; retrying",
                extra={"sleep_seconds": retry_sleep},
            )
            await asyncio.sleep(retry_sleep)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    setup_logging()
    settings = get_settings()

    logger.info("Application starting", extra={"env": settings.app_env})

    engine_task: asyncio.Task[None] | None = None
    if settings.engine_enabled:
        engine_task = asyncio.create_task(_engine_supervisor(app))
        app.state.engine_task = engine_task
        logger.info("Dispatch engine enabled; background task created")

    yield

    logger.info("Shutting down application")

    engine_task = getattr(app.state, "engine_task", None)
    if engine_task is not None:
        engine_task.cancel()
        try:
            await engine_task
        except asyncio.CancelledError:
            pass
        logger.info("Dispatch engine background task stopped")

    await get_adapter_registry().close()
    await db_manager.close()
    logger.info("Application shutdown complete")


def _error_response(status_code: int, exc: AppError) -> JSONResponse:
    content: dict[str, object] = {"detail": str(exc)}
    if exc.details:
        content["details"] = exc.details
    return JSONResponse(status_code=status_code, content=content)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Call Dispatch API",
        description="Outbound voice-call dispatch and orchestration engine",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # Map domain exceptions to HTTP responses
    @app.exception_handler(NotFoundError)
    async def _not_found(_: Request, exc: NotFoundError) -> JSONResponse:
        return _error_response(status.HTTP_404_NOT_FOUND, exc)

    @app.exception_handler(ValidationError)
    async def _validation(_: Request, exc: ValidationError) -> JSONResponse:
        return _error_response(status.HTTP_400_BAD_REQUEST, exc)

    @app.exception_handler(ConflictError)
    async def _conflict(_: Request, exc: ConflictError) -> JSONResponse:
        return _error_response(status.HTTP_409_CONFLICT, exc)

    @app.exception_handler(QuotaExceeded)
    async def _quota(_: Request, exc: QuotaExceeded) -> JSONResponse:
        return _error_response(status.HTTP_403_FORBIDDEN, exc)

    # Request validation (FastAPI/Pydantic) -> consistent 422 payload
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        errors = []
        for error in exc.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            errors.append(
                {
                    "field": field,
                    "message": error["msg"],
                    "type": error["type"],
                }
            )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "errors": errors,
                }
            },
        )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(providers_router)
    app.include_router(jobs_router)
    app.include_router(webhooks_router)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    return app


app = create_app()
