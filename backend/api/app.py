"""
FastAPI application factory for the Scorekeeper API service.

Creates the app with:
- REST routes (events, matches, players, corrections, quarantine, audit, tie-break)
- Middleware stack
- Health check endpoints
- Lifespan management (startup/shutdown)
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, Callable, Optional, Union

from fastapi import FastAPI
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from shared.bootstrap import EngineContext, build_context
from shared.config import get_settings
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import start_metrics_server

from api.dependencies import get_context, init_dependencies
from api.middleware import setup_middleware
from api.routes.audit import router as audit_router
from api.routes.corrections import router as corrections_router
from api.routes.events import router as events_router
from api.routes.matches import router as matches_router
from api.routes.players import router as players_router
from api.routes.quarantine import router as quarantine_router
from api.routes.tiebreak import router as tiebreak_router

logger = get_logger(__name__)

_CONNECT_RETRY_ATTEMPTS = 10
_CONNECT_RETRY_BASE_DELAY_S = 2.0


async def _connect_with_retry(connect_fn: Callable[[], Awaitable[EngineContext]], name: str) -> EngineContext:
    """Call async connect_fn(); retry with exponential backoff on connection failures."""
    for attempt in range(1, _CONNECT_RETRY_ATTEMPTS + 1):
        try:
            return await connect_fn()
        except (RedisError, SQLAlchemyError, OSError) as exc:
            if attempt == _CONNECT_RETRY_ATTEMPTS:
                raise
            delay = _CONNECT_RETRY_BASE_DELAY_S * (2 ** (attempt - 1))
            logger.warning(
                "connect_retry",
                name=name,
                attempt=attempt,
                max_attempts=_CONNECT_RETRY_ATTEMPTS,
                delay_s=delay,
                error=str(exc),
            )
            await asyncio.sleep(delay)
    raise RuntimeError(f"{name} connection attempts exhausted")


@asynccontextmanager
async def _noop_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """No-op lifespan for testing with an injected context."""
    yield


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.
    Connects Postgres and Redis, wires the engine, and closes both on shutdown.
    """
    settings = get_settings()
    setup_logging("api")
    if settings.metrics_enabled:
        start_metrics_server()

    ctx = await _connect_with_retry(lambda: build_context(settings), "engine")
    init_dependencies(ctx)
    logger.info("api_service_started", host=settings.api_host, port=settings.api_port)

    yield

    await ctx.close()
    logger.info("api_service_stopped")


def create_app(*, use_lifespan: bool = True, context: Optional[EngineContext] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Pass ``context`` (for example an in-memory one) to skip the lifespan and
    serve from already-built components.
    """
    if context is not None:
        init_dependencies(context)
        use_lifespan = False

    app = FastAPI(
        title="Scorekeeper API",
        description="Match resolution and fantasy scoring engine",
        version="1.0.0",
        lifespan=lifespan if use_lifespan else _noop_lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    setup_middleware(app)

    app.include_router(events_router)
    app.include_router(matches_router)
    app.include_router(players_router)
    app.include_router(corrections_router)
    app.include_router(quarantine_router)
    app.include_router(audit_router)
    app.include_router(tiebreak_router)

    @app.get("/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "api"}

    @app.get("/ready", tags=["system"])
    async def readiness() -> dict[str, Union[str, bool]]:
        """Readiness probe: checks downstream dependencies when they are configured."""
        ctx = get_context()
        redis_ok = ctx.redis is None
        db_ok = ctx.db is None

        if ctx.redis is not None:
            try:
                await ctx.redis.client.ping()
                redis_ok = True
            except RedisError as exc:
                logger.warning("readiness_redis_failed", error=str(exc))

        if ctx.db is not None:
            try:
                async with ctx.db.read_session() as session:
                    await session.execute(text("SELECT 1"))
                db_ok = True
            except SQLAlchemyError as exc:
                logger.warning("readiness_database_failed", error=str(exc))

        return {
            "status": "ok" if (redis_ok and db_ok) else "degraded",
            "redis": redis_ok,
            "database": db_ok,
        }

    return app


app = create_app()
