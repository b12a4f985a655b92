"""FastAPI application with lifespan management."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from joinery.api.middleware import RequestLoggingMiddleware, SecurityMiddleware
from joinery.api.pipeline import SecurityPipeline
from joinery.api.routes.api_keys import router as api_keys_router
from joinery.api.routes.auth import router as auth_router
from joinery.api.routes.health import router as health_router
from joinery.api.routes.sessions import router as sessions_router
from joinery.auth.rate_limiter import InMemoryRateLimiter, RateLimiter, RedisRateLimiter
from joinery.auth.rate_limiting import RateLimitService
from joinery.auth.token_service import TokenService
from joinery.config import RateLimitBackend, Settings, get_settings
from joinery.logging_config import configure_logging
from joinery.storage.credential_store import AccountStore, SqlCredentialStore

logger = structlog.get_logger()

CLEANUP_INTERVAL_SECONDS = 300


def build_rate_limiter(settings: Settings) -> RateLimiter:
    if settings.rate_limit_backend == RateLimitBackend.REDIS:
        return RedisRateLimiter.from_url(settings.redis_url)
    return InMemoryRateLimiter()


async def _maintenance_loop(limiter: RateLimiter, store: AccountStore) -> None:
    """Periodic cleanup of expired rate limit entries and blacklist rows."""
    while True:
        await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)
        try:
            cleaned = await limiter.cleanup()
            if cleaned:
                logger.debug("rate_limiter_cleanup", keys_removed=cleaned)
        except Exception:
            logger.exception("rate_limiter_cleanup_error")
        try:
            pruned = await store.prune_expired_blacklist()
            if pruned:
                logger.debug("blacklist_pruned", rows_removed=pruned)
        except Exception:
            logger.exception("blacklist_prune_error")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Manage application startup and shutdown.

    Startup:
        - Configure logging.
        - Start the maintenance task.
    Shutdown:
        - Cancel the maintenance task.
        - Close the Redis client and dispose the database engine, if owned.
    """
    settings: Settings = app.state.settings
    configure_logging(
        environment=str(settings.environment),
        log_level=settings.log_level,
    )
    maintenance = asyncio.create_task(
        _maintenance_loop(app.state.rate_limiter, app.state.store)
    )
    logger.info(
        "app_started",
        environment=str(settings.environment),
        rate_limit_backend=str(settings.rate_limit_backend),
    )
    yield

    maintenance.cancel()
    if isinstance(app.state.rate_limiter, RedisRateLimiter):
        await app.state.rate_limiter.aclose()
    if app.state.owns_engine:
        from joinery.storage.database import engine

        await engine.dispose()
    logger.info("app_stopped")


async def unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Catch-all handler for unhandled exceptions."""
    logger.error("unhandled_exception", exc_info=exc, path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


def create_app(
    *,
    store: AccountStore | None = None,
    limiter: RateLimiter | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Assemble the application around injected collaborators.

    Without an explicit ``store`` the PostgreSQL-backed store is used and
    its engine is disposed on shutdown.
    """
    settings = settings or get_settings()
    owns_engine = store is None
    if store is None:
        from joinery.storage.database import async_session

        store = SqlCredentialStore(async_session)
    limiter = limiter or build_rate_limiter(settings)

    app = FastAPI(
        title="Joinery Server",
        description="Multi-tenant API with layered request security",
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.is_dev,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.rate_limiter = limiter
    app.state.owns_engine = owns_engine
    app.state.token_service = TokenService(store, settings)

    rate_limits = RateLimitService.from_settings(limiter, settings)
    pipeline = SecurityPipeline.from_settings(store, rate_limits, settings)
    app.state.pipeline = pipeline

    # Last added runs first: CORS, then logging, then security.
    app.add_middleware(SecurityMiddleware, pipeline=pipeline)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_allowed_methods,
        allow_headers=settings.cors_allowed_headers,
    )
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix="/api")
    app.include_router(auth_router, prefix="/api")
    app.include_router(api_keys_router, prefix="/api")
    app.include_router(sessions_router, prefix="/api")
    return app


app = create_app()
