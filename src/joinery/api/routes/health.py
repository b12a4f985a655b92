"""Liveness and readiness probes. Never behind the security pipeline."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from joinery.api.deps import get_store
from joinery.errors import CredentialStoreError
from joinery.storage.credential_store import AccountStore

logger = structlog.get_logger()

router = APIRouter(prefix="/health", tags=["health"])

StoreDep = Annotated[AccountStore, Depends(get_store)]

HEALTH_CHECK_TIMEOUT = 5.0


def _timestamp() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


@router.get("")
async def health() -> dict[str, str]:
    """Liveness: the process is up and serving."""
    return {"status": "ok", "timestamp": _timestamp()}


@router.get("/ready")
async def ready(request: Request, store: StoreDep) -> JSONResponse:
    """Readiness: verifies the credential store and rate limit backend."""
    checks: dict[str, str] = {}
    overall = "ok"

    try:
        await asyncio.wait_for(store.ping(), timeout=HEALTH_CHECK_TIMEOUT)
        checks["db"] = "ok"
    except (TimeoutError, CredentialStoreError) as e:
        logger.warning("health_check_db_error", error=type(e).__name__)
        checks["db"] = f"error: {type(e).__name__}"
        overall = "degraded"
    except Exception as e:
        logger.error("health_check_db_unexpected", error=str(e), exc_info=True)
        checks["db"] = f"error: {type(e).__name__}"
        overall = "degraded"

    limiter = request.app.state.rate_limiter
    ping = getattr(limiter, "ping", None)
    if ping is not None:
        try:
            await asyncio.wait_for(ping(), timeout=HEALTH_CHECK_TIMEOUT)
            checks["redis"] = "ok"
        except (TimeoutError, ConnectionError, OSError) as e:
            logger.warning("health_check_redis_error", error=type(e).__name__)
            checks["redis"] = f"error: {type(e).__name__}"
            overall = "degraded"
        except Exception as e:
            logger.error("health_check_redis_unexpected", error=str(e), exc_info=True)
            checks["redis"] = f"error: {type(e).__name__}"
            overall = "degraded"

    status_code = 200 if overall == "ok" else 503
    return JSONResponse(
        status_code=status_code,
        content={"status": overall, "checks": checks, "timestamp": _timestamp()},
    )
