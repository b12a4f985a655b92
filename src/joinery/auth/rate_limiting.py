"""Tiered rate limit policy: who is asking, for what, under which budget."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog
from starlette.requests import Request

from joinery.auth.context import AuthLevel, Identity, auth_level_of
from joinery.auth.credentials import client_ip
from joinery.auth.rate_limiter import RateLimiter
from joinery.config import RateLimitPolicy, Settings

logger = structlog.get_logger()

EXEMPT_PATH_PREFIXES: tuple[str, ...] = (
    "/docs",
    "/redoc",
    "/openapi.json",
    "/static",
    "/favicon.ico",
    "/swagger",
)


def matching_prefix(path: str, prefixes: Iterable[str]) -> str | None:
    """Longest prefix of ``path`` among ``prefixes``, matched on segment bounds."""
    best: str | None = None
    for prefix in prefixes:
        base = prefix.rstrip("/")
        if path != base and not path.startswith(base + "/"):
            continue
        if best is None or len(base) > len(best.rstrip("/")):
            best = prefix
    return best


def is_rate_limit_exempt(path: str) -> bool:
    """Documentation and static asset paths are never counted."""
    return path.startswith(EXEMPT_PATH_PREFIXES)


def client_id_for(request: Request, identity: Identity | None) -> str:
    if identity is not None:
        return f"user:{identity.subject_id}"
    return f"ip:{client_ip(request)}"


@dataclass(frozen=True)
class RateLimitResult:
    """Per-request rate limit outcome, exposed on ``request.state.rate_limit``."""

    client_id: str
    endpoint: str
    auth_level: AuthLevel
    limit: int
    remaining: int
    reset_time: datetime
    retry_after: int
    allowed: bool
    window_seconds: int

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_time.timestamp())),
            "X-RateLimit-Policy": f"{self.limit};w={self.window_seconds}",
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers

    def error_body(self) -> dict[str, Any]:
        return {
            "error": "rate_limit_exceeded",
            "message": (
                f"Rate limit exceeded. Try again in {self.retry_after} seconds."
            ),
            "details": {
                "limit": self.limit,
                "remaining": self.remaining,
                "reset_time": self.reset_time.isoformat(),
                "retry_after_seconds": self.retry_after,
                "client_id": self.client_id,
                "endpoint": self.endpoint,
                "auth_level": str(self.auth_level),
            },
        }


class RateLimitService:
    """Select a budget for the caller and charge one request against it.

    Budgets are keyed per caller, per endpoint and per tier, so a caller
    exhausting one endpoint keeps its budget elsewhere.
    """

    def __init__(
        self,
        limiter: RateLimiter,
        *,
        tiers: Mapping[AuthLevel, RateLimitPolicy],
        endpoint_overrides: Mapping[str, Mapping[AuthLevel, RateLimitPolicy]]
        | None = None,
    ) -> None:
        self._limiter = limiter
        self._tiers = dict(tiers)
        self._overrides = {k: dict(v) for k, v in (endpoint_overrides or {}).items()}

    @classmethod
    def from_settings(cls, limiter: RateLimiter, settings: Settings) -> RateLimitService:
        return cls(
            limiter,
            tiers=settings.rate_limit_tiers,
            endpoint_overrides=settings.rate_limit_endpoint_overrides,
        )

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter

    def policy_for(self, level: AuthLevel, path: str) -> RateLimitPolicy | None:
        """Longest matching path-prefix override first, then the tier default."""
        prefix = matching_prefix(path, self._overrides)
        override = self._overrides[prefix].get(level) if prefix else None
        if override is not None:
            return override
        return self._tiers.get(level)

    async def check(
        self, request: Request, identity: Identity | None
    ) -> RateLimitResult | None:
        """Charge the request; ``None`` when the tier is unlimited.

        Limiter faults propagate; the caller decides to fail open.
        """
        level = auth_level_of(identity)
        endpoint = request.url.path
        policy = self.policy_for(level, endpoint)
        if policy is None or policy.limit == 0:
            return None

        client_id = client_id_for(request, identity)
        hit = await self._limiter.hit(
            f"{client_id}:{endpoint}:{level}", policy.limit, policy.window_seconds
        )
        result = RateLimitResult(
            client_id=client_id,
            endpoint=endpoint,
            auth_level=level,
            limit=hit.limit,
            remaining=hit.remaining,
            reset_time=datetime.fromtimestamp(hit.reset_at, tz=UTC),
            retry_after=hit.retry_after,
            allowed=hit.allowed,
            window_seconds=policy.window_seconds,
        )
        if not result.allowed:
            logger.warning(
                "rate_limit_exceeded",
                client_id=client_id,
                endpoint=endpoint,
                auth_level=str(level),
                limit=result.limit,
                retry_after=result.retry_after,
            )
        return result
