"""Ordered request security pipeline.

Stages run strictly in this order and share one :class:`RequestContext`:

1. session validation
2. authentication (API key, or bearer structure plus blacklist)
3. bearer verification
4. scope authorization
5. rate limiting

Each stage returns ``None`` to continue or a terminal response. Identity
and session stages fail closed with 401; the rate limit stage fails open.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import structlog
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.routing import Match

from joinery.auth.authenticator import Authenticator, AuthOutcome
from joinery.auth.context import AuthKind, Identity
from joinery.auth.credentials import extract_bearer_token
from joinery.auth.rate_limiting import RateLimitResult, RateLimitService, is_rate_limit_exempt
from joinery.auth.revocation import RevocationChecker
from joinery.auth.scopes import is_public, is_scope_satisfied, required_scope_of
from joinery.auth.sessions import SessionOutcome, SessionValidator
from joinery.auth.tokens import TokenClaims, read_claims, verify_access_token
from joinery.config import Settings
from joinery.errors import InvalidTokenError
from joinery.storage.credential_store import CredentialStore

logger = structlog.get_logger()

AUTHENTICATION_REQUIRED = "Authentication required"
INVALID_TOKEN = "Invalid token"

BYPASS_PREFIXES: tuple[str, ...] = ("/api/auth", "/api/health")
PROTECTED_PREFIX = "/api"


@dataclass
class RequestContext:
    """Per-request state handed from stage to stage."""

    request: Request
    claimed_session_id: str | None = None
    session_id: str | None = None
    bearer_token: str | None = None
    claims: TokenClaims | None = None
    identity: Identity | None = None
    rate_limit: RateLimitResult | None = None

    @property
    def path(self) -> str:
        return self.request.url.path


Stage = Callable[[RequestContext], Awaitable[Response | None]]


def is_bypassed(path: str) -> bool:
    return path.startswith(BYPASS_PREFIXES)


def is_protected(path: str) -> bool:
    return path == PROTECTED_PREFIX or path.startswith(PROTECTED_PREFIX + "/")


def unauthorized(message: str) -> Response:
    return PlainTextResponse(message, status_code=401)


def forbidden(message: str) -> Response:
    return PlainTextResponse(message, status_code=403)


def match_endpoint(request: Request) -> Callable[..., Any] | None:
    """Endpoint of the route that fully matches this request, if any."""
    router = getattr(request.app, "router", None)
    for route in getattr(router, "routes", ()):
        match, child_scope = route.matches(request.scope)
        if match is Match.FULL:
            return child_scope.get("endpoint")
    return None


class SecurityPipeline:
    """Composes the five security stages over injected collaborators."""

    def __init__(
        self,
        store: CredentialStore,
        rate_limits: RateLimitService,
        *,
        jwt_secret: str,
        jwt_issuer: str,
        jwt_audience: str,
        session_idle_timeout: timedelta | None = None,
    ) -> None:
        self._sessions = SessionValidator(store, idle_timeout=session_idle_timeout)
        self._authenticator = Authenticator(store, RevocationChecker(store))
        self._rate_limits = rate_limits
        self._jwt_secret = jwt_secret
        self._jwt_issuer = jwt_issuer
        self._jwt_audience = jwt_audience
        self.stages: Sequence[Stage] = (
            self.validate_session,
            self.authenticate,
            self.verify_bearer,
            self.authorize,
            self.rate_limit,
        )

    @classmethod
    def from_settings(
        cls, store: CredentialStore, rate_limits: RateLimitService, settings: Settings
    ) -> SecurityPipeline:
        idle = settings.session_idle_timeout_minutes
        return cls(
            store,
            rate_limits,
            jwt_secret=settings.jwt_secret_key.get_secret_value(),
            jwt_issuer=settings.jwt_issuer,
            jwt_audience=settings.jwt_audience,
            session_idle_timeout=timedelta(minutes=idle) if idle else None,
        )

    async def run(self, request: Request) -> tuple[RequestContext, Response | None]:
        context = RequestContext(request)
        if is_bypassed(context.path):
            return context, None

        for stage in self.stages:
            response = await stage(context)
            if response is not None:
                return context, response
        return context, None

    async def validate_session(self, context: RequestContext) -> Response | None:
        # The session stage runs before authentication, so a session id
        # carried inside the bearer token is read without verification.
        bearer = extract_bearer_token(context.request)
        if bearer:
            try:
                context.claimed_session_id = read_claims(bearer).session_id
            except InvalidTokenError:
                context.claimed_session_id = None

        check = await self._sessions.validate(
            context.request, context.claimed_session_id
        )
        if check.outcome is SessionOutcome.REJECTED:
            return unauthorized(check.reason or AUTHENTICATION_REQUIRED)
        context.session_id = check.session_id
        return None

    async def authenticate(self, context: RequestContext) -> Response | None:
        result = await self._authenticator.authenticate(context.request)
        if result.outcome is AuthOutcome.REJECTED:
            return unauthorized(result.reason or AUTHENTICATION_REQUIRED)
        if result.outcome is AuthOutcome.AUTHENTICATED:
            context.identity = result.identity
        else:
            context.bearer_token = result.bearer_token
            context.claims = result.claims
        return None

    async def verify_bearer(self, context: RequestContext) -> Response | None:
        if context.identity is not None or context.bearer_token is None:
            return None

        try:
            claims = verify_access_token(
                context.bearer_token,
                secret=self._jwt_secret,
                issuer=self._jwt_issuer,
                audience=self._jwt_audience,
            )
        except InvalidTokenError as e:
            logger.warning("bearer_token_invalid", reason=str(e), path=context.path)
            return unauthorized(INVALID_TOKEN)

        context.claims = claims
        context.identity = Identity(
            subject_id=claims.subject_id,
            username=claims.username,
            email=claims.email,
            auth_kind=AuthKind.BEARER,
            scopes=claims.scopes,
            session_id=context.session_id or claims.session_id,
        )
        return None

    async def authorize(self, context: RequestContext) -> Response | None:
        endpoint = match_endpoint(context.request)
        required = required_scope_of(endpoint)
        identity = context.identity

        if identity is None:
            needs_identity = required is not None or (
                is_protected(context.path) and not is_public(endpoint)
            )
            if needs_identity:
                logger.info("authentication_required", path=context.path)
                return unauthorized(AUTHENTICATION_REQUIRED)
            return None

        if not is_scope_satisfied(identity, required):
            logger.warning(
                "scope_denied",
                user_id=identity.subject_id,
                required=required,
                granted=sorted(identity.scopes),
                path=context.path,
            )
            return forbidden(f"Insufficient scope. Required: {required}")
        return None

    async def rate_limit(self, context: RequestContext) -> Response | None:
        if is_rate_limit_exempt(context.path):
            return None

        try:
            result = await self._rate_limits.check(context.request, context.identity)
        except Exception:
            logger.exception("rate_limiter_error", path=context.path)
            return None

        context.rate_limit = result
        if result is not None and not result.allowed:
            return JSONResponse(
                status_code=429, content=result.error_body(), headers=result.headers()
            )
        return None
