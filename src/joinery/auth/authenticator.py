"""Dual-credential authentication: API key or bearer token.

Exactly one strategy runs per request. An API key, if presented anywhere,
wins and its failure is final; it never falls through to bearer handling.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

import structlog
from starlette.requests import Request

from joinery.auth.context import AuthKind, Identity
from joinery.auth.credentials import (
    client_ip,
    extract_api_key,
    extract_bearer_token,
)
from joinery.auth.keys import is_well_formed
from joinery.auth.revocation import RevocationChecker, TokenKind
from joinery.auth.tokens import TokenClaims, read_claims
from joinery.errors import InvalidTokenError
from joinery.logging_config import mask_credential
from joinery.storage.credential_store import CredentialStore

logger = structlog.get_logger()

INVALID_API_KEY = "Invalid or expired API key"
TOKEN_REVOKED = "Token has been revoked"
INVALID_TOKEN_FORMAT = "Invalid token format"
AUTHENTICATION_ERROR = "Authentication error"


class AuthOutcome(StrEnum):
    AUTHENTICATED = "authenticated"
    REJECTED = "rejected"
    NOT_ATTEMPTED = "not_attempted"


@dataclass(frozen=True)
class AuthResult:
    """Outcome of the authentication stage.

    ``bearer_token``/``claims`` are set when a well-formed, non-revoked bearer
    value was found; its cryptographic verification happens afterwards.
    """

    outcome: AuthOutcome
    identity: Identity | None = None
    reason: str | None = None
    bearer_token: str | None = None
    claims: TokenClaims | None = None

    @classmethod
    def authenticated(cls, identity: Identity) -> AuthResult:
        return cls(AuthOutcome.AUTHENTICATED, identity=identity)

    @classmethod
    def rejected(cls, reason: str) -> AuthResult:
        return cls(AuthOutcome.REJECTED, reason=reason)

    @classmethod
    def not_attempted(
        cls,
        *,
        bearer_token: str | None = None,
        claims: TokenClaims | None = None,
    ) -> AuthResult:
        return cls(
            AuthOutcome.NOT_ATTEMPTED, bearer_token=bearer_token, claims=claims
        )


class Authenticator:
    """Resolve the caller from an API key or a bearer token."""

    def __init__(self, store: CredentialStore, revocation: RevocationChecker) -> None:
        self._store = store
        self._revocation = revocation

    async def authenticate(self, request: Request) -> AuthResult:
        api_key = extract_api_key(request)
        if api_key:
            return await self._authenticate_api_key(api_key, request)

        bearer = extract_bearer_token(request)
        if bearer:
            return await self._check_bearer(bearer, request)

        return AuthResult.not_attempted()

    async def _authenticate_api_key(self, api_key: str, request: Request) -> AuthResult:
        log = logger.bind(
            key_prefix=mask_credential(api_key, 12), path=request.url.path
        )
        try:
            if not is_well_formed(api_key):
                log.warning("api_key_rejected", reason="malformed")
                return AuthResult.rejected(INVALID_API_KEY)

            record = await self._store.find_api_key_by_secret(api_key)
            now = datetime.now(UTC)
            if (
                record is None
                or not record.is_usable(now)
                or not record.user.is_active
            ):
                log.warning("api_key_rejected", reason="unknown_or_unusable")
                return AuthResult.rejected(INVALID_API_KEY)

            await self._store.touch_api_key_usage(record.id, client_ip(request))

            identity = Identity(
                subject_id=str(record.user_id),
                username=record.user.username,
                email=record.user.email,
                auth_kind=AuthKind.API_KEY,
                scopes=record.scope_set,
                api_key_id=str(record.id),
            )
            log.debug("api_key_authenticated", user_id=identity.subject_id)
            return AuthResult.authenticated(identity)
        except Exception:
            log.exception("api_key_authentication_error")
            return AuthResult.rejected(AUTHENTICATION_ERROR)

    async def _check_bearer(self, token: str, request: Request) -> AuthResult:
        """Structural check plus blacklist lookup; no signature check here."""
        try:
            if await self._revocation.is_blacklisted(token, TokenKind.ACCESS):
                logger.warning("token_blacklisted", path=request.url.path)
                return AuthResult.rejected(TOKEN_REVOKED)

            try:
                claims = read_claims(token)
            except InvalidTokenError as e:
                logger.warning(
                    "bearer_token_malformed", reason=str(e), path=request.url.path
                )
                return AuthResult.rejected(INVALID_TOKEN_FORMAT)

            return AuthResult.not_attempted(bearer_token=token, claims=claims)
        except Exception:
            logger.exception("bearer_token_check_error", path=request.url.path)
            return AuthResult.rejected(AUTHENTICATION_ERROR)
