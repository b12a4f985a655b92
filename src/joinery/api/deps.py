"""FastAPI dependency injection."""

from __future__ import annotations

from typing import cast

import structlog
from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from joinery.auth.authenticator import AUTHENTICATION_ERROR, TOKEN_REVOKED
from joinery.auth.context import Identity
from joinery.auth.credentials import client_ip
from joinery.auth.token_service import TokenService
from joinery.auth.tokens import TokenClaims
from joinery.errors import CredentialStoreError, InvalidTokenError
from joinery.storage.credential_store import AccountStore

__all__ = [
    "get_client_ip",
    "get_current_session_id",
    "get_identity",
    "get_store",
    "get_token_service",
    "get_verified_bearer",
]

logger = structlog.get_logger()

bearer_scheme = HTTPBearer(auto_error=False)


async def get_identity(request: Request) -> Identity:
    """Identity attached by the security pipeline.

    Raises:
        HTTPException 401: no identity on the request (bypassed path).
    """
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return cast(Identity, identity)


async def get_current_session_id(request: Request) -> str | None:
    return getattr(request.state, "session_id", None)


async def get_client_ip(request: Request) -> str:
    return client_ip(request)


async def get_store(request: Request) -> AccountStore:
    """Retrieve the credential store from app state.

    Initialized in ``create_app``.
    """
    return cast(AccountStore, request.app.state.store)


async def get_token_service(request: Request) -> TokenService:
    return cast(TokenService, request.app.state.token_service)


_bearer = Security(bearer_scheme)
_token_service = Depends(get_token_service)


async def get_verified_bearer(
    credentials: HTTPAuthorizationCredentials | None = _bearer,
    tokens: TokenService = _token_service,
) -> tuple[str, TokenClaims]:
    """Verify the bearer token on routes the pipeline does not cover.

    Signature, expiry and blacklist are all checked; a store failure
    rejects the token.

    Raises:
        HTTPException 401: missing, invalid or revoked bearer token.
    """
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        claims = tokens.verify(credentials.credentials)
    except InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token") from None
    try:
        revoked = await tokens.is_revoked(credentials.credentials)
    except CredentialStoreError:
        logger.exception("bearer_revocation_check_failed")
        raise HTTPException(status_code=401, detail=AUTHENTICATION_ERROR) from None
    if revoked:
        raise HTTPException(status_code=401, detail=TOKEN_REVOKED)
    return credentials.credentials, claims
