"""Token refresh and logout endpoints.

These live under ``/api/auth`` and are bypassed by the security pipeline,
so logout verifies its bearer token itself.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException

from joinery.api.deps import (
    get_client_ip,
    get_token_service,
    get_verified_bearer,
)
from joinery.api.schemas import (
    LogoutAllResponse,
    LogoutRequest,
    RefreshRequest,
    TokenResponse,
)
from joinery.auth.token_service import TokenService
from joinery.auth.tokens import TokenClaims
from joinery.errors import RefreshTokenError

router = APIRouter(prefix="/auth", tags=["auth"])

TokensDep = Annotated[TokenService, Depends(get_token_service)]
BearerDep = Annotated[tuple[str, TokenClaims], Depends(get_verified_bearer)]
ClientIpDep = Annotated[str, Depends(get_client_ip)]


@router.post("/refresh")
async def refresh(
    body: RefreshRequest,
    tokens: TokensDep,
    ip_address: ClientIpDep,
) -> TokenResponse:
    """Exchange a refresh token for a new token pair.

    The presented refresh token is revoked; the new one replaces it.
    """
    try:
        pair = await tokens.refresh(body.refresh_token, ip_address=ip_address)
    except RefreshTokenError as e:
        raise HTTPException(status_code=401, detail=str(e)) from None
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
        session_id=pair.session_id,
    )


@router.post("/logout", status_code=204)
async def logout(
    bearer: BearerDep,
    tokens: TokensDep,
    ip_address: ClientIpDep,
    body: LogoutRequest | None = None,
) -> None:
    access_token, claims = bearer
    await tokens.logout(
        access_token,
        claims,
        refresh_token=body.refresh_token if body else None,
        ip_address=ip_address,
    )


@router.post("/logout-all")
async def logout_all(
    bearer: BearerDep,
    tokens: TokensDep,
    ip_address: ClientIpDep,
) -> LogoutAllResponse:
    """Invalidate every refresh token and session of the caller."""
    access_token, claims = bearer
    revoked = await tokens.logout_all(access_token, claims, ip_address=ip_address)
    return LogoutAllResponse(sessions_revoked=revoked)
