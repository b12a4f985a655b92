"""API key management for the calling user."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, HTTPException

from joinery.api.deps import get_client_ip, get_identity, get_store
from joinery.api.schemas import (
    ApiKeyCreatedResponse,
    ApiKeyCreateRequest,
    ApiKeyResponse,
    RevokeRequest,
)
from joinery.auth.context import AuthKind, Identity
from joinery.auth.scopes import Scope, require_scope
from joinery.storage.credential_store import AccountStore

logger = structlog.get_logger()

router = APIRouter(prefix="/api-keys", tags=["api-keys"])

IdentityDep = Annotated[Identity, Depends(get_identity)]
StoreDep = Annotated[AccountStore, Depends(get_store)]
ClientIpDep = Annotated[str, Depends(get_client_ip)]


@router.post("", status_code=201)
@require_scope(Scope.WRITE)
async def create_api_key(
    body: ApiKeyCreateRequest,
    identity: IdentityDep,
    store: StoreDep,
) -> ApiKeyCreatedResponse:
    """Create a key for the caller. The secret is returned only here.

    A caller authenticated by API key cannot mint a key with scopes it
    does not hold itself (admin keys may grant anything).
    """
    requested = {str(s) for s in body.scopes}
    if (
        identity.auth_kind is AuthKind.API_KEY
        and Scope.ADMIN not in identity.scopes
        and not requested <= identity.scopes
    ):
        raise HTTPException(
            status_code=403, detail="Cannot grant scopes beyond your own"
        )

    expires_at = (
        datetime.now(UTC) + timedelta(days=body.expires_in_days)
        if body.expires_in_days
        else None
    )
    record, raw_key = await store.create_api_key(
        uuid.UUID(identity.subject_id),
        name=body.name,
        description=body.description,
        scopes=sorted(requested),
        expires_at=expires_at,
    )
    logger.info(
        "api_key_created",
        user_id=identity.subject_id,
        key_prefix=record.key_prefix,
        scopes=record.scopes,
    )
    return ApiKeyCreatedResponse.model_validate(
        {**ApiKeyResponse.model_validate(record).model_dump(), "key": raw_key}
    )


@router.get("")
@require_scope(Scope.READ)
async def list_api_keys(
    identity: IdentityDep,
    store: StoreDep,
) -> list[ApiKeyResponse]:
    keys = await store.list_user_api_keys(uuid.UUID(identity.subject_id))
    return [ApiKeyResponse.model_validate(k) for k in keys]


@router.delete("/{key_id}", status_code=204)
@require_scope(Scope.WRITE)
async def revoke_api_key(
    key_id: uuid.UUID,
    identity: IdentityDep,
    store: StoreDep,
    ip_address: ClientIpDep,
    body: RevokeRequest | None = None,
) -> None:
    """Revoke one of the caller's keys.

    Returns 404 if the key does not exist, belongs to someone else,
    or is already revoked.
    """
    reason = body.reason if body else RevokeRequest().reason
    revoked = await store.revoke_api_key(
        key_id, uuid.UUID(identity.subject_id), reason, ip_address=ip_address
    )
    if not revoked:
        raise HTTPException(status_code=404, detail="API key not found")
    logger.info("api_key_revoked", user_id=identity.subject_id, key_id=str(key_id))
