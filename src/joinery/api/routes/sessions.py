"""Session listing and revocation for the calling user."""

from __future__ import annotations

import uuid
from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, HTTPException

from joinery.api.deps import (
    get_client_ip,
    get_current_session_id,
    get_identity,
    get_store,
)
from joinery.api.schemas import (
    RevokedCountResponse,
    RevokeRequest,
    SessionResponse,
    SuspiciousSessionResponse,
)
from joinery.auth.context import Identity
from joinery.auth.scopes import Scope, require_scope
from joinery.storage.credential_store import AccountStore

logger = structlog.get_logger()

router = APIRouter(prefix="/sessions", tags=["sessions"])

IdentityDep = Annotated[Identity, Depends(get_identity)]
StoreDep = Annotated[AccountStore, Depends(get_store)]
CurrentSessionDep = Annotated[str | None, Depends(get_current_session_id)]
ClientIpDep = Annotated[str, Depends(get_client_ip)]


@router.get("/active")
@require_scope(Scope.READ)
async def list_active_sessions(
    identity: IdentityDep,
    store: StoreDep,
    current: CurrentSessionDep,
) -> list[SessionResponse]:
    sessions = await store.list_user_sessions(uuid.UUID(identity.subject_id))
    return [
        SessionResponse.model_validate(s).model_copy(
            update={"is_current": s.session_id == current}
        )
        for s in sessions
    ]


@router.get("/suspicious")
@require_scope(Scope.ADMIN)
async def list_suspicious_sessions(
    identity: IdentityDep, store: StoreDep
) -> list[SuspiciousSessionResponse]:
    """The caller's active sessions flagged by anomaly detection."""
    sessions = await store.list_suspicious_sessions(uuid.UUID(identity.subject_id))
    return [SuspiciousSessionResponse.model_validate(s) for s in sessions]


@router.post("/revoke-others")
@require_scope(Scope.WRITE)
async def revoke_other_sessions(
    identity: IdentityDep,
    store: StoreDep,
    current: CurrentSessionDep,
    ip_address: ClientIpDep,
    body: RevokeRequest | None = None,
) -> RevokedCountResponse:
    """Revoke every session of the caller except the one in use."""
    reason = body.reason if body else RevokeRequest().reason
    revoked = await store.revoke_user_sessions(
        uuid.UUID(identity.subject_id),
        reason,
        ip_address=ip_address,
        except_session_id=current,
    )
    logger.info("sessions_revoked", user_id=identity.subject_id, count=revoked)
    return RevokedCountResponse(revoked=revoked)


@router.post("/{session_id}/revoke", status_code=204)
@require_scope(Scope.WRITE)
async def revoke_session(
    session_id: str,
    identity: IdentityDep,
    store: StoreDep,
    ip_address: ClientIpDep,
    body: RevokeRequest | None = None,
) -> None:
    """Revoke one of the caller's sessions.

    Returns 404 if the session does not exist or belongs to someone else.
    """
    reason = body.reason if body else RevokeRequest().reason
    revoked = await store.revoke_session(
        session_id,
        reason,
        ip_address=ip_address,
        user_id=uuid.UUID(identity.subject_id),
    )
    if not revoked:
        raise HTTPException(status_code=404, detail="Session not found")
    logger.info("session_revoked", user_id=identity.subject_id)
