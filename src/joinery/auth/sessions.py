"""Session liveness validation and anomaly detection.

Sessions are optional reinforcement on top of token authentication: a
request without a session identifier passes through untouched. When an
identifier is presented it must resolve to an active, unexpired session,
and any failure to check it is a rejection (fail closed).

Anomaly detection is informational. It appends reasons to the session's
suspicion log but never invalidates the session or blocks the request.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum

import structlog
from starlette.requests import Request

from joinery.auth.credentials import client_ip, extract_session_id, user_agent
from joinery.auth.tokens import generate_session_id
from joinery.errors import SessionLimitExceededError
from joinery.logging_config import mask_credential
from joinery.storage.credential_store import AccountStore, CredentialStore
from joinery.storage.orm import UserSession

logger = structlog.get_logger()

SESSION_INVALID = "Session has expired or is invalid"
SESSION_CHECK_FAILED = "Session validation failed"

RECENT_SESSION_WINDOW = timedelta(hours=1)
RECENT_SESSION_THRESHOLD = 3
BURST_WINDOW = timedelta(minutes=10)
BURST_ACTIVITY_THRESHOLD = 100


class SessionOutcome(StrEnum):
    ABSENT = "absent"
    VALID = "valid"
    REJECTED = "rejected"


@dataclass(frozen=True)
class SessionCheck:
    outcome: SessionOutcome
    session_id: str | None = None
    user_id: uuid.UUID | None = None
    reason: str | None = None


def detect_anomalies(
    session: UserSession,
    *,
    ip_address: str,
    user_agent: str,
    recent_session_count: int,
    now: datetime,
) -> list[str]:
    """Compare a request against what the session recorded at login."""
    reasons: list[str] = []

    if session.ip_address and session.ip_address != ip_address:
        reasons.append(f"IP address changed from {session.ip_address} to {ip_address}")

    if session.user_agent and session.user_agent != user_agent:
        reasons.append("User agent changed")

    if recent_session_count > RECENT_SESSION_THRESHOLD:
        reasons.append("Multiple concurrent sessions created within short timeframe")

    if (
        session.activity_count > BURST_ACTIVITY_THRESHOLD
        and session.created_at > now - BURST_WINDOW
    ):
        reasons.append("Unusually high activity rate")

    return reasons


class SessionValidator:
    """First pipeline stage: validate a presented session, if any."""

    def __init__(
        self,
        store: CredentialStore,
        *,
        idle_timeout: timedelta | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._store = store
        self._idle_timeout = idle_timeout
        self._clock = clock

    async def validate(
        self, request: Request, claimed_session_id: str | None = None
    ) -> SessionCheck:
        session_id = extract_session_id(request, claimed_session_id)
        if not session_id:
            return SessionCheck(SessionOutcome.ABSENT)

        log = logger.bind(
            session=mask_credential(session_id), path=request.url.path
        )
        try:
            record = await self._store.find_session(session_id)
            now = self._clock()
            if record is None or not record.is_valid(now) or self._is_idle(record, now):
                log.warning("session_invalid")
                return SessionCheck(
                    SessionOutcome.REJECTED, session_id=session_id, reason=SESSION_INVALID
                )

            await self._store.touch_session_activity(session_id)
            await self._record_anomalies(record, request, now, log)
            return SessionCheck(
                SessionOutcome.VALID, session_id=session_id, user_id=record.user_id
            )
        except Exception:
            log.exception("session_validation_error")
            return SessionCheck(
                SessionOutcome.REJECTED,
                session_id=session_id,
                reason=SESSION_CHECK_FAILED,
            )

    def _is_idle(self, record: UserSession, now: datetime) -> bool:
        if not self._idle_timeout:
            return False
        return now - record.last_activity_at > self._idle_timeout

    async def _record_anomalies(
        self,
        record: UserSession,
        request: Request,
        now: datetime,
        log: structlog.stdlib.BoundLogger,
    ) -> None:
        recent = await self._store.count_recent_sessions(
            record.user_id, now - RECENT_SESSION_WINDOW
        )
        reasons = detect_anomalies(
            record,
            ip_address=client_ip(request),
            user_agent=user_agent(request),
            recent_session_count=recent,
            now=now,
        )
        if not reasons:
            return
        joined = "; ".join(reasons)
        await self._store.append_session_suspicion(record.session_id, joined)
        log.warning(
            "session_anomaly_detected", user_id=str(record.user_id), reasons=joined
        )


async def open_session(
    store: AccountStore,
    *,
    user_id: uuid.UUID,
    ip_address: str | None,
    user_agent: str | None,
    login_method: str,
    lifetime: timedelta,
    max_concurrent: int,
    device_info: str | None = None,
) -> UserSession:
    """Create a session for a freshly authenticated user.

    Raises:
        SessionLimitExceededError: the user already holds ``max_concurrent``
            active sessions.
    """
    if await store.count_active_sessions(user_id) >= max_concurrent:
        logger.warning("session_limit_exceeded", user_id=str(user_id))
        raise SessionLimitExceededError(str(user_id), max_concurrent)

    now = datetime.now(UTC)
    session = UserSession(
        session_id=generate_session_id(),
        user_id=user_id,
        ip_address=ip_address,
        user_agent=user_agent,
        device_info=device_info,
        login_method=login_method,
        is_active=True,
        is_suspicious=False,
        activity_count=0,
        created_at=now,
        last_activity_at=now,
        expires_at=now + lifetime,
    )
    created = await store.create_session(session)
    logger.info(
        "session_created", user_id=str(user_id), ip=ip_address, method=login_method
    )
    return created
