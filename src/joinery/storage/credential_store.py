"""Credential store: API keys, blacklisted tokens, refresh tokens and sessions.

The security pipeline depends only on the :class:`CredentialStore` protocol.
:class:`SqlCredentialStore` is the PostgreSQL implementation; it owns its
sessions (one short transaction per call) so it can be shared by every
in-flight request. All mutations are single ``UPDATE``/``INSERT`` statements
evaluated by the database, never read-modify-write in Python, so concurrent
requests cannot lose each other's updates.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Protocol

from sqlalchemy import delete, exists, func, select, text, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from joinery.auth.keys import format_scopes, generate_api_key, hash_api_key
from joinery.errors import CredentialStoreError
from joinery.storage.orm import (
    ApiKey,
    BlacklistedToken,
    RefreshToken,
    User,
    UserSession,
)

SUSPICION_SEPARATOR = "; "


class CredentialStore(Protocol):
    """Queries and narrow commands used by the request pipeline."""

    async def find_api_key_by_secret(self, raw_key: str) -> ApiKey | None: ...

    async def touch_api_key_usage(
        self, key_id: uuid.UUID, ip_address: str | None
    ) -> None: ...

    async def is_blacklisted(self, token_hash: str, kind: str) -> bool: ...

    async def find_session(self, session_id: str) -> UserSession | None: ...

    async def touch_session_activity(self, session_id: str) -> None: ...

    async def append_session_suspicion(self, session_id: str, reason: str) -> None: ...

    async def count_recent_sessions(
        self, user_id: uuid.UUID, since: datetime
    ) -> int: ...


class AccountStore(CredentialStore, Protocol):
    """Full store surface used by token issuance and management routes."""

    async def ping(self) -> None: ...

    async def find_user(self, user_id: uuid.UUID) -> User | None: ...

    async def blacklist_token(
        self,
        token_hash: str,
        kind: str,
        *,
        expires_at: datetime,
        user_id: uuid.UUID | None = None,
        reason: str | None = None,
        ip_address: str | None = None,
    ) -> None: ...

    async def prune_expired_blacklist(self) -> int: ...

    async def count_active_sessions(self, user_id: uuid.UUID) -> int: ...

    async def create_session(self, session: UserSession) -> UserSession: ...

    async def list_user_sessions(
        self, user_id: uuid.UUID, *, active_only: bool = True
    ) -> Sequence[UserSession]: ...

    async def list_suspicious_sessions(
        self, user_id: uuid.UUID
    ) -> Sequence[UserSession]: ...

    async def revoke_session(
        self,
        session_id: str,
        reason: str,
        *,
        ip_address: str | None = None,
        user_id: uuid.UUID | None = None,
    ) -> bool: ...

    async def revoke_user_sessions(
        self,
        user_id: uuid.UUID,
        reason: str,
        *,
        ip_address: str | None = None,
        except_session_id: str | None = None,
    ) -> int: ...

    async def create_api_key(
        self,
        user_id: uuid.UUID,
        *,
        name: str,
        description: str | None = None,
        scopes: Sequence[str] = ("read",),
        expires_at: datetime | None = None,
    ) -> tuple[ApiKey, str]: ...

    async def list_user_api_keys(self, user_id: uuid.UUID) -> Sequence[ApiKey]: ...

    async def revoke_api_key(
        self,
        key_id: uuid.UUID,
        user_id: uuid.UUID,
        reason: str,
        *,
        ip_address: str | None = None,
    ) -> bool: ...

    async def create_refresh_token(
        self,
        user_id: uuid.UUID,
        token_hash: str,
        *,
        version: int,
        expires_at: datetime,
        session_id: str | None = None,
    ) -> RefreshToken: ...

    async def find_refresh_token(self, token_hash: str) -> RefreshToken | None: ...

    async def revoke_refresh_token(
        self, token_hash: str, reason: str, *, ip_address: str | None = None
    ) -> bool: ...

    async def bump_token_version(
        self, user_id: uuid.UUID, reason: str, *, ip_address: str | None = None
    ) -> int: ...


def _now() -> datetime:
    return datetime.now(UTC)


class SqlCredentialStore:
    """PostgreSQL-backed implementation of :class:`AccountStore`.

    Driver errors surface as :class:`CredentialStoreError`; timeouts are
    enforced by the engine/pool configuration.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session, session.begin():
                yield session
        except SQLAlchemyError as e:
            raise CredentialStoreError(f"{type(e).__name__}: {e}") from e

    async def ping(self) -> None:
        """Round-trip to the database; raises CredentialStoreError if down."""
        async with self._transaction() as session:
            await session.execute(text("SELECT 1"))

    # ── Pipeline contract ──────────────────────────────────────────

    async def find_api_key_by_secret(self, raw_key: str) -> ApiKey | None:
        """Look up a key by the hash of its secret, with its owner loaded.

        Usability (active, revoked, expiry, owner active) is judged by the
        caller; the record is returned as stored.
        """
        stmt = (
            select(ApiKey)
            .where(ApiKey.key_hash == hash_api_key(raw_key))
            .options(selectinload(ApiKey.user))
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def touch_api_key_usage(
        self, key_id: uuid.UUID, ip_address: str | None
    ) -> None:
        values: dict[str, object] = {"last_used_at": _now()}
        if ip_address:
            values["last_used_from_ip"] = ip_address
        stmt = update(ApiKey).where(ApiKey.id == key_id).values(**values)
        async with self._transaction() as session:
            await session.execute(stmt)

    async def is_blacklisted(self, token_hash: str, kind: str) -> bool:
        """True if a non-expired blacklist row matches hash and kind."""
        stmt = select(
            exists().where(
                BlacklistedToken.token_hash == token_hash,
                BlacklistedToken.token_type == kind,
                BlacklistedToken.expires_at > _now(),
            )
        )
        async with self._transaction() as session:
            return bool(await session.scalar(stmt))

    async def find_session(self, session_id: str) -> UserSession | None:
        stmt = select(UserSession).where(UserSession.session_id == session_id)
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def touch_session_activity(self, session_id: str) -> None:
        """Bump last activity (never backwards) and the activity counter."""
        stmt = (
            update(UserSession)
            .where(UserSession.session_id == session_id)
            .values(
                last_activity_at=func.greatest(UserSession.last_activity_at, _now()),
                activity_count=UserSession.activity_count + 1,
            )
        )
        async with self._transaction() as session:
            await session.execute(stmt)

    async def append_session_suspicion(self, session_id: str, reason: str) -> None:
        """Flag the session and append ``reason``; validity is untouched."""
        stmt = (
            update(UserSession)
            .where(UserSession.session_id == session_id)
            .values(
                is_suspicious=True,
                suspicious_reasons=func.concat_ws(
                    SUSPICION_SEPARATOR,
                    func.nullif(UserSession.suspicious_reasons, ""),
                    reason,
                ),
            )
        )
        async with self._transaction() as session:
            await session.execute(stmt)

    async def count_recent_sessions(self, user_id: uuid.UUID, since: datetime) -> int:
        stmt = select(func.count(UserSession.id)).where(
            UserSession.user_id == user_id,
            UserSession.is_active.is_(True),
            UserSession.created_at > since,
        )
        async with self._transaction() as session:
            return int(await session.scalar(stmt) or 0)

    # ── Users ──────────────────────────────────────────────────────

    async def find_user(self, user_id: uuid.UUID) -> User | None:
        async with self._transaction() as session:
            return await session.get(User, user_id)

    # ── Blacklist ──────────────────────────────────────────────────

    async def blacklist_token(
        self,
        token_hash: str,
        kind: str,
        *,
        expires_at: datetime,
        user_id: uuid.UUID | None = None,
        reason: str | None = None,
        ip_address: str | None = None,
    ) -> None:
        """Insert a blacklist row; a second insert for the same hash is a no-op."""
        stmt = (
            insert(BlacklistedToken)
            .values(
                token_hash=token_hash,
                token_type=kind,
                user_id=user_id,
                expires_at=expires_at,
                reason=reason,
                blacklisted_by_ip=ip_address,
            )
            .on_conflict_do_nothing(index_elements=["token_hash"])
        )
        async with self._transaction() as session:
            await session.execute(stmt)

    async def prune_expired_blacklist(self) -> int:
        stmt = delete(BlacklistedToken).where(BlacklistedToken.expires_at <= _now())
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount or 0

    # ── Sessions ───────────────────────────────────────────────────

    async def count_active_sessions(self, user_id: uuid.UUID) -> int:
        stmt = select(func.count(UserSession.id)).where(
            UserSession.user_id == user_id,
            UserSession.is_active.is_(True),
            UserSession.expires_at > _now(),
        )
        async with self._transaction() as session:
            return int(await session.scalar(stmt) or 0)

    async def create_session(self, user_session: UserSession) -> UserSession:
        async with self._transaction() as session:
            session.add(user_session)
            await session.flush()
        return user_session

    async def list_user_sessions(
        self, user_id: uuid.UUID, *, active_only: bool = True
    ) -> Sequence[UserSession]:
        stmt = select(UserSession).where(UserSession.user_id == user_id)
        if active_only:
            stmt = stmt.where(
                UserSession.is_active.is_(True), UserSession.expires_at > _now()
            )
        stmt = stmt.order_by(UserSession.last_activity_at.desc())
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.scalars().all()

    async def list_suspicious_sessions(
        self, user_id: uuid.UUID
    ) -> Sequence[UserSession]:
        """Active sessions of ``user_id`` flagged by anomaly detection."""
        stmt = (
            select(UserSession)
            .where(
                UserSession.user_id == user_id,
                UserSession.is_suspicious.is_(True),
                UserSession.is_active.is_(True),
            )
            .order_by(UserSession.last_activity_at.desc())
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.scalars().all()

    async def revoke_session(
        self,
        session_id: str,
        reason: str,
        *,
        ip_address: str | None = None,
        user_id: uuid.UUID | None = None,
    ) -> bool:
        """Deactivate one session; ``user_id`` restricts it to its owner."""
        stmt = update(UserSession).where(
            UserSession.session_id == session_id,
            UserSession.is_active.is_(True),
        )
        if user_id is not None:
            stmt = stmt.where(UserSession.user_id == user_id)
        stmt = stmt.values(
            is_active=False,
            revoked_at=_now(),
            revoked_reason=reason,
            revoked_by_ip=ip_address,
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return bool(result.rowcount)

    async def revoke_user_sessions(
        self,
        user_id: uuid.UUID,
        reason: str,
        *,
        ip_address: str | None = None,
        except_session_id: str | None = None,
    ) -> int:
        stmt = update(UserSession).where(
            UserSession.user_id == user_id,
            UserSession.is_active.is_(True),
        )
        if except_session_id is not None:
            stmt = stmt.where(UserSession.session_id != except_session_id)
        stmt = stmt.values(
            is_active=False,
            revoked_at=_now(),
            revoked_reason=reason,
            revoked_by_ip=ip_address,
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount or 0

    # ── API keys ───────────────────────────────────────────────────

    async def create_api_key(
        self,
        user_id: uuid.UUID,
        *,
        name: str,
        description: str | None = None,
        scopes: Sequence[str] = ("read",),
        expires_at: datetime | None = None,
    ) -> tuple[ApiKey, str]:
        """Create a key and return it with the raw secret (shown once)."""
        full_key, key_hash, key_prefix = generate_api_key()
        api_key = ApiKey(
            user_id=user_id,
            key_hash=key_hash,
            key_prefix=key_prefix,
            name=name,
            description=description,
            scopes=format_scopes(scopes) or "read",
            expires_at=expires_at,
            is_active=True,
            is_revoked=False,
        )
        async with self._transaction() as session:
            session.add(api_key)
            await session.flush()
            await session.refresh(api_key)
        return api_key, full_key

    async def list_user_api_keys(self, user_id: uuid.UUID) -> Sequence[ApiKey]:
        stmt = (
            select(ApiKey)
            .where(ApiKey.user_id == user_id)
            .order_by(ApiKey.created_at.desc())
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.scalars().all()

    async def revoke_api_key(
        self,
        key_id: uuid.UUID,
        user_id: uuid.UUID,
        reason: str,
        *,
        ip_address: str | None = None,
    ) -> bool:
        stmt = (
            update(ApiKey)
            .where(
                ApiKey.id == key_id,
                ApiKey.user_id == user_id,
                ApiKey.is_revoked.is_(False),
            )
            .values(
                is_revoked=True,
                revoked_at=_now(),
                revoked_reason=reason,
                revoked_by_ip=ip_address,
            )
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return bool(result.rowcount)

    # ── Refresh tokens ─────────────────────────────────────────────

    async def create_refresh_token(
        self,
        user_id: uuid.UUID,
        token_hash: str,
        *,
        version: int,
        expires_at: datetime,
        session_id: str | None = None,
    ) -> RefreshToken:
        record = RefreshToken(
            user_id=user_id,
            token_hash=token_hash,
            version=version,
            session_id=session_id,
            expires_at=expires_at,
            is_revoked=False,
        )
        async with self._transaction() as session:
            session.add(record)
            await session.flush()
            await session.refresh(record)
        return record

    async def find_refresh_token(self, token_hash: str) -> RefreshToken | None:
        stmt = select(RefreshToken).where(RefreshToken.token_hash == token_hash)
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def revoke_refresh_token(
        self, token_hash: str, reason: str, *, ip_address: str | None = None
    ) -> bool:
        stmt = (
            update(RefreshToken)
            .where(
                RefreshToken.token_hash == token_hash,
                RefreshToken.is_revoked.is_(False),
            )
            .values(
                is_revoked=True,
                revoked_at=_now(),
                revoked_reason=reason,
                revoked_by_ip=ip_address,
            )
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return bool(result.rowcount)

    async def bump_token_version(
        self, user_id: uuid.UUID, reason: str, *, ip_address: str | None = None
    ) -> int:
        """Invalidate every refresh token of the user; return the new version."""
        bump = (
            update(User)
            .where(User.id == user_id)
            .values(token_version=User.token_version + 1)
            .returning(User.token_version)
        )
        revoke = (
            update(RefreshToken)
            .where(
                RefreshToken.user_id == user_id,
                RefreshToken.is_revoked.is_(False),
            )
            .values(
                is_revoked=True,
                revoked_at=_now(),
                revoked_reason=reason,
                revoked_by_ip=ip_address,
            )
        )
        async with self._transaction() as session:
            version = (await session.execute(bump)).scalar_one()
            await session.execute(revoke)
            return int(version)
