"""Access/refresh token issuance, rotation and logout."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import structlog

from joinery.auth.revocation import RevocationChecker, TokenKind
from joinery.auth.sessions import open_session
from joinery.auth.tokens import (
    TokenClaims,
    generate_refresh_token,
    hash_token,
    issue_access_token,
    verify_access_token,
)
from joinery.config import Settings
from joinery.errors import RefreshTokenError
from joinery.storage.credential_store import AccountStore
from joinery.storage.orm import User

logger = structlog.get_logger()


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    session_id: str | None = None
    token_type: str = "bearer"


class TokenService:
    """Issue and rotate credentials for users authenticated elsewhere.

    Refresh tokens are opaque; only their SHA-256 digest is stored, tagged
    with the user's ``token_version`` at issue time. Bumping the version
    (forced logout) orphans every outstanding refresh token at once.
    """

    def __init__(self, store: AccountStore, settings: Settings) -> None:
        self._store = store
        self._settings = settings
        self._revocation = RevocationChecker(store)

    @property
    def access_lifetime(self) -> timedelta:
        return timedelta(minutes=self._settings.jwt_access_token_minutes)

    @property
    def refresh_lifetime(self) -> timedelta:
        return timedelta(days=self._settings.jwt_refresh_token_days)

    def verify(self, token: str) -> TokenClaims:
        """Full cryptographic verification.

        Raises:
            InvalidTokenError: on any verification failure.
        """
        return verify_access_token(
            token,
            secret=self._settings.jwt_secret_key.get_secret_value(),
            issuer=self._settings.jwt_issuer,
            audience=self._settings.jwt_audience,
        )

    async def is_revoked(self, access_token: str) -> bool:
        return await self._revocation.is_blacklisted(access_token, TokenKind.ACCESS)

    def _access_token(self, user: User, session_id: str | None) -> str:
        return issue_access_token(
            user_id=user.id,
            username=user.username,
            email=user.email,
            secret=self._settings.jwt_secret_key.get_secret_value(),
            issuer=self._settings.jwt_issuer,
            audience=self._settings.jwt_audience,
            lifetime=self.access_lifetime,
            auth_provider=user.auth_provider,
            session_id=session_id,
        )

    async def _refresh_token(self, user: User, session_id: str | None) -> str:
        raw = generate_refresh_token()
        await self._store.create_refresh_token(
            user.id,
            hash_token(raw),
            version=user.token_version,
            session_id=session_id,
            expires_at=datetime.now(UTC) + self.refresh_lifetime,
        )
        return raw

    async def issue_login(
        self,
        user: User,
        *,
        ip_address: str | None,
        user_agent: str | None,
        login_method: str,
    ) -> TokenPair:
        """Open a session and issue a token pair bound to it.

        Raises:
            SessionLimitExceededError: too many concurrent sessions.
        """
        session = await open_session(
            self._store,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            login_method=login_method,
            lifetime=timedelta(hours=self._settings.session_lifetime_hours),
            max_concurrent=self._settings.max_concurrent_sessions,
        )
        access = self._access_token(user, session.session_id)
        refresh = await self._refresh_token(user, session.session_id)
        logger.info("tokens_issued", user_id=str(user.id), method=login_method)
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            expires_in=int(self.access_lifetime.total_seconds()),
            session_id=session.session_id,
        )

    async def refresh(
        self, raw_refresh_token: str, *, ip_address: str | None = None
    ) -> TokenPair:
        """Exchange a refresh token for a new pair, rotating the refresh token.

        The new pair stays bound to the session the original login opened.
        Revoking the presented token is the claim on it: of two concurrent
        exchanges of the same token only the one whose revoke lands succeeds.

        Raises:
            RefreshTokenError: revoked, unknown, expired or superseded token,
                or its session has ended.
        """
        if await self._revocation.is_blacklisted(raw_refresh_token, TokenKind.REFRESH):
            logger.warning("refresh_token_blacklisted")
            raise RefreshTokenError("Refresh token has been revoked")

        token_hash = hash_token(raw_refresh_token)
        record = await self._store.find_refresh_token(token_hash)
        if record is None or not record.is_usable(datetime.now(UTC)):
            raise RefreshTokenError("Invalid or expired refresh token")

        user = await self._store.find_user(record.user_id)
        if user is None or not user.is_active:
            raise RefreshTokenError("Invalid or expired refresh token")
        if record.version < user.token_version:
            logger.warning("refresh_token_superseded", user_id=str(user.id))
            raise RefreshTokenError("Refresh token has been invalidated")

        session_id = record.session_id
        if session_id is not None:
            session = await self._store.find_session(session_id)
            if session is None or not session.is_valid(datetime.now(UTC)):
                raise RefreshTokenError("Session has expired or is invalid")

        claimed = await self._store.revoke_refresh_token(
            token_hash, "rotated", ip_address=ip_address
        )
        if not claimed:
            logger.warning("refresh_token_reused", user_id=str(user.id))
            raise RefreshTokenError("Refresh token has been revoked")

        access = self._access_token(user, session_id)
        refresh = await self._refresh_token(user, session_id)
        logger.info("tokens_refreshed", user_id=str(user.id))
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            expires_in=int(self.access_lifetime.total_seconds()),
            session_id=session_id,
        )

    async def logout(
        self,
        access_token: str,
        claims: TokenClaims,
        *,
        refresh_token: str | None = None,
        ip_address: str | None = None,
    ) -> None:
        """Blacklist the access token until it expires; end its session."""
        user_id = uuid.UUID(claims.subject_id)
        await self._store.blacklist_token(
            hash_token(access_token),
            TokenKind.ACCESS,
            expires_at=claims.expires_at,
            user_id=user_id,
            reason="logout",
            ip_address=ip_address,
        )
        if refresh_token:
            await self._store.revoke_refresh_token(
                hash_token(refresh_token), "logout", ip_address=ip_address
            )
        if claims.session_id:
            await self._store.revoke_session(
                claims.session_id, "logout", ip_address=ip_address, user_id=user_id
            )
        logger.info("user_logged_out", user_id=claims.subject_id)

    async def logout_all(
        self,
        access_token: str,
        claims: TokenClaims,
        *,
        ip_address: str | None = None,
    ) -> int:
        """Force logout everywhere. Returns the number of sessions revoked."""
        user_id = uuid.UUID(claims.subject_id)
        version = await self._store.bump_token_version(
            user_id, "logout_all", ip_address=ip_address
        )
        revoked = await self._store.revoke_user_sessions(
            user_id, "logout_all", ip_address=ip_address
        )
        await self._store.blacklist_token(
            hash_token(access_token),
            TokenKind.ACCESS,
            expires_at=claims.expires_at,
            user_id=user_id,
            reason="logout_all",
            ip_address=ip_address,
        )
        logger.info(
            "user_logged_out_everywhere",
            user_id=claims.subject_id,
            token_version=version,
            sessions_revoked=revoked,
        )
        return revoked
