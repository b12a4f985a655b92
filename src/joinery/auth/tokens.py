"""Bearer token codec.

Two levels of checking are kept apart on purpose:

* :func:`read_claims` is the structural/temporal check done by the
  authenticator: the value must decode as a JWT, must not be expired and
  must carry a subject. The signature is *not* checked here.
* :func:`verify_access_token` is the full verifier (signature, issuer,
  audience, lifetime) that establishes the authenticated principal.
"""

from __future__ import annotations

import hashlib
import secrets
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt

from joinery.errors import InvalidTokenError

ALGORITHM = "HS256"
SUBJECT_CLAIM = "sub"
SESSION_CLAIM = "sid"


@dataclass(frozen=True)
class TokenClaims:
    """Subject claims carried by an access token."""

    subject_id: str
    username: str
    email: str
    expires_at: datetime
    session_id: str | None = None
    auth_provider: str | None = None
    scopes: frozenset[str] = frozenset()

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> TokenClaims:
        subject = payload.get(SUBJECT_CLAIM)
        if not subject:
            raise InvalidTokenError("Token missing subject claim")
        exp = payload.get("exp")
        if exp is None:
            raise InvalidTokenError("Token missing expiry claim")
        try:
            expires_at = datetime.fromtimestamp(float(exp), tz=UTC)
        except (TypeError, ValueError, OverflowError) as e:
            raise InvalidTokenError("Token expiry claim is not a timestamp") from e
        raw_scope = payload.get("scope") or ""
        return cls(
            subject_id=str(subject),
            username=str(payload.get("name", "")),
            email=str(payload.get("email", "")),
            expires_at=expires_at,
            session_id=payload.get(SESSION_CLAIM),
            auth_provider=payload.get("auth_provider"),
            scopes=frozenset(raw_scope.split()),
        )


def hash_token(token: str) -> str:
    """Stable SHA-256 hex digest used as the blacklist/refresh lookup key."""
    return hashlib.sha256(token.encode()).hexdigest()


def read_claims(token: str, *, now: datetime | None = None) -> TokenClaims:
    """Structural and temporal check of a bearer value, without signature.

    Raises:
        InvalidTokenError: unparseable, expired, or no subject claim.
    """
    try:
        payload = jwt.decode(
            token,
            options={"verify_signature": False, "verify_exp": False},
            algorithms=[ALGORITHM],
        )
    except jwt.PyJWTError as e:
        raise InvalidTokenError("Not a valid token") from e

    claims = TokenClaims.from_payload(payload)
    if claims.expires_at <= (now or datetime.now(UTC)):
        raise InvalidTokenError("Token has expired")
    return claims


def verify_access_token(
    token: str,
    *,
    secret: str,
    issuer: str,
    audience: str,
) -> TokenClaims:
    """Verify signature, issuer, audience and lifetime.

    Raises:
        InvalidTokenError: on any verification failure.
    """
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[ALGORITHM],
            issuer=issuer,
            audience=audience,
            options={"require": ["exp", "sub", "iss", "aud"]},
        )
    except jwt.ExpiredSignatureError as e:
        raise InvalidTokenError("Token has expired") from e
    except jwt.PyJWTError as e:
        raise InvalidTokenError(f"Token verification failed: {type(e).__name__}") from e
    return TokenClaims.from_payload(payload)


def issue_access_token(
    *,
    user_id: uuid.UUID | str,
    username: str,
    email: str,
    secret: str,
    issuer: str,
    audience: str,
    lifetime: timedelta,
    auth_provider: str = "local",
    session_id: str | None = None,
    scopes: Iterable[str] = (),
    now: datetime | None = None,
) -> str:
    """Encode a signed access token for a user."""
    issued_at = now or datetime.now(UTC)
    payload: dict[str, Any] = {
        SUBJECT_CLAIM: str(user_id),
        "name": username,
        "email": email,
        "auth_provider": auth_provider,
        "iss": issuer,
        "aud": audience,
        "iat": issued_at,
        "exp": issued_at + lifetime,
        "jti": secrets.token_hex(8),
    }
    if session_id:
        payload[SESSION_CLAIM] = session_id
    scope = " ".join(sorted(set(scopes)))
    if scope:
        payload["scope"] = scope
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def generate_refresh_token() -> str:
    """Opaque random refresh token; only its hash is persisted."""
    return secrets.token_urlsafe(48)


def generate_session_id() -> str:
    """Opaque URL-safe session identifier."""
    return secrets.token_urlsafe(32)
