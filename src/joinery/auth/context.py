"""Request-scoped identity produced by the security pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum


class AuthKind(StrEnum):
    BEARER = "bearer"
    API_KEY = "api_key"


class AuthLevel(StrEnum):
    """Coarse trust tier used to select a rate limit budget."""

    ANONYMOUS = "anonymous"
    BEARER = "bearer"
    API_KEY = "api_key"
    ADMIN = "admin"


@dataclass(frozen=True)
class Identity:
    """Authenticated caller, attached to ``request.state.identity``.

    Built once per request by the pipeline and discarded with it.
    ``api_key_id`` is set only for API key callers.
    """

    subject_id: str
    username: str
    email: str
    auth_kind: AuthKind
    scopes: frozenset[str] = field(default_factory=frozenset)
    api_key_id: str | None = None
    session_id: str | None = None

    @property
    def auth_level(self) -> AuthLevel:
        if "admin" in self.scopes:
            return AuthLevel.ADMIN
        if self.auth_kind is AuthKind.API_KEY:
            return AuthLevel.API_KEY
        return AuthLevel.BEARER


def auth_level_of(identity: Identity | None) -> AuthLevel:
    """Tier for an optional identity; unauthenticated callers are anonymous."""
    return AuthLevel.ANONYMOUS if identity is None else identity.auth_level
