"""Blacklist lookups for access and refresh tokens."""

from __future__ import annotations

from enum import StrEnum

from joinery.auth.tokens import hash_token
from joinery.storage.credential_store import CredentialStore


class TokenKind(StrEnum):
    ACCESS = "access"
    REFRESH = "refresh"


class RevocationChecker:
    """Pure lookup against non-expired blacklist rows.

    Consulted before any structurally valid bearer value is trusted, so a
    logout or compromise response takes effect immediately rather than at
    the token's natural expiry.
    """

    def __init__(self, store: CredentialStore) -> None:
        self._store = store

    async def is_blacklisted(self, raw_token: str, kind: TokenKind) -> bool:
        return await self._store.is_blacklisted(hash_token(raw_token), kind.value)
