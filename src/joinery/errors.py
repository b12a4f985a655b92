"""Domain-specific exceptions for joinery."""

from __future__ import annotations


class CredentialStoreError(Exception):
    """The credential store could not complete a lookup or update."""


class InvalidTokenError(Exception):
    """A bearer or refresh token is malformed, expired or fails verification."""


class SessionLimitExceededError(Exception):
    """User already holds the maximum number of concurrent sessions."""

    def __init__(self, user_id: str, limit: int) -> None:
        self.user_id = user_id
        self.limit = limit
        super().__init__(f"User {user_id} already has {limit} active sessions")


class RefreshTokenError(Exception):
    """Refresh token is unknown, revoked, blacklisted or outdated."""
