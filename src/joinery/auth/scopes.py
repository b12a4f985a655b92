"""Declarative scope requirements and the single decision function.

Endpoints are tagged with the scope they need::

    @router.post("/api-keys")
    @require_scope(Scope.WRITE)
    async def create_key(...): ...

The security pipeline looks the tag up on the matched route before the
endpoint runs, so a request that fails authorization is never counted
against a rate limit.
"""

from __future__ import annotations

from collections.abc import Callable
from enum import StrEnum
from typing import Any, TypeVar

from joinery.auth.context import AuthKind, Identity

F = TypeVar("F", bound=Callable[..., Any])

REQUIRED_SCOPE_ATTR = "__joinery_required_scope__"
PUBLIC_ATTR = "__joinery_public__"


class Scope(StrEnum):
    READ = "read"
    WRITE = "write"
    ADMIN = "admin"


def is_scope_satisfied(identity: Identity, required: str | None) -> bool:
    """Bearer callers are fully trusted; API keys need the scope or admin."""
    if not required:
        return True
    if identity.auth_kind is AuthKind.BEARER:
        return True
    return required in identity.scopes or Scope.ADMIN in identity.scopes


def require_scope(scope: Scope | str) -> Callable[[F], F]:
    def decorator(func: F) -> F:
        setattr(func, REQUIRED_SCOPE_ATTR, str(scope))
        return func

    return decorator


def public_endpoint(func: F) -> F:
    """Mark an endpoint under ``/api`` as reachable without credentials."""
    setattr(func, PUBLIC_ATTR, True)
    return func


def required_scope_of(endpoint: Callable[..., Any] | None) -> str | None:
    return getattr(endpoint, REQUIRED_SCOPE_ATTR, None)


def is_public(endpoint: Callable[..., Any] | None) -> bool:
    return bool(getattr(endpoint, PUBLIC_ATTR, False))
