"""Tests for scope tagging and the scope decision function."""

import pytest

from joinery.auth.context import AuthKind, Identity
from joinery.auth.scopes import (
    Scope,
    is_public,
    is_scope_satisfied,
    public_endpoint,
    require_scope,
    required_scope_of,
)


def _identity(kind: AuthKind, *scopes: str) -> Identity:
    return Identity(
        subject_id="u1",
        username="ada",
        email="ada@example.com",
        auth_kind=kind,
        scopes=frozenset(scopes),
    )


class TestIsScopeSatisfied:
    def test_bearer_always_passes(self) -> None:
        assert is_scope_satisfied(_identity(AuthKind.BEARER), Scope.ADMIN)

    def test_api_key_with_scope(self) -> None:
        assert is_scope_satisfied(_identity(AuthKind.API_KEY, "read"), Scope.READ)

    def test_api_key_without_scope(self) -> None:
        assert not is_scope_satisfied(_identity(AuthKind.API_KEY, "read"), Scope.WRITE)

    @pytest.mark.parametrize("required", list(Scope))
    def test_admin_is_wildcard(self, required: Scope) -> None:
        assert is_scope_satisfied(_identity(AuthKind.API_KEY, "admin"), required)

    def test_nothing_required(self) -> None:
        assert is_scope_satisfied(_identity(AuthKind.API_KEY), None)


class TestTags:
    def test_require_scope_tags_function(self) -> None:
        @require_scope(Scope.WRITE)
        async def endpoint() -> None: ...

        assert required_scope_of(endpoint) == "write"
        assert not is_public(endpoint)

    def test_public_endpoint(self) -> None:
        @public_endpoint
        async def endpoint() -> None: ...

        assert is_public(endpoint)
        assert required_scope_of(endpoint) is None

    def test_untagged_and_missing(self) -> None:
        async def endpoint() -> None: ...

        assert required_scope_of(endpoint) is None
        assert required_scope_of(None) is None
        assert not is_public(None)
