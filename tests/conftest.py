"""Shared pytest fixtures."""

from collections.abc import AsyncIterator

import pytest
from fastapi import APIRouter, FastAPI
from httpx import ASGITransport, AsyncClient

from joinery.api.app import create_app
from joinery.auth.rate_limiter import InMemoryRateLimiter
from joinery.auth.scopes import Scope, public_endpoint, require_scope
from joinery.config import Settings
from joinery.storage.orm import User
from tests.fakes import FakeCredentialStore, make_settings, make_user


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--run-db",
        action="store_true",
        default=False,
        help="Run tests that require a live PostgreSQL instance",
    )
    parser.addoption(
        "--run-redis",
        action="store_true",
        default=False,
        help="Run tests that require a live Redis instance",
    )


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    markers_to_check = {
        "requires_db": ("--run-db", "needs --run-db flag"),
        "requires_redis": ("--run-redis", "needs --run-redis flag"),
    }

    skip_conditions = {
        marker_name: (not config.getoption(option_flag), reason_msg)
        for marker_name, (option_flag, reason_msg) in markers_to_check.items()
    }

    for item in items:
        for marker_name, (should_skip, reason_msg) in skip_conditions.items():
            if should_skip and marker_name in item.keywords:
                item.add_marker(pytest.mark.skip(reason=reason_msg))


def _sample_router() -> APIRouter:
    """Protected endpoints standing in for the data-plane API."""
    router = APIRouter()

    @router.get("/api/projects")
    @require_scope(Scope.READ)
    async def list_projects() -> dict[str, list[str]]:
        return {"items": []}

    @router.post("/api/projects")
    @require_scope(Scope.WRITE)
    async def create_project() -> dict[str, str]:
        return {"status": "created"}

    @router.get("/api/admin/stats")
    @require_scope(Scope.ADMIN)
    async def admin_stats() -> dict[str, int]:
        return {"users": 1}

    @router.get("/api/public/ping")
    @public_endpoint
    async def public_ping() -> dict[str, str]:
        return {"pong": "ok"}

    @router.get("/status")
    async def status() -> dict[str, str]:
        return {"status": "up"}

    return router


@pytest.fixture()
def store() -> FakeCredentialStore:
    return FakeCredentialStore()


@pytest.fixture()
def user(store: FakeCredentialStore) -> User:
    return store.add_user(make_user())


@pytest.fixture()
def limiter() -> InMemoryRateLimiter:
    return InMemoryRateLimiter()


@pytest.fixture()
def test_settings() -> Settings:
    return make_settings()


@pytest.fixture()
def app(
    store: FakeCredentialStore, limiter: InMemoryRateLimiter, test_settings: Settings
) -> FastAPI:
    application = create_app(store=store, limiter=limiter, settings=test_settings)
    application.include_router(_sample_router())
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"User-Agent": "pytest-client/1.0"},
    ) as ac:
        yield ac
