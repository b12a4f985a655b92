"""Tests for FastAPI bootstrap: health, readiness, error handling, lifespan."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI, Request
from httpx import ASGITransport, AsyncClient

from joinery.api import app as app_module
from joinery.api.app import create_app, unhandled_exception_handler
from joinery.auth.rate_limiter import InMemoryRateLimiter, RedisRateLimiter
from joinery.errors import CredentialStoreError
from tests.fakes import FakeCredentialStore, make_settings


class TestHealth:
    async def test_liveness(self, client: AsyncClient) -> None:
        response = await client.get("/api/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert "timestamp" in data

    async def test_ready_all_ok(self, client: AsyncClient) -> None:
        """In-memory limiter has no ping, only the store is checked."""
        response = await client.get("/api/health/ready")

        assert response.status_code == 200
        assert response.json()["checks"] == {"db": "ok"}

    async def test_ready_db_down(
        self, client: AsyncClient, store: FakeCredentialStore
    ) -> None:
        store.fail_with = CredentialStoreError("db down")

        response = await client.get("/api/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "degraded"
        assert data["checks"]["db"] == "error: CredentialStoreError"

    async def test_ready_redis_down(self, store: FakeCredentialStore) -> None:
        limiter = MagicMock(spec=RedisRateLimiter)
        limiter.ping = AsyncMock(side_effect=ConnectionError("redis down"))
        app = create_app(store=store, limiter=limiter, settings=make_settings())

        async with AsyncClient(
            transport=ASGITransport(app=app), base_url="http://test"
        ) as ac:
            response = await ac.get("/api/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["checks"]["db"] == "ok"
        assert data["checks"]["redis"] == "error: ConnectionError"

    async def test_health_method_not_allowed(self, client: AsyncClient) -> None:
        response = await client.post("/api/health")
        assert response.status_code == 405


class TestRouting:
    async def test_unknown_route_outside_api(self, client: AsyncClient) -> None:
        response = await client.get("/nonexistent")
        assert response.status_code == 404

    def test_management_routes_registered(self, app: FastAPI) -> None:
        paths = {route.path for route in app.routes}  # type: ignore[attr-defined]
        assert {
            "/api/auth/refresh",
            "/api/auth/logout",
            "/api/auth/logout-all",
            "/api/api-keys",
            "/api/sessions/active",
        } <= paths


class TestErrorHandling:
    async def test_unhandled_exception_handler_returns_500(self) -> None:
        """Global exception handler returns 500 JSON response."""
        mock_request = Request(
            scope={"type": "http", "method": "GET", "path": "/test", "headers": []}
        )
        response = await unhandled_exception_handler(mock_request, RuntimeError("boom"))
        assert response.status_code == 500
        assert response.body == b'{"detail":"Internal server error"}'

    async def test_route_failure_is_opaque(self, app: FastAPI) -> None:
        @app.get("/boom")
        async def _boom() -> None:
            raise RuntimeError("secret internals")

        async with AsyncClient(
            transport=ASGITransport(app=app, raise_app_exceptions=False),
            base_url="http://test",
        ) as ac:
            response = await ac.get("/boom")

        assert response.status_code == 500
        assert "secret internals" not in response.text


class TestLifespan:
    async def test_lifespan_starts_and_stops_maintenance(
        self, app: FastAPI
    ) -> None:
        with patch.object(
            app_module, "_maintenance_loop", new_callable=AsyncMock
        ) as loop:
            async with app_module.lifespan(app):
                await asyncio.sleep(0)
            loop.assert_awaited_once_with(app.state.rate_limiter, app.state.store)

    async def test_lifespan_disposes_owned_engine(self, app: FastAPI) -> None:
        app.state.owns_engine = True
        with patch("joinery.storage.database.engine") as mock_engine:
            mock_engine.dispose = AsyncMock()
            async with app_module.lifespan(app):
                pass
            mock_engine.dispose.assert_awaited_once()

    async def test_lifespan_closes_redis(self, store: FakeCredentialStore) -> None:
        limiter = MagicMock(spec=RedisRateLimiter)
        limiter.aclose = AsyncMock()
        app = create_app(store=store, limiter=limiter, settings=make_settings())

        async with app_module.lifespan(app):
            pass

        limiter.aclose.assert_awaited_once()


class TestMaintenanceLoop:
    async def test_cleans_limiter_and_blacklist(self) -> None:
        limiter = MagicMock(spec=InMemoryRateLimiter)
        limiter.cleanup = AsyncMock(return_value=2)
        store = MagicMock(spec=FakeCredentialStore)
        store.prune_expired_blacklist = AsyncMock(
            side_effect=[1, asyncio.CancelledError()]
        )

        with (
            patch.object(app_module.asyncio, "sleep", new_callable=AsyncMock),
            pytest.raises(asyncio.CancelledError),
        ):
            await app_module._maintenance_loop(limiter, store)

        assert limiter.cleanup.await_count == 2
        assert store.prune_expired_blacklist.await_count == 2

    async def test_survives_cleanup_errors(self) -> None:
        limiter = MagicMock(spec=InMemoryRateLimiter)
        limiter.cleanup = AsyncMock(side_effect=RuntimeError("boom"))
        store = MagicMock(spec=FakeCredentialStore)
        store.prune_expired_blacklist = AsyncMock(
            side_effect=[RuntimeError("db"), asyncio.CancelledError()]
        )

        with (
            patch.object(app_module.asyncio, "sleep", new_callable=AsyncMock),
            pytest.raises(asyncio.CancelledError),
        ):
            await app_module._maintenance_loop(limiter, store)

        assert store.prune_expired_blacklist.await_count == 2
