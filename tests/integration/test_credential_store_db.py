"""Integration tests for SqlCredentialStore against real PostgreSQL.

Requires a migrated database (``alembic upgrade head``).
Run with: ``pytest tests/integration --run-db -v``
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from joinery.auth.tokens import generate_session_id, hash_token
from joinery.storage.credential_store import SqlCredentialStore
from joinery.storage.orm import User, UserSession

pytestmark = pytest.mark.requires_db


def _session(user: User, *, minutes_ago: int = 0) -> UserSession:
    now = datetime.now(UTC)
    return UserSession(
        session_id=generate_session_id(),
        user_id=user.id,
        ip_address="198.51.100.7",
        user_agent="pytest/1.0",
        login_method="github",
        created_at=now - timedelta(minutes=minutes_ago),
        last_activity_at=now - timedelta(minutes=minutes_ago),
        expires_at=now + timedelta(hours=8),
    )


class TestApiKeys:
    async def test_create_find_and_revoke(
        self, sql_store: SqlCredentialStore, committed_user: User
    ) -> None:
        record, raw = await sql_store.create_api_key(
            committed_user.id, name="ci", scopes=["write", "read"]
        )

        found = await sql_store.find_api_key_by_secret(raw)
        assert found is not None
        assert found.id == record.id
        assert found.scopes == "read,write"
        assert found.user.username == committed_user.username
        assert found.id.version == 7

        assert await sql_store.revoke_api_key(record.id, committed_user.id, "done")
        assert not await sql_store.revoke_api_key(record.id, committed_user.id, "x")

    async def test_touch_records_ip(
        self, sql_store: SqlCredentialStore, committed_user: User
    ) -> None:
        record, raw = await sql_store.create_api_key(committed_user.id, name="ci")

        await sql_store.touch_api_key_usage(record.id, "203.0.113.9")

        found = await sql_store.find_api_key_by_secret(raw)
        assert found is not None
        assert found.last_used_at is not None
        assert found.last_used_from_ip == "203.0.113.9"


class TestBlacklist:
    async def test_duplicate_insert_is_noop(
        self, sql_store: SqlCredentialStore, committed_user: User
    ) -> None:
        token_hash = hash_token(f"access-{committed_user.id}")
        expires_at = datetime.now(UTC) + timedelta(hours=1)

        for _ in range(2):
            await sql_store.blacklist_token(
                token_hash, "access", expires_at=expires_at, user_id=committed_user.id
            )

        assert await sql_store.is_blacklisted(token_hash, "access")
        assert not await sql_store.is_blacklisted(token_hash, "refresh")

    async def test_expired_rows_ignored_and_pruned(
        self, sql_store: SqlCredentialStore, committed_user: User
    ) -> None:
        token_hash = hash_token(f"stale-{committed_user.id}")
        await sql_store.blacklist_token(
            token_hash,
            "access",
            expires_at=datetime.now(UTC) - timedelta(seconds=1),
            user_id=committed_user.id,
        )

        assert not await sql_store.is_blacklisted(token_hash, "access")
        assert await sql_store.prune_expired_blacklist() >= 1


class TestSessions:
    async def test_concurrent_touches_are_not_lost(
        self, sql_store: SqlCredentialStore, committed_user: User
    ) -> None:
        created = await sql_store.create_session(_session(committed_user))

        await asyncio.gather(
            *(sql_store.touch_session_activity(created.session_id) for _ in range(10))
        )

        found = await sql_store.find_session(created.session_id)
        assert found is not None
        assert found.activity_count == 10

    async def test_suspicion_reasons_append(
        self, sql_store: SqlCredentialStore, committed_user: User
    ) -> None:
        created = await sql_store.create_session(_session(committed_user))

        await sql_store.append_session_suspicion(created.session_id, "IP changed")
        await sql_store.append_session_suspicion(
            created.session_id, "User agent changed"
        )

        found = await sql_store.find_session(created.session_id)
        assert found is not None
        assert found.is_suspicious
        assert found.is_active
        assert found.suspicious_reasons == "IP changed; User agent changed"

    async def test_recent_count_and_bulk_revoke(
        self, sql_store: SqlCredentialStore, committed_user: User
    ) -> None:
        keep = await sql_store.create_session(_session(committed_user))
        await sql_store.create_session(_session(committed_user))
        await sql_store.create_session(_session(committed_user, minutes_ago=30))

        since = datetime.now(UTC) - timedelta(minutes=5)
        assert await sql_store.count_recent_sessions(committed_user.id, since) == 2

        revoked = await sql_store.revoke_user_sessions(
            committed_user.id, "test", except_session_id=keep.session_id
        )

        assert revoked == 2
        assert await sql_store.count_active_sessions(committed_user.id) == 1


class TestRefreshTokens:
    async def test_bump_version_revokes_outstanding(
        self, sql_store: SqlCredentialStore, committed_user: User
    ) -> None:
        token_hash = hash_token(f"refresh-{committed_user.id}")
        await sql_store.create_refresh_token(
            committed_user.id,
            token_hash,
            version=1,
            expires_at=datetime.now(UTC) + timedelta(days=7),
        )

        new_version = await sql_store.bump_token_version(committed_user.id, "reset")

        assert new_version == 2
        found = await sql_store.find_refresh_token(token_hash)
        assert found is not None
        assert found.is_revoked
        assert found.revoked_reason == "reset"
