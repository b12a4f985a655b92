"""Tests for session validation and anomaly detection."""

from datetime import UTC, datetime, timedelta

import pytest

from joinery.auth.sessions import (
    SESSION_CHECK_FAILED,
    SESSION_INVALID,
    SessionOutcome,
    SessionValidator,
    detect_anomalies,
    open_session,
)
from joinery.errors import CredentialStoreError, SessionLimitExceededError
from joinery.storage.orm import User
from tests.fakes import TEST_IP, TEST_UA, FakeCredentialStore, make_request, make_session

HEADERS = {"User-Agent": TEST_UA}


@pytest.fixture()
def validator(store: FakeCredentialStore) -> SessionValidator:
    return SessionValidator(store, idle_timeout=timedelta(minutes=120))


class TestSessionValidator:
    async def test_absent_session_passes(self, validator: SessionValidator) -> None:
        check = await validator.validate(make_request(headers=HEADERS))
        assert check.outcome is SessionOutcome.ABSENT

    async def test_valid_session_touched(
        self, validator: SessionValidator, store: FakeCredentialStore, user: User
    ) -> None:
        session = store.add_session(make_session(user, activity_count=4))
        before = session.last_activity_at

        check = await validator.validate(
            make_request(headers={**HEADERS, "X-Session-Id": session.session_id})
        )

        assert check.outcome is SessionOutcome.VALID
        assert check.session_id == session.session_id
        assert check.user_id == user.id
        assert session.activity_count == 5
        assert session.last_activity_at >= before
        assert not session.is_suspicious

    async def test_claimed_session_id(
        self, validator: SessionValidator, store: FakeCredentialStore, user: User
    ) -> None:
        session = store.add_session(make_session(user))
        check = await validator.validate(
            make_request(headers=HEADERS), claimed_session_id=session.session_id
        )
        assert check.outcome is SessionOutcome.VALID

    async def test_unknown_session(self, validator: SessionValidator) -> None:
        check = await validator.validate(
            make_request(headers={**HEADERS, "X-Session-Id": "nope"})
        )
        assert check.outcome is SessionOutcome.REJECTED
        assert check.reason == SESSION_INVALID

    async def test_revoked_session(
        self, validator: SessionValidator, store: FakeCredentialStore, user: User
    ) -> None:
        session = store.add_session(make_session(user, is_active=False))
        check = await validator.validate(
            make_request(headers={**HEADERS, "X-Session-Id": session.session_id})
        )
        assert check.reason == SESSION_INVALID

    async def test_expired_session(
        self, validator: SessionValidator, store: FakeCredentialStore, user: User
    ) -> None:
        session = store.add_session(
            make_session(user, expires_at=datetime.now(UTC) - timedelta(seconds=1))
        )
        check = await validator.validate(
            make_request(headers={**HEADERS, "X-Session-Id": session.session_id})
        )
        assert check.reason == SESSION_INVALID

    async def test_idle_session(
        self, validator: SessionValidator, store: FakeCredentialStore, user: User
    ) -> None:
        session = store.add_session(
            make_session(
                user, last_activity_at=datetime.now(UTC) - timedelta(minutes=121)
            )
        )
        check = await validator.validate(
            make_request(headers={**HEADERS, "X-Session-Id": session.session_id})
        )
        assert check.reason == SESSION_INVALID
        assert session.activity_count == 0

    async def test_idle_check_disabled(
        self, store: FakeCredentialStore, user: User
    ) -> None:
        validator = SessionValidator(store, idle_timeout=None)
        session = store.add_session(
            make_session(user, last_activity_at=datetime.now(UTC) - timedelta(days=1))
        )
        check = await validator.validate(
            make_request(headers={**HEADERS, "X-Session-Id": session.session_id})
        )
        assert check.outcome is SessionOutcome.VALID

    async def test_store_failure_fails_closed(
        self, validator: SessionValidator, store: FakeCredentialStore
    ) -> None:
        store.fail_with = CredentialStoreError("pool exhausted")
        check = await validator.validate(
            make_request(headers={**HEADERS, "X-Session-Id": "any"})
        )
        assert check.outcome is SessionOutcome.REJECTED
        assert check.reason == SESSION_CHECK_FAILED

    async def test_ip_change_flags_but_allows(
        self, validator: SessionValidator, store: FakeCredentialStore, user: User
    ) -> None:
        session = store.add_session(make_session(user, ip_address="198.51.100.1"))

        check = await validator.validate(
            make_request(headers={**HEADERS, "X-Session-Id": session.session_id})
        )

        assert check.outcome is SessionOutcome.VALID
        assert session.is_suspicious
        assert session.suspicious_reasons == (
            f"IP address changed from 198.51.100.1 to {TEST_IP}"
        )

    async def test_reasons_are_appended(
        self, validator: SessionValidator, store: FakeCredentialStore, user: User
    ) -> None:
        session = store.add_session(make_session(user, user_agent="old-browser"))
        request = make_request(headers={**HEADERS, "X-Session-Id": session.session_id})

        await validator.validate(request)
        await validator.validate(request)

        assert session.suspicious_reasons == "User agent changed; User agent changed"


class TestDetectAnomalies:
    def test_clean(self, user: User) -> None:
        session = make_session(user)
        reasons = detect_anomalies(
            session,
            ip_address=TEST_IP,
            user_agent=TEST_UA,
            recent_session_count=1,
            now=datetime.now(UTC),
        )
        assert reasons == []

    def test_many_recent_sessions(self, user: User) -> None:
        reasons = detect_anomalies(
            make_session(user),
            ip_address=TEST_IP,
            user_agent=TEST_UA,
            recent_session_count=4,
            now=datetime.now(UTC),
        )
        assert reasons == ["Multiple concurrent sessions created within short timeframe"]

    def test_burst_activity_in_young_session(self, user: User) -> None:
        now = datetime.now(UTC)
        young = make_session(
            user, activity_count=101, created_at=now - timedelta(minutes=5)
        )
        old = make_session(user, activity_count=101, created_at=now - timedelta(hours=1))

        kwargs = {"ip_address": TEST_IP, "user_agent": TEST_UA, "recent_session_count": 0}
        assert detect_anomalies(young, now=now, **kwargs) == [  # type: ignore[arg-type]
            "Unusually high activity rate"
        ]
        assert detect_anomalies(old, now=now, **kwargs) == []  # type: ignore[arg-type]

    def test_unknown_original_values_are_not_changes(self, user: User) -> None:
        session = make_session(user, ip_address=None, user_agent=None)
        reasons = detect_anomalies(
            session,
            ip_address="203.0.113.1",
            user_agent="other",
            recent_session_count=0,
            now=datetime.now(UTC),
        )
        assert reasons == []


class TestOpenSession:
    async def test_creates_session(self, store: FakeCredentialStore, user: User) -> None:
        session = await open_session(
            store,
            user_id=user.id,
            ip_address=TEST_IP,
            user_agent=TEST_UA,
            login_method="github",
            lifetime=timedelta(hours=24),
            max_concurrent=5,
        )
        assert store.sessions[session.session_id] is session
        assert session.is_valid(datetime.now(UTC))
        assert session.activity_count == 0

    async def test_limit_enforced(self, store: FakeCredentialStore, user: User) -> None:
        for _ in range(2):
            store.add_session(make_session(user))

        with pytest.raises(SessionLimitExceededError):
            await open_session(
                store,
                user_id=user.id,
                ip_address=TEST_IP,
                user_agent=TEST_UA,
                login_method="github",
                lifetime=timedelta(hours=24),
                max_concurrent=2,
            )
