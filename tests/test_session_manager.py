"""Tests for the session manager cascade."""

import threading

import httpx
import pytest

from conftest import FakeDispatcharr, FakeEmby, dispatcharr_descriptor, emby_descriptor
from stationsearch.exceptions import PersistenceError
from stationsearch.session.credentials import CredentialRecord
from stationsearch.session.freshness import FreshnessGate
from stationsearch.session.manager import SessionManager
from stationsearch.session.strategies import (
    NoAuthStrategy,
    ReauthOnlyStrategy,
    RefreshCapableStrategy,
)
from stationsearch.session.types import AuthKind, ServiceDescriptor, SessionError, SessionState


def _client(fake) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(fake.handler))


@pytest.fixture
def dispatcharr() -> FakeDispatcharr:
    return FakeDispatcharr()


@pytest.fixture
def emby() -> FakeEmby:
    return FakeEmby()


@pytest.fixture
def make_session(store, clock, dispatcharr):
    def _make(descriptor=None, strategy=None, fake=None):
        return SessionManager(
            descriptor or dispatcharr_descriptor(),
            strategy or RefreshCapableStrategy(step_retries=0),
            store,
            http=_client(fake or dispatcharr),
            gate=FreshnessGate(30, clock=clock),
        )

    return _make


class TestCascade:
    def test_first_call_authenticates(self, make_session, dispatcharr, store):
        session = make_session()
        result = session.ensure_valid_session()

        assert result.ok
        assert result.step == "reauthenticate"
        assert session.state == SessionState.AUTHENTICATED
        stored = store.load("dispatcharr")
        assert stored.access_token in dispatcharr.valid_access
        assert stored.refresh_token in dispatcharr.valid_refresh

    def test_stored_credential_is_validated(self, make_session, dispatcharr, store):
        access, refresh = dispatcharr.issue_pair()
        store.save("dispatcharr", CredentialRecord(access_token=access, refresh_token=refresh))

        result = make_session().ensure_valid_session()

        assert result.step == "validate"
        assert dispatcharr.hits["/api/accounts/token/"] == 0
        assert dispatcharr.hits["/api/accounts/token/refresh/"] == 0

    def test_burst_within_threshold_makes_one_attempt(self, make_session, dispatcharr, clock):
        session = make_session()
        for _ in range(20):
            assert session.ensure_valid_session().ok
            clock.advance(1)

        # validate (no token, no request) -> refresh (no token, no request) -> auth
        assert dispatcharr.cascade_calls() == 1

    def test_cached_result_after_success(self, make_session, clock):
        session = make_session()
        session.ensure_valid_session()
        clock.advance(10)
        assert session.ensure_valid_session().step == "cached"

    def test_revalidates_after_threshold(self, make_session, dispatcharr, clock):
        session = make_session()
        session.ensure_valid_session()
        clock.advance(31)

        result = session.ensure_valid_session()

        assert result.step == "validate"
        assert dispatcharr.hits["/api/core/version/"] == 1

    def test_refresh_keeps_refresh_token(self, make_session, dispatcharr, store, clock):
        """Validate fails, refresh succeeds: only the access half changes."""
        access, refresh = dispatcharr.issue_pair()
        store.save("dispatcharr", CredentialRecord(access_token=access, refresh_token=refresh))
        dispatcharr.expire_access()

        session = make_session()
        result = session.ensure_valid_session()

        assert result.ok
        assert result.step == "refresh"
        assert session.state == SessionState.AUTHENTICATED
        stored = store.load("dispatcharr")
        assert stored.access_token != access
        assert stored.access_token in dispatcharr.valid_access
        assert stored.refresh_token == refresh
        assert dispatcharr.hits["/api/accounts/token/"] == 0

    def test_rotated_refresh_token_is_kept(self, make_session, dispatcharr, store):
        access, refresh = dispatcharr.issue_pair()
        store.save("dispatcharr", CredentialRecord(access_token=access, refresh_token=refresh))
        dispatcharr.expire_access()
        dispatcharr.rotate_refresh = True

        make_session().ensure_valid_session()

        assert store.load("dispatcharr").refresh_token != refresh

    def test_refresh_rejected_falls_back_to_login(self, make_session, dispatcharr, store):
        access, refresh = dispatcharr.issue_pair()
        store.save("dispatcharr", CredentialRecord(access_token=access, refresh_token=refresh))
        dispatcharr.expire_access()
        dispatcharr.revoke_refresh()

        result = make_session().ensure_valid_session()

        assert result.step == "reauthenticate"
        assert dispatcharr.hits["/api/accounts/token/refresh/"] == 1
        assert dispatcharr.hits["/api/accounts/token/"] == 1
        assert store.load("dispatcharr").refresh_token != refresh

    def test_all_steps_fail(self, make_session, dispatcharr, store):
        dispatcharr.password = "changed"
        record = CredentialRecord(access_token="stale", refresh_token="stale-refresh")
        store.save("dispatcharr", record)
        before = store.path_for("dispatcharr").read_bytes()

        session = make_session()
        result = session.ensure_valid_session()

        assert not result.ok
        assert result.error == SessionError.AUTH_FAILED
        assert session.state == SessionState.FAILED
        assert store.path_for("dispatcharr").read_bytes() == before

    def test_failed_is_not_terminal(self, make_session, dispatcharr, clock):
        dispatcharr.password = "changed"
        session = make_session()
        assert not session.ensure_valid_session().ok

        dispatcharr.password = "secret"
        clock.advance(1)
        result = session.ensure_valid_session()

        assert result.ok
        assert session.state == SessionState.AUTHENTICATED

    def test_network_error_does_not_raise(self, make_session, dispatcharr, store):
        dispatcharr.down = True
        result = make_session().ensure_valid_session()
        assert not result.ok
        assert result.error == SessionError.AUTH_FAILED
        assert store.load("dispatcharr") is None

    def test_mark_stale_forces_cascade(self, make_session, dispatcharr):
        session = make_session()
        session.ensure_valid_session()
        session.mark_stale()

        result = session.ensure_valid_session()

        assert result.step == "validate"
        assert dispatcharr.hits["/api/core/version/"] == 1

    def test_persistence_failure_keeps_session(self, make_session, store, monkeypatch):
        def fail(*args, **kwargs):
            raise PersistenceError("read-only filesystem")

        monkeypatch.setattr(store, "save", fail)
        session = make_session()

        result = session.ensure_valid_session()

        assert result.ok
        assert session.state == SessionState.AUTHENTICATED
        assert session.current_headers()["Authorization"].startswith("Bearer access-")


class TestConfiguration:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"enabled": False},
            {"base_url": None},
            {"username": None},
            {"password": ""},
        ],
    )
    def test_unconfigured_fails_without_network(self, make_session, dispatcharr, overrides):
        session = make_session(descriptor=dispatcharr_descriptor(**overrides))

        result = session.ensure_valid_session()

        assert not result.ok
        assert result.error == SessionError.CONFIGURATION
        assert dispatcharr.requests == []

    def test_descriptor_change_invalidates(self, store, clock, dispatcharr):
        current = {"descriptor": dispatcharr_descriptor()}
        session = SessionManager(
            lambda: current["descriptor"],
            RefreshCapableStrategy(step_retries=0),
            store,
            http=_client(dispatcharr),
            gate=FreshnessGate(30, clock=clock),
        )
        session.ensure_valid_session()
        assert store.load("dispatcharr") is not None

        current["descriptor"] = dispatcharr_descriptor(username="other")
        result = session.ensure_valid_session()

        # Stored pair belonged to the old account and was dropped
        assert not result.ok
        assert store.load("dispatcharr") is None

    def test_threshold_change_applies_to_gate(self, store, clock, dispatcharr):
        current = {"descriptor": dispatcharr_descriptor()}
        session = SessionManager(
            lambda: current["descriptor"],
            RefreshCapableStrategy(step_retries=0),
            store,
            http=_client(dispatcharr),
            gate=FreshnessGate(30, clock=clock),
        )
        current["descriptor"] = dispatcharr_descriptor(freshness_threshold=5)
        session.ensure_valid_session()
        assert session.gate.threshold_seconds == 5

    @pytest.mark.parametrize(
        "changes",
        [
            [{"freshness_threshold": 5}],
            [{"enabled": False}, {}],
        ],
    )
    def test_same_account_keeps_stored_tokens(self, store, clock, dispatcharr, changes):
        current = {"descriptor": dispatcharr_descriptor()}
        session = SessionManager(
            lambda: current["descriptor"],
            RefreshCapableStrategy(step_retries=0),
            store,
            http=_client(dispatcharr),
            gate=FreshnessGate(30, clock=clock),
        )
        session.ensure_valid_session()
        saved = store.load("dispatcharr")

        for overrides in changes:
            current["descriptor"] = dispatcharr_descriptor(**overrides)
            session.ensure_valid_session()

        assert store.load("dispatcharr").access_token == saved.access_token
        assert session.state == SessionState.AUTHENTICATED
        assert dispatcharr.hits["/api/accounts/token/"] == 1

    def test_url_change_clears_stored_tokens(self, store, clock, dispatcharr):
        current = {"descriptor": dispatcharr_descriptor()}
        session = SessionManager(
            lambda: current["descriptor"],
            RefreshCapableStrategy(step_retries=0),
            store,
            http=_client(dispatcharr),
            gate=FreshnessGate(30, clock=clock),
        )
        session.ensure_valid_session()

        current["descriptor"] = dispatcharr_descriptor(base_url="http://dispatcharr.test:9191")
        session.ensure_valid_session()

        assert dispatcharr.hits["/api/accounts/token/"] == 2


class TestReauthOnly:
    def test_skips_refresh_without_refresh_token(self, make_session, emby, store):
        store.save("emby", CredentialRecord(access_token="expired-token"))
        session = make_session(
            descriptor=emby_descriptor(),
            strategy=ReauthOnlyStrategy(step_retries=0, device_id="test-device"),
            fake=emby,
        )

        result = session.ensure_valid_session()

        assert result.ok
        assert result.step == "reauthenticate"
        assert emby.hits["/emby/System/Info"] == 1
        assert emby.hits["/emby/Users/AuthenticateByName"] == 1
        assert store.load("emby").refresh_token is None

    def test_authorization_header(self, make_session, emby):
        session = make_session(
            descriptor=emby_descriptor(),
            strategy=ReauthOnlyStrategy(step_retries=0, device_id="test-device"),
            fake=emby,
        )
        session.ensure_valid_session()

        login = emby.requests[-1]
        header = login.headers["X-Emby-Authorization"]
        assert header.startswith("MediaBrowser ")
        assert 'DeviceId="test-device"' in header
        assert session.current_headers() == {"X-Emby-Token": "emby-token-1"}

    def test_refresh_is_noop(self, emby):
        strategy = ReauthOnlyStrategy(step_retries=0)
        record = CredentialRecord(access_token="tok", refresh_token="ignored")
        assert strategy.refresh(_client(emby), emby_descriptor(), record) is None
        assert emby.requests == []


class TestNoAuth:
    def test_always_valid_without_credentials(self, store, clock):
        descriptor = ServiceDescriptor(
            name="channels_dvr",
            base_url="http://cdvr.test",
            enabled=True,
            auth_kind=AuthKind.NONE,
        )
        session = SessionManager(descriptor, NoAuthStrategy(), store, gate=FreshnessGate(30, clock=clock))

        assert session.ensure_valid_session().ok
        assert session.current_headers() == {}
        assert store.load("channels_dvr") is None


class TestInvalidation:
    def test_invalidate_resets_state(self, make_session, store):
        session = make_session()
        session.ensure_valid_session()

        session.invalidate("test")

        assert session.state == SessionState.UNKNOWN
        assert session.credential is None
        assert session.gate.needs_check()
        assert store.load("dispatcharr") is not None

    def test_reset_clears_store(self, make_session, store):
        session = make_session()
        session.ensure_valid_session()

        session.reset()

        assert store.load("dispatcharr") is None


class TestStatus:
    def test_disabled(self, make_session):
        status = make_session(descriptor=dispatcharr_descriptor(enabled=False)).status()
        assert status.status == "disabled"

    def test_lifecycle(self, make_session, dispatcharr, clock):
        session = make_session()
        assert session.status().status == "unknown"

        session.ensure_valid_session()
        assert session.status().status == "authenticated"
        assert session.status().last_validated_at is not None

        clock.advance(31)
        assert session.status().status == "expired"

        dispatcharr.password = "changed"
        dispatcharr.expire_access()
        dispatcharr.revoke_refresh()
        session.ensure_valid_session()
        assert session.status().status == "failed"


class TestSingleFlight:
    def test_concurrent_callers_share_one_cascade(self, store, dispatcharr):
        session = SessionManager(
            dispatcharr_descriptor(),
            RefreshCapableStrategy(step_retries=0),
            store,
            http=_client(dispatcharr),
        )
        barrier = threading.Barrier(8)
        results = []

        def worker():
            barrier.wait()
            results.append(session.ensure_valid_session())

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert all(r.ok for r in results)
        assert dispatcharr.hits["/api/accounts/token/"] == 1
