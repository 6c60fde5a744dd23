"""Session refresh gate, single flight and the guarded client."""
from __future__ import annotations

import threading
import time

import pytest

from storefront.backend import AuthSession
from storefront.errors import AuthError, BackendError, NotFound, SessionUnavailable
from storefront.session_guard import (
    GuardedClient,
    SessionWatchdog,
    SingleFlight,
    request_fingerprint,
)


NOW = 1_700_000_000


def _session(expires_in: int, user_id: str = "u1", refresh_token: str = "rt-1") -> AuthSession:
    return AuthSession("at-old", refresh_token, NOW + expires_in, user_id, "u1@example.com")


class _Auth:
    def __init__(self, error=None):
        self.error = error
        self.calls = 0

    def refresh_session(self, refresh_token):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return AuthSession(f"at-new-{self.calls}", "rt-2", NOW + 3600, "u1", "u1@example.com")


class TestSessionWatchdog:
    """Refresh decisions."""

    def test_no_session_is_not_ready(self) -> None:
        wd = SessionWatchdog(_Auth(), None, clock=lambda: NOW)
        assert wd.check_and_refresh() is False
        assert not wd.is_session_ready()

    def test_fresh_session_is_not_refreshed(self) -> None:
        auth = _Auth()
        wd = SessionWatchdog(auth, _session(3600), clock=lambda: NOW)
        assert wd.check_and_refresh() is True
        assert auth.calls == 0
        assert wd.session.access_token == "at-old"
        assert wd.state.last_check == NOW

    def test_refreshes_inside_margin(self) -> None:
        """Less than ten minutes left triggers a refresh."""
        auth = _Auth()
        wd = SessionWatchdog(auth, _session(300), clock=lambda: NOW)
        assert wd.check_and_refresh() is True
        assert auth.calls == 1
        assert wd.session.access_token == "at-new-1"

    def test_failed_refresh_keeps_session_with_time_left(self) -> None:
        wd = SessionWatchdog(_Auth(error=AuthError("nope")), _session(300), clock=lambda: NOW)
        assert wd.check_and_refresh() is True
        assert wd.session.access_token == "at-old"

    def test_failed_refresh_near_expiry_is_not_ready(self) -> None:
        """Under a minute of validity left and no refresh: not ready."""
        wd = SessionWatchdog(_Auth(error=BackendError("down", status_code=500)), _session(30), clock=lambda: NOW)
        assert wd.check_and_refresh() is False
        assert not wd.is_session_ready()

    def test_unexpected_error_counts_retry(self) -> None:
        wd = SessionWatchdog(_Auth(error=RuntimeError("boom")), _session(30), clock=lambda: NOW)
        assert wd.check_and_refresh() is False
        assert wd.state.retry_count == 1

    def test_force_refresh(self) -> None:
        auth = _Auth()
        wd = SessionWatchdog(auth, _session(3600), clock=lambda: NOW)
        wd.check_and_refresh(force=True)
        assert auth.calls == 1

    def test_listeners_see_transitions(self) -> None:
        seen = []
        wd = SessionWatchdog(_Auth(), _session(3600), clock=lambda: NOW)
        unsubscribe = wd.subscribe(lambda s: seen.append((s.is_ready, s.is_refreshing)))
        wd.check_and_refresh()
        assert seen == [(False, True), (True, False)]
        unsubscribe()
        wd.check_and_refresh()
        assert len(seen) == 2

    def test_auth_events(self) -> None:
        wd = SessionWatchdog(_Auth(), None, clock=lambda: NOW)
        wd.on_auth_event("SIGNED_IN", _session(3600))
        assert wd.is_session_ready()
        wd.on_auth_event("SIGNED_OUT")
        assert wd.session is None
        assert not wd.is_session_ready()

    def test_queued_operations_last_one_wins(self) -> None:
        ran = []
        wd = SessionWatchdog(_Auth(), _session(3600), clock=lambda: NOW)
        wd.queue_operation("a", lambda: ran.append("a"))
        wd.queue_operation("b", lambda: ran.append("b"))
        wd.check_and_refresh()
        assert ran == ["b"]

    def test_wait_for_session_triggers_check(self) -> None:
        wd = SessionWatchdog(_Auth(), _session(3600), clock=lambda: NOW)
        assert wd.wait_for_session(timeout=0.5) is True

    def test_wait_for_session_times_out(self) -> None:
        wd = SessionWatchdog(_Auth(), None, clock=lambda: NOW)
        assert wd.wait_for_session(timeout=0.05) is False


class TestSingleFlight:
    """Concurrent identical requests share one execution."""

    def test_concurrent_calls_run_once(self) -> None:
        flights = SingleFlight()
        started = threading.Event()
        release = threading.Event()
        runs = []

        def slow():
            runs.append(1)
            started.set()
            release.wait(2)
            return "result"

        results = []
        t1 = threading.Thread(target=lambda: results.append(flights.do("k", slow)))
        t1.start()
        started.wait(2)
        t2 = threading.Thread(target=lambda: results.append(flights.do("k", slow)))
        t2.start()
        deadline = time.monotonic() + 2
        while flights._calls["k"].waiters == 0 and time.monotonic() < deadline:
            time.sleep(0.005)
        release.set()
        t1.join(2)
        t2.join(2)

        assert runs == [1]
        assert results == ["result", "result"]
        assert not flights.is_pending("k")

    def test_error_is_shared_and_cleared(self) -> None:
        flights = SingleFlight()

        def fail():
            raise ValueError("bad")

        with pytest.raises(ValueError):
            flights.do("k", fail)
        assert flights.do("k", lambda: 42) == 42

    def test_fingerprint_depends_on_payload_and_scope(self) -> None:
        a = request_fingerprint("select", "orders", {"user_id": "u1"}, "u1")
        assert a == request_fingerprint("select", "orders", {"user_id": "u1"}, "u1")
        assert a != request_fingerprint("select", "orders", {"user_id": "u2"}, "u1")
        assert a != request_fingerprint("select", "orders", {"user_id": "u1"}, "u2")
        assert a.startswith("select:orders:")


class TestGuardedClient:
    """Session gating and auth retries."""

    def test_retries_once_after_auth_error(self, backend) -> None:
        backend.fail("select", "orders", BackendError("JWT expired", status_code=401, code="PGRST301"))
        auth = _Auth()
        wd = SessionWatchdog(auth, _session(3600), clock=lambda: NOW)
        client = GuardedClient(backend, wd)
        assert client.select("orders") == []
        assert auth.calls == 1
        assert backend.tokens[-1] == "at-new-1"

    def test_non_auth_errors_propagate(self, backend) -> None:
        backend.fail("select", "orders", BackendError("boom", status_code=500))
        client = GuardedClient(backend, SessionWatchdog(_Auth(), _session(3600), clock=lambda: NOW))
        with pytest.raises(BackendError):
            client.select("orders")

    def test_missing_session_raises(self, backend) -> None:
        client = GuardedClient(backend, SessionWatchdog(_Auth(), None, clock=lambda: NOW), wait_timeout=0.05)
        with pytest.raises(SessionUnavailable):
            client.select("orders")

    def test_skip_session_check(self, backend) -> None:
        client = GuardedClient(backend, SessionWatchdog(_Auth(), None, clock=lambda: NOW), wait_timeout=0.05)
        assert client.select("products", skip_session_check=True) == []

    def test_update_touching_no_rows(self, db) -> None:
        with pytest.raises(NotFound):
            db.update("orders", {"status": "shipped"}, {"id": "missing"})

    def test_update_returns_rows(self, backend, db) -> None:
        backend.insert("orders", {"id": "o1", "status": "pending"})
        rows = db.update("orders", {"status": "shipped"}, {"id": "o1"})
        assert rows[0]["status"] == "shipped"

    def test_sequenced_refetch_runs_in_order(self, db) -> None:
        order = []
        out = db.sequenced_refetch([("a", lambda: order.append("a") or 1), ("b", lambda: order.append("b") or 2)])
        assert order == ["a", "b"]
        assert out == {"a": 1, "b": 2}

    def test_sequenced_refetch_skips_failures(self, db) -> None:
        def boom():
            raise RuntimeError("x")

        out = db.sequenced_refetch([("bad", boom), ("good", lambda: "ok")])
        assert out == {"good": "ok"}
