"""Session refresh gate and single-flight de-duplication for backend calls.

Every user-scoped call goes through `GuardedClient.execute`:

1. identical in-flight requests (same fingerprint or operation id) share one
   execution and its outcome;
2. the call waits until the `SessionWatchdog` reports a usable session;
3. an authentication failure forces one session refresh and one retry.
"""
from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from storefront.backend import AuthSession
from storefront.errors import AuthError, BackendError, NotFound, SessionUnavailable


log = logging.getLogger(__name__)

# Keep a failed-to-refresh session usable while it still has this much life left.
MIN_VALIDITY_SECONDS = 60


@dataclass
class SessionState:
    is_ready: bool = False
    is_refreshing: bool = False
    last_check: float = 0.0
    retry_count: int = 0


class SessionWatchdog:
    def __init__(
        self,
        auth,
        session: Optional[AuthSession] = None,
        refresh_margin: int = 600,
        clock: Callable[[], float] = time.time,
    ):
        self._auth = auth
        self._session = session
        self.refresh_margin = refresh_margin
        self._clock = clock

        self._cond = threading.Condition()
        self._state = SessionState()
        self._listeners: List[Callable[[SessionState], None]] = []
        self._queue: Dict[str, Callable[[], Any]] = {}
        self._last_operation: Optional[str] = None

    @property
    def session(self) -> Optional[AuthSession]:
        return self._session

    @property
    def state(self) -> SessionState:
        with self._cond:
            return replace(self._state)

    # -------------------------
    # Listeners
    # -------------------------
    def subscribe(self, listener: Callable[[SessionState], None]) -> Callable[[], None]:
        with self._cond:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._cond:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        with self._cond:
            snapshot = replace(self._state)
            listeners = list(self._listeners)
            self._cond.notify_all()
        for listener in listeners:
            listener(snapshot)

    # -------------------------
    # Session checks
    # -------------------------
    def is_session_ready(self) -> bool:
        with self._cond:
            return self._state.is_ready and not self._state.is_refreshing

    def check_and_refresh(self, force: bool = False) -> bool:
        """Validate the current session, refreshing it when it is close to expiry.

        A check already in progress is not duplicated; the caller gets the
        current readiness instead. `force` refreshes regardless of expiry.
        """
        with self._cond:
            if self._state.is_refreshing:
                log.debug("Session check already in progress, skipping")
                return self._state.is_ready
            self._state.is_refreshing = True
            self._state.is_ready = False
        self._notify()

        ready = False
        try:
            ready = self._check(force)
        except Exception:
            log.exception("Unexpected error during session check")
            with self._cond:
                self._state.retry_count += 1
            ready = False
        finally:
            with self._cond:
                self._state.is_refreshing = False
                self._state.is_ready = ready
            self._notify()

        if ready:
            self._process_queue()
        return ready

    def _check(self, force: bool) -> bool:
        session = self._session
        if session is None or not session.access_token:
            log.info("No session found")
            return False

        now = self._clock()
        remaining = session.expires_at - now

        if force or remaining < self.refresh_margin:
            log.info("Token expires in %d minutes, refreshing", max(0, int(remaining // 60)))
            try:
                refreshed = self._auth.refresh_session(session.refresh_token)
            except (AuthError, BackendError) as e:
                log.warning("Failed to refresh session: %s", e)
                return remaining > MIN_VALIDITY_SECONDS
            self._session = refreshed
            self._mark_valid(now)
            return True

        self._mark_valid(now)
        return True

    def _mark_valid(self, now: float) -> None:
        with self._cond:
            self._state.last_check = now
            self._state.retry_count = 0

    def wait_for_session(self, timeout: float = 10.0) -> bool:
        if self.is_session_ready():
            return True

        with self._cond:
            running = self._state.is_refreshing
        if not running:
            self.check_and_refresh()

        deadline = time.monotonic() + timeout
        with self._cond:
            while not (self._state.is_ready and not self._state.is_refreshing):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True

    def on_auth_event(self, event: str, session: Optional[AuthSession] = None) -> None:
        if event == "SIGNED_OUT":
            self._session = None
            with self._cond:
                self._state.is_ready = False
        elif event in ("SIGNED_IN", "TOKEN_REFRESHED"):
            if session is not None:
                self._session = session
            with self._cond:
                self._state.is_ready = True
                self._state.last_check = self._clock()
        else:
            return
        self._notify()

    # -------------------------
    # Deferred operations (last one wins)
    # -------------------------
    def queue_operation(self, operation_id: str, operation: Callable[[], Any]) -> None:
        with self._cond:
            self._last_operation = operation_id
            self._queue[operation_id] = operation

    def _process_queue(self) -> None:
        with self._cond:
            op = self._queue.get(self._last_operation) if self._last_operation else None
            self._queue.clear()
            self._last_operation = None
        if op is None:
            return
        try:
            op()
        except Exception:
            log.exception("Queued operation failed")


# -------------------------
# Single flight
# -------------------------
class _Call:
    def __init__(self) -> None:
        self.done = threading.Event()
        self.result: Any = None
        self.error: Optional[BaseException] = None
        self.waiters = 0


class SingleFlight:
    """In-flight request cache: concurrent calls with the same key run once."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: Dict[str, _Call] = {}

    def is_pending(self, key: str) -> bool:
        with self._lock:
            return key in self._calls

    def do(self, key: str, fn: Callable[[], Any]) -> Any:
        with self._lock:
            call = self._calls.get(key)
            leader = call is None
            if leader:
                call = _Call()
                self._calls[key] = call
            else:
                call.waiters += 1

        if not leader:
            log.debug("Joining in-flight request %s", key)
            call.done.wait()
            if call.error is not None:
                raise call.error
            return call.result

        try:
            call.result = fn()
        except BaseException as e:
            call.error = e
            raise
        finally:
            with self._lock:
                self._calls.pop(key, None)
            call.done.set()
        return call.result


def request_fingerprint(action: str, table: str, payload: Any = None, scope: Optional[str] = None) -> str:
    raw = json.dumps([action, table, payload, scope], sort_keys=True, default=str, separators=(",", ":"))
    return f"{action}:{table}:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:24]


# -------------------------
# Guarded client
# -------------------------
class GuardedClient:
    """Backend facade routing each call through the session gate and single flight.

    Without a watchdog (anonymous or service-key access) calls go straight to
    the backend, still de-duplicated.
    """

    def __init__(
        self,
        backend,
        watchdog: Optional[SessionWatchdog] = None,
        flights: Optional[SingleFlight] = None,
        wait_timeout: float = 10.0,
    ):
        self._base = backend
        self.watchdog = watchdog
        self.flights = flights or SingleFlight()
        self.wait_timeout = wait_timeout

    @property
    def scope(self) -> Optional[str]:
        if self.watchdog and self.watchdog.session:
            return self.watchdog.session.user_id
        return None

    def _current(self):
        if self.watchdog is not None and self.watchdog.session is not None:
            return self._base.with_token(self.watchdog.session.access_token)
        return self._base

    def execute(
        self,
        operation: Callable[[Any], Any],
        operation_id: Optional[str] = None,
        retry_on_auth: bool = True,
        skip_session_check: bool = False,
    ) -> Any:
        key = operation_id or f"op_{uuid.uuid4().hex}"
        return self.flights.do(key, lambda: self._run(operation, retry_on_auth, skip_session_check))

    def _run(self, operation: Callable[[Any], Any], retry_on_auth: bool, skip_session_check: bool) -> Any:
        wd = self.watchdog
        if wd is not None and not skip_session_check and not wd.is_session_ready():
            log.info("Waiting for session to be ready")
            if not wd.wait_for_session(self.wait_timeout):
                raise SessionUnavailable()

        try:
            return operation(self._current())
        except BackendError as e:
            if not (retry_on_auth and wd is not None and e.is_auth_error):
                raise
            log.info("Auth error (%s), refreshing session and retrying", e.message)
            wd.check_and_refresh(force=True)
            if not wd.is_session_ready():
                raise
            return operation(self._current())

    # -------------------------
    # CRUD surface
    # -------------------------
    def select(self, table: str, columns: str = "*", filters=None, order=None, limit=None, operation_id=None, **opts):
        key = operation_id or request_fingerprint(
            "select", table, {"columns": columns, "filters": filters, "order": order, "limit": limit}, self.scope
        )
        return self.execute(lambda b: b.select(table, columns, filters=filters, order=order, limit=limit), key, **opts)

    def insert(self, table: str, rows, operation_id=None, **opts):
        key = operation_id or request_fingerprint("insert", table, rows, self.scope)
        return self.execute(lambda b: b.insert(table, rows), key, **opts)

    def update(self, table: str, values: Dict[str, Any], filters, operation_id=None, **opts):
        key = operation_id or request_fingerprint("update", table, {"values": values, "filters": filters}, self.scope)

        def op(b):
            rows = b.update(table, values, filters)
            if not rows:
                raise NotFound(f"No rows updated in {table}")
            return rows

        return self.execute(op, key, **opts)

    def delete(self, table: str, filters, operation_id=None, **opts):
        key = operation_id or request_fingerprint("delete", table, filters, self.scope)
        return self.execute(lambda b: b.delete(table, filters), key, **opts)

    def upsert(self, table: str, rows, on_conflict=None, operation_id=None, **opts):
        key = operation_id or request_fingerprint("upsert", table, {"rows": rows, "on_conflict": on_conflict}, self.scope)
        return self.execute(lambda b: b.upsert(table, rows, on_conflict=on_conflict), key, **opts)

    def sequenced_refetch(self, operations: List[Tuple[str, Callable[[], Any]]]) -> Dict[str, Any]:
        """Run refetches one after another once the session is usable."""
        if self.watchdog is not None and not self.watchdog.wait_for_session(self.wait_timeout):
            log.error("Session not ready for sequenced refetch")
            return {}

        results: Dict[str, Any] = {}
        for op_id, fn in operations:
            try:
                results[op_id] = fn()
            except Exception:
                log.exception("Sequenced operation failed: %s", op_id)
        return results
