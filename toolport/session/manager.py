"""
Session Manager - long-lived server connections with an explicit lifecycle.

Per server::

    Absent -> Starting -> Active -> Stopping -> Absent
                            |
                            +-> Dead (transport broke or a call timed out)

Sessions are never started implicitly: ``call`` on an absent session
raises ``NoActiveSession``. Calls within a session are serialized; calls to
different servers proceed independently.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from toolport.errors import (
    NoActiveSession,
    RemoteToolError,
    SessionBusy,
    SessionDied,
    SessionStartFailed,
    Timeout,
    TransportError,
)
from toolport.invocation.binding import BindingResolver
from toolport.invocation.invoker import arguments_from
from toolport.invocation.params import ParameterNormalizer, ParamSource
from toolport.invocation.result import (
    InvocationMode,
    InvocationRequest,
    InvocationResult,
    payload_from_mcp_result,
)
from toolport.invocation.transport import Transport
from toolport.session.launcher import SessionLauncher
from toolport.session.records import SessionRecord, SessionRecordStore, new_session_id, utcnow

logger = logging.getLogger(__name__)

BUSY_QUEUE = "queue"
BUSY_FAIL = "fail"


class SessionState(str, Enum):
    ABSENT = "absent"
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"
    DEAD = "dead"


@dataclass(frozen=True)
class SessionHandle:
    """What callers get back from ``start``: an id to look the session up by, not the session."""

    server: str
    session_id: str
    created_at: datetime


class Session:
    """A live connection to one server, owned by the ``SessionManager``."""

    def __init__(self, record: SessionRecord, transport: Transport):
        self.record = record
        self.transport = transport
        self.state = SessionState.ACTIVE
        self._call_lock = threading.Lock()

    @property
    def server(self) -> str:
        return self.record.server

    @property
    def session_id(self) -> str:
        return self.record.session_id

    @property
    def handle(self) -> SessionHandle:
        return SessionHandle(self.server, self.session_id, self.record.created_at)

    @property
    def is_live(self) -> bool:
        return self.state == SessionState.ACTIVE and self.transport.is_running

    def acquire(self, wait: Optional[float]) -> bool:
        """Take the single in-flight call slot. ``wait=0`` fails fast, ``None`` waits forever."""
        if wait is None:
            return self._call_lock.acquire()
        if wait <= 0:
            return self._call_lock.acquire(blocking=False)
        return self._call_lock.acquire(timeout=wait)

    def release(self) -> None:
        self._call_lock.release()


class SessionManager:
    """
    Owns every live ``Session`` of this process and the persisted records
    that let other processes reattach to them.
    """

    def __init__(
        self,
        resolver: BindingResolver,
        launcher: SessionLauncher,
        records: SessionRecordStore,
        normalizer: Optional[ParameterNormalizer] = None,
        call_timeout: Optional[float] = 60.0,
        start_timeout: Optional[float] = 30.0,
        attach_timeout: Optional[float] = 5.0,
        idle_timeout: Optional[float] = None,
        busy_policy: str = BUSY_QUEUE,
        busy_wait: Optional[float] = 300.0,
    ):
        if busy_policy not in (BUSY_QUEUE, BUSY_FAIL):
            raise ValueError(f"busy_policy must be '{BUSY_QUEUE}' or '{BUSY_FAIL}'")
        self._resolver = resolver
        self._launcher = launcher
        self._records = records
        self._normalizer = normalizer or ParameterNormalizer()
        self.call_timeout = call_timeout
        self.start_timeout = start_timeout
        self.attach_timeout = attach_timeout
        self.idle_timeout = idle_timeout
        self.busy_policy = busy_policy
        self.busy_wait = busy_wait
        self._sessions: Dict[str, Session] = {}
        self._server_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def _server_lock(self, server: str) -> threading.Lock:
        with self._lock:
            return self._server_locks.setdefault(server, threading.Lock())

    def _is_live(self, session: Session) -> bool:
        return session.is_live and self._launcher.is_alive(session.transport, session.record)

    def state(self, server: str) -> SessionState:
        session = self._sessions.get(server)
        return session.state if session is not None else SessionState.ABSENT

    # ── start ─────────────────────────────────────────────────────────────

    def start(self, server: str) -> SessionHandle:
        """Return the live session for ``server``, creating one if needed."""
        config = self._resolver.transport_for(server)

        with self._server_lock(server):
            session = self._sessions.get(server)
            if session is not None:
                if self._is_live(session):
                    return session.handle
                self._discard(session, "transport no longer running")

            with self._records.lock(server):
                record = self._records.load(server)
                if record is not None:
                    session = self._reattach(record)
                    if session is not None:
                        logger.debug("Attached to existing session %s for '%s'", record.session_id, server)
                        return session.handle

                session_id = new_session_id()
                logger.info("Starting session %s for '%s'", session_id, server)
                try:
                    launched = self._launcher.launch(server, session_id, config, timeout=self.start_timeout)
                except TransportError as exc:
                    raise SessionStartFailed(
                        f"Could not start session for '{server}': {exc}", server=server
                    )

                now = utcnow()
                record = SessionRecord(
                    session_id=session_id,
                    server=server,
                    created_at=now,
                    last_activity=now,
                    pid=launched.pid,
                    attach=launched.attach,
                )
                try:
                    self._records.save(record)
                except OSError as exc:
                    self._launcher.release(launched.transport, record)
                    raise SessionStartFailed(
                        f"Could not persist session for '{server}': {exc}", server=server
                    )
                session = Session(record, launched.transport)
                self._sessions[server] = session
                return session.handle

    def _reattach(self, record: SessionRecord) -> Optional[Session]:
        """Attach to a recorded session, or discard the record if it is stale."""
        if self.idle_timeout is not None and record.idle_seconds() > self.idle_timeout:
            logger.info("Session %s for '%s' exceeded the idle bound", record.session_id, record.server)
            self._discard_record(record)
            return None
        try:
            transport = self._launcher.attach(record, timeout=self.attach_timeout)
        except TransportError as exc:
            logger.info("Session %s for '%s' is unreachable: %s", record.session_id, record.server, exc)
            self._discard_record(record)
            return None
        session = Session(record, transport)
        self._sessions[record.server] = session
        return session

    # ── call ──────────────────────────────────────────────────────────────

    def call(
        self,
        server: str,
        tool: str,
        params: ParamSource = None,
        timeout: Optional[float] = None,
    ) -> InvocationResult:
        """Invoke ``tool`` over the active session for ``server``."""
        binding = self._resolver.resolve(server, tool)
        request = InvocationRequest(
            server=server,
            tool=tool,
            params=arguments_from(self._normalizer, params),
            mode=InvocationMode.SESSION,
        )
        timeout = self.call_timeout if timeout is None else timeout

        session = self._active_session(server)
        wait = 0 if self.busy_policy == BUSY_FAIL else self.busy_wait
        if not session.acquire(wait):
            raise SessionBusy(
                f"Session for '{server}' is busy with another call", server=server
            )

        t0 = time.perf_counter()
        try:
            if not self._is_live(session):
                self._discard(session, "transport no longer running")
                raise SessionDied(f"Session for '{server}' ended before the call ran", server=server)
            try:
                raw = session.transport.call(binding.method, binding.wire_params(request.params), timeout=timeout)
            except RemoteToolError as exc:
                self._touch(session)
                return InvocationResult.failure(exc, request, _elapsed_ms(t0))
            except Timeout as exc:
                self._discard(session, f"call timed out after {timeout}s")
                return InvocationResult.failure(exc, request, _elapsed_ms(t0))
            except TransportError as exc:
                self._discard(session, str(exc))
                raise SessionDied(
                    f"Session for '{server}' died: {exc}. Run `toolport session start {server}` again.",
                    server=server,
                )
            self._touch(session)
            return InvocationResult.success(payload_from_mcp_result(raw), request, _elapsed_ms(t0))
        finally:
            session.release()

    def _active_session(self, server: str) -> Session:
        with self._server_lock(server):
            session = self._sessions.get(server)
            if session is not None and session.state == SessionState.ACTIVE:
                return session
            with self._records.lock(server):
                record = self._records.load(server)
                if record is None:
                    raise NoActiveSession(server)
                session = self._reattach(record)
            if session is None:
                raise SessionDied(
                    f"Session for '{server}' is no longer reachable and was discarded", server=server
                )
            return session

    def _touch(self, session: Session) -> None:
        session.record.last_activity = utcnow()
        session.record.call_count += 1
        with self._records.lock(session.server):
            current = self._records.load(session.server)
            if current is None or current.session_id != session.session_id:
                return
            current.last_activity = session.record.last_activity
            current.call_count += 1
            self._records.save(current)

    # ── stop ──────────────────────────────────────────────────────────────

    def stop(self, server: str) -> bool:
        """End the session for ``server``. Returns False when there was none."""
        with self._server_lock(server):
            with self._lock:
                session = self._sessions.pop(server, None)
            with self._records.lock(server):
                record = self._records.load(server)
                if session is None and record is None:
                    return False

                transport: Optional[Transport] = None
                if session is not None:
                    session.state = SessionState.STOPPING
                    transport = session.transport
                    target = session.record
                else:
                    target = record
                    try:
                        transport = self._launcher.attach(record, timeout=self.attach_timeout)
                    except TransportError:
                        transport = None

                logger.info("Stopping session %s for '%s'", target.session_id, server)
                try:
                    self._launcher.release(transport, target)
                finally:
                    if record is not None and record.session_id == target.session_id:
                        self._records.delete(server)
                    if session is not None:
                        session.state = SessionState.ABSENT
        return True

    # ── Cleanup ───────────────────────────────────────────────────────────

    def _discard(self, session: Session, reason: str) -> None:
        """Move a session to Dead and release everything it held."""
        logger.warning("Discarding session %s for '%s': %s", session.session_id, session.server, reason)
        session.state = SessionState.DEAD
        with self._lock:
            if self._sessions.get(session.server) is session:
                del self._sessions[session.server]
        try:
            self._launcher.release(session.transport, session.record)
        finally:
            with self._records.lock(session.server):
                current = self._records.load(session.server)
                if current is not None and current.session_id == session.session_id:
                    self._records.delete(session.server)

    def _discard_record(self, record: SessionRecord) -> None:
        """Remove a stale record (caller holds the record lock)."""
        try:
            self._launcher.release(None, record)
        finally:
            self._records.delete(record.server)

    def reconcile(self) -> List[str]:
        """
        Check every persisted record against a live transport.

        Stale records are removed and any orphaned host is terminated.
        Returns the servers whose records were discarded.
        """
        discarded = []
        for server in self._records.list_servers():
            session = self._sessions.get(server)
            if session is not None and self._is_live(session):
                continue
            with self._records.lock(server):
                record = self._records.load(server)
                if record is None:
                    self._records.delete(server)
                    discarded.append(server)
                    continue
                if self.idle_timeout is not None and record.idle_seconds() > self.idle_timeout:
                    self._discard_record(record)
                    discarded.append(server)
                    continue
                try:
                    transport = self._launcher.attach(record, timeout=self.attach_timeout)
                except TransportError:
                    self._discard_record(record)
                    discarded.append(server)
                    continue
                self._launcher.detach(transport)
        if discarded:
            logger.info("Discarded stale sessions: %s", ", ".join(discarded))
        return discarded

    def list_sessions(self) -> List[SessionRecord]:
        return self._records.list_records()

    def close(self) -> None:
        """Drop this process's connections; sessions keep running for later processes."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            self._launcher.detach(session.transport)


def _elapsed_ms(t0: float) -> int:
    return int((time.perf_counter() - t0) * 1000)
