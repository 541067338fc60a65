"""Session launchers: how a long-lived server connection is created and found again."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from toolport.catalogue.schema import TransportConfig
from toolport.errors import TransportError, TransportUnavailable
from toolport.invocation.transport import SocketTransport, Transport
from toolport.session.records import SessionRecord, SessionRecordStore

logger = logging.getLogger(__name__)

HOST_MODULE = "toolport.session.host"
TRANSPORT_ENV = "TOOLPORT_SESSION_TRANSPORT"


@dataclass
class Launched:
    transport: Transport
    attach: Dict[str, Any] = field(default_factory=dict)
    pid: Optional[int] = None


class SessionLauncher(ABC):
    """Creates, reattaches to and tears down session transports."""

    @abstractmethod
    def launch(
        self,
        server: str,
        session_id: str,
        config: TransportConfig,
        timeout: Optional[float] = None,
    ) -> Launched:
        """Establish a new session transport. Raises ``TransportError`` on failure."""

    @abstractmethod
    def attach(self, record: SessionRecord, timeout: Optional[float] = None) -> Transport:
        """Reconnect to the session a record describes. Raises ``TransportError`` if it is gone."""

    @abstractmethod
    def detach(self, transport: Transport) -> None:
        """Drop this process's connection but leave the session running."""

    @abstractmethod
    def release(self, transport: Optional[Transport], record: Optional[SessionRecord]) -> None:
        """End the session for good. Idempotent; never raises for an already-dead session."""

    def is_alive(self, transport: Transport, record: SessionRecord) -> bool:
        """Whether a session this process already holds can still serve calls."""
        return transport.is_running


class HostLauncher(SessionLauncher):
    """
    Runs each session in a detached ``toolport.session.host`` process.

    The host owns the server transport and listens on a Unix socket in the
    sessions directory, so any later CLI process can reach the same server
    connection through the record's ``socket_path``.
    """

    def __init__(self, records: SessionRecordStore, idle_timeout: Optional[float] = None):
        self._records = records
        self.idle_timeout = idle_timeout

    def launch(
        self,
        server: str,
        session_id: str,
        config: TransportConfig,
        timeout: Optional[float] = 30.0,
    ) -> Launched:
        socket_path = self._records.socket_path(server)
        if socket_path.exists():
            socket_path.unlink()

        cmd = [
            sys.executable,
            "-m",
            HOST_MODULE,
            "--server",
            server,
            "--session-id",
            session_id,
            "--socket",
            str(socket_path),
        ]
        if self.idle_timeout is not None:
            cmd += ["--idle-timeout", str(self.idle_timeout)]

        env = {**os.environ, TRANSPORT_ENV: config.model_dump_json()}
        log_path = self._records.log_path(server)
        with open(log_path, "ab") as log:
            try:
                process = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=log,
                    env=env,
                    start_new_session=True,
                    close_fds=True,
                )
            except OSError as exc:
                raise TransportUnavailable(f"Cannot spawn session host: {exc}")

        try:
            transport = self._wait_ready(process, str(socket_path), session_id, log_path, timeout)
        except BaseException:
            _kill_group(process.pid)
            process.wait()
            raise
        logger.info("Session %s for '%s' running in host pid %s", session_id, server, process.pid)
        return Launched(transport=transport, attach={"socket_path": str(socket_path)}, pid=process.pid)

    def _wait_ready(
        self,
        process: subprocess.Popen,
        socket_path: str,
        session_id: str,
        log_path: Path,
        timeout: Optional[float],
    ) -> Transport:
        deadline = None if timeout is None else time.monotonic() + timeout
        last_error: Optional[Exception] = None
        while True:
            if process.poll() is not None:
                raise TransportUnavailable(
                    f"Session host exited with status {process.returncode}: {_tail(log_path)}"
                )
            if os.path.exists(socket_path):
                transport = SocketTransport(socket_path)
                try:
                    transport.start(timeout=2.0)
                    info = transport.ping(timeout=2.0)
                    if info.get("session_id") == session_id:
                        return transport
                    transport.stop()
                except TransportError as exc:
                    transport.stop()
                    last_error = exc
            if deadline is not None and time.monotonic() > deadline:
                raise TransportUnavailable(
                    f"Session host not ready after {timeout}s"
                    + (f": {last_error}" if last_error else "")
                )
            time.sleep(0.05)

    def attach(self, record: SessionRecord, timeout: Optional[float] = 5.0) -> Transport:
        socket_path = (record.attach or {}).get("socket_path")
        if not socket_path:
            raise TransportUnavailable(f"Session record for '{record.server}' has no socket path")
        transport = SocketTransport(socket_path)
        try:
            transport.start(timeout=timeout)
            info = transport.ping(timeout=timeout)
        except TransportError:
            transport.stop()
            raise
        if info.get("session_id") != record.session_id:
            transport.stop()
            raise TransportUnavailable(
                f"Socket {socket_path} belongs to a different session ({info.get('session_id')})"
            )
        return transport

    def detach(self, transport: Transport) -> None:
        transport.stop()

    def is_alive(self, transport: Transport, record: SessionRecord) -> bool:
        # An open socket says nothing about the host at the other end
        if not transport.is_running:
            return False
        if record.pid and not _host_running(record.pid):
            return False
        socket_path = (record.attach or {}).get("socket_path")
        return not socket_path or os.path.exists(socket_path)

    def release(self, transport: Optional[Transport], record: Optional[SessionRecord]) -> None:
        if isinstance(transport, SocketTransport) and transport.is_running:
            try:
                transport.shutdown_host(timeout=5.0)
            except TransportError as exc:
                logger.debug("Host shutdown request failed: %s", exc)
        if transport is not None:
            transport.stop()
        if record is None:
            return
        if record.pid and _wait_exit(record.pid, 5.0) is False and _is_host_process(record.pid):
            logger.info("Terminating session host pid %s for '%s'", record.pid, record.server)
            _kill_group(record.pid)
        socket_path = (record.attach or {}).get("socket_path")
        if socket_path and os.path.exists(socket_path):
            try:
                os.unlink(socket_path)
            except OSError:
                pass


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _host_running(pid: int) -> bool:
    try:
        # Reap it first if it is our own exited child
        reaped, _ = os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        reaped = 0
    return reaped != pid and _pid_alive(pid)


def _wait_exit(pid: int, timeout: float) -> bool:
    """True once ``pid`` is gone; False if still alive after ``timeout``."""
    deadline = time.monotonic() + timeout
    while _pid_alive(pid):
        try:
            # Reap if it is our own child
            os.waitpid(pid, os.WNOHANG)
        except ChildProcessError:
            pass
        if time.monotonic() > deadline:
            return False
        time.sleep(0.05)
    return True


def _is_host_process(pid: int) -> bool:
    """Guard against pid reuse: only signal processes that look like a session host."""
    cmdline = Path(f"/proc/{pid}/cmdline")
    if not cmdline.parent.exists():
        return _pid_alive(pid)
    try:
        return HOST_MODULE.encode() in cmdline.read_bytes()
    except OSError:
        return False


def _kill_group(pid: int) -> None:
    try:
        os.killpg(pid, signal.SIGTERM)
    except (ProcessLookupError, PermissionError):
        return
    if not _wait_exit(pid, 3.0):
        try:
            os.killpg(pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass


def _tail(path: Path, lines: int = 5) -> str:
    try:
        text = path.read_text(errors="replace")
    except OSError:
        return "(no log)"
    tail = [line for line in text.splitlines() if line.strip()][-lines:]
    return " | ".join(tail) or "(empty log)"
