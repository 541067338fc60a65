"""
Session host - a detached process that owns one server transport.

Started by ``HostLauncher``. It connects to the server, then serves
newline-delimited JSON-RPC on a Unix socket, relaying each request to the
server one at a time. A request that cannot get its turn before its own
deadline is answered "busy" and leaves the session running. The host exits
on ``session/shutdown``, when the server transport dies, after a timed-out
call, or after ``--idle-timeout`` seconds without a call.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import socketserver
import sys
import threading
import time
from typing import Any, Dict, Optional

import click

from toolport.catalogue.schema import TransportConfig
from toolport.errors import RemoteToolError, Timeout, TransportError
from toolport.invocation.transport import (
    HOST_BUSY,
    HOST_TIMEOUT,
    HOST_TRANSPORT_CLOSED,
    Transport,
    TransportFactory,
)
from toolport.session.launcher import TRANSPORT_ENV

logger = logging.getLogger(__name__)

WATCHDOG_INTERVAL = 0.5


class _Server(socketserver.ThreadingMixIn, socketserver.UnixStreamServer):
    daemon_threads = True
    host: "SessionHost"


class _Handler(socketserver.StreamRequestHandler):
    def handle(self) -> None:
        for raw in self.rfile:
            try:
                request = json.loads(raw.decode())
            except ValueError:
                response: Optional[Dict[str, Any]] = _error(None, -32700, "Parse error")
            else:
                response = self.server.host.handle(request)
            if response is None:
                continue
            try:
                self.wfile.write((json.dumps(response) + "\n").encode())
                self.wfile.flush()
            except OSError:
                return


def _error(request_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def _ok(request_id: Any, result: Dict[str, Any]) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


class SessionHost:
    """Relays socket requests to a connected transport, strictly one at a time."""

    def __init__(
        self,
        server: str,
        session_id: str,
        transport: Transport,
        socket_path: str,
        idle_timeout: Optional[float] = None,
    ):
        self.server = server
        self.session_id = session_id
        self.transport = transport
        self.socket_path = socket_path
        self.idle_timeout = idle_timeout
        self.calls = 0
        self.last_activity = time.monotonic()
        self._call_lock = threading.Lock()
        self._stopping = threading.Event()
        self._server: Optional[_Server] = None

    # ── Request handling ──────────────────────────────────────────────────

    def handle(self, request: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        method = request.get("method")
        request_id = request.get("id")

        if method == "session/ping":
            return _ok(request_id, {
                "server": self.server,
                "session_id": self.session_id,
                "pid": os.getpid(),
                "calls": self.calls,
            })
        if method == "session/shutdown":
            self.shutdown("shutdown requested")
            return _ok(request_id, {})
        if "id" not in request:
            # Client-side notifications; the host did its own handshake
            return None
        if self._stopping.is_set():
            return _error(request_id, HOST_TRANSPORT_CLOSED, "Session is shutting down")

        timeout = request.get("timeout")
        deadline = None if timeout is None else time.monotonic() + timeout
        # Waiting behind another client's call counts against this call's deadline
        if not self._call_lock.acquire(timeout=-1 if timeout is None else timeout):
            return _error(request_id, HOST_BUSY, f"Session for '{self.server}' is busy with another call")
        try:
            if self._stopping.is_set():
                return _error(request_id, HOST_TRANSPORT_CLOSED, "Session is shutting down")
            if not self.transport.is_running:
                self.shutdown("server transport is not running")
                return _error(request_id, HOST_TRANSPORT_CLOSED, "Server transport is not running")
            if deadline is not None:
                timeout = deadline - time.monotonic()
                if timeout <= 0:
                    return _error(request_id, HOST_BUSY, f"Session for '{self.server}' is busy with another call")
            try:
                result = self.transport.send(method, request.get("params"), timeout=timeout)
            except RemoteToolError as exc:
                self._touch()
                if isinstance(exc.payload, dict) and "code" in exc.payload:
                    return {"jsonrpc": "2.0", "id": request_id, "error": exc.payload}
                return _error(request_id, -32000, exc.message)
            except Timeout as exc:
                self.shutdown(f"call timed out: {exc}")
                return _error(request_id, HOST_TIMEOUT, str(exc))
            except TransportError as exc:
                self.shutdown(f"server transport failed: {exc}")
                return _error(request_id, HOST_TRANSPORT_CLOSED, str(exc))
            self._touch()
            return _ok(request_id, result)
        finally:
            self._call_lock.release()

    def _touch(self) -> None:
        self.calls += 1
        self.last_activity = time.monotonic()

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def shutdown(self, reason: str) -> None:
        if self._stopping.is_set():
            return
        logger.info("Stopping session %s for '%s': %s", self.session_id, self.server, reason)
        self._stopping.set()
        if self._server is not None:
            # serve_forever() must be stopped from another thread
            threading.Thread(target=self._server.shutdown, daemon=True).start()

    def _watchdog(self) -> None:
        while not self._stopping.wait(WATCHDOG_INTERVAL):
            if not self.transport.is_running:
                self.shutdown("server transport exited")
            elif self.idle_timeout is not None and not self._call_lock.locked():
                idle = time.monotonic() - self.last_activity
                if idle > self.idle_timeout:
                    self.shutdown(f"idle for {int(idle)}s")

    def serve(self) -> None:
        """Listen until shut down. The transport must already be connected."""
        if os.path.exists(self.socket_path):
            os.unlink(self.socket_path)
        self._server = _Server(self.socket_path, _Handler)
        self._server.host = self
        os.chmod(self.socket_path, 0o600)
        threading.Thread(target=self._watchdog, daemon=True).start()
        logger.info("Session %s for '%s' listening on %s", self.session_id, self.server, self.socket_path)
        try:
            if not self._stopping.is_set():
                self._server.serve_forever(poll_interval=0.2)
        finally:
            self._stopping.set()
            self._server.server_close()
            self.transport.stop()
            if os.path.exists(self.socket_path):
                os.unlink(self.socket_path)


@click.command()
@click.option("--server", required=True, help="Server name")
@click.option("--session-id", required=True, help="Session id to answer pings with")
@click.option("--socket", "socket_path", required=True, help="Unix socket path to listen on")
@click.option("--idle-timeout", type=float, default=None, help="Exit after this many idle seconds")
@click.option("--connect-timeout", type=float, default=30.0, help="Server handshake timeout")
def main(server: str, session_id: str, socket_path: str, idle_timeout: Optional[float], connect_timeout: float) -> None:
    """Run a session host (spawned by ``toolport session start``)."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        stream=sys.stderr,
    )

    raw_config = os.environ.pop(TRANSPORT_ENV, None)
    if not raw_config:
        logger.error("%s is not set", TRANSPORT_ENV)
        sys.exit(2)
    config = TransportConfig.model_validate_json(raw_config)

    transport = TransportFactory().create(config)
    try:
        transport.connect(connect_timeout)
    except TransportError as exc:
        logger.error("Could not connect to '%s': %s", server, exc)
        sys.exit(1)

    host = SessionHost(server, session_id, transport, socket_path, idle_timeout=idle_timeout)
    signal.signal(signal.SIGTERM, lambda *_: host.shutdown("SIGTERM"))
    signal.signal(signal.SIGHUP, signal.SIG_IGN)
    host.serve()


if __name__ == "__main__":
    main()
