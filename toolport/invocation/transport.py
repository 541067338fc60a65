"""Server transports: stdio subprocess, HTTP endpoint, and the session-host socket."""

from __future__ import annotations

import json
import logging
import os
import queue
import socket
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from toolport.catalogue.schema import TransportConfig
from toolport.errors import (
    RemoteToolError,
    SessionBusy,
    Timeout,
    ToolportError,
    TransportClosed,
    TransportError,
    TransportUnavailable,
)

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "toolport", "version": "0.1.0"}

# JSON-RPC error codes the session host uses for its own failures
HOST_TRANSPORT_CLOSED = -32099
HOST_TIMEOUT = -32098
HOST_BUSY = -32097
HOST_GRACE = 5.0


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return deadline - time.monotonic()


class Transport(ABC):
    """
    JSON-RPC 2.0 connection to one server.

    Subclasses move single messages (``_exchange``); this class owns request
    ids, error mapping and the MCP methods. Requests on one transport never
    interleave.
    """

    def __init__(self) -> None:
        self._request_id = 0
        self._lock = threading.Lock()

    # ── Lifecycle ─────────────────────────────────────────────────────────

    @abstractmethod
    def start(self, timeout: Optional[float] = None) -> None:
        """Open the underlying connection or process."""

    @abstractmethod
    def stop(self) -> None:
        """Close the connection. Safe to call more than once."""

    @property
    @abstractmethod
    def is_running(self) -> bool:
        ...

    def connect(self, timeout: Optional[float] = None) -> None:
        """Start and complete the protocol handshake, or leave nothing open."""
        try:
            self.start(timeout)
            self._handshake(timeout)
        except TransportError as exc:
            self.stop()
            if isinstance(exc, TransportUnavailable):
                raise
            raise TransportUnavailable(f"Handshake with server failed: {exc}")

    def _handshake(self, timeout: Optional[float]) -> None:
        self.initialize(timeout)
        self.notify("notifications/initialized")

    # ── JSON-RPC ──────────────────────────────────────────────────────────

    @abstractmethod
    def _exchange(self, message: Dict[str, Any], timeout: Optional[float]) -> Optional[Dict[str, Any]]:
        """Send one message; return the matching response (``None`` for notifications)."""

    def send(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Send a JSON-RPC request and return its ``result``."""
        with self._lock:
            self._request_id += 1
            request: Dict[str, Any] = {
                "jsonrpc": "2.0",
                "id": self._request_id,
                "method": method,
            }
            if params is not None:
                request["params"] = params
            response = self._exchange(request, timeout)

        if response is None:
            raise TransportClosed(f"No response to {method}")
        if "error" in response:
            raise self._error_from_response(response["error"])
        return response.get("result") or {}

    def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        with self._lock:
            self._exchange(message, None)

    def _error_from_response(self, error: Any) -> ToolportError:
        if isinstance(error, dict):
            return RemoteToolError(
                f"Server error {error.get('code')}: {error.get('message')}", payload=error
            )
        return RemoteToolError(f"Server error: {error}", payload=error)

    # ── MCP ───────────────────────────────────────────────────────────────

    def initialize(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Perform the MCP initialize handshake."""
        return self.send(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": CLIENT_INFO,
            },
            timeout=timeout,
        )

    def list_tools(self, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        """Fetch the full tool list from the server, following ``nextCursor`` pages."""
        tools: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            result = self.send("tools/list", {"cursor": cursor} if cursor else None, timeout=timeout)
            tools.extend(result.get("tools", []))
            cursor = result.get("nextCursor")
            if not cursor:
                return tools

    def call_tool(
        self,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        return self.call("tools/call", {"name": name, "arguments": arguments or {}}, timeout)

    def call(self, method: str, params: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        """Invoke a bound method; a ``tools/call`` result flagged ``isError`` raises."""
        result = self.send(method, params, timeout=timeout)
        if method == "tools/call" and result.get("isError"):
            raise RemoteToolError(_error_text(result), payload=result)
        return result


def _error_text(result: Dict[str, Any]) -> str:
    parts = [
        part.get("text", "")
        for part in result.get("content", [])
        if isinstance(part, dict) and part.get("type") == "text"
    ]
    text = "\n".join(p for p in parts if p)
    return text or "Tool reported an error"


class StdioTransport(Transport):
    """
    Talk to a server over the stdin/stdout of a subprocess.

    A reader thread queues stdout lines so every wait can honour a deadline.
    stderr is drained into the debug log.
    """

    def __init__(
        self,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
    ):
        super().__init__()
        self.command = command
        self.args = args or []
        self.env = env or {}
        self._process: Optional[subprocess.Popen] = None
        self._lines: "queue.Queue[Optional[bytes]]" = queue.Queue()

    def start(self, timeout: Optional[float] = None) -> None:
        if self.is_running:
            return

        merged_env = {**os.environ, **self.env}
        try:
            self._process = subprocess.Popen(
                [self.command] + self.args,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=merged_env,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise TransportUnavailable(
                f"Cannot start server command '{self.command}': {exc.strerror or exc}"
            )

        self._lines = queue.Queue()
        threading.Thread(
            target=self._pump_stdout, args=(self._process, self._lines), daemon=True
        ).start()
        threading.Thread(target=self._pump_stderr, args=(self._process,), daemon=True).start()
        logger.debug("Started %s (pid %s)", self.command, self._process.pid)

    @staticmethod
    def _pump_stdout(process: subprocess.Popen, lines: "queue.Queue[Optional[bytes]]") -> None:
        try:
            for raw in iter(process.stdout.readline, b""):
                lines.put(raw)
        except (OSError, ValueError):
            pass
        lines.put(None)

    def _pump_stderr(self, process: subprocess.Popen) -> None:
        try:
            for raw in iter(process.stderr.readline, b""):
                logger.debug("[%s] %s", self.command, raw.decode(errors="replace").rstrip())
        except (OSError, ValueError):
            pass

    def stop(self) -> None:
        process = self._process
        self._process = None
        if process is None:
            return
        if process.poll() is None:
            try:
                process.terminate()
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
        for stream in (process.stdin, process.stdout, process.stderr):
            try:
                if stream:
                    stream.close()
            except OSError:
                pass

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    def _exchange(self, message: Dict[str, Any], timeout: Optional[float]) -> Optional[Dict[str, Any]]:
        if not self.is_running:
            raise TransportClosed(f"Server process '{self.command}' is not running")

        line = json.dumps(message) + "\n"
        try:
            self._process.stdin.write(line.encode())
            self._process.stdin.flush()
        except (BrokenPipeError, OSError) as exc:
            raise TransportClosed(f"Server process '{self.command}' closed stdin: {exc}")

        if "id" not in message:
            return None

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            remaining = _remaining(deadline)
            if remaining is not None and remaining <= 0:
                raise Timeout(f"No response to {message['method']} within {timeout}s")
            try:
                raw = self._lines.get(timeout=remaining)
            except queue.Empty:
                raise Timeout(f"No response to {message['method']} within {timeout}s")
            if raw is None:
                raise TransportClosed(f"Server process '{self.command}' closed the connection")
            try:
                response = json.loads(raw.decode())
            except ValueError:
                logger.debug("Ignoring non-JSON output: %r", raw[:200])
                continue
            if isinstance(response, dict) and response.get("id") == message["id"] and (
                "result" in response or "error" in response
            ):
                return response
            logger.debug("Ignoring unsolicited message: %r", raw[:200])

    def __del__(self):
        if getattr(self, "_process", None) is not None:
            self.stop()


class HttpTransport(Transport):
    """JSON-RPC over HTTP POST (plain JSON or a server-sent event stream)."""

    def __init__(self, url: str, headers: Optional[Dict[str, str]] = None):
        super().__init__()
        self.url = url
        self.headers = headers or {}
        self._client: Optional[httpx.Client] = None
        self._session_id: Optional[str] = None

    def start(self, timeout: Optional[float] = None) -> None:
        if self._client is None:
            self._client = httpx.Client(headers=self.headers, timeout=timeout)

    def stop(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
        self._session_id = None

    @property
    def is_running(self) -> bool:
        return self._client is not None

    def _exchange(self, message: Dict[str, Any], timeout: Optional[float]) -> Optional[Dict[str, Any]]:
        if self._client is None:
            raise TransportClosed(f"Connection to {self.url} is closed")

        headers = {"Accept": "application/json, text/event-stream"}
        if self._session_id:
            headers["Mcp-Session-Id"] = self._session_id
        try:
            response = self._client.post(self.url, json=message, headers=headers, timeout=timeout)
        except httpx.TimeoutException as exc:
            raise Timeout(f"No response from {self.url} within {timeout}s: {exc}")
        except httpx.ConnectError as exc:
            raise TransportUnavailable(f"Cannot connect to {self.url}: {exc}")
        except httpx.HTTPError as exc:
            raise TransportClosed(f"HTTP transport error talking to {self.url}: {exc}")

        session_id = response.headers.get("mcp-session-id")
        if session_id:
            self._session_id = session_id

        if "id" not in message:
            return None
        if response.status_code == 404 and self._session_id:
            raise TransportClosed(f"Server at {self.url} no longer knows this session")
        if response.status_code >= 400:
            raise TransportUnavailable(f"HTTP {response.status_code} from {self.url}")

        if "text/event-stream" in response.headers.get("content-type", ""):
            return self._from_event_stream(response.text, message["id"])
        try:
            return response.json()
        except ValueError:
            raise TransportClosed(f"Server at {self.url} sent a non-JSON response")

    def _from_event_stream(self, body: str, request_id: Any) -> Dict[str, Any]:
        for line in body.splitlines():
            if not line.startswith("data:"):
                continue
            try:
                event = json.loads(line[5:].strip())
            except ValueError:
                continue
            if isinstance(event, dict) and event.get("id") == request_id:
                return event
        raise TransportClosed(f"Event stream from {self.url} ended without a response")


class SocketTransport(Transport):
    """Client side of a session host's Unix socket."""

    def __init__(self, socket_path: str):
        super().__init__()
        self.socket_path = socket_path
        self._sock: Optional[socket.socket] = None
        self._file = None

    def start(self, timeout: Optional[float] = None) -> None:
        if self._sock is not None:
            return
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(timeout)
        try:
            sock.connect(self.socket_path)
        except OSError as exc:
            sock.close()
            raise TransportUnavailable(f"Session host at {self.socket_path} unreachable: {exc}")
        self._sock = sock
        self._file = sock.makefile("rwb")

    def stop(self) -> None:
        for closable in (self._file, self._sock):
            if closable is not None:
                try:
                    closable.close()
                except OSError:
                    pass
        self._file = None
        self._sock = None

    @property
    def is_running(self) -> bool:
        return self._sock is not None

    def _handshake(self, timeout: Optional[float]) -> None:
        self.ping(timeout)

    def ping(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        return self.send("session/ping", timeout=timeout)

    def shutdown_host(self, timeout: Optional[float] = None) -> None:
        self.send("session/shutdown", timeout=timeout)

    def _exchange(self, message: Dict[str, Any], timeout: Optional[float]) -> Optional[Dict[str, Any]]:
        if self._sock is None:
            raise TransportClosed(f"Session host connection {self.socket_path} is closed")
        if timeout is not None and "id" in message:
            # The host enforces the deadline; the grace period lets its Timeout reply arrive
            message = {**message, "timeout": timeout}
            self._sock.settimeout(timeout + HOST_GRACE)
        else:
            self._sock.settimeout(timeout)
        try:
            self._file.write((json.dumps(message) + "\n").encode())
            self._file.flush()
        except socket.timeout:
            raise Timeout(f"No response to {message['method']} within {timeout}s")
        except OSError as exc:
            raise TransportClosed(f"Session host connection lost: {exc}")
        if "id" not in message:
            return None

        while True:
            try:
                raw = self._file.readline()
            except socket.timeout:
                raise Timeout(f"No response to {message['method']} within {timeout}s")
            except OSError as exc:
                raise TransportClosed(f"Session host connection lost: {exc}")
            if not raw:
                raise TransportClosed("Session host closed the connection")
            try:
                response = json.loads(raw.decode())
            except ValueError:
                raise TransportClosed("Session host sent a malformed response")
            if isinstance(response, dict) and response.get("id") == message["id"]:
                return response
            logger.debug("Ignoring reply to an earlier request: %r", raw[:200])

    def _error_from_response(self, error: Any) -> ToolportError:
        code = error.get("code") if isinstance(error, dict) else None
        if code == HOST_TRANSPORT_CLOSED:
            return TransportClosed(error.get("message", "Session transport closed"))
        if code == HOST_TIMEOUT:
            return Timeout(error.get("message", "Session call timed out"))
        if code == HOST_BUSY:
            return SessionBusy(error.get("message", "Session is busy with another call"))
        return super()._error_from_response(error)


class TransportFactory:
    """Builds an unconnected transport from a server's transport config."""

    def create(self, config: TransportConfig) -> Transport:
        if config.kind == "http":
            return HttpTransport(config.url, headers=dict(config.headers))
        return StdioTransport(config.command, args=list(config.args), env=dict(config.env))
