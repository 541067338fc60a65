"""Shared fixtures: a populated catalogue and in-memory transports."""

import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from toolport.catalogue.schema import ServerDescriptor, ToolDescriptor, TransportConfig
from toolport.catalogue.store import CatalogueWriter
from toolport.errors import Timeout, TransportClosed, TransportUnavailable
from toolport.invocation.transport import Transport, TransportFactory
from toolport.runtime import Runtime
from toolport.session.launcher import Launched, SessionLauncher
from toolport.session.records import SessionRecord
from toolport.validation.config import Config

Handler = Callable[[Dict[str, Any]], Dict[str, Any]]


def text_result(value: str) -> Dict[str, Any]:
    return {"content": [{"type": "text", "text": value}]}


class FakeTransport(Transport):
    """In-memory MCP server. ``handlers`` maps tool name -> fn(arguments) -> result."""

    def __init__(self, handlers: Dict[str, Handler], refuse: bool = False):
        super().__init__()
        self.handlers = handlers
        self.refuse = refuse
        self.running = False
        self.started = 0
        self.stopped = 0
        self.calls: List[Dict[str, Any]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._counter_lock = threading.Lock()

    def start(self, timeout: Optional[float] = None) -> None:
        if self.refuse:
            raise TransportUnavailable("connection refused")
        self.running = True
        self.started += 1

    def stop(self) -> None:
        if self.running:
            self.stopped += 1
        self.running = False

    @property
    def is_running(self) -> bool:
        return self.running

    def kill(self) -> None:
        """Simulate the server process dying."""
        self.running = False

    def _exchange(self, message: Dict[str, Any], timeout: Optional[float]) -> Optional[Dict[str, Any]]:
        if not self.running:
            raise TransportClosed("fake server is gone")
        if "id" not in message:
            return None
        method = message["method"]
        params = message.get("params") or {}
        if method == "initialize":
            return {"jsonrpc": "2.0", "id": message["id"], "result": {"protocolVersion": "2024-11-05"}}
        if method == "tools/list":
            tools = [{"name": name, "description": f"{name} tool"} for name in self.handlers]
            return {"jsonrpc": "2.0", "id": message["id"], "result": {"tools": tools}}
        if method != "tools/call":
            return {"jsonrpc": "2.0", "id": message["id"], "error": {"code": -32601, "message": "Method not found"}}

        with self._counter_lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            self.calls.append(params)
            handler = self.handlers.get(params.get("name"))
            if handler is None:
                return {"jsonrpc": "2.0", "id": message["id"], "error": {"code": -32602, "message": "Unknown tool"}}
            arguments = params.get("arguments") or {}
            delay = arguments.get("_delay", 0)
            if delay:
                if timeout is not None and delay > timeout:
                    time.sleep(timeout)
                    raise Timeout(f"No response within {timeout}s")
                time.sleep(delay)
            if not self.running:
                raise TransportClosed("fake server died mid-call")
            return {"jsonrpc": "2.0", "id": message["id"], "result": handler(arguments)}
        finally:
            with self._counter_lock:
                self.in_flight -= 1


class FakeTransportFactory(TransportFactory):
    """Creates ``FakeTransport``s keyed by the transport config's command."""

    def __init__(self, servers: Dict[str, Dict[str, Handler]]):
        self.servers = servers
        self.created: List[FakeTransport] = []
        self.refuse = False

    def create(self, config: TransportConfig) -> FakeTransport:
        transport = FakeTransport(self.servers.get(config.command, {}), refuse=self.refuse)
        self.created.append(transport)
        return transport


class InMemoryLauncher(SessionLauncher):
    """
    Keeps session transports in a dict shared by every ``SessionManager``
    built from the same launcher, standing in for the session host process.
    """

    def __init__(self, factory: FakeTransportFactory):
        self.factory = factory
        self.live: Dict[str, FakeTransport] = {}
        self.launches = 0
        self.fail_next = False

    def launch(self, server, session_id, config, timeout=None) -> Launched:
        if self.fail_next:
            self.fail_next = False
            raise TransportUnavailable("server refused to start")
        transport = self.factory.create(config)
        transport.connect(timeout)
        self.launches += 1
        self.live[session_id] = transport
        return Launched(transport=transport, attach={"handle": session_id}, pid=None)

    def attach(self, record: SessionRecord, timeout=None) -> Transport:
        transport = self.live.get((record.attach or {}).get("handle"))
        if transport is None or not transport.is_running:
            raise TransportUnavailable(f"session {record.session_id} is gone")
        return transport

    def detach(self, transport: Transport) -> None:
        pass

    def release(self, transport, record) -> None:
        if transport is not None:
            transport.stop()
        if record is not None:
            stale = self.live.pop((record.attach or {}).get("handle"), None)
            if stale is not None:
                stale.stop()


def _atlassian_handlers() -> Dict[str, Handler]:
    return {
        "getJiraIssue": lambda args: {
            "content": [{"type": "text", "text": '{"key": "%s", "summary": "..."}' % args.get("issueIdOrKey")}]
        },
        "createJiraIssue": lambda args: {
            "content": [{"type": "text", "text": "Project not found"}],
            "isError": True,
        },
    }


def _chrome_handlers() -> Dict[str, Handler]:
    state: Dict[str, Any] = {"url": None}

    def navigate(args):
        state["url"] = args.get("url")
        return {"content": [{"type": "text", "text": "ok"}], "structuredContent": {"url": state["url"]}}

    def current_url(args):
        return {"structuredContent": {"url": state["url"]}}

    def slow(args):
        return text_result("done")

    return {"navigate_page": navigate, "current_url": current_url, "slow": slow}


def write_catalogue(root: Path) -> None:
    writer = CatalogueWriter(root)
    writer.write_server(
        ServerDescriptor(
            name="atlassian",
            description="Jira and Confluence",
            transport=TransportConfig(command="fake-atlassian"),
        ),
        [
            ToolDescriptor(
                name="getJiraIssue",
                server="atlassian",
                description="Get a Jira issue by key\nReturns the issue fields.",
                input_schema={
                    "type": "object",
                    "properties": {
                        "cloudId": {"type": "string", "description": "Site URL"},
                        "issueIdOrKey": {"type": "string"},
                    },
                    "required": ["cloudId", "issueIdOrKey"],
                },
            ),
            ToolDescriptor(
                name="createJiraIssue",
                server="atlassian",
                description="Create a Jira issue",
                input_schema={"type": "object", "properties": {"summary": {"type": "string"}}},
            ),
        ],
    )
    writer.write_server(
        ServerDescriptor(name="chrome-devtools", transport=TransportConfig(command="fake-chrome")),
        [
            ToolDescriptor(name="navigate_page", server="chrome-devtools", description="Navigate to a URL"),
            ToolDescriptor(name="current_url", server="chrome-devtools", description="Current page URL"),
            ToolDescriptor(name="slow", server="chrome-devtools", description="Takes a while"),
        ],
    )


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def catalogue_root(temp_dir):
    root = temp_dir / "catalogue"
    write_catalogue(root)
    return root


@pytest.fixture
def factory():
    return FakeTransportFactory({"fake-atlassian": _atlassian_handlers(), "fake-chrome": _chrome_handlers()})


@pytest.fixture
def launcher(factory):
    return InMemoryLauncher(factory)


@pytest.fixture
def make_runtime(temp_dir, catalogue_root, factory, launcher):
    """Build a fresh ``Runtime`` (one per simulated CLI process) over shared fakes."""

    def _make(**sessions_config) -> Runtime:
        local = {"sessions": {"dir": str(temp_dir / "sessions"), **sessions_config}}
        config = Config(local_config=local, local_dir=temp_dir / ".toolport")
        return Runtime(config, catalogue_root=catalogue_root, transport_factory=factory, launcher=launcher)

    return _make
