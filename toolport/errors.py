"""Error taxonomy shared by every toolport layer."""

from typing import Any, Dict, Optional


class ToolportError(Exception):
    """Base class. ``kind`` is the name printed by the CLI."""

    kind = "ToolportError"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    def __str__(self) -> str:
        return self.message


# ── Catalogue lookup ──────────────────────────────────────────────────────


class CatalogueMissing(ToolportError):
    kind = "CatalogueMissing"


class UnknownServer(ToolportError):
    kind = "UnknownServer"

    def __init__(self, server: str):
        super().__init__(f"Unknown server: {server}", server=server)
        self.server = server


class UnknownTool(ToolportError):
    kind = "UnknownTool"

    def __init__(self, server: str, tool: str):
        super().__init__(f"Unknown tool: {server}.{tool}", server=server, tool=tool)
        self.server = server
        self.tool = tool


# ── Parameters ────────────────────────────────────────────────────────────


class MalformedParameters(ToolportError):
    kind = "MalformedParameters"


class ParameterSourceUnavailable(ToolportError):
    kind = "ParameterSourceUnavailable"


# ── Transport ─────────────────────────────────────────────────────────────


class TransportError(ToolportError):
    """Raised by transports when communication with a server fails."""

    kind = "TransportError"


class TransportUnavailable(TransportError):
    kind = "TransportUnavailable"


class TransportClosed(TransportError):
    """The connection was established once but is no longer usable."""

    kind = "TransportClosed"


class Timeout(TransportError):
    kind = "Timeout"


class RemoteToolError(TransportError):
    """The server (or the tool) reported a failure. ``payload`` is passed through as-is."""

    kind = "RemoteToolError"

    def __init__(self, message: str, payload: Any = None, **context: Any):
        super().__init__(message, **context)
        self.payload = payload


# ── Sessions ──────────────────────────────────────────────────────────────


class NoActiveSession(ToolportError):
    kind = "NoActiveSession"

    def __init__(self, server: str):
        super().__init__(
            f"No active session for '{server}'. Run `toolport session start {server}` first.",
            server=server,
        )


class SessionStartFailed(ToolportError):
    kind = "SessionStartFailed"


class SessionDied(ToolportError):
    kind = "SessionDied"


class SessionBusy(ToolportError):
    kind = "SessionBusy"


ERROR_KINDS = {
    cls.kind: cls
    for cls in (
        CatalogueMissing,
        UnknownServer,
        UnknownTool,
        MalformedParameters,
        ParameterSourceUnavailable,
        TransportUnavailable,
        TransportClosed,
        RemoteToolError,
        Timeout,
        NoActiveSession,
        SessionStartFailed,
        SessionDied,
        SessionBusy,
    )
}


def error_for_kind(kind: str, message: str, payload: Optional[Any] = None) -> ToolportError:
    """Rebuild an exception from a ``kind`` string (used by ``InvocationResult.unwrap``)."""
    if kind == RemoteToolError.kind:
        return RemoteToolError(message, payload=payload)
    cls = ERROR_KINDS.get(kind)
    if cls is None or cls in (UnknownServer, UnknownTool, NoActiveSession):
        return ToolportError(message)
    return cls(message)
