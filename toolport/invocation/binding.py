"""Binding resolver - (server, tool) -> immutable invocable handle."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from toolport.catalogue.index import CatalogueIndex
from toolport.catalogue.schema import TransportConfig


@dataclass(frozen=True)
class Binding:
    """Everything needed to put one tool call on the wire."""

    server: str
    tool: str
    method: str
    remote_name: str
    transport: TransportConfig
    input_schema: Optional[Dict[str, Any]] = None
    output_schema: Optional[Dict[str, Any]] = None

    @property
    def qualified_name(self) -> str:
        return f"{self.server}.{self.tool}"

    def wire_params(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """JSON-RPC params for this binding's method."""
        if self.method == "tools/call":
            return {"name": self.remote_name, "arguments": arguments}
        return arguments


class BindingResolver:
    """
    Resolves tools through a ``CatalogueIndex``.

    Only the requested tool's descriptor is loaded. No network I/O happens
    here; the server is contacted by the invoker or session manager.
    """

    def __init__(
        self,
        catalogue: CatalogueIndex,
        server_overrides: Optional[Dict[str, Dict[str, Any]]] = None,
    ):
        self._catalogue = catalogue
        self._overrides = server_overrides or {}
        self._bindings: Dict[Tuple[str, str], Binding] = {}
        self._transports: Dict[str, TransportConfig] = {}

    def transport_for(self, server: str) -> TransportConfig:
        """Transport configuration for a server, with config overrides applied."""
        if server not in self._transports:
            transport = self._catalogue.get_server(server).transport
            if server in self._overrides:
                transport = transport.merged(self._overrides[server])
            self._transports[server] = transport
        return self._transports[server]

    def resolve(self, server: str, tool: str) -> Binding:
        key = (server, tool)
        if key not in self._bindings:
            descriptor = self._catalogue.get_tool_descriptor(server, tool)
            self._bindings[key] = Binding(
                server=server,
                tool=tool,
                method=descriptor.binding.method,
                remote_name=descriptor.binding.remote_name or descriptor.name,
                transport=self.transport_for(server),
                input_schema=descriptor.input_schema or None,
                output_schema=descriptor.output_schema,
            )
        return self._bindings[key]
