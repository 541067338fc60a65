"""Catalogue index - cheap listings, on-demand descriptors."""

from __future__ import annotations

from typing import Dict, List, Tuple

from toolport.catalogue.schema import ServerDescriptor, ServerSummary, ToolDescriptor, ToolSummary
from toolport.catalogue.store import SchemaStore
from toolport.errors import CatalogueMissing, UnknownServer, UnknownTool


class CatalogueIndex:
    """
    In-memory view over a ``SchemaStore``.

    ``list_servers()`` and ``list_tools()`` only ever touch index files.
    ``get_tool_descriptor()`` reads exactly one descriptor unit, once per
    process; later lookups are served from the cache.
    """

    def __init__(self, store: SchemaStore):
        self._store = store
        self._indexes: Dict[str, Dict[str, str]] = {}
        self._servers: Dict[str, ServerDescriptor] = {}
        self._descriptors: Dict[Tuple[str, str], ToolDescriptor] = {}

    @property
    def store(self) -> SchemaStore:
        return self._store

    def _index(self, server: str) -> Dict[str, str]:
        if server not in self._indexes:
            self._indexes[server] = self._store.read_index(server)
        return self._indexes[server]

    # ── Listings ──────────────────────────────────────────────────────────

    def list_servers(self) -> List[ServerSummary]:
        names = self._store.server_names()
        if not names:
            raise CatalogueMissing("Tool catalogue is empty: no server has an index")
        return [ServerSummary(name=name, tool_count=len(self._index(name))) for name in names]

    def list_tools(self, server: str) -> List[ToolSummary]:
        return [
            ToolSummary(name=name, description=desc) for name, desc in self._index(server).items()
        ]

    # ── On-demand loading ─────────────────────────────────────────────────

    def get_server(self, server: str) -> ServerDescriptor:
        if server not in self._servers:
            self._servers[server] = self._store.read_server(server)
        return self._servers[server]

    def get_tool_descriptor(self, server: str, tool: str) -> ToolDescriptor:
        key = (server, tool)
        cached = self._descriptors.get(key)
        if cached is not None:
            return cached
        try:
            index = self._index(server)
        except UnknownServer:
            raise UnknownTool(server, tool)
        if tool not in index:
            raise UnknownTool(server, tool)
        descriptor = self._store.read_tool(server, tool)
        self._descriptors[key] = descriptor
        return descriptor

    def loaded_tools(self) -> List[Tuple[str, str]]:
        """(server, tool) pairs whose descriptors have been loaded so far."""
        return list(self._descriptors)
