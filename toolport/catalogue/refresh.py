"""Populate the catalogue from a live server's ``tools/list``."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from toolport.catalogue.schema import ServerDescriptor, ToolDescriptor, TransportConfig
from toolport.catalogue.store import CatalogueWriter
from toolport.invocation.transport import TransportFactory

logger = logging.getLogger(__name__)


class CatalogueRefresher:
    """
    Connects to a server, fetches its tools and writes them to the store.

    The server's full schemas land in per-tool descriptor files; the index
    keeps only the first line of each description.
    """

    def __init__(
        self,
        root: Path,
        factory: Optional[TransportFactory] = None,
        timeout: Optional[float] = 30.0,
    ):
        self._writer = CatalogueWriter(root)
        self._factory = factory or TransportFactory()
        self.timeout = timeout

    def refresh(self, server_name: str, config: TransportConfig, description: str = "") -> List[ToolDescriptor]:
        transport = self._factory.create(config)
        try:
            transport.connect(self.timeout)
            raw_tools = transport.list_tools(timeout=self.timeout)
        finally:
            transport.stop()

        tools: List[ToolDescriptor] = []
        for raw in raw_tools:
            if not isinstance(raw, dict) or not raw.get("name"):
                continue
            tools.append(ToolDescriptor(
                name=raw["name"],
                server=server_name,
                description=raw.get("description") or "",
                input_schema=raw.get("inputSchema") or {},
                output_schema=raw.get("outputSchema"),
            ))

        server = ServerDescriptor(name=server_name, description=description, transport=config)
        path = self._writer.write_server(server, tools)
        logger.info("Wrote %d tools for '%s' to %s", len(tools), server_name, path)
        return tools
