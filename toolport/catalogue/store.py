"""
Schema Store - on-disk layout of the tool catalogue.

Layout::

    <root>/
      <server>/
        server.yaml          # ServerDescriptor (transport config)
        index.yaml           # ordered tool name -> one-line description
        tools/
          <tool>.yaml        # ToolDescriptor, read only on explicit request

The index is the only file the catalogue needs for listings. Descriptor
units are never read as a side effect of reading an index.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import yaml
from pydantic import ValidationError

from toolport.catalogue.schema import ServerDescriptor, ToolDescriptor
from toolport.errors import CatalogueMissing, ToolportError, UnknownServer, UnknownTool

logger = logging.getLogger(__name__)

INDEX_FILE = "index.yaml"
SERVER_FILE = "server.yaml"
TOOLS_DIR = "tools"


class SchemaStore(ABC):
    """Read-only access to catalogue metadata."""

    @abstractmethod
    def exists(self) -> bool:
        """Whether the store root is present at all."""

    @abstractmethod
    def server_names(self) -> List[str]:
        """Names of all servers with an index, sorted."""

    @abstractmethod
    def read_index(self, server: str) -> Dict[str, str]:
        """Ordered ``tool name -> short description`` for one server."""

    @abstractmethod
    def read_server(self, server: str) -> ServerDescriptor:
        """Server descriptor (transport configuration)."""

    @abstractmethod
    def read_tool(self, server: str, tool: str) -> ToolDescriptor:
        """One tool's full descriptor."""


def _safe_name(name: str) -> bool:
    return bool(name) and "/" not in name and "\\" not in name and name not in (".", "..")


class FilesystemSchemaStore(SchemaStore):
    """YAML-backed store rooted at a directory."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def exists(self) -> bool:
        return self.root.is_dir()

    def _require_root(self) -> None:
        if not self.exists():
            raise CatalogueMissing(
                f"Tool catalogue not found at {self.root}", path=str(self.root)
            )

    def _server_dir(self, server: str) -> Path:
        self._require_root()
        path = self.root / server
        if not _safe_name(server) or not (path / INDEX_FILE).is_file():
            raise UnknownServer(server)
        return path

    @staticmethod
    def _load_yaml(path: Path) -> Dict:
        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ToolportError(f"Corrupt catalogue file {path}: {exc}", path=str(path))
        return data or {}

    # ── SchemaStore ───────────────────────────────────────────────────────

    def server_names(self) -> List[str]:
        self._require_root()
        return sorted(
            p.name for p in self.root.iterdir() if p.is_dir() and (p / INDEX_FILE).is_file()
        )

    def read_index(self, server: str) -> Dict[str, str]:
        data = self._load_yaml(self._server_dir(server) / INDEX_FILE)
        index: Dict[str, str] = {}
        for entry in data.get("tools") or []:
            if isinstance(entry, dict) and entry.get("name"):
                index[str(entry["name"])] = str(entry.get("description") or "")
        return index

    def read_server(self, server: str) -> ServerDescriptor:
        path = self._server_dir(server) / SERVER_FILE
        if not path.is_file():
            raise ToolportError(
                f"Server '{server}' has no {SERVER_FILE} in the catalogue", server=server
            )
        data = self._load_yaml(path)
        data.setdefault("name", server)
        try:
            return ServerDescriptor(**data)
        except ValidationError as exc:
            raise ToolportError(f"Invalid {path}: {exc}", server=server)

    def read_tool(self, server: str, tool: str) -> ToolDescriptor:
        path = self._server_dir(server) / TOOLS_DIR / f"{tool}.yaml"
        if not _safe_name(tool) or not path.is_file():
            raise UnknownTool(server, tool)
        logger.debug("Loading tool descriptor %s", path)
        data = self._load_yaml(path)
        data.setdefault("name", tool)
        data["server"] = server
        try:
            return ToolDescriptor(**data)
        except ValidationError as exc:
            raise ToolportError(f"Invalid {path}: {exc}", server=server, tool=tool)


class CatalogueWriter:
    """Writes server/index/descriptor files in the layout ``FilesystemSchemaStore`` reads."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def write_server(
        self,
        server: ServerDescriptor,
        tools: Iterable[ToolDescriptor],
        short_descriptions: Optional[Dict[str, str]] = None,
    ) -> Path:
        tools = list(tools)
        short_descriptions = short_descriptions or {}
        server_dir = self.root / server.name
        tools_dir = server_dir / TOOLS_DIR
        tools_dir.mkdir(parents=True, exist_ok=True)

        self._dump(server_dir / SERVER_FILE, server.model_dump(exclude_defaults=True))

        index = []
        for tool in tools:
            if not _safe_name(tool.name):
                logger.warning("Skipping tool with unsafe name %r", tool.name)
                continue
            short = short_descriptions.get(tool.name)
            if short is None:
                short = tool.description.split("\n")[0][:100] if tool.description else tool.name
            index.append({"name": tool.name, "description": short})
            self._dump(
                tools_dir / f"{tool.name}.yaml",
                tool.model_dump(exclude={"server"}, exclude_none=True),
            )
        self._dump(server_dir / INDEX_FILE, {"server": server.name, "tools": index})

        # Drop descriptors for tools the server no longer exposes
        keep = {entry["name"] for entry in index}
        for stale in tools_dir.glob("*.yaml"):
            if stale.stem not in keep:
                stale.unlink()

        return server_dir

    @staticmethod
    def _dump(path: Path, data: Dict) -> None:
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
