"""Data models for servers, tools and their catalogue summaries."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class TransportConfig(BaseModel):
    """How to reach a server: a stdio command or an HTTP endpoint."""

    model_config = ConfigDict(frozen=True)

    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_target(self) -> "TransportConfig":
        if not self.command and not self.url:
            raise ValueError("transport needs either 'command' or 'url'")
        return self

    @property
    def kind(self) -> str:
        return "http" if self.url else "stdio"

    def merged(self, overrides: Dict[str, Any]) -> "TransportConfig":
        """Return a copy with non-empty override fields applied."""
        data = self.model_dump()
        data.update({k: v for k, v in overrides.items() if v})
        return TransportConfig(**data)


class ServerDescriptor(BaseModel):
    """Per-server record stored in ``<root>/<server>/server.yaml``."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    transport: TransportConfig


class BindingRef(BaseModel):
    """How a tool is addressed on the wire."""

    model_config = ConfigDict(frozen=True)

    method: str = "tools/call"
    remote_name: Optional[str] = None  # defaults to the tool name


class ToolDescriptor(BaseModel):
    """Full tool definition, stored in ``<root>/<server>/tools/<tool>.yaml``."""

    model_config = ConfigDict(frozen=True)

    name: str  # e.g. "navigate_page"
    server: str  # e.g. "chrome-devtools"
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=dict)
    output_schema: Optional[Dict[str, Any]] = None
    binding: BindingRef = Field(default_factory=BindingRef)

    @property
    def qualified_name(self) -> str:
        """Full name as ``server.tool`` (e.g. ``atlassian.getJiraIssue``)."""
        return f"{self.server}.{self.name}"

    def full_schema_text(self) -> str:
        """Human-readable parameter listing for ``discover info``."""
        lines = [f"Tool: {self.qualified_name}"]
        if self.description:
            lines.extend(f"  {line}" for line in self.description.splitlines())
        lines.append("  Parameters:")
        properties = self.input_schema.get("properties", {})
        required = set(self.input_schema.get("required", []))
        if not properties:
            lines.append("    (none)")
        for pname, pinfo in properties.items():
            req = " (required)" if pname in required else ""
            ptype = pinfo.get("type", "any") if isinstance(pinfo, dict) else "any"
            pdesc = pinfo.get("description", "") if isinstance(pinfo, dict) else ""
            line = f"    - {pname}: {ptype}{req}"
            if pdesc:
                line += f": {pdesc}"
            lines.append(line)
        if self.output_schema:
            lines.append(f"  Returns: {self.output_schema.get('type', 'object')}")
        return "\n".join(lines)


class ServerSummary(BaseModel):
    name: str
    tool_count: int


class ToolSummary(BaseModel):
    name: str
    description: str = ""
