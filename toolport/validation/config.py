"""
toolport configuration - loading and validation.

Configuration comes from a global file (``~/.toolport/config.yaml``) and a
project-local one (``.toolport/config.yaml``, found by walking up from the
working directory). Local values override global values.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

HOME_ENV = "TOOLPORT_HOME"
CATALOGUE_ENV = "TOOLPORT_CATALOGUE"
DIR_NAME = ".toolport"


class ConfigError(Exception):
    """Raised when there's a configuration error."""

    pass


class CatalogueConfig(BaseModel):
    """Where the Schema Store lives."""

    root: Optional[str] = None


class InvokerConfig(BaseModel):
    """Stateless invocation settings."""

    timeout: Optional[float] = 60.0
    connect_timeout: float = 30.0
    pool_ttl: float = Field(default=0.0, ge=0)


class SessionsConfig(BaseModel):
    """Session manager settings."""

    dir: Optional[str] = None
    idle_timeout: Optional[float] = Field(default=None, gt=0)
    start_timeout: float = 30.0
    call_timeout: Optional[float] = 60.0
    attach_timeout: float = 5.0
    busy_policy: Literal["queue", "fail"] = "queue"
    busy_wait: Optional[float] = 300.0


class ServerOverride(BaseModel):
    """Per-server transport overrides, merged over the catalogue's server.yaml."""

    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)


class ToolportConfig(BaseModel):
    """Complete configuration schema."""

    catalogue: CatalogueConfig = Field(default_factory=CatalogueConfig)
    invoker: InvokerConfig = Field(default_factory=InvokerConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    servers: Dict[str, ServerOverride] = Field(default_factory=dict)


class Config:
    """
    Configuration manager.

    Example:
        >>> config = Config.load()
        >>> config.catalogue_root()
        PosixPath('/work/project/.toolport/catalogue')
    """

    def __init__(
        self,
        global_config: Optional[Dict[str, Any]] = None,
        local_config: Optional[Dict[str, Any]] = None,
        local_dir: Optional[Path] = None,
    ):
        """
        Args:
            global_config: Global configuration dictionary.
            local_config: Local (project) configuration dictionary.
            local_dir: The project's ``.toolport`` directory, if there is one.
        """
        self._global_config = global_config or {}
        self._local_config = local_config or {}
        self.local_dir = Path(local_dir) if local_dir else None
        self._merged: Optional[ToolportConfig] = None

    @staticmethod
    def global_dir() -> Path:
        override = os.environ.get(HOME_ENV)
        return Path(override).expanduser() if override else Path.home() / DIR_NAME

    @classmethod
    def load(cls, start: Optional[Path] = None) -> "Config":
        """Load configuration from the default locations."""
        global_config = cls._load_yaml(cls.global_dir() / "config.yaml")
        local_dir = cls._find_local_dir(start)
        local_config = cls._load_yaml(local_dir / "config.yaml") if local_dir else {}
        return cls(global_config=global_config, local_config=local_config, local_dir=local_dir)

    @classmethod
    def _load_yaml(cls, path: Optional[Path]) -> Dict[str, Any]:
        """Load YAML file if it exists."""
        if path is None or not path.exists():
            return {}

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
                return data if data else {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load config from {path}: {e}")

    @classmethod
    def _find_local_dir(cls, start: Optional[Path] = None) -> Optional[Path]:
        """Find the nearest ``.toolport`` directory by walking up the tree."""
        current = Path(start or Path.cwd()).resolve()
        while True:
            candidate = current / DIR_NAME
            if candidate.is_dir() and candidate != cls.global_dir():
                return candidate
            if current == current.parent:
                return None
            current = current.parent

    def get_merged_config(self) -> Dict[str, Any]:
        """Get the merged configuration as a dictionary."""
        return self._deep_merge(self._global_config.copy(), self._local_config)

    @property
    def merged(self) -> ToolportConfig:
        """Get the validated merged configuration."""
        if self._merged is None:
            try:
                self._merged = ToolportConfig(**self.get_merged_config())
            except ValidationError as e:
                raise ConfigError(f"Invalid configuration: {e}")
        return self._merged

    # ── Resolved locations ────────────────────────────────────────────────

    def _base_dir(self) -> Path:
        return self.local_dir if self.local_dir else self.global_dir()

    def _resolve(self, value: str) -> Path:
        path = Path(value).expanduser()
        return path if path.is_absolute() else (self._base_dir().parent / path)

    def catalogue_root(self) -> Path:
        """Schema Store root: env override, then config, then ``<.toolport>/catalogue``."""
        override = os.environ.get(CATALOGUE_ENV)
        if override:
            return Path(override).expanduser()
        if self.merged.catalogue.root:
            return self._resolve(self.merged.catalogue.root)
        return self._base_dir() / "catalogue"

    def sessions_dir(self) -> Path:
        if self.merged.sessions.dir:
            return self._resolve(self.merged.sessions.dir)
        return self._base_dir() / "sessions"

    def server_overrides(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: override.model_dump(exclude_defaults=True)
            for name, override in self.merged.servers.items()
        }

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result
