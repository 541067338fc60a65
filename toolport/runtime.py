"""Wires catalogue, resolver, invoker and session manager from a ``Config``."""

from __future__ import annotations

from pathlib import Path
from typing import IO, Optional

from toolport.catalogue.index import CatalogueIndex
from toolport.catalogue.store import FilesystemSchemaStore, SchemaStore
from toolport.invocation.binding import BindingResolver
from toolport.invocation.invoker import ConnectionPool, StatelessInvoker
from toolport.invocation.params import ParameterNormalizer
from toolport.invocation.transport import TransportFactory
from toolport.session.launcher import HostLauncher, SessionLauncher
from toolport.session.manager import SessionManager
from toolport.session.records import SessionRecordStore
from toolport.validation.config import Config


class Runtime:
    """
    One process's view of toolport.

    The session manager is built on first use so catalogue-only commands
    never touch the sessions directory.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        catalogue_root: Optional[Path] = None,
        store: Optional[SchemaStore] = None,
        transport_factory: Optional[TransportFactory] = None,
        launcher: Optional[SessionLauncher] = None,
        stdin: Optional[IO] = None,
    ):
        self.config = config or Config()
        settings = self.config.merged

        self.catalogue_root = Path(catalogue_root) if catalogue_root else self.config.catalogue_root()
        self.store = store or FilesystemSchemaStore(self.catalogue_root)
        self.catalogue = CatalogueIndex(self.store)
        self.resolver = BindingResolver(self.catalogue, self.config.server_overrides())
        self.normalizer = ParameterNormalizer(stdin)
        self.transport_factory = transport_factory or TransportFactory()
        self.invoker = StatelessInvoker(
            self.resolver,
            pool=ConnectionPool(
                self.transport_factory,
                ttl=settings.invoker.pool_ttl,
                connect_timeout=settings.invoker.connect_timeout,
            ),
            normalizer=self.normalizer,
            timeout=settings.invoker.timeout,
        )
        self._launcher = launcher
        self._sessions: Optional[SessionManager] = None

    @property
    def sessions(self) -> SessionManager:
        if self._sessions is None:
            settings = self.config.merged.sessions
            records = SessionRecordStore(self.config.sessions_dir())
            launcher = self._launcher or HostLauncher(records, idle_timeout=settings.idle_timeout)
            self._sessions = SessionManager(
                self.resolver,
                launcher,
                records,
                normalizer=self.normalizer,
                call_timeout=settings.call_timeout,
                start_timeout=settings.start_timeout,
                attach_timeout=settings.attach_timeout,
                idle_timeout=settings.idle_timeout,
                busy_policy=settings.busy_policy,
                busy_wait=settings.busy_wait,
            )
        return self._sessions

    def close(self) -> None:
        self.invoker.close()
        if self._sessions is not None:
            self._sessions.close()
