"""Stateless invoker - one call, one scoped connection."""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

from toolport.catalogue.schema import TransportConfig
from toolport.errors import (
    MalformedParameters,
    RemoteToolError,
    Timeout,
    TransportError,
    TransportUnavailable,
)
from toolport.invocation.binding import BindingResolver
from toolport.invocation.params import ParameterNormalizer, ParamSource
from toolport.invocation.result import InvocationRequest, InvocationResult, payload_from_mcp_result
from toolport.invocation.transport import Transport, TransportFactory

logger = logging.getLogger(__name__)


class ConnectionPool:
    """
    Short-lived, in-process pool of connected transports.

    With ``ttl == 0`` every connection is closed on release. A connection
    that failed is never pooled; nothing here outlives the process.
    """

    def __init__(
        self,
        factory: Optional[TransportFactory] = None,
        ttl: float = 0.0,
        connect_timeout: Optional[float] = 30.0,
    ):
        self._factory = factory or TransportFactory()
        self.ttl = ttl
        self.connect_timeout = connect_timeout
        self._idle: Dict[str, List[Tuple[float, Transport]]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(config: TransportConfig) -> str:
        return config.model_dump_json()

    def acquire(self, config: TransportConfig) -> Transport:
        key = self._key(config)
        now = time.monotonic()
        expired: List[Transport] = []
        transport: Optional[Transport] = None
        with self._lock:
            idle = self._idle.get(key, [])
            while idle:
                released_at, candidate = idle.pop()
                if now - released_at <= self.ttl and candidate.is_running:
                    transport = candidate
                    break
                expired.append(candidate)
        for stale in expired:
            stale.stop()
        if transport is not None:
            return transport

        transport = self._factory.create(config)
        transport.connect(self.connect_timeout)
        return transport

    def release(self, config: TransportConfig, transport: Transport, reusable: bool) -> None:
        if self.ttl > 0 and reusable and transport.is_running:
            with self._lock:
                self._idle.setdefault(self._key(config), []).append((time.monotonic(), transport))
            return
        transport.stop()

    @contextmanager
    def connection(self, config: TransportConfig) -> Iterator[Transport]:
        """Acquire a connection; it is released (or closed) on every exit path."""
        transport = self.acquire(config)
        healthy = False
        try:
            yield transport
            healthy = True
        finally:
            self.release(config, transport, reusable=healthy)

    def close(self) -> None:
        with self._lock:
            idle = [t for entries in self._idle.values() for _, t in entries]
            self._idle.clear()
        for transport in idle:
            transport.stop()


class StatelessInvoker:
    """
    Resolves a tool and calls it exactly once.

    Lookup and parameter errors are raised. Transport outcomes come back
    as a failed ``InvocationResult``: ``TransportUnavailable``, ``Timeout``,
    or ``RemoteToolError`` with the server's payload untouched. No retries.
    """

    def __init__(
        self,
        resolver: BindingResolver,
        pool: Optional[ConnectionPool] = None,
        normalizer: Optional[ParameterNormalizer] = None,
        timeout: Optional[float] = 60.0,
    ):
        self._resolver = resolver
        self._pool = pool or ConnectionPool()
        self._normalizer = normalizer or ParameterNormalizer()
        self.timeout = timeout

    def invoke(
        self,
        server: str,
        tool: str,
        params: ParamSource = None,
        timeout: Optional[float] = None,
    ) -> InvocationResult:
        binding = self._resolver.resolve(server, tool)
        request = InvocationRequest(server=server, tool=tool, params=arguments_from(self._normalizer, params))
        timeout = self.timeout if timeout is None else timeout

        logger.debug("Invoking %s (call %s)", request.qualified_name, request.call_id)
        t0 = time.perf_counter()
        try:
            with self._pool.connection(binding.transport) as transport:
                try:
                    raw = transport.call(binding.method, binding.wire_params(request.params), timeout=timeout)
                except RemoteToolError as exc:
                    return InvocationResult.failure(exc, request, _elapsed_ms(t0))
        except Timeout as exc:
            logger.warning("%s timed out after %ss", request.qualified_name, timeout)
            return InvocationResult.failure(exc, request, _elapsed_ms(t0))
        except TransportUnavailable as exc:
            return InvocationResult.failure(exc, request, _elapsed_ms(t0))
        except TransportError as exc:
            return InvocationResult.failure(TransportUnavailable(str(exc)), request, _elapsed_ms(t0))

        return InvocationResult.success(payload_from_mcp_result(raw), request, _elapsed_ms(t0))

    def close(self) -> None:
        self._pool.close()


def arguments_from(normalizer: ParameterNormalizer, params: ParamSource) -> Dict[str, Any]:
    """Normalize ``params`` and require a mapping, as tool arguments must be."""
    value = normalizer.normalize(params)
    if not isinstance(value, dict):
        raise MalformedParameters(
            f"Tool parameters must be a mapping, got {type(value).__name__}"
        )
    return value


def _elapsed_ms(t0: float) -> int:
    return int((time.perf_counter() - t0) * 1000)
