"""Binding resolution, parameter normalization, transports and stateless calls."""

from toolport.invocation.binding import Binding, BindingResolver
from toolport.invocation.invoker import ConnectionPool, StatelessInvoker
from toolport.invocation.params import ParameterNormalizer
from toolport.invocation.result import InvocationMode, InvocationRequest, InvocationResult
from toolport.invocation.transport import (
    HttpTransport,
    SocketTransport,
    StdioTransport,
    Transport,
    TransportFactory,
)

__all__ = [
    "Binding",
    "BindingResolver",
    "ConnectionPool",
    "HttpTransport",
    "InvocationMode",
    "InvocationRequest",
    "InvocationResult",
    "ParameterNormalizer",
    "SocketTransport",
    "StatelessInvoker",
    "StdioTransport",
    "Transport",
    "TransportFactory",
]
