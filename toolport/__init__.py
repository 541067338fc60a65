"""
toolport - progressive tool catalogue and invocation runtime.

Agents reach many tool servers without loading every tool schema up front:

- the catalogue lists servers and tools from small index files
- one tool's full descriptor is read only when it is asked for
- ``call`` invokes a tool once over a connection scoped to that call
- ``session`` keeps a server connection alive across calls and CLI processes
"""

__version__ = "0.1.0"
__license__ = "Apache-2.0"

from toolport.catalogue.index import CatalogueIndex
from toolport.invocation.invoker import StatelessInvoker
from toolport.invocation.result import InvocationResult
from toolport.runtime import Runtime
from toolport.session.manager import SessionManager

__all__ = [
    "CatalogueIndex",
    "InvocationResult",
    "Runtime",
    "SessionManager",
    "StatelessInvoker",
    "__version__",
]
