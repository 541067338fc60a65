"""
Tool catalogue.

Index files are enough to list servers and tools; descriptor files are
read one at a time, on demand.
"""

from toolport.catalogue.schema import (
    BindingRef,
    ServerDescriptor,
    ServerSummary,
    ToolDescriptor,
    ToolSummary,
    TransportConfig,
)
from toolport.catalogue.store import CatalogueWriter, FilesystemSchemaStore, SchemaStore
from toolport.catalogue.index import CatalogueIndex

__all__ = [
    "BindingRef",
    "CatalogueIndex",
    "CatalogueWriter",
    "FilesystemSchemaStore",
    "SchemaStore",
    "ServerDescriptor",
    "ServerSummary",
    "ToolDescriptor",
    "ToolSummary",
    "TransportConfig",
]
