"""invoicemind integrations module."""

from invoicemind.integrations.local_export import LocalExporter
from invoicemind.integrations.memory_store import (
    MemoryStore,
    SQLiteMemoryStore,
    VendorMatch,
)

__all__ = [
    "LocalExporter",
    "MemoryStore",
    "SQLiteMemoryStore",
    "VendorMatch",
]
