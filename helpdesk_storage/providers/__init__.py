"""
Storage providers.

Every provider implements the same StorageProvider interface and declares
its optional capabilities (realtime, file storage, RPC, schema
introspection) by implementing the matching trait.
"""

from .base import SQLStorageProvider, StorageProvider
from .capabilities import (
    Capability,
    FileStorageCapable,
    RealtimeCapable,
    RemoteProcedureCapable,
    SchemaIntrospectionCapable,
    capabilities_of,
    require_capability,
    supports,
)
from .proxy import MySQLProvider, PostgresProvider, ProxyAuthProvider, RemoteQueryProvider
from .sqlite import SQLiteProvider

__all__ = [
    # Base classes
    "StorageProvider",
    "SQLStorageProvider",
    # Capabilities
    "Capability",
    "RealtimeCapable",
    "FileStorageCapable",
    "RemoteProcedureCapable",
    "SchemaIntrospectionCapable",
    "supports",
    "capabilities_of",
    "require_capability",
    # Providers
    "SQLiteProvider",
    "RemoteQueryProvider",
    "PostgresProvider",
    "MySQLProvider",
    "ProxyAuthProvider",
]
