"""
Helpdesk Storage

Backend-neutral storage layer for the helpdesk application.

Provides:
- One fluent query builder over every backend (Supabase, PostgreSQL and
  MySQL proxies, SQLite, DuckDB)
- A provider registry with validated configs and one live instance per type
- Application-level row security for backends without native RLS
- Polling change detection where push realtime is unavailable
- Health monitoring with bounded auto-reconnection
- A migration engine: schema diff, transformations, resumable copy jobs

Usage:

    >>> from helpdesk_storage import ProviderConfig, create_default_registry
    >>> registry = create_default_registry()
    >>> provider = await registry.get_instance(
    ...     ProviderConfig(type="sqlite", connection={"path": "helpdesk.db"})
    ... )
    >>> result = await provider.from_("tickets").select("*").eq("status", "open").execute()

Migration:

    from helpdesk_storage.migration import MigrationJobManager, MigrationOptions

    manager = MigrationJobManager()
    job = manager.create_job("move", source, target, ["profiles", "tickets"])
    await manager.start_job(job.id)
"""

# Authentication
from .auth import AuthEvent, AuthProvider, AuthResponse, AuthSession, AuthUser

# Configuration
from .config import ProviderConfig, ProviderFeatures, StorageConfiguration

# Exceptions
from .exceptions import (
    CapabilityNotSupportedError,
    ConfigValidationError,
    InvalidConfigError,
    InvalidIdentifierError,
    InvalidOperatorError,
    JobBusyError,
    JobNotFoundError,
    JobStateError,
    MigrationBatchError,
    QueryExecutionError,
    SecurityDenialError,
    StorageConnectionError,
    StorageLayerError,
    UnknownProviderError,
)

# Logging
from .logging_utils import StorageLoggerAdapter, configure_structured_logging

# Health monitoring
from .monitoring import HealthMonitor, HealthStatus, MonitoringConfig, MonitoringManager

# Providers
from .providers import (
    Capability,
    MySQLProvider,
    PostgresProvider,
    SQLiteProvider,
    StorageProvider,
    require_capability,
    supports,
)
from .providers.duckdb import DuckDBProvider
from .providers.supabase import SupabaseProvider

# Query model
from .query import FilterOperator, QueryBuilder, QueryFilter, QueryModel, QueryResult

# Realtime
from .realtime import ChangeEvent, PollingChangeDetector, RealtimePayload

# Registry
from .registry import ProviderMetadata, ProviderRegistry, create_default_registry

# Row security
from .security import (
    RLSRule,
    SecurityFilterEngine,
    SecurityPolicy,
    SecurityPolicyBuilder,
    default_helpdesk_policy,
)

# Validation
from .validation import sanitize_config, validate_provider_config

__all__ = [
    # Configuration
    "ProviderConfig",
    "ProviderFeatures",
    "StorageConfiguration",
    "validate_provider_config",
    "sanitize_config",
    # Registry
    "ProviderRegistry",
    "ProviderMetadata",
    "create_default_registry",
    # Providers
    "StorageProvider",
    "SQLiteProvider",
    "PostgresProvider",
    "MySQLProvider",
    "DuckDBProvider",
    "SupabaseProvider",
    "Capability",
    "supports",
    "require_capability",
    # Query model
    "QueryBuilder",
    "QueryModel",
    "QueryFilter",
    "FilterOperator",
    "QueryResult",
    # Auth
    "AuthProvider",
    "AuthUser",
    "AuthSession",
    "AuthResponse",
    "AuthEvent",
    # Row security
    "RLSRule",
    "SecurityPolicy",
    "SecurityPolicyBuilder",
    "SecurityFilterEngine",
    "default_helpdesk_policy",
    # Realtime
    "ChangeEvent",
    "RealtimePayload",
    "PollingChangeDetector",
    # Monitoring
    "HealthMonitor",
    "HealthStatus",
    "MonitoringConfig",
    "MonitoringManager",
    # Logging
    "StorageLoggerAdapter",
    "configure_structured_logging",
    # Exceptions
    "StorageLayerError",
    "ConfigValidationError",
    "InvalidConfigError",
    "UnknownProviderError",
    "StorageConnectionError",
    "QueryExecutionError",
    "InvalidOperatorError",
    "InvalidIdentifierError",
    "CapabilityNotSupportedError",
    "MigrationBatchError",
    "JobStateError",
    "JobBusyError",
    "JobNotFoundError",
    "SecurityDenialError",
]

__version__ = "0.1.0"
