"""
Provider registry.

Maps provider type keys to metadata (description, features, async factory,
connection schema) and keeps at most one live instance per key.

Instance reuse is decided by comparing sanitized configurations: an equal
configuration returns the cached instance; a different one disconnects the
cached instance exactly once and builds a new one. Configuration problems
surface as ConfigValidationError before any factory or network call.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from .config import ProviderConfig
from .exceptions import InvalidConfigError, StorageLayerError, UnknownProviderError
from .providers.base import StorageProvider
from .security import SecurityPolicy, default_helpdesk_policy
from .validation import CONNECTION_SCHEMAS, sanitize_config, validate_provider_config

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[ProviderConfig], Awaitable[StorageProvider]]


@dataclass
class ProviderMetadata:
    """Registration record for one provider type."""

    name: str
    version: str
    description: str
    factory: ProviderFactory
    supported_features: list[str] = field(default_factory=list)
    # pydantic model for the connection mapping; None means the built-in one,
    # or an open mapping for types without one
    config_schema: type[BaseModel] | None = None


@dataclass
class ConnectionTestResult:
    success: bool
    error: str | None = None


class ProviderRegistry:
    """
    Registry of provider types and their live instances.

    Example:
        >>> registry = create_default_registry()
        >>> provider = await registry.get_instance(config)
        >>> registry.set_active_provider(config.type)
        >>> await registry.destroy_all()
    """

    def __init__(self) -> None:
        self._providers: dict[str, ProviderMetadata] = {}
        self._instances: dict[str, StorageProvider] = {}
        self._active_provider_id: str | None = None
        # Serializes check/destroy/build per type key
        self._locks: dict[str, asyncio.Lock] = {}

    # =========================================================================
    # Registration
    # =========================================================================

    def register(self, provider_id: str, metadata: ProviderMetadata) -> None:
        if provider_id in self._providers:
            logger.warning(f"Provider '{provider_id}' is already registered, replacing it")
        self._providers[provider_id] = metadata
        logger.debug(f"Registered provider: {provider_id}")

    def unregister(self, provider_id: str) -> None:
        self._providers.pop(provider_id, None)
        logger.debug(f"Unregistered provider: {provider_id}")

    def get_metadata(self, provider_id: str) -> ProviderMetadata | None:
        return self._providers.get(provider_id)

    def list_providers(self) -> dict[str, ProviderMetadata]:
        return dict(self._providers)

    def supports_feature(self, provider_id: str, feature: str) -> bool:
        metadata = self._providers.get(provider_id)
        return metadata is not None and feature in metadata.supported_features

    # =========================================================================
    # Instances
    # =========================================================================

    def _validate(self, config: ProviderConfig) -> ProviderMetadata:
        metadata = self._providers.get(config.type)
        if metadata is None:
            raise UnknownProviderError(config.type, sorted(self._providers))

        schema = metadata.config_schema or CONNECTION_SCHEMAS.get(
            config.type, CONNECTION_SCHEMAS["custom"]
        )
        outcome = validate_provider_config(config, schema)
        if not outcome.success:
            raise InvalidConfigError(config.type, outcome.errors)
        return metadata

    async def create_provider(self, config: ProviderConfig | dict[str, Any]) -> StorageProvider:
        """
        Build and initialize a provider, replacing any instance for its key.

        Raises:
            UnknownProviderError: If ``config.type`` is not registered.
            InvalidConfigError: If the connection fails schema validation.
            StorageLayerError: Whatever the factory raises; no instance is cached.
        """
        if not isinstance(config, ProviderConfig):
            config = ProviderConfig.from_dict(config)
        metadata = self._validate(config)
        async with self._lock_for(config.type):
            return await self._replace_instance(config, metadata)

    async def get_instance(self, config: ProviderConfig | dict[str, Any]) -> StorageProvider:
        """Return the cached instance for an equal configuration, else rebuild.

        Concurrent calls for the same key are serialized, so they share one
        factory call instead of racing to build two instances.
        """
        if not isinstance(config, ProviderConfig):
            config = ProviderConfig.from_dict(config)

        async with self._lock_for(config.type):
            existing = self._instances.get(config.type)
            if existing is not None:
                if sanitize_config(existing.config) == sanitize_config(config):
                    logger.debug(f"Reusing provider: {config.type}")
                    return existing
                logger.info(f"Configuration changed, recreating provider: {config.type}")

            metadata = self._validate(config)
            return await self._replace_instance(config, metadata)

    def _lock_for(self, provider_id: str) -> asyncio.Lock:
        lock = self._locks.get(provider_id)
        if lock is None:
            lock = self._locks[provider_id] = asyncio.Lock()
        return lock

    async def _replace_instance(
        self, config: ProviderConfig, metadata: ProviderMetadata
    ) -> StorageProvider:
        # Caller holds the key's lock
        provider_id = config.type
        if provider_id in self._instances:
            await self._destroy(provider_id)

        logger.info(f"Creating provider {provider_id}: {sanitize_config(config)}")
        try:
            provider = await metadata.factory(config)
        except Exception as e:
            logger.error(f"Failed to create provider '{provider_id}': {e}")
            raise

        self._instances[provider_id] = provider
        return provider

    def get_provider(self, provider_id: str) -> StorageProvider | None:
        return self._instances.get(provider_id)

    def set_active_provider(self, provider_id: str) -> None:
        if provider_id not in self._instances:
            raise KeyError(f"Provider '{provider_id}' is not initialized")
        self._active_provider_id = provider_id
        logger.info(f"Active provider set to: {provider_id}")

    def get_active_provider(self) -> StorageProvider | None:
        if self._active_provider_id is None:
            return None
        return self._instances.get(self._active_provider_id)

    async def destroy_provider(self, provider_id: str) -> None:
        """Disconnect and forget an instance.

        The entry is dropped even if disconnecting fails; the error still
        propagates.
        """
        async with self._lock_for(provider_id):
            await self._destroy(provider_id)

    async def _destroy(self, provider_id: str) -> None:
        provider = self._instances.pop(provider_id, None)
        if provider is None:
            return
        if self._active_provider_id == provider_id:
            self._active_provider_id = None
        try:
            await provider.disconnect()
        except Exception as e:
            logger.error(f"Error destroying provider '{provider_id}': {e}")
            raise
        logger.info(f"Destroyed provider: {provider_id}")

    async def destroy_all(self) -> None:
        results = await asyncio.gather(
            *(self.destroy_provider(pid) for pid in list(self._instances)),
            return_exceptions=True,
        )
        self._active_provider_id = None
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            raise StorageLayerError(
                f"{len(failures)} provider(s) failed to disconnect",
                {"errors": [str(f) for f in failures]},
            )

    async def test_connection(
        self, config: ProviderConfig | dict[str, Any]
    ) -> ConnectionTestResult:
        """Validate, connect and probe a configuration without caching it."""
        if not isinstance(config, ProviderConfig):
            config = ProviderConfig.from_dict(config)
        try:
            metadata = self._validate(config)
            provider = await metadata.factory(config)
        except StorageLayerError as e:
            return ConnectionTestResult(success=False, error=e.message)

        try:
            healthy = await provider.health_check()
        finally:
            await provider.disconnect()
        return ConnectionTestResult(
            success=healthy, error=None if healthy else "Health check failed"
        )


# =============================================================================
# Built-in providers
# =============================================================================


def _factory(
    provider_class: type[StorageProvider], policy: SecurityPolicy | None
) -> ProviderFactory:
    async def create(config: ProviderConfig) -> StorageProvider:
        provider = provider_class(config, policy)  # type: ignore[call-arg]
        await provider.initialize()
        return provider

    return create


def create_default_registry(security_policy: SecurityPolicy | None = None) -> ProviderRegistry:
    """
    Registry with the built-in providers.

    Args:
        security_policy: Row security rules for providers without native
            enforcement. Defaults to the helpdesk table rules.
    """
    from .providers.duckdb import DuckDBProvider
    from .providers.proxy import MySQLProvider, PostgresProvider
    from .providers.sqlite import SQLiteProvider
    from .providers.supabase import SupabaseProvider

    policy = security_policy if security_policy is not None else default_helpdesk_policy()
    registry = ProviderRegistry()

    registry.register(
        "supabase",
        ProviderMetadata(
            name="Supabase",
            version="1.0.0",
            description="Managed backend with realtime, storage and auth",
            factory=_factory(SupabaseProvider, policy),
            supported_features=[
                "realtime",
                "file_storage",
                "serverless_functions",
                "authentication",
                "full_text_search",
                "transactions",
            ],
        ),
    )
    registry.register(
        "postgres",
        ProviderMetadata(
            name="PostgreSQL",
            version="1.0.0",
            description="Customer-hosted PostgreSQL with application-level RLS",
            factory=_factory(PostgresProvider, policy),
            supported_features=["realtime", "full_text_search", "transactions"],
        ),
    )
    registry.register(
        "mysql",
        ProviderMetadata(
            name="MySQL",
            version="1.0.0",
            description="Customer-hosted MySQL with application-level RLS",
            factory=_factory(MySQLProvider, policy),
            supported_features=["realtime", "full_text_search", "transactions"],
        ),
    )
    registry.register(
        "sqlite",
        ProviderMetadata(
            name="SQLite",
            version="1.0.0",
            description="Embedded SQLite database for local use and tests",
            factory=_factory(SQLiteProvider, policy),
            supported_features=["realtime", "transactions", "schema_introspection"],
        ),
    )
    registry.register(
        "duckdb",
        ProviderMetadata(
            name="DuckDB",
            version="1.0.0",
            description="Embedded DuckDB database for local analytics",
            factory=_factory(DuckDBProvider, policy),
            supported_features=["realtime", "schema_introspection"],
        ),
    )

    logger.debug(f"Registered default providers: {sorted(registry.list_providers())}")
    return registry
