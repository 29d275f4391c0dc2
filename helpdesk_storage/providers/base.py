"""
Abstract base for storage providers.

A provider owns one backend connection, hands out query builders via
``from_(table)``, and exposes authentication plus whichever optional
capability traits it implements.
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from typing import Any

from ..auth import AuthProvider, SessionAuthProvider
from ..config import ProviderConfig
from ..exceptions import (
    QueryExecutionError,
    SecurityDenialError,
    StorageConnectionError,
    StorageLayerError,
)
from ..query.builder import QueryBuilder
from ..query.model import QueryModel, QueryOperation
from ..query.result import QueryResult, shape_rows
from ..query.sql import CompiledQuery, SQLCompiler
from ..security import ProfileOrganizationResolver, SecurityFilterEngine, SecurityPolicy

logger = logging.getLogger(__name__)


class StorageProvider(ABC):
    """
    Abstract base for all storage providers.

    Implementations must support:
    - Idempotent ``initialize``/``disconnect``
    - A cheap ``health_check`` probe
    - Executing QueryModels into the normalized result envelope

    Providers are immutable once constructed: configuration changes mean
    disconnecting this instance and building a new one.
    """

    name: str = "storage"
    provider_type: str = "custom"
    # SQL dialect used for information_schema introspection; None if not SQL
    dialect: str | None = None
    # True when the backend enforces row security itself
    native_row_security: bool = False

    def __init__(
        self,
        config: ProviderConfig,
        security_policy: SecurityPolicy | None = None,
        auth: AuthProvider | None = None,
    ):
        self.config = config
        self.connection: dict[str, Any] = copy.deepcopy(config.connection)
        self.security_policy = security_policy
        self.auth: AuthProvider = auth or SessionAuthProvider()
        self._initialized = False

        self._security: SecurityFilterEngine | None = None
        if security_policy is not None and not self.native_row_security:
            resolver = ProfileOrganizationResolver(self.execute_unsecured)
            self._security = SecurityFilterEngine(security_policy, resolver)

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        if self._initialized:
            return
        await self._do_initialize()
        self._initialized = True
        logger.info(f"{self.name} provider initialized")

    async def disconnect(self) -> None:
        if not self._initialized:
            return
        try:
            await self._do_disconnect()
        finally:
            self._initialized = False
        logger.info(f"{self.name} provider disconnected")

    async def close(self) -> None:
        await self.disconnect()

    async def __aenter__(self) -> StorageProvider:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    @abstractmethod
    async def _do_initialize(self) -> None:
        """Open connections.

        Raises:
            StorageConnectionError: If the backend is unreachable.
        """

    @abstractmethod
    async def _do_disconnect(self) -> None:
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Probe the backend. Never raises for an unhealthy backend."""

    # =========================================================================
    # Queries
    # =========================================================================

    def from_(self, table: str) -> QueryBuilder:
        """Start a query against ``table``."""
        return QueryBuilder(table, self.execute)

    table = from_

    async def execute(self, model: QueryModel) -> QueryResult:
        """Run a model, applying row security where this layer is authoritative."""
        if not self._initialized:
            return QueryResult.failure(
                StorageConnectionError(self.name, "provider is not initialized")
            )

        if self._security is not None:
            secured = await self._security.secure(model, self.auth.current_user_id)
            if isinstance(secured, SecurityDenialError):
                return QueryResult.failure(secured)
            model = secured

        return await self._execute(model)

    async def execute_unsecured(self, model: QueryModel) -> QueryResult:
        """Run a model with no row security (trusted internal lookups only)."""
        if not self._initialized:
            return QueryResult.failure(
                StorageConnectionError(self.name, "provider is not initialized")
            )
        return await self._execute(model)

    @abstractmethod
    async def _execute(self, model: QueryModel) -> QueryResult:
        """Backend-specific execution. Must not raise for backend failures."""


class SQLStorageProvider(StorageProvider):
    """Base for providers that run compiled SQL over a local driver."""

    dialect = "sqlite"
    # Driver exception types that mean "this operation failed"
    driver_errors: tuple[type[BaseException], ...] = ()

    def __init__(
        self,
        config: ProviderConfig,
        security_policy: SecurityPolicy | None = None,
        auth: AuthProvider | None = None,
    ):
        super().__init__(config, security_policy, auth)
        self._compiler = SQLCompiler(self.dialect)

    @abstractmethod
    async def _run(self, compiled: CompiledQuery) -> list[dict[str, Any]]:
        """Execute one statement; rows as dicts (empty when none are returned)."""

    async def _execute(self, model: QueryModel) -> QueryResult:
        operation = model.operation.value
        try:
            compiled = self._compiler.compile(model)
        except StorageLayerError as e:
            return QueryResult.failure(e)

        try:
            rows = await self._run(compiled)
            count = None
            if model.count:
                count_rows = await self._run(self._compiler.compile_count(model))
                count = int(count_rows[0]["count"]) if count_rows else 0
        except self.driver_errors as e:
            logger.warning(f"{self.name} {operation} on {model.table} failed: {e}")
            return QueryResult.failure(QueryExecutionError(str(e), model.table, operation))

        if model.operation is QueryOperation.SELECT or model.single or model.maybe_single:
            return shape_rows(
                rows, model.single, model.maybe_single, model.table, operation, count
            )
        return QueryResult.success(rows if compiled.returns_rows else None, count=len(rows))

    async def health_check(self) -> bool:
        if not self._initialized:
            return False
        try:
            await self._run(CompiledQuery("SELECT 1 AS ok"))
            return True
        except self.driver_errors as e:
            logger.warning(f"{self.name} health check failed: {e}")
            return False
