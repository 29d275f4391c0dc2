"""
DuckDB storage provider.

Embedded analytical backend. DuckDB's Python API is synchronous, so every
statement runs in a worker thread via ``asyncio.to_thread``. Native LIST
columns back the array operators and JSON columns back object containment.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import duckdb

from ..auth import AuthProvider
from ..config import ProviderConfig
from ..exceptions import StorageConnectionError
from ..query.sql import CompiledQuery
from ..realtime import PollingRealtimeMixin
from ..security import SecurityPolicy
from .base import SQLStorageProvider
from .capabilities import SchemaIntrospectionCapable

logger = logging.getLogger(__name__)


class DuckDBProvider(PollingRealtimeMixin, SchemaIntrospectionCapable, SQLStorageProvider):
    """DuckDB provider (file or ``:memory:``)."""

    name = "DuckDB"
    provider_type = "duckdb"
    dialect = "duckdb"
    driver_errors = (duckdb.Error,)

    def __init__(
        self,
        config: ProviderConfig | None = None,
        security_policy: SecurityPolicy | None = None,
        auth: AuthProvider | None = None,
    ):
        super().__init__(
            config or ProviderConfig(type="duckdb", connection={"path": ":memory:"}),
            security_policy,
            auth,
        )
        self.path = str(self.connection.get("path", ":memory:"))
        self.conn: duckdb.DuckDBPyConnection | None = None

    @classmethod
    async def create(
        cls,
        config: ProviderConfig | None = None,
        security_policy: SecurityPolicy | None = None,
    ) -> DuckDBProvider:
        """Create and initialize a DuckDB provider."""
        provider = cls(config, security_policy)
        await provider.initialize()
        return provider

    async def _do_initialize(self) -> None:
        try:
            self.conn = await asyncio.to_thread(duckdb.connect, self.path)
        except (duckdb.Error, OSError) as e:
            raise StorageConnectionError(self.path, e) from e

    async def _do_disconnect(self) -> None:
        await self._stop_polling()
        if self.conn is not None:
            await asyncio.to_thread(self.conn.close)
            self.conn = None

    async def execute_script(self, sql: str) -> None:
        """Run raw DDL (schema setup, fixtures)."""
        if self.conn is None:
            raise StorageConnectionError(self.path, "provider is not initialized")
        await asyncio.to_thread(self.conn.execute, sql)

    async def _run(self, compiled: CompiledQuery) -> list[dict[str, Any]]:
        if self.conn is None:
            raise duckdb.ConnectionException("connection is closed")
        conn = self.conn

        def _query() -> list[dict[str, Any]]:
            # one cursor per call: the connection itself is not thread-safe
            with conn.cursor() as cursor:
                cursor.execute(compiled.sql, compiled.params)
                if cursor.description is None:
                    return []
                columns = [d[0] for d in cursor.description]
                return [dict(zip(columns, row, strict=True)) for row in cursor.fetchall()]

        logger.debug(f"duckdb: {compiled}")
        return await asyncio.to_thread(_query)

    # =========================================================================
    # Schema introspection
    # =========================================================================

    async def list_tables(self) -> list[str]:
        rows = await self._run(
            CompiledQuery(
                "SELECT table_name FROM information_schema.tables "
                "WHERE table_schema = 'main' AND table_type = 'BASE TABLE' ORDER BY table_name"
            )
        )
        return [row["table_name"] for row in rows]

    async def describe_table(self, table: str) -> list[dict[str, Any]]:
        columns = await self._run(
            CompiledQuery(
                "SELECT column_name, data_type, is_nullable, column_default "
                "FROM information_schema.columns WHERE table_name = ? ORDER BY ordinal_position",
                [table],
            )
        )
        primary = await self._run(
            CompiledQuery(
                "SELECT constraint_column_names FROM duckdb_constraints() "
                "WHERE table_name = ? AND constraint_type = 'PRIMARY KEY'",
                [table],
            )
        )
        pk_columns = {name for row in primary for name in row["constraint_column_names"]}
        return [
            {
                "column_name": c["column_name"],
                "data_type": c["data_type"],
                "is_nullable": c["is_nullable"] == "YES",
                "column_default": c["column_default"],
                "is_primary_key": c["column_name"] in pk_columns,
            }
            for c in columns
        ]
