"""
SQLite storage provider.

Embedded backend over aiosqlite. Ideal for tests, local development and
as a migration source or target. Row security is enforced in-process by
the security filter engine.

Columns declared with type JSON are decoded on read, so list and object
values round-trip and the containment operators work on them.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import aiosqlite

from ..auth import AuthProvider
from ..config import ProviderConfig
from ..exceptions import StorageConnectionError
from ..query.model import QueryModel
from ..query.result import QueryResult
from ..query.sql import CompiledQuery
from ..realtime import PollingRealtimeMixin
from ..security import SecurityPolicy
from ..validation import escape_identifier
from .base import SQLStorageProvider
from .capabilities import SchemaIntrospectionCapable

logger = logging.getLogger(__name__)


class SQLiteProvider(PollingRealtimeMixin, SchemaIntrospectionCapable, SQLStorageProvider):
    """
    SQLite provider.

    Features:
    - Single file or in-memory database
    - Case-sensitive LIKE, case-insensitive ILIKE
    - JSON containment through json_each
    - Polling-based change notifications
    """

    name = "SQLite"
    provider_type = "sqlite"
    dialect = "sqlite"
    driver_errors = (aiosqlite.Error,)

    def __init__(
        self,
        config: ProviderConfig | None = None,
        security_policy: SecurityPolicy | None = None,
        auth: AuthProvider | None = None,
    ):
        super().__init__(
            config or ProviderConfig(type="sqlite", connection={"path": ":memory:"}),
            security_policy,
            auth,
        )
        self.path = str(self.connection.get("path", ":memory:"))
        self.conn: aiosqlite.Connection | None = None
        self._json_columns: dict[str, frozenset[str]] = {}

    @classmethod
    async def create(
        cls,
        config: ProviderConfig | None = None,
        security_policy: SecurityPolicy | None = None,
    ) -> SQLiteProvider:
        """Create and initialize a SQLite provider."""
        provider = cls(config, security_policy)
        await provider.initialize()
        return provider

    async def _do_initialize(self) -> None:
        try:
            self.conn = await aiosqlite.connect(self.path)
            self.conn.row_factory = aiosqlite.Row
            await self.conn.execute("PRAGMA foreign_keys = ON")
            # LIKE is case-sensitive everywhere; ILIKE compiles to LOWER() LIKE LOWER()
            await self.conn.execute("PRAGMA case_sensitive_like = ON")
        except (aiosqlite.Error, OSError) as e:
            raise StorageConnectionError(self.path, e) from e

    async def _do_disconnect(self) -> None:
        await self._stop_polling()
        if self.conn is not None:
            await self.conn.close()
            self.conn = None
        self._json_columns.clear()

    async def execute_script(self, sql: str) -> None:
        """Run raw DDL (schema setup, fixtures)."""
        if self.conn is None:
            raise StorageConnectionError(self.path, "provider is not initialized")
        await self.conn.executescript(sql)
        await self.conn.commit()
        self._json_columns.clear()

    async def _run(self, compiled: CompiledQuery) -> list[dict[str, Any]]:
        if self.conn is None:
            raise aiosqlite.OperationalError("connection is closed")

        logger.debug(f"sqlite: {compiled}")
        async with self.conn.execute(compiled.sql, compiled.params) as cursor:
            rows = [dict(row) for row in await cursor.fetchall()]
        await self.conn.commit()
        return rows

    async def _execute(self, model: QueryModel) -> QueryResult:
        result = await super()._execute(model)
        if result.data is not None and not result.error:
            json_columns = await self._json_columns_for(model.table)
            if json_columns:
                if isinstance(result.data, list):
                    result.data = [self._decode(row, json_columns) for row in result.data]
                else:
                    result.data = self._decode(result.data, json_columns)
        return result

    async def _json_columns_for(self, table: str) -> frozenset[str]:
        if table not in self._json_columns:
            try:
                columns = await self.describe_table(table)
            except aiosqlite.Error:
                return frozenset()
            self._json_columns[table] = frozenset(
                c["column_name"] for c in columns if c["data_type"].upper() == "JSON"
            )
        return self._json_columns[table]

    @staticmethod
    def _decode(row: dict[str, Any], json_columns: frozenset[str]) -> dict[str, Any]:
        for column in json_columns:
            value = row.get(column)
            if isinstance(value, str):
                try:
                    row[column] = json.loads(value)
                except ValueError:
                    pass
        return row

    # =========================================================================
    # Schema introspection
    # =========================================================================

    async def list_tables(self) -> list[str]:
        rows = await self._run(
            CompiledQuery(
                "SELECT name FROM sqlite_master WHERE type = 'table' "
                "AND name NOT LIKE 'sqlite_%' ORDER BY name"
            )
        )
        return [row["name"] for row in rows]

    async def describe_table(self, table: str) -> list[dict[str, Any]]:
        rows = await self._run(CompiledQuery(f"PRAGMA table_info({escape_identifier(table)})"))
        return [
            {
                "column_name": row["name"],
                "data_type": row["type"] or "TEXT",
                "is_nullable": not row["notnull"] and not row["pk"],
                "column_default": row["dflt_value"],
                "is_primary_key": bool(row["pk"]),
            }
            for row in rows
        ]
