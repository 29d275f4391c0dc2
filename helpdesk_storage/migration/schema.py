"""
Schema extraction, comparison and DDL generation.

Providers that implement ``SchemaIntrospectionCapable`` describe their own
tables. For Postgres-family and MySQL providers the schema is read from
``information_schema`` through the ordinary query builder, so it works over
the remote proxies and the Supabase client alike.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ..exceptions import CapabilityNotSupportedError
from ..providers.base import StorageProvider
from ..providers.capabilities import SchemaIntrospectionCapable
from ..query.sql import DIALECTS
from ..validation import escape_identifier

logger = logging.getLogger(__name__)


# =============================================================================
# Schema types
# =============================================================================


@dataclass
class ForeignKeyReference:
    table: str
    column: str


@dataclass
class ColumnDefinition:
    name: str
    type: str
    nullable: bool = True
    default_value: Any = None
    is_primary_key: bool = False
    is_foreign_key: bool = False
    foreign_key_ref: ForeignKeyReference | None = None


@dataclass
class IndexDefinition:
    name: str
    columns: list[str] = field(default_factory=list)
    unique: bool = False


@dataclass
class TableSchema:
    table_name: str
    columns: list[ColumnDefinition] = field(default_factory=list)
    indexes: list[IndexDefinition] = field(default_factory=list)

    def column(self, name: str) -> ColumnDefinition | None:
        for column in self.columns:
            if column.name == name:
                return column
        return None

    @property
    def primary_key(self) -> list[str]:
        return [c.name for c in self.columns if c.is_primary_key]


@dataclass
class SchemaExtractionOptions:
    include_indexes: bool = False
    table_filter: Callable[[str], bool] | None = None


@dataclass
class ColumnDifference:
    """Column-level drift for one table present on both sides."""

    missing: list[str] = field(default_factory=list)
    extra: list[str] = field(default_factory=list)
    type_mismatches: list[str] = field(default_factory=list)


@dataclass
class SchemaDifferences:
    """What the current schema lacks (or has in excess) relative to the desired one."""

    missing_tables: list[str] = field(default_factory=list)
    extra_tables: list[str] = field(default_factory=list)
    column_differences: dict[str, ColumnDifference] = field(default_factory=dict)

    @property
    def has_differences(self) -> bool:
        return bool(self.missing_tables or self.extra_tables or self.column_differences)


# =============================================================================
# Extraction
# =============================================================================


async def _rows(provider: StorageProvider, query: Any, what: str) -> list[dict[str, Any]]:
    result = await query.execute()
    if result.error is not None:
        logger.warning(f"{provider.name}: could not read {what}: {result.error.message}")
        return []
    return result.data or []


async def _extract_introspected(
    provider: SchemaIntrospectionCapable, table: str
) -> TableSchema | None:
    described = await provider.describe_table(table)
    if not described:
        return None
    return TableSchema(
        table_name=table,
        columns=[
            ColumnDefinition(
                name=c["column_name"],
                type=c["data_type"],
                nullable=bool(c["is_nullable"]),
                default_value=c["column_default"],
                is_primary_key=bool(c["is_primary_key"]),
            )
            for c in described
        ],
    )


async def _extract_postgres(
    provider: StorageProvider, table: str, options: SchemaExtractionOptions
) -> TableSchema | None:
    schema_name = provider.connection.get("schema", "public")
    columns = await _rows(
        provider,
        provider.from_("information_schema.columns")
        .select("column_name, data_type, is_nullable, column_default")
        .eq("table_name", table)
        .eq("table_schema", schema_name)
        .order("ordinal_position"),
        f"columns of {table}",
    )
    if not columns:
        return None

    schema = TableSchema(
        table_name=table,
        columns=[
            ColumnDefinition(
                name=c["column_name"],
                type=c["data_type"],
                nullable=c["is_nullable"] == "YES",
                default_value=c["column_default"],
            )
            for c in columns
        ],
    )

    constraints = await _rows(
        provider,
        provider.from_("information_schema.table_constraints")
        .select("constraint_name, constraint_type")
        .eq("table_name", table)
        .eq("table_schema", schema_name)
        .in_("constraint_type", ["PRIMARY KEY", "FOREIGN KEY"]),
        f"constraints of {table}",
    )
    for constraint in constraints:
        key_columns = await _rows(
            provider,
            provider.from_("information_schema.key_column_usage")
            .select("column_name")
            .eq("constraint_name", constraint["constraint_name"])
            .eq("table_schema", schema_name),
            f"key columns of {constraint['constraint_name']}",
        )
        if constraint["constraint_type"] == "PRIMARY KEY":
            for key in key_columns:
                column = schema.column(key["column_name"])
                if column:
                    column.is_primary_key = True
                    column.nullable = False
            continue

        referenced = await _rows(
            provider,
            provider.from_("information_schema.constraint_column_usage")
            .select("table_name, column_name")
            .eq("constraint_name", constraint["constraint_name"])
            .eq("table_schema", schema_name),
            f"references of {constraint['constraint_name']}",
        )
        ref = (
            ForeignKeyReference(referenced[0]["table_name"], referenced[0]["column_name"])
            if referenced
            else None
        )
        for key in key_columns:
            column = schema.column(key["column_name"])
            if column:
                column.is_foreign_key = True
                column.foreign_key_ref = ref

    if options.include_indexes:
        indexes = await _rows(
            provider,
            provider.from_("pg_indexes")
            .select("indexname, indexdef")
            .eq("tablename", table)
            .eq("schemaname", schema_name),
            f"indexes of {table}",
        )
        schema.indexes = [
            IndexDefinition(
                name=index["indexname"],
                columns=_index_columns(index["indexdef"]),
                unique="UNIQUE" in index["indexdef"].upper(),
            )
            for index in indexes
        ]
    return schema


def _index_columns(indexdef: str) -> list[str]:
    """Column list from a ``CREATE INDEX ... (a, b)`` definition."""
    match = re.search(r"\(([^)]*)\)", indexdef)
    if not match:
        return []
    return [part.strip().strip('"') for part in match.group(1).split(",") if part.strip()]


async def _extract_mysql(
    provider: StorageProvider, table: str, options: SchemaExtractionOptions
) -> TableSchema | None:
    database = provider.connection.get("database")
    columns = await _rows(
        provider,
        provider.from_("information_schema.COLUMNS")
        .select("COLUMN_NAME, DATA_TYPE, IS_NULLABLE, COLUMN_DEFAULT, COLUMN_KEY")
        .eq("TABLE_NAME", table)
        .eq("TABLE_SCHEMA", database)
        .order("ORDINAL_POSITION"),
        f"columns of {table}",
    )
    if not columns:
        return None

    schema = TableSchema(
        table_name=table,
        columns=[
            ColumnDefinition(
                name=c["COLUMN_NAME"],
                type=c["DATA_TYPE"],
                nullable=c["IS_NULLABLE"] == "YES",
                default_value=c["COLUMN_DEFAULT"],
                is_primary_key=c["COLUMN_KEY"] == "PRI",
            )
            for c in columns
        ],
    )

    references = await _rows(
        provider,
        provider.from_("information_schema.KEY_COLUMN_USAGE")
        .select("COLUMN_NAME, REFERENCED_TABLE_NAME, REFERENCED_COLUMN_NAME")
        .eq("TABLE_NAME", table)
        .eq("TABLE_SCHEMA", database),
        f"foreign keys of {table}",
    )
    for ref in references:
        if not ref.get("REFERENCED_TABLE_NAME"):
            continue
        column = schema.column(ref["COLUMN_NAME"])
        if column:
            column.is_foreign_key = True
            column.foreign_key_ref = ForeignKeyReference(
                ref["REFERENCED_TABLE_NAME"], ref["REFERENCED_COLUMN_NAME"]
            )

    if options.include_indexes:
        statistics = await _rows(
            provider,
            provider.from_("information_schema.STATISTICS")
            .select("INDEX_NAME, COLUMN_NAME, NON_UNIQUE")
            .eq("TABLE_NAME", table)
            .eq("TABLE_SCHEMA", database)
            .order("SEQ_IN_INDEX"),
            f"indexes of {table}",
        )
        by_name: dict[str, IndexDefinition] = {}
        for stat in statistics:
            index = by_name.setdefault(
                stat["INDEX_NAME"],
                IndexDefinition(stat["INDEX_NAME"], unique=not int(stat["NON_UNIQUE"])),
            )
            index.columns.append(stat["COLUMN_NAME"])
        schema.indexes = list(by_name.values())
    return schema


async def extract_schema(
    provider: StorageProvider,
    tables: list[str],
    options: SchemaExtractionOptions | None = None,
) -> list[TableSchema]:
    """
    Describe ``tables`` on a provider.

    Tables that do not exist (or cannot be read) are left out of the result
    and logged.

    Raises:
        CapabilityNotSupportedError: If the provider neither introspects itself
            nor speaks a dialect with ``information_schema`` support.
    """
    options = options or SchemaExtractionOptions()
    if options.table_filter:
        tables = [t for t in tables if options.table_filter(t)]

    if isinstance(provider, SchemaIntrospectionCapable):
        extract = None
    elif provider.dialect == "postgres":
        extract = _extract_postgres
    elif provider.dialect == "mysql":
        extract = _extract_mysql
    else:
        raise CapabilityNotSupportedError(provider.name, "schema extraction")

    schemas: list[TableSchema] = []
    for table in tables:
        if extract is None:
            schema = await _extract_introspected(provider, table)
        else:
            schema = await extract(provider, table, options)
        if schema is None:
            logger.warning(f"No schema found for table {table} on {provider.name}")
            continue
        schemas.append(schema)

    logger.info(f"Extracted schema for {len(schemas)}/{len(tables)} tables from {provider.name}")
    return schemas


async def get_table_list(provider: StorageProvider) -> list[str]:
    """Base tables visible to the provider, or an empty list if they cannot be read."""
    if isinstance(provider, SchemaIntrospectionCapable):
        return await provider.list_tables()

    if provider.dialect == "postgres":
        rows = await _rows(
            provider,
            provider.from_("information_schema.tables")
            .select("table_name")
            .eq("table_schema", provider.connection.get("schema", "public"))
            .eq("table_type", "BASE TABLE"),
            "table list",
        )
        return [row["table_name"] for row in rows]

    if provider.dialect == "mysql":
        rows = await _rows(
            provider,
            provider.from_("information_schema.TABLES")
            .select("TABLE_NAME")
            .eq("TABLE_SCHEMA", provider.connection.get("database"))
            .eq("TABLE_TYPE", "BASE TABLE"),
            "table list",
        )
        return [row["TABLE_NAME"] for row in rows]

    raise CapabilityNotSupportedError(provider.name, "table listing")


async def table_exists(provider: StorageProvider, table: str) -> bool:
    return table in await get_table_list(provider)


# =============================================================================
# Comparison
# =============================================================================


def _normalize_type(type_name: str) -> str:
    return " ".join(str(type_name).lower().split())


def compare_schemas(current: list[TableSchema], desired: list[TableSchema]) -> SchemaDifferences:
    """
    Diff ``current`` against ``desired``.

    ``missing_*`` are present in ``desired`` only, ``extra_*`` in ``current``
    only. Types are compared case- and whitespace-insensitively.
    """
    current_by_name = {t.table_name: t for t in current}
    desired_by_name = {t.table_name: t for t in desired}

    differences = SchemaDifferences(
        missing_tables=[name for name in desired_by_name if name not in current_by_name],
        extra_tables=[name for name in current_by_name if name not in desired_by_name],
    )

    for name, have in current_by_name.items():
        want = desired_by_name.get(name)
        if want is None:
            continue

        have_columns = {c.name: c for c in have.columns}
        want_columns = {c.name: c for c in want.columns}
        diff = ColumnDifference(
            missing=[c for c in want_columns if c not in have_columns],
            extra=[c for c in have_columns if c not in want_columns],
        )
        for column_name, column in have_columns.items():
            target = want_columns.get(column_name)
            if target and _normalize_type(column.type) != _normalize_type(target.type):
                diff.type_mismatches.append(f"{column_name}: {column.type} vs {target.type}")

        if diff.missing or diff.extra or diff.type_mismatches:
            differences.column_differences[name] = diff

    return differences


# =============================================================================
# DDL generation
# =============================================================================

_TYPE_ALIASES = {
    "integer": "integer",
    "int": "integer",
    "int4": "integer",
    "int32": "integer",
    "mediumint": "integer",
    "bigint": "bigint",
    "int8": "bigint",
    "int64": "bigint",
    "hugeint": "bigint",
    "smallint": "smallint",
    "int2": "smallint",
    "int16": "smallint",
    "tinyint": "smallint",
    "text": "text",
    "longtext": "text",
    "mediumtext": "text",
    "string": "text",
    "varchar": "varchar",
    "character varying": "varchar",
    "char": "varchar",
    "character": "varchar",
    "boolean": "boolean",
    "bool": "boolean",
    "timestamp with time zone": "timestamptz",
    "timestamptz": "timestamptz",
    "timestamp": "timestamp",
    "timestamp without time zone": "timestamp",
    "datetime": "timestamp",
    "date": "date",
    "uuid": "uuid",
    "json": "json",
    "jsonb": "json",
    "real": "double",
    "float": "double",
    "float4": "double",
    "float8": "double",
    "double": "double",
    "double precision": "double",
    "numeric": "numeric",
    "decimal": "numeric",
    "blob": "blob",
    "bytea": "blob",
    "longblob": "blob",
}

_DIALECT_TYPES: dict[str, dict[str, str]] = {
    "postgres": {
        "integer": "INTEGER",
        "bigint": "BIGINT",
        "smallint": "SMALLINT",
        "text": "TEXT",
        "varchar": "VARCHAR(255)",
        "boolean": "BOOLEAN",
        "timestamptz": "TIMESTAMPTZ",
        "timestamp": "TIMESTAMP",
        "date": "DATE",
        "uuid": "UUID",
        "json": "JSONB",
        "double": "DOUBLE PRECISION",
        "numeric": "NUMERIC",
        "blob": "BYTEA",
    },
    "mysql": {
        "integer": "INT",
        "bigint": "BIGINT",
        "smallint": "SMALLINT",
        "text": "TEXT",
        "varchar": "VARCHAR(255)",
        "boolean": "TINYINT(1)",
        "timestamptz": "DATETIME",
        "timestamp": "DATETIME",
        "date": "DATE",
        "uuid": "CHAR(36)",
        "json": "JSON",
        "double": "DOUBLE",
        "numeric": "DECIMAL(18,6)",
        "blob": "BLOB",
    },
    "sqlite": {
        "integer": "INTEGER",
        "bigint": "INTEGER",
        "smallint": "INTEGER",
        "text": "TEXT",
        "varchar": "TEXT",
        "boolean": "INTEGER",
        "timestamptz": "TEXT",
        "timestamp": "TEXT",
        "date": "TEXT",
        "uuid": "TEXT",
        "json": "TEXT",
        "double": "REAL",
        "numeric": "NUMERIC",
        "blob": "BLOB",
    },
    "duckdb": {
        "integer": "INTEGER",
        "bigint": "BIGINT",
        "smallint": "SMALLINT",
        "text": "VARCHAR",
        "varchar": "VARCHAR",
        "boolean": "BOOLEAN",
        "timestamptz": "TIMESTAMPTZ",
        "timestamp": "TIMESTAMP",
        "date": "DATE",
        "uuid": "UUID",
        "json": "JSON",
        "double": "DOUBLE",
        "numeric": "DECIMAL(18,6)",
        "blob": "BLOB",
    },
}


def map_column_type(type_name: str, target_dialect: str) -> str:
    """Translate a column type into ``target_dialect``; unknown types pass through."""
    if target_dialect not in _DIALECT_TYPES:
        raise ValueError(f"Unsupported SQL dialect: {target_dialect}")
    normalized = _normalize_type(type_name)
    base = re.sub(r"\s*\(.*\)$", "", normalized)
    canonical = _TYPE_ALIASES.get(base)
    if canonical is None:
        return str(type_name).upper()
    return _DIALECT_TYPES[target_dialect][canonical]


def _column_sql(column: ColumnDefinition, target_dialect: str, quote: str) -> str:
    parts = [
        escape_identifier(column.name, quote),
        map_column_type(column.type, target_dialect),
    ]
    if not column.nullable:
        parts.append("NOT NULL")
    if column.default_value is not None:
        parts.append(f"DEFAULT {column.default_value}")
    return " ".join(parts)


def _create_table_sql(schema: TableSchema, target_dialect: str, quote: str) -> str:
    lines = [f"    {_column_sql(c, target_dialect, quote)}" for c in schema.columns]
    if schema.primary_key:
        keys = ", ".join(escape_identifier(k, quote) for k in schema.primary_key)
        lines.append(f"    PRIMARY KEY ({keys})")
    for column in schema.columns:
        ref = column.foreign_key_ref
        if ref:
            lines.append(
                f"    FOREIGN KEY ({escape_identifier(column.name, quote)}) "
                f"REFERENCES {escape_identifier(ref.table, quote)} "
                f"({escape_identifier(ref.column, quote)})"
            )
    body = ",\n".join(lines)
    return f"CREATE TABLE {escape_identifier(schema.table_name, quote)} (\n{body}\n);"


def generate_migration_sql(
    differences: SchemaDifferences,
    target_dialect: str = "postgres",
    schemas: list[TableSchema] | None = None,
) -> str:
    """
    Render a migration script that brings the current schema up to the desired one.

    Args:
        differences: Output of ``compare_schemas``
        target_dialect: ``postgres``, ``mysql``, ``sqlite`` or ``duckdb``
        schemas: Desired table schemas; needed to emit CREATE TABLE and
            typed ADD COLUMN statements. Without them, those steps are
            written as comments.

    Returns:
        The script. Type mismatches and extra columns are reported as
        comments only; nothing is dropped or altered in place.
    """
    if target_dialect not in _DIALECT_TYPES:
        raise ValueError(f"Unsupported SQL dialect: {target_dialect}")
    quote = DIALECTS[target_dialect].quote
    desired = {s.table_name: s for s in schemas or []}
    statements: list[str] = []

    for table in differences.missing_tables:
        schema = desired.get(table)
        if schema is None:
            statements.append(f"-- Missing table {table}: no schema supplied")
        else:
            statements.append(f"-- Create missing table {table}")
            statements.append(_create_table_sql(schema, target_dialect, quote))
        statements.append("")

    for table, diff in differences.column_differences.items():
        quoted_table = escape_identifier(table, quote)
        if diff.missing:
            statements.append(f"-- Add missing columns to {table}")
            schema = desired.get(table)
            for name in diff.missing:
                column = schema.column(name) if schema else None
                if column is None:
                    statements.append(f"-- Missing column {table}.{name}: no definition supplied")
                    continue
                # New columns on existing rows cannot start out NOT NULL without a default
                if not column.nullable and column.default_value is None:
                    column = ColumnDefinition(column.name, column.type, nullable=True)
                statements.append(
                    f"ALTER TABLE {quoted_table} ADD COLUMN "
                    f"{_column_sql(column, target_dialect, quote)};"
                )
            statements.append("")

        if diff.type_mismatches:
            statements.append(f"-- Type mismatches in {table}:")
            statements.extend(f"-- {mismatch}" for mismatch in diff.type_mismatches)
            statements.append("")

        if diff.extra:
            extra = ", ".join(diff.extra)
            statements.append(f"-- Columns in {table} not in the desired schema: {extra}")
            statements.append("")

    return "\n".join(statements)
