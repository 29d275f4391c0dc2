"""
SQL compiler for QueryModels.

Translates a backend-neutral QueryModel into a parameterized statement for
one SQL dialect. Supports:
- All filter operators with equivalent semantics per dialect
  (``ilike`` is always case-insensitive, ``like`` always case-sensitive)
- Array and JSON-object containment for ``contains``/``containedBy``/``overlaps``
- ORDER BY, LIMIT/OFFSET (``limit`` takes precedence over ``range``)
- RETURNING for write statements where the dialect has it

Identifiers are validated and quoted; values are always bound as parameters.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from ..exceptions import QueryExecutionError
from ..validation import escape_identifier
from .model import FilterOperator, QueryFilter, QueryModel, QueryOperation


@dataclass(frozen=True)
class Dialect:
    """Syntax differences between the SQL backends we compile for."""

    name: str
    placeholder: str
    quote: str
    supports_returning: bool
    native_ilike: bool
    native_lists: bool = False


SQLITE = Dialect("sqlite", "?", '"', supports_returning=True, native_ilike=False)
DUCKDB = Dialect("duckdb", "?", '"', supports_returning=True, native_ilike=True, native_lists=True)
MYSQL = Dialect("mysql", "%s", "`", supports_returning=False, native_ilike=False)
POSTGRES = Dialect("postgres", "%s", '"', supports_returning=True, native_ilike=True)

DIALECTS: dict[str, Dialect] = {d.name: d for d in (SQLITE, DUCKDB, MYSQL, POSTGRES)}


@dataclass
class CompiledQuery:
    """A parameterized SQL statement.

    Attributes:
        sql: Statement text with dialect placeholders
        params: Positional parameters, in placeholder order
        returns_rows: Whether executing the statement yields rows
    """

    sql: str
    params: list[Any] = field(default_factory=list)
    returns_rows: bool = True

    def __str__(self) -> str:
        return f"{self.sql}\nParameters: {self.params!r}"


class SQLCompiler:
    """Builds dialect-specific SQL from QueryModels.

    Usage:
        compiler = SQLCompiler("sqlite")
        compiled = compiler.compile(model)
        cursor = await conn.execute(compiled.sql, compiled.params)
    """

    def __init__(self, dialect: str | Dialect = "sqlite") -> None:
        if isinstance(dialect, str):
            if dialect not in DIALECTS:
                raise ValueError(f"Unsupported SQL dialect: {dialect}")
            dialect = DIALECTS[dialect]
        self.dialect = dialect

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def compile(self, model: QueryModel) -> CompiledQuery:
        """Compile a model into a single statement.

        Raises:
            InvalidIdentifierError: If a table or column name is unsafe.
            QueryExecutionError: If the model cannot be expressed (e.g. an
                unfiltered UPDATE/DELETE, an empty INSERT).
        """
        if model.operation is QueryOperation.SELECT:
            return self._compile_select(model)
        if model.operation is QueryOperation.INSERT:
            return self._compile_insert(model)
        if model.operation is QueryOperation.UPDATE:
            return self._compile_update(model)
        return self._compile_delete(model)

    def compile_count(self, model: QueryModel) -> CompiledQuery:
        """``SELECT COUNT(*)`` over the model's filters, ignoring pagination."""
        params: list[Any] = []
        sql = f"SELECT COUNT(*) AS count FROM {self.quote(model.table)}"
        sql += self._where(model.filters, params)
        return CompiledQuery(sql, params)

    # -------------------------------------------------------------------------
    # Statements
    # -------------------------------------------------------------------------

    def _compile_select(self, model: QueryModel) -> CompiledQuery:
        params: list[Any] = []
        sql = f"SELECT {self._projection(model.select_columns)} FROM {self.quote(model.table)}"
        sql += self._where(model.filters, params)

        if model.order:
            clauses = ", ".join(
                f"{self.quote(o.column)} {'ASC' if o.ascending else 'DESC'}" for o in model.order
            )
            sql += f" ORDER BY {clauses}"

        limit, offset = model.pagination()
        if limit is not None:
            sql += f" LIMIT {int(limit)}"
            if offset:
                sql += f" OFFSET {int(offset)}"

        return CompiledQuery(sql, params)

    def _compile_insert(self, model: QueryModel) -> CompiledQuery:
        rows = model.rows_to_insert()
        if not rows:
            raise QueryExecutionError("INSERT requires at least one row", model.table, "insert")

        # Union of keys in first-seen order; rows missing a key insert NULL.
        columns: list[str] = []
        for row in rows:
            for key in row:
                if key not in columns:
                    columns.append(key)

        params: list[Any] = []
        placeholders = ", ".join([self.dialect.placeholder] * len(columns))
        values = []
        for row in rows:
            values.append(f"({placeholders})")
            params.extend(self.adapt(row.get(column)) for column in columns)

        column_sql = ", ".join(self.quote(c) for c in columns)
        sql = f"INSERT INTO {self.quote(model.table)} ({column_sql}) VALUES {', '.join(values)}"
        return self._with_returning(sql, params, model)

    def _compile_update(self, model: QueryModel) -> CompiledQuery:
        if not model.update_payload:
            raise QueryExecutionError("UPDATE requires at least one column", model.table, "update")
        if not model.filters:
            raise QueryExecutionError("UPDATE requires at least one filter", model.table, "update")

        params: list[Any] = []
        assignments = []
        for column, value in model.update_payload.items():
            assignments.append(f"{self.quote(column)} = {self.dialect.placeholder}")
            params.append(self.adapt(value))

        sql = f"UPDATE {self.quote(model.table)} SET {', '.join(assignments)}"
        sql += self._where(model.filters, params)
        return self._with_returning(sql, params, model)

    def _compile_delete(self, model: QueryModel) -> CompiledQuery:
        if not model.filters:
            raise QueryExecutionError("DELETE requires at least one filter", model.table, "delete")

        params: list[Any] = []
        sql = f"DELETE FROM {self.quote(model.table)}"
        sql += self._where(model.filters, params)
        return self._with_returning(sql, params, model)

    def _with_returning(self, sql: str, params: list[Any], model: QueryModel) -> CompiledQuery:
        if self.dialect.supports_returning:
            sql += f" RETURNING {self._projection(model.select_columns)}"
            return CompiledQuery(sql, params, returns_rows=True)
        return CompiledQuery(sql, params, returns_rows=False)

    # -------------------------------------------------------------------------
    # Clauses
    # -------------------------------------------------------------------------

    def quote(self, identifier: str) -> str:
        return escape_identifier(identifier, self.dialect.quote)

    def _projection(self, columns: str) -> str:
        names = [c.strip() for c in (columns or "*").split(",") if c.strip()]
        if not names or names == ["*"]:
            return "*"
        return ", ".join(self.quote(name) for name in names)

    def _where(self, filters: tuple[QueryFilter, ...], params: list[Any]) -> str:
        if not filters:
            return ""
        return " WHERE " + " AND ".join(self._condition(f, params) for f in filters)

    def _condition(self, qf: QueryFilter, params: list[Any]) -> str:
        column = self.quote(qf.column)
        op = qf.operator
        p = self.dialect.placeholder

        comparisons = {
            FilterOperator.EQ: "=",
            FilterOperator.NEQ: "<>",
            FilterOperator.GT: ">",
            FilterOperator.GTE: ">=",
            FilterOperator.LT: "<",
            FilterOperator.LTE: "<=",
        }
        if op in comparisons:
            params.append(self.adapt(qf.value))
            return f"{column} {comparisons[op]} {p}"

        if op is FilterOperator.LIKE:
            params.append(qf.value)
            if self.dialect.name == "mysql":
                return f"CAST({column} AS BINARY) LIKE CAST({p} AS BINARY)"
            # SQLite connections run with PRAGMA case_sensitive_like = ON
            return f"{column} LIKE {p}"

        if op is FilterOperator.ILIKE:
            params.append(qf.value)
            if self.dialect.native_ilike:
                return f"{column} ILIKE {p}"
            return f"LOWER({column}) LIKE LOWER({p})"

        if op is FilterOperator.IS:
            if qf.value is None:
                return f"{column} IS NULL"
            return f"{column} IS {'TRUE' if qf.value else 'FALSE'}"

        if op is FilterOperator.IN:
            if not qf.value:
                return "1 = 0"
            params.extend(self.adapt(v) for v in qf.value)
            return f"{column} IN ({', '.join([p] * len(qf.value))})"

        return self._containment(column, op, qf.value, params)

    def _containment(
        self, column: str, op: FilterOperator, value: Any, params: list[Any]
    ) -> str:
        p = self.dialect.placeholder
        is_object = isinstance(value, dict)
        name = self.dialect.name

        if name == "mysql":
            params.append(json.dumps(to_json_compatible(value)))
            if op is FilterOperator.CONTAINS:
                return f"JSON_CONTAINS({column}, {p})"
            if op is FilterOperator.CONTAINED_BY:
                return f"JSON_CONTAINS({p}, {column})"
            return f"JSON_OVERLAPS({column}, {p})"

        if name == "postgres":
            params.append(json.dumps(value) if is_object else list(value))
            symbol = {
                FilterOperator.CONTAINS: "@>",
                FilterOperator.CONTAINED_BY: "<@",
                FilterOperator.OVERLAPS: "&&",
            }[op]
            return f"{column} {symbol} {p}"

        if name == "duckdb":
            if is_object:
                params.append(json.dumps(value))
                if op is FilterOperator.CONTAINS:
                    return f"json_contains({column}, {p})"
                if op is FilterOperator.CONTAINED_BY:
                    return f"json_contains({p}, {column})"
                raise QueryExecutionError("overlaps requires a list value", operation="select")
            params.append(list(value))
            if op is FilterOperator.CONTAINS:
                return f"list_has_all({column}, {p})"
            if op is FilterOperator.CONTAINED_BY:
                return f"list_has_all({p}, {column})"
            return f"list_has_any({column}, {p})"

        # sqlite: JSON text columns, compared element-wise through json_each
        params.append(json.dumps(to_json_compatible(value)))
        if is_object:
            if op is FilterOperator.CONTAINS:
                return (
                    f"NOT EXISTS (SELECT 1 FROM json_each({p}) AS needle "
                    f"LEFT JOIN json_each({column}) AS hay ON hay.key = needle.key "
                    f"WHERE hay.key IS NULL OR hay.value IS NOT needle.value)"
                )
            if op is FilterOperator.CONTAINED_BY:
                return (
                    f"NOT EXISTS (SELECT 1 FROM json_each({column}) AS hay "
                    f"LEFT JOIN json_each({p}) AS needle ON needle.key = hay.key "
                    f"WHERE needle.key IS NULL OR needle.value IS NOT hay.value)"
                )
            raise QueryExecutionError("overlaps requires a list value", operation="select")

        if op is FilterOperator.CONTAINS:
            return (
                f"NOT EXISTS (SELECT 1 FROM json_each({p}) AS needle "
                f"WHERE needle.value NOT IN (SELECT value FROM json_each({column})))"
            )
        if op is FilterOperator.CONTAINED_BY:
            return (
                f"NOT EXISTS (SELECT 1 FROM json_each({column}) AS hay "
                f"WHERE hay.value NOT IN (SELECT value FROM json_each({p})))"
            )
        return (
            f"EXISTS (SELECT 1 FROM json_each({column}) AS hay "
            f"WHERE hay.value IN (SELECT value FROM json_each({p})))"
        )

    # -------------------------------------------------------------------------
    # Values
    # -------------------------------------------------------------------------

    def adapt(self, value: Any) -> Any:
        """Convert a Python value into something the driver binds natively."""
        if isinstance(value, dict):
            return json.dumps(to_json_compatible(value))
        if isinstance(value, (list, tuple)):
            if self.dialect.native_lists:
                return [self.adapt(v) for v in value]
            return json.dumps(to_json_compatible(value))
        if isinstance(value, uuid.UUID):
            return str(value)
        if isinstance(value, (datetime, date)) and self.dialect.name in ("sqlite", "mysql"):
            return value.isoformat()
        if isinstance(value, Decimal) and self.dialect.name == "sqlite":
            return float(value)
        return value


def to_json_compatible(value: Any) -> Any:
    """Make a value JSON-serializable (tuples to lists, datetimes to ISO text)."""
    if isinstance(value, dict):
        return {str(k): to_json_compatible(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_json_compatible(v) for v in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    return value
