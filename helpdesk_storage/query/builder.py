"""
Fluent query builder.

Every mutator returns the builder itself. ``select`` overwrites the column
list, filter methods append (the conjunction grows), and ``execute`` is the
only terminal operation.

Precondition: a builder is single-use. Building after ``execute`` or
executing twice is undefined; obtain a fresh builder from
``provider.from_(table)`` for every operation.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from .model import (
    FilterOperator,
    OrderClause,
    QueryFilter,
    QueryModel,
    QueryOperation,
    QueryRange,
)
from .result import QueryResult

Executor = Callable[[QueryModel], Awaitable[QueryResult]]


class QueryBuilder:
    """Accumulates a QueryModel and hands it to a backend-specific executor."""

    def __init__(self, table: str, executor: Executor):
        self._table = table
        self._executor = executor
        self._operation = QueryOperation.SELECT
        self._columns = "*"
        self._count = False
        self._insert: tuple[dict[str, Any], ...] | None = None
        self._update: dict[str, Any] | None = None
        self._filters: list[QueryFilter] = []
        self._order: list[OrderClause] = []
        self._limit: int | None = None
        self._range: QueryRange | None = None
        self._single = False
        self._maybe_single = False

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def select(self, columns: str = "*", count: str | None = None) -> QueryBuilder:
        """Select columns (comma-separated). ``count="exact"`` also counts matches."""
        self._columns = columns or "*"
        self._count = count is not None
        return self

    def insert(self, data: dict[str, Any] | list[dict[str, Any]]) -> QueryBuilder:
        rows = [data] if isinstance(data, dict) else list(data)
        self._insert = tuple(dict(row) for row in rows)
        self._update = None
        self._operation = QueryOperation.INSERT
        return self

    def update(self, data: dict[str, Any]) -> QueryBuilder:
        self._update = dict(data)
        self._insert = None
        self._operation = QueryOperation.UPDATE
        return self

    def delete(self) -> QueryBuilder:
        self._insert = None
        self._update = None
        self._operation = QueryOperation.DELETE
        return self

    # -------------------------------------------------------------------------
    # Filters
    # -------------------------------------------------------------------------

    def filter(self, column: str, operator: str | FilterOperator, value: Any) -> QueryBuilder:
        """Append a filter by operator name.

        Raises:
            InvalidOperatorError: If the operator is outside the fixed set.
        """
        self._filters.append(QueryFilter(column, FilterOperator.parse(operator, column), value))
        return self

    def eq(self, column: str, value: Any) -> QueryBuilder:
        return self.filter(column, FilterOperator.EQ, value)

    def neq(self, column: str, value: Any) -> QueryBuilder:
        return self.filter(column, FilterOperator.NEQ, value)

    def gt(self, column: str, value: Any) -> QueryBuilder:
        return self.filter(column, FilterOperator.GT, value)

    def gte(self, column: str, value: Any) -> QueryBuilder:
        return self.filter(column, FilterOperator.GTE, value)

    def lt(self, column: str, value: Any) -> QueryBuilder:
        return self.filter(column, FilterOperator.LT, value)

    def lte(self, column: str, value: Any) -> QueryBuilder:
        return self.filter(column, FilterOperator.LTE, value)

    def like(self, column: str, pattern: str) -> QueryBuilder:
        return self.filter(column, FilterOperator.LIKE, pattern)

    def ilike(self, column: str, pattern: str) -> QueryBuilder:
        return self.filter(column, FilterOperator.ILIKE, pattern)

    def is_(self, column: str, value: bool | None) -> QueryBuilder:
        return self.filter(column, FilterOperator.IS, value)

    def in_(self, column: str, values: list[Any]) -> QueryBuilder:
        return self.filter(column, FilterOperator.IN, values)

    def contains(self, column: str, value: list[Any] | dict[str, Any]) -> QueryBuilder:
        return self.filter(column, FilterOperator.CONTAINS, value)

    def contained_by(self, column: str, value: list[Any] | dict[str, Any]) -> QueryBuilder:
        return self.filter(column, FilterOperator.CONTAINED_BY, value)

    def overlaps(self, column: str, values: list[Any]) -> QueryBuilder:
        return self.filter(column, FilterOperator.OVERLAPS, values)

    # -------------------------------------------------------------------------
    # Modifiers
    # -------------------------------------------------------------------------

    def order(self, column: str, ascending: bool = True) -> QueryBuilder:
        self._order.append(OrderClause(column, ascending))
        return self

    def limit(self, count: int) -> QueryBuilder:
        if count < 0:
            raise ValueError(f"limit must be non-negative, got {count}")
        self._limit = count
        return self

    def range(self, start: int, end: int) -> QueryBuilder:
        """Inclusive row window. Ignored if ``limit`` is also set."""
        self._range = QueryRange(start, end)
        return self

    def single(self) -> QueryBuilder:
        self._single = True
        self._maybe_single = False
        return self

    def maybe_single(self) -> QueryBuilder:
        self._maybe_single = True
        self._single = False
        return self

    # -------------------------------------------------------------------------
    # Terminal
    # -------------------------------------------------------------------------

    def to_model(self) -> QueryModel:
        return QueryModel(
            table=self._table,
            operation=self._operation,
            select_columns=self._columns,
            insert_payload=self._insert,
            update_payload=self._update,
            filters=tuple(self._filters),
            order=tuple(self._order),
            limit=self._limit,
            range=self._range,
            single=self._single,
            maybe_single=self._maybe_single,
            count=self._count,
        )

    async def execute(self) -> QueryResult:
        return await self._executor(self.to_model())
