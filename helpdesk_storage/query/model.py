"""
Backend-neutral description of a single read or write operation.

A QueryModel is data only: the table, the active operation and its payload,
an ordered list of AND-combined filters, ordering, pagination and the
row-cardinality mode. Executors turn it into SQL, a proxy payload, or calls
on a client library.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from ..exceptions import InvalidOperatorError


class QueryOperation(Enum):
    """The single active operation of a query."""

    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class FilterOperator(Enum):
    """The fixed operator set understood by every executor."""

    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    LIKE = "like"
    ILIKE = "ilike"
    IS = "is"
    IN = "in"
    CONTAINS = "contains"
    CONTAINED_BY = "containedBy"
    OVERLAPS = "overlaps"

    @classmethod
    def parse(cls, operator: str | FilterOperator, column: str | None = None) -> FilterOperator:
        """Resolve an operator name, raising InvalidOperatorError for anything unknown."""
        if isinstance(operator, FilterOperator):
            return operator
        try:
            return cls(operator)
        except ValueError:
            raise InvalidOperatorError(str(operator), column=column) from None


SET_OPERATORS = frozenset(
    {FilterOperator.CONTAINS, FilterOperator.CONTAINED_BY, FilterOperator.OVERLAPS}
)


@dataclass(frozen=True)
class QueryFilter:
    """One predicate: ``column <operator> value``."""

    column: str
    operator: FilterOperator
    value: Any

    def __post_init__(self) -> None:
        operator = FilterOperator.parse(self.operator, self.column)
        object.__setattr__(self, "operator", operator)

        if operator is FilterOperator.IS and not any(self.value is v for v in (None, True, False)):
            raise InvalidOperatorError(
                "is", column=self.column, reason="value must be None, True or False"
            )
        if operator is FilterOperator.IN:
            if not isinstance(self.value, (list, tuple, set, frozenset)):
                raise InvalidOperatorError("in", column=self.column, reason="value must be a list")
            object.__setattr__(self, "value", tuple(self.value))
        if operator is FilterOperator.OVERLAPS and not isinstance(
            self.value, (list, tuple, set, frozenset)
        ):
            raise InvalidOperatorError(
                "overlaps", column=self.column, reason="value must be a list"
            )

    def to_dict(self) -> dict[str, Any]:
        value = list(self.value) if isinstance(self.value, tuple) else self.value
        return {"column": self.column, "operator": self.operator.value, "value": value}


@dataclass(frozen=True)
class OrderClause:
    column: str
    ascending: bool = True


@dataclass(frozen=True)
class QueryRange:
    """Inclusive row window ``[start, end]`` (zero-based)."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.end < self.start:
            raise ValueError(f"Invalid range: {self.start}..{self.end}")

    @property
    def size(self) -> int:
        return self.end - self.start + 1


@dataclass(frozen=True)
class QueryModel:
    """Immutable snapshot of a built query."""

    table: str
    operation: QueryOperation = QueryOperation.SELECT
    select_columns: str = "*"
    insert_payload: tuple[dict[str, Any], ...] | None = None
    update_payload: dict[str, Any] | None = None
    filters: tuple[QueryFilter, ...] = ()
    order: tuple[OrderClause, ...] = ()
    limit: int | None = None
    range: QueryRange | None = None
    single: bool = False
    maybe_single: bool = False
    count: bool = False

    def pagination(self) -> tuple[int | None, int | None]:
        """Return ``(limit, offset)``.

        ``limit`` and ``range`` are mutually exclusive intents; when both are
        set, ``limit`` wins and the range is ignored entirely.
        """
        if self.limit is not None:
            return self.limit, None
        if self.range is not None:
            return self.range.size, self.range.start
        return None, None

    @property
    def returns_rows(self) -> bool:
        return self.operation is QueryOperation.SELECT

    def with_filters(self, *filters: QueryFilter) -> QueryModel:
        """Copy of this model with extra filters appended."""
        return replace(self, filters=self.filters + tuple(filters))

    def rows_to_insert(self) -> list[dict[str, Any]]:
        return [dict(row) for row in self.insert_payload or ()]

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "operation": self.operation.value,
            "select": self.select_columns,
            "insert_data": self.rows_to_insert() if self.insert_payload is not None else None,
            "update_data": dict(self.update_payload) if self.update_payload is not None else None,
            "filters": [f.to_dict() for f in self.filters],
            "order": [{"column": o.column, "ascending": o.ascending} for o in self.order],
            "limit": self.limit,
            "range": {"from": self.range.start, "to": self.range.end} if self.range else None,
            "single": self.single,
            "maybe_single": self.maybe_single,
        }
