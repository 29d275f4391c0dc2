"""Normalized result envelope returned by every executor."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..exceptions import QueryExecutionError, StorageLayerError


@dataclass
class QueryResult:
    """``{data, error, count}``.

    On failure ``data`` is None and ``error`` is populated. Callers must
    check ``error`` explicitly; expected backend failures are never raised.
    """

    data: Any = None
    error: StorageLayerError | None = None
    count: int | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, data: Any, count: int | None = None) -> QueryResult:
        return cls(data=data, error=None, count=count)

    @classmethod
    def failure(
        cls,
        error: StorageLayerError | str,
        table: str | None = None,
        operation: str | None = None,
    ) -> QueryResult:
        if isinstance(error, str):
            error = QueryExecutionError(error, table=table, operation=operation)
        return cls(data=None, error=error, count=None)

    def raise_for_error(self) -> QueryResult:
        """Raise the carried error, for callers that prefer exceptions."""
        if self.error is not None:
            raise self.error
        return self


def shape_rows(
    rows: list[dict[str, Any]],
    single: bool,
    maybe_single: bool,
    table: str | None = None,
    operation: str | None = None,
    count: int | None = None,
) -> QueryResult:
    """Apply single/maybe-single cardinality rules to a list of rows."""
    if single:
        if len(rows) != 1:
            return QueryResult.failure(
                QueryExecutionError(
                    f"Expected exactly one row, got {len(rows)}",
                    table=table,
                    operation=operation,
                    code="PGRST116",
                )
            )
        return QueryResult.success(rows[0], count=count)

    if maybe_single:
        if len(rows) > 1:
            return QueryResult.failure(
                QueryExecutionError(
                    f"Expected at most one row, got {len(rows)}",
                    table=table,
                    operation=operation,
                    code="PGRST116",
                )
            )
        return QueryResult.success(rows[0] if rows else None, count=count)

    return QueryResult.success(rows, count=count if count is not None else len(rows))
