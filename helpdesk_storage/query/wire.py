"""
Wire format for the remote query-execution proxy.

Request body (JSON)::

    {operation, table, select, insertData, updateData,
     filters: [{column, operator, value}], order: [{column, ascending}],
     limit, range: {from, to}, single, maybeSingle}

Response body::

    {result, error?, count?}
"""

from __future__ import annotations

from typing import Any

from ..exceptions import QueryExecutionError
from .model import QueryModel
from .result import QueryResult
from .sql import to_json_compatible


def encode_query(model: QueryModel) -> dict[str, Any]:
    """Serialize a model into the proxy's structured request payload."""
    insert_data = None
    if model.insert_payload is not None:
        insert_data = to_json_compatible(model.rows_to_insert())
    update_data = None
    if model.update_payload is not None:
        update_data = to_json_compatible(model.update_payload)

    payload: dict[str, Any] = {
        "operation": model.operation.value,
        "table": model.table,
        "select": model.select_columns,
        "insertData": insert_data,
        "updateData": update_data,
        "filters": [to_json_compatible(f.to_dict()) for f in model.filters],
        "order": [{"column": o.column, "ascending": o.ascending} for o in model.order],
        "limit": model.limit,
        # limit wins over range; never ship both so the proxy cannot disagree
        "range": (
            {"from": model.range.start, "to": model.range.end}
            if model.range is not None and model.limit is None
            else None
        ),
        "single": model.single,
        "maybeSingle": model.maybe_single,
    }
    if model.count:
        payload["count"] = "exact"
    return payload


def encode_health_check(connection: dict[str, Any]) -> dict[str, Any]:
    return {"operation": "health_check", "connectionConfig": to_json_compatible(connection)}


def decode_response(body: Any, model: QueryModel) -> QueryResult:
    """Turn a proxy response body into the normalized envelope."""
    operation = model.operation.value
    if not isinstance(body, dict):
        return QueryResult.failure(
            QueryExecutionError("Malformed proxy response", model.table, operation)
        )

    error = body.get("error")
    if error:
        if isinstance(error, dict):
            return QueryResult.failure(
                QueryExecutionError(
                    str(error.get("message", error)),
                    table=model.table,
                    operation=operation,
                    code=error.get("code"),
                    hint=error.get("hint"),
                )
            )
        return QueryResult.failure(QueryExecutionError(str(error), model.table, operation))

    result = body.get("result")
    count = body.get("count")
    if count is None and isinstance(result, list):
        count = len(result)
    return QueryResult.success(result, count=count)
