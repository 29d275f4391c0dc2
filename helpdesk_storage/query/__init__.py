"""Backend-neutral query model, fluent builder and per-backend compilers."""

from .builder import Executor, QueryBuilder
from .model import (
    FilterOperator,
    OrderClause,
    QueryFilter,
    QueryModel,
    QueryOperation,
    QueryRange,
)
from .result import QueryResult, shape_rows
from .sql import DIALECTS, CompiledQuery, Dialect, SQLCompiler
from .wire import decode_response, encode_health_check, encode_query

__all__ = [
    "CompiledQuery",
    "DIALECTS",
    "Dialect",
    "Executor",
    "FilterOperator",
    "OrderClause",
    "QueryBuilder",
    "QueryFilter",
    "QueryModel",
    "QueryOperation",
    "QueryRange",
    "QueryResult",
    "SQLCompiler",
    "decode_response",
    "encode_health_check",
    "encode_query",
    "shape_rows",
]
