"""
Data transformation during migration.

A TableTransformation maps source columns onto target columns (optionally
through a transform function), filters rows and renames the table. Column
transforms receive ``(value, row)`` where ``row`` is the untouched source
row.
"""

from __future__ import annotations

import dataclasses
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any

from ..validation import ValidationOutcome

logger = logging.getLogger(__name__)

TransformFunction = Callable[[Any, dict[str, Any]], Any]
Row = dict[str, Any]


@dataclass
class ColumnTransformation:
    source_column: str
    target_column: str
    transform: TransformFunction | None = None
    # Used when the transform raises, or when a required value is missing
    default_value: Any = None
    required: bool = False


@dataclass
class TableTransformation:
    source_table: str
    target_table: str
    column_mappings: list[ColumnTransformation] = field(default_factory=list)
    row_filter: Callable[[Row], bool] | None = None
    row_transform: Callable[[Row], Row] | None = None


@dataclass
class TransformationConfig:
    """Per-table transformations plus optional whole-batch hooks."""

    transformations: list[TableTransformation] = field(default_factory=list)
    before_transform: Callable[[list[Row]], list[Row]] | None = None
    after_transform: Callable[[list[Row]], list[Row]] | None = None

    def for_table(self, source_table: str) -> TableTransformation | None:
        for transformation in self.transformations:
            if transformation.source_table == source_table:
                return transformation
        return None

    def target_table(self, source_table: str) -> str:
        transformation = self.for_table(source_table)
        return transformation.target_table if transformation else source_table

    def transform_batch(self, source_table: str, rows: list[Row]) -> list[Row]:
        """Run the global hooks around the table's transformation (if any)."""
        if self.before_transform:
            rows = self.before_transform(rows)
        transformation = self.for_table(source_table)
        if transformation:
            rows = apply_transformations(rows, transformation)
        if self.after_transform:
            rows = self.after_transform(rows)
        return rows


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, UTC)
    return datetime.fromisoformat(str(value))


class TransformFunctions:
    """
    Built-in column transforms.

    Plain transforms are used directly, factories are called first:

        ColumnTransformation("email", "email", TransformFunctions.lowercase)
        ColumnTransformation("price", "price", TransformFunctions.round(2))
    """

    # String transformations

    @staticmethod
    def uppercase(value: Any, row: Row | None = None) -> str:
        return str(value).upper()

    @staticmethod
    def lowercase(value: Any, row: Row | None = None) -> str:
        return str(value).lower()

    @staticmethod
    def trim(value: Any, row: Row | None = None) -> str:
        return str(value).strip()

    # Type conversions

    @staticmethod
    def to_string(value: Any, row: Row | None = None) -> str:
        return str(value)

    @staticmethod
    def to_number(value: Any, row: Row | None = None) -> int | float:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
        text = str(value).strip()
        try:
            return int(text)
        except ValueError:
            return float(text)

    @staticmethod
    def to_boolean(value: Any, row: Row | None = None) -> bool:
        if isinstance(value, str):
            return value.strip().lower() in ("true", "t", "yes", "y", "1")
        return bool(value)

    @staticmethod
    def to_date(value: Any, row: Row | None = None) -> datetime:
        return _to_datetime(value)

    # Null handling

    @staticmethod
    def null_to_default(default: Any) -> TransformFunction:
        return lambda value, row=None: default if value is None else value

    @staticmethod
    def empty_to_null(value: Any, row: Row | None = None) -> Any:
        return None if value == "" else value

    # Composition

    @staticmethod
    def concatenate(*fields: str, separator: str = " ") -> TransformFunction:
        def transform(value: Any, row: Row) -> str:
            return separator.join(str(row[f]) for f in fields if row.get(f))

        return transform

    @staticmethod
    def split(delimiter: str, index: int) -> TransformFunction:
        def transform(value: Any, row: Row | None = None) -> str | None:
            parts = str(value).split(delimiter)
            return parts[index] if -len(parts) <= index < len(parts) else None

        return transform

    @staticmethod
    def replace(search: str | re.Pattern[str], replacement: str) -> TransformFunction:
        if isinstance(search, re.Pattern):
            return lambda value, row=None: search.sub(replacement, str(value))
        return lambda value, row=None: str(value).replace(search, replacement)

    # Dates

    @staticmethod
    def format_date(fmt: str = "%Y-%m-%dT%H:%M:%S") -> TransformFunction:
        return lambda value, row=None: _to_datetime(value).strftime(fmt)

    # Numbers

    @staticmethod
    def round(decimals: int = 0) -> TransformFunction:
        return lambda value, row=None: round(float(value), decimals)

    @staticmethod
    def multiply(factor: float) -> TransformFunction:
        return lambda value, row=None: TransformFunctions.to_number(value) * factor

    @staticmethod
    def add(amount: float) -> TransformFunction:
        return lambda value, row=None: TransformFunctions.to_number(value) + amount


def apply_transformations(rows: list[Row], config: TableTransformation) -> list[Row]:
    """
    Apply a table transformation to a batch of rows.

    Only mapped columns are carried over. A transform that raises is logged
    and replaced by the mapping's default value.
    """
    if config.row_filter:
        rows = [row for row in rows if config.row_filter(row)]

    transformed: list[Row] = []
    for row in rows:
        new_row: Row = {}
        for mapping in config.column_mappings:
            value = row.get(mapping.source_column)
            if mapping.transform is not None:
                try:
                    value = mapping.transform(value, row)
                except Exception as e:
                    logger.error(f"Error transforming {mapping.source_column}: {e}")
                    value = mapping.default_value
            if value is None and mapping.required:
                value = mapping.default_value
            new_row[mapping.target_column] = value

        if config.row_transform:
            new_row = config.row_transform(new_row)
        transformed.append(new_row)
    return transformed


def validate_transformation_config(config: TransformationConfig) -> ValidationOutcome:
    errors: list[str] = []
    if not config.transformations:
        errors.append("No transformations defined")

    for transformation in config.transformations:
        if not transformation.source_table:
            errors.append("Source table is required")
        if not transformation.target_table:
            errors.append("Target table is required")
        if not transformation.column_mappings:
            errors.append(f"No column mappings defined for {transformation.source_table}")
        for mapping in transformation.column_mappings:
            if not mapping.source_column:
                errors.append("Source column is required in mapping")
            if not mapping.target_column:
                errors.append("Target column is required in mapping")

    return ValidationOutcome(success=not errors, errors=errors)


def create_identity_transformation(table: str, columns: list[str]) -> TableTransformation:
    """1:1 mapping of ``columns`` onto a table of the same name."""
    return TableTransformation(
        source_table=table,
        target_table=table,
        column_mappings=[ColumnTransformation(column, column) for column in columns],
    )


def merge_transformations(base: TableTransformation, **overrides: Any) -> TableTransformation:
    """Copy ``base`` with fields overridden; column mappings are appended, not replaced."""
    extra_mappings = overrides.pop("column_mappings", None) or []
    merged = dataclasses.replace(base, **overrides)
    merged.column_mappings = [*base.column_mappings, *extra_mappings]
    return merged
