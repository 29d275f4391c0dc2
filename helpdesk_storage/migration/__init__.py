"""
Migration engine.

Schema extraction and comparison, per-table transformations, the batched
``migrate_data`` copy primitive and the job manager that drives it with
checkpoints, pause/resume and an event stream.
"""

from .jobs import JobListener, MigrationJobManager
from .schema import (
    ColumnDefinition,
    ColumnDifference,
    ForeignKeyReference,
    IndexDefinition,
    SchemaDifferences,
    SchemaExtractionOptions,
    TableSchema,
    compare_schemas,
    extract_schema,
    generate_migration_sql,
    get_table_list,
    map_column_type,
    table_exists,
)
from .store import JobStore
from .transfer import migrate_data
from .transformation import (
    ColumnTransformation,
    TableTransformation,
    TransformationConfig,
    TransformFunctions,
    apply_transformations,
    create_identity_transformation,
    merge_transformations,
    validate_transformation_config,
)
from .types import (
    MigrationCheckpoint,
    MigrationJob,
    MigrationJobEvent,
    MigrationJobEventType,
    MigrationJobStatus,
    MigrationOptions,
    MigrationProgress,
    MigrationResult,
)

__all__ = [
    # Jobs
    "MigrationJobManager",
    "JobListener",
    "JobStore",
    "MigrationJob",
    "MigrationJobStatus",
    "MigrationJobEvent",
    "MigrationJobEventType",
    "MigrationCheckpoint",
    "MigrationOptions",
    "MigrationProgress",
    "MigrationResult",
    # Transfer
    "migrate_data",
    # Schema
    "ColumnDefinition",
    "ColumnDifference",
    "ForeignKeyReference",
    "IndexDefinition",
    "SchemaDifferences",
    "SchemaExtractionOptions",
    "TableSchema",
    "compare_schemas",
    "extract_schema",
    "generate_migration_sql",
    "get_table_list",
    "map_column_type",
    "table_exists",
    # Transformation
    "ColumnTransformation",
    "TableTransformation",
    "TransformationConfig",
    "TransformFunctions",
    "apply_transformations",
    "create_identity_transformation",
    "merge_transformations",
    "validate_transformation_config",
]
