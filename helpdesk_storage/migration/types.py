"""
Migration types and data structures.

Defines the job, checkpoint, progress and result types shared by the
row-copy primitive, the job manager and the job store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..providers.base import StorageProvider
    from .transformation import TransformationConfig


def _now() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class MigrationJobStatus(Enum):
    """Lifecycle state of a migration job."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            MigrationJobStatus.COMPLETED,
            MigrationJobStatus.FAILED,
            MigrationJobStatus.CANCELLED,
        )


@dataclass
class MigrationOptions:
    """How rows are copied.

    Attributes:
        batch_size: Rows read and written per batch
        skip_existing: Drop rows whose primary key already exists in the
            target, and treat batch insert errors as non-fatal
        validate_data: Warn about (and skip) rows without a primary key
        dry_run: Read and count without writing
        continue_on_error: Keep a job going to the next table after errors
        primary_key: Column used for ordering, resume and existence checks
    """

    batch_size: int = 1000
    skip_existing: bool = False
    validate_data: bool = True
    dry_run: bool = False
    continue_on_error: bool = False
    primary_key: str = "id"

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_size": self.batch_size,
            "skip_existing": self.skip_existing,
            "validate_data": self.validate_data,
            "dry_run": self.dry_run,
            "continue_on_error": self.continue_on_error,
            "primary_key": self.primary_key,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> MigrationOptions:
        return cls(**(data or {}))


@dataclass
class MigrationProgress:
    current_table: str | None = None
    tables_completed: int = 0
    total_tables: int = 0
    rows_migrated: int = 0
    total_rows: int | None = None
    percent_complete: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_table": self.current_table,
            "tables_completed": self.tables_completed,
            "total_tables": self.total_tables,
            "rows_migrated": self.rows_migrated,
            "total_rows": self.total_rows,
            "percent_complete": self.percent_complete,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> MigrationProgress:
        return cls(**(data or {}))


@dataclass
class MigrationCheckpoint:
    """Recovery anchor for a job.

    ``table_completed`` False means the job stopped inside ``table_name``
    after ``last_processed_id``; True means the table is done and a resume
    starts at the next one.
    """

    table_name: str
    rows_processed: int = 0
    last_processed_id: Any = None
    table_completed: bool = False
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "table_name": self.table_name,
            "rows_processed": self.rows_processed,
            "last_processed_id": self.last_processed_id,
            "table_completed": self.table_completed,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationCheckpoint:
        return cls(
            table_name=data["table_name"],
            rows_processed=data.get("rows_processed", 0),
            last_processed_id=data.get("last_processed_id"),
            table_completed=data.get("table_completed", False),
            timestamp=_parse(data.get("timestamp")) or _now(),
        )


@dataclass
class MigrationResult:
    """Outcome of copying one or more tables.

    ``success`` is True exactly when ``errors`` is empty.
    """

    success: bool = False
    tables_processed: int = 0
    rows_migrated: int = 0
    rows_skipped: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    duration: float = 0.0

    def merge(self, other: MigrationResult) -> MigrationResult:
        """Fold another result into this one (in place) and return self."""
        self.tables_processed += other.tables_processed
        self.rows_migrated += other.rows_migrated
        self.rows_skipped += other.rows_skipped
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)
        self.duration += other.duration
        self.success = not self.errors
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "tables_processed": self.tables_processed,
            "rows_migrated": self.rows_migrated,
            "rows_skipped": self.rows_skipped,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "duration": self.duration,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationResult:
        return cls(**data)


class MigrationJobEventType(Enum):
    CREATED = "created"
    STARTED = "started"
    PROGRESS = "progress"
    PAUSED = "paused"
    RESUMED = "resumed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class MigrationJobEvent:
    """One entry of a job's event stream: ``{job_id, type, timestamp, data}``."""

    job_id: str
    type: MigrationJobEventType
    timestamp: datetime = field(default_factory=_now)
    data: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }


@dataclass
class MigrationJob:
    """A resumable copy of ``tables`` from one provider to another.

    Owned by MigrationJobManager; mutate only through its transitions.
    """

    id: str
    name: str
    source_provider: StorageProvider
    target_provider: StorageProvider
    tables: list[str]
    status: MigrationJobStatus = MigrationJobStatus.PENDING
    progress: MigrationProgress = field(default_factory=MigrationProgress)
    options: MigrationOptions = field(default_factory=MigrationOptions)
    description: str | None = None
    checkpoint: MigrationCheckpoint | None = None
    transformations: TransformationConfig | None = None
    result: MigrationResult | None = None
    created_at: datetime = field(default_factory=_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serializable snapshot; providers are recorded by name only."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "source_provider": self.source_provider.name,
            "target_provider": self.target_provider.name,
            "tables": list(self.tables),
            "status": self.status.value,
            "progress": self.progress.to_dict(),
            "options": self.options.to_dict(),
            "checkpoint": self.checkpoint.to_dict() if self.checkpoint else None,
            "result": self.result.to_dict() if self.result else None,
            "created_at": self.created_at.isoformat(),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "error": self.error,
        }

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        source_provider: StorageProvider,
        target_provider: StorageProvider,
        transformations: TransformationConfig | None = None,
    ) -> MigrationJob:
        checkpoint = data.get("checkpoint")
        result = data.get("result")
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description"),
            source_provider=source_provider,
            target_provider=target_provider,
            tables=list(data["tables"]),
            status=MigrationJobStatus(data.get("status", "pending")),
            progress=MigrationProgress.from_dict(data.get("progress")),
            options=MigrationOptions.from_dict(data.get("options")),
            checkpoint=MigrationCheckpoint.from_dict(checkpoint) if checkpoint else None,
            transformations=transformations,
            result=MigrationResult.from_dict(result) if result else None,
            created_at=_parse(data.get("created_at")) or _now(),
            started_at=_parse(data.get("started_at")),
            completed_at=_parse(data.get("completed_at")),
            error=data.get("error"),
        )
