"""
Migration job manager.

Owns every MigrationJob and drives its state machine:

    pending --start--> running --pause--> paused --resume--> running
    running --(all tables done)--> completed
    running --(error)--> failed --start--> running   (restart from checkpoint)
    pending | running | paused --cancel--> cancelled

Pause and cancel are cooperative: they flip the status and the job loop
observes it at the next table boundary. An in-flight batch is never
interrupted.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from ..exceptions import JobBusyError, JobNotFoundError, JobStateError
from ..logging_utils import StorageLoggerAdapter
from ..providers.base import StorageProvider
from .store import JobStore
from .transfer import migrate_data
from .transformation import TransformationConfig
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

logger = logging.getLogger(__name__)

JobListener = Callable[[MigrationJobEvent], None]

_DELETABLE = (
    MigrationJobStatus.PENDING,
    MigrationJobStatus.COMPLETED,
    MigrationJobStatus.FAILED,
    MigrationJobStatus.CANCELLED,
)


class MigrationJobManager:
    """
    Creates, runs and observes migration jobs.

    ``start_job`` and ``resume_job`` await the job loop; run them in a task
    to drive a job in the background. Listeners are synchronous and may call
    ``pause_job`` from inside an event.

    Example:
        >>> manager = MigrationJobManager()
        >>> job = manager.create_job("copy", source, target, ["profiles", "tickets"])
        >>> await manager.start_job(job.id)
        >>> manager.get_job(job.id).status
        <MigrationJobStatus.COMPLETED: 'completed'>
    """

    def __init__(self, job_store: JobStore | None = None):
        self.job_store = job_store
        self._jobs: dict[str, MigrationJob] = {}
        self._active: set[str] = set()
        self._listeners: list[JobListener] = []

    # =========================================================================
    # Job lifecycle
    # =========================================================================

    def create_job(
        self,
        name: str,
        source: StorageProvider,
        target: StorageProvider,
        tables: list[str],
        options: MigrationOptions | None = None,
        description: str | None = None,
        transformations: TransformationConfig | None = None,
    ) -> MigrationJob:
        if not tables:
            raise ValueError("A migration job needs at least one table")

        job = MigrationJob(
            id=str(uuid.uuid4()),
            name=name,
            description=description,
            source_provider=source,
            target_provider=target,
            tables=list(tables),
            options=options or MigrationOptions(),
            progress=MigrationProgress(total_tables=len(tables)),
            transformations=transformations,
        )
        self._jobs[job.id] = job
        logger.info(f"Created migration job {job.id} ({name}) for tables {job.tables}")
        self._emit(job, MigrationJobEventType.CREATED)
        return job

    async def start_job(self, job_id: str) -> MigrationJob:
        """Run a pending job, or restart a failed one from its checkpoint."""
        job = self._require(job_id)
        if job_id in self._active:
            raise JobBusyError(job_id, job.status.value, "start")
        if job.status not in (MigrationJobStatus.PENDING, MigrationJobStatus.FAILED):
            raise JobStateError(job_id, job.status.value, "start")

        if job.status is MigrationJobStatus.FAILED:
            logger.info(f"Restarting failed job {job_id} from its last checkpoint")
            job.error = None
            job.completed_at = None
            job.result = None

        job.status = MigrationJobStatus.RUNNING
        job.started_at = datetime.now(UTC)
        self._emit(job, MigrationJobEventType.STARTED)
        await self._persist(job)
        await self._run(job)
        return job

    def pause_job(self, job_id: str) -> None:
        job = self._require(job_id)
        if job.status is not MigrationJobStatus.RUNNING:
            raise JobStateError(job_id, job.status.value, "pause")
        job.status = MigrationJobStatus.PAUSED
        logger.info(f"Pausing job {job_id}")
        self._emit(job, MigrationJobEventType.PAUSED)

    async def resume_job(self, job_id: str) -> MigrationJob:
        job = self._require(job_id)
        if job.status is not MigrationJobStatus.PAUSED:
            raise JobStateError(job_id, job.status.value, "resume")

        job.status = MigrationJobStatus.RUNNING
        logger.info(f"Resuming job {job_id}")
        self._emit(job, MigrationJobEventType.RESUMED)
        if job_id in self._active:
            # The loop has not reached a table boundary since the pause.
            return job
        await self._persist(job)
        await self._run(job)
        return job

    async def cancel_job(self, job_id: str) -> None:
        job = self._require(job_id)
        if job.status.is_terminal:
            raise JobStateError(job_id, job.status.value, "cancel")
        job.status = MigrationJobStatus.CANCELLED
        job.completed_at = datetime.now(UTC)
        logger.info(f"Cancelled job {job_id}")
        self._emit(job, MigrationJobEventType.CANCELLED)
        await self._persist(job)

    async def delete_job(self, job_id: str) -> bool:
        """Forget a pending or finished job. Returns False for unknown ids."""
        job = self._jobs.get(job_id)
        if job is None:
            return False
        if job_id in self._active or job.status is MigrationJobStatus.RUNNING:
            raise JobBusyError(job_id, job.status.value, "delete")
        if job.status not in _DELETABLE:
            raise JobStateError(job_id, job.status.value, "delete")

        del self._jobs[job_id]
        if self.job_store is not None:
            await self.job_store.remove(job_id)
        logger.info(f"Deleted job {job_id}")
        return True

    def clear_completed(self) -> int:
        """Drop every finished job (completed, failed or cancelled)."""
        finished = [
            job_id
            for job_id, job in self._jobs.items()
            if job.status.is_terminal and job_id not in self._active
        ]
        for job_id in finished:
            del self._jobs[job_id]
        return len(finished)

    def restore_job(
        self,
        snapshot: dict[str, Any],
        source: StorageProvider,
        target: StorageProvider,
        transformations: TransformationConfig | None = None,
    ) -> MigrationJob:
        """
        Re-register a job from a stored snapshot.

        A snapshot still marked running belonged to a process that died
        mid-job; it comes back as failed so ``start_job`` can restart it
        from its checkpoint.
        """
        job = MigrationJob.from_dict(snapshot, source, target, transformations)
        if job.status is MigrationJobStatus.RUNNING:
            job.status = MigrationJobStatus.FAILED
            job.error = "Job interrupted before completion"
            logger.warning(f"Restored job {job.id} was interrupted; marking failed")
        self._jobs[job.id] = job
        return job

    # =========================================================================
    # Queries
    # =========================================================================

    def get_job(self, job_id: str) -> MigrationJob | None:
        return self._jobs.get(job_id)

    def get_all_jobs(self) -> list[MigrationJob]:
        return list(self._jobs.values())

    def get_jobs_by_status(self, status: MigrationJobStatus) -> list[MigrationJob]:
        return [job for job in self._jobs.values() if job.status is status]

    def is_active(self, job_id: str) -> bool:
        return job_id in self._active

    # =========================================================================
    # Events
    # =========================================================================

    def subscribe(self, listener: JobListener) -> Callable[[], None]:
        """Receive future events for every job. Returns an idempotent unsubscribe."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(
        self,
        job: MigrationJob,
        event_type: MigrationJobEventType,
        data: dict[str, Any] | None = None,
    ) -> None:
        event = MigrationJobEvent(job_id=job.id, type=event_type, data=data)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Migration job listener failed on {event_type.value}: {e}")

    # =========================================================================
    # Job loop
    # =========================================================================

    async def _run(self, job: MigrationJob) -> None:
        log = StorageLoggerAdapter(logger, {"job_id": job.id})
        self._active.add(job.id)
        if job.result is None:
            job.result = MigrationResult()

        try:
            index = self._resume_index(job)
            if index:
                log.info(f"Resuming at table {job.tables[index]} ({index}/{len(job.tables)})")

            while index < len(job.tables):
                if job.status is not MigrationJobStatus.RUNNING:
                    log.info(f"Job observed status '{job.status.value}', stopping")
                    return

                table = job.tables[index]
                job.progress.current_table = table
                outcome = await self._migrate_table(job, table)
                job.result.merge(outcome)
                job.progress.rows_migrated += outcome.rows_migrated

                if outcome.errors and not job.options.continue_on_error:
                    self._fail(job, "; ".join(outcome.errors))
                    return

                previous = job.checkpoint
                job.checkpoint = MigrationCheckpoint(
                    table,
                    rows_processed=previous.rows_processed
                    if previous and previous.table_name == table
                    else outcome.rows_migrated,
                    last_processed_id=previous.last_processed_id
                    if previous and previous.table_name == table
                    else None,
                    table_completed=True,
                )
                index += 1
                job.progress.tables_completed = index
                job.progress.percent_complete = int(index / len(job.tables) * 100)
                log.bind(table=table).info(
                    f"Table {table} done: {outcome.rows_migrated} rows "
                    f"({job.progress.percent_complete}%)"
                )
                # Paused or cancelled while this table was copying
                if job.status is MigrationJobStatus.RUNNING:
                    self._emit(job, MigrationJobEventType.PROGRESS, job.progress.to_dict())
                await self._persist(job)

            if job.status is MigrationJobStatus.RUNNING:
                job.status = MigrationJobStatus.COMPLETED
                job.completed_at = datetime.now(UTC)
                job.progress.current_table = None
                job.progress.percent_complete = 100
                job.result.success = not job.result.errors
                log.info(f"Job completed: {job.progress.rows_migrated} rows migrated")
                self._emit(job, MigrationJobEventType.COMPLETED, job.result.to_dict())
        except Exception as e:
            log.error(f"Job failed: {e}")
            self._fail(job, str(e))
        finally:
            self._active.discard(job.id)
            await self._persist(job)

    async def _migrate_table(self, job: MigrationJob, table: str) -> MigrationResult:
        checkpoint = job.checkpoint
        resuming = (
            checkpoint is not None
            and checkpoint.table_name == table
            and not checkpoint.table_completed
        )
        base_rows = checkpoint.rows_processed if resuming else 0

        def record(batch_checkpoint: MigrationCheckpoint) -> None:
            if batch_checkpoint.table_completed:
                return
            job.checkpoint = replace(
                batch_checkpoint, rows_processed=base_rows + batch_checkpoint.rows_processed
            )

        return await migrate_data(
            job.source_provider,
            job.target_provider,
            [table],
            job.options,
            resume_after_id=checkpoint.last_processed_id if resuming else None,
            transformations=job.transformations,
            on_checkpoint=record,
        )

    def _resume_index(self, job: MigrationJob) -> int:
        checkpoint = job.checkpoint
        if checkpoint is None or checkpoint.table_name not in job.tables:
            return 0
        index = job.tables.index(checkpoint.table_name)
        return index + 1 if checkpoint.table_completed else index

    def _fail(self, job: MigrationJob, error: str) -> None:
        if job.status.is_terminal:
            return
        job.status = MigrationJobStatus.FAILED
        job.error = error
        job.completed_at = datetime.now(UTC)
        if job.result is not None:
            job.result.success = False
        logger.error(f"Migration job {job.id} failed: {error}")
        self._emit(job, MigrationJobEventType.FAILED, {"error": error})

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require(self, job_id: str) -> MigrationJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def _persist(self, job: MigrationJob) -> None:
        if self.job_store is None:
            return
        try:
            await self.job_store.append(job)
        except OSError as e:
            logger.warning(f"Could not persist job {job.id}: {e}")
