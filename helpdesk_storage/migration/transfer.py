"""
Batched row copy between providers.

Rows are read from the source in primary-key order, ``batch_size`` at a
time, using keyset pagination (``pk > last_seen``), so a copy interrupted
after a batch can resume after its checkpoint without re-reading.
"""

from __future__ import annotations

import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from ..exceptions import MigrationBatchError
from ..providers.base import StorageProvider
from .transformation import TransformationConfig
from .types import MigrationCheckpoint, MigrationOptions, MigrationResult

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int, int], Awaitable[None] | None]
CheckpointCallback = Callable[[MigrationCheckpoint], Awaitable[None] | None]


async def _notify(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    outcome = callback(*args)
    if inspect.isawaitable(outcome):
        await outcome


async def _existing_keys(
    target: StorageProvider, table: str, primary_key: str, keys: list[Any]
) -> set[Any] | None:
    """Primary keys from ``keys`` already present in the target (None if unknown)."""
    result = await target.from_(table).select(primary_key).in_(primary_key, keys).execute()
    if result.error is not None:
        logger.warning(f"Could not check existing rows in {table}: {result.error}")
        return None
    return {row[primary_key] for row in result.data or []}


def _start_point(
    tables: list[str], checkpoint: MigrationCheckpoint | None, resume_after_id: Any
) -> tuple[int, Any]:
    if checkpoint is None or checkpoint.table_name not in tables:
        return 0, resume_after_id
    index = tables.index(checkpoint.table_name)
    if checkpoint.table_completed:
        return index + 1, None
    return index, checkpoint.last_processed_id


async def migrate_data(
    source: StorageProvider,
    target: StorageProvider,
    tables: list[str],
    options: MigrationOptions | None = None,
    *,
    checkpoint: MigrationCheckpoint | None = None,
    resume_after_id: Any = None,
    transformations: TransformationConfig | None = None,
    on_progress: ProgressCallback | None = None,
    on_checkpoint: CheckpointCallback | None = None,
) -> MigrationResult:
    """
    Copy ``tables`` from ``source`` to ``target``.

    Args:
        source: Provider to read from
        target: Provider to write to
        tables: Tables to copy, in order
        options: Batch size, dry-run, skip-existing and validation switches
        checkpoint: Resume point; a completed table is skipped, a partial one
            continues after ``last_processed_id``
        resume_after_id: Resume point for the first table when no checkpoint
            is given
        transformations: Column mappings and table renames applied per batch
        on_progress: Called as ``(table, rows_in_table, rows_migrated_total)``
        on_checkpoint: Called after every written batch and at the end of
            every finished table

    Returns:
        MigrationResult. A fetch error skips the table; a batch insert error
        stops the copy unless ``skip_existing`` is set.
    """
    options = options or MigrationOptions()
    result = MigrationResult()
    started = time.monotonic()
    pk = options.primary_key

    start_index, after_id = _start_point(tables, checkpoint, resume_after_id)
    logger.info(
        f"Starting data migration of {tables[start_index:]} "
        f"(batch_size={options.batch_size}, dry_run={options.dry_run}, "
        f"skip_existing={options.skip_existing})"
    )

    for index in range(start_index, len(tables)):
        table = tables[index]
        target_table = transformations.target_table(table) if transformations else table
        last_id = after_id if index == start_index else None
        table_rows = 0
        fetched_any = False
        skip_table = False
        aborted = False

        while True:
            query = source.from_(table).select("*")
            if last_id is not None:
                query = query.gt(pk, last_id)
            fetched = await query.order(pk).limit(options.batch_size).execute()

            if fetched.error is not None:
                result.errors.append(f"Error fetching from {table}: {fetched.error.message}")
                skip_table = True
                break

            rows: list[dict[str, Any]] = fetched.data or []
            if not rows:
                break
            fetched_any = True

            if options.validate_data:
                valid = [row for row in rows if row.get(pk) is not None]
                if len(valid) != len(rows):
                    result.warnings.append(
                        f"Skipped {len(rows) - len(valid)} row(s) without {pk} in {table}"
                    )
                rows_to_write = valid
            else:
                rows_to_write = rows

            keys = [row[pk] for row in rows if row.get(pk) is not None]
            batch_last_id = keys[-1] if keys else None

            if transformations:
                rows_to_write = transformations.transform_batch(table, rows_to_write)

            if options.skip_existing and rows_to_write:
                candidate_keys = [row[pk] for row in rows_to_write if row.get(pk) is not None]
                existing = (
                    await _existing_keys(target, target_table, pk, candidate_keys)
                    if candidate_keys
                    else set()
                )
                if existing:
                    before = len(rows_to_write)
                    rows_to_write = [row for row in rows_to_write if row.get(pk) not in existing]
                    result.rows_skipped += before - len(rows_to_write)

            if options.dry_run:
                logger.debug(f"Dry run: would insert {len(rows_to_write)} rows into {target_table}")
                written = len(rows_to_write)
            elif rows_to_write:
                inserted = await target.from_(target_table).insert(rows_to_write).execute()
                if inserted.error is not None:
                    error = MigrationBatchError(target_table, inserted.error.message, table_rows)
                    result.errors.append(str(error))
                    if not options.skip_existing:
                        logger.error(f"Migration stopped: {error}")
                        aborted = True
                        break
                    logger.warning(f"Continuing after batch error: {error}")
                    written = 0
                else:
                    written = len(rows_to_write)
            else:
                written = 0

            table_rows += written
            result.rows_migrated += written
            await _notify(on_progress, table, table_rows, result.rows_migrated)

            if batch_last_id is None:
                result.warnings.append(f"Cannot page past rows without {pk} in {table}")
                break
            last_id = batch_last_id
            await _notify(
                on_checkpoint,
                MigrationCheckpoint(table, rows_processed=table_rows, last_processed_id=last_id),
            )
            if len(rows) < options.batch_size:
                break

        if aborted:
            break
        if skip_table:
            continue

        if not fetched_any and last_id is None:
            result.warnings.append(f"No data found in table: {table}")
        result.tables_processed += 1
        await _notify(
            on_checkpoint,
            MigrationCheckpoint(
                table, rows_processed=table_rows, last_processed_id=last_id, table_completed=True
            ),
        )
        logger.info(f"Completed migration for table {table}: {table_rows} rows")

    result.success = not result.errors
    result.duration = time.monotonic() - started
    logger.info(
        f"Migration finished: success={result.success}, rows={result.rows_migrated}, "
        f"skipped={result.rows_skipped}, errors={len(result.errors)}"
    )
    return result
