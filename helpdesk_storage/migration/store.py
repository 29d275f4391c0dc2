"""
Append-only persistence for migration job snapshots.

Each state change appends one JSON line; the newest line per job id wins.
Snapshots omit provider handles, so restoring a job means pairing its
snapshot with live providers again (``MigrationJobManager.restore_job``).
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from .types import MigrationJob

logger = logging.getLogger(__name__)


class JobStore:
    """JSONL file of job snapshots."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    async def append(self, job: MigrationJob) -> None:
        await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
        async with aiofiles.open(self.path, "a", encoding="utf-8") as f:
            await f.write(json.dumps(job.to_dict(), default=str) + "\n")

    async def read_all(self) -> list[dict[str, Any]]:
        """Every snapshot in write order. Corrupt lines are skipped."""
        if not await aiofiles.os.path.exists(self.path):
            return []

        snapshots: list[dict[str, Any]] = []
        async with aiofiles.open(self.path, encoding="utf-8") as f:
            line_number = 0
            async for line in f:
                line_number += 1
                line = line.strip()
                if not line:
                    continue
                try:
                    snapshots.append(json.loads(line))
                except json.JSONDecodeError as e:
                    logger.warning(f"Skipping corrupt job snapshot at line {line_number}: {e}")
        return snapshots

    async def load_latest(self) -> dict[str, dict[str, Any]]:
        """Newest snapshot per job id."""
        latest: dict[str, dict[str, Any]] = {}
        for snapshot in await self.read_all():
            latest[snapshot["id"]] = snapshot
        return latest

    async def _rewrite(self, snapshots: list[dict[str, Any]]) -> None:
        """Replace the file atomically (temp file + rename)."""
        await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".tmp_", suffix=".jsonl")
        os.close(fd)
        try:
            async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                for snapshot in snapshots:
                    await f.write(json.dumps(snapshot, default=str) + "\n")
            await aiofiles.os.rename(temp_path, self.path)
        except OSError:
            if await aiofiles.os.path.exists(temp_path):
                await aiofiles.os.remove(temp_path)
            raise

    async def compact(self) -> int:
        """Keep only the newest snapshot per job; returns the number of jobs kept."""
        latest = await self.load_latest()
        await self._rewrite(list(latest.values()))
        return len(latest)

    async def remove(self, job_id: str) -> None:
        latest = await self.load_latest()
        if latest.pop(job_id, None) is not None:
            await self._rewrite(list(latest.values()))
