# mediaconv/sweeper.py
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .engine import JobEngine
from .errors import StorageIOError
from .storage import TransientStorage

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    files_deleted: int = 0
    jobs_removed: int = 0
    skipped_in_use: int = 0
    errors: int = 0


class RetentionSweeper:
    """Periodic age-based reclamation of transient files and job records.

    Files still held by a running conversion or an in-progress download are
    skipped. Job records are dropped by age whatever their status; the engine
    keeps its own reference to a running job, so the conversion still
    finishes.
    """

    def __init__(
        self,
        files: TransientStorage,
        engine: JobEngine,
        retention_sec: float,
        interval_sec: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._files = files
        self._engine = engine
        self._retention = retention_sec
        self._interval = interval_sec
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    def sweep_once(self) -> SweepReport:
        report = SweepReport()
        cutoff = self._clock() - self._retention

        for path in list(self._files.iter_files()):
            try:
                if path.stat().st_mtime > cutoff:
                    continue
                if self._files.is_in_use(path):
                    report.skipped_in_use += 1
                    continue
                if self._files.delete(path):
                    report.files_deleted += 1
            except FileNotFoundError:
                continue
            except (OSError, StorageIOError) as e:
                report.errors += 1
                logger.warning("sweep: could not delete %s: %s", path, e)

        for job in self._engine.jobs():
            try:
                if job.created_at > cutoff:
                    continue
                self._engine.remove(job.job_id)
                report.jobs_removed += 1
            except Exception as e:
                report.errors += 1
                logger.warning("sweep: could not remove job %s: %s", job.job_id, e)

        if report.files_deleted or report.jobs_removed or report.errors:
            logger.info(
                "sweep removed %d files, %d jobs (%d errors)",
                report.files_deleted,
                report.jobs_removed,
                report.errors,
            )
        return report

    async def run_forever(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                self.sweep_once()
            except Exception:
                logger.exception("sweep pass failed")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
