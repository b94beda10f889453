"""
Retention cleaner.

Once per calendar day, at ``cleanup_time``, removes partition files older
than ``retention_days``. Partitions are discovered from the directory tree,
not from memory, so files left by earlier runs (or written under another
rotation granularity) are covered too.

The directory scan runs in a worker thread. The busy check and the unlink
for each candidate run back to back on the event-loop thread, the same
thread that performs every rotation, so the writer cannot open a partition
between the decision and the deletion.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from pathlib import Path
from typing import List, Optional, Tuple

from common.metrics import PARTITIONS_DELETED_TOTAL, SWEEPS_TOTAL
from common.structured_logging import PerformanceLogger, get_logger

from .partitioner import PartitionKey, TimePartitioner
from .writer import Clock, LogWriter, local_now

logger = get_logger(__name__)

# upper bound on one scheduler sleep so clock jumps and DST shifts are noticed
MAX_SLEEP_SECONDS = 3600.0


@dataclass
class SweepResult:
    deleted: List[Path] = field(default_factory=list)
    skipped: List[Path] = field(default_factory=list)
    failed: List[Path] = field(default_factory=list)


class RetentionCleaner:
    def __init__(
        self,
        root: Path,
        writer: LogWriter,
        *,
        retention_days: int,
        cleanup_time: time = time(1, 0),
        clock: Clock = local_now,
    ):
        if retention_days < 0:
            raise ValueError("retention_days must be >= 0")
        self.root = Path(root)
        self.writer = writer
        self.partitioner = TimePartitioner()  # only the path helpers are used
        self.retention_days = retention_days
        self.cleanup_time = cleanup_time
        self._clock = clock
        self._last_sweep_date: Optional[date] = None
        self._stop_event = asyncio.Event()

    # ------------------------------------------------------------------
    # scheduling
    # ------------------------------------------------------------------
    def _target(self, day: date, tzinfo) -> datetime:
        return datetime.combine(day, self.cleanup_time, tzinfo=tzinfo)

    def is_due(self, now: datetime) -> bool:
        """Past today's cleanup time and no sweep has run today."""
        return now >= self._target(now.date(), now.tzinfo) and self._last_sweep_date != now.date()

    def next_run(self, now: datetime) -> datetime:
        today = self._target(now.date(), now.tzinfo)
        if now < today:
            return today
        return self._target(now.date() + timedelta(days=1), now.tzinfo)

    async def run(self) -> None:
        """Scheduler loop; returns once :meth:`stop` is called."""
        logger.info(
            "Starting retention cleaner",
            extra={
                "retention_days": self.retention_days,
                "cleanup_time": self.cleanup_time.isoformat(),
                "root": str(self.root),
            },
        )
        while not self._stop_event.is_set():
            now = self._clock()
            if self.is_due(now):
                self._last_sweep_date = now.date()
                try:
                    await self.sweep(now)
                except Exception:
                    SWEEPS_TOTAL.labels(status="error").inc()
                    logger.error("Retention sweep failed", exc_info=True)
                continue

            wake_at = self.next_run(now)
            delay = min(max((wake_at - now).total_seconds(), 0.0), MAX_SLEEP_SECONDS)
            logger.debug("Next retention sweep scheduled", extra={"next_run": wake_at.isoformat()})
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        logger.info("Retention cleaner stopped")

    def stop(self) -> None:
        self._stop_event.set()

    # ------------------------------------------------------------------
    # sweeping
    # ------------------------------------------------------------------
    def scan(self) -> List[Tuple[PartitionKey, Path]]:
        """Every partition file under the root, in path order."""
        found = []
        if not self.root.is_dir():
            return found
        for dirpath, _dirnames, filenames in os.walk(self.root):
            for name in filenames:
                path = Path(dirpath) / name
                key = self.partitioner.key_from_path(path.relative_to(self.root))
                if key is not None:
                    found.append((key, path))
        found.sort(key=lambda item: item[1])
        return found

    async def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or self._clock()
        result = SweepResult()

        with PerformanceLogger(logger, "retention_sweep", retention_days=self.retention_days):
            candidates = await asyncio.to_thread(self.scan)
            for key, path in candidates:
                if self._stop_event.is_set():
                    logger.info("Retention sweep abandoned for shutdown")
                    break
                if not self.partitioner.is_older_than(key, self.retention_days, now):
                    continue
                self._delete_one(key, path, result)

            self._prune_dirs(result.deleted)

        SWEEPS_TOTAL.labels(status="success").inc()
        logger.info(
            "Retention sweep finished",
            extra={
                "deleted": len(result.deleted),
                "skipped": len(result.skipped),
                "failed": len(result.failed),
            },
        )
        return result

    def _delete_one(self, key: PartitionKey, path: Path, result: SweepResult) -> None:
        # no await between the check and the unlink
        if self.writer.is_busy(key):
            result.skipped.append(path)
            PARTITIONS_DELETED_TOTAL.labels(status="skipped").inc()
            logger.info("Skipping active partition", extra={"path": str(path), "partition": str(key)})
            return
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError:
            result.failed.append(path)
            PARTITIONS_DELETED_TOTAL.labels(status="error").inc()
            logger.warning("Failed to delete expired partition", exc_info=True, extra={"path": str(path)})
            return
        result.deleted.append(path)
        PARTITIONS_DELETED_TOTAL.labels(status="deleted").inc()
        logger.info("Deleted expired partition", extra={"path": str(path), "partition": str(key)})

    def _prune_dirs(self, deleted: List[Path]) -> None:
        """Remove directories emptied by the sweep, up to (not including) the root."""
        parents = sorted({p.parent for p in deleted}, key=lambda p: len(p.parts), reverse=True)
        for directory in parents:
            current = directory
            while current != self.root and self.root in current.parents:
                try:
                    current.rmdir()
                except OSError:
                    break  # not empty, or already gone
                logger.debug("Removed empty directory", extra={"path": str(current)})
                current = current.parent
