"""
Partitioned log writer.

Owns the single file open for append. Only the ingestion task calls
:meth:`LogWriter.write`; the retention cleaner goes through
:meth:`LogWriter.active_partition` / :meth:`LogWriter.is_busy` and never
touches the handle.
"""

from __future__ import annotations

import asyncio
import gzip
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Set, TextIO, Tuple

from common.metrics import COMPRESSIONS_TOTAL, RECORDS_WRITTEN_TOTAL, ROTATIONS_TOTAL
from common.structured_logging import get_logger

from .decoder import LogLevel, LogRecord
from .partitioner import LOG_SUFFIX, PartitionKey, TimePartitioner

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def local_now() -> datetime:
    return datetime.now().astimezone()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(at: datetime) -> str:
    """Second-precision ISO-8601; UTC renders with a ``Z`` suffix."""
    text = at.isoformat(timespec="seconds")
    if text.endswith("+00:00"):
        text = text[:-6] + "Z"
    return text


def format_line(record: LogRecord, at: datetime, abbreviate: bool = False) -> str:
    level = record.level.abbreviation if abbreviate else record.level.value
    return f"[{format_timestamp(at)}] [{level}] {record.content}\n"


def compress_file(path: Path, target: Path) -> Path:
    """Gzip *path* into *target* and remove the plain file.

    An existing archive is extended with an additional gzip member, which
    standard readers decompress as one stream.
    """
    with open(path, "rb") as src, gzip.open(target, "ab") as dst:
        shutil.copyfileobj(src, dst)
    path.unlink()
    return target


class LogWriter:
    def __init__(
        self,
        root: Path,
        partitioner: TimePartitioner,
        *,
        compress: bool = False,
        abbreviate_levels: bool = False,
        clock: Clock = local_now,
    ):
        self.root = Path(root)
        self.partitioner = partitioner
        self.compress = compress
        self.abbreviate_levels = abbreviate_levels
        self._clock = clock
        self._handle: Optional[TextIO] = None
        self._key: Optional[PartitionKey] = None
        self._path: Optional[Path] = None
        self._compressing: Set[PartitionKey] = set()

    # ------------------------------------------------------------------
    # read-only accessors (safe from any task)
    # ------------------------------------------------------------------
    def active_partition(self) -> PartitionKey:
        """Partition of the open file, or of "now" when idle."""
        key = self._key
        if key is not None and self._handle is not None:
            return key
        return self.partitioner.partition_of(self._clock())

    def is_busy(self, key: PartitionKey) -> bool:
        """True if *key* is open for append or its rotated file is being compressed."""
        return key == self.active_partition() or key in self._compressing

    @property
    def current_path(self) -> Optional[Path]:
        return self._path if self._handle is not None else None

    # ------------------------------------------------------------------
    # ingestion side
    # ------------------------------------------------------------------
    async def write(self, record: LogRecord, at: Optional[datetime] = None) -> Path:
        """Append *record* to the partition of *at* and flush.

        Raises ``OSError`` on any filesystem failure; the caller decides
        whether to retry.
        """
        at = at or record.received_at
        key = self.partitioner.partition_of(at)

        if self._handle is not None and key != self._key:
            await self._rotate_away()
        if self._handle is not None and self._was_unlinked():
            logger.warning(
                "Active log file was removed, reopening", extra={"path": str(self._path)}
            )
            self._release()
        if self._handle is None:
            self._open(key)

        self._handle.write(format_line(record, at, self.abbreviate_levels))
        self._handle.flush()
        RECORDS_WRITTEN_TOTAL.labels(level=record.level.value).inc()
        return self._path

    def close(self) -> None:
        """Flush and release the open file. Safe to call repeatedly."""
        if self._handle is None:
            return
        path = self._path
        self._release()
        logger.info("Closed log file", extra={"path": str(path)})

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------
    def _open(self, key: PartitionKey) -> None:
        relative = self.partitioner.path_of(key)
        self._ensure_dirs(relative.parent)
        path = self.root.joinpath(*relative.parts)
        self._handle = open(path, "a", encoding="utf-8", newline="\n")
        self._key = key
        self._path = path
        logger.info("Opened log file", extra={"path": str(path), "partition": str(key)})

    def _ensure_dirs(self, relative_dir) -> None:
        # the root itself must exist: a vanished root is a write failure,
        # not something to silently recreate
        current = self.root
        if not current.is_dir():
            raise FileNotFoundError(f"log root does not exist: {current}")
        for part in relative_dir.parts:
            current = current / part
            current.mkdir(exist_ok=True)

    def _was_unlinked(self) -> bool:
        try:
            return os.fstat(self._handle.fileno()).st_nlink == 0
        except OSError:
            return True

    def _release(self) -> None:
        handle = self._handle
        self._handle = None
        try:
            handle.flush()
        finally:
            handle.close()

    async def _rotate_away(self) -> None:
        old_key, old_path = self._key, self._path
        self._release()
        ROTATIONS_TOTAL.inc()
        logger.info("Rotated log file", extra={"path": str(old_path), "partition": str(old_key)})
        if self.compress:
            await self._compress(old_key, old_path)

    async def _compress(self, key: PartitionKey, path: Path) -> None:
        target = self.root.joinpath(*self.partitioner.compressed_path_of(key).parts)
        self._compressing.add(key)
        try:
            await asyncio.to_thread(compress_file, path, target)
        except OSError:
            # the plain file stays in place and is still covered by retention
            COMPRESSIONS_TOTAL.labels(status="error").inc()
            logger.error("Failed to compress rotated log file", exc_info=True, extra={"path": str(path)})
        else:
            COMPRESSIONS_TOTAL.labels(status="success").inc()
            logger.info("Compressed rotated log file", extra={"path": str(target)})
        finally:
            self._compressing.discard(key)

    def _plain_partitions(self) -> List[Tuple[PartitionKey, Path]]:
        found = []
        if not self.root.is_dir():
            return found
        for path in sorted(self.root.rglob("*" + LOG_SUFFIX)):
            key = self.partitioner.key_from_path(path.relative_to(self.root))
            if key is not None and path.is_file():
                found.append((key, path))
        return found

    async def compress_stale(self) -> List[Path]:
        """Compress plain partition files left behind by an earlier run.

        A file still open at shutdown is never rotated away, so without this
        pass it would stay uncompressed. The active partition is skipped.
        Returns the plain files that were handed to compression.
        """
        if not self.compress:
            return []
        handled = []
        for key, path in await asyncio.to_thread(self._plain_partitions):
            if self.is_busy(key):
                continue
            await self._compress(key, path)
            handled.append(path)
        if handled:
            logger.info("Compressed leftover log files", extra={"files": len(handled)})
        return handled

    async def write_banner(self, lines, at: Optional[datetime] = None) -> Optional[Path]:
        """Append start-up lines to the current partition at INFO."""
        at = at or self._clock()
        path = None
        for text in lines:
            path = await self.write(LogRecord(LogLevel.INFO, text, at), at)
        return path
