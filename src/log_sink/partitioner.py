"""
Time partitioning for the log tree.

A partition is the hour (or day) an instant falls in, laid out on disk as
``YYYY/MM/DD/HH.log`` or ``YYYY/MM/DD.log``. Partitioning uses the wall-clock
fields of the instant it is given, so the caller chooses the time zone.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import PurePath, PurePosixPath
from typing import Literal, Optional

Granularity = Literal["hour", "day"]

LOG_SUFFIX = ".log"
COMPRESSED_SUFFIX = ".log.gz"


@dataclass(frozen=True, order=True)
class PartitionKey:
    year: int
    month: int
    day: int
    hour: Optional[int] = None  # None under day granularity

    def start(self, tzinfo=None) -> datetime:
        """First instant of the partition, in *tzinfo* (naive when None)."""
        return datetime(self.year, self.month, self.day, self.hour or 0, tzinfo=tzinfo)

    def __str__(self) -> str:
        base = f"{self.year:04d}-{self.month:02d}-{self.day:02d}"
        return base if self.hour is None else f"{base}T{self.hour:02d}"


class TimePartitioner:
    def __init__(self, granularity: Granularity = "hour"):
        if granularity not in ("hour", "day"):
            raise ValueError(f"unsupported rotation granularity {granularity!r}")
        self.granularity = granularity

    def partition_of(self, instant: datetime) -> PartitionKey:
        hour = instant.hour if self.granularity == "hour" else None
        return PartitionKey(instant.year, instant.month, instant.day, hour)

    @staticmethod
    def path_of(key: PartitionKey) -> PurePosixPath:
        """Relative path of the (uncompressed) file holding *key*."""
        day_dir = PurePosixPath(f"{key.year:04d}", f"{key.month:02d}")
        if key.hour is None:
            return day_dir / f"{key.day:02d}{LOG_SUFFIX}"
        return day_dir / f"{key.day:02d}" / f"{key.hour:02d}{LOG_SUFFIX}"

    @staticmethod
    def compressed_path_of(key: PartitionKey) -> PurePosixPath:
        path = TimePartitioner.path_of(key)
        return path.with_name(path.stem + COMPRESSED_SUFFIX)

    @staticmethod
    def key_from_path(relative: PurePath) -> Optional[PartitionKey]:
        """Inverse of :meth:`path_of`; accepts both leaf shapes and ``.log.gz``.

        Anything that is not a partition file yields ``None``.
        """
        parts = PurePosixPath(*PurePath(relative).parts).parts
        if not parts:
            return None
        leaf = parts[-1]
        if leaf.endswith(COMPRESSED_SUFFIX):
            stem = leaf[: -len(COMPRESSED_SUFFIX)]
        elif leaf.endswith(LOG_SUFFIX):
            stem = leaf[: -len(LOG_SUFFIX)]
        else:
            return None

        fields = list(parts[:-1]) + [stem]
        if len(fields) not in (3, 4):
            return None
        widths = (4, 2, 2, 2)
        if any(len(f) != w or not f.isdigit() for f, w in zip(fields, widths)):
            return None

        numbers = [int(f) for f in fields]
        hour = numbers[3] if len(numbers) == 4 else None
        try:
            datetime(numbers[0], numbers[1], numbers[2], hour or 0)
        except ValueError:
            return None
        return PartitionKey(numbers[0], numbers[1], numbers[2], hour)

    @staticmethod
    def is_older_than(key: PartitionKey, retention_days: int, reference: datetime) -> bool:
        """True when the partition started before ``reference - retention_days``."""
        cutoff = reference - timedelta(days=retention_days)
        return key.start(reference.tzinfo) < cutoff
