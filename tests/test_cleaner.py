import asyncio
from datetime import time

import pytest

from log_sink.cleaner import RetentionCleaner
from log_sink.decoder import LogLevel, LogRecord
from log_sink.partitioner import PartitionKey, TimePartitioner
from log_sink.writer import LogWriter
from factories import FixedClock, utc


def touch(root, relative, text="x\n"):
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


@pytest.fixture
def clock():
    return FixedClock(utc(2025, 12, 31, 1, 0))


@pytest.fixture
def writer(log_root, clock):
    w = LogWriter(log_root, TimePartitioner("hour"), clock=clock)
    yield w
    w.close()


@pytest.fixture
def cleaner(log_root, writer, clock):
    return RetentionCleaner(log_root, writer, retention_days=1, cleanup_time=time(1, 0), clock=clock)


@pytest.mark.asyncio
async def test_sweep_deletes_only_expired(cleaner, log_root):
    old = touch(log_root, "2025/12/29/10.log")
    old_gz = touch(log_root, "2025/12/29/11.log.gz")
    old_day = touch(log_root, "2025/12/28.log")
    recent = touch(log_root, "2025/12/30/23.log")
    stray = touch(log_root, "2025/12/29/notes.txt")

    result = await cleaner.sweep()

    assert sorted(result.deleted) == sorted([old, old_gz, old_day])
    assert not old.exists() and not old_gz.exists() and not old_day.exists()
    assert recent.exists()
    assert stray.exists()


@pytest.mark.asyncio
async def test_sweep_prunes_empty_directories(cleaner, log_root):
    touch(log_root, "2024/01/01/00.log")
    touch(log_root, "2024/01/01/01.log")
    await cleaner.sweep()
    assert not (log_root / "2024").exists()
    assert log_root.exists()


@pytest.mark.asyncio
async def test_sweep_keeps_non_empty_directories(cleaner, log_root):
    touch(log_root, "2025/12/29/00.log")
    keep = touch(log_root, "2025/12/29/README")
    await cleaner.sweep()
    assert keep.exists()


@pytest.mark.asyncio
async def test_second_sweep_deletes_nothing(cleaner, log_root):
    touch(log_root, "2025/12/01/00.log")
    first = await cleaner.sweep()
    second = await cleaner.sweep()
    assert len(first.deleted) == 1
    assert second.deleted == [] and second.failed == []


@pytest.mark.asyncio
async def test_active_partition_never_deleted(log_root, clock):
    clock.now = utc(2025, 12, 31, 1, 30)  # the open hour is itself past the cutoff
    writer = LogWriter(log_root, TimePartitioner("hour"), clock=clock)
    cleaner = RetentionCleaner(log_root, writer, retention_days=0, clock=clock)
    at = clock()
    active = await writer.write(LogRecord(LogLevel.INFO, "live", at), at)
    previous = touch(log_root, "2025/12/31/00.log")

    result = await cleaner.sweep()
    writer.close()

    assert active.exists()
    assert active in result.skipped
    assert previous in result.deleted


@pytest.mark.asyncio
async def test_busy_check_happens_per_deletion(log_root, clock, monkeypatch):
    """A rotation into an old partition mid-sweep protects that partition."""
    writer = LogWriter(log_root, TimePartitioner("hour"), clock=clock)
    cleaner = RetentionCleaner(log_root, writer, retention_days=1, clock=clock)
    first = touch(log_root, "2025/12/01/00.log")
    second = touch(log_root, "2025/12/02/00.log")

    original = cleaner._delete_one
    calls = []

    def delete_and_rotate(key, path, result):
        original(key, path, result)
        if not calls:
            # writer moves into the next candidate's partition between decisions
            writer._key = PartitionKey(2025, 12, 2, 0)
            writer._handle = open(second, "a")
        calls.append(key)

    monkeypatch.setattr(cleaner, "_delete_one", delete_and_rotate)
    result = await cleaner.sweep()
    writer.close()

    assert first in result.deleted
    assert second in result.skipped
    assert second.exists()


@pytest.mark.asyncio
async def test_failed_delete_is_skipped(cleaner, log_root, monkeypatch):
    bad = touch(log_root, "2025/12/01/00.log")
    good = touch(log_root, "2025/12/01/01.log")
    real_unlink = type(bad).unlink

    def unlink(self, *args, **kwargs):
        if self == bad:
            raise PermissionError("denied")
        return real_unlink(self, *args, **kwargs)

    monkeypatch.setattr(type(bad), "unlink", unlink)
    result = await cleaner.sweep()

    assert result.failed == [bad]
    assert result.deleted == [good]
    assert bad.exists()


@pytest.mark.asyncio
async def test_sweep_without_root(tmp_path, writer, clock):
    cleaner = RetentionCleaner(tmp_path / "missing", writer, retention_days=1, clock=clock)
    result = await cleaner.sweep()
    assert result.deleted == []


def test_schedule(cleaner, clock):
    before = utc(2025, 12, 31, 0, 30)
    assert not cleaner.is_due(before)
    assert cleaner.next_run(before) == utc(2025, 12, 31, 1, 0)

    after = utc(2025, 12, 31, 9, 0)
    assert cleaner.is_due(after)
    assert cleaner.next_run(after) == utc(2026, 1, 1, 1, 0)


def test_not_due_twice_same_day(cleaner):
    cleaner._last_sweep_date = utc(2025, 12, 31).date()
    assert not cleaner.is_due(utc(2025, 12, 31, 23, 0))
    assert cleaner.is_due(utc(2026, 1, 1, 1, 0))


@pytest.mark.asyncio
async def test_run_catches_up_on_start_and_stops(cleaner, log_root, clock):
    clock.now = utc(2025, 12, 31, 6, 0)  # started after today's cleanup time
    old = touch(log_root, "2025/12/01/00.log")

    task = asyncio.create_task(cleaner.run())
    for _ in range(200):
        if not old.exists():
            break
        await asyncio.sleep(0.01)
    assert not old.exists()

    cleaner.stop()
    await asyncio.wait_for(task, timeout=1)


@pytest.mark.asyncio
async def test_run_sweeps_once_per_day(cleaner, clock, monkeypatch):
    clock.now = utc(2025, 12, 31, 6, 0)
    sweeps = []

    async def fake_sweep(now=None):
        sweeps.append(now)

    monkeypatch.setattr(cleaner, "sweep", fake_sweep)
    monkeypatch.setattr("log_sink.cleaner.MAX_SLEEP_SECONDS", 0.01)

    task = asyncio.create_task(cleaner.run())
    await asyncio.sleep(0.1)
    assert len(sweeps) == 1

    clock.advance(days=1)
    await asyncio.sleep(0.1)
    assert len(sweeps) == 2

    cleaner.stop()
    await asyncio.wait_for(task, timeout=1)


def test_rejects_negative_retention(log_root, writer):
    with pytest.raises(ValueError):
        RetentionCleaner(log_root, writer, retention_days=-1)
