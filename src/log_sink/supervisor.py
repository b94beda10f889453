"""
Supervisor: runs ingestion and retention as independent asyncio tasks around
a single shared :class:`LogWriter`, and shuts both down within a deadline.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Dict, List, Optional

from common.kafka_utils import ConsumerFactory, consumer_factory
from common.metrics import export_textfile
from common.settings import Settings
from common.structured_logging import get_logger

from .cleaner import RetentionCleaner
from .consumer import StreamConsumer
from .partitioner import TimePartitioner
from .writer import LogWriter, local_now, utc_now

logger = get_logger(__name__)


class Supervisor:
    def __init__(
        self,
        settings: Settings,
        *,
        client_factory: Optional[ConsumerFactory] = None,
        clock=None,
    ):
        self.settings = settings
        log_cfg = settings.logging
        clock = clock or (utc_now if log_cfg.utc else local_now)
        self._clock = clock

        self.writer = LogWriter(
            log_cfg.path,
            TimePartitioner(log_cfg.rotate),
            compress=log_cfg.compress,
            abbreviate_levels=log_cfg.level_format == "abbrev",
            clock=clock,
        )
        self.cleaner = RetentionCleaner(
            log_cfg.path,
            self.writer,
            retention_days=log_cfg.retention_days,
            cleanup_time=log_cfg.cleanup_time,
            clock=clock,
        )
        self.consumer: Optional[StreamConsumer] = None
        if settings.kafka.enabled:
            self.consumer = StreamConsumer(
                settings.kafka,
                self.writer,
                client_factory or consumer_factory(settings.kafka),
                clock=clock,
                echo=log_cfg.echo,
            )

        self._shutdown = asyncio.Event()
        self.errors: List[BaseException] = []

    def request_shutdown(self) -> None:
        if not self._shutdown.is_set():
            logger.info("Shutdown requested")
        self._shutdown.set()

    async def run(self) -> int:
        """Run until shutdown is requested or every task has ended. Returns an exit code."""
        try:
            await self.writer.compress_stale()
        except OSError:
            logger.warning("Failed to scan for leftover log files", exc_info=True)
        if self.settings.logging.startup_banner:
            await self._write_banner()

        tasks: Dict[asyncio.Task, str] = {
            asyncio.create_task(self.cleaner.run(), name="retention"): "retention",
        }
        if self.consumer is not None:
            tasks[asyncio.create_task(self.consumer.run(), name="ingestion")] = "ingestion"
        else:
            logger.warning("Kafka disabled, running retention only")
        if self.settings.metrics.textfile is not None:
            tasks[asyncio.create_task(self._export_metrics(), name="metrics")] = "metrics"

        shutdown_waiter = asyncio.create_task(self._shutdown.wait())
        pending = set(tasks)
        try:
            while pending and not self._shutdown.is_set():
                done, _ = await asyncio.wait(
                    pending | {shutdown_waiter}, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    if task is shutdown_waiter:
                        continue
                    pending.discard(task)
                    self._record_exit(tasks[task], task)
        finally:
            shutdown_waiter.cancel()
            await self._stop(pending)

        if self.errors:
            return 1
        return 0

    def _record_exit(self, name: str, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning("Task cancelled", extra={"task": name})
            return
        exc = task.exception()
        if exc is not None:
            self.errors.append(exc)
            logger.error(
                "Task failed", extra={"task": name}, exc_info=(type(exc), exc, exc.__traceback__)
            )
        elif not self._shutdown.is_set():
            logger.warning("Task ended before shutdown", extra={"task": name})

    async def _stop(self, pending) -> None:
        if self.consumer is not None:
            self.consumer.stop()
        self.cleaner.stop()
        for task in pending:
            if task.get_name() == "metrics":
                task.cancel()

        if pending:
            timeout = self.settings.shutdown_timeout_seconds
            _, still_running = await asyncio.wait(pending, timeout=timeout)
            for task in still_running:
                logger.warning("Task did not stop within deadline, cancelling", extra={"task": task.get_name()})
                task.cancel()
            if still_running:
                # cleanup in a cancelled task may itself block on the network
                await asyncio.wait(still_running, timeout=timeout)
            for task in pending - still_running:
                if not task.cancelled() and task.exception() is not None:
                    self.errors.append(task.exception())
                    logger.error("Task failed during shutdown", extra={"task": task.get_name()})

        self.writer.close()
        if self.settings.metrics.textfile is not None:
            self._export_once()
        logger.info("Log sink stopped")

    async def _export_metrics(self) -> None:
        interval = self.settings.metrics.interval_seconds
        while True:
            self._export_once()
            await asyncio.sleep(interval)

    def _export_once(self) -> None:
        path = Path(self.settings.metrics.textfile)
        try:
            export_textfile(path)
        except OSError:
            logger.warning("Failed to export metrics", exc_info=True, extra={"path": str(path)})

    async def _write_banner(self) -> None:
        log_cfg = self.settings.logging
        try:
            path = await self.writer.write_banner(
                [
                    "log sink started",
                    f"log directory: {log_cfg.path}",
                    f"rotation: {log_cfg.rotate}, retention days: {log_cfg.retention_days}",
                ]
            )
        except OSError:
            logger.warning("Failed to write start-up banner", exc_info=True)
            return
        logger.info("Wrote start-up banner", extra={"path": str(path)})
