"""
Log Sink Service - Kafka to partitioned log files

SERVICE PURPOSE:
    Standalone daemon that consumes log records from Kafka topics and
    persists them under <root>/YYYY/MM/DD/HH.log (or DD.log), with a daily
    retention sweep removing expired partitions.

INTERACTION PATTERNS:
    INPUT:  {"l": "<LEVEL>", "S": "<content>"} messages on kafka.topics
    OUTPUT: "[<timestamp>] [<LEVEL>] <content>" lines in partition files
    EVENTS: Pure consumer - no event publishing

EXIT CODES:
    0 normal shutdown, 1 unusable log root or task failure, 2 bad config
"""

import asyncio
import os
import signal
from pathlib import Path
from typing import Optional

from common.settings import ConfigError, Settings, load_settings
from common.structured_logging import get_logger, set_log_level

from .supervisor import Supervisor

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2


class StartupError(Exception):
    """The daemon cannot start with the given configuration."""


def check_log_root(root: Path) -> None:
    """Create the log root if needed and verify it is a writable directory."""
    try:
        root.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StartupError(f"cannot create log root {root}: {e}") from e
    if not root.is_dir():
        raise StartupError(f"log root {root} is not a directory")
    if not os.access(root, os.W_OK | os.X_OK):
        raise StartupError(f"log root {root} is not writable")


async def serve(settings: Settings, supervisor: Optional[Supervisor] = None) -> int:
    supervisor = supervisor or Supervisor(settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, supervisor.request_shutdown)
        except (NotImplementedError, RuntimeError):
            # not supported on this platform / not the main thread
            pass

    try:
        return await supervisor.run()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass


def main(config_path: Optional[Path] = None) -> int:
    try:
        settings = load_settings(config_path or Path("config.yaml"))
    except ConfigError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_CONFIG

    set_log_level(settings.logging.level)
    logger.info(
        "Starting log sink",
        extra={
            "path": str(settings.logging.path),
            "rotate": settings.logging.rotate,
            "retention_days": settings.logging.retention_days,
            "kafka_enabled": settings.kafka.enabled,
        },
    )

    try:
        check_log_root(settings.logging.path)
    except StartupError as e:
        logger.error("Startup failed", extra={"error": str(e)})
        return EXIT_FAILURE

    try:
        return asyncio.run(serve(settings))
    except KeyboardInterrupt:
        logger.info("Log sink interrupted by user")
        return EXIT_OK
