import os, sys, json, logging, time

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
SERVICE_NAME = os.getenv("SERVICE_NAME") or "log_sink"

_configured_level: str | None = None


class JsonFormatter(logging.Formatter):
    """One JSON object per line; extras passed via ``extra=`` are merged in."""

    _builtin_keys = set(logging.LogRecord(None, 0, "", 0, "", (), None, None).__dict__.keys())

    def format(self, record):
        payload = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "service": SERVICE_NAME,
            "level": record.levelname,
            "event": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in self._builtin_keys and key not in payload:
                payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


class PerformanceLogger:
    """Context manager for performance logging."""

    def __init__(self, logger: logging.Logger, operation: str, **context):
        self.logger = logger
        self.operation = operation
        self.context = context
        self.start_time = None

    def __enter__(self):
        self.start_time = time.time()
        self.logger.info(f"Starting {self.operation}", extra={
            "operation": self.operation,
            "phase": "start",
            **self.context
        })
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.time() - self.start_time
        level = logging.ERROR if exc_type else logging.INFO
        status = "error" if exc_type else "success"

        self.logger.log(level, f"Completed {self.operation}", extra={
            "operation": self.operation,
            "phase": "complete",
            "duration_seconds": round(duration, 3),
            "status": status,
            "error_type": exc_type.__name__ if exc_type else None,
            **self.context
        })


def _effective_level() -> int:
    return getattr(logging, _configured_level or LOG_LEVEL, logging.INFO)


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a JSON-logging logger writing to stdout."""
    logger = logging.getLogger(name or SERVICE_NAME)
    logger.setLevel(_effective_level())

    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        ch = logging.StreamHandler(sys.stdout)
        ch.setFormatter(JsonFormatter())
        logger.addHandler(ch)

    logger.propagate = False
    return logger


def set_log_level(level: str) -> None:
    """Apply the configured level to every logger created through :func:`get_logger`.

    ``LOG_LEVEL`` from the environment still wins so operators can raise
    verbosity without editing the config file.
    """
    global _configured_level
    if "LOG_LEVEL" in os.environ:
        return
    _configured_level = level.upper()
    for logger in list(logging.Logger.manager.loggerDict.values()):
        if isinstance(logger, logging.Logger) and any(
            isinstance(h.formatter, JsonFormatter) for h in logger.handlers
        ):
            logger.setLevel(_effective_level())
