import json
import logging

from common.structured_logging import PerformanceLogger, get_logger, set_log_level


def test_get_logger_json_formatting(capsys):
    logger = get_logger("test_logger")
    logger.info("hello world", extra={"path": "logs/2025/12/31/20.log"})
    captured = capsys.readouterr()
    data = json.loads(captured.out.strip())
    assert data["event"] == "hello world"
    assert data["level"] == "INFO"
    assert data["logger"] == "test_logger"
    assert data["path"] == "logs/2025/12/31/20.log"


def test_exception_is_included(capsys):
    logger = get_logger("test_logger_exc")
    try:
        raise OSError("disk full")
    except OSError:
        logger.error("write failed", exc_info=True)
    data = json.loads(capsys.readouterr().out.strip())
    assert "OSError: disk full" in data["exc_info"]


def test_performance_logger(capsys):
    logger = get_logger("test_logger_perf")
    with PerformanceLogger(logger, "retention_sweep", retention_days=3):
        pass
    start, end = [json.loads(line) for line in capsys.readouterr().out.strip().splitlines()]
    assert start["phase"] == "start"
    assert end["phase"] == "complete"
    assert end["status"] == "success"
    assert end["retention_days"] == 3


def test_set_log_level(monkeypatch):
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    logger = get_logger("test_logger_level")
    set_log_level("ERROR")
    try:
        assert logger.level == logging.ERROR
        assert get_logger("test_logger_level_new").level == logging.ERROR
    finally:
        set_log_level("INFO")
