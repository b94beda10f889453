from datetime import time
from pathlib import Path

import pytest

from common.settings import ConfigError, Settings, load_settings, parse_cleanup_time

CONFIG = """
logging:
  level: debug
  path: /var/log/sink
  rotate: day
  retention_days: 3
  cleanup_time: "02:30"
  compress: true
kafka:
  enabled: true
  brokers: ["k1:9092", "k2:9092"]
  group_id: sink
  topics: [app_logs]
  auto_offset_reset: earliest
  session_timeout_ms: 30000
  heartbeat_interval_ms: 5000
  reconnect_interval_ms: 2000
"""


def write_config(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_load_settings_from_yaml(tmp_path):
    settings = load_settings(write_config(tmp_path, CONFIG))
    assert settings.logging.level == "DEBUG"
    assert settings.logging.path == Path("/var/log/sink")
    assert settings.logging.rotate == "day"
    assert settings.logging.retention_days == 3
    assert settings.logging.cleanup_time == time(2, 30)
    assert settings.logging.compress is True
    assert settings.kafka.brokers == ["k1:9092", "k2:9092"]
    assert settings.kafka.bootstrap_servers == "k1:9092,k2:9092"
    assert settings.kafka.auto_offset_reset == "earliest"
    assert settings.kafka.reconnect_interval_ms == 2000


def test_defaults():
    settings = Settings()
    assert settings.logging.path == Path("logs")
    assert settings.logging.rotate == "hour"
    assert settings.logging.cleanup_time == time(1, 0)
    assert settings.kafka.enabled is True
    assert settings.metrics.textfile is None


def test_environment_overrides_file(tmp_path, monkeypatch):
    monkeypatch.setenv("LOG_SINK_KAFKA__ENABLED", "false")
    monkeypatch.setenv("LOG_SINK_LOGGING__RETENTION_DAYS", "30")
    settings = load_settings(write_config(tmp_path, CONFIG))
    assert settings.kafka.enabled is False
    assert settings.logging.retention_days == 30
    assert settings.logging.rotate == "day"


@pytest.mark.parametrize(
    "value,expected",
    [("01:00", time(1, 0)), ("23:59:59", time(23, 59, 59)), (" 7:05 ", time(7, 5))],
)
def test_parse_cleanup_time(value, expected):
    assert parse_cleanup_time(value) == expected


@pytest.mark.parametrize("value", ["24:00", "12:60", "12:00:60", "noon", "1", "1:2:3:4", 60])
def test_parse_cleanup_time_rejects(value):
    with pytest.raises(ValueError):
        parse_cleanup_time(value)


def test_unquoted_yaml_time_is_rejected(tmp_path):
    path = write_config(tmp_path, "logging:\n  cleanup_time: 1:30\n")
    with pytest.raises(ConfigError):
        load_settings(path)


@pytest.mark.parametrize(
    "text",
    [
        "logging:\n  rotate: minute\n",
        "logging:\n  retention_days: -1\n",
        "kafka:\n  enabled: true\n  brokers: []\n",
        "kafka:\n  enabled: true\n  topics: []\n",
        "kafka:\n  enabled: true\n  group_id: ''\n",
        "kafka:\n  auto_offset_reset: middle\n",
        "kafka:\n  heartbeat_interval_ms: 20000\n  session_timeout_ms: 10000\n",
    ],
)
def test_invalid_config(tmp_path, text):
    with pytest.raises(ConfigError):
        load_settings(write_config(tmp_path, text))


def test_kafka_disabled_allows_empty_topics(tmp_path):
    settings = load_settings(write_config(tmp_path, "kafka:\n  enabled: false\n  topics: []\n"))
    assert settings.kafka.topics == []


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_settings(tmp_path / "nope.yaml")


def test_empty_file_uses_defaults(tmp_path):
    settings = load_settings(write_config(tmp_path, ""))
    assert settings.logging.retention_days == 7


def test_non_mapping_file(tmp_path):
    with pytest.raises(ConfigError):
        load_settings(write_config(tmp_path, "- a\n- b\n"))
