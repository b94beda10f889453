from datetime import time
from pathlib import Path
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_PATH = Path("config.yaml")


class ConfigError(Exception):
    """Raised when the daemon configuration cannot be loaded or is invalid."""


def parse_cleanup_time(value) -> time:
    """Parse ``HH:MM`` or ``HH:MM:SS`` into a :class:`datetime.time`."""
    if isinstance(value, time):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        # YAML 1.1 reads an unquoted 1:30 as the sexagesimal integer 90
        raise ValueError("cleanup_time must be a quoted string such as '01:30'")
    if not isinstance(value, str):
        raise ValueError("cleanup_time must be a string in HH:MM or HH:MM:SS format")

    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError("cleanup_time must use HH:MM or HH:MM:SS format")
    try:
        numbers = [int(p) for p in parts]
    except ValueError:
        raise ValueError(f"cleanup_time has non-numeric fields: {value!r}") from None

    hour, minute = numbers[0], numbers[1]
    second = numbers[2] if len(numbers) == 3 else 0
    if not 0 <= hour <= 23:
        raise ValueError("cleanup_time hour must be between 0 and 23")
    if not 0 <= minute <= 59:
        raise ValueError("cleanup_time minute must be between 0 and 59")
    if not 0 <= second <= 59:
        raise ValueError("cleanup_time second must be between 0 and 59")
    return time(hour, minute, second)


class LoggingSettings(BaseModel):
    # --- daemon diagnostics ----------------------------------------------
    level: str = "INFO"

    # --- partition tree ---------------------------------------------------
    path: Path = Path("logs")
    rotate: Literal["hour", "day"] = "hour"
    retention_days: int = Field(7, ge=0)
    cleanup_time: time = time(1, 0)
    compress: bool = False
    utc: bool = False  # partition and timestamp in UTC instead of local time
    level_format: Literal["full", "abbrev"] = "full"
    echo: bool = False
    startup_banner: bool = False

    @field_validator("cleanup_time", mode="before")
    @classmethod
    def _parse_cleanup_time(cls, value):
        return parse_cleanup_time(value)

    @field_validator("level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        value = value.upper()
        if value == "WARN":
            value = "WARNING"
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {value!r}")
        return value


class KafkaSettings(BaseModel):
    enabled: bool = True
    brokers: List[str] = Field(default_factory=lambda: ["localhost:9092"])
    group_id: str = "log_sink"
    topics: List[str] = Field(default_factory=lambda: ["logs"])
    auto_offset_reset: Literal["earliest", "latest"] = "latest"
    session_timeout_ms: int = Field(10000, gt=0)
    heartbeat_interval_ms: int = Field(3000, gt=0)
    reconnect_interval_ms: int = Field(5000, ge=0)
    poll_timeout_ms: int = Field(1000, gt=0)
    max_poll_records: int = Field(500, gt=0)
    progress_log_every: int = Field(100, ge=0)

    @model_validator(mode="after")
    def _check_enabled(self):
        if self.enabled:
            if not self.brokers:
                raise ValueError("kafka.brokers must not be empty when kafka is enabled")
            if not self.topics:
                raise ValueError("kafka.topics must not be empty when kafka is enabled")
            if not self.group_id:
                raise ValueError("kafka.group_id must not be empty when kafka is enabled")
        if self.heartbeat_interval_ms >= self.session_timeout_ms:
            raise ValueError("kafka.heartbeat_interval_ms must be below session_timeout_ms")
        return self

    @property
    def bootstrap_servers(self) -> str:
        return ",".join(self.brokers)


class MetricsSettings(BaseModel):
    textfile: Optional[Path] = None  # node-exporter textfile collector target
    interval_seconds: float = Field(15.0, gt=0)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="LOG_SINK_", env_nested_delimiter="__", extra="ignore"
    )

    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    kafka: KafkaSettings = Field(default_factory=KafkaSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    shutdown_timeout_seconds: float = Field(10.0, gt=0)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # environment overrides the YAML document passed in as init kwargs
        return (env_settings, init_settings, file_secret_settings)


def read_config_file(path: Path) -> dict:
    """Read the YAML config document, returning an empty mapping for an empty file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"config file not found: {path}") from None
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"failed to read config file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping at the top level")
    return data


def load_settings(path: Optional[Path] = DEFAULT_CONFIG_PATH) -> Settings:
    """Load settings from *path* (if given) plus ``LOG_SINK_*`` environment variables."""
    data = read_config_file(Path(path)) if path is not None else {}
    try:
        return Settings(**data)
    except ValidationError as e:
        raise ConfigError(f"invalid configuration: {e}") from e
