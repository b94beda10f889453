"""
Message decoding.

Each Kafka payload is expected to be ``{"l": "<LEVEL>", "S": "<content>"}``
(``"L"`` is accepted as an alias for ``"l"``). Decoding never fails: a
payload that does not fit the contract becomes a :class:`Fallback` carrying
the raw text, which is written at INFO. Dropping a log line is worse than
misformatting one.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError


class LogLevel(str, Enum):
    TRACE = "TRACE"
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    FATAL = "FATAL"

    @property
    def abbreviation(self) -> str:
        return self.value[0]

    @property
    def logging_level(self) -> int:
        return _STDLIB_LEVELS[self]

    @classmethod
    def parse(cls, token: str) -> Optional["LogLevel"]:
        try:
            return cls(token.strip().upper())
        except ValueError:
            return None


_STDLIB_LEVELS = {
    LogLevel.TRACE: logging.DEBUG,
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.FATAL: logging.CRITICAL,
}


class WireMessage(BaseModel):
    """Wire contract of one queue message."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    level: Optional[str] = Field(None, validation_alias=AliasChoices("l", "L"))
    content: Any = Field(None, validation_alias="S")


@dataclass(frozen=True)
class LogRecord:
    level: LogLevel
    content: str
    received_at: datetime


@dataclass(frozen=True)
class Parsed:
    level: LogLevel
    content: str


@dataclass(frozen=True)
class Fallback:
    raw: str


Decoded = Union[Parsed, Fallback]


def _raw_text(payload: bytes) -> str:
    return payload.decode("utf-8", errors="replace")


def _render_content(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def decode(payload: Optional[bytes]) -> Decoded:
    """Decode one payload. Total: every input maps to ``Parsed`` or ``Fallback``."""
    if payload is None:
        payload = b""
    elif isinstance(payload, str):
        payload = payload.encode("utf-8")

    try:
        message = WireMessage.model_validate_json(payload)
    except ValidationError:
        return Fallback(_raw_text(payload))

    level = LogLevel.parse(message.level) if message.level else None
    if level is None:
        return Fallback(_raw_text(payload))
    return Parsed(level, _render_content(message.content))


def to_record(decoded: Decoded, received_at: datetime) -> LogRecord:
    if isinstance(decoded, Parsed):
        return LogRecord(decoded.level, decoded.content, received_at)
    return LogRecord(LogLevel.INFO, decoded.raw, received_at)


def decode_record(payload: Optional[bytes], received_at: datetime) -> LogRecord:
    return to_record(decode(payload), received_at)
