"""
Shared Kafka utilities for the log sink.

The consumer is created inside the running event loop (aiokafka binds to the
loop it was constructed in), so callers receive a factory rather than an
instance.
"""

from typing import Callable

from aiokafka import AIOKafkaConsumer

from .settings import KafkaSettings
from .structured_logging import get_logger

logger = get_logger(__name__)

ConsumerFactory = Callable[[], AIOKafkaConsumer]

__all__ = ["ConsumerFactory", "build_consumer", "consumer_factory"]


def build_consumer(kafka: KafkaSettings) -> AIOKafkaConsumer:
    """Create an unstarted consumer subscribed to every configured topic.

    Offsets are committed manually after each successful write, so
    auto-commit is always off.
    """
    consumer = AIOKafkaConsumer(
        *kafka.topics,
        bootstrap_servers=kafka.brokers,
        group_id=kafka.group_id,
        auto_offset_reset=kafka.auto_offset_reset,
        enable_auto_commit=False,
        session_timeout_ms=kafka.session_timeout_ms,
        heartbeat_interval_ms=kafka.heartbeat_interval_ms,
        max_poll_records=kafka.max_poll_records,
    )
    logger.debug(
        "Created Kafka consumer",
        extra={
            "bootstrap_servers": kafka.bootstrap_servers,
            "group_id": kafka.group_id,
            "topics": kafka.topics,
        },
    )
    return consumer


def consumer_factory(kafka: KafkaSettings) -> ConsumerFactory:
    """Return a zero-argument factory building consumers from *kafka*."""

    def _factory() -> AIOKafkaConsumer:
        return build_consumer(kafka)

    return _factory
