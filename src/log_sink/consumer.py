"""
Kafka stream consumer with a fixed-interval reconnect state machine.

    DISCONNECTED --start--> CONNECTING --success--> CONNECTED
    CONNECTING --failure--> BACKOFF --interval--> CONNECTING
    CONNECTED --error--> BACKOFF
    any live state --shutdown--> CLOSED

Delivery is at-least-once: an offset is committed only after the record it
belongs to has been written and flushed. A write failure leaves the message
uncommitted and drops the connection, so the broker redelivers it once the
consumer reconnects.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Dict, List, Optional

from common.kafka_utils import ConsumerFactory
from common.metrics import CONSUMER_STATE, MESSAGES_CONSUMED_TOTAL, WRITE_FAILURES_TOTAL
from common.settings import KafkaSettings
from common.structured_logging import get_logger

from .decoder import decode_record
from .writer import Clock, LogWriter, format_line, local_now

logger = get_logger(__name__)
echo_logger = get_logger("log_sink.echo")


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    BACKOFF = "backoff"
    CLOSED = "closed"


TRANSITIONS = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING, ConnectionState.CLOSED},
    ConnectionState.CONNECTING: {
        ConnectionState.CONNECTED,
        ConnectionState.BACKOFF,
        ConnectionState.CLOSED,
    },
    ConnectionState.CONNECTED: {ConnectionState.BACKOFF, ConnectionState.CLOSED},
    ConnectionState.BACKOFF: {ConnectionState.CONNECTING, ConnectionState.CLOSED},
    ConnectionState.CLOSED: set(),
}


class InvalidTransition(RuntimeError):
    """Raised on a state change the connection state machine does not allow."""


class WriteFailed(Exception):
    """A record could not be persisted; its offset was not committed."""


class StreamConsumer:
    def __init__(
        self,
        kafka: KafkaSettings,
        writer: LogWriter,
        client_factory: ConsumerFactory,
        *,
        clock: Clock = local_now,
        echo: bool = False,
    ):
        self.kafka = kafka
        self.writer = writer
        self._client_factory = client_factory
        self._clock = clock
        self.echo = echo
        self._client: Any = None
        self._stop_event = asyncio.Event()
        self.state = ConnectionState.DISCONNECTED
        self.history: List[ConnectionState] = [self.state]
        self.message_count = 0
        self.consecutive_write_failures = 0
        CONSUMER_STATE.labels(state=self.state.value).set(1)

    @property
    def reconnect_interval(self) -> float:
        return self.kafka.reconnect_interval_ms / 1000.0

    def transition(self, new_state: ConnectionState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {new_state.value}")
        logger.debug(
            "Kafka consumer state change",
            extra={"from_state": self.state.value, "to_state": new_state.value},
        )
        CONSUMER_STATE.labels(state=self.state.value).set(0)
        CONSUMER_STATE.labels(state=new_state.value).set(1)
        self.state = new_state
        self.history.append(new_state)

    def stop(self) -> None:
        """Request shutdown; wakes a pending backoff wait immediately."""
        self._stop_event.set()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    # ------------------------------------------------------------------
    # main loop
    # ------------------------------------------------------------------
    async def run(self) -> None:
        logger.info(
            "Starting Kafka consumer",
            extra={
                "bootstrap_servers": self.kafka.bootstrap_servers,
                "group_id": self.kafka.group_id,
                "topics": self.kafka.topics,
                "reconnect_interval_ms": self.kafka.reconnect_interval_ms,
            },
        )
        try:
            while not self.stopping:
                if self.state in (ConnectionState.DISCONNECTED, ConnectionState.BACKOFF):
                    self.transition(ConnectionState.CONNECTING)
                    if not await self._connect():
                        self.transition(ConnectionState.BACKOFF)
                        await self._backoff()
                        continue
                    self.transition(ConnectionState.CONNECTED)

                try:
                    await self._consume()
                except asyncio.CancelledError:
                    raise
                except WriteFailed:
                    self._enter_backoff()
                    await self._backoff()
                except Exception:
                    logger.error("Kafka consumer error", exc_info=True)
                    self._enter_backoff()
                    await self._backoff()
        finally:
            await self._disconnect()
            if self.state is not ConnectionState.CLOSED:
                self.transition(ConnectionState.CLOSED)
            logger.info("Kafka consumer closed", extra={"messages": self.message_count})

    async def _connect(self) -> bool:
        client = self._client_factory()
        try:
            await client.start()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "Failed to connect to Kafka",
                extra={"bootstrap_servers": self.kafka.bootstrap_servers, "error": str(e)},
            )
            await self._stop_client(client)
            return False
        self._client = client
        logger.info("Connected to Kafka", extra={"bootstrap_servers": self.kafka.bootstrap_servers})
        return True

    def _enter_backoff(self) -> None:
        self.transition(ConnectionState.BACKOFF)

    async def _backoff(self) -> None:
        await self._disconnect()
        if self.stopping:
            return
        logger.info(
            "Reconnecting to Kafka after backoff",
            extra={"reconnect_interval_ms": self.kafka.reconnect_interval_ms},
        )
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.reconnect_interval)
        except asyncio.TimeoutError:
            pass

    async def _disconnect(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await self._stop_client(client)

    @staticmethod
    async def _stop_client(client) -> None:
        try:
            await client.stop()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("Error stopping Kafka client", exc_info=True)

    # ------------------------------------------------------------------
    # message handling
    # ------------------------------------------------------------------
    async def _consume(self) -> None:
        """Fetch and persist batches until shutdown; errors propagate."""
        while not self.stopping:
            batches = await self._client.getmany(
                timeout_ms=self.kafka.poll_timeout_ms,
                max_records=self.kafka.max_poll_records,
            )
            for tp, messages in batches.items():
                await self._handle_partition(tp, messages)
                if self.stopping:
                    return

    async def _handle_partition(self, tp, messages) -> None:
        next_offset: Optional[int] = None
        try:
            for message in messages:
                if self.stopping:
                    break
                await self._handle_message(message)
                next_offset = message.offset + 1
        finally:
            # commit the persisted prefix even when a later write failed
            if next_offset is not None:
                await self._commit({tp: next_offset})

    async def _handle_message(self, message) -> None:
        received_at = self._clock()
        record = decode_record(message.value, received_at)
        try:
            await self.writer.write(record, received_at)
        except OSError as e:
            self.consecutive_write_failures += 1
            WRITE_FAILURES_TOTAL.inc()
            MESSAGES_CONSUMED_TOTAL.labels(topic=message.topic, status="error").inc()
            logger.error(
                "Failed to write log record, offset not committed",
                extra={
                    "topic": message.topic,
                    "partition": message.partition,
                    "offset": message.offset,
                    "consecutive_failures": self.consecutive_write_failures,
                    "error": str(e),
                },
            )
            raise WriteFailed(str(e)) from e

        self.consecutive_write_failures = 0
        self.message_count += 1
        MESSAGES_CONSUMED_TOTAL.labels(topic=message.topic, status="success").inc()

        if self.echo:
            echo_logger.log(
                record.level.logging_level,
                format_line(record, received_at, self.writer.abbreviate_levels).rstrip("\n"),
            )
        every = self.kafka.progress_log_every
        if every and self.message_count % every == 0:
            logger.info("Processed messages", extra={"messages": self.message_count})

    async def _commit(self, offsets: Dict[Any, int]) -> None:
        await self._client.commit(offsets)
