"""Kafka consumer delivering raw change envelopes with explicit acknowledgement."""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from confluent_kafka import Consumer, KafkaError, KafkaException, Message

from cdc_replicator.config.models import KafkaConfig
from cdc_replicator.streaming.base import Acknowledge, Delivery

logger = structlog.get_logger()

# Callback types
AsyncDeliveryHandler = Callable[[Delivery, Acknowledge], Awaitable[None]]

PartitionCallback = Callable[[list[tuple[str, int]]], None]


class ChangeEventConsumer:
    """Polls Kafka in a thread and hands each message to an async handler.

    Auto-commit is disabled: a message's offset is committed only when the
    ``acknowledge`` callable passed along with it is invoked.
    """

    def __init__(
        self,
        kafka_config: KafkaConfig,
        handler: AsyncDeliveryHandler,
        *,
        on_assign: PartitionCallback | None = None,
        on_revoke: PartitionCallback | None = None,
    ) -> None:
        self._handler = handler
        self._on_assign = on_assign
        self._on_revoke = on_revoke
        self._kafka_config = kafka_config
        self._running = False
        self._loop: asyncio.AbstractEventLoop | None = None

        self._consumer = Consumer(
            {
                "bootstrap.servers": kafka_config.bootstrap_servers,
                "group.id": kafka_config.group_id,
                "auto.offset.reset": kafka_config.auto_offset_reset,
                "enable.auto.commit": False,
                "session.timeout.ms": kafka_config.session_timeout_ms,
                "max.poll.interval.ms": kafka_config.max_poll_interval_ms,
                "fetch.min.bytes": kafka_config.fetch_min_bytes,
                "fetch.wait.max.ms": kafka_config.fetch_max_wait_ms,
            }
        )

    @property
    def subscription(self) -> list[str]:
        """Topics (or the single regex pattern) this consumer subscribes to."""
        if self._kafka_config.topics:
            return list(self._kafka_config.topics)
        return [self._kafka_config.topic_pattern]

    def _forward_rebalance(
        self, callback: PartitionCallback | None, partitions: list[Any]
    ) -> None:
        # librdkafka invokes rebalance callbacks on the polling thread
        if callback is None or self._loop is None:
            return
        assignment = [(tp.topic, tp.partition) for tp in partitions]
        self._loop.call_soon_threadsafe(callback, assignment)

    def _handle_assign(self, consumer: Any, partitions: list[Any]) -> None:
        self._forward_rebalance(self._on_assign, partitions)

    def _handle_revoke(self, consumer: Any, partitions: list[Any]) -> None:
        self._forward_rebalance(self._on_revoke, partitions)

    @staticmethod
    def _to_delivery(msg: Message) -> Delivery:
        return Delivery(
            topic=msg.topic() or "",
            partition=msg.partition() or 0,
            offset=msg.offset() or 0,
            key=msg.key(),
            value=msg.value(),
            raw=msg,
        )

    def acknowledger(self, msg: Message) -> Acknowledge:
        """Return a callable that commits *msg*'s offset when invoked."""

        def _acknowledge() -> None:
            try:
                self._consumer.commit(
                    message=msg, asynchronous=self._kafka_config.commit_asynchronous
                )
            except KafkaException as exc:
                logger.error(
                    "consumer.commit_failed",
                    topic=msg.topic(),
                    partition=msg.partition(),
                    offset=msg.offset(),
                    error=str(exc),
                )

        return _acknowledge

    async def consume(self, *, poll_timeout: float = 1.0) -> None:
        """Async consume loop; polls in a thread and awaits the async handler."""
        self._running = True
        self._loop = asyncio.get_running_loop()
        self._consumer.subscribe(
            self.subscription,
            on_assign=self._handle_assign,
            on_revoke=self._handle_revoke,
        )
        self._install_signal_handlers()

        loop = asyncio.get_running_loop()
        logger.info("consumer.started", subscription=self.subscription)
        try:
            while self._running:
                msg = await loop.run_in_executor(
                    None, self._consumer.poll, poll_timeout
                )
                if msg is None:
                    continue

                error = msg.error()
                if error is not None:
                    if error.code() == KafkaError._PARTITION_EOF:  # type: ignore[attr-defined]
                        continue
                    raise KafkaException(error)

                await self._handler(self._to_delivery(msg), self.acknowledger(msg))
        finally:
            logger.info("consumer.stopped")

    def _install_signal_handlers(self) -> None:
        def _shutdown(signum: int, frame: Any) -> None:
            logger.info("consumer.shutdown_signal", signal=signum)
            self._running = False

        signal.signal(signal.SIGINT, _shutdown)
        signal.signal(signal.SIGTERM, _shutdown)

    def stop(self) -> None:
        """Signal the consume loop to stop."""
        self._running = False

    def close(self) -> None:
        """Leave the group and release the client; call after the last commit."""
        self._consumer.close()
