"""Dead-letter publishing for change events the router could not apply."""

from __future__ import annotations

import time
import traceback

import structlog
from confluent_kafka import Producer

from cdc_replicator.config.models import DLQConfig
from cdc_replicator.errors import DecodeError
from cdc_replicator.streaming.base import Delivery

logger = structlog.get_logger()


def dlq_topic_name(source_topic: str, suffix: str = "dlq") -> str:
    """``dbserver1.inventory.orders`` -> ``dbserver1.inventory.orders.dlq``."""
    return f"{source_topic}.{suffix}"


def failure_headers(delivery: Delivery, error: BaseException) -> dict[str, str]:
    """Diagnostic headers describing where *delivery* came from and why it failed.

    ``dlq.error.stage`` is ``decode`` when the envelope itself was unreadable
    and ``apply`` when the target database rejected the change.
    """
    return {
        "dlq.source.topic": delivery.topic,
        "dlq.source.partition": str(delivery.partition),
        "dlq.source.offset": str(delivery.offset),
        "dlq.error.stage": "decode" if isinstance(error, DecodeError) else "apply",
        "dlq.error.type": type(error).__name__,
        "dlq.error.message": str(error),
        "dlq.error.stacktrace": "".join(traceback.format_exception(error)),
        "dlq.timestamp": str(time.time_ns() // 1_000_000),
    }


class DLQHandler:
    """Republishes failed deliveries, byte for byte, to a dead-letter topic."""

    def __init__(self, producer: Producer, config: DLQConfig | None = None) -> None:
        self._producer = producer
        self._config = config or DLQConfig()

    def topic_for(self, delivery: Delivery) -> str:
        return dlq_topic_name(delivery.topic, self._config.topic_suffix)

    def send(
        self,
        delivery: Delivery,
        error: BaseException,
        *,
        extra_headers: dict[str, str] | None = None,
    ) -> bool:
        """Publish *delivery* to its DLQ topic.

        Returns ``False`` if the producer rejected the record; the failure is
        logged and never raised, so the caller can still acknowledge.
        """
        topic = self.topic_for(delivery)
        headers: dict[str, str] = {}
        if self._config.include_headers:
            headers = failure_headers(delivery, error) | (extra_headers or {})

        try:
            self._producer.produce(
                topic=topic,
                key=delivery.key,
                value=delivery.value,
                headers=[(name, value.encode()) for name, value in headers.items()],
            )
            # Serve delivery callbacks without blocking the worker
            self._producer.poll(0)
        except Exception as exc:
            logger.error(
                "dlq.write_failed",
                topic=topic,
                offset=delivery.offset,
                partition=delivery.partition,
                error=str(error),
                dlq_error=str(exc),
            )
            return False

        logger.warning(
            "dlq.message_sent",
            topic=topic,
            offset=delivery.offset,
            partition=delivery.partition,
            error_type=type(error).__name__,
        )
        return True

    def flush(self, timeout: float | None = None) -> None:
        """Block until queued DLQ records are delivered (shutdown path)."""
        if timeout is None:
            timeout = self._config.flush_timeout_seconds
        remaining = self._producer.flush(timeout=timeout)
        if remaining:
            logger.warning("dlq.flush_incomplete", pending=remaining)
