"""Unit tests for the DLQ handler and producer factory."""

from unittest.mock import MagicMock, patch

from cdc_replicator.config.models import DLQConfig, KafkaConfig
from cdc_replicator.errors import DecodeError, MutationExecutionError
from cdc_replicator.streaming.dlq import DLQHandler, dlq_topic_name, failure_headers
from cdc_replicator.streaming.producer import create_producer
from helpers import delivery


def _raised(exc: Exception) -> Exception:
    try:
        raise exc
    except Exception as caught:
        return caught


class TestFailureHeaders:
    def test_apply_failure(self):
        message = delivery(b'{"op":"u"}', offset=42)
        message.partition = 2

        headers = failure_headers(message, _raised(MutationExecutionError("boom")))

        assert headers["dlq.source.topic"] == "dbserver1.inventory.products"
        assert headers["dlq.source.partition"] == "2"
        assert headers["dlq.source.offset"] == "42"
        assert headers["dlq.error.stage"] == "apply"
        assert headers["dlq.error.type"] == "MutationExecutionError"
        assert headers["dlq.error.message"] == "boom"
        assert "Traceback" in headers["dlq.error.stacktrace"]
        assert headers["dlq.timestamp"].isdigit()

    def test_decode_failure_stage(self):
        headers = failure_headers(delivery(b"{"), DecodeError("not json"))
        assert headers["dlq.error.stage"] == "decode"


class TestDLQHandler:
    def test_send_republishes_original_bytes(self):
        producer = MagicMock()
        message = delivery(b'{"op":"c"}', offset=7)

        sent = DLQHandler(producer, DLQConfig()).send(message, ValueError("bad"))

        assert sent is True
        kwargs = producer.produce.call_args.kwargs
        assert kwargs["topic"] == "dbserver1.inventory.products.dlq"
        assert kwargs["key"] == b'{"id":1}'
        assert kwargs["value"] == b'{"op":"c"}'
        headers = dict(kwargs["headers"])
        assert headers["dlq.source.offset"] == b"7"
        assert headers["dlq.error.message"] == b"bad"
        producer.poll.assert_called_once_with(0)

    def test_tombstone_value_forwarded(self):
        producer = MagicMock()
        DLQHandler(producer).send(delivery(None), RuntimeError("x"))
        assert producer.produce.call_args.kwargs["value"] is None

    def test_headers_excluded_when_include_headers_false(self):
        producer = MagicMock()
        handler = DLQHandler(producer, DLQConfig(include_headers=False))

        handler.send(delivery(b"{}"), RuntimeError("x"), extra_headers={"a": "b"})

        assert producer.produce.call_args.kwargs["headers"] == []

    def test_extra_headers_merged(self):
        producer = MagicMock()
        DLQHandler(producer).send(
            delivery(b"{}"),
            RuntimeError("x"),
            extra_headers={"dlq.table": "products"},
        )
        headers = dict(producer.produce.call_args.kwargs["headers"])
        assert headers["dlq.table"] == b"products"
        assert headers["dlq.error.type"] == b"RuntimeError"

    def test_custom_suffix(self):
        handler = DLQHandler(MagicMock(), DLQConfig(topic_suffix="failed"))
        assert handler.topic_for(delivery(b"{}")) == (
            "dbserver1.inventory.products.failed"
        )

    def test_produce_failure_does_not_raise(self):
        producer = MagicMock()
        producer.produce.side_effect = BufferError("queue full")

        sent = DLQHandler(producer).send(delivery(b"{}"), ValueError("x"))

        assert sent is False
        producer.poll.assert_not_called()

    def test_flush_uses_configured_timeout(self):
        producer = MagicMock()
        producer.flush.return_value = 0
        DLQHandler(producer, DLQConfig(flush_timeout_seconds=5.0)).flush()
        producer.flush.assert_called_once_with(timeout=5.0)

    def test_flush_explicit_timeout(self):
        producer = MagicMock()
        producer.flush.return_value = 3
        DLQHandler(producer).flush(timeout=1.0)
        producer.flush.assert_called_once_with(timeout=1.0)


class TestTopicNaming:
    def test_default_suffix(self):
        assert dlq_topic_name("dbserver1.inventory.orders") == (
            "dbserver1.inventory.orders.dlq"
        )

    def test_custom_suffix(self):
        assert dlq_topic_name("a", "dead") == "a.dead"


class TestCreateProducer:
    def test_idempotent_producer_config(self):
        with patch("cdc_replicator.streaming.producer.Producer") as mock_producer:
            create_producer(KafkaConfig(bootstrap_servers="broker:29092"))

        mock_producer.assert_called_once_with(
            {
                "bootstrap.servers": "broker:29092",
                "enable.idempotence": True,
                "acks": "all",
            }
        )
