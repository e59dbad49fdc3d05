"""Kafka producer used for dead-letter routing."""

from __future__ import annotations

from confluent_kafka import Producer

from cdc_replicator.config.models import KafkaConfig


def create_producer(config: KafkaConfig) -> Producer:
    """Create an idempotent Kafka producer."""
    return Producer(
        {
            "bootstrap.servers": config.bootstrap_servers,
            "enable.idempotence": config.enable_idempotence,
            "acks": config.acks,
        }
    )
