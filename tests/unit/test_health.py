"""Unit tests for dependency health probes."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from cdc_replicator.config.defaults import build_replicator_config
from cdc_replicator.config.models import DatabaseConfig, KafkaConfig
from cdc_replicator.observability.health import (
    ComponentHealth,
    ReplicatorHealth,
    Status,
    check_kafka,
    check_postgres,
    check_replicator_health,
)


class TestCheckKafka:
    def test_healthy(self):
        with patch("cdc_replicator.observability.health.AdminClient") as admin_cls:
            admin_cls.return_value.list_topics.return_value.brokers = {1: "b1", 2: "b2"}
            result = check_kafka(KafkaConfig(bootstrap_servers="broker:29092"))

        admin_cls.assert_called_once_with({"bootstrap.servers": "broker:29092"})
        assert result.status == Status.HEALTHY
        assert result.detail == "2 broker(s)"

    def test_unreachable(self):
        with patch("cdc_replicator.observability.health.AdminClient") as admin_cls:
            admin_cls.return_value.list_topics.side_effect = RuntimeError("timed out")
            result = check_kafka(KafkaConfig())

        assert result.status == Status.UNHEALTHY
        assert "timed out" in result.detail


class TestCheckPostgres:
    def test_healthy(self):
        conn = MagicMock()
        cursor = conn.cursor.return_value.__enter__.return_value
        cursor.fetchone.return_value = ("PostgreSQL 16.2 on x86_64, compiled by gcc",)

        with patch(
            "cdc_replicator.observability.health.psycopg2.connect", return_value=conn
        ) as connect:
            result = check_postgres(
                "target", DatabaseConfig(host="db", database="replica", password="pw")
            )

        connect.assert_called_once_with(
            host="db",
            port=5432,
            dbname="replica",
            user="postgres",
            password="pw",
            connect_timeout=5,
        )
        conn.close.assert_called_once_with()
        assert result.name == "target"
        assert result.status == Status.HEALTHY
        assert result.detail == "replica@db: PostgreSQL 16.2 on x86_64"

    def test_unreachable(self):
        with patch(
            "cdc_replicator.observability.health.psycopg2.connect",
            side_effect=RuntimeError("connection refused"),
        ):
            result = check_postgres("source", DatabaseConfig(database="inventory"))

        assert result.status == Status.UNHEALTHY
        assert result.detail == "connection refused"


class TestReplicatorHealth:
    def test_aggregates_components(self):
        healthy = ComponentHealth(name="x", status=Status.HEALTHY)
        with (
            patch(
                "cdc_replicator.observability.health.check_postgres",
                side_effect=lambda name, _: ComponentHealth(
                    name=name, status=Status.HEALTHY
                ),
            ),
            patch(
                "cdc_replicator.observability.health.check_kafka",
                return_value=ComponentHealth(name="kafka", status=Status.UNHEALTHY),
            ),
        ):
            result = check_replicator_health(build_replicator_config())

        assert [c.name for c in result.components] == ["source", "target", "kafka"]
        assert result.healthy is False
        assert result.summary == {
            "source": "healthy",
            "target": "healthy",
            "kafka": "unhealthy",
        }
        assert ReplicatorHealth(components=[healthy]).healthy is True

    def test_unknown_is_not_healthy(self):
        assert ReplicatorHealth(components=[ComponentHealth(name="x")]).healthy is False
