"""Health probes for the replicator's external dependencies."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

import psycopg2
import structlog
from confluent_kafka.admin import AdminClient

from cdc_replicator.config.models import DatabaseConfig, KafkaConfig, ReplicatorConfig

logger = structlog.get_logger()


class Status(StrEnum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class ComponentHealth:
    name: str
    status: Status = Status.UNKNOWN
    detail: str = ""


@dataclass
class ReplicatorHealth:
    components: list[ComponentHealth] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return all(c.status == Status.HEALTHY for c in self.components)

    @property
    def summary(self) -> dict[str, str]:
        return {c.name: c.status.value for c in self.components}


def check_kafka(config: KafkaConfig) -> ComponentHealth:
    """Probe Kafka broker connectivity."""
    try:
        admin = AdminClient({"bootstrap.servers": config.bootstrap_servers})
        meta = admin.list_topics(timeout=5)
        return ComponentHealth(
            name="kafka",
            status=Status.HEALTHY,
            detail=f"{len(meta.brokers)} broker(s)",
        )
    except Exception as exc:
        logger.warning("health.probe_failed", component="kafka", error=str(exc))
        return ComponentHealth(name="kafka", status=Status.UNHEALTHY, detail=str(exc))


def check_postgres(name: str, config: DatabaseConfig) -> ComponentHealth:
    """Probe a PostgreSQL database with ``SELECT version()``."""
    try:
        conn = psycopg2.connect(
            host=config.host,
            port=config.port,
            dbname=config.database,
            user=config.username,
            password=config.password.get_secret_value(),
            connect_timeout=5,
        )
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT version()")
                version = cur.fetchone()[0]
        finally:
            conn.close()
        return ComponentHealth(
            name=name,
            status=Status.HEALTHY,
            detail=f"{config.database}@{config.host}: {version.split(',')[0]}",
        )
    except Exception as exc:
        logger.warning("health.probe_failed", component=name, error=str(exc))
        return ComponentHealth(name=name, status=Status.UNHEALTHY, detail=str(exc))


def check_replicator_health(config: ReplicatorConfig) -> ReplicatorHealth:
    """Run all health checks and return the aggregated result."""
    return ReplicatorHealth(
        components=[
            check_postgres("source", config.source),
            check_postgres("target", config.target),
            check_kafka(config.kafka),
        ]
    )
