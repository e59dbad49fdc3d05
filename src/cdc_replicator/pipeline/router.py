"""Routes decoded change events to target-table mutations.

Routing rules:

- tombstone (empty body)      -> nothing
- ``c`` create / ``r`` read   -> upsert on the primary key, or plain insert
  when the table has no known key
- ``u`` update                -> update keyed by the primary key (new row
  first, old row as fallback); without a key it degrades to the create path
- ``d`` delete                -> delete keyed by the primary key; without a
  key the delete is skipped
- anything else               -> nothing

Every delivery is acknowledged after the attempt, whatever its outcome.
"""

from __future__ import annotations

from enum import StrEnum

import structlog

from cdc_replicator.errors import DecodeError
from cdc_replicator.pipeline.policies import AckPolicy, AlwaysAcknowledge
from cdc_replicator.schema.catalog import SchemaCatalog
from cdc_replicator.sinks.postgres import MutationApplier
from cdc_replicator.streaming.base import Acknowledge, Delivery
from cdc_replicator.streaming.envelope import (
    ChangeEvent,
    Operation,
    TableCoordinates,
    decode_envelope,
)

logger = structlog.get_logger()


class RouteOutcome(StrEnum):
    """What the router did with one message."""

    TOMBSTONE = "tombstone"
    INSERTED = "inserted"
    UPSERTED = "upserted"
    UPDATED = "updated"
    DELETED = "deleted"
    SKIPPED = "skipped"


class EventRouter:
    """Decodes envelopes and invokes at most one mutation per message."""

    def __init__(
        self,
        catalog: SchemaCatalog,
        applier: MutationApplier,
        policy: AckPolicy | None = None,
    ) -> None:
        self._catalog = catalog
        self._applier = applier
        self._policy = policy or AlwaysAcknowledge()

    @property
    def catalog(self) -> SchemaCatalog:
        return self._catalog

    def handle(self, delivery: Delivery, acknowledge: Acknowledge) -> None:
        """Process one delivery under the ack policy, then acknowledge it."""
        logger.debug(
            "router.received",
            topic=delivery.topic,
            partition=delivery.partition,
            offset=delivery.offset,
        )
        try:
            self._policy.run(lambda: self.route(delivery.value), delivery)
        finally:
            acknowledge()

    def route(self, payload: bytes | str | None) -> RouteOutcome:
        """Decode *payload* and apply it.

        Raises :class:`DecodeError` for malformed envelopes and lets
        DDL/mutation errors propagate.
        """
        try:
            event = decode_envelope(payload)
        except DecodeError as exc:
            logger.error("router.decode_failed", error=str(exc))
            raise

        if event is None:
            logger.debug("router.tombstone")
            return RouteOutcome.TOMBSTONE

        if not isinstance(event.operation, Operation):
            logger.warning(
                "router.unknown_operation",
                op=event.operation,
                table=event.table_name,
            )
            return RouteOutcome.SKIPPED

        if event.source is None:
            logger.warning("router.missing_source", op=event.operation_label)
            return RouteOutcome.SKIPPED

        if event.sample_row is None:
            logger.warning(
                "router.missing_row",
                op=event.operation_label,
                table=event.table_name,
            )
            return RouteOutcome.SKIPPED

        logger.info(
            "router.processing",
            op=event.operation_label,
            table=event.table_name,
            database=event.database_name,
        )
        self._catalog.ensure_table_exists(event.source, event)
        outcome = self._dispatch(event.source, event)
        logger.info(
            "router.processed",
            op=event.operation_label,
            table=event.table_name,
            outcome=outcome.value,
        )
        return outcome

    def _dispatch(
        self, coordinates: TableCoordinates, event: ChangeEvent
    ) -> RouteOutcome:
        if event.operation in (Operation.CREATE, Operation.READ):
            return self._handle_create(coordinates, event)
        if event.operation == Operation.UPDATE:
            return self._handle_update(coordinates, event)
        return self._handle_delete(coordinates, event)

    def _handle_create(
        self, coordinates: TableCoordinates, event: ChangeEvent
    ) -> RouteOutcome:
        row = event.after
        if row is None:
            logger.warning(
                "router.missing_row",
                op=event.operation_label,
                table=coordinates.table,
                field="after",
            )
            return RouteOutcome.SKIPPED

        # Upsert so that replays and out-of-order snapshots converge
        key = self._catalog.extract_primary_key_values(coordinates, {}, row)
        if key:
            self._applier.upsert(coordinates.table, row, list(key))
            return RouteOutcome.UPSERTED
        self._applier.insert(coordinates.table, row)
        return RouteOutcome.INSERTED

    def _handle_update(
        self, coordinates: TableCoordinates, event: ChangeEvent
    ) -> RouteOutcome:
        new_row = event.after
        if new_row is None:
            logger.warning(
                "router.missing_row",
                op=event.operation_label,
                table=coordinates.table,
                field="after",
            )
            return RouteOutcome.SKIPPED
        old_row = event.before or {}

        where = self._catalog.extract_primary_key_values(
            coordinates, old_row, new_row
        )
        if where:
            self._applier.update(coordinates.table, new_row, where)
            return RouteOutcome.UPDATED

        logger.warning(
            "router.update_without_key",
            table=coordinates.table,
            fallback="insert",
        )
        return self._handle_create(coordinates, event)

    def _handle_delete(
        self, coordinates: TableCoordinates, event: ChangeEvent
    ) -> RouteOutcome:
        old_row = event.before
        if old_row is None:
            logger.warning(
                "router.missing_row",
                op=event.operation_label,
                table=coordinates.table,
                field="before",
            )
            return RouteOutcome.SKIPPED

        where = self._catalog.extract_primary_key_values(coordinates, old_row, {})
        if not where:
            logger.warning("router.delete_without_key", table=coordinates.table)
            return RouteOutcome.SKIPPED
        self._applier.delete(coordinates.table, where)
        return RouteOutcome.DELETED
