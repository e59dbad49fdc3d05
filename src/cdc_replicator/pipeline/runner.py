"""Replicator orchestrator: Kafka consumer, event router and store lifecycle."""

from __future__ import annotations

import asyncio
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import suppress
from typing import Any

import structlog

from cdc_replicator.config.models import AckPolicyType, ReplicatorConfig
from cdc_replicator.pipeline.policies import build_policy
from cdc_replicator.pipeline.router import EventRouter
from cdc_replicator.schema.catalog import SchemaCatalog
from cdc_replicator.sinks.postgres import MutationApplier
from cdc_replicator.store.base import CatalogStore
from cdc_replicator.store.postgres import PostgresStore
from cdc_replicator.streaming.base import Acknowledge, Delivery
from cdc_replicator.streaming.consumer import ChangeEventConsumer
from cdc_replicator.streaming.dlq import DLQHandler
from cdc_replicator.streaming.producer import create_producer

logger = structlog.get_logger()

QueueItem = tuple[Delivery, Acknowledge]


def build_router(
    config: ReplicatorConfig,
    source: CatalogStore,
    target: CatalogStore,
    *,
    dlq: DLQHandler | None = None,
) -> EventRouter:
    """Wire catalog, applier and ack policy into an EventRouter."""
    schema = config.schema_catalog.target_schema
    catalog = SchemaCatalog(
        source,
        target,
        target_schema=schema,
        suffix_fallback=config.schema_catalog.suffix_fallback,
    )
    applier = MutationApplier(target, schema=schema)
    policy = build_policy(config.ack_policy, retry=config.retry, dlq=dlq)
    return EventRouter(catalog, applier, policy)


class Replicator:
    """Applies change events from Kafka to the target database.

    Each (topic, partition) gets a bounded queue drained by one worker task,
    so a table's changes are applied in order while different streams run
    concurrently.  Workers hand the blocking database work to a shared thread
    pool.
    """

    def __init__(self, config: ReplicatorConfig) -> None:
        self._config = config
        self._source = PostgresStore(config.source, name="source")
        self._target = PostgresStore(config.target, name="target")
        self._router: EventRouter | None = None
        self._consumer: ChangeEventConsumer | None = None
        self._dlq: DLQHandler | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._partition_queues: dict[tuple[str, int], asyncio.Queue[QueueItem]] = {}
        self._partition_workers: dict[tuple[str, int], asyncio.Task[None]] = {}
        # Executor work still running for a partition, possibly from a worker
        # that was cancelled by a revoke
        self._in_flight: dict[tuple[str, int], Future[None]] = {}

    def start(self) -> None:
        """Start the replicator (blocking)."""
        asyncio.run(self._start_async())

    async def _start_async(self) -> None:
        loop = asyncio.get_running_loop()

        # 1. Open stores
        await loop.run_in_executor(None, self._source.open)
        await loop.run_in_executor(None, self._target.open)

        # 2. DLQ producer for the dead_letter policy
        if self._config.ack_policy == AckPolicyType.DEAD_LETTER:
            self._dlq = DLQHandler(
                create_producer(self._config.kafka), self._config.dlq
            )

        # 3. Router + worker threads
        self._router = build_router(
            self._config, self._source, self._target, dlq=self._dlq
        )
        self._executor = ThreadPoolExecutor(
            max_workers=self._config.worker_threads,
            thread_name_prefix="replicator-worker",
        )

        # 4. Consumer with enqueue handler + rebalance callbacks
        self._consumer = ChangeEventConsumer(
            self._config.kafka,
            self._enqueue,
            on_assign=self._on_partitions_assigned,
            on_revoke=self._on_partitions_revoked,
        )
        logger.info(
            "replicator.started",
            subscription=self._consumer.subscription,
            ack_policy=self._config.ack_policy.value,
            worker_threads=self._config.worker_threads,
        )

        # 5. Consume until stopped
        try:
            await self._consumer.consume()
        finally:
            await self._shutdown()

    async def _enqueue(self, delivery: Delivery, acknowledge: Acknowledge) -> None:
        """Enqueue to the partition's bounded queue (backpressure)."""
        tp = (delivery.topic, delivery.partition)
        queue = self._partition_queues.get(tp)
        if queue is None:
            queue = self._start_partition_worker(tp)
        await queue.put((delivery, acknowledge))

    def _start_partition_worker(self, tp: tuple[str, int]) -> asyncio.Queue[QueueItem]:
        queue: asyncio.Queue[QueueItem] = asyncio.Queue(
            maxsize=self._config.max_buffered_messages
        )
        self._partition_queues[tp] = queue
        self._partition_workers[tp] = asyncio.create_task(
            self._partition_loop(tp, queue)
        )
        return queue

    async def _partition_loop(
        self, tp: tuple[str, int], queue: asyncio.Queue[QueueItem]
    ) -> None:
        """Apply events for one partition sequentially, in offset order.

        Cancelling the task does not stop an event already handed to the
        thread pool, so a worker started after a reassignment first waits
        for its predecessor's in-flight event.
        """
        assert self._router is not None
        assert self._executor is not None
        await self._await_in_flight(tp)
        while True:
            delivery, acknowledge = await queue.get()
            work = self._executor.submit(self._router.handle, delivery, acknowledge)
            self._in_flight[tp] = work
            try:
                await asyncio.wrap_future(work)
            except Exception as exc:
                logger.error(
                    "replicator.worker_error",
                    topic=tp[0],
                    partition=tp[1],
                    offset=delivery.offset,
                    error=str(exc),
                )
            finally:
                queue.task_done()
            # Not reached on cancellation, so the successor sees this work
            del self._in_flight[tp]

    async def _await_in_flight(self, tp: tuple[str, int]) -> None:
        previous = self._in_flight.get(tp)
        if previous is None or previous.done():
            return
        logger.info(
            "replicator.waiting_for_in_flight", topic=tp[0], partition=tp[1]
        )
        await asyncio.wait([asyncio.wrap_future(previous)])

    def _on_partitions_assigned(self, partitions: list[tuple[str, int]]) -> None:
        for tp in partitions:
            if tp not in self._partition_queues:
                self._start_partition_worker(tp)
        logger.info("replicator.partitions_assigned", partitions=partitions)

    def _on_partitions_revoked(self, partitions: list[tuple[str, int]]) -> None:
        for tp in partitions:
            worker = self._partition_workers.pop(tp, None)
            if worker:
                worker.cancel()
            self._partition_queues.pop(tp, None)
        logger.info("replicator.partitions_revoked", partitions=partitions)

    async def _shutdown(self) -> None:
        """Drain workers, release the consumer, flush DLQ, close stores."""
        for worker in self._partition_workers.values():
            worker.cancel()
        for worker in self._partition_workers.values():
            with suppress(asyncio.CancelledError):
                await worker
        self._partition_workers.clear()
        self._partition_queues.clear()
        self._in_flight.clear()

        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        if self._consumer is not None:
            self._consumer.close()
        if self._dlq is not None:
            self._dlq.flush()
        self._source.close()
        self._target.close()
        logger.info("replicator.stopped")

    def stop(self) -> None:
        """Signal the replicator to stop."""
        if self._consumer is not None:
            self._consumer.stop()

    def health(self) -> dict[str, Any]:
        """Store connectivity plus the tables seen so far."""
        tables: list[str] = []
        if self._router is not None:
            tables = self._router.catalog.cached_tables()
        return {
            "source": "running" if self._source.ping() else "stopped",
            "target": "running" if self._target.ping() else "stopped",
            "partitions": sorted(self._partition_queues),
            "tables": tables,
        }
