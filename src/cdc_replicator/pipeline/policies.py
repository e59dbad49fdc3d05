"""Acknowledgement policies: what happens when processing a message fails.

Whatever the policy, the message is acknowledged once the policy returns, so
a failing event never blocks its stream.  The policies differ only in what
they do before giving up:

- :class:`AlwaysAcknowledge` logs the failure and drops the event.
- :class:`RetryWithBackoff` retries store failures with exponential backoff,
  then logs and drops.
- :class:`DeadLetter` publishes the original message to a dead-letter topic.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

import structlog
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from cdc_replicator.config.models import AckPolicyType, RetryConfig
from cdc_replicator.errors import DDLExecutionError, MutationExecutionError
from cdc_replicator.streaming.base import Delivery
from cdc_replicator.streaming.dlq import DLQHandler

logger = structlog.get_logger()

Process = Callable[[], Any]

# Store-side failures that may succeed on a later attempt
RETRYABLE_ERRORS: tuple[type[Exception], ...] = (
    DDLExecutionError,
    MutationExecutionError,
)


@runtime_checkable
class AckPolicy(Protocol):
    """Runs one processing attempt; must not raise."""

    def run(self, process: Process, delivery: Delivery) -> None: ...


def _log_failure(event: str, delivery: Delivery, exc: BaseException) -> None:
    logger.error(
        event,
        topic=delivery.topic,
        partition=delivery.partition,
        offset=delivery.offset,
        error_type=type(exc).__name__,
        error=str(exc),
    )


class AlwaysAcknowledge:
    """Log failures and move on; the event is dropped."""

    def run(self, process: Process, delivery: Delivery) -> None:
        try:
            process()
        except Exception as exc:
            _log_failure("router.event_dropped", delivery, exc)


class RetryWithBackoff:
    """Retry store failures with jittered exponential backoff, then drop."""

    def __init__(self, config: RetryConfig | None = None) -> None:
        self._config = config or RetryConfig()

    def run(self, process: Process, delivery: Delivery) -> None:
        cfg = self._config
        retrying = Retrying(
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            stop=stop_after_attempt(cfg.max_attempts),
            wait=wait_exponential_jitter(
                initial=cfg.initial_wait_seconds,
                max=cfg.max_wait_seconds,
                exp_base=cfg.multiplier,
                jitter=cfg.initial_wait_seconds if cfg.jitter else 0,
            ),
            before_sleep=lambda state: logger.warning(
                "router.retrying",
                topic=delivery.topic,
                partition=delivery.partition,
                offset=delivery.offset,
                attempt=state.attempt_number,
                error=str(state.outcome.exception()) if state.outcome else None,
            ),
            reraise=True,
        )
        try:
            retrying(process)
        except Exception as exc:
            _log_failure("router.event_dropped", delivery, exc)


class DeadLetter:
    """Publish failed messages to ``<topic>.<suffix>`` before acknowledging."""

    def __init__(self, dlq: DLQHandler) -> None:
        self._dlq = dlq

    def run(self, process: Process, delivery: Delivery) -> None:
        try:
            process()
        except Exception as exc:
            _log_failure("router.event_failed", delivery, exc)
            self._dlq.send(delivery, exc)


def build_policy(
    policy_type: AckPolicyType,
    *,
    retry: RetryConfig | None = None,
    dlq: DLQHandler | None = None,
) -> AckPolicy:
    """Create the acknowledgement policy selected in config."""
    if policy_type == AckPolicyType.ALWAYS:
        return AlwaysAcknowledge()
    if policy_type == AckPolicyType.RETRY:
        return RetryWithBackoff(retry)
    if policy_type == AckPolicyType.DEAD_LETTER:
        if dlq is None:
            msg = "dead_letter ack policy requires a DLQ handler"
            raise ValueError(msg)
        return DeadLetter(dlq)
    msg = f"Unknown ack policy: {policy_type}"
    raise ValueError(msg)
