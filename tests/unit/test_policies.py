"""Unit tests for acknowledgement policies."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from cdc_replicator.config.models import AckPolicyType, RetryConfig
from cdc_replicator.errors import (
    DDLExecutionError,
    DecodeError,
    MutationExecutionError,
)
from cdc_replicator.pipeline.policies import (
    AckPolicy,
    AlwaysAcknowledge,
    DeadLetter,
    RetryWithBackoff,
    build_policy,
)
from helpers import delivery

FAST_RETRY = RetryConfig(
    max_attempts=3, initial_wait_seconds=0.01, max_wait_seconds=0.02, jitter=False
)


class TestAlwaysAcknowledge:
    def test_runs_process_once(self):
        process = MagicMock()
        AlwaysAcknowledge().run(process, delivery(b"{}"))
        process.assert_called_once_with()

    def test_swallows_failure(self):
        process = MagicMock(side_effect=MutationExecutionError("boom"))
        AlwaysAcknowledge().run(process, delivery(b"{}"))
        process.assert_called_once_with()


class TestRetryWithBackoff:
    def test_retries_until_success(self):
        process = MagicMock(
            side_effect=[MutationExecutionError("a"), DDLExecutionError("b"), None]
        )
        RetryWithBackoff(FAST_RETRY).run(process, delivery(b"{}"))
        assert process.call_count == 3

    def test_gives_up_after_max_attempts(self):
        process = MagicMock(side_effect=MutationExecutionError("still down"))
        RetryWithBackoff(FAST_RETRY).run(process, delivery(b"{}"))
        assert process.call_count == 3

    def test_decode_errors_not_retried(self):
        process = MagicMock(side_effect=DecodeError("bad json"))
        RetryWithBackoff(FAST_RETRY).run(process, delivery(b"{"))
        process.assert_called_once_with()

    def test_unexpected_errors_not_retried(self):
        process = MagicMock(side_effect=KeyError("x"))
        RetryWithBackoff(FAST_RETRY).run(process, delivery(b"{}"))
        process.assert_called_once_with()


class TestDeadLetter:
    def test_failure_sent_to_dlq(self):
        dlq = MagicMock()
        error = MutationExecutionError("UPDATE failed")
        message = delivery(b'{"op": "u"}', offset=17)

        DeadLetter(dlq).run(MagicMock(side_effect=error), message)

        dlq.send.assert_called_once_with(message, error)

    def test_decode_error_sent_to_dlq(self):
        dlq = MagicMock()
        DeadLetter(dlq).run(MagicMock(side_effect=DecodeError("x")), delivery(b"{"))
        dlq.send.assert_called_once()

    def test_success_not_sent(self):
        dlq = MagicMock()
        DeadLetter(dlq).run(MagicMock(), delivery(b"{}"))
        dlq.send.assert_not_called()


class TestBuildPolicy:
    def test_always(self):
        assert isinstance(build_policy(AckPolicyType.ALWAYS), AlwaysAcknowledge)

    def test_retry(self):
        policy = build_policy(AckPolicyType.RETRY, retry=FAST_RETRY)
        assert isinstance(policy, RetryWithBackoff)

    def test_dead_letter(self):
        policy = build_policy(AckPolicyType.DEAD_LETTER, dlq=MagicMock())
        assert isinstance(policy, DeadLetter)

    def test_dead_letter_requires_handler(self):
        with pytest.raises(ValueError, match="DLQ handler"):
            build_policy(AckPolicyType.DEAD_LETTER)

    def test_policies_satisfy_protocol(self):
        assert isinstance(AlwaysAcknowledge(), AckPolicy)
        assert isinstance(RetryWithBackoff(), AckPolicy)
        assert isinstance(DeadLetter(MagicMock()), AckPolicy)
