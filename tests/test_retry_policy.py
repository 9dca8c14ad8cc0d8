"""Tests for RetryPolicy backoff and ErrorClassifier."""

import asyncio
import random

import pytest

from pipeline_engine.errors import ExecutorError, FatalExecutorError, RetryableExecutorError
from pipeline_engine.runtime.retry import ErrorClassifier, RetryPolicy
from pipeline_engine.schemas.task_state import ErrorKind, TaskError, TaskState


def _task(attempt: int, max_retries: int = 3) -> TaskState:
    return TaskState(node_id="n", node_type="t", attempt=attempt, max_retries=max_retries)


RETRYABLE = TaskError(code="RATE_LIMIT", message="slow down", kind=ErrorKind.RETRYABLE)
FATAL = TaskError(code="EXECUTION_ERROR", message="bad", kind=ErrorKind.FATAL)


# === RETRY POLICY ===


class TestRetryPolicy:
    def test_exponential_backoff_without_jitter(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=60.0)

        assert [policy.backoff(a) for a in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_backoff_is_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0)

        assert policy.backoff(10) == 5.0

    def test_backoff_for_huge_attempt_numbers(self):
        policy = RetryPolicy(base_delay=2.0, max_delay=30.0, jitter=0.5)

        assert policy.backoff(5000) == 30.0
        assert policy.backoff(10**6) == 30.0

    def test_jittered_delays_never_decrease(self):
        policy = RetryPolicy(base_delay=0.5, max_delay=30.0, jitter=1.0, rng=random.Random(7))

        delays = [policy.backoff(a) for a in range(1, 12)]

        assert all(b >= a for a, b in zip(delays, delays[1:], strict=False))
        assert delays[-1] == 30.0

    def test_jitter_bounds(self):
        policy = RetryPolicy(base_delay=2.0, max_delay=100.0, jitter=0.5, rng=random.Random(1))

        for _ in range(50):
            assert 2.0 <= policy.backoff(1) <= 3.0

    def test_retry_while_budget_left(self):
        policy = RetryPolicy(base_delay=1.0)

        decision = policy.should_retry(_task(attempt=1), RETRYABLE)

        assert decision.retry
        assert decision.delay == 1.0

    def test_budget_is_total_attempts(self):
        policy = RetryPolicy()

        assert policy.should_retry(_task(attempt=2, max_retries=3), RETRYABLE).retry
        decision = policy.should_retry(_task(attempt=3, max_retries=3), RETRYABLE)
        assert not decision.retry
        assert "exhausted" in decision.reason

    def test_fatal_never_retried(self):
        decision = RetryPolicy().should_retry(_task(attempt=1), FATAL)

        assert not decision.retry
        assert "not retryable" in decision.reason

    @pytest.mark.parametrize("kwargs", [{"jitter": 1.5}, {"jitter": -0.1}, {"base_delay": -1}])
    def test_invalid_settings(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


# === ERROR CLASSIFIER ===


class CodedError(Exception):
    def __init__(self, message: str, code: str):
        super().__init__(message)
        self.code = code


class TestErrorClassifier:
    def test_executor_error_kinds(self):
        classifier = ErrorClassifier()

        retryable = classifier.classify(RetryableExecutorError("busy", code="RATE_LIMIT"), 2)
        fatal = classifier.classify(FatalExecutorError("revoked key", code="AUTH"), 1)

        assert retryable.kind == ErrorKind.RETRYABLE
        assert retryable.code == "RATE_LIMIT"
        assert retryable.attempt == 2
        assert fatal.kind == ErrorKind.FATAL
        assert fatal.code == "AUTH"

    def test_plain_executor_error_uses_code(self):
        classifier = ErrorClassifier()

        assert classifier.classify(ExecutorError("x", code="SERVICE_UNAVAILABLE")).retryable
        assert not classifier.classify(ExecutorError("x")).retryable

    def test_timeouts_and_connection_errors(self):
        classifier = ErrorClassifier()

        timeout = classifier.classify(asyncio.TimeoutError())
        network = classifier.classify(ConnectionResetError("peer reset"))

        assert (timeout.code, timeout.kind) == ("TIMEOUT", ErrorKind.RETRYABLE)
        assert (network.code, network.kind) == ("NETWORK_ERROR", ErrorKind.RETRYABLE)

    def test_code_attribute(self):
        classifier = ErrorClassifier()

        assert classifier.classify(CodedError("x", "TEMPORARY_FAILURE")).retryable
        assert not classifier.classify(CodedError("x", "INVALID_PROMPT")).retryable

    @pytest.mark.parametrize(
        "message, code",
        [
            ("Rate limit exceeded, retry later", "RATE_LIMIT"),
            ("HTTP 429 Too Many Requests", "RATE_LIMIT"),
            ("upstream returned 503", "SERVICE_UNAVAILABLE"),
            ("request timed out", "TIMEOUT"),
            ("Connection reset by peer", "NETWORK_ERROR"),
            ("service temporarily unavailable", "SERVICE_UNAVAILABLE"),
        ],
    )
    def test_message_patterns(self, message, code):
        error = ErrorClassifier().classify(RuntimeError(message))

        assert error.kind == ErrorKind.RETRYABLE
        assert error.code == code

    def test_unknown_errors_are_fatal(self):
        error = ErrorClassifier().classify(KeyError("prompt"))

        assert error.kind == ErrorKind.FATAL
        assert error.code == "EXECUTION_ERROR"
        assert error.details["exception_type"] == "KeyError"

    def test_custom_retryable_codes(self):
        classifier = ErrorClassifier(retryable_codes={"GPU_BUSY"})

        assert classifier.classify(CodedError("x", "GPU_BUSY")).retryable
        assert not classifier.classify(CodedError("x", "RATE_LIMIT")).retryable

    def test_timeout_helper(self):
        error = ErrorClassifier().timeout(2.5, attempt=3)

        assert error.code == "TIMEOUT"
        assert error.retryable
        assert error.attempt == 3
        assert "2.5s" in error.message
