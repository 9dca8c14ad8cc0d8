"""
Retry policy with exponential backoff and jitter, plus error classification.

Backoff formula: base_delay * 2^(attempt - 1) -> 1s, 2s, 4s...
Jitter scales each delay by a random factor in [1, 1 + jitter] before the
cap is applied, so successive delays never decrease while simultaneous
failures (e.g. a shared provider outage) still spread out.
"""

import asyncio
import logging
import random
import re
from dataclasses import dataclass, field

from pipeline_engine.errors import ExecutorError
from pipeline_engine.schemas.task_state import ErrorKind, TaskError, TaskState

logger = logging.getLogger(__name__)

# Error codes treated as transient
RETRYABLE_ERROR_CODES = frozenset(
    {
        "NETWORK_ERROR",
        "TIMEOUT",
        "RATE_LIMIT",
        "TEMPORARY_FAILURE",
        "SERVICE_UNAVAILABLE",
    }
)

# Message patterns for transient failures from providers that only give text
RETRYABLE_PATTERNS: dict[str, list[re.Pattern]] = {
    "RATE_LIMIT": [
        re.compile(r"rate\s*limit", re.I),
        re.compile(r"too\s+many\s+requests", re.I),
        re.compile(r"\b429\b"),
        re.compile(r"quota\s+exceeded", re.I),
        re.compile(r"throttl", re.I),
    ],
    "TIMEOUT": [
        re.compile(r"timed\s+out", re.I),
        re.compile(r"deadline\s+exceeded", re.I),
    ],
    "NETWORK_ERROR": [
        re.compile(r"connection\s+(?:reset|refused|closed|aborted)", re.I),
        re.compile(r"network\s+unreachable", re.I),
        re.compile(r"broken\s+pipe", re.I),
    ],
    "SERVICE_UNAVAILABLE": [
        re.compile(r"service\s+unavailable", re.I),
        re.compile(r"temporarily\s+unavailable", re.I),
        re.compile(r"\b50[234]\b"),
        re.compile(r"overloaded", re.I),
    ],
}


class ErrorClassifier:
    """
    Turns executor exceptions into classified TaskErrors.

    Order of precedence:
    1. ExecutorError subclasses that declare retryable=True/False
    2. Timeouts and connection errors
    3. A `code` attribute in the retryable code set
    4. Message patterns (rate limits, 5xx, connection resets)
    5. Everything else is fatal
    """

    def __init__(self, retryable_codes: frozenset[str] | set[str] | None = None):
        self.retryable_codes = frozenset(retryable_codes or RETRYABLE_ERROR_CODES)

    def classify(self, exc: BaseException, attempt: int = 0) -> TaskError:
        code = getattr(exc, "code", None)
        code = code if isinstance(code, str) and code else None
        message = str(exc) or type(exc).__name__
        details = dict(getattr(exc, "details", None) or {})
        details.setdefault("exception_type", type(exc).__name__)

        kind = self._kind(exc, code, message)
        if code is None:
            code = self._code(exc, message) if kind == ErrorKind.RETRYABLE else "EXECUTION_ERROR"

        return TaskError(code=code, message=message, kind=kind, attempt=attempt, details=details)

    def timeout(self, timeout: float, attempt: int = 0) -> TaskError:
        return TaskError(
            code="TIMEOUT",
            message=f"Task timed out after {timeout:g}s",
            kind=ErrorKind.RETRYABLE,
            attempt=attempt,
        )

    def _kind(self, exc: BaseException, code: str | None, message: str) -> ErrorKind:
        if isinstance(exc, ExecutorError) and exc.retryable is not None:
            return ErrorKind.RETRYABLE if exc.retryable else ErrorKind.FATAL
        if isinstance(exc, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
            return ErrorKind.RETRYABLE
        if code is not None:
            return ErrorKind.RETRYABLE if code in self.retryable_codes else ErrorKind.FATAL
        for patterns in RETRYABLE_PATTERNS.values():
            if any(p.search(message) for p in patterns):
                return ErrorKind.RETRYABLE
        return ErrorKind.FATAL

    def _code(self, exc: BaseException, message: str) -> str:
        if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
            return "TIMEOUT"
        if isinstance(exc, ConnectionError):
            return "NETWORK_ERROR"
        for code, patterns in RETRYABLE_PATTERNS.items():
            if any(p.search(message) for p in patterns):
                return code
        return "TEMPORARY_FAILURE"


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0
    reason: str = ""


@dataclass
class RetryPolicy:
    """
    Decides whether and when a failed task runs again.

    `max_retries` on the task is its total attempt budget: a task retries
    while attempt < max_retries and the error is retryable.
    """

    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 0.0  # Fraction in [0, 1]
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def __post_init__(self):
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Retry delays must be non-negative")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError(f"jitter must be within [0, 1], got {self.jitter}")

    def backoff(self, attempt: int) -> float:
        """Delay before the attempt that follows `attempt` (1-based)."""
        # Past 2**63 every realistic base_delay is already above max_delay
        delay = self.base_delay * float(2 ** min(max(0, attempt - 1), 63))
        if self.jitter:
            delay *= 1.0 + self.rng.uniform(0.0, self.jitter)
        return min(delay, self.max_delay)

    def should_retry(self, task: TaskState, error: TaskError) -> RetryDecision:
        if not error.retryable:
            return RetryDecision(retry=False, reason=f"{error.code} is not retryable")
        if task.attempt >= task.max_retries:
            return RetryDecision(
                retry=False, reason=f"retries exhausted ({task.attempt}/{task.max_retries})"
            )
        return RetryDecision(retry=True, delay=self.backoff(task.attempt))
