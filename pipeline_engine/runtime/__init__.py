"""Runtime: scheduling, retries, caching, cancellation and progress events."""

from pipeline_engine.runtime.cache import (
    InMemoryResultCache,
    ResultCache,
    UncacheableError,
    compute_cache_key,
)
from pipeline_engine.runtime.cancellation import CancellationToken
from pipeline_engine.runtime.event_bus import (
    EventType,
    OverflowPolicy,
    PipelineEvent,
    ProgressEmitter,
    Subscription,
)
from pipeline_engine.runtime.executor_registry import (
    ExecutionContext,
    ExecutorRegistry,
    FunctionExecutor,
    NodeExecutor,
    NodeOutput,
    NodeTypeDefinition,
)
from pipeline_engine.runtime.retry import ErrorClassifier, RetryDecision, RetryPolicy
from pipeline_engine.runtime.scheduler import SchedulerOptions, TaskScheduler

__all__ = [
    # Executors
    "ExecutionContext",
    "ExecutorRegistry",
    "FunctionExecutor",
    "NodeExecutor",
    "NodeOutput",
    "NodeTypeDefinition",
    # Scheduling
    "CancellationToken",
    "SchedulerOptions",
    "TaskScheduler",
    # Retries
    "ErrorClassifier",
    "RetryDecision",
    "RetryPolicy",
    # Cache
    "InMemoryResultCache",
    "ResultCache",
    "UncacheableError",
    "compute_cache_key",
    # Events
    "EventType",
    "OverflowPolicy",
    "PipelineEvent",
    "ProgressEmitter",
    "Subscription",
]
