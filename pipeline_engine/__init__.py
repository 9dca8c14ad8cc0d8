"""
Pipeline Engine - Executes directed acyclic graphs of processing nodes.

A graph of typed nodes and port-to-port connections is validated, split
into dependency layers and executed with bounded concurrency, retries,
result caching, checkpointing and streaming progress events.

Node behavior comes from executors registered by the host application:

    from pipeline_engine import ExecutorRegistry, PipelineEngine, PipelineGraph

    registry = ExecutorRegistry()

    @registry.function("uppercase")
    async def uppercase(config, inputs, ctx):
        return {"text": inputs["text"].upper()}

    engine = PipelineEngine(registry)
    run = await engine.run(PipelineGraph.from_file("graph.json"), inputs)
"""

from pipeline_engine.config import EngineConfig
from pipeline_engine.engine import PipelineEngine
from pipeline_engine.errors import (
    ExecutorError,
    FatalExecutorError,
    GraphConflictError,
    GraphValidationError,
    PipelineEngineError,
    PlanningError,
    RetryableExecutorError,
    RunNotFoundError,
    RunStateError,
    UnknownNodeTypeError,
)
from pipeline_engine.graph import (
    Connection,
    ExecutionPlan,
    ExecutionPlanner,
    GraphValidator,
    NodeSpec,
    PipelineGraph,
    PortSpec,
    ValidationErrorKind,
    ValidationResult,
)
from pipeline_engine.runtime import (
    CancellationToken,
    ErrorClassifier,
    EventType,
    ExecutionContext,
    ExecutorRegistry,
    InMemoryResultCache,
    NodeExecutor,
    NodeOutput,
    NodeTypeDefinition,
    PipelineEvent,
    ProgressEmitter,
    ResultCache,
    RetryPolicy,
    SchedulerOptions,
    TaskScheduler,
)
from pipeline_engine.schemas import RunState, RunStatus, TaskError, TaskState, TaskStatus
from pipeline_engine.storage import CheckpointStore, FileCheckpointStore, InMemoryCheckpointStore

__all__ = [
    # Engine
    "PipelineEngine",
    "EngineConfig",
    # Graph
    "PortSpec",
    "NodeSpec",
    "Connection",
    "PipelineGraph",
    "GraphValidator",
    "ValidationErrorKind",
    "ValidationResult",
    "ExecutionPlan",
    "ExecutionPlanner",
    # Runtime
    "CancellationToken",
    "ErrorClassifier",
    "EventType",
    "ExecutionContext",
    "ExecutorRegistry",
    "InMemoryResultCache",
    "NodeExecutor",
    "NodeOutput",
    "NodeTypeDefinition",
    "PipelineEvent",
    "ProgressEmitter",
    "ResultCache",
    "RetryPolicy",
    "SchedulerOptions",
    "TaskScheduler",
    # State
    "RunState",
    "RunStatus",
    "TaskError",
    "TaskState",
    "TaskStatus",
    # Storage
    "CheckpointStore",
    "FileCheckpointStore",
    "InMemoryCheckpointStore",
    # Errors
    "PipelineEngineError",
    "GraphValidationError",
    "PlanningError",
    "UnknownNodeTypeError",
    "GraphConflictError",
    "RunNotFoundError",
    "RunStateError",
    "ExecutorError",
    "RetryableExecutorError",
    "FatalExecutorError",
]
