"""Engine-specific exceptions."""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pipeline_engine.graph.validator import ValidationResult


class PipelineEngineError(Exception):
    """Base exception for pipeline_engine."""

    pass


class GraphValidationError(PipelineEngineError):
    """A graph failed structural validation and cannot be run."""

    def __init__(self, result: "ValidationResult"):
        self.result = result
        super().__init__(f"Graph validation failed: {result.error}")


class PlanningError(PipelineEngineError):
    """The planner could not place every node in a layer."""

    pass


class UnknownNodeTypeError(PipelineEngineError):
    """No executor is registered for a node type."""

    def __init__(self, node_type: str):
        self.node_type = node_type
        super().__init__(f"No executor registered for node type '{node_type}'")


class GraphConflictError(PipelineEngineError):
    """A different graph is already registered under the same id and version."""

    pass


class RunNotFoundError(PipelineEngineError):
    """No run state is known for a run id."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run '{run_id}' not found")


class RunStateError(PipelineEngineError):
    """An operation is not allowed in the run's current state."""

    pass


class ExecutorError(PipelineEngineError):
    """
    Error raised by a node executor.

    Executors may attach a machine-readable ``code`` (e.g. "RATE_LIMIT"),
    free-form ``details`` and a ``checkpoint`` blob that the next attempt
    receives through ``ExecutionContext.checkpoint``.
    """

    retryable: bool | None = None

    def __init__(
        self,
        message: str,
        code: str = "EXECUTION_ERROR",
        details: dict[str, Any] | None = None,
        checkpoint: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        self.checkpoint = checkpoint


class RetryableExecutorError(ExecutorError):
    """Transient executor failure (rate limit, network blip, provider outage)."""

    retryable = True

    def __init__(self, message: str, code: str = "TEMPORARY_FAILURE", **kwargs: Any):
        super().__init__(message, code=code, **kwargs)


class FatalExecutorError(ExecutorError):
    """Permanent executor failure (bad config, revoked credentials). Never retried."""

    retryable = False
