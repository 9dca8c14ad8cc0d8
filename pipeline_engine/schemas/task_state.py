"""
Task and Run State - Per-run execution status of a pipeline.

A RunState aggregates one TaskState per node. Task states only move
forward through the scheduler and end in a terminal value; the engine
never deletes them.
"""

import base64
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, computed_field, field_serializer, field_validator

# JSON stand-in for raw bytes inside executor payloads
BYTES_TAG = "__bytes__"


def encode_payload(value: Any) -> Any:
    """Replace bytes anywhere in `value` with `{"__bytes__": <base64>}`."""
    if isinstance(value, bytes | bytearray):
        return {BYTES_TAG: base64.b64encode(value).decode("ascii")}
    if isinstance(value, dict):
        return {key: encode_payload(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [encode_payload(item) for item in value]
    return value


def decode_payload(value: Any) -> Any:
    """Inverse of encode_payload. Values that were never encoded pass through."""
    if isinstance(value, dict):
        if len(value) == 1 and isinstance(value.get(BYTES_TAG), str):
            return base64.b64decode(value[BYTES_TAG])
        return {key: decode_payload(item) for key, item in value.items()}
    if isinstance(value, list):
        return [decode_payload(item) for item in value]
    return value


class TaskStatus(StrEnum):
    """Status of one node within one run."""

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"  # An upstream task failed

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED, TaskStatus.SKIPPED}
)


class RunStatus(StrEnum):
    """Overall status of a run, derived from its tasks."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ErrorKind(StrEnum):
    RETRYABLE = "retryable"
    FATAL = "fatal"


class TaskError(BaseModel):
    """Classified error recorded on a task."""

    code: str
    message: str
    kind: ErrorKind = ErrorKind.FATAL
    attempt: int = 0
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.RETRYABLE


class TaskState(BaseModel):
    """Execution status and metadata of one node in one run."""

    node_id: str
    node_type: str
    layer: int = 0
    required: bool = True

    status: TaskStatus = TaskStatus.PENDING
    attempt: int = 0  # Attempts started so far
    max_retries: int = 3  # Total attempt budget
    last_error: TaskError | None = None
    retry_delays: list[float] = Field(default_factory=list)

    cache_key: str | None = None
    cache_hit: bool = False
    checkpoint: Any = None  # Opaque executor-supplied resumable blob

    started_at: datetime | None = None
    completed_at: datetime | None = None
    progress: float = Field(default=0.0, ge=0.0, le=1.0)

    outputs: dict[str, Any] | None = None
    skipped_because: str | None = None  # Failed upstream task
    metrics: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}

    @field_validator("checkpoint", "outputs", mode="before")
    @classmethod
    def _decode_payloads(cls, value: Any) -> Any:
        return decode_payload(value)

    @field_serializer("checkpoint", "outputs", when_used="json")
    def _encode_payloads(self, value: Any) -> Any:
        return encode_payload(value)

    @computed_field
    @property
    def duration_ms(self) -> int:
        if self.started_at is None or self.completed_at is None:
            return 0
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class RunState(BaseModel):
    """
    A single execution of a pipeline graph.

    `status` is refreshed by the scheduler through derive_status(); callers
    read outputs, missing outputs and the first failure from here.
    """

    run_id: str
    graph_id: str
    graph_version: str = "1"
    inputs: dict[str, dict[str, Any]] = Field(default_factory=dict)
    tasks: dict[str, TaskState] = Field(default_factory=dict)

    status: RunStatus = RunStatus.RUNNING
    cancelled: bool = False
    cancel_reason: str | None = None

    started_at: datetime = Field(default_factory=datetime.now)
    completed_at: datetime | None = None

    model_config = {"extra": "allow"}

    @field_validator("inputs", mode="before")
    @classmethod
    def _decode_inputs(cls, value: Any) -> Any:
        return decode_payload(value)

    @field_serializer("inputs", when_used="json")
    def _encode_inputs(self, value: Any) -> Any:
        return encode_payload(value)

    def derive_status(self) -> RunStatus:
        """
        Compute the run status from task states.

        Cancelled if cancelled; Running while any task is non-terminal;
        Failed if a required task failed or was skipped because of a failure;
        Completed otherwise.
        """
        if self.cancelled:
            return RunStatus.CANCELLED
        if any(not task.is_terminal for task in self.tasks.values()):
            return RunStatus.RUNNING
        for task in self.tasks.values():
            if task.required and task.status in (TaskStatus.FAILED, TaskStatus.SKIPPED):
                return RunStatus.FAILED
            if task.required and task.status == TaskStatus.CANCELLED:
                return RunStatus.CANCELLED
        return RunStatus.COMPLETED

    @property
    def is_finished(self) -> bool:
        return self.status != RunStatus.RUNNING

    @property
    def outputs(self) -> dict[str, dict[str, Any]]:
        """Output maps of every Completed task, keyed by node id."""
        return {
            node_id: dict(task.outputs or {})
            for node_id, task in self.tasks.items()
            if task.status == TaskStatus.COMPLETED
        }

    @property
    def missing_outputs(self) -> list[str]:
        """Node ids that have no output (not Completed)."""
        return sorted(
            node_id
            for node_id, task in self.tasks.items()
            if task.status != TaskStatus.COMPLETED
        )

    def tasks_with_status(self, *statuses: TaskStatus) -> list[TaskState]:
        return [task for task in self.tasks.values() if task.status in statuses]

    @property
    def failed_tasks(self) -> list[TaskState]:
        return self.tasks_with_status(TaskStatus.FAILED)

    @property
    def skipped_tasks(self) -> list[TaskState]:
        return self.tasks_with_status(TaskStatus.SKIPPED)

    @property
    def first_failure(self) -> TaskState | None:
        """The earliest task to fail terminally, if any."""
        failed = self.failed_tasks
        if not failed:
            return None
        return min(failed, key=lambda t: (t.completed_at or datetime.max, t.layer, t.node_id))

    def progress_summary(self) -> dict[str, Any]:
        """Counts per status and overall completion percentage."""
        counts = {status.value: 0 for status in TaskStatus}
        for task in self.tasks.values():
            counts[task.status.value] += 1
        total = len(self.tasks)
        finished = sum(1 for task in self.tasks.values() if task.is_terminal)
        return {
            "total_tasks": total,
            "completed_tasks": counts[TaskStatus.COMPLETED],
            "running_tasks": counts[TaskStatus.RUNNING],
            "failed_tasks": counts[TaskStatus.FAILED],
            "skipped_tasks": counts[TaskStatus.SKIPPED],
            "cancelled_tasks": counts[TaskStatus.CANCELLED],
            "by_status": counts,
            "percentage": (counts[TaskStatus.COMPLETED] / total * 100) if total else 0.0,
            "finished_percentage": (finished / total * 100) if total else 0.0,
        }

    def metrics_summary(self) -> dict[str, Any]:
        """Aggregate executor metrics over Completed tasks."""
        completed = self.tasks_with_status(TaskStatus.COMPLETED)
        executed = [t for t in completed if not t.cache_hit]
        return {
            "duration_ms": sum(t.duration_ms for t in executed),
            "tokens_used": sum(t.metrics.get("tokens_used", 0) or 0 for t in executed),
            "cost": sum(t.metrics.get("cost", 0.0) or 0.0 for t in executed),
            "cache_hits": sum(1 for t in completed if t.cache_hit),
            "total_retries": sum(max(0, t.attempt - 1) for t in self.tasks.values()),
        }

    def failure_report(self) -> dict[str, Any] | None:
        """First fatal cause plus the full set of skipped downstream tasks."""
        first = self.first_failure
        if first is None:
            return None
        return {
            "node_id": first.node_id,
            "error": first.last_error.model_dump(mode="json") if first.last_error else None,
            "attempts": first.attempt,
            "failed_tasks": [t.node_id for t in self.failed_tasks],
            "skipped_tasks": sorted(t.node_id for t in self.skipped_tasks),
        }
