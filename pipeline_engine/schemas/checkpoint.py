"""
Checkpoint Schema - Persisted task snapshots for resumability.

A checkpoint is written after every terminal or retrying transition of a
task, and whenever an executor saves a resumable blob mid-attempt. The
latest checkpoint per task, together with the run header, is enough to
rebuild a RunState after a restart.
"""

from datetime import datetime

from pydantic import BaseModel, Field, field_serializer, field_validator

from pipeline_engine.schemas.task_state import (
    RunState,
    TaskState,
    TaskStatus,
    decode_payload,
    encode_payload,
)


class TaskCheckpoint(BaseModel):
    """Snapshot of one task's state at one point of a run."""

    # Identity
    checkpoint_id: str  # Format: cp_{status}_{task_id}_{timestamp}
    run_id: str
    task_id: str

    created_at: str  # ISO 8601 format
    state: TaskState

    model_config = {"extra": "allow"}

    @classmethod
    def create(cls, run_id: str, task_id: str, state: TaskState) -> "TaskCheckpoint":
        """Create a checkpoint with generated ID and timestamp."""
        now = datetime.now()
        return cls(
            checkpoint_id=f"cp_{state.status.value}_{task_id}_{now.strftime('%Y%m%d_%H%M%S_%f')}",
            run_id=run_id,
            task_id=task_id,
            created_at=now.isoformat(),
            state=state.model_copy(deep=True),
        )


class RunHeader(BaseModel):
    """Run-level record: everything in RunState except the tasks."""

    run_id: str
    graph_id: str
    graph_version: str = "1"
    inputs: dict = Field(default_factory=dict)
    status: str = "running"
    cancelled: bool = False
    cancel_reason: str | None = None
    started_at: datetime
    completed_at: datetime | None = None
    updated_at: str = Field(default_factory=lambda: datetime.now().isoformat())

    model_config = {"extra": "allow"}

    @field_validator("inputs", mode="before")
    @classmethod
    def _decode_inputs(cls, value):
        return decode_payload(value)

    @field_serializer("inputs", when_used="json")
    def _encode_inputs(self, value):
        return encode_payload(value)

    @classmethod
    def from_run(cls, run: RunState) -> "RunHeader":
        return cls(
            run_id=run.run_id,
            graph_id=run.graph_id,
            graph_version=run.graph_version,
            inputs=run.inputs,
            status=run.status.value,
            cancelled=run.cancelled,
            cancel_reason=run.cancel_reason,
            started_at=run.started_at,
            completed_at=run.completed_at,
        )

    def to_run(self, tasks: dict[str, TaskState]) -> RunState:
        return RunState(
            run_id=self.run_id,
            graph_id=self.graph_id,
            graph_version=self.graph_version,
            inputs=self.inputs,
            tasks=tasks,
            status=self.status,
            cancelled=self.cancelled,
            cancel_reason=self.cancel_reason,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )


class RunSummary(BaseModel):
    """Lightweight run listing entry."""

    run_id: str
    graph_id: str
    status: str
    started_at: datetime
    completed_at: datetime | None = None
    task_counts: dict[str, int] = Field(default_factory=dict)

    @classmethod
    def from_run(cls, run: RunState) -> "RunSummary":
        counts = {status.value: 0 for status in TaskStatus}
        for task in run.tasks.values():
            counts[task.status.value] += 1
        return cls(
            run_id=run.run_id,
            graph_id=run.graph_id,
            status=run.status.value,
            started_at=run.started_at,
            completed_at=run.completed_at,
            task_counts={k: v for k, v in counts.items() if v},
        )
