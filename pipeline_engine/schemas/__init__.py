"""Execution state schemas."""

from pipeline_engine.schemas.checkpoint import RunHeader, RunSummary, TaskCheckpoint
from pipeline_engine.schemas.task_state import (
    TERMINAL_STATUSES,
    ErrorKind,
    RunState,
    RunStatus,
    TaskError,
    TaskState,
    TaskStatus,
)

__all__ = [
    "TERMINAL_STATUSES",
    "ErrorKind",
    "RunState",
    "RunStatus",
    "TaskError",
    "TaskState",
    "TaskStatus",
    "RunHeader",
    "RunSummary",
    "TaskCheckpoint",
]
