"""
Checkpoint Store - Persists run headers and per-task checkpoints.

The engine only talks to the abstract CheckpointStore; hosts map it onto
their database of record. Two adapters ship with the engine:

- InMemoryCheckpointStore: process-local, for tests and ephemeral runs
- FileCheckpointStore: JSON files with atomic writes

File layout:
    {base_path}/runs/{run_id}/
        run.json                 # RunHeader
        tasks/{task_id}.json     # Latest TaskCheckpoint per task
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from urllib.parse import quote, unquote

from pipeline_engine.schemas.checkpoint import RunHeader, RunSummary, TaskCheckpoint
from pipeline_engine.schemas.task_state import RunState, TaskState
from pipeline_engine.utils.io import atomic_write

logger = logging.getLogger(__name__)


class CheckpointStore(ABC):
    """Storage interface for resumable run state."""

    @abstractmethod
    async def save_run(self, run: RunState) -> None:
        """Persist the run header (everything but the task states)."""

    @abstractmethod
    async def save(self, run_id: str, task_id: str, state: TaskState) -> None:
        """Persist the current state of one task."""

    @abstractmethod
    async def load(self, run_id: str) -> RunState | None:
        """Rebuild a RunState from the header and latest task checkpoints."""

    @abstractmethod
    async def list_runs(self) -> list[RunSummary]:
        """List known runs, oldest first."""

    async def save_all(self, run: RunState) -> None:
        """Persist the header and every task state."""
        await self.save_run(run)
        for task_id, state in run.tasks.items():
            await self.save(run.run_id, task_id, state)


class InMemoryCheckpointStore(CheckpointStore):
    """Process-local store. Keeps every checkpoint for inspection."""

    def __init__(self):
        self._headers: dict[str, RunHeader] = {}
        self._latest: dict[str, dict[str, TaskCheckpoint]] = {}
        self._history: dict[str, list[TaskCheckpoint]] = {}

    async def save_run(self, run: RunState) -> None:
        self._headers[run.run_id] = RunHeader.from_run(run)
        self._latest.setdefault(run.run_id, {})

    async def save(self, run_id: str, task_id: str, state: TaskState) -> None:
        checkpoint = TaskCheckpoint.create(run_id, task_id, state)
        self._latest.setdefault(run_id, {})[task_id] = checkpoint
        self._history.setdefault(run_id, []).append(checkpoint)

    async def load(self, run_id: str) -> RunState | None:
        header = self._headers.get(run_id)
        if header is None:
            return None
        tasks = {
            task_id: cp.state.model_copy(deep=True)
            for task_id, cp in self._latest.get(run_id, {}).items()
        }
        return header.to_run(tasks)

    async def list_runs(self) -> list[RunSummary]:
        summaries = []
        for run_id in self._headers:
            run = await self.load(run_id)
            if run is not None:
                summaries.append(RunSummary.from_run(run))
        return sorted(summaries, key=lambda s: s.started_at)

    def history(self, run_id: str, task_id: str | None = None) -> list[TaskCheckpoint]:
        """Every checkpoint written for a run (optionally one task), in order."""
        checkpoints = self._history.get(run_id, [])
        if task_id is not None:
            checkpoints = [cp for cp in checkpoints if cp.task_id == task_id]
        return list(checkpoints)


class FileCheckpointStore(CheckpointStore):
    """
    JSON file store with atomic writes.

    Blocking file I/O runs in a worker thread; writes for one run are
    serialized by a per-run lock.
    """

    def __init__(self, base_path: Path | str):
        self.base_path = Path(base_path)
        self.runs_dir = self.base_path / "runs"
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, run_id: str) -> asyncio.Lock:
        if run_id not in self._locks:
            self._locks[run_id] = asyncio.Lock()
        return self._locks[run_id]

    def run_path(self, run_id: str) -> Path:
        return self.runs_dir / quote(run_id, safe="")

    def _task_path(self, run_id: str, task_id: str) -> Path:
        return self.run_path(run_id) / "tasks" / f"{quote(task_id, safe='')}.json"

    async def save_run(self, run: RunState) -> None:
        header = RunHeader.from_run(run)

        def _write():
            with atomic_write(self.run_path(run.run_id) / "run.json") as f:
                f.write(header.model_dump_json(indent=2))

        async with self._lock(run.run_id):
            await asyncio.to_thread(_write)
        logger.debug(f"Saved run header {run.run_id} ({header.status})")

    async def save(self, run_id: str, task_id: str, state: TaskState) -> None:
        checkpoint = TaskCheckpoint.create(run_id, task_id, state)

        def _write():
            with atomic_write(self._task_path(run_id, task_id)) as f:
                f.write(checkpoint.model_dump_json(indent=2))

        async with self._lock(run_id):
            await asyncio.to_thread(_write)
        logger.debug(f"Saved checkpoint {checkpoint.checkpoint_id}")

    async def load(self, run_id: str) -> RunState | None:
        def _read() -> RunState | None:
            run_dir = self.run_path(run_id)
            header_path = run_dir / "run.json"
            if not header_path.exists():
                return None
            header = RunHeader.model_validate_json(header_path.read_text(encoding="utf-8"))

            tasks: dict[str, TaskState] = {}
            tasks_dir = run_dir / "tasks"
            if tasks_dir.is_dir():
                for path in sorted(tasks_dir.glob("*.json")):
                    checkpoint = TaskCheckpoint.model_validate_json(
                        path.read_text(encoding="utf-8")
                    )
                    tasks[checkpoint.task_id] = checkpoint.state
            return header.to_run(tasks)

        return await asyncio.to_thread(_read)

    async def list_runs(self) -> list[RunSummary]:
        if not self.runs_dir.is_dir():
            return []

        summaries = []
        for run_dir in sorted(self.runs_dir.iterdir()):
            if not run_dir.is_dir():
                continue
            try:
                run = await self.load(unquote(run_dir.name))
            except ValueError as e:
                logger.warning(f"Skipping unreadable run {run_dir.name}: {e}")
                continue
            if run is not None:
                summaries.append(RunSummary.from_run(run))
        return sorted(summaries, key=lambda s: s.started_at)
