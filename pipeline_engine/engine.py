"""
Pipeline Engine - Facade over validation, planning, scheduling and resume.

The engine owns an arena of registered graphs and runs; nothing is held in
module-level state, so several engines can coexist in one process.

    engine = PipelineEngine(registry)
    run = await engine.run(graph, inputs={"prompt": {"text": "a red fox"}})
    if run.status == RunStatus.FAILED:
        print(run.failure_report())

Background runs:

    run_id = await engine.start(graph, inputs)
    engine.cancel(run_id, "user aborted")
    run = await engine.wait(run_id)
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from pipeline_engine.config import (
    EngineConfig,
    build_cache,
    build_checkpoint_store,
    build_emitter,
    build_retry_policy,
)
from pipeline_engine.errors import (
    GraphConflictError,
    GraphValidationError,
    RunNotFoundError,
    RunStateError,
)
from pipeline_engine.graph.model import PipelineGraph
from pipeline_engine.graph.planner import ExecutionPlan, ExecutionPlanner
from pipeline_engine.graph.validator import GraphValidator, ValidationResult
from pipeline_engine.runtime.cache import ResultCache
from pipeline_engine.runtime.cancellation import CancellationToken
from pipeline_engine.runtime.event_bus import ProgressEmitter
from pipeline_engine.runtime.executor_registry import ExecutorRegistry
from pipeline_engine.runtime.retry import ErrorClassifier, RetryPolicy
from pipeline_engine.runtime.scheduler import SchedulerOptions, TaskScheduler
from pipeline_engine.schemas.checkpoint import RunSummary
from pipeline_engine.schemas.task_state import RunState, RunStatus, TaskStatus
from pipeline_engine.storage.checkpoint_store import CheckpointStore

logger = logging.getLogger(__name__)

# Task statuses reset by retry_run()
RETRIABLE_STATUSES = (TaskStatus.FAILED, TaskStatus.SKIPPED, TaskStatus.CANCELLED)


class PipelineEngine:
    """
    Validates, plans and runs pipeline graphs.

    Components not passed in are built from the EngineConfig. A checkpoint
    store is always present (in-memory by default) so runs can be inspected,
    resumed and retried.
    """

    def __init__(
        self,
        registry: ExecutorRegistry,
        config: EngineConfig | None = None,
        cache: ResultCache | None = None,
        checkpoint_store: CheckpointStore | None = None,
        emitter: ProgressEmitter | None = None,
        retry_policy: RetryPolicy | None = None,
        classifier: ErrorClassifier | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.registry = registry
        self.config = config or EngineConfig()
        self.cache = cache if cache is not None else build_cache(self.config)
        self.checkpoint_store = checkpoint_store or build_checkpoint_store(self.config)
        self.emitter = emitter or build_emitter(self.config)
        self.retry_policy = retry_policy or build_retry_policy(self.config)

        self.validator = GraphValidator(registry, strict_orphans=self.config.strict_orphans)
        self.planner = ExecutionPlanner()
        self.scheduler = TaskScheduler(
            registry,
            retry_policy=self.retry_policy,
            classifier=classifier,
            cache=self.cache,
            checkpoint_store=self.checkpoint_store,
            emitter=self.emitter,
            sleep=sleep,
        )

        self._graphs: dict[tuple[str, str], PipelineGraph] = {}
        self._runs: dict[str, RunState] = {}
        self._active: dict[str, asyncio.Task] = {}
        self._tokens: dict[str, CancellationToken] = {}

    # === GRAPHS ===

    def register_graph(self, graph: PipelineGraph) -> PipelineGraph:
        """
        Add a graph to the arena.

        Re-registering an identical graph is a no-op; a different graph
        under the same (id, version) raises GraphConflictError.
        """
        key = (graph.id, graph.version)
        existing = self._graphs.get(key)
        if existing is not None:
            if existing != graph:
                raise GraphConflictError(
                    f"Graph '{graph.id}' version {graph.version} is already registered "
                    "with different contents; bump the version"
                )
            return existing
        self._graphs[key] = graph
        logger.debug(f"Registered graph '{graph.id}' v{graph.version}")
        return graph

    def get_graph(self, graph_id: str, version: str | None = None) -> PipelineGraph | None:
        """Look up a graph; without a version the latest registration wins."""
        if version is not None:
            return self._graphs.get((graph_id, version))
        matches = [g for (gid, _), g in self._graphs.items() if gid == graph_id]
        return matches[-1] if matches else None

    def list_graphs(self) -> list[PipelineGraph]:
        return list(self._graphs.values())

    def validate(
        self,
        graph: PipelineGraph,
        inputs: dict[str, dict[str, Any]] | None = None,
    ) -> ValidationResult:
        return self.validator.validate(graph, provided_inputs=inputs)

    def plan(
        self,
        graph: PipelineGraph,
        inputs: dict[str, dict[str, Any]] | None = None,
    ) -> ExecutionPlan:
        """Validate then plan; raises GraphValidationError on any error."""
        result = self.validate(graph, inputs)
        if not result.valid:
            raise GraphValidationError(result)
        return self.planner.plan(graph)

    # === RUNS ===

    async def run(
        self,
        graph: PipelineGraph,
        inputs: dict[str, dict[str, Any]] | None = None,
        **options: Any,
    ) -> RunState:
        """Run a graph and wait for the final RunState."""
        run_id = await self.start(graph, inputs, **options)
        return await self.wait(run_id)

    async def start(
        self,
        graph: PipelineGraph,
        inputs: dict[str, dict[str, Any]] | None = None,
        run_id: str | None = None,
        max_concurrency: int | None = None,
        per_task_timeout: float | None = None,
        cancellation_token: CancellationToken | None = None,
    ) -> str:
        """
        Validate, plan and start a run in the background.

        Args:
            graph: Graph to run
            inputs: Initial inputs {node_id: {port: value}}
            run_id: Explicit run id (generated when omitted)
            max_concurrency: Override the configured concurrency bound
            per_task_timeout: Override the configured task timeout (seconds)
            cancellation_token: External token; engine.cancel() works either way

        Returns:
            Run ID for wait(), cancel() and get_run()

        Raises:
            GraphValidationError: the graph has structural errors
        """
        inputs = inputs or {}
        plan = self.plan(graph, inputs)
        self.register_graph(graph)

        run_id = run_id or f"run_{uuid.uuid4().hex[:12]}"
        if run_id in self._active or run_id in self._runs:
            raise RunStateError(f"Run '{run_id}' already exists")

        options = self._options(run_id, max_concurrency, per_task_timeout, cancellation_token)
        self._launch(run_id, graph, plan, inputs, options, run_state=None)
        return run_id

    def _options(
        self,
        run_id: str,
        max_concurrency: int | None = None,
        per_task_timeout: float | None = None,
        cancellation_token: CancellationToken | None = None,
    ) -> SchedulerOptions:
        return SchedulerOptions(
            run_id=run_id,
            max_concurrency=max_concurrency or self.config.max_concurrency,
            per_task_timeout=(
                per_task_timeout if per_task_timeout is not None else self.config.per_task_timeout
            ),
            cancellation_token=cancellation_token or CancellationToken(),
            default_max_retries=self.config.max_retries,
        )

    def _launch(
        self,
        run_id: str,
        graph: PipelineGraph,
        plan: ExecutionPlan,
        inputs: dict[str, dict[str, Any]],
        options: SchedulerOptions,
        run_state: RunState | None,
    ) -> None:
        self._tokens[run_id] = options.cancellation_token
        self._active[run_id] = asyncio.create_task(
            self._execute(run_id, graph, plan, inputs, options, run_state),
            name=f"pipeline-run-{run_id}",
        )

    async def _execute(
        self,
        run_id: str,
        graph: PipelineGraph,
        plan: ExecutionPlan,
        inputs: dict[str, dict[str, Any]],
        options: SchedulerOptions,
        run_state: RunState | None,
    ) -> RunState:
        try:
            state = await self.scheduler.run(graph, plan, inputs, options, run_state=run_state)
            self._runs[run_id] = state
            return state
        finally:
            self._active.pop(run_id, None)
            self._tokens.pop(run_id, None)

    async def wait(self, run_id: str, timeout: float | None = None) -> RunState:
        """
        Wait for a run to finish.

        Raises:
            TimeoutError: the run is still going after `timeout` seconds
            RunNotFoundError: the run id is unknown
        """
        task = self._active.get(run_id)
        if task is not None:
            # Shielded so a timeout here does not cancel the run itself
            return await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        run = await self.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def cancel(self, run_id: str, reason: str = "Cancelled by user") -> bool:
        """
        Cancel an active run.

        Returns:
            True if the run was active and not already cancelled
        """
        token = self._tokens.get(run_id)
        if token is None:
            return False
        return token.cancel(reason)

    def is_active(self, run_id: str) -> bool:
        return run_id in self._active

    async def resume(
        self,
        run_id: str,
        graph: PipelineGraph | None = None,
        **options: Any,
    ) -> RunState:
        """
        Continue a run from its checkpoints.

        Completed tasks keep their outputs; every non-terminal task is
        dispatched again. The graph comes from the argument or from the
        arena and must match the run's graph id and version.
        """
        run = await self._load_for_restart(run_id, graph)
        graph = self._graph_for(run, graph)
        plan = self.plan(graph, run.inputs)

        pending = [t.node_id for t in run.tasks.values() if not t.is_terminal]
        logger.info(f"🔄 Resuming run {run_id}: {len(pending)} task(s) left")

        opts = self._options(run_id, **options)
        self._launch(run_id, graph, plan, run.inputs, opts, run_state=run)
        return await self.wait(run_id)

    async def retry_run(
        self,
        run_id: str,
        graph: PipelineGraph | None = None,
        **options: Any,
    ) -> RunState:
        """
        Re-run the failed, skipped and cancelled tasks of a finished run.

        Their attempt counters and errors are reset; Completed tasks and their
        outputs are reused.
        """
        run = await self._load_for_restart(run_id, graph)
        reset = []
        for task in run.tasks.values():
            if task.status in RETRIABLE_STATUSES:
                task.status = TaskStatus.PENDING
                task.attempt = 0
                task.last_error = None
                task.retry_delays = []
                task.skipped_because = None
                task.outputs = None
                task.metrics = {}
                task.progress = 0.0
                task.started_at = None
                task.completed_at = None
                reset.append(task.node_id)
        run.cancelled = False
        run.cancel_reason = None
        logger.info(f"↻ Retrying run {run_id}: reset {sorted(reset)}")

        await self.checkpoint_store.save_all(run)
        self._runs.pop(run_id, None)
        return await self.resume(run_id, graph, **options)

    async def _load_for_restart(self, run_id: str, graph: PipelineGraph | None) -> RunState:
        if run_id in self._active:
            raise RunStateError(f"Run '{run_id}' is still active")
        run = await self.checkpoint_store.load(run_id)
        if run is None:
            cached = self._runs.get(run_id)
            run = cached.model_copy(deep=True) if cached is not None else None
        if run is None:
            raise RunNotFoundError(run_id)
        self._runs.pop(run_id, None)
        return run

    def _graph_for(self, run: RunState, graph: PipelineGraph | None) -> PipelineGraph:
        if graph is None:
            graph = self.get_graph(run.graph_id, run.graph_version)
            if graph is None:
                raise RunStateError(
                    f"Graph '{run.graph_id}' v{run.graph_version} of run '{run.run_id}' "
                    "is not registered; pass it explicitly"
                )
        elif (graph.id, graph.version) != (run.graph_id, run.graph_version):
            raise RunStateError(
                f"Run '{run.run_id}' belongs to graph '{run.graph_id}' v{run.graph_version}, "
                f"not '{graph.id}' v{graph.version}"
            )
        return self.register_graph(graph)

    # === QUERIES ===

    async def get_run(self, run_id: str) -> RunState | None:
        """Final state of a finished run, otherwise its latest checkpointed state."""
        if run_id in self._runs:
            return self._runs[run_id]
        return await self.checkpoint_store.load(run_id)

    async def get_status(self, run_id: str) -> RunStatus:
        if run_id in self._active:
            return RunStatus.RUNNING
        run = await self.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run.status

    async def list_runs(self) -> list[RunSummary]:
        return await self.checkpoint_store.list_runs()

    def get_stats(self) -> dict:
        return {
            "graphs": len(self._graphs),
            "active_runs": len(self._active),
            "finished_runs": len(self._runs),
            "cache": self.cache.stats() if self.cache is not None else None,
            "events": self.emitter.get_stats(),
        }

    async def shutdown(self, reason: str = "Engine shutting down") -> None:
        """Cancel every active run and wait for them to settle."""
        for run_id in list(self._active):
            self.cancel(run_id, reason)
        tasks = list(self._active.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.emitter.close()
