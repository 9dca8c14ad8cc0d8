"""
Task Scheduler - Runs an execution plan with bounded concurrency.

One coordinator coroutine owns the RunState. Workers (one asyncio task per
dispatched attempt) never touch task state: they report started, progress,
checkpoint and finished messages through the coordinator's inbox, and the
coordinator applies each message, emits the matching event and writes
checkpoints.

    dispatch (Ready, layer/node order)
        → worker: cache lookup → semaphore → executor (timeout, cancellation)
        → inbox → coordinator: Completed | Retrying (backoff timer) | Failed
                                 └─ Failed → descendants Skipped
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from pipeline_engine.graph.model import NodeSpec, PipelineGraph
from pipeline_engine.graph.planner import ExecutionPlan
from pipeline_engine.observability import set_trace_context, trace_scope
from pipeline_engine.runtime.cache import ResultCache, UncacheableError, compute_cache_key
from pipeline_engine.runtime.cancellation import CancellationToken
from pipeline_engine.runtime.event_bus import EventType, PipelineEvent, ProgressEmitter
from pipeline_engine.runtime.executor_registry import (
    ExecutionContext,
    ExecutorRegistry,
    NodeExecutor,
    normalize_output,
)
from pipeline_engine.runtime.retry import ErrorClassifier, RetryPolicy
from pipeline_engine.schemas.task_state import (
    ErrorKind,
    RunState,
    RunStatus,
    TaskError,
    TaskState,
    TaskStatus,
)
from pipeline_engine.storage.checkpoint_store import CheckpointStore

logger = logging.getLogger(__name__)

# How long a cancelled executor gets to unwind before it is abandoned
CANCEL_GRACE_SECONDS = 5.0


@dataclass
class SchedulerOptions:
    """Per-run execution options."""

    run_id: str | None = None
    max_concurrency: int = 4
    per_task_timeout: float | None = None  # Node timeout_seconds wins
    cancellation_token: CancellationToken | None = None
    default_max_retries: int = 3

    def __post_init__(self):
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")


class _MessageKind(StrEnum):
    STARTED = "started"
    PROGRESS = "progress"
    CHECKPOINT = "checkpoint"
    FINISHED = "finished"
    RETRY_DUE = "retry_due"
    CANCEL = "cancel"


@dataclass
class _Message:
    kind: _MessageKind
    node_id: str | None = None
    attempt: int = 0
    payload: dict[str, Any] = field(default_factory=dict)


class TaskScheduler:
    """
    Executes plans against an executor registry.

    The scheduler is stateless between runs; every run() call gets its own
    coordinator, so one scheduler can serve concurrent runs.
    """

    def __init__(
        self,
        registry: ExecutorRegistry,
        retry_policy: RetryPolicy | None = None,
        classifier: ErrorClassifier | None = None,
        cache: ResultCache | None = None,
        checkpoint_store: CheckpointStore | None = None,
        emitter: ProgressEmitter | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.registry = registry
        self.retry_policy = retry_policy or RetryPolicy()
        self.classifier = classifier or ErrorClassifier()
        self.cache = cache
        self.checkpoint_store = checkpoint_store
        self.emitter = emitter
        self.sleep = sleep

    async def run(
        self,
        graph: PipelineGraph,
        plan: ExecutionPlan,
        inputs: dict[str, dict[str, Any]] | None = None,
        options: SchedulerOptions | None = None,
        run_state: RunState | None = None,
    ) -> RunState:
        """
        Execute a plan to completion, failure or cancellation.

        Args:
            graph: Validated graph
            plan: Layers computed for `graph`
            inputs: Initial values for unconnected input ports, keyed by node id
            options: Run options (run id, concurrency, timeout, cancellation)
            run_state: Restored state to resume; only non-terminal tasks run

        Returns:
            The final RunState (never raises for task failures)
        """
        coordinator = _RunCoordinator(
            self, graph, plan, inputs or {}, options or SchedulerOptions()
        )
        return await coordinator.run(run_state)


class _RunCoordinator:
    """Single-run coordinator. Only this object mutates the RunState."""

    def __init__(
        self,
        scheduler: TaskScheduler,
        graph: PipelineGraph,
        plan: ExecutionPlan,
        inputs: dict[str, dict[str, Any]],
        options: SchedulerOptions,
    ):
        self.scheduler = scheduler
        self.graph = graph
        self.plan = plan
        self.inputs = inputs
        self.options = options
        self.token = options.cancellation_token or CancellationToken()

        self.run_state: RunState
        self._layers = plan.layer_index()
        self._inbox: asyncio.Queue[_Message] = asyncio.Queue()
        self._semaphore = asyncio.Semaphore(options.max_concurrency)
        self._workers: dict[str, asyncio.Task] = {}
        self._timers: dict[str, asyncio.Task] = {}
        self._cancelling = False

    # === LIFECYCLE ===

    async def run(self, restored: RunState | None) -> RunState:
        resumed = restored is not None
        self.run_state = self._prepare(restored)
        run = self.run_state

        with trace_scope(run_id=run.run_id, graph_id=self.graph.id):
            return await self._drive(run, resumed)

    async def _drive(self, run: RunState, resumed: bool) -> RunState:
        self.token.add_callback(self._on_cancel)
        try:
            logger.info(
                f"🚀 {'Resuming' if resumed else 'Starting'} run {run.run_id} "
                f"of graph '{self.graph.id}' ({len(run.tasks)} tasks, {len(self.plan)} layers)"
            )
            await self._save_run()
            self._emit(
                EventType.RUN_STARTED,
                data={
                    "graph_id": self.graph.id,
                    "graph_version": self.graph.version,
                    "resumed": resumed,
                    "total_tasks": len(run.tasks),
                    "layers": [list(layer) for layer in self.plan],
                },
            )

            if self.token.cancelled:
                await self._handle_cancel()
            await self._skip_blocked()
            self._dispatch_ready()

            while not self._settled():
                if self._idle():
                    await self._abandon_unreachable()
                    break
                message = await self._inbox.get()
                await self._handle(message)
                self._dispatch_ready()

            return await self._finish()
        finally:
            self.token.remove_callback(self._on_cancel)
            for timer in self._timers.values():
                timer.cancel()
            if self._workers:
                await self._abort_workers()

    async def _abort_workers(self) -> None:
        """Stop attempts still in flight when the coordinator is torn down early."""
        self.token.cancel("Run coordinator stopped")
        workers = list(self._workers.values())
        self._workers.clear()
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        logger.warning(
            f"⏹ Abandoned {len(workers)} in-flight task(s) of run {self.run_state.run_id}"
        )

    def _prepare(self, restored: RunState | None) -> RunState:
        if restored is None:
            run = RunState(
                run_id=self.options.run_id or f"run_{uuid.uuid4().hex[:12]}",
                graph_id=self.graph.id,
                graph_version=self.graph.version,
                inputs=self.inputs,
            )
        else:
            run = restored
            run.status = RunStatus.RUNNING
            run.completed_at = None
            run.cancelled = False
            run.cancel_reason = None
            if self.inputs and not run.inputs:
                run.inputs = self.inputs
            self.inputs = run.inputs

        for node in self.graph.nodes:
            task = run.tasks.get(node.id)
            if task is None:
                run.tasks[node.id] = TaskState(
                    node_id=node.id,
                    node_type=node.type,
                    layer=self._layers.get(node.id, 0),
                    required=node.required,
                    max_retries=node.max_retries or self.options.default_max_retries,
                )
                continue
            if task.is_terminal:
                continue
            # An attempt that was running when the process stopped never finished
            if task.status in (TaskStatus.RUNNING, TaskStatus.READY):
                task.attempt = max(0, task.attempt - 1)
            task.status = TaskStatus.PENDING
            task.progress = 0.0
            task.started_at = None
            task.completed_at = None

        return run

    async def _finish(self) -> RunState:
        run = self.run_state
        run.status = run.derive_status()
        run.completed_at = datetime.now()
        await self._save_run()

        summary = run.progress_summary()
        data: dict[str, Any] = {
            "status": run.status.value,
            "progress": summary,
            "metrics": run.metrics_summary(),
            "missing_outputs": run.missing_outputs,
        }
        if run.status == RunStatus.COMPLETED:
            logger.info(f"✓ Run {run.run_id} completed ({summary['total_tasks']} tasks)")
            self._emit(EventType.RUN_COMPLETED, data=data)
        elif run.status == RunStatus.CANCELLED:
            logger.info(f"⏹ Run {run.run_id} cancelled: {run.cancel_reason}")
            data["reason"] = run.cancel_reason
            self._emit(EventType.RUN_CANCELLED, data=data)
        else:
            report = run.failure_report()
            logger.error(
                f"✗ Run {run.run_id} failed at '{report['node_id'] if report else '?'}' "
                f"({summary['failed_tasks']} failed, {summary['skipped_tasks']} skipped)"
            )
            data["failure"] = report
            self._emit(EventType.RUN_FAILED, data=data)
        return run

    def _settled(self) -> bool:
        return (
            not self._workers
            and not self._timers
            and all(task.is_terminal for task in self.run_state.tasks.values())
        )

    def _idle(self) -> bool:
        return not self._workers and not self._timers and self._inbox.empty()

    async def _abandon_unreachable(self) -> None:
        """Skip tasks that can never become ready."""
        for task in sorted(self.run_state.tasks.values(), key=self._order):
            if not task.is_terminal:
                logger.warning(f"⚠ Task '{task.node_id}' can never run; skipping it")
                await self._skip(task, because=None)

    # === DISPATCH ===

    def _order(self, task: TaskState) -> tuple[int, str]:
        return (task.layer, task.node_id)

    def _is_ready(self, task: TaskState) -> bool:
        return all(
            self.run_state.tasks[pred].status == TaskStatus.COMPLETED
            for pred in self.graph.predecessors(task.node_id)
        )

    def _dispatch_ready(self) -> None:
        if self._cancelling:
            return
        ready = [
            task
            for task in self.run_state.tasks.values()
            if task.status == TaskStatus.PENDING and self._is_ready(task)
        ]
        for task in sorted(ready, key=self._order):
            self._dispatch(task)

    def _dispatch(self, task: TaskState) -> None:
        node = self.graph.get_node(task.node_id)
        inputs = self._resolve_inputs(node)
        executor = self.scheduler.registry.get(node.type)

        task.status = TaskStatus.READY
        task.attempt += 1
        task.progress = 0.0
        task.cache_key = self._cache_key(node, executor, inputs)

        self._emit(
            EventType.TASK_QUEUED,
            task.node_id,
            {"attempt": task.attempt, "max_retries": task.max_retries, "layer": task.layer},
        )
        self._workers[task.node_id] = asyncio.create_task(
            self._work(node, executor, inputs, task.attempt, task.cache_key, task.checkpoint),
            name=f"{self.run_state.run_id}:{task.node_id}:{task.attempt}",
        )

    def _resolve_inputs(self, node: NodeSpec) -> dict[str, Any]:
        """Initial inputs for the node, overlaid with upstream outputs."""
        resolved = dict(self.inputs.get(node.id, {}))
        for conn in self.graph.get_incoming_connections(node.id):
            upstream = self.run_state.tasks[conn.source].outputs or {}
            if conn.source_port in upstream:
                resolved[conn.target_port] = upstream[conn.source_port]
        return resolved

    def _cache_key(
        self, node: NodeSpec, executor: NodeExecutor, inputs: dict[str, Any]
    ) -> str | None:
        if self.scheduler.cache is None or not getattr(executor, "cacheable", True):
            return None
        try:
            return compute_cache_key(
                node.type, node.config, inputs, str(getattr(executor, "cache_version", "") or "")
            )
        except UncacheableError as e:
            logger.debug(f"Task '{node.id}' bypasses the cache: {e}")
            return None

    # === WORKER ===

    def _post(self, kind: _MessageKind, node_id: str | None = None, attempt: int = 0, **payload):
        self._inbox.put_nowait(_Message(kind, node_id, attempt, payload))

    async def _work(
        self,
        node: NodeSpec,
        executor: NodeExecutor,
        inputs: dict[str, Any],
        attempt: int,
        cache_key: str | None,
        checkpoint: Any,
    ) -> None:
        set_trace_context(node_id=node.id, attempt=attempt)
        outcome: dict[str, Any]
        try:
            outcome = await self._attempt(node, executor, inputs, attempt, cache_key, checkpoint)
        except Exception as e:
            logger.exception(f"Unexpected scheduler error in task '{node.id}'")
            outcome = {"error": self.scheduler.classifier.classify(e, attempt)}
        self._post(_MessageKind.FINISHED, node.id, attempt, **outcome)

    async def _attempt(
        self,
        node: NodeSpec,
        executor: NodeExecutor,
        inputs: dict[str, Any],
        attempt: int,
        cache_key: str | None,
        checkpoint: Any,
    ) -> dict[str, Any]:
        cache = self.scheduler.cache

        if cache_key is not None and cache is not None and not self.token.cancelled:
            try:
                cached = await cache.get(cache_key)
            except Exception as e:
                logger.warning(f"⚠ Cache lookup failed for '{node.id}': {e}")
                cached = None
            if cached is not None and self._missing_ports(node, cached):
                logger.debug(f"Cached result for '{node.id}' lacks declared ports; ignoring it")
            elif cached is not None:
                self._post(_MessageKind.STARTED, node.id, attempt)
                return {"outputs": cached, "cache_hit": True}

        async with self._semaphore:
            if self.token.cancelled:
                return {"cancelled": True}
            self._post(_MessageKind.STARTED, node.id, attempt)

            ctx = ExecutionContext(
                run_id=self.run_state.run_id,
                node_id=node.id,
                node_type=node.type,
                attempt=attempt,
                cancellation_token=self.token,
                checkpoint=checkpoint,
                _on_progress=lambda f: self._post(
                    _MessageKind.PROGRESS, node.id, attempt, progress=f
                ),
                _on_checkpoint=lambda blob: self._post(
                    _MessageKind.CHECKPOINT, node.id, attempt, checkpoint=blob
                ),
            )
            timeout = node.timeout_seconds or self.options.per_task_timeout
            started = datetime.now()

            exec_task = asyncio.ensure_future(executor.execute(dict(node.config), inputs, ctx))
            cancel_wait = asyncio.ensure_future(self.token.wait())
            try:
                done, _ = await asyncio.wait(
                    {exec_task, cancel_wait},
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            except asyncio.CancelledError:
                exec_task.cancel()
                await asyncio.wait({exec_task}, timeout=CANCEL_GRACE_SECONDS)
                raise
            finally:
                cancel_wait.cancel()

            if exec_task not in done:
                exec_task.cancel()
                await asyncio.wait({exec_task}, timeout=CANCEL_GRACE_SECONDS)
                if self.token.cancelled:
                    return {"cancelled": True}
                logger.warning(f"⏱ Task '{node.id}' timed out after {timeout}s")
                return {"error": self.scheduler.classifier.timeout(timeout, attempt)}

            try:
                result = exec_task.result()
            except asyncio.CancelledError:
                if self.token.cancelled:
                    return {"cancelled": True}
                return {
                    "error": TaskError(
                        code="EXECUTION_ERROR",
                        message="Executor was cancelled",
                        kind=ErrorKind.FATAL,
                        attempt=attempt,
                    )
                }
            except Exception as e:
                return {
                    "error": self.scheduler.classifier.classify(e, attempt),
                    "checkpoint": getattr(e, "checkpoint", None),
                }

        latency_ms = int((datetime.now() - started).total_seconds() * 1000)
        try:
            output = normalize_output(result)
        except TypeError as e:
            return {"error": self._invalid_output(str(e), attempt)}

        missing = self._missing_ports(node, output.outputs)
        if missing:
            return {
                "error": self._invalid_output(
                    f"Executor did not produce declared output ports {missing}", attempt
                )
            }

        if cache_key is not None and cache is not None:
            try:
                await cache.put(cache_key, output.outputs)
            except Exception as e:
                logger.warning(f"⚠ Cache write failed for '{node.id}': {e}")

        return {
            "outputs": output.outputs,
            "metrics": {"latency_ms": latency_ms, **output.metrics},
            "checkpoint": output.checkpoint,
        }

    def _missing_ports(self, node: NodeSpec, outputs: dict[str, Any]) -> list[str]:
        return [port.name for port in node.outputs if port.name not in outputs]

    def _invalid_output(self, message: str, attempt: int) -> TaskError:
        return TaskError(
            code="INVALID_OUTPUT", message=message, kind=ErrorKind.FATAL, attempt=attempt
        )

    # === COORDINATOR ===

    async def _handle(self, message: _Message) -> None:
        if message.kind == _MessageKind.CANCEL:
            await self._handle_cancel()
            return
        if message.kind == _MessageKind.RETRY_DUE:
            self._timers.pop(message.node_id, None)
            task = self.run_state.tasks[message.node_id]
            if task.status == TaskStatus.RETRYING and not self._cancelling:
                task.status = TaskStatus.PENDING
            return

        task = self.run_state.tasks[message.node_id]
        if message.kind == _MessageKind.FINISHED:
            self._workers.pop(message.node_id, None)

        # Messages from a superseded attempt, or for a task already settled
        if message.attempt != task.attempt or task.is_terminal:
            return

        if message.kind == _MessageKind.STARTED:
            task.status = TaskStatus.RUNNING
            task.started_at = datetime.now()
            self._emit(
                EventType.TASK_STARTED,
                task.node_id,
                {"attempt": task.attempt, "max_retries": task.max_retries},
            )
        elif message.kind == _MessageKind.PROGRESS:
            if task.status == TaskStatus.RUNNING:
                task.progress = message.payload["progress"]
                self._emit(EventType.TASK_PROGRESS, task.node_id, {"progress": task.progress})
        elif message.kind == _MessageKind.CHECKPOINT:
            task.checkpoint = message.payload["checkpoint"]
            await self._save(task)
        elif message.kind == _MessageKind.FINISHED:
            await self._handle_finished(task, message.payload)

    async def _handle_finished(self, task: TaskState, outcome: dict[str, Any]) -> None:
        if outcome.get("cancelled"):
            await self._cancel_task(task)
        elif "error" in outcome:
            await self._handle_error(task, outcome["error"], outcome.get("checkpoint"))
        else:
            await self._complete(task, outcome)

    async def _complete(self, task: TaskState, outcome: dict[str, Any]) -> None:
        cache_hit = outcome.get("cache_hit", False)
        if task.started_at is None:
            task.started_at = datetime.now()
        task.status = TaskStatus.COMPLETED
        task.outputs = outcome["outputs"]
        task.cache_hit = cache_hit
        task.metrics = dict(outcome.get("metrics") or {})
        if outcome.get("checkpoint") is not None:
            task.checkpoint = outcome["checkpoint"]
        task.progress = 1.0
        task.completed_at = datetime.now()

        if cache_hit:
            self._emit(EventType.TASK_PROGRESS, task.node_id, {"progress": 1.0})
        logger.info(
            f"✓ Task '{task.node_id}' completed"
            + (" (cache hit)" if cache_hit else f" in {task.duration_ms}ms"),
            extra={"node_id": task.node_id, "cache_hit": cache_hit, "status": "completed"},
        )
        self._emit(
            EventType.TASK_COMPLETED,
            task.node_id,
            {
                "attempt": task.attempt,
                "cache_hit": cache_hit,
                "duration_ms": task.duration_ms,
                "output_ports": sorted(task.outputs),
                "metrics": task.metrics,
            },
        )
        await self._save(task)

    async def _handle_error(self, task: TaskState, error: TaskError, checkpoint: Any) -> None:
        task.last_error = error
        if checkpoint is not None:
            task.checkpoint = checkpoint

        if self._cancelling:
            await self._cancel_task(task)
            return

        decision = self.scheduler.retry_policy.should_retry(task, error)
        if decision.retry:
            task.status = TaskStatus.RETRYING
            task.retry_delays.append(decision.delay)
            logger.warning(
                f"↻ Task '{task.node_id}' failed with {error.code} "
                f"(attempt {task.attempt}/{task.max_retries}); retrying in {decision.delay:.2f}s",
                extra={"node_id": task.node_id, "attempt": task.attempt, "status": "retrying"},
            )
            self._emit(
                EventType.TASK_RETRYING,
                task.node_id,
                {
                    "attempt": task.attempt,
                    "next_attempt": task.attempt + 1,
                    "max_retries": task.max_retries,
                    "delay": decision.delay,
                    "error": error.model_dump(mode="json"),
                },
            )
            await self._save(task)
            self._timers[task.node_id] = asyncio.create_task(
                self._retry_after(task.node_id, decision.delay)
            )
            return

        task.status = TaskStatus.FAILED
        task.completed_at = datetime.now()
        logger.error(
            f"✗ Task '{task.node_id}' failed: {error.code}: {error.message} ({decision.reason})",
            extra={"node_id": task.node_id, "attempt": task.attempt, "status": "failed"},
        )
        self._emit(
            EventType.TASK_FAILED,
            task.node_id,
            {
                "attempt": task.attempt,
                "error": error.model_dump(mode="json"),
                "reason": decision.reason,
            },
        )
        await self._save(task)
        await self._skip_descendants(task.node_id)

    async def _retry_after(self, node_id: str, delay: float) -> None:
        await self.scheduler.sleep(delay)
        self._post(_MessageKind.RETRY_DUE, node_id)

    # === SKIP / CANCEL ===

    async def _skip(self, task: TaskState, because: str | None) -> None:
        task.status = TaskStatus.SKIPPED
        task.skipped_because = because
        task.completed_at = datetime.now()
        self._emit(EventType.TASK_SKIPPED, task.node_id, {"because": because})
        await self._save(task)

    async def _skip_descendants(self, node_id: str) -> None:
        descendants = [self.run_state.tasks[d] for d in self.graph.descendants(node_id)]
        skipped = 0
        for task in sorted(descendants, key=self._order):
            if not task.is_terminal:
                await self._skip(task, because=node_id)
                skipped += 1
        if skipped:
            logger.info(f"   Skipped {skipped} task(s) downstream of '{node_id}'")

    async def _skip_blocked(self) -> None:
        """Skip restored tasks whose upstream already ended without output."""
        for task in sorted(self.run_state.tasks.values(), key=self._order):
            if task.is_terminal:
                continue
            for pred in sorted(self.graph.predecessors(task.node_id)):
                upstream = self.run_state.tasks[pred]
                if upstream.is_terminal and upstream.status != TaskStatus.COMPLETED:
                    await self._skip(task, because=upstream.skipped_because or pred)
                    break

    def _on_cancel(self, reason: str) -> None:
        self._post(_MessageKind.CANCEL)

    async def _handle_cancel(self) -> None:
        if self._cancelling:
            return
        self._cancelling = True
        run = self.run_state
        run.cancelled = True
        run.cancel_reason = self.token.reason
        logger.info(f"⏹ Cancelling run {run.run_id}: {self.token.reason}")

        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

        # Running tasks settle when their worker reports back
        for task in sorted(run.tasks.values(), key=self._order):
            if task.status in (TaskStatus.PENDING, TaskStatus.READY, TaskStatus.RETRYING):
                await self._cancel_task(task)

    async def _cancel_task(self, task: TaskState) -> None:
        task.status = TaskStatus.CANCELLED
        task.completed_at = datetime.now()
        self._emit(EventType.TASK_CANCELLED, task.node_id, {"reason": self.token.reason})
        await self._save(task)

    # === PERSISTENCE / EVENTS ===

    async def _save(self, task: TaskState) -> None:
        store = self.scheduler.checkpoint_store
        if store is None:
            return
        try:
            await store.save(self.run_state.run_id, task.node_id, task)
        except Exception as e:
            logger.error(f"Failed to checkpoint task '{task.node_id}': {e}")

    async def _save_run(self) -> None:
        store = self.scheduler.checkpoint_store
        if store is None:
            return
        try:
            await store.save_run(self.run_state)
        except Exception as e:
            logger.error(f"Failed to save run header {self.run_state.run_id}: {e}")

    def _emit(
        self,
        event_type: EventType,
        node_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        emitter = self.scheduler.emitter
        if emitter is None:
            return
        emitter.emit(
            PipelineEvent(
                type=event_type,
                run_id=self.run_state.run_id,
                node_id=node_id,
                data=data or {},
            )
        )
