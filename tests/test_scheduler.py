"""Tests for TaskScheduler: ordering, failure propagation, retries, cache, cancellation."""

import asyncio
import random

import pytest

from pipeline_engine.errors import FatalExecutorError, RetryableExecutorError
from pipeline_engine.graph.model import Connection, NodeSpec, PipelineGraph, PortSpec
from pipeline_engine.graph.planner import ExecutionPlanner
from pipeline_engine.runtime.cache import InMemoryResultCache
from pipeline_engine.runtime.cancellation import CancellationToken
from pipeline_engine.runtime.event_bus import EventType, ProgressEmitter
from pipeline_engine.runtime.executor_registry import ExecutorRegistry, NodeOutput
from pipeline_engine.runtime.retry import RetryPolicy
from pipeline_engine.runtime.scheduler import SchedulerOptions, TaskScheduler
from pipeline_engine.schemas.task_state import RunStatus, TaskStatus
from pipeline_engine.storage.checkpoint_store import InMemoryCheckpointStore

# === HELPER FUNCTIONS ===


def node(node_id: str, node_type: str = "echo", inputs=(), outputs=("out",), **kwargs) -> NodeSpec:
    return NodeSpec(
        id=node_id,
        type=node_type,
        inputs=tuple(PortSpec(name=p) for p in inputs),
        outputs=tuple(PortSpec(name=p) for p in outputs),
        **kwargs,
    )


def wire(source: str, target: str, port: str | None = None) -> Connection:
    return Connection(
        source=source, source_port="out", target=target, target_port=port or f"from_{source}"
    )


def diamond(c_type: str = "echo") -> PipelineGraph:
    """A -> (B, C) -> D"""
    return PipelineGraph(
        id="diamond",
        nodes=[
            node("A"),
            node("B", inputs=("from_A",)),
            node("C", c_type, inputs=("from_A",)),
            node("D", inputs=("from_B", "from_C")),
        ],
        connections=[wire("A", "B"), wire("A", "C"), wire("B", "D"), wire("C", "D")],
    )


class CallLog:
    """Counts executor calls per node."""

    def __init__(self):
        self.calls: list[str] = []

    def count(self, node_id: str) -> int:
        return self.calls.count(node_id)


def make_registry(log: CallLog) -> ExecutorRegistry:
    registry = ExecutorRegistry()

    @registry.function("echo")
    async def echo(config, inputs, ctx):
        log.calls.append(ctx.node_id)
        joined = "+".join(str(inputs[k]) for k in sorted(inputs))
        return {"out": f"{ctx.node_id}({joined})" if joined else ctx.node_id}

    @registry.function("boom")
    async def boom(config, inputs, ctx):
        log.calls.append(ctx.node_id)
        raise FatalExecutorError("invalid credentials", code="AUTH")

    @registry.function("flaky")
    async def flaky(config, inputs, ctx):
        log.calls.append(ctx.node_id)
        raise RetryableExecutorError("429 Too Many Requests", code="RATE_LIMIT")

    return registry


async def run_graph(scheduler: TaskScheduler, graph: PipelineGraph, inputs=None, **options):
    plan = ExecutionPlanner().plan(graph)
    return await scheduler.run(graph, plan, inputs, SchedulerOptions(**options))


@pytest.fixture
def log() -> CallLog:
    return CallLog()


@pytest.fixture
def scheduler(log, fake_sleep) -> TaskScheduler:
    return TaskScheduler(make_registry(log), sleep=fake_sleep)


# === HAPPY PATH ===


@pytest.mark.asyncio
async def test_diamond_completes_in_dependency_order(scheduler, log):
    run = await run_graph(scheduler, diamond())

    assert run.status == RunStatus.COMPLETED
    assert log.calls[0] == "A"
    assert log.calls[-1] == "D"
    assert run.outputs["D"] == {"out": "D(B(A)+C(A))"}
    assert run.missing_outputs == []
    assert all(task.attempt == 1 for task in run.tasks.values())
    assert run.completed_at is not None


@pytest.mark.asyncio
async def test_initial_inputs_reach_entry_nodes(scheduler):
    graph = PipelineGraph(id="g", nodes=[node("A", inputs=("prompt",))])

    run = await run_graph(scheduler, graph, inputs={"A": {"prompt": "cat"}})

    assert run.outputs["A"] == {"out": "A(cat)"}
    assert run.inputs == {"A": {"prompt": "cat"}}


@pytest.mark.asyncio
async def test_run_id_option(scheduler):
    run = await run_graph(scheduler, PipelineGraph(id="g", nodes=[node("A")]), run_id="run_42")

    assert run.run_id == "run_42"


@pytest.mark.asyncio
async def test_node_output_metrics_recorded():
    registry = ExecutorRegistry()

    @registry.function("gen")
    async def gen(config, inputs, ctx):
        return NodeOutput(outputs={"out": "img"}, metrics={"tokens_used": 12, "cost": 0.5})

    scheduler = TaskScheduler(registry)
    run = await run_graph(scheduler, PipelineGraph(id="g", nodes=[node("A", "gen")]))

    metrics = run.tasks["A"].metrics
    assert metrics["tokens_used"] == 12
    assert "latency_ms" in metrics
    assert run.metrics_summary()["cost"] == 0.5


@pytest.mark.asyncio
async def test_concurrency_bound(fake_sleep):
    registry = ExecutorRegistry()
    active = 0
    peak = 0

    @registry.function("work")
    async def work(config, inputs, ctx):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return {"out": ctx.node_id}

    graph = PipelineGraph(id="wide", nodes=[node(f"n{i}", "work") for i in range(6)])
    scheduler = TaskScheduler(registry, sleep=fake_sleep)

    run = await run_graph(scheduler, graph, max_concurrency=2)

    assert run.status == RunStatus.COMPLETED
    assert peak == 2


def test_invalid_concurrency():
    with pytest.raises(ValueError):
        SchedulerOptions(max_concurrency=0)


# === FAILURE PROPAGATION ===


@pytest.mark.asyncio
async def test_failure_skips_descendants_only(scheduler, log):
    run = await run_graph(scheduler, diamond(c_type="boom"))

    assert run.status == RunStatus.FAILED
    assert run.tasks["A"].status == TaskStatus.COMPLETED
    assert run.tasks["B"].status == TaskStatus.COMPLETED
    assert run.tasks["C"].status == TaskStatus.FAILED
    assert run.tasks["D"].status == TaskStatus.SKIPPED
    assert run.tasks["D"].skipped_because == "C"
    assert log.count("D") == 0
    assert run.missing_outputs == ["C", "D"]

    report = run.failure_report()
    assert report["node_id"] == "C"
    assert report["error"]["code"] == "AUTH"
    assert report["skipped_tasks"] == ["D"]


@pytest.mark.asyncio
async def test_independent_branch_keeps_running(scheduler):
    graph = PipelineGraph(
        id="branches",
        nodes=[
            node("A"),
            node("B", inputs=("from_A",)),
            node("X", "boom"),
            node("Y", inputs=("from_X",)),
        ],
        connections=[wire("A", "B"), wire("X", "Y")],
    )

    run = await run_graph(scheduler, graph)

    assert run.tasks["B"].status == TaskStatus.COMPLETED
    assert run.tasks["Y"].status == TaskStatus.SKIPPED
    assert set(run.outputs) == {"A", "B"}


@pytest.mark.asyncio
async def test_optional_node_failure_does_not_fail_run(scheduler):
    graph = PipelineGraph(
        id="g",
        nodes=[node("A"), node("preview", "boom", inputs=("from_A",), required=False)],
        connections=[wire("A", "preview")],
    )

    run = await run_graph(scheduler, graph)

    assert run.tasks["preview"].status == TaskStatus.FAILED
    assert run.status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_fatal_error_is_not_retried(scheduler, log, fake_sleep):
    graph = PipelineGraph(id="g", nodes=[node("A", "boom", max_retries=5)])

    run = await run_graph(scheduler, graph)

    assert log.count("A") == 1
    assert fake_sleep.delays == []
    assert run.tasks["A"].last_error.code == "AUTH"


@pytest.mark.asyncio
async def test_missing_output_port_is_invalid_output():
    registry = ExecutorRegistry()
    registry.register_function("partial", lambda config, inputs, ctx: {"out": 1})
    graph = PipelineGraph(id="g", nodes=[node("A", "partial", outputs=("out", "thumb"))])

    run = await run_graph(TaskScheduler(registry), graph)

    task = run.tasks["A"]
    assert task.status == TaskStatus.FAILED
    assert task.last_error.code == "INVALID_OUTPUT"
    assert "thumb" in task.last_error.message
    assert task.attempt == 1


@pytest.mark.asyncio
async def test_non_mapping_result_is_invalid_output():
    registry = ExecutorRegistry()
    registry.register_function("bad", lambda config, inputs, ctx: "just a string")

    run = await run_graph(TaskScheduler(registry), PipelineGraph(id="g", nodes=[node("A", "bad")]))

    assert run.tasks["A"].last_error.code == "INVALID_OUTPUT"


# === RETRIES ===


@pytest.mark.asyncio
async def test_retry_exhaustion(log, fake_sleep):
    policy = RetryPolicy(base_delay=1.0, max_delay=60.0, jitter=0.5, rng=random.Random(3))
    scheduler = TaskScheduler(make_registry(log), retry_policy=policy, sleep=fake_sleep)
    graph = PipelineGraph(id="g", nodes=[node("A", "flaky", max_retries=4)])

    run = await run_graph(scheduler, graph)

    task = run.tasks["A"]
    assert task.status == TaskStatus.FAILED
    assert log.count("A") == 4
    assert task.attempt == 4
    assert len(fake_sleep.delays) == 3
    assert fake_sleep.delays == task.retry_delays
    assert all(b >= a for a, b in zip(fake_sleep.delays, fake_sleep.delays[1:], strict=False))
    assert task.last_error.code == "RATE_LIMIT"


@pytest.mark.asyncio
async def test_default_max_retries_option(log, fake_sleep):
    scheduler = TaskScheduler(make_registry(log), sleep=fake_sleep)

    await run_graph(
        scheduler, PipelineGraph(id="g", nodes=[node("A", "flaky")]), default_max_retries=2
    )

    assert log.count("A") == 2


@pytest.mark.asyncio
async def test_retry_then_success_with_checkpoint(fake_sleep):
    registry = ExecutorRegistry()
    seen_checkpoints = []

    @registry.function("resumable")
    async def resumable(config, inputs, ctx):
        seen_checkpoints.append(ctx.checkpoint)
        if ctx.attempt < 3:
            raise RetryableExecutorError(
                "provider unavailable", code="SERVICE_UNAVAILABLE", checkpoint={"page": ctx.attempt}
            )
        return {"out": "done"}

    store = InMemoryCheckpointStore()
    scheduler = TaskScheduler(registry, checkpoint_store=store, sleep=fake_sleep)

    run = await run_graph(scheduler, PipelineGraph(id="g", nodes=[node("A", "resumable")]))

    assert run.tasks["A"].status == TaskStatus.COMPLETED
    assert run.tasks["A"].attempt == 3
    assert seen_checkpoints == [None, {"page": 1}, {"page": 2}]
    statuses = [cp.state.status for cp in store.history(run.run_id, "A")]
    assert statuses == [TaskStatus.RETRYING, TaskStatus.RETRYING, TaskStatus.COMPLETED]
    assert run.metrics_summary()["total_retries"] == 2


@pytest.mark.asyncio
async def test_node_timeout(fake_sleep):
    registry = ExecutorRegistry()

    @registry.function("slow")
    async def slow(config, inputs, ctx):
        await asyncio.sleep(10)
        return {"out": "late"}

    graph = PipelineGraph(
        id="g", nodes=[node("A", "slow", timeout_seconds=0.05, max_retries=2)]
    )

    run = await run_graph(TaskScheduler(registry, sleep=fake_sleep), graph)

    task = run.tasks["A"]
    assert task.status == TaskStatus.FAILED
    assert task.attempt == 2
    assert task.last_error.code == "TIMEOUT"
    assert len(fake_sleep.delays) == 1


@pytest.mark.asyncio
async def test_per_task_timeout_option(fake_sleep):
    registry = ExecutorRegistry()

    @registry.function("slow")
    async def slow(config, inputs, ctx):
        await asyncio.sleep(10)

    graph = PipelineGraph(id="g", nodes=[node("A", "slow", max_retries=1)])

    run = await run_graph(TaskScheduler(registry, sleep=fake_sleep), graph, per_task_timeout=0.05)

    assert run.tasks["A"].last_error.code == "TIMEOUT"


# === CACHE ===


@pytest.mark.asyncio
async def test_cached_rerun_skips_executors(log, fake_sleep):
    emitter = ProgressEmitter()
    scheduler = TaskScheduler(
        make_registry(log), cache=InMemoryResultCache(), emitter=emitter, sleep=fake_sleep
    )

    first = await run_graph(scheduler, diamond())
    calls_after_first = len(log.calls)
    second = await run_graph(scheduler, diamond())
    await emitter.flush()

    assert calls_after_first == 4
    assert len(log.calls) == 4
    assert second.outputs == first.outputs
    assert all(task.cache_hit for task in second.tasks.values())
    assert second.metrics_summary()["cache_hits"] == 4

    hit_events = [
        e.type for e in emitter.get_history() if e.run_id == second.run_id and e.node_id == "A"
    ]
    assert list(reversed(hit_events)) == [
        EventType.TASK_QUEUED,
        EventType.TASK_STARTED,
        EventType.TASK_PROGRESS,
        EventType.TASK_COMPLETED,
    ]


@pytest.mark.asyncio
async def test_cached_result_missing_declared_ports_is_a_miss(fake_sleep):
    registry = ExecutorRegistry()
    calls = []

    @registry.function("render")
    async def render(config, inputs, ctx):
        calls.append(ctx.node_id)
        outputs = {"out": "frame"}
        if len(calls) > 1:
            outputs["thumbnail"] = "thumb"
        return outputs

    scheduler = TaskScheduler(registry, cache=InMemoryResultCache(), sleep=fake_sleep)
    await run_graph(scheduler, PipelineGraph(id="v1", nodes=[node("A", "render")]))

    graph = PipelineGraph(id="v2", nodes=[node("A", "render", outputs=("out", "thumbnail"))])
    run = await run_graph(scheduler, graph)

    assert len(calls) == 2
    assert run.status == RunStatus.COMPLETED
    assert not run.tasks["A"].cache_hit
    assert run.outputs["A"] == {"out": "frame", "thumbnail": "thumb"}


@pytest.mark.asyncio
async def test_non_cacheable_executor_always_runs(fake_sleep):
    registry = ExecutorRegistry()
    calls = []
    registry.register_function(
        "now", lambda config, inputs, ctx: calls.append(1) or {"out": len(calls)}, cacheable=False
    )
    scheduler = TaskScheduler(registry, cache=InMemoryResultCache(), sleep=fake_sleep)
    graph = PipelineGraph(id="g", nodes=[node("A", "now")])

    await run_graph(scheduler, graph)
    run = await run_graph(scheduler, graph)

    assert len(calls) == 2
    assert not run.tasks["A"].cache_hit


@pytest.mark.asyncio
async def test_failures_are_not_cached(log, fake_sleep):
    cache = InMemoryResultCache()
    scheduler = TaskScheduler(make_registry(log), cache=cache, sleep=fake_sleep)
    graph = PipelineGraph(id="g", nodes=[node("A", "boom")])

    await run_graph(scheduler, graph)
    await run_graph(scheduler, graph)

    assert log.count("A") == 2
    assert len(cache) == 0


# === EVENTS, PROGRESS AND CHECKPOINTS ===


@pytest.mark.asyncio
async def test_event_order(fake_sleep):
    registry = ExecutorRegistry()

    @registry.function("steps")
    async def steps(config, inputs, ctx):
        ctx.report_progress(0.5)
        ctx.report_progress(2.0)  # Clamped
        return {"out": 1}

    emitter = ProgressEmitter()
    received = []
    emitter.subscribe(received.append)
    scheduler = TaskScheduler(registry, emitter=emitter, sleep=fake_sleep)

    run = await run_graph(scheduler, PipelineGraph(id="g", nodes=[node("A", "steps")]))
    await emitter.flush()

    assert [e.type for e in received] == [
        EventType.RUN_STARTED,
        EventType.TASK_QUEUED,
        EventType.TASK_STARTED,
        EventType.TASK_PROGRESS,
        EventType.TASK_PROGRESS,
        EventType.TASK_COMPLETED,
        EventType.RUN_COMPLETED,
    ]
    assert [e.data["progress"] for e in received if e.type == EventType.TASK_PROGRESS] == [0.5, 1.0]
    assert all(e.run_id == run.run_id for e in received)
    assert received[-1].data["status"] == "completed"


@pytest.mark.asyncio
async def test_retry_and_failure_events(log, fake_sleep):
    emitter = ProgressEmitter()
    scheduler = TaskScheduler(make_registry(log), emitter=emitter, sleep=fake_sleep)
    graph = PipelineGraph(
        id="g",
        nodes=[node("A", "flaky", max_retries=2), node("B", inputs=("from_A",))],
        connections=[wire("A", "B")],
    )

    await run_graph(scheduler, graph)
    await emitter.flush()

    retrying = emitter.get_history(EventType.TASK_RETRYING)
    assert len(retrying) == 1
    assert retrying[0].data["next_attempt"] == 2
    failed = emitter.get_history(EventType.TASK_FAILED)
    assert failed[0].data["error"]["code"] == "RATE_LIMIT"
    skipped = emitter.get_history(EventType.TASK_SKIPPED)
    assert skipped[0].node_id == "B"
    assert skipped[0].data["because"] == "A"
    run_failed = emitter.get_history(EventType.RUN_FAILED)
    assert run_failed[0].data["failure"]["node_id"] == "A"


@pytest.mark.asyncio
async def test_executor_checkpoint_is_persisted_mid_attempt(fake_sleep):
    registry = ExecutorRegistry()

    @registry.function("pager")
    async def pager(config, inputs, ctx):
        ctx.save_checkpoint({"step": 1})
        await asyncio.sleep(0)
        return {"out": "ok"}

    store = InMemoryCheckpointStore()
    scheduler = TaskScheduler(registry, checkpoint_store=store, sleep=fake_sleep)

    run = await run_graph(scheduler, PipelineGraph(id="g", nodes=[node("A", "pager")]))

    history = store.history(run.run_id, "A")
    assert history[0].state.status == TaskStatus.RUNNING
    assert history[0].state.checkpoint == {"step": 1}
    assert history[-1].state.status == TaskStatus.COMPLETED
    assert run.tasks["A"].checkpoint == {"step": 1}

    persisted = await store.load(run.run_id)
    assert persisted.status == RunStatus.COMPLETED


# === CANCELLATION ===


@pytest.mark.asyncio
async def test_cancel_running_run(log, fake_sleep):
    registry = make_registry(log)
    started = asyncio.Event()

    @registry.function("hang")
    async def hang(config, inputs, ctx):
        started.set()
        await asyncio.Event().wait()

    token = CancellationToken()
    scheduler = TaskScheduler(registry, sleep=fake_sleep)
    graph = PipelineGraph(
        id="g",
        nodes=[node("A", "hang"), node("B", inputs=("from_A",))],
        connections=[wire("A", "B")],
    )

    runner = asyncio.create_task(run_graph(scheduler, graph, cancellation_token=token))
    await asyncio.wait_for(started.wait(), timeout=1)
    token.cancel("user pressed stop")
    run = await asyncio.wait_for(runner, timeout=2)

    assert run.status == RunStatus.CANCELLED
    assert run.cancel_reason == "user pressed stop"
    assert run.tasks["A"].status == TaskStatus.CANCELLED
    assert run.tasks["B"].status == TaskStatus.CANCELLED
    assert log.count("B") == 0


@pytest.mark.asyncio
async def test_cancel_before_start(scheduler, log):
    token = CancellationToken()
    token.cancel("never mind")

    run = await run_graph(scheduler, diamond(), cancellation_token=token)

    assert run.status == RunStatus.CANCELLED
    assert log.calls == []
    assert all(task.status == TaskStatus.CANCELLED for task in run.tasks.values())


@pytest.mark.asyncio
async def test_cancel_during_backoff(log):
    token = CancellationToken()
    release = asyncio.Event()

    async def blocking_sleep(delay):
        token.cancel("stop retrying")
        await release.wait()

    scheduler = TaskScheduler(make_registry(log), sleep=blocking_sleep)
    graph = PipelineGraph(id="g", nodes=[node("A", "flaky", max_retries=5)])

    run = await asyncio.wait_for(
        run_graph(scheduler, graph, cancellation_token=token), timeout=2
    )

    assert log.count("A") == 1
    assert run.tasks["A"].status == TaskStatus.CANCELLED
    assert run.status == RunStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancelling_the_run_task_stops_executors(fake_sleep):
    registry = ExecutorRegistry()
    started = asyncio.Event()
    entered, finished, interrupted = [], [], []

    @registry.function("slow")
    async def slow(config, inputs, ctx):
        entered.append(ctx.node_id)
        if len(entered) == 2:
            started.set()
        try:
            await asyncio.sleep(0.3)
        except asyncio.CancelledError:
            interrupted.append(ctx.node_id)
            raise
        finished.append(ctx.node_id)
        return {"out": "late"}

    token = CancellationToken()
    scheduler = TaskScheduler(registry, sleep=fake_sleep)
    graph = PipelineGraph(id="g", nodes=[node("A", "slow"), node("B", "slow")])

    runner = asyncio.create_task(run_graph(scheduler, graph, cancellation_token=token))
    await asyncio.wait_for(started.wait(), timeout=1)
    runner.cancel()
    with pytest.raises(asyncio.CancelledError):
        await runner

    assert sorted(interrupted) == ["A", "B"]
    await asyncio.sleep(0.35)
    assert finished == []
    assert token.cancelled
