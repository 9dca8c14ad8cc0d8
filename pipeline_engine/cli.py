"""
Command-line interface for the pipeline engine.

Usage:
    pipeline-engine validate graph.json --inputs '{"prompt": {"text": "hi"}}'
    pipeline-engine plan graph.json
    pipeline-engine run graph.json --registry my_app.nodes:registry
    pipeline-engine runs --checkpoint-dir ./checkpoints
    pipeline-engine show run_1a2b3c --checkpoint-dir ./checkpoints
    pipeline-engine resume run_1a2b3c graph.json --registry my_app.nodes:registry

`--registry` names an ExecutorRegistry (or a zero-argument factory returning
one) as `module:attribute`.
"""

import argparse
import asyncio
import importlib
import json
import sys
from pathlib import Path
from typing import Any

from pipeline_engine.config import EngineConfig
from pipeline_engine.errors import GraphValidationError, PipelineEngineError
from pipeline_engine.graph.model import PipelineGraph
from pipeline_engine.graph.planner import ExecutionPlanner
from pipeline_engine.graph.validator import GraphValidator
from pipeline_engine.observability import configure_logging
from pipeline_engine.runtime.executor_registry import ExecutorRegistry
from pipeline_engine.schemas.task_state import RunState, RunStatus
from pipeline_engine.storage.checkpoint_store import FileCheckpointStore


def _load_json_arg(value: str | None) -> dict[str, Any]:
    """Parse a JSON literal, or read it from a file when prefixed with '@'."""
    if not value:
        return {}
    if value.startswith("@"):
        value = Path(value[1:]).read_text(encoding="utf-8")
    data = json.loads(value)
    if not isinstance(data, dict):
        raise ValueError("Inputs must be a JSON object of {node_id: {port: value}}")
    return data


def load_registry(target: str) -> ExecutorRegistry:
    """Import `module:attribute` and return the ExecutorRegistry it names."""
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Registry must be given as module:attribute, got '{target}'")
    obj = getattr(importlib.import_module(module_name), attr)
    if not isinstance(obj, ExecutorRegistry) and callable(obj):
        obj = obj()
    if not isinstance(obj, ExecutorRegistry):
        raise TypeError(f"{target} is {type(obj).__name__}, not an ExecutorRegistry")
    return obj


def _checkpoint_dir(args: argparse.Namespace, config: EngineConfig) -> str:
    directory = getattr(args, "checkpoint_dir", None) or config.checkpoint_dir
    if not directory:
        raise ValueError("No checkpoint directory; pass --checkpoint-dir or configure one")
    return directory


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _run_report(run: RunState) -> dict[str, Any]:
    return {
        "run_id": run.run_id,
        "graph_id": run.graph_id,
        "status": run.status.value,
        "progress": run.progress_summary(),
        "metrics": run.metrics_summary(),
        "outputs": run.outputs,
        "missing_outputs": run.missing_outputs,
        "failure": run.failure_report(),
    }


# === COMMANDS ===


def cmd_validate(args: argparse.Namespace) -> int:
    graph = PipelineGraph.from_file(args.graph)
    registry = load_registry(args.registry) if args.registry else None
    validator = GraphValidator(
        registry, strict_orphans=args.strict_orphans or EngineConfig().strict_orphans
    )
    result = validator.validate(graph, provided_inputs=_load_json_arg(args.inputs))

    if args.json:
        _print_json(result.to_dict())
    else:
        for issue in result.errors:
            print(f"✗ [{issue.kind.value}] {issue.message}")
        for issue in result.warnings:
            print(f"⚠ [{issue.kind.value}] {issue.message}")
        if result.valid:
            print(f"✓ Graph '{graph.id}' is valid ({len(graph.nodes)} nodes)")
    return 0 if result.valid else 1


def cmd_plan(args: argparse.Namespace) -> int:
    graph = PipelineGraph.from_file(args.graph)
    result = GraphValidator().validate(graph)
    if not result.valid:
        print(f"✗ {result.error}", file=sys.stderr)
        return 1

    plan = ExecutionPlanner().plan(graph)
    if args.json:
        _print_json(plan.to_dict())
    else:
        for index, layer in enumerate(plan):
            print(f"Layer {index}: {', '.join(layer)}")
    return 0


def _build_engine(args: argparse.Namespace):
    from pipeline_engine.engine import PipelineEngine

    config = EngineConfig()
    if getattr(args, "checkpoint_dir", None):
        config.checkpoint_dir = args.checkpoint_dir
    if getattr(args, "max_concurrency", None):
        config.max_concurrency = args.max_concurrency
    if getattr(args, "timeout", None):
        config.per_task_timeout = args.timeout
    return PipelineEngine(load_registry(args.registry), config=config)


def cmd_run(args: argparse.Namespace) -> int:
    graph = PipelineGraph.from_file(args.graph)
    inputs = _load_json_arg(args.inputs)
    engine = _build_engine(args)

    async def _run() -> RunState:
        try:
            return await engine.run(graph, inputs, run_id=args.run_id)
        finally:
            await engine.shutdown()

    try:
        run = asyncio.run(_run())
    except GraphValidationError as e:
        for issue in e.result.errors:
            print(f"✗ [{issue.kind.value}] {issue.message}", file=sys.stderr)
        return 1

    _print_json(_run_report(run))
    return 0 if run.status == RunStatus.COMPLETED else 1


def cmd_resume(args: argparse.Namespace) -> int:
    graph = PipelineGraph.from_file(args.graph)
    engine = _build_engine(args)

    async def _resume() -> RunState:
        try:
            if args.retry_failed:
                return await engine.retry_run(args.run_id, graph)
            return await engine.resume(args.run_id, graph)
        finally:
            await engine.shutdown()

    run = asyncio.run(_resume())
    _print_json(_run_report(run))
    return 0 if run.status == RunStatus.COMPLETED else 1


def cmd_runs(args: argparse.Namespace) -> int:
    store = FileCheckpointStore(_checkpoint_dir(args, EngineConfig()))
    summaries = asyncio.run(store.list_runs())
    if args.json:
        _print_json([s.model_dump(mode="json") for s in summaries])
        return 0
    if not summaries:
        print("No runs found")
    for summary in summaries:
        counts = ", ".join(f"{k}={v}" for k, v in summary.task_counts.items())
        print(f"{summary.run_id}  {summary.graph_id}  {summary.status}  {counts}")
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    store = FileCheckpointStore(_checkpoint_dir(args, EngineConfig()))
    run = asyncio.run(store.load(args.run_id))
    if run is None:
        print(f"Run '{args.run_id}' not found", file=sys.stderr)
        return 1
    if args.tasks:
        _print_json(run.model_dump(mode="json"))
    else:
        _print_json(_run_report(run))
    return 0


# === PARSER ===


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pipeline-engine",
        description="Validate, plan and run node pipelines",
    )
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    parser.add_argument(
        "--log-format", choices=["auto", "json", "human"], default="auto", help="Log format"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p = subparsers.add_parser("validate", help="Check a graph for structural errors")
    p.add_argument("graph", help="Path to a graph JSON file")
    p.add_argument("--inputs", help="Initial inputs as JSON, or @file")
    p.add_argument("--registry", help="module:attribute of an ExecutorRegistry")
    p.add_argument("--strict-orphans", action="store_true", help="Treat every orphan as an error")
    p.add_argument("--json", action="store_true", help="Machine-readable output")
    p.set_defaults(func=cmd_validate)

    p = subparsers.add_parser("plan", help="Show the execution layers of a graph")
    p.add_argument("graph", help="Path to a graph JSON file")
    p.add_argument("--json", action="store_true", help="Machine-readable output")
    p.set_defaults(func=cmd_plan)

    p = subparsers.add_parser("run", help="Run a graph")
    p.add_argument("graph", help="Path to a graph JSON file")
    p.add_argument("--registry", required=True, help="module:attribute of an ExecutorRegistry")
    p.add_argument("--inputs", help="Initial inputs as JSON, or @file")
    p.add_argument("--run-id", help="Explicit run id")
    p.add_argument("--checkpoint-dir", help="Directory for resumable checkpoints")
    p.add_argument("--max-concurrency", type=int, help="Concurrent executor calls")
    p.add_argument("--timeout", type=float, help="Per-task timeout in seconds")
    p.set_defaults(func=cmd_run)

    p = subparsers.add_parser("resume", help="Resume an interrupted run")
    p.add_argument("run_id", help="Run to resume")
    p.add_argument("graph", help="Path to the run's graph JSON file")
    p.add_argument("--registry", required=True, help="module:attribute of an ExecutorRegistry")
    p.add_argument("--checkpoint-dir", help="Directory holding the run's checkpoints")
    p.add_argument("--retry-failed", action="store_true", help="Also re-run failed tasks")
    p.add_argument("--max-concurrency", type=int, help="Concurrent executor calls")
    p.add_argument("--timeout", type=float, help="Per-task timeout in seconds")
    p.set_defaults(func=cmd_resume)

    p = subparsers.add_parser("runs", help="List checkpointed runs")
    p.add_argument("--checkpoint-dir", help="Checkpoint directory")
    p.add_argument("--json", action="store_true", help="Machine-readable output")
    p.set_defaults(func=cmd_runs)

    p = subparsers.add_parser("show", help="Show one checkpointed run")
    p.add_argument("run_id", help="Run id")
    p.add_argument("--checkpoint-dir", help="Checkpoint directory")
    p.add_argument("--tasks", action="store_true", help="Dump the full task states")
    p.set_defaults(func=cmd_show)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(level=args.log_level, format=args.log_format)

    try:
        return args.func(args)
    except (PipelineEngineError, ValueError, TypeError, ImportError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
