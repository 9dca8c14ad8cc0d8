"""
Executor Registry - Maps node type tags to node executors.

Node behavior is supplied by the host application (AI-provider connectors,
transforms, I/O nodes). Each executor implements the NodeExecutor protocol
and is registered under the type tag that nodes reference:

    registry = ExecutorRegistry()
    registry.register("image_generator", ImageGenerator(client))

    @registry.function("uppercase")
    async def uppercase(config, inputs, ctx):
        return {"text": inputs["text"].upper()}
"""

import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import jsonschema
from pydantic import BaseModel, Field

from pipeline_engine.errors import UnknownNodeTypeError
from pipeline_engine.graph.model import NodeSpec, PortSpec
from pipeline_engine.runtime.cancellation import CancellationToken

logger = logging.getLogger(__name__)


@dataclass
class NodeOutput:
    """Result of one executor call."""

    outputs: dict[str, Any] = field(default_factory=dict)
    checkpoint: Any = None  # Resumable blob persisted with the task state
    metrics: dict[str, Any] = field(default_factory=dict)  # e.g. tokens_used, cost


@dataclass
class ExecutionContext:
    """
    Per-attempt context handed to an executor.

    Progress and checkpoint reports are non-blocking: they are queued to the
    scheduler, which owns all task state.
    """

    run_id: str
    node_id: str
    node_type: str
    attempt: int
    cancellation_token: CancellationToken
    checkpoint: Any = None  # Blob saved by a previous attempt, if any
    _on_progress: Callable[[float], None] | None = field(default=None, repr=False)
    _on_checkpoint: Callable[[Any], None] | None = field(default=None, repr=False)

    @property
    def cancelled(self) -> bool:
        return self.cancellation_token.cancelled

    def report_progress(self, fraction: float) -> None:
        """Report progress in [0.0, 1.0]; values outside are clamped."""
        if self._on_progress is not None:
            self._on_progress(min(1.0, max(0.0, float(fraction))))

    def save_checkpoint(self, blob: Any) -> None:
        """Persist a resumable blob now, before the attempt finishes."""
        self.checkpoint = blob
        if self._on_checkpoint is not None:
            self._on_checkpoint(blob)


@runtime_checkable
class NodeExecutor(Protocol):
    """
    Interface every node executor implements.

    Optional attributes read by the engine:
        cacheable (bool): False opts the node type out of the result cache
        cache_version (str): bump to invalidate cached results after a change
        config_schema (dict): JSON schema for the node config
        validate_config(config) -> list[str]: custom config checks
    """

    async def execute(
        self,
        config: dict[str, Any],
        inputs: dict[str, Any],
        ctx: ExecutionContext,
    ) -> NodeOutput | dict[str, Any]: ...


class FunctionExecutor:
    """
    Adapts a plain function to the NodeExecutor protocol.

    Coroutine functions are awaited; regular functions run inline on the
    event loop, so they should not block on I/O.
    """

    def __init__(
        self,
        func: Callable[..., Any],
        cacheable: bool = True,
        cache_version: str = "",
        config_schema: dict[str, Any] | None = None,
    ):
        self.func = func
        self.cacheable = cacheable
        self.cache_version = cache_version
        self.config_schema = config_schema

    async def execute(
        self,
        config: dict[str, Any],
        inputs: dict[str, Any],
        ctx: ExecutionContext,
    ) -> NodeOutput | dict[str, Any]:
        result = self.func(config, inputs, ctx)
        if inspect.isawaitable(result):
            result = await result
        return result

    def __repr__(self) -> str:
        return f"FunctionExecutor({getattr(self.func, '__name__', self.func)!r})"


class NodeTypeDefinition(BaseModel):
    """Catalog entry describing a node type: ports and config schema."""

    type: str
    name: str = ""
    description: str = ""
    category: str = ""
    inputs: tuple[PortSpec, ...] = ()
    outputs: tuple[PortSpec, ...] = ()
    config_schema: dict[str, Any] | None = Field(
        default=None, description="JSON schema (draft 7) for node config"
    )


@dataclass
class RegisteredExecutor:
    """An executor with its optional type definition."""

    executor: NodeExecutor
    definition: NodeTypeDefinition | None = None


def normalize_output(result: NodeOutput | dict[str, Any] | None) -> NodeOutput:
    """Accept either a NodeOutput or a bare output mapping from an executor."""
    if isinstance(result, NodeOutput):
        return result
    if result is None:
        return NodeOutput()
    if isinstance(result, dict):
        return NodeOutput(outputs=result)
    raise TypeError(
        f"Executor returned {type(result).__name__}; expected NodeOutput or dict of outputs"
    )


class ExecutorRegistry:
    """
    Registry of node executors keyed by node type.

    Executors are looked up by the scheduler for every task and by the
    validator to check that node types exist and configs are valid.
    """

    def __init__(self):
        self._executors: dict[str, RegisteredExecutor] = {}

    def register(
        self,
        node_type: str,
        executor: NodeExecutor,
        definition: NodeTypeDefinition | None = None,
    ) -> None:
        """Register (or replace) the executor for a node type."""
        if not callable(getattr(executor, "execute", None)):
            raise TypeError(f"Executor for '{node_type}' has no execute() method")
        if node_type in self._executors:
            logger.warning(f"Replacing executor for node type '{node_type}'")
        if definition is not None and definition.type != node_type:
            raise ValueError(
                f"Definition type '{definition.type}' does not match node type '{node_type}'"
            )
        self._executors[node_type] = RegisteredExecutor(executor=executor, definition=definition)
        logger.debug(f"Registered executor for node type '{node_type}'")

    def register_function(
        self,
        node_type: str,
        func: Callable[..., Any],
        definition: NodeTypeDefinition | None = None,
        cacheable: bool = True,
        cache_version: str = "",
    ) -> None:
        """Register a plain function `func(config, inputs, ctx)` as an executor."""
        self.register(
            node_type,
            FunctionExecutor(func, cacheable=cacheable, cache_version=cache_version),
            definition=definition,
        )

    def function(self, node_type: str, **kwargs: Any) -> Callable:
        """Decorator form of register_function."""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self.register_function(node_type, func, **kwargs)
            return func

        return decorator

    def get(self, node_type: str) -> NodeExecutor:
        """Get the executor for a node type, or raise UnknownNodeTypeError."""
        registered = self._executors.get(node_type)
        if registered is None:
            raise UnknownNodeTypeError(node_type)
        return registered.executor

    def get_definition(self, node_type: str) -> NodeTypeDefinition | None:
        registered = self._executors.get(node_type)
        return registered.definition if registered else None

    def definitions(self) -> list[NodeTypeDefinition]:
        return [r.definition for r in self._executors.values() if r.definition is not None]

    def node_types(self) -> list[str]:
        return sorted(self._executors)

    def __contains__(self, node_type: object) -> bool:
        return node_type in self._executors

    def __len__(self) -> int:
        return len(self._executors)

    def validate_config(self, node_type: str, config: dict[str, Any]) -> list[str]:
        """
        Validate a node config for a node type.

        Applies the JSON schema (from the type definition, or the executor's
        `config_schema` attribute) and then the executor's own
        `validate_config` hook when it has one.

        Returns:
            List of error messages (empty when valid)
        """
        registered = self._executors.get(node_type)
        if registered is None:
            return [f"Unknown node type '{node_type}'"]

        errors: list[str] = []
        schema = None
        if registered.definition is not None:
            schema = registered.definition.config_schema
        if schema is None:
            schema = getattr(registered.executor, "config_schema", None)

        if schema:
            validator = jsonschema.Draft7Validator(schema)
            for error in validator.iter_errors(config):
                path = ".".join(str(p) for p in error.path) if error.path else "config"
                errors.append(f"{path}: {error.message}")

        hook = getattr(registered.executor, "validate_config", None)
        if callable(hook):
            errors.extend(hook(config) or [])

        return errors

    def create_node(
        self,
        node_type: str,
        node_id: str,
        config: dict[str, Any] | None = None,
        **overrides: Any,
    ) -> NodeSpec:
        """
        Build a NodeSpec from the registered type definition.

        Ports come from the definition; `overrides` are passed to NodeSpec
        (name, max_retries, timeout_seconds, required, ...).
        """
        definition = self.get_definition(node_type)
        if definition is None:
            if node_type not in self._executors:
                raise UnknownNodeTypeError(node_type)
            raise ValueError(f"Node type '{node_type}' was registered without a definition")

        fields: dict[str, Any] = {
            "id": node_id,
            "type": node_type,
            "name": definition.name,
            "description": definition.description,
            "config": dict(config or {}),
            "inputs": definition.inputs,
            "outputs": definition.outputs,
        }
        fields.update(overrides)
        return NodeSpec(**fields)
