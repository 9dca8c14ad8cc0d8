"""
Graph validation for pipelines.

Checks structural soundness before a run is allowed to start so that
broken graphs never reach the scheduler. Every check runs and every
violation is reported, so a graph author can fix the graph in one pass.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pipeline_engine.errors import GraphValidationError
from pipeline_engine.graph.model import ANY_TYPE, PipelineGraph

if TYPE_CHECKING:
    from pipeline_engine.runtime.executor_registry import ExecutorRegistry

logger = logging.getLogger(__name__)


class ValidationErrorKind(StrEnum):
    """Kinds of structural problems a graph can have."""

    DUPLICATE_NODE_ID = "duplicate_node_id"
    UNKNOWN_NODE_REFERENCE = "unknown_node_reference"
    UNKNOWN_PORT = "unknown_port"
    PORT_TYPE_MISMATCH = "port_type_mismatch"
    CYCLE_DETECTED = "cycle_detected"
    ORPHANED_NODE = "orphaned_node"
    MISSING_REQUIRED_INPUT = "missing_required_input"
    DUPLICATE_INPUT_CONNECTION = "duplicate_input_connection"
    UNKNOWN_NODE_TYPE = "unknown_node_type"
    INVALID_NODE_CONFIG = "invalid_node_config"


class Severity(StrEnum):
    ERROR = "error"
    WARNING = "warning"


@dataclass
class ValidationIssue:
    """A single problem found in a graph."""

    kind: ValidationErrorKind
    message: str
    node_id: str | None = None
    connection_id: str | None = None
    severity: Severity = Severity.ERROR

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "node_id": self.node_id,
            "connection_id": self.connection_id,
            "severity": self.severity.value,
        }


@dataclass
class ValidationResult:
    """Result of validating a graph."""

    valid: bool
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    @property
    def kinds(self) -> set[ValidationErrorKind]:
        """Kinds of all hard errors."""
        return {issue.kind for issue in self.errors}

    @property
    def error(self) -> str:
        """Get combined error message."""
        return "; ".join(issue.message for issue in self.errors) if self.errors else ""

    def raise_for_errors(self) -> None:
        if not self.valid:
            raise GraphValidationError(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [issue.to_dict() for issue in self.errors],
            "warnings": [issue.to_dict() for issue in self.warnings],
        }


class PortTypeCompatibility:
    """
    Assignability table for port types.

    A source type is assignable to a target type when the types are equal,
    either side is the "any" wildcard, or the pair has been declared:

        compat = PortTypeCompatibility({"image": {"file"}, "video": {"file"}})
        compat.is_assignable("image", "file")  # True
    """

    def __init__(self, assignable: Mapping[str, set[str] | list[str]] | None = None):
        self._assignable: dict[str, set[str]] = {}
        for source, targets in (assignable or {}).items():
            self._assignable[source] = set(targets)

    def declare(self, source_type: str, target_type: str) -> None:
        self._assignable.setdefault(source_type, set()).add(target_type)

    def is_assignable(self, source_type: str, target_type: str) -> bool:
        if source_type == target_type:
            return True
        if source_type == ANY_TYPE or target_type == ANY_TYPE:
            return True
        return target_type in self._assignable.get(source_type, set())


class GraphValidator:
    """
    Validates pipeline graphs.

    Checks, in order:
    1. Referential integrity (nodes and ports that connections name exist)
    2. Port type compatibility
    3. Cycles (DFS with an explicit recursion stack, O(V+E))
    4. Orphaned nodes
    5. Required input coverage and fan-in of one connection per input port
    6. Node types and configs (only with an executor registry)

    Orphans (nodes with no incident connection) are warnings unless they can
    never run because a required input is neither connected nor supplied.
    With strict_orphans=True every orphan is an error.
    """

    def __init__(
        self,
        registry: "ExecutorRegistry | None" = None,
        type_compatibility: PortTypeCompatibility | None = None,
        strict_orphans: bool = False,
    ):
        self.registry = registry
        self.type_compatibility = type_compatibility or PortTypeCompatibility()
        self.strict_orphans = strict_orphans

    def validate(
        self,
        graph: PipelineGraph,
        provided_inputs: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> ValidationResult:
        """
        Validate a graph without mutating it.

        Args:
            graph: Graph to validate
            provided_inputs: Initial inputs {node_id: {port: value}}; ports
                supplied here count as covered for the required-input check

        Returns:
            ValidationResult with every error and warning found
        """
        errors: list[ValidationIssue] = []
        warnings: list[ValidationIssue] = []

        nodes = {}
        for node in graph.nodes:
            if node.id in nodes:
                errors.append(
                    ValidationIssue(
                        kind=ValidationErrorKind.DUPLICATE_NODE_ID,
                        message=f"Duplicate node id '{node.id}'",
                        node_id=node.id,
                    )
                )
                continue
            nodes[node.id] = node

        supplied: dict[str, set[str]] = {}
        for node_id, ports in (provided_inputs or {}).items():
            supplied[node_id] = set(ports)

        errors.extend(self._check_references(graph, nodes, supplied))
        errors.extend(self._check_port_types(graph, nodes))

        for cycle in self._find_cycles(graph, nodes):
            errors.append(
                ValidationIssue(
                    kind=ValidationErrorKind.CYCLE_DETECTED,
                    message=f"Cycle detected: {' -> '.join(cycle)}",
                    node_id=cycle[0],
                )
            )

        orphan_errors, orphan_warnings = self._check_orphans(graph, nodes, supplied)
        errors.extend(orphan_errors)
        warnings.extend(orphan_warnings)

        errors.extend(self._check_input_coverage(graph, nodes, supplied))

        if self.registry is not None:
            errors.extend(self._check_node_types(nodes))

        for issue in warnings:
            logger.warning(f"⚠ {issue.message}")

        result = ValidationResult(valid=not errors, errors=errors, warnings=warnings)
        if errors:
            logger.info(f"Graph '{graph.id}' failed validation with {len(errors)} error(s)")
        return result

    def _check_references(self, graph, nodes, supplied) -> list[ValidationIssue]:
        errors = []
        for conn in graph.connections:
            source = nodes.get(conn.source)
            target = nodes.get(conn.target)

            if source is None:
                errors.append(
                    ValidationIssue(
                        kind=ValidationErrorKind.UNKNOWN_NODE_REFERENCE,
                        message=f"Connection '{conn.id}' references missing source '{conn.source}'",
                        connection_id=conn.id,
                    )
                )
            elif source.get_output(conn.source_port) is None:
                errors.append(
                    ValidationIssue(
                        kind=ValidationErrorKind.UNKNOWN_PORT,
                        message=(
                            f"Connection '{conn.id}' references missing output port "
                            f"'{conn.source_port}' on '{conn.source}'"
                        ),
                        node_id=conn.source,
                        connection_id=conn.id,
                    )
                )

            if target is None:
                errors.append(
                    ValidationIssue(
                        kind=ValidationErrorKind.UNKNOWN_NODE_REFERENCE,
                        message=f"Connection '{conn.id}' references missing target '{conn.target}'",
                        connection_id=conn.id,
                    )
                )
            elif target.get_input(conn.target_port) is None:
                errors.append(
                    ValidationIssue(
                        kind=ValidationErrorKind.UNKNOWN_PORT,
                        message=(
                            f"Connection '{conn.id}' references missing input port "
                            f"'{conn.target_port}' on '{conn.target}'"
                        ),
                        node_id=conn.target,
                        connection_id=conn.id,
                    )
                )

        for node_id, ports in supplied.items():
            node = nodes.get(node_id)
            if node is None:
                errors.append(
                    ValidationIssue(
                        kind=ValidationErrorKind.UNKNOWN_NODE_REFERENCE,
                        message=f"Initial inputs reference missing node '{node_id}'",
                        node_id=node_id,
                    )
                )
                continue
            for port in sorted(ports):
                if node.get_input(port) is None:
                    errors.append(
                        ValidationIssue(
                            kind=ValidationErrorKind.UNKNOWN_PORT,
                            message=f"Initial inputs reference missing input port "
                            f"'{port}' on '{node_id}'",
                            node_id=node_id,
                        )
                    )
        return errors

    def _check_port_types(self, graph, nodes) -> list[ValidationIssue]:
        errors = []
        for conn in graph.connections:
            source = nodes.get(conn.source)
            target = nodes.get(conn.target)
            if source is None or target is None:
                continue
            out_port = source.get_output(conn.source_port)
            in_port = target.get_input(conn.target_port)
            if out_port is None or in_port is None:
                continue
            if not self.type_compatibility.is_assignable(out_port.type, in_port.type):
                errors.append(
                    ValidationIssue(
                        kind=ValidationErrorKind.PORT_TYPE_MISMATCH,
                        message=(
                            f"Connection '{conn.id}': output '{conn.source}.{conn.source_port}' "
                            f"({out_port.type}) is not assignable to input "
                            f"'{conn.target}.{conn.target_port}' ({in_port.type})"
                        ),
                        node_id=conn.target,
                        connection_id=conn.id,
                    )
                )
        return errors

    def _find_cycles(self, graph, nodes) -> list[list[str]]:
        """
        Find back-edges with an iterative DFS.

        Returns one path per back-edge, starting and ending at the node the
        back-edge points to (a self-loop yields [n, n]).
        """
        adj: dict[str, list[str]] = {node_id: [] for node_id in nodes}
        for conn in graph.connections:
            if conn.source in adj and conn.target in adj and conn.target not in adj[conn.source]:
                adj[conn.source].append(conn.target)

        white, gray, black = 0, 1, 2
        color = dict.fromkeys(adj, white)
        cycles: list[list[str]] = []

        for root in adj:
            if color[root] != white:
                continue
            color[root] = gray
            path = [root]
            stack = [(root, iter(adj[root]))]
            while stack:
                node_id, successors = stack[-1]
                nxt = next(successors, None)
                if nxt is None:
                    stack.pop()
                    path.pop()
                    color[node_id] = black
                elif color[nxt] == gray:
                    # Back-edge into the recursion stack
                    cycles.append(path[path.index(nxt) :] + [nxt])
                elif color[nxt] == white:
                    color[nxt] = gray
                    path.append(nxt)
                    stack.append((nxt, iter(adj[nxt])))
        return cycles

    def _check_orphans(self, graph, nodes, supplied):
        errors, warnings = [], []
        connected: set[str] = set()
        for conn in graph.connections:
            connected.add(conn.source)
            connected.add(conn.target)

        for node_id, node in nodes.items():
            if node_id in connected:
                continue
            given = supplied.get(node_id, ())
            unmet = [p.name for p in node.required_inputs if p.name not in given]
            if unmet or self.strict_orphans:
                detail = f" and can never receive required inputs {unmet}" if unmet else ""
                errors.append(
                    ValidationIssue(
                        kind=ValidationErrorKind.ORPHANED_NODE,
                        message=f"Node '{node_id}' has no connections{detail}",
                        node_id=node_id,
                    )
                )
            else:
                warnings.append(
                    ValidationIssue(
                        kind=ValidationErrorKind.ORPHANED_NODE,
                        message=f"Node '{node_id}' has no connections and feeds no other node",
                        node_id=node_id,
                        severity=Severity.WARNING,
                    )
                )
        return errors, warnings

    def _check_input_coverage(self, graph, nodes, supplied) -> list[ValidationIssue]:
        errors = []
        incoming: dict[tuple[str, str], list[str]] = {}
        for conn in graph.connections:
            incoming.setdefault((conn.target, conn.target_port), []).append(conn.id)

        for (target, port), conn_ids in incoming.items():
            if len(conn_ids) > 1 and target in nodes:
                errors.append(
                    ValidationIssue(
                        kind=ValidationErrorKind.DUPLICATE_INPUT_CONNECTION,
                        message=(
                            f"Input '{target}.{port}' has {len(conn_ids)} incoming connections "
                            f"({', '.join(conn_ids)}); at most one is allowed"
                        ),
                        node_id=target,
                        connection_id=conn_ids[1],
                    )
                )

        for node_id, node in nodes.items():
            for port in node.required_inputs:
                if (node_id, port.name) in incoming:
                    continue
                if port.name in supplied.get(node_id, ()):
                    continue
                errors.append(
                    ValidationIssue(
                        kind=ValidationErrorKind.MISSING_REQUIRED_INPUT,
                        message=f"Required input '{node_id}.{port.name}' is not connected",
                        node_id=node_id,
                    )
                )
        return errors

    def _check_node_types(self, nodes) -> list[ValidationIssue]:
        errors = []
        for node_id, node in nodes.items():
            if node.type not in self.registry:
                errors.append(
                    ValidationIssue(
                        kind=ValidationErrorKind.UNKNOWN_NODE_TYPE,
                        message=f"Node '{node_id}' has unknown type '{node.type}'",
                        node_id=node_id,
                    )
                )
                continue
            for message in self.registry.validate_config(node.type, node.config):
                errors.append(
                    ValidationIssue(
                        kind=ValidationErrorKind.INVALID_NODE_CONFIG,
                        message=f"Node '{node_id}' config invalid: {message}",
                        node_id=node_id,
                    )
                )
        return errors
