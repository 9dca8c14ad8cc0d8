"""
Execution Planner - Topological layering of a validated graph.

A plan is an ordered list of layers. Nodes in one layer have no dependency
among them and may run in any order or concurrently; every node sits in the
first layer after all of its dependencies.
"""

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from pipeline_engine.errors import PlanningError
from pipeline_engine.graph.model import PipelineGraph

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionPlan:
    """Derived dependency layers of a graph. Never persisted."""

    graph_id: str
    layers: tuple[tuple[str, ...], ...]

    def __iter__(self) -> Iterator[tuple[str, ...]]:
        return iter(self.layers)

    def __len__(self) -> int:
        return len(self.layers)

    @property
    def node_ids(self) -> list[str]:
        return [node_id for layer in self.layers for node_id in layer]

    def layer_of(self, node_id: str) -> int:
        """Index of the layer holding `node_id`."""
        for index, layer in enumerate(self.layers):
            if node_id in layer:
                return index
        raise KeyError(node_id)

    def layer_index(self) -> dict[str, int]:
        return {node_id: i for i, layer in enumerate(self.layers) for node_id in layer}

    def to_dict(self) -> dict[str, Any]:
        return {"graph_id": self.graph_id, "layers": [list(layer) for layer in self.layers]}


class ExecutionPlanner:
    """
    Computes execution layers with Kahn's algorithm.

    Only call on graphs that passed validation; a graph with a cycle leaves
    nodes unplaced and raises PlanningError.
    """

    def plan(self, graph: PipelineGraph) -> ExecutionPlan:
        node_ids = graph.node_ids
        successors: dict[str, set[str]] = {node_id: set() for node_id in node_ids}
        in_degree: dict[str, int] = dict.fromkeys(node_ids, 0)

        for conn in graph.connections:
            if conn.source not in successors or conn.target not in in_degree:
                raise PlanningError(
                    f"Connection '{conn.id}' references unknown node; validate the graph first"
                )
            # Parallel connections between the same pair are one dependency
            if conn.target not in successors[conn.source]:
                successors[conn.source].add(conn.target)
                in_degree[conn.target] += 1

        layers: list[tuple[str, ...]] = []
        ready = sorted(node_id for node_id, degree in in_degree.items() if degree == 0)
        placed = 0

        while ready:
            layers.append(tuple(ready))
            placed += len(ready)
            next_ready = []
            for node_id in ready:
                for succ in successors[node_id]:
                    in_degree[succ] -= 1
                    if in_degree[succ] == 0:
                        next_ready.append(succ)
            ready = sorted(next_ready)

        if placed != len(in_degree):
            unplaced = sorted(node_id for node_id, degree in in_degree.items() if degree > 0)
            raise PlanningError(f"Graph '{graph.id}' has a cycle through {unplaced}")

        logger.debug(
            f"Planned graph '{graph.id}': "
            + " | ".join(f"[{', '.join(layer)}]" for layer in layers)
        )
        return ExecutionPlan(graph_id=graph.id, layers=tuple(layers))
