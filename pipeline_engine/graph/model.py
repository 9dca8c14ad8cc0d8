"""
Graph Model - Nodes, typed ports and connections of a pipeline.

A pipeline is a directed graph:
- Nodes are typed processing units (the type resolves to an executor)
- Ports are the named, typed inputs/outputs of a node
- Connections wire one node's output port to another node's input port

Connections are the only source of dependency edges. Graphs are frozen:
a changed pipeline is a new graph (new id or version).
"""

import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, model_validator

ANY_TYPE = "any"


class PortSpec(BaseModel):
    """
    A named, typed port on a node.

    Examples:
        PortSpec(name="prompt", type="text", required=True)
        PortSpec(name="image", type="image")
    """

    name: str
    type: str = ANY_TYPE
    required: bool = Field(
        default=False, description="Input ports only: must be connected or supplied"
    )
    description: str = ""

    model_config = {"frozen": True}


class NodeSpec(BaseModel):
    """
    Specification for a single processing node.

    Example:
        NodeSpec(
            id="render",
            type="image_generator",
            config={"model": "sdxl", "size": "1024x1024"},
            inputs=[PortSpec(name="prompt", type="text", required=True)],
            outputs=[PortSpec(name="image", type="image")],
        )
    """

    id: str
    type: str = Field(description="Node type tag, resolved through the executor registry")
    name: str = ""
    description: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    inputs: tuple[PortSpec, ...] = ()
    outputs: tuple[PortSpec, ...] = ()

    # Execution overrides
    max_retries: int | None = Field(
        default=None, ge=1, description="Total attempt budget; engine default when None"
    )
    timeout_seconds: float | None = Field(default=None, gt=0)
    required: bool = Field(
        default=True, description="Whether the run fails when this node produces no output"
    )

    model_config = {"frozen": True}

    def get_input(self, name: str) -> PortSpec | None:
        for port in self.inputs:
            if port.name == name:
                return port
        return None

    def get_output(self, name: str) -> PortSpec | None:
        for port in self.outputs:
            if port.name == name:
                return port
        return None

    @property
    def required_inputs(self) -> list[PortSpec]:
        return [p for p in self.inputs if p.required]


class Connection(BaseModel):
    """A directed edge from `source.source_port` to `target.target_port`."""

    id: str = ""
    source: str = Field(description="Source node ID")
    source_port: str = Field(description="Output port on the source node")
    target: str = Field(description="Target node ID")
    target_port: str = Field(description="Input port on the target node")

    model_config = {"frozen": True}

    @model_validator(mode="before")
    @classmethod
    def _default_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("id"):
            data = {
                **data,
                "id": (
                    f"{data.get('source')}.{data.get('source_port')}"
                    f"->{data.get('target')}.{data.get('target_port')}"
                ),
            }
        return data


class PipelineGraph(BaseModel):
    """
    Immutable pipeline definition.

    Structural soundness (existing references, acyclicity, port coverage) is
    checked by GraphValidator, which reports every problem at once instead of
    failing on the first.
    """

    id: str
    version: str = "1"
    name: str = ""
    description: str = ""
    nodes: tuple[NodeSpec, ...] = ()
    connections: tuple[Connection, ...] = ()

    model_config = {"frozen": True}

    @classmethod
    def from_file(cls, path: str | Path) -> "PipelineGraph":
        """Load a graph from a JSON file."""
        return cls.model_validate(json.loads(Path(path).read_text(encoding="utf-8")))

    # === ADJACENCY QUERIES ===

    @property
    def node_ids(self) -> list[str]:
        return [node.id for node in self.nodes]

    def get_node(self, node_id: str) -> NodeSpec | None:
        """Get a node by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_incoming_connections(self, node_id: str) -> list[Connection]:
        """Get all connections entering a node."""
        return [c for c in self.connections if c.target == node_id]

    def get_outgoing_connections(self, node_id: str) -> list[Connection]:
        """Get all connections leaving a node."""
        return [c for c in self.connections if c.source == node_id]

    def predecessors(self, node_id: str) -> set[str]:
        """Nodes feeding at least one input of `node_id`."""
        return {c.source for c in self.connections if c.target == node_id}

    def successors(self, node_id: str) -> set[str]:
        """Nodes consuming at least one output of `node_id`."""
        return {c.target for c in self.connections if c.source == node_id}

    def adjacency(self) -> dict[str, set[str]]:
        """Successor map for every node (including nodes without edges)."""
        adj: dict[str, set[str]] = {node.id: set() for node in self.nodes}
        for conn in self.connections:
            adj.setdefault(conn.source, set()).add(conn.target)
        return adj

    def descendants(self, node_id: str) -> set[str]:
        """All nodes transitively reachable from `node_id` (excluding itself)."""
        adj = self.adjacency()
        seen: set[str] = set()
        to_visit = list(adj.get(node_id, ()))
        while to_visit:
            current = to_visit.pop()
            if current in seen:
                continue
            seen.add(current)
            to_visit.extend(adj.get(current, ()))
        seen.discard(node_id)
        return seen

    def entry_nodes(self) -> list[str]:
        """Nodes with no incoming connections."""
        targets = {c.target for c in self.connections}
        return [node.id for node in self.nodes if node.id not in targets]
