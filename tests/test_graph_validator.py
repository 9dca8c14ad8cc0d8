"""Tests for GraphValidator structural checks."""

import pytest

from pipeline_engine.errors import GraphValidationError
from pipeline_engine.graph.model import Connection, NodeSpec, PipelineGraph, PortSpec
from pipeline_engine.graph.validator import (
    GraphValidator,
    PortTypeCompatibility,
    Severity,
    ValidationErrorKind,
)
from pipeline_engine.runtime.executor_registry import ExecutorRegistry, NodeTypeDefinition

# === HELPER FUNCTIONS ===


def node(node_id: str, inputs=("in",), outputs=("out",), required=(), node_type="pass", **kw):
    return NodeSpec(
        id=node_id,
        type=node_type,
        inputs=tuple(PortSpec(name=p, required=p in required) for p in inputs),
        outputs=tuple(PortSpec(name=p) for p in outputs),
        **kw,
    )


def conn(source: str, target: str, source_port: str = "out", target_port: str = "in"):
    return Connection(
        source=source, source_port=source_port, target=target, target_port=target_port
    )


def graph(nodes, connections=()) -> PipelineGraph:
    return PipelineGraph(id="g", nodes=nodes, connections=connections)


# === STRUCTURE ===


def test_valid_diamond():
    g = graph(
        [node("A", inputs=()), node("B"), node("C"), node("D", inputs=("l", "r"))],
        [
            conn("A", "B"),
            conn("A", "C"),
            conn("B", "D", target_port="l"),
            conn("C", "D", target_port="r"),
        ],
    )

    result = GraphValidator().validate(g)

    assert result.valid
    assert result.errors == []
    assert result.warnings == []


def test_two_node_cycle_detected():
    g = graph([node("A"), node("B")], [conn("A", "B"), conn("B", "A")])

    result = GraphValidator().validate(g)

    assert not result.valid
    assert ValidationErrorKind.CYCLE_DETECTED in result.kinds


def test_self_loop_detected():
    g = graph([node("A", inputs=()), node("B")], [conn("A", "B"), conn("B", "B")])

    result = GraphValidator().validate(g)

    cycles = [e for e in result.errors if e.kind == ValidationErrorKind.CYCLE_DETECTED]
    assert len(cycles) == 1
    assert cycles[0].node_id == "B"


def test_longer_cycle_reported_with_path():
    g = graph(
        [node("S", inputs=()), node("A", inputs=("in", "loop")), node("B"), node("C")],
        [conn("S", "A"), conn("A", "B"), conn("B", "C"), conn("C", "A", target_port="loop")],
    )

    result = GraphValidator().validate(g)

    cycles = [e for e in result.errors if e.kind == ValidationErrorKind.CYCLE_DETECTED]
    assert len(cycles) == 1
    assert "A -> B -> C -> A" in cycles[0].message


def test_duplicate_node_id():
    g = graph([node("A", inputs=()), node("A", inputs=())])

    result = GraphValidator().validate(g)

    assert ValidationErrorKind.DUPLICATE_NODE_ID in result.kinds


def test_unknown_node_reference():
    g = graph([node("A", inputs=())], [conn("A", "ghost")])

    result = GraphValidator().validate(g)

    assert not result.valid
    issue = next(e for e in result.errors if e.kind == ValidationErrorKind.UNKNOWN_NODE_REFERENCE)
    assert issue.connection_id == "A.out->ghost.in"


def test_unknown_ports():
    g = graph(
        [node("A", inputs=()), node("B")],
        [conn("A", "B", source_port="nope"), conn("A", "B", target_port="missing")],
    )

    result = GraphValidator().validate(g)

    unknown = [e for e in result.errors if e.kind == ValidationErrorKind.UNKNOWN_PORT]
    assert len(unknown) == 2


def test_port_type_mismatch():
    g = graph(
        [
            NodeSpec(id="A", type="t", outputs=(PortSpec(name="out", type="image"),)),
            NodeSpec(id="B", type="t", inputs=(PortSpec(name="in", type="text"),)),
        ],
        [conn("A", "B")],
    )

    result = GraphValidator().validate(g)

    assert result.kinds == {ValidationErrorKind.PORT_TYPE_MISMATCH}


def test_declared_type_compatibility_and_any():
    g = graph(
        [
            NodeSpec(id="A", type="t", outputs=(PortSpec(name="out", type="image"),)),
            NodeSpec(id="B", type="t", inputs=(PortSpec(name="in", type="file"),)),
            NodeSpec(id="C", type="t", inputs=(PortSpec(name="in"),)),
        ],
        [conn("A", "B"), conn("A", "C")],
    )

    compat = PortTypeCompatibility({"image": {"file"}})
    result = GraphValidator(type_compatibility=compat).validate(g)

    assert result.valid


def test_all_errors_reported_at_once():
    g = graph(
        [node("A"), node("B"), node("C", required=("in",))],
        [conn("A", "B"), conn("B", "A"), conn("A", "ghost")],
    )

    result = GraphValidator().validate(g)

    assert {
        ValidationErrorKind.CYCLE_DETECTED,
        ValidationErrorKind.UNKNOWN_NODE_REFERENCE,
        ValidationErrorKind.ORPHANED_NODE,
        ValidationErrorKind.MISSING_REQUIRED_INPUT,
    } <= result.kinds


# === INPUTS ===


def test_missing_required_input():
    g = graph(
        [node("A", inputs=()), node("B", inputs=("in", "extra"), required=("extra",))],
        [conn("A", "B")],
    )

    result = GraphValidator().validate(g)

    issue = next(e for e in result.errors if e.kind == ValidationErrorKind.MISSING_REQUIRED_INPUT)
    assert issue.node_id == "B"
    assert "B.extra" in issue.message


def test_provided_inputs_cover_required_ports():
    g = graph(
        [node("A", inputs=()), node("B", inputs=("in", "extra"), required=("extra",))],
        [conn("A", "B")],
    )

    result = GraphValidator().validate(g, provided_inputs={"B": {"extra": 1}})

    assert result.valid


def test_provided_inputs_must_name_real_ports():
    g = graph([node("A", inputs=("seed",))])

    result = GraphValidator().validate(g, provided_inputs={"A": {"sed": 1}, "Z": {"x": 1}})

    assert result.kinds == {
        ValidationErrorKind.UNKNOWN_PORT,
        ValidationErrorKind.UNKNOWN_NODE_REFERENCE,
    }


def test_duplicate_input_connection():
    g = graph(
        [node("A", inputs=()), node("B", inputs=()), node("C")],
        [conn("A", "C"), conn("B", "C")],
    )

    result = GraphValidator().validate(g)

    assert result.kinds == {ValidationErrorKind.DUPLICATE_INPUT_CONNECTION}


# === ORPHANS ===


def test_orphan_source_is_warning():
    g = graph([node("A", inputs=()), node("B"), node("lonely", inputs=())], [conn("A", "B")])

    result = GraphValidator().validate(g)

    assert result.valid
    assert [w.node_id for w in result.warnings] == ["lonely"]
    assert result.warnings[0].severity == Severity.WARNING
    assert result.warnings[0].kind == ValidationErrorKind.ORPHANED_NODE


def test_orphan_with_unmet_required_input_is_error():
    g = graph([node("A", inputs=()), node("B"), node("stuck", required=("in",))], [conn("A", "B")])

    result = GraphValidator().validate(g)

    assert not result.valid
    orphan = next(e for e in result.errors if e.kind == ValidationErrorKind.ORPHANED_NODE)
    assert orphan.node_id == "stuck"


def test_orphan_with_supplied_required_input_is_warning():
    g = graph([node("solo", required=("in",))])

    result = GraphValidator().validate(g, provided_inputs={"solo": {"in": "x"}})

    assert result.valid
    assert len(result.warnings) == 1


def test_strict_orphans():
    g = graph([node("A", inputs=()), node("B"), node("lonely", inputs=())], [conn("A", "B")])

    result = GraphValidator(strict_orphans=True).validate(g)

    assert not result.valid
    assert result.kinds == {ValidationErrorKind.ORPHANED_NODE}


# === REGISTRY CHECKS ===


def test_unknown_node_type_with_registry():
    registry = ExecutorRegistry()
    registry.register_function("pass", lambda config, inputs, ctx: {"out": 1})
    g = graph([node("A", inputs=()), node("B", node_type="mystery")], [conn("A", "B")])

    result = GraphValidator(registry).validate(g)

    issue = next(e for e in result.errors if e.kind == ValidationErrorKind.UNKNOWN_NODE_TYPE)
    assert issue.node_id == "B"


def test_invalid_config_against_schema():
    registry = ExecutorRegistry()
    registry.register_function(
        "pass",
        lambda config, inputs, ctx: {"out": 1},
        definition=NodeTypeDefinition(
            type="pass",
            config_schema={
                "type": "object",
                "properties": {"size": {"type": "integer"}},
                "required": ["size"],
            },
        ),
    )
    g = graph([node("A", inputs=(), config={"size": "big"})])

    result = GraphValidator(registry).validate(g)

    assert result.kinds == {ValidationErrorKind.INVALID_NODE_CONFIG}
    assert "size" in result.errors[0].message


def test_raise_for_errors():
    g = graph([node("A"), node("B")], [conn("A", "B"), conn("B", "A")])
    result = GraphValidator().validate(g)

    with pytest.raises(GraphValidationError) as exc_info:
        result.raise_for_errors()

    assert exc_info.value.result is result
    assert "Cycle detected" in str(exc_info.value)


def test_validation_does_not_mutate_graph():
    g = graph([node("A"), node("B")], [conn("A", "B"), conn("B", "A")])
    before = g.model_dump()

    GraphValidator().validate(g)

    assert g.model_dump() == before
