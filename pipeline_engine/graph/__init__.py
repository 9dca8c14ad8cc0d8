"""Graph structures: nodes, ports, connections, validation and planning."""

from pipeline_engine.graph.model import ANY_TYPE, Connection, NodeSpec, PipelineGraph, PortSpec
from pipeline_engine.graph.planner import ExecutionPlan, ExecutionPlanner
from pipeline_engine.graph.validator import (
    GraphValidator,
    PortTypeCompatibility,
    Severity,
    ValidationErrorKind,
    ValidationIssue,
    ValidationResult,
)

__all__ = [
    # Model
    "ANY_TYPE",
    "PortSpec",
    "NodeSpec",
    "Connection",
    "PipelineGraph",
    # Validation
    "GraphValidator",
    "PortTypeCompatibility",
    "Severity",
    "ValidationErrorKind",
    "ValidationIssue",
    "ValidationResult",
    # Planning
    "ExecutionPlan",
    "ExecutionPlanner",
]
