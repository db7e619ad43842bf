"""Graph documents, validation and topology."""

from railflow.core.dag.graph import ExecutionGraph, ExecutionIndex, load_graph
from railflow.core.dag.models import (
    EdgeSpec,
    GateNodeSpec,
    GraphSpec,
    GraphValidationError,
    InputNodeSpec,
    NodeSpec,
    TransformNodeSpec,
    TurnNodeSpec,
)

__all__ = [
    "EdgeSpec",
    "ExecutionGraph",
    "ExecutionIndex",
    "GateNodeSpec",
    "GraphSpec",
    "GraphValidationError",
    "InputNodeSpec",
    "NodeSpec",
    "TransformNodeSpec",
    "TurnNodeSpec",
    "load_graph",
]
