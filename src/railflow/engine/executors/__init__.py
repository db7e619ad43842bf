# src/railflow/engine/executors/__init__.py
"""Per-node-type executors dispatched by the node processor."""

from railflow.engine.executors.gate import GateExecutor
from railflow.engine.executors.transform import TransformExecutor
from railflow.engine.executors.turn import TurnNodeExecutor
from railflow.engine.executors.types import NodeContext, NodeExecutionError, NodeResult
from railflow.engine.executors.web_turn import WebTurnRunner

__all__ = [
    "GateExecutor",
    "NodeContext",
    "NodeExecutionError",
    "NodeResult",
    "TransformExecutor",
    "TurnNodeExecutor",
    "WebTurnRunner",
]
