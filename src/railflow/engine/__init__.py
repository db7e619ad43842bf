# src/railflow/engine/__init__.py
"""Railflow engine: graph runs with bounded concurrency and a run ledger.

This module provides the execution engine:
- GraphRunEngine: run lifecycle, ready queue, pause/cancel, finalization
- NodeProcessor: per-node checks, input resolution, executor dispatch
- WebTurnRunner: web turns through the bridge mailbox or headless worker
- RetryManager: retry logic with tenacity

Example:
    from railflow.core.dag import load_graph
    from railflow.engine import GraphRunEngine, NodeProcessor, TurnNodeExecutor

    processor = NodeProcessor(turn=TurnNodeExecutor(local=my_engine))
    engine = GraphRunEngine(processor, settings=settings.scheduler)
    record = await engine.run(load_graph(path), "What changed in v2?")
"""

from railflow.engine.clock import DEFAULT_CLOCK, Clock, MockClock, SystemClock
from railflow.engine.executors import (
    GateExecutor,
    NodeContext,
    NodeExecutionError,
    NodeResult,
    TransformExecutor,
    TurnNodeExecutor,
    WebTurnRunner,
)
from railflow.engine.finalize import RunFinalizer
from railflow.engine.processor import NodeProcessor
from railflow.engine.protocols import AuthProbe, TurnExecutor, TurnOutcome
from railflow.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager
from railflow.engine.scheduler import GraphRunEngine

__all__ = [
    "DEFAULT_CLOCK",
    "AuthProbe",
    "Clock",
    "GateExecutor",
    "GraphRunEngine",
    "MaxRetriesExceeded",
    "MockClock",
    "NodeContext",
    "NodeExecutionError",
    "NodeProcessor",
    "NodeResult",
    "RetryConfig",
    "RetryManager",
    "RunFinalizer",
    "SystemClock",
    "TransformExecutor",
    "TurnExecutor",
    "TurnNodeExecutor",
    "TurnOutcome",
    "WebTurnRunner",
]
