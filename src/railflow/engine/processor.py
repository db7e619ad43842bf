# src/railflow/engine/processor.py
"""NodeProcessor: runs one node of a graph run.

Coordinates:
- Pause, cancel and skip checks before anything executes
- Input resolution from the parents' outputs
- Closed dispatch over NodeType to the executors
- Turning executor exceptions into failed results

The scheduler owns all run state; the processor reads it through RunView
and reports back through the returned NodeResult. Every node-local
exception is caught here. OrchestrationInvariantError is the one exception
that propagates, since it means the scheduler's own bookkeeping is wrong.
"""

from __future__ import annotations

import traceback
from collections.abc import Iterable
from typing import Any, Protocol, assert_never

import structlog

from railflow.contracts.enums import NodeStatus, NodeType
from railflow.contracts.errors import ErrorCode, ExecutionError, OrchestrationInvariantError, WebTurnError
from railflow.core.dag.models import (
    GateNodeSpec,
    InputNodeSpec,
    NodeSpec,
    TransformNodeSpec,
    TurnNodeSpec,
)
from railflow.engine.executors import (
    GateExecutor,
    NodeContext,
    NodeExecutionError,
    NodeResult,
    TransformExecutor,
    TurnNodeExecutor,
)

slog = structlog.get_logger(__name__)

_INACTIVE_PARENT_STATUSES = frozenset({NodeStatus.SKIPPED, NodeStatus.CANCELLED})


class RunView(Protocol):
    """What the processor may read and report while a run is active."""

    @property
    def run_id(self) -> str: ...

    @property
    def question(self) -> str: ...

    @property
    def pause_requested(self) -> bool: ...

    @property
    def cancel_requested(self) -> bool: ...

    def parents(self, node_id: str) -> tuple[str, ...]: ...

    def children(self, node_id: str) -> tuple[str, ...]: ...

    def status_of(self, node_id: str) -> NodeStatus: ...

    def output_of(self, node_id: str) -> Any: ...

    def is_routed_away(self, node_id: str) -> bool: ...

    def log(self, node_id: str, line: str) -> None: ...

    def set_status(self, node_id: str, status: NodeStatus, message: str) -> None: ...


def execution_error(error: BaseException, code: ErrorCode | None = None) -> ExecutionError:
    payload: ExecutionError = {
        "exception": str(error),
        "type": type(error).__name__,
        "traceback": "".join(traceback.format_exception(error)),
    }
    if code is not None:
        payload["code"] = code.value
    return payload


class NodeProcessor:
    """Runs single nodes for the scheduler.

    Example:
        processor = NodeProcessor(turn=TurnNodeExecutor(local=engine, web=runner))
        result = await processor.process(spec, run_view)
    """

    def __init__(
        self,
        *,
        turn: TurnNodeExecutor,
        transform: TransformExecutor | None = None,
        gate: GateExecutor | None = None,
    ) -> None:
        self._turn = turn
        self._transform = transform or TransformExecutor()
        self._gate = gate or GateExecutor()

    def check_graph(self, nodes: Iterable[NodeSpec]) -> None:
        """Raises ConfigurationError when a node needs a backend that is not configured."""
        for spec in nodes:
            if isinstance(spec, TurnNodeSpec):
                self._turn.require_backend(spec)

    async def process(self, spec: NodeSpec, run: RunView) -> NodeResult:
        node_id = spec.id
        if run.pause_requested:
            return NodeResult(status=NodeStatus.QUEUED, message="paused")
        if run.cancel_requested:
            return NodeResult(status=NodeStatus.CANCELLED, message="run cancelled")

        parents = run.parents(node_id)
        if run.is_routed_away(node_id):
            return NodeResult(status=NodeStatus.SKIPPED, message="not selected by gate")
        if parents and all(run.status_of(p) in _INACTIVE_PARENT_STATUSES for p in parents):
            return NodeResult(status=NodeStatus.SKIPPED, message="no active parent")

        run.set_status(node_id, NodeStatus.RUNNING, "started")
        ctx = self._build_context(spec, run)
        try:
            result = await self._dispatch(spec, ctx)
        except OrchestrationInvariantError:
            raise
        except WebTurnError as e:
            if e.code is ErrorCode.CANCELLED:
                return NodeResult(status=NodeStatus.CANCELLED, message="run cancelled")
            result = self._failed(node_id, e, e.code)
        except NodeExecutionError as e:
            result = self._failed(node_id, e, e.code)
        except Exception as e:
            result = self._failed(node_id, e, None)

        if run.cancel_requested and result.status is NodeStatus.FAILED:
            return NodeResult(status=NodeStatus.CANCELLED, message="run cancelled", error=result.error)
        return result

    def _failed(self, node_id: str, error: Exception, code: ErrorCode | None) -> NodeResult:
        slog.warning("node_failed", node_id=node_id, error_type=type(error).__name__, error=str(error))
        return NodeResult(status=NodeStatus.FAILED, message=str(error), error=execution_error(error, code))

    async def _dispatch(self, spec: NodeSpec, ctx: NodeContext) -> NodeResult:
        match spec.node_type:
            case NodeType.INPUT:
                assert isinstance(spec, InputNodeSpec)
                return NodeResult(status=NodeStatus.DONE, output=ctx.question, message="question received")
            case NodeType.TURN:
                assert isinstance(spec, TurnNodeSpec)
                return await self._turn.execute(spec, ctx)
            case NodeType.TRANSFORM:
                assert isinstance(spec, TransformNodeSpec)
                return await self._transform.execute(spec, ctx)
            case NodeType.GATE:
                assert isinstance(spec, GateNodeSpec)
                return await self._gate.execute(spec, ctx)
            case _:
                assert_never(spec.node_type)

    @staticmethod
    def _build_context(spec: NodeSpec, run: RunView) -> NodeContext:
        node_id = spec.id
        parents = run.parents(node_id)
        active = [p for p in parents if run.status_of(p).has_output]
        inputs = {p: run.output_of(p) for p in active}
        if not parents:
            input_value: Any = run.question
        elif len(active) == 1:
            input_value = inputs[active[0]]
        else:
            input_value = inputs

        return NodeContext(
            run_id=run.run_id,
            node_id=node_id,
            question=run.question,
            input_value=input_value,
            inputs=inputs,
            children=run.children(node_id),
            log=lambda line: run.log(node_id, line),
            set_status=lambda status, message: run.set_status(node_id, status, message),
            is_cancelled=lambda: run.cancel_requested,
        )
