# src/railflow/engine/scheduler.py
"""GraphRunEngine: drives one graph run to completion.

The run loop keeps a ready queue and a set of in-flight node tasks:

- zero-indegree nodes are queued at the start;
- queued nodes are started until max_threads tasks are in flight; a local
  turn also needs the turn slot, so while one local turn runs the others
  wait in the queue and the scan moves on to the next candidate;
- when a node finishes, its children's indegree is decremented and the ones
  that reach zero are queued. Children of a failed node are never queued
  and stay idle;
- pause stops new starts; cancel stops new starts, waits for in-flight
  nodes to observe the flag, then marks every non-terminal node cancelled.

All node status changes go through _RunState.transition(), which records a
Transition on the run record. Finalization happens exactly once, in the
finally block of run().
"""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from typing import Any

import structlog

from railflow.contracts.enums import NodeStatus
from railflow.contracts.errors import OrchestrationInvariantError
from railflow.contracts.records import NodeRuntimeState, RunRecord, Transition, utc_now
from railflow.core.canonical import compute_topology_hash
from railflow.core.config import SchedulerSettings
from railflow.core.dag.graph import ExecutionGraph, ExecutionIndex
from railflow.core.dag.models import NodeSpec, TurnNodeSpec
from railflow.core.ledger import RunLedger
from railflow.engine.clock import DEFAULT_CLOCK, Clock
from railflow.engine.evidence import build_envelope, build_status_envelope
from railflow.engine.executors import NodeResult
from railflow.engine.finalize import RunFinalizer
from railflow.engine.processor import NodeProcessor

slog = structlog.get_logger(__name__)

# Allowed non-terminal moves; any status may move to a terminal one
_NON_TERMINAL_MOVES: dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.IDLE: frozenset({NodeStatus.QUEUED}),
    NodeStatus.QUEUED: frozenset({NodeStatus.QUEUED, NodeStatus.RUNNING}),
    NodeStatus.RUNNING: frozenset({NodeStatus.QUEUED, NodeStatus.RUNNING, NodeStatus.WAITING_USER}),
    NodeStatus.WAITING_USER: frozenset({NodeStatus.RUNNING, NodeStatus.WAITING_USER}),
}


def is_local_turn(spec: NodeSpec) -> bool:
    return isinstance(spec, TurnNodeSpec) and spec.web_provider is None


class _RunState:
    """Mutable state of the active run. Implements processor.RunView."""

    def __init__(self, run_id: str, question: str, index: ExecutionIndex, record: RunRecord) -> None:
        self._run_id = run_id
        self._question = question
        self.index = index
        self.record = record
        self.outputs: dict[str, Any] = {}
        self.routed_away: set[str] = set()
        self.completion_order: list[str] = []
        self.last_done_node_id: str | None = None
        self.pause_requested = False
        self.cancel_requested = False
        self.local_turn_node_id: str | None = None
        for node_id in index.node_map:
            record.node_states[node_id] = NodeRuntimeState()

    # === RunView ===

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def question(self) -> str:
        return self._question

    def parents(self, node_id: str) -> tuple[str, ...]:
        return self.index.incoming[node_id]

    def children(self, node_id: str) -> tuple[str, ...]:
        return self.index.adjacency[node_id]

    def status_of(self, node_id: str) -> NodeStatus:
        return self.record.node_states[node_id].status

    def output_of(self, node_id: str) -> Any:
        return self.outputs.get(node_id)

    def is_routed_away(self, node_id: str) -> bool:
        return node_id in self.routed_away

    def log(self, node_id: str, line: str) -> None:
        self.record.node_states[node_id].logs.append(line)

    def set_status(self, node_id: str, status: NodeStatus, message: str) -> None:
        self.transition(node_id, status, message)

    # === Transitions ===

    def transition(self, node_id: str, status: NodeStatus, message: str = "") -> None:
        state = self.record.node_states[node_id]
        current = state.status
        if current.is_terminal:
            raise OrchestrationInvariantError(
                f"node '{node_id}' is already {current.value}, cannot move to {status.value}"
            )
        if not status.is_terminal and status not in _NON_TERMINAL_MOVES[current]:
            raise OrchestrationInvariantError(f"node '{node_id}' cannot move from {current.value} to {status.value}")

        now = utc_now()
        state.status = status
        if status is NodeStatus.RUNNING and state.started_at is None:
            state.started_at = now
        if status.is_terminal:
            state.finished_at = now
        transition = Transition(at=now, node_id=node_id, status=status, message=message)
        self.record.add_transition(transition)
        state.logs.append(transition.log_line)
        slog.debug("node_transition", run_id=self._run_id, node_id=node_id, status=status.value, message=message)


class GraphRunEngine:
    """Runs graphs one at a time with bounded concurrency.

    Example:
        engine = GraphRunEngine(processor, settings=settings.scheduler, ledger=ledger)
        record = await engine.run(graph, "Which database should we use?")

    pause(), resume() and cancel() act on the active run and are safe to call
    from any task on the same event loop.
    """

    def __init__(
        self,
        processor: NodeProcessor,
        *,
        settings: SchedulerSettings | None = None,
        ledger: RunLedger | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._processor = processor
        self._settings = settings or SchedulerSettings()
        self._finalizer = RunFinalizer(ledger)
        self._clock = clock or DEFAULT_CLOCK
        self._active: _RunState | None = None

    @property
    def max_threads(self) -> int:
        return self._settings.resolve_max_threads()

    @property
    def is_running(self) -> bool:
        return self._active is not None

    @property
    def is_paused(self) -> bool:
        return self._active is not None and self._active.pause_requested

    def pause(self) -> None:
        if self._active is not None and not self._active.pause_requested:
            self._active.pause_requested = True
            slog.info("run_pause_requested", run_id=self._active.run_id)

    def resume(self) -> None:
        if self._active is not None and self._active.pause_requested:
            self._active.pause_requested = False
            slog.info("run_resume_requested", run_id=self._active.run_id)

    def cancel(self) -> None:
        if self._active is not None and not self._active.cancel_requested:
            self._active.cancel_requested = True
            slog.info("run_cancel_requested", run_id=self._active.run_id)

    async def run(self, graph: ExecutionGraph, question: str) -> RunRecord | None:
        """Execute graph for question and return the finalized record.

        While a run is active this call starts nothing: it resumes the active
        run if it is paused and returns None.

        Raises:
            GraphValidationError: If the graph is invalid (before any node runs)
            ConfigurationError: If a node needs a backend that is not configured
            OrchestrationInvariantError: On a scheduler bookkeeping fault (after
                the run record is finalized as failed)
        """
        if self._active is not None:
            if self._active.pause_requested:
                self.resume()
            else:
                slog.info("run_already_active", run_id=self._active.run_id)
            return None

        graph.validate()
        index = graph.build_index()
        self._processor.check_graph(index.node_map.values())

        run_id = uuid.uuid4().hex
        record = RunRecord(
            run_id=run_id, question=question, started_at=utc_now(), graph_hash=compute_topology_hash(graph)
        )
        state = _RunState(run_id, question, index, record)
        self._active = state
        sinks = graph.sinks()
        fault: str | None = None
        slog.info("run_started", run_id=run_id, nodes=graph.node_count, max_threads=self.max_threads)

        try:
            await self._drive(state)
        except OrchestrationInvariantError as e:
            fault = f"internal error: {e}"
            raise
        except asyncio.CancelledError:
            state.cancel_requested = True
            self._cancel_remaining(state)
            raise
        finally:
            self._active = None
            self._finalizer.finalize(
                record,
                sinks=sinks,
                completion_order=state.completion_order,
                last_done_node_id=state.last_done_node_id,
                cancelled=state.cancel_requested,
                fault=fault,
            )
        return record

    # === Run loop ===

    async def _drive(self, state: _RunState) -> None:
        queue: deque[str] = deque()
        in_flight: dict[asyncio.Task[NodeResult], str] = {}
        paused_logged = False

        for node_id, degree in state.index.indegree.items():
            if degree == 0:
                self._enqueue(state, queue, node_id)

        try:
            while queue or in_flight:
                if state.cancel_requested:
                    if not in_flight:
                        break
                    await self._await_completions(state, queue, in_flight)
                    continue

                if state.pause_requested:
                    if in_flight:
                        await self._await_completions(state, queue, in_flight)
                        continue
                    if not paused_logged:
                        paused_logged = True
                        slog.info("run_paused", run_id=state.run_id)
                    await self._clock.sleep(self._settings.pause_poll_interval_ms / 1000)
                    continue
                if paused_logged:
                    paused_logged = False
                    slog.info("run_resumed", run_id=state.run_id)

                self._start_ready(state, queue, in_flight)
                if in_flight:
                    await self._await_completions(state, queue, in_flight)
                elif queue:
                    raise OrchestrationInvariantError(f"queued nodes {list(queue)} cannot start with nothing in flight")
        finally:
            for task in in_flight:
                task.cancel()

        if state.cancel_requested:
            self._cancel_remaining(state)

    def _enqueue(self, state: _RunState, queue: deque[str], node_id: str, *, front: bool = False) -> None:
        state.transition(node_id, NodeStatus.QUEUED, "queued")
        if front:
            queue.appendleft(node_id)
        else:
            queue.append(node_id)

    def _start_ready(self, state: _RunState, queue: deque[str], in_flight: dict[asyncio.Task[NodeResult], str]) -> None:
        max_threads = self.max_threads
        for node_id in list(queue):
            if len(in_flight) >= max_threads:
                return
            spec = state.index.node_map[node_id]
            if is_local_turn(spec):
                if state.local_turn_node_id is not None:
                    continue
                state.local_turn_node_id = node_id
            queue.remove(node_id)
            task = asyncio.create_task(self._processor.process(spec, state), name=f"node:{node_id}")
            in_flight[task] = node_id

    async def _await_completions(
        self,
        state: _RunState,
        queue: deque[str],
        in_flight: dict[asyncio.Task[NodeResult], str],
    ) -> None:
        done, _pending = await asyncio.wait(in_flight.keys(), return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            node_id = in_flight.pop(task)
            if state.local_turn_node_id == node_id:
                state.local_turn_node_id = None
            self._apply_result(state, queue, node_id, task.result())

    def _apply_result(self, state: _RunState, queue: deque[str], node_id: str, result: NodeResult) -> None:
        spec = state.index.node_map[node_id]
        node_state = state.record.node_states[node_id]

        match result.status:
            case NodeStatus.QUEUED:
                self._enqueue(state, queue, node_id, front=True)
                return
            case NodeStatus.DONE | NodeStatus.LOW_QUALITY:
                state.outputs[node_id] = result.output
                state.record.outputs[node_id] = result.output
                state.routed_away.update(result.routed_away)
                state.transition(node_id, result.status, result.message)
                state.record.append_evidence(
                    build_envelope(spec, result.output, status=result.status, data_issues=result.data_issues)
                )
                state.completion_order.append(node_id)
                if result.status is NodeStatus.DONE:
                    state.last_done_node_id = node_id
                self._schedule_children(state, queue, node_id)
            case NodeStatus.SKIPPED:
                state.transition(node_id, NodeStatus.SKIPPED, result.message)
                state.record.append_evidence(build_status_envelope(spec, result.message, status=NodeStatus.SKIPPED))
                self._schedule_children(state, queue, node_id)
            case NodeStatus.FAILED:
                node_state.error = result.error
                state.transition(node_id, NodeStatus.FAILED, result.message)
            case NodeStatus.CANCELLED:
                node_state.error = result.error
                state.transition(node_id, NodeStatus.CANCELLED, result.message)
                state.record.append_evidence(build_status_envelope(spec, result.message, status=NodeStatus.CANCELLED))
            case _:
                raise OrchestrationInvariantError(f"node '{node_id}' finished with status {result.status.value}")

    def _schedule_children(self, state: _RunState, queue: deque[str], node_id: str) -> None:
        indegree = state.index.indegree
        for child in state.index.adjacency[node_id]:
            indegree[child] -= 1
            if indegree[child] < 0:
                raise OrchestrationInvariantError(f"indegree of '{child}' dropped below zero")
            if indegree[child] == 0:
                self._enqueue(state, queue, child)

    @staticmethod
    def _cancel_remaining(state: _RunState) -> None:
        for node_id, node_state in state.record.node_states.items():
            if not node_state.status.is_terminal:
                was_queued = node_state.status is NodeStatus.QUEUED
                state.transition(node_id, NodeStatus.CANCELLED, "run cancelled")
                if was_queued:
                    spec = state.index.node_map[node_id]
                    state.record.append_evidence(
                        build_status_envelope(spec, "run cancelled", status=NodeStatus.CANCELLED)
                    )

