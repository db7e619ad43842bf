# src/railflow/engine/finalize.py
"""Run finalization: final node, final answer, confidence, persistence.

RunFinalizer.finalize() is the only place a RunRecord is finalized. It is
guarded so a run is finalized exactly once, whichever way the run ended.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence

import structlog

from railflow.contracts.enums import NodeStatus, RunStatus
from railflow.contracts.records import NodeRuntimeState, RunRecord
from railflow.core.ledger import RunLedger
from railflow.engine.evidence import build_conflict_ledger, compute_final_confidence
from railflow.engine.outputs import extract_final_answer

slog = structlog.get_logger(__name__)


def resolve_final_node_id(
    sinks: Sequence[str],
    completion_order: Sequence[str],
    last_done_node_id: str | None,
) -> str | None:
    """Pick the node whose output is the run's answer.

    A single sink is chosen directly. With several sinks, the sink that most
    recently reached done/low_quality wins. Otherwise fall back to the last
    node that reached done.
    """
    if len(sinks) == 1:
        return sinks[0]
    sink_set = set(sinks)
    for node_id in reversed(completion_order):
        if node_id in sink_set:
            return node_id
    return last_done_node_id


def final_node_failure_reason(final_node_id: str | None, status: NodeStatus | None) -> str:
    if final_node_id and status is not None:
        return f"final node({final_node_id}) state={status.value}"
    return "could not determine final node"


class RunFinalizer:
    """Finalizes and persists run records."""

    def __init__(self, ledger: RunLedger | None = None) -> None:
        self._ledger = ledger

    def finalize(
        self,
        record: RunRecord,
        *,
        sinks: Sequence[str],
        completion_order: Sequence[str],
        last_done_node_id: str | None,
        cancelled: bool,
        fault: str | None = None,
    ) -> RunRecord:
        """Finalize record once; later calls return it unchanged."""
        if record.is_finalized:
            return record

        envelopes = record.all_evidence()
        conflicts = build_conflict_ledger(envelopes)
        confidence = compute_final_confidence(envelopes, conflicts)

        final_node_id = resolve_final_node_id(sinks, completion_order, last_done_node_id)
        final_status = self._status_of(record.node_states, final_node_id)
        final_answer = ""
        if final_node_id is not None and final_status is not None and final_status.has_output:
            final_answer = extract_final_answer(record.outputs.get(final_node_id))

        if fault is not None:
            status, reason = RunStatus.FAILED, fault
        elif cancelled:
            status, reason = RunStatus.CANCELLED, "cancelled"
        elif final_status is not None and final_status.has_output:
            status, reason = RunStatus.COMPLETED, None
        else:
            status, reason = RunStatus.FAILED, final_node_failure_reason(final_node_id, final_status)

        record.finalize(
            status=status,
            conflicts=conflicts,
            confidence=confidence,
            final_node_id=final_node_id,
            final_answer=final_answer,
            failure_reason=reason,
        )
        slog.info(
            "run_finalized",
            run_id=record.run_id,
            status=status.value,
            final_node_id=final_node_id,
            confidence=confidence,
            conflicts=len(conflicts),
            reason=reason,
        )

        if self._ledger is not None:
            self._ledger.save(record)
        return record

    @staticmethod
    def _status_of(states: Mapping[str, NodeRuntimeState], node_id: str | None) -> NodeStatus | None:
        if node_id is None or node_id not in states:
            return None
        return states[node_id].status
