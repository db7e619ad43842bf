# tests/unit/engine/test_finalize.py
"""Tests for final node selection and RunFinalizer."""

from __future__ import annotations

import pytest

from railflow.contracts.enums import NodeStatus, RunStatus
from railflow.contracts.errors import RecordFinalizedError
from railflow.contracts.records import NodeRuntimeState, RunRecord, utc_now
from railflow.core.ledger import RunLedger
from railflow.engine.finalize import RunFinalizer, final_node_failure_reason, resolve_final_node_id


def record_with(states: dict[str, NodeStatus], outputs: dict[str, object] | None = None) -> RunRecord:
    record = RunRecord(run_id="run-1", question="q", started_at=utc_now())
    for node_id, status in states.items():
        record.node_states[node_id] = NodeRuntimeState(status=status)
    record.outputs.update(outputs or {})
    return record


class TestResolveFinalNode:
    def test_single_sink(self) -> None:
        assert resolve_final_node_id(["answer"], [], None) == "answer"

    def test_latest_completed_sink(self) -> None:
        assert resolve_final_node_id(["a", "b"], ["input", "b", "x", "a", "y"], "y") == "a"

    def test_falls_back_to_last_done(self) -> None:
        assert resolve_final_node_id(["a", "b"], ["input", "x"], "x") == "x"

    def test_nothing_done(self) -> None:
        assert resolve_final_node_id(["a", "b"], [], None) is None

    def test_failure_reason(self) -> None:
        assert final_node_failure_reason("b", NodeStatus.IDLE) == "final node(b) state=idle"
        assert final_node_failure_reason(None, None) == "could not determine final node"


class TestRunFinalizer:
    def test_completed_run(self) -> None:
        record = record_with({"input": NodeStatus.DONE, "answer": NodeStatus.DONE}, {"answer": {"text": "42"}})

        RunFinalizer().finalize(record, sinks=["answer"], completion_order=["input", "answer"], last_done_node_id="answer", cancelled=False)

        assert record.status is RunStatus.COMPLETED
        assert record.final_answer == "42"
        assert record.failure_reason is None
        assert record.finished_at is not None

    def test_low_quality_final_node_completes(self) -> None:
        record = record_with({"answer": NodeStatus.LOW_QUALITY}, {"answer": {"text": "meh"}})

        RunFinalizer().finalize(record, sinks=["answer"], completion_order=["answer"], last_done_node_id=None, cancelled=False)

        assert record.status is RunStatus.COMPLETED
        assert record.final_answer == "meh"

    def test_failed_final_node(self) -> None:
        record = record_with({"answer": NodeStatus.FAILED})

        RunFinalizer().finalize(record, sinks=["answer"], completion_order=[], last_done_node_id=None, cancelled=False)

        assert record.status is RunStatus.FAILED
        assert record.failure_reason == "final node(answer) state=failed"
        assert record.final_answer == ""

    def test_cancel_beats_completion(self) -> None:
        record = record_with({"answer": NodeStatus.DONE}, {"answer": "x"})

        RunFinalizer().finalize(record, sinks=["answer"], completion_order=["answer"], last_done_node_id="answer", cancelled=True)

        assert record.status is RunStatus.CANCELLED
        assert record.failure_reason == "cancelled"

    def test_fault_beats_cancel(self) -> None:
        record = record_with({"answer": NodeStatus.RUNNING})

        RunFinalizer().finalize(
            record, sinks=["answer"], completion_order=[], last_done_node_id=None, cancelled=True, fault="internal error: x"
        )

        assert record.status is RunStatus.FAILED
        assert record.failure_reason == "internal error: x"

    def test_second_finalize_is_a_no_op(self, ledger: RunLedger) -> None:
        record = record_with({"answer": NodeStatus.DONE}, {"answer": "x"})
        finalizer = RunFinalizer(ledger)

        finalizer.finalize(record, sinks=["answer"], completion_order=["answer"], last_done_node_id="answer", cancelled=False)
        finished_at = record.finished_at
        finalizer.finalize(record, sinks=["answer"], completion_order=[], last_done_node_id=None, cancelled=True)

        assert record.status is RunStatus.COMPLETED
        assert record.finished_at == finished_at
        assert len(ledger.list_runs()) == 1

    def test_finalized_record_rejects_mutation(self) -> None:
        record = record_with({"answer": NodeStatus.DONE}, {"answer": "x"})
        RunFinalizer().finalize(record, sinks=["answer"], completion_order=["answer"], last_done_node_id="answer", cancelled=False)

        with pytest.raises(RecordFinalizedError):
            record.finalize(
                status=RunStatus.FAILED,
                conflicts=[],
                confidence=0.0,
                final_node_id=None,
                final_answer="",
                failure_reason="again",
            )
