# tests/unit/core/test_ledger.py
"""Tests for the SQLAlchemy run ledger."""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import pytest

from railflow.contracts.enums import NodeStatus, RunStatus
from railflow.contracts.errors import RecordFinalizedError
from railflow.contracts.records import NodeRuntimeState, RunRecord, Transition, utc_now
from railflow.core.dag import InputNodeSpec, TurnNodeSpec
from railflow.core.ledger import LedgerDB, RunLedger
from railflow.engine.evidence import build_envelope


def finished_record(run_id: str = "run-1", *, minutes_ago: int = 0) -> RunRecord:
    started = utc_now() - timedelta(minutes=minutes_ago)
    record = RunRecord(run_id=run_id, question="capital of France?", started_at=started, graph_hash="ab" * 32)
    record.node_states["input"] = NodeRuntimeState(status=NodeStatus.DONE, logs=["[input] done"])
    record.node_states["answer"] = NodeRuntimeState(
        status=NodeStatus.FAILED,
        error={"exception": "boom", "type": "RuntimeError", "traceback": "tb"},
    )
    record.add_transition(Transition(at=started, node_id="input", status=NodeStatus.DONE, message="done"))
    record.add_transition(Transition(at=started, node_id="answer", status=NodeStatus.FAILED, message="boom"))
    record.outputs["input"] = "capital of France?"
    record.append_evidence(build_envelope(InputNodeSpec(id="input"), "capital of France?", status=NodeStatus.DONE))
    record.append_evidence(build_envelope(TurnNodeSpec(id="answer"), {"text": "Paris"}, status=NodeStatus.DONE))
    record.finalize(
        status=RunStatus.FAILED,
        conflicts=[],
        confidence=0.7,
        final_node_id="answer",
        final_answer="",
        failure_reason="final node(answer) state=failed",
        finished_at=started + timedelta(seconds=5),
    )
    return record


class TestSave:
    def test_round_trip_document(self, ledger: RunLedger) -> None:
        record = finished_record()

        ledger.save(record)

        document = ledger.load("run-1")
        assert document["status"] == "failed"
        assert document["graph_hash"] == "ab" * 32
        assert document["node_states"]["answer"]["error"]["type"] == "RuntimeError"
        assert document["summary_logs"] == ["[input] done: done", "[answer] failed: boom"]
        assert ledger.exists("run-1")

    def test_unfinalized_record_rejected(self, ledger: RunLedger) -> None:
        record = RunRecord(run_id="open", question="q", started_at=utc_now())

        with pytest.raises(RecordFinalizedError, match="must be finalized"):
            ledger.save(record)
        assert not ledger.exists("open")

    def test_duplicate_save_rejected(self, ledger: RunLedger) -> None:
        record = finished_record()
        ledger.save(record)

        with pytest.raises(RecordFinalizedError, match="already persisted"):
            ledger.save(record)

    def test_export_dir(self, ledger_db: LedgerDB, tmp_path: Path) -> None:
        ledger = RunLedger(ledger_db, export_dir=tmp_path / "exports")

        ledger.save(finished_record())

        exported = json.loads((tmp_path / "exports" / "run-run-1.json").read_text(encoding="utf-8"))
        assert exported["run_id"] == "run-1"


class TestQueries:
    def test_load_missing(self, ledger: RunLedger) -> None:
        with pytest.raises(KeyError, match="Run not found"):
            ledger.load("nope")

    def test_list_runs_newest_first(self, ledger: RunLedger) -> None:
        ledger.save(finished_record("old", minutes_ago=10))
        ledger.save(finished_record("new", minutes_ago=1))

        summaries = ledger.list_runs()

        assert [s.run_id for s in summaries] == ["new", "old"]
        assert summaries[0].status == "failed"
        assert summaries[0].confidence == 0.7
        assert [s.run_id for s in ledger.list_runs(limit=1)] == ["new"]

    def test_evidence_hashes_in_recording_order(self, ledger: RunLedger) -> None:
        record = finished_record()
        ledger.save(record)

        hashes = ledger.evidence_hashes("run-1")

        assert [node_id for node_id, _ in hashes] == ["input", "answer"]
        assert hashes[1][1] == record.evidence["answer"][0].content_hash

    def test_export_json(self, ledger: RunLedger, tmp_path: Path) -> None:
        ledger.save(finished_record())

        path = ledger.export_json("run-1", tmp_path)

        assert path.name == "run-run-1.json"
        assert json.loads(path.read_text(encoding="utf-8"))["final_node_id"] == "answer"


class TestLedgerDB:
    def test_file_database_creates_parent(self, tmp_path: Path) -> None:
        db_path = tmp_path / "nested" / "runs.db"

        with LedgerDB(f"sqlite:///{db_path}") as db:
            RunLedger(db).save(finished_record())

        assert db_path.exists()
        with LedgerDB(f"sqlite:///{db_path}") as reopened:
            assert RunLedger(reopened).exists("run-1")

    def test_closed_database(self) -> None:
        db = LedgerDB.in_memory()
        db.close()

        with pytest.raises(RuntimeError, match="not initialized"):
            _ = db.engine
