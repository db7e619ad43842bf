# src/railflow/core/ledger/store.py
"""RunLedger: persistence of finalized run records.

A record is written exactly once, after RunRecord.finalize(). Writing an
unfinalized record, or the same run twice, raises RecordFinalizedError.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog
from sqlalchemy import func, select

from railflow.contracts.errors import RecordFinalizedError
from railflow.contracts.records import RunRecord
from railflow.core.ledger.database import LedgerDB
from railflow.core.ledger.schema import (
    evidence_table,
    node_states_table,
    runs_table,
    transitions_table,
)

slog = structlog.get_logger(__name__)


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


@dataclass(frozen=True, slots=True)
class RunSummary:
    run_id: str
    status: str
    started_at: datetime
    finished_at: datetime
    final_node_id: str | None
    confidence: float
    question: str


class RunLedger:
    """Insert-only store for finalized RunRecords."""

    def __init__(self, db: LedgerDB, *, export_dir: Path | None = None) -> None:
        self._db = db
        self._export_dir = export_dir

    def save(self, record: RunRecord) -> None:
        if not record.is_finalized:
            raise RecordFinalizedError(f"Run record {record.run_id} must be finalized before it is persisted")
        if record.finished_at is None:
            raise RecordFinalizedError(f"Run record {record.run_id} has no finished_at")
        if self.exists(record.run_id):
            raise RecordFinalizedError(f"Run record {record.run_id} is already persisted")

        document = record.to_dict()
        with self._db.connection() as conn:
            conn.execute(
                runs_table.insert().values(
                    run_id=record.run_id,
                    question=record.question,
                    graph_hash=record.graph_hash,
                    status=record.status.value,
                    started_at=record.started_at,
                    finished_at=record.finished_at,
                    final_node_id=record.final_node_id,
                    final_answer=record.final_answer,
                    failure_reason=record.failure_reason,
                    confidence=record.confidence,
                    conflicts_json=_dumps(document["conflicts"]),
                    outputs_json=_dumps(document["outputs"]),
                    record_json=_dumps(document),
                )
            )
            for node_id, state in record.node_states.items():
                conn.execute(
                    node_states_table.insert().values(
                        run_id=record.run_id,
                        node_id=node_id,
                        status=state.status.value,
                        started_at=state.started_at,
                        finished_at=state.finished_at,
                        logs_json=_dumps(state.logs),
                        error_json=_dumps(state.error) if state.error else None,
                    )
                )
            for seq, transition in enumerate(record.transitions):
                conn.execute(
                    transitions_table.insert().values(
                        run_id=record.run_id,
                        seq=seq,
                        at=transition.at,
                        node_id=transition.node_id,
                        status=transition.status.value,
                        message=transition.message,
                    )
                )
            for seq, envelope in enumerate(record.all_evidence()):
                conn.execute(
                    evidence_table.insert().values(
                        run_id=record.run_id,
                        seq=seq,
                        node_id=envelope.node_id,
                        node_type=envelope.node_type.value,
                        source=envelope.source.value,
                        content_hash=envelope.content_hash,
                        verification_status=envelope.verification.value,
                        confidence_band=envelope.confidence.value,
                        recorded_at=envelope.recorded_at,
                        envelope_json=_dumps(envelope.to_dict()),
                    )
                )

        slog.info("run_persisted", run_id=record.run_id, status=record.status.value)
        if self._export_dir is not None:
            self.export_json(record.run_id, self._export_dir)

    def exists(self, run_id: str) -> bool:
        with self._db.connection() as conn:
            count = conn.execute(select(func.count()).select_from(runs_table).where(runs_table.c.run_id == run_id)).scalar_one()
        return bool(count)

    def load(self, run_id: str) -> dict[str, Any]:
        """Return the persisted record document.

        Raises:
            KeyError: If the run is not in the ledger
        """
        with self._db.connection() as conn:
            row = conn.execute(select(runs_table.c.record_json).where(runs_table.c.run_id == run_id)).first()
        if row is None:
            raise KeyError(f"Run not found: {run_id}")
        document: dict[str, Any] = json.loads(row.record_json)
        return document

    def list_runs(self, *, limit: int = 50) -> list[RunSummary]:
        query = select(runs_table).order_by(runs_table.c.started_at.desc()).limit(limit)
        with self._db.connection() as conn:
            rows = conn.execute(query).all()
        return [
            RunSummary(
                run_id=row.run_id,
                status=row.status,
                started_at=row.started_at,
                finished_at=row.finished_at,
                final_node_id=row.final_node_id,
                confidence=row.confidence,
                question=row.question,
            )
            for row in rows
        ]

    def evidence_hashes(self, run_id: str) -> list[tuple[str, str]]:
        """(node_id, content_hash) pairs in recording order."""
        query = (
            select(evidence_table.c.node_id, evidence_table.c.content_hash)
            .where(evidence_table.c.run_id == run_id)
            .order_by(evidence_table.c.seq)
        )
        with self._db.connection() as conn:
            return [(row.node_id, row.content_hash) for row in conn.execute(query)]

    def export_json(self, run_id: str, directory: Path) -> Path:
        """Write run-<id>.json into directory and return its path."""
        document = self.load(run_id)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"run-{run_id}.json"
        path.write_text(json.dumps(document, ensure_ascii=False, indent=2), encoding="utf-8")
        return path
