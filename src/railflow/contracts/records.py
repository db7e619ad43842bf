"""Run ledger records: node runtime state, transitions, evidence, run record.

NodeRuntimeState is owned by the scheduler and mutated only through its
transition function. RunRecord accumulates during a run and is frozen by
finalize(); any mutation after that raises RecordFinalizedError.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from railflow.contracts.enums import (
    ConfidenceBand,
    EvidenceSource,
    NodeStatus,
    NodeType,
    RunStatus,
    VerificationStatus,
)
from railflow.contracts.errors import ExecutionError, RecordFinalizedError


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class Transition:
    """One status change of one node, in run order."""

    at: datetime
    node_id: str
    status: NodeStatus
    message: str = ""

    @property
    def log_line(self) -> str:
        return f"[{self.node_id}] {self.status.value}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "at": self.at.isoformat(),
            "node_id": self.node_id,
            "status": self.status.value,
            "message": self.message,
        }


@dataclass(slots=True)
class NodeRuntimeState:
    """Per-node runtime state within a single run."""

    status: NodeStatus = NodeStatus.IDLE
    started_at: datetime | None = None
    finished_at: datetime | None = None
    logs: list[str] = field(default_factory=list)
    error: ExecutionError | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "logs": list(self.logs),
            "error": dict(self.error) if self.error else None,
        }


@dataclass(frozen=True, slots=True)
class EvidenceMemory:
    """Derived memory handed to descendant nodes.

    claims are flattened (path, value) facts taken from structured payloads;
    data_issues are problems noticed while normalizing the payload.
    """

    summary: str
    claims: tuple[tuple[str, str], ...] = ()
    data_issues: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class EvidenceEnvelope:
    """Normalized provenance record attached to one node's output."""

    node_id: str
    node_type: NodeType
    source: EvidenceSource
    payload: Any
    content_hash: str
    memory: EvidenceMemory
    verification: VerificationStatus
    confidence: ConfidenceBand
    recorded_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "node_type": self.node_type.value,
            "source": self.source.value,
            "payload": self.payload,
            "content_hash": self.content_hash,
            "memory": {
                "summary": self.memory.summary,
                "claims": [list(claim) for claim in self.memory.claims],
                "data_issues": list(self.memory.data_issues),
            },
            "verification": self.verification.value,
            "confidence": self.confidence.value,
            "recorded_at": self.recorded_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class ConflictEntry:
    """A claim key that different nodes reported with different values."""

    key: str
    values: tuple[tuple[str, str], ...]  # (node_id, value) pairs

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "values": [{"node_id": n, "value": v} for n, v in self.values]}


@dataclass
class RunRecord:
    """One graph execution.

    Created at run start, appended to while the run is active and finalized
    exactly once at run end, including on cancel and failure.
    """

    run_id: str
    question: str
    started_at: datetime
    status: RunStatus = RunStatus.RUNNING
    graph_hash: str | None = None
    finished_at: datetime | None = None
    transitions: list[Transition] = field(default_factory=list)
    node_states: dict[str, NodeRuntimeState] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    evidence: dict[str, list[EvidenceEnvelope]] = field(default_factory=dict)
    conflicts: list[ConflictEntry] = field(default_factory=list)
    confidence: float = 0.0
    final_node_id: str | None = None
    final_answer: str = ""
    failure_reason: str | None = None
    _finalized: bool = field(default=False, repr=False)

    @property
    def is_finalized(self) -> bool:
        return self._finalized

    @property
    def summary_logs(self) -> list[str]:
        return [transition.log_line for transition in self.transitions]

    def _check_open(self) -> None:
        if self._finalized:
            raise RecordFinalizedError(f"Run record {self.run_id} is finalized")

    def add_transition(self, transition: Transition) -> None:
        self._check_open()
        self.transitions.append(transition)

    def append_evidence(self, envelope: EvidenceEnvelope) -> None:
        """Append an envelope; envelopes are never rewritten or removed."""
        self._check_open()
        self.evidence.setdefault(envelope.node_id, []).append(envelope)

    def all_evidence(self) -> list[EvidenceEnvelope]:
        ordered = [env for envs in self.evidence.values() for env in envs]
        ordered.sort(key=lambda env: env.recorded_at)
        return ordered

    def finalize(
        self,
        *,
        status: RunStatus,
        conflicts: list[ConflictEntry],
        confidence: float,
        final_node_id: str | None,
        final_answer: str,
        failure_reason: str | None,
        finished_at: datetime | None = None,
    ) -> None:
        """Freeze the record. A second call raises RecordFinalizedError."""
        self._check_open()
        if status is RunStatus.RUNNING:
            raise ValueError("Cannot finalize a run with status 'running'")
        self.status = status
        self.conflicts = list(conflicts)
        self.confidence = confidence
        self.final_node_id = final_node_id
        self.final_answer = final_answer
        self.failure_reason = failure_reason
        self.finished_at = finished_at or utc_now()
        self._finalized = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "question": self.question,
            "status": self.status.value,
            "graph_hash": self.graph_hash,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "transitions": [t.to_dict() for t in self.transitions],
            "node_states": {node_id: state.to_dict() for node_id, state in self.node_states.items()},
            "outputs": self.outputs,
            "evidence": {node_id: [env.to_dict() for env in envs] for node_id, envs in self.evidence.items()},
            "conflicts": [c.to_dict() for c in self.conflicts],
            "confidence": self.confidence,
            "final_node_id": self.final_node_id,
            "final_answer": self.final_answer,
            "failure_reason": self.failure_reason,
            "summary_logs": self.summary_logs,
        }
