# src/railflow/engine/evidence.py
"""Evidence normalization, conflict ledger and final confidence.

Every node that reaches done/low_quality gets one EvidenceEnvelope; a
skipped or cancelled node gets a system envelope carrying the reason. The
envelope's memory flattens structured payloads into (path, value) claims;
the conflict ledger lists claim paths that different producing nodes
reported with different values. Final confidence starts from the mean
confidence band of the producing nodes and is reduced per conflict, per
data issue and when unverified web evidence is present.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from railflow.contracts.enums import (
    ConfidenceBand,
    EvidenceSource,
    NodeStatus,
    NodeType,
    VerificationStatus,
)
from railflow.contracts.records import (
    ConflictEntry,
    EvidenceEnvelope,
    EvidenceMemory,
    utc_now,
)
from railflow.contracts.web import WebTurnResult
from railflow.core.canonical import content_hash
from railflow.core.dag.models import NodeSpec, TurnNodeSpec
from railflow.engine.outputs import extract_final_answer

SUMMARY_LENGTH = 280
MAX_CLAIMS = 64
# Keys that carry provenance rather than content
_NON_CLAIM_KEYS = frozenset({"meta", "raw", "usage", "timestamp", "fallback"})

BAND_SCORES: dict[ConfidenceBand, float] = {
    ConfidenceBand.HIGH: 0.9,
    ConfidenceBand.MEDIUM: 0.7,
    ConfidenceBand.LOW: 0.4,
    ConfidenceBand.UNKNOWN: 0.5,
}
CONFLICT_PENALTY = 0.1
CONFLICT_PENALTY_CAP = 0.4
DATA_ISSUE_PENALTY = 0.05
DATA_ISSUE_PENALTY_CAP = 0.2
UNVERIFIED_WEB_PENALTY = 0.1

_PRODUCER_SOURCES = frozenset({EvidenceSource.LOCAL, EvidenceSource.WEB})


def normalize_web_evidence(result: WebTurnResult, *, mode: str) -> dict[str, Any]:
    """Shape a scraped web answer into the output payload of a web turn node."""
    meta = dict(result.meta)
    captured_at = str(meta.get("capturedAt") or meta.get("finishedAt") or utc_now().isoformat())
    citations = meta.get("citations")
    confidence = _web_confidence(result.text, citations)
    return {
        "provider": result.provider.value,
        "timestamp": captured_at,
        "text": result.text,
        "raw": result.raw,
        "meta": {
            "source_type": "web",
            "provider": result.provider.value,
            "mode": mode,
            "source_url": meta.get("url"),
            "captured_at": captured_at,
            "confidence": confidence.value,
            "citations": list(citations) if isinstance(citations, list) else [],
            "needs_verification": mode != "bridge",
            "extraction_strategy": meta.get("extractionStrategy"),
        },
    }


def _web_confidence(text: str, citations: object) -> ConfidenceBand:
    if not text.strip():
        return ConfidenceBand.UNKNOWN
    if isinstance(citations, list) and citations:
        return ConfidenceBand.HIGH
    if len(text) >= 400:
        return ConfidenceBand.MEDIUM
    return ConfidenceBand.LOW


def flatten_claims(payload: Any, prefix: str = "") -> list[tuple[str, str]]:
    """Scalar leaves of a structured payload as (dotted path, normalized value)."""
    claims: list[tuple[str, str]] = []
    if isinstance(payload, Mapping):
        for key, value in payload.items():
            if not prefix and key in _NON_CLAIM_KEYS:
                continue
            path = f"{prefix}.{key}" if prefix else str(key)
            claims.extend(flatten_claims(value, path))
    elif isinstance(payload, list):
        for index, item in enumerate(payload):
            claims.extend(flatten_claims(item, f"{prefix}[{index}]"))
    elif prefix and isinstance(payload, str | int | float | bool):
        # Long free text is narrative, not a comparable claim
        if not (isinstance(payload, str) and len(payload) > 120):
            claims.append((prefix, " ".join(str(payload).split()).casefold()))
    return claims[:MAX_CLAIMS]


def build_envelope(
    spec: NodeSpec,
    output: Any,
    *,
    status: NodeStatus,
    data_issues: Iterable[str] = (),
    recorded_at: datetime | None = None,
) -> EvidenceEnvelope:
    """Normalize one node output into an evidence envelope."""
    issues = list(data_issues)
    text = extract_final_answer(output)
    if not text.strip():
        issues.append("empty output")
    if status is NodeStatus.LOW_QUALITY:
        issues.append("output failed schema validation")

    match spec.node_type:
        case NodeType.INPUT:
            source, verification, band = EvidenceSource.INPUT, VerificationStatus.VERIFIED, ConfidenceBand.HIGH
        case NodeType.TURN:
            assert isinstance(spec, TurnNodeSpec)
            if spec.web_provider is not None:
                source = EvidenceSource.WEB
                verification = VerificationStatus.NEEDS_VERIFICATION
                band = ConfidenceBand(_meta_confidence(output))
            else:
                source, verification = EvidenceSource.LOCAL, VerificationStatus.UNVERIFIED
                band = ConfidenceBand.LOW if status is NodeStatus.LOW_QUALITY else ConfidenceBand.MEDIUM
        case NodeType.TRANSFORM:
            source, verification, band = EvidenceSource.TRANSFORM, VerificationStatus.VERIFIED, ConfidenceBand.HIGH
        case NodeType.GATE:
            source, verification, band = EvidenceSource.GATE, VerificationStatus.VERIFIED, ConfidenceBand.HIGH

    return EvidenceEnvelope(
        node_id=spec.id,
        node_type=spec.node_type,
        source=source,
        payload=output,
        content_hash=content_hash(output),
        memory=EvidenceMemory(
            summary=text[:SUMMARY_LENGTH],
            claims=tuple(flatten_claims(output)),
            data_issues=tuple(issues),
        ),
        verification=verification,
        confidence=band,
        recorded_at=recorded_at or utc_now(),
    )


def build_status_envelope(
    spec: NodeSpec,
    reason: str,
    *,
    status: NodeStatus,
    recorded_at: datetime | None = None,
) -> EvidenceEnvelope:
    """System envelope for a node that produced nothing (skipped or cancelled)."""
    payload = {"status": status.value, "reason": reason}
    return EvidenceEnvelope(
        node_id=spec.id,
        node_type=spec.node_type,
        source=EvidenceSource.SYSTEM,
        payload=payload,
        content_hash=content_hash(payload),
        memory=EvidenceMemory(summary=reason[:SUMMARY_LENGTH], claims=(), data_issues=()),
        verification=VerificationStatus.VERIFIED,
        confidence=ConfidenceBand.UNKNOWN,
        recorded_at=recorded_at or utc_now(),
    )


def _meta_confidence(output: Any) -> str:
    if isinstance(output, Mapping):
        meta = output.get("meta")
        if isinstance(meta, Mapping) and meta.get("confidence") in {band.value for band in ConfidenceBand}:
            return str(meta["confidence"])
    return ConfidenceBand.UNKNOWN.value


def build_conflict_ledger(envelopes: Iterable[EvidenceEnvelope]) -> list[ConflictEntry]:
    """Claim paths reported with different values by different nodes.

    Transform and gate envelopes only restate their parents, so they are
    excluded to keep one producer per claim.
    """
    by_key: dict[str, dict[str, str]] = {}
    for envelope in envelopes:
        if envelope.source in (EvidenceSource.TRANSFORM, EvidenceSource.GATE, EvidenceSource.SYSTEM):
            continue
        for key, value in envelope.memory.claims:
            by_key.setdefault(key, {})[envelope.node_id] = value

    conflicts: list[ConflictEntry] = []
    for key in sorted(by_key):
        reported = by_key[key]
        if len(set(reported.values())) > 1:
            conflicts.append(ConflictEntry(key=key, values=tuple(sorted(reported.items()))))
    return conflicts


def compute_final_confidence(envelopes: list[EvidenceEnvelope], conflicts: list[ConflictEntry]) -> float:
    """Run-level confidence in [0, 1]; 0.0 when there is no evidence.

    System envelopes record why a node produced nothing and are not evidence.
    """
    envelopes = [env for env in envelopes if env.source is not EvidenceSource.SYSTEM]
    if not envelopes:
        return 0.0
    producers = [env for env in envelopes if env.source in _PRODUCER_SOURCES] or envelopes
    base = sum(BAND_SCORES[env.confidence] for env in producers) / len(producers)

    issue_count = sum(len(env.memory.data_issues) for env in envelopes)
    penalty = min(CONFLICT_PENALTY_CAP, CONFLICT_PENALTY * len(conflicts))
    penalty += min(DATA_ISSUE_PENALTY_CAP, DATA_ISSUE_PENALTY * issue_count)
    if any(env.verification is VerificationStatus.NEEDS_VERIFICATION for env in envelopes):
        penalty += UNVERIFIED_WEB_PENALTY

    return round(max(0.0, min(1.0, base - penalty)), 3)


def confidence_band(score: float) -> ConfidenceBand:
    if score >= 0.75:
        return ConfidenceBand.HIGH
    if score >= 0.5:
        return ConfidenceBand.MEDIUM
    if score > 0.0:
        return ConfidenceBand.LOW
    return ConfidenceBand.UNKNOWN
