# src/railflow/core/canonical.py
"""
Canonical JSON serialization for evidence hashing.

Evidence envelopes and graph topologies are hashed over RFC 8785/JCS
canonical JSON (rfc8785 package), so two runs that saw the same payload
record the same content hash.

NaN and Infinity are rejected. Payloads scraped from web pages that still
cannot be canonicalized fall back to repr_hash().
"""

from __future__ import annotations

import base64
import hashlib
import json
import math
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

import rfc8785

if TYPE_CHECKING:
    from railflow.core.dag import ExecutionGraph

# Version string stored with every run for hash verification
CANONICAL_VERSION = "sha256-rfc8785-v1"


def _normalize_value(obj: Any) -> Any:
    """Convert a single value to a JSON-safe primitive.

    Raises:
        ValueError: If value is NaN or Infinity
    """
    if isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            raise ValueError(f"Cannot canonicalize non-finite float: {obj}. Use None for missing values, not NaN.")
        return obj

    if obj is None or isinstance(obj, str | int | bool):
        return obj

    if isinstance(obj, Enum):
        return obj.value

    if isinstance(obj, datetime):
        if obj.tzinfo is None:
            obj = obj.replace(tzinfo=UTC)
        return obj.astimezone(UTC).isoformat()

    if isinstance(obj, bytes):
        return {"__bytes__": base64.b64encode(obj).decode("ascii")}

    return obj


def _normalize_for_canonical(data: Any) -> Any:
    if isinstance(data, dict):
        return {str(k): _normalize_for_canonical(v) for k, v in data.items()}
    if isinstance(data, list | tuple):
        return [_normalize_for_canonical(v) for v in data]
    return _normalize_value(data)


def canonical_json(obj: Any) -> str:
    """Produce canonical JSON for hashing.

    Raises:
        ValueError: If data contains NaN, Infinity, or other non-finite values
        TypeError: If data contains types that cannot be serialized
    """
    normalized = _normalize_for_canonical(obj)
    result: bytes = rfc8785.dumps(normalized)
    return result.decode("utf-8")


def stable_hash(obj: Any) -> str:
    """SHA-256 hex digest of canonical JSON."""
    canonical = canonical_json(obj)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def repr_hash(obj: Any) -> str:
    """SHA-256 of repr() for payloads that cannot be canonicalized.

    Deterministic within one Python version only.
    """
    return hashlib.sha256(repr(obj).encode("utf-8")).hexdigest()


def content_hash(obj: Any) -> str:
    """Hash a node payload, falling back to repr_hash for non-canonical data."""
    try:
        return stable_hash(obj)
    except (ValueError, TypeError):
        return repr_hash(obj)


def pretty_json(obj: Any) -> str:
    """Human-readable JSON dump used when a payload has no text field."""
    return json.dumps(obj, ensure_ascii=False, indent=2, default=str)


def compute_topology_hash(graph: ExecutionGraph) -> str:
    """Hash of the complete graph topology and node configuration."""
    topology_data = {
        "nodes": sorted(
            [{"node_id": spec.id, "config_hash": stable_hash(spec.model_dump(mode="json"))} for spec in graph.nodes()],
            key=lambda x: x["node_id"],
        ),
        "edges": sorted([{"from": u, "to": v} for u, v in graph.edges()], key=lambda x: (x["from"], x["to"])),
    }
    return stable_hash(topology_data)
