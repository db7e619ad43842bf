# src/railflow/engine/outputs.py
"""Helpers for reading node outputs: dotted paths, text extraction, JSON sniffing."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any

from railflow.core.canonical import pretty_json

_MISSING = object()

FINAL_ANSWER_PATHS: tuple[str, ...] = ("text", "completion.text", "final_draft", "finalDraft", "result")

_JSON_BLOCK = re.compile(r"```(?:json)?\s*(\{.*?\}|\[.*?\])\s*```", re.DOTALL)


def get_by_path(value: Any, path: str, default: Any = None) -> Any:
    """Walk a dotted path through nested mappings. An empty path returns value."""
    if not path.strip():
        return value
    current = value
    for part in (p for p in path.split(".") if p):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return default
    return current


def stringify(value: Any) -> str:
    """Text form of a node input: strings as-is, None as empty, others as JSON."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return pretty_json(value)


def extract_text(value: Any, paths: tuple[str, ...] = FINAL_ANSWER_PATHS) -> str | None:
    """First non-blank string found at one of paths."""
    if isinstance(value, str):
        return value if value.strip() else None
    for path in paths:
        found = get_by_path(value, path, _MISSING)
        if isinstance(found, str) and found.strip():
            return found
    return None


def extract_final_answer(output: Any) -> str:
    text = extract_text(output)
    if text is not None:
        return text
    if output is None:
        return ""
    return stringify(output)


def parse_json_text(text: str) -> Any:
    """Parse JSON from model text: the whole text, a fenced block, or the outermost object.

    Raises:
        ValueError: When none of the candidates parse.
    """
    stripped = text.strip()
    candidates = [stripped]
    fenced = _JSON_BLOCK.search(stripped)
    if fenced:
        candidates.append(fenced.group(1))
    start, end = stripped.find("{"), stripped.rfind("}")
    if 0 <= start < end:
        candidates.append(stripped[start : end + 1])
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    raise ValueError("no JSON value found in text")


def extract_validation_target(output: Any) -> Any:
    """The value a turn's output schema applies to.

    Order: artifact payload, raw structured output, JSON parsed from text,
    then the output itself.
    """
    payload = get_by_path(output, "artifact.payload", _MISSING)
    if payload is not _MISSING:
        return payload
    raw = get_by_path(output, "raw", _MISSING)
    if raw is not _MISSING and isinstance(raw, Mapping | list):
        return raw
    text = extract_text(output)
    if text is not None:
        try:
            return parse_json_text(text)
        except ValueError:
            return text
    return output
