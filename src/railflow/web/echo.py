# src/railflow/web/echo.py
"""Prompt echo detection.

Chat pages render the user's own message in the same DOM as the answer, so
a scraped candidate that is really the prompt must never be returned as the
answer. Comparison is done on whitespace-collapsed text.
"""

from __future__ import annotations

import re

_WHITESPACE = re.compile(r"\s+")
# "You said:" style prefixes that chat UIs put on the user's message; only
# an echo when the prompt follows
_USER_MARKERS = re.compile(r"^(?:you said|your message|user)[:：]", re.IGNORECASE)

EDGE_LENGTH = 120
MIN_EDGE_LENGTH = 40
MIN_NEEDLE_LENGTH = 32
NEEDLE_HITS = 2


def normalize_comparable_text(value: object) -> str:
    if value is None:
        return ""
    return _WHITESPACE.sub(" ", str(value)).strip()


def _needle_length(length: int) -> int:
    if length >= 512:
        return 96
    if length >= 220:
        return 72
    return 48


def collect_prompt_needles(prompt: str) -> list[str]:
    """Up to five distinct slices of the prompt, spread over its length."""
    text = normalize_comparable_text(prompt)
    if not text:
        return []
    length = len(text)
    needle_length = _needle_length(length)
    if length <= needle_length:
        return [text]
    half = needle_length // 2
    offsets = [
        0,
        max(0, int(length * 0.2) - half),
        max(0, int(length * 0.45) - half),
        max(0, int(length * 0.7) - half),
        max(0, length - needle_length),
    ]
    needles: list[str] = []
    for start in offsets:
        needle = text[start : start + needle_length].strip()
        if len(needle) >= MIN_NEEDLE_LENGTH and needle not in needles:
            needles.append(needle)
    return needles


def is_prompt_echo(text: str, prompt: str) -> bool:
    """True when text is (or quotes) the prompt rather than an answer."""
    prompt_text = normalize_comparable_text(prompt)
    if not prompt_text:
        return False
    candidate = normalize_comparable_text(text)
    marker = _USER_MARKERS.match(candidate)
    if marker is not None and prompt_text[:EDGE_LENGTH] in candidate[marker.end() :]:
        return True
    if candidate.startswith(prompt_text):
        return True

    head = prompt_text[:EDGE_LENGTH]
    tail = prompt_text[-EDGE_LENGTH:]
    if len(head) >= MIN_EDGE_LENGTH and head in candidate:
        return True
    if len(tail) >= MIN_EDGE_LENGTH and tail in candidate:
        return True

    hits = sum(1 for needle in collect_prompt_needles(prompt_text) if needle in candidate)
    return hits >= NEEDLE_HITS
