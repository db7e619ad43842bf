# src/railflow/web/extractor.py
"""Response stability extraction.

A streamed answer is considered complete when the bottom-most answer
candidate on the page stops changing for a quiet period. Candidates are
sampled from the page every poll interval; short text and prompt echoes
are dropped before choosing.

The sampler is a protocol so the polling loop can be driven by a fake page
and a MockClock in tests; PlaywrightSampler reads a live page.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from railflow.contracts.errors import ErrorCode, WebTurnError
from railflow.core.config import ExtractorSettings
from railflow.engine.clock import DEFAULT_CLOCK, Clock
from railflow.web.echo import is_prompt_echo

if TYPE_CHECKING:
    from playwright.async_api import Page

slog = structlog.get_logger(__name__)

EXTRACTION_STRATEGY = "dom-bottom-most-stable-text"


@dataclass(frozen=True, slots=True)
class Candidate:
    """Visible text of one answer-like element and its vertical position."""

    text: str
    bottom: float
    selector: str = ""


class CandidateSampler(Protocol):
    async def sample(self) -> list[Candidate]:
        """Current answer candidates, in any order."""
        ...


@dataclass(frozen=True, slots=True)
class ExtractionResult:
    text: str
    changes: int
    elapsed_ms: int
    truncated: bool
    strategy: str = EXTRACTION_STRATEGY


class StabilityExtractor:
    """Waits for the bottom-most answer candidate to settle.

    Example:
        extractor = StabilityExtractor(settings.extractor)
        result = await extractor.wait_for_stable(
            PlaywrightSampler(page, config.response_selectors),
            prompt,
            timeout=90.0,
            is_cancelled=lambda: run.cancelled,
        )
    """

    def __init__(self, settings: ExtractorSettings | None = None, *, clock: Clock | None = None) -> None:
        self._settings = settings or ExtractorSettings()
        self._clock = clock or DEFAULT_CLOCK

    @property
    def settings(self) -> ExtractorSettings:
        return self._settings

    def select(self, candidates: Sequence[Candidate], prompt: str) -> str | None:
        """Bottom-most acceptable candidate text, truncated, or None."""
        ordered = sorted(candidates, key=lambda c: c.bottom)[-self._settings.max_candidates :]
        accepted = [
            text
            for text in (c.text.strip() for c in ordered)
            if len(text) >= self._settings.min_text_length and not is_prompt_echo(text, prompt)
        ]
        if not accepted:
            return None
        return accepted[-1][: self._settings.max_text_length]

    async def wait_for_stable(
        self,
        sampler: CandidateSampler,
        prompt: str,
        *,
        timeout: float,
        is_cancelled: Callable[[], bool] | None = None,
        on_change: Callable[[str], None] | None = None,
    ) -> ExtractionResult:
        """Poll until the chosen text is unchanged for the quiet period.

        Raises:
            WebTurnError: CANCELLED when is_cancelled() turns true,
                TIMEOUT when the deadline passes first.
        """
        poll = self._settings.poll_interval_ms / 1000
        quiet = self._settings.quiet_period_ms / 1000
        started = self._clock.monotonic()
        deadline = started + timeout
        last = ""
        last_changed_at = started
        changes = 0
        truncated = False

        while self._clock.monotonic() < deadline:
            if is_cancelled is not None and is_cancelled():
                raise WebTurnError(ErrorCode.CANCELLED, "response wait cancelled")

            candidates = await sampler.sample()
            text = self.select(candidates, prompt)
            now = self._clock.monotonic()
            if text:
                if text != last:
                    last = text
                    last_changed_at = now
                    changes += 1
                    truncated = any(len(c.text.strip()) > self._settings.max_text_length for c in candidates)
                    if on_change is not None:
                        on_change(text)
                elif now - last_changed_at >= quiet:
                    elapsed_ms = int((now - started) * 1000)
                    slog.debug("response_stable", length=len(text), changes=changes, elapsed_ms=elapsed_ms)
                    return ExtractionResult(text=text, changes=changes, elapsed_ms=elapsed_ms, truncated=truncated)

            await self._clock.sleep(poll)

        raise WebTurnError(ErrorCode.TIMEOUT, f"response did not settle within {int(timeout * 1000)}ms")


_SAMPLE_SCRIPT = """
(selectors) => {
  const rows = [];
  for (const selector of selectors) {
    for (const node of document.querySelectorAll(selector)) {
      const text = (node.innerText || "").trim();
      if (!text) continue;
      const rect = node.getBoundingClientRect();
      rows.push({ text, bottom: rect.bottom, selector });
    }
  }
  return rows;
}
"""


class PlaywrightSampler:
    """Reads answer candidates from a live page in a single evaluate() call."""

    def __init__(self, page: Page, selectors: Sequence[str]) -> None:
        self._page = page
        self._selectors = list(selectors)

    async def sample(self) -> list[Candidate]:
        rows: list[dict[str, Any]] = await self._page.evaluate(_SAMPLE_SCRIPT, self._selectors)
        return [
            Candidate(text=str(row.get("text", "")), bottom=float(row.get("bottom", 0.0)), selector=str(row.get("selector", "")))
            for row in rows
        ]
