# src/railflow/web/automation.py
"""Drive one prompt through a provider page: navigate, fill, submit, wait.

Only providers in AUTOMATED_PROVIDERS are driven here; the others are
reachable through the browser extension and the bridge mailbox only.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Any

import structlog
from playwright.async_api import Error as PlaywrightError

from railflow.contracts.enums import Provider
from railflow.contracts.errors import ErrorCode, WebTurnError
from railflow.contracts.records import utc_now
from railflow.core.config import WorkerSettings
from railflow.engine.clock import DEFAULT_CLOCK, Clock
from railflow.web.extractor import PlaywrightSampler, StabilityExtractor
from railflow.web.providers import AUTOMATED_PROVIDERS, PROVIDERS
from railflow.web.sessions import (
    ProgressCallback,
    ProviderSessionManager,
    wait_for_first_visible,
)

slog = structlog.get_logger(__name__)

_CLICK_TIMEOUT_MS = 5_000


@dataclass(slots=True)
class RunToken:
    """Cancellation flag for one in-flight provider run."""

    provider: Provider
    cancelled: bool = False


class ProviderAutomation:
    """Runs prompts on automated providers through the session manager."""

    def __init__(
        self,
        sessions: ProviderSessionManager,
        extractor: StabilityExtractor,
        settings: WorkerSettings,
        *,
        on_progress: ProgressCallback | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._sessions = sessions
        self._extractor = extractor
        self._settings = settings
        self._on_progress = on_progress
        self._clock = clock or DEFAULT_CLOCK

    def _progress(self, provider: Provider, stage: str, message: str) -> None:
        if self._on_progress is not None:
            self._on_progress(provider, stage, message)

    async def run(self, token: RunToken, prompt: str, timeout_ms: int) -> dict[str, Any]:
        """Submit prompt and return the wire result {ok, text, raw, meta}.

        Raises:
            WebTurnError: With the code describing which step failed.
        """
        provider = token.provider
        if provider not in AUTOMATED_PROVIDERS:
            raise WebTurnError(ErrorCode.UNSUPPORTED_PROVIDER, f"automation supports gemini only; provider={provider}")
        if not prompt.strip():
            raise WebTurnError(ErrorCode.INVALID_PROMPT, "prompt is empty")

        started_at = utc_now()
        started = self._clock.monotonic()
        handle = await self._sessions.ensure(provider)

        self._progress(provider, "navigation", f"preparing {provider.value} page")
        await self._sessions.navigate_home(handle)

        self._progress(provider, "input", "entering prompt")
        await self._fill_and_submit(provider, handle.page, prompt)

        self._progress(provider, "await_response", "waiting for response")
        config = PROVIDERS[provider]
        result = await self._extractor.wait_for_stable(
            PlaywrightSampler(handle.page, config.response_selectors),
            prompt,
            timeout=timeout_ms / 1000,
            is_cancelled=lambda: token.cancelled,
            on_change=lambda text: self._progress(
                provider, "response_streaming", f"collecting response ({len(text)} chars)"
            ),
        )

        return {
            "ok": True,
            "text": result.text,
            "raw": {"provider": provider.value},
            "meta": {
                "provider": provider.value,
                "url": handle.page.url,
                "startedAt": started_at.isoformat(),
                "finishedAt": utc_now().isoformat(),
                "elapsedMs": int((self._clock.monotonic() - started) * 1000),
                "extractionStrategy": result.strategy,
                "truncated": result.truncated,
            },
        }

    async def _fill_and_submit(self, provider: Provider, page: Any, prompt: str) -> None:
        config = PROVIDERS[provider]
        field = await wait_for_first_visible(page, config.input_selectors, self._settings.input_timeout_ms)
        if field is None:
            if await self._sessions.is_login_required(page, provider):
                raise WebTurnError(ErrorCode.NOT_LOGGED_IN, f"{provider.value} login not detected; log in first")
            raise WebTurnError(ErrorCode.INPUT_NOT_FOUND, f"{provider.value} prompt input not found")
        self._progress(provider, "input_found", "prompt input found")

        try:
            await field.click(timeout=_CLICK_TIMEOUT_MS)
            is_textarea = await field.evaluate("(el) => el.tagName.toLowerCase() === 'textarea'")
            if is_textarea:
                await field.fill(prompt)
            else:
                select_all = "Meta+A" if sys.platform == "darwin" else "Control+A"
                await page.keyboard.press(select_all)
                await page.keyboard.press("Backspace")
                await field.press_sequentially(prompt, delay=4)
        except PlaywrightError as e:
            raise WebTurnError(ErrorCode.INPUT_NOT_FOUND, f"could not fill prompt input: {e}") from e
        self._progress(provider, "prompt_filled", "prompt entered")

        for selector in config.submit_selectors:
            button = page.locator(selector).first
            try:
                if await button.count() > 0 and await button.is_visible():
                    await button.click(timeout=_CLICK_TIMEOUT_MS)
                    return
            except PlaywrightError:
                continue

        try:
            await page.keyboard.press("Enter")
        except PlaywrightError as e:
            raise WebTurnError(ErrorCode.SUBMIT_FAILED, f"submit failed: {e}") from e
