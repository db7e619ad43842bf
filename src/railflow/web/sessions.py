# src/railflow/web/sessions.py
"""Provider session manager: one persistent browser context per provider.

Each provider gets its own Chromium user-data directory under the profile
root, so a login done once in a visible window survives worker restarts.
Profile directories are created 0o700; nothing else is written by Railflow.
"""

from __future__ import annotations

import shutil
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from railflow.contracts.enums import Provider, SessionState
from railflow.contracts.errors import ErrorCode, WebTurnError
from railflow.core.config import WorkerSettings
from railflow.web.lock import harden_dir
from railflow.web.providers import (
    LOGIN_DOM_MARKERS,
    PROVIDERS,
    infer_session_state,
    sanitize_url_for_ui,
)

if TYPE_CHECKING:
    from playwright.async_api import BrowserContext, Locator, Page, Playwright

slog = structlog.get_logger(__name__)

type ProgressCallback = Callable[[Provider, str, str], None]
type ContextLauncher = Callable[[Path, bool], Awaitable[BrowserContext]]

VIEWPORT = {"width": 1380, "height": 900}

_CHROME_CANDIDATES: tuple[str, ...] = (
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
    "/usr/bin/google-chrome-stable",
    "/usr/bin/google-chrome",
    "/usr/bin/chromium-browser",
    "/usr/bin/chromium",
    "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe",
    "C:\\Program Files (x86)\\Google\\Chrome\\Application\\chrome.exe",
)


def resolve_chrome_executable() -> str | None:
    """System Chrome if installed; Playwright's bundled Chromium otherwise."""
    return next((candidate for candidate in _CHROME_CANDIDATES if Path(candidate).exists()), None)


@dataclass(slots=True)
class ProviderSessionHandle:
    provider: Provider
    context: Any
    profile_dir: Path
    page: Any = None
    closed: bool = False


class ProviderSessionManager:
    """Owns the browser contexts of the headless worker.

    Args:
        settings: Worker settings (profile root, headless flag, timeouts)
        on_progress: Receives (provider, stage, message) progress notes
        launcher: Opens a persistent context for a profile directory; the
            default launches Chromium through Playwright
    """

    def __init__(
        self,
        settings: WorkerSettings,
        *,
        on_progress: ProgressCallback | None = None,
        launcher: ContextLauncher | None = None,
    ) -> None:
        self._settings = settings
        self._on_progress = on_progress
        self._launcher = launcher or self._launch_with_playwright
        self._handles: dict[Provider, ProviderSessionHandle] = {}
        self._playwright: Playwright | None = None

    @property
    def profile_root(self) -> Path:
        return self._settings.profile_root

    def profile_dir(self, provider: Provider) -> Path:
        return self._settings.profile_root / f"{provider.value}-profile"

    def handles(self) -> dict[Provider, ProviderSessionHandle]:
        return dict(self._handles)

    def _progress(self, provider: Provider, stage: str, message: str) -> None:
        if self._on_progress is not None:
            self._on_progress(provider, stage, message)

    async def _launch_with_playwright(self, profile_dir: Path, headless: bool) -> BrowserContext:
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        options: dict[str, Any] = {"headless": headless, "viewport": VIEWPORT}
        executable = resolve_chrome_executable()
        if executable is not None:
            options["executable_path"] = executable
        return await self._playwright.chromium.launch_persistent_context(str(profile_dir), **options)

    async def ensure(self, provider: Provider) -> ProviderSessionHandle:
        """Open (or reuse) the provider's context and make sure it has a live page.

        Raises:
            WebTurnError: BROWSER_MISSING when the browser cannot be launched.
        """
        current = self._handles.get(provider)
        if current is not None and not current.closed:
            if current.page is None or current.page.is_closed():
                current.page = current.context.pages[0] if current.context.pages else await current.context.new_page()
            return current

        profile_dir = self.profile_dir(provider)
        harden_dir(profile_dir)
        self._progress(provider, "launch_context", "preparing browser context")
        try:
            context = await self._launcher(profile_dir, self._settings.headless)
        except PlaywrightError as e:
            raise WebTurnError(ErrorCode.BROWSER_MISSING, f"browser context failed to start: {e}") from e

        page = context.pages[0] if context.pages else await context.new_page()
        handle = ProviderSessionHandle(provider=provider, context=context, profile_dir=profile_dir, page=page)

        def _mark_closed(*_: object) -> None:
            handle.closed = True

        context.on("close", _mark_closed)
        self._handles[provider] = handle
        slog.info("provider_context_opened", provider=provider.value, profile_dir=str(profile_dir))
        return handle

    async def navigate_home(self, handle: ProviderSessionHandle) -> None:
        """Go to the first reachable home URL.

        Raises:
            WebTurnError: NAVIGATION_FAILED when every home URL fails.
        """
        for url in PROVIDERS[handle.provider].home_urls:
            try:
                await handle.page.goto(
                    url,
                    wait_until="domcontentloaded",
                    timeout=self._settings.navigation_timeout_ms,
                )
                return
            except PlaywrightError as e:
                slog.debug("navigation_attempt_failed", provider=handle.provider.value, url=url, error=str(e))
        raise WebTurnError(ErrorCode.NAVIGATION_FAILED, f"could not navigate to {handle.provider.value}")

    async def open_session(self, provider: Provider) -> dict[str, Any]:
        """Bring the provider's login window to the front on its home page."""
        handle = await self.ensure(provider)
        await self.navigate_home(handle)
        try:
            await handle.page.bring_to_front()
        except PlaywrightError as e:
            slog.debug("bring_to_front_failed", provider=provider.value, error=str(e))
        safe_url, state = await self.session_state(handle)
        self._progress(provider, "session_open", "login session window opened")
        return {"ok": True, "provider": provider.value, "url": safe_url, "sessionState": state.value}

    async def session_state(self, handle: ProviderSessionHandle) -> tuple[str | None, SessionState]:
        """(sanitized url, state) from the page URL refined by DOM markers."""
        context_open = not handle.closed
        page = handle.page
        safe_url = sanitize_url_for_ui(page.url) if context_open and page is not None else None
        url_state = infer_session_state(handle.provider, safe_url, context_open=context_open)
        if not context_open or page is None or page.is_closed():
            return safe_url, url_state
        try:
            if await self.is_login_required(page, handle.provider):
                return safe_url, SessionState.LOGIN_REQUIRED
            if await has_visible_selector(page, PROVIDERS[handle.provider].input_selectors):
                return safe_url, SessionState.ACTIVE
        except PlaywrightError:
            return safe_url, url_state
        return safe_url, url_state

    async def is_login_required(self, page: Page, provider: Provider) -> bool:
        if await has_visible_selector(page, LOGIN_DOM_MARKERS):
            return True
        safe_url = sanitize_url_for_ui(page.url)
        return infer_session_state(provider, safe_url) is SessionState.LOGIN_REQUIRED

    async def reset_session(self, provider: Provider) -> dict[str, Any]:
        """Close the context and wipe the profile directory (forces a new login)."""
        handle = self._handles.pop(provider, None)
        if handle is not None:
            await self._close_handle(handle)
        profile_dir = self.profile_dir(provider)
        shutil.rmtree(profile_dir, ignore_errors=True)
        harden_dir(profile_dir)
        slog.info("provider_session_reset", provider=provider.value, profile_dir=str(profile_dir))
        return {"ok": True, "provider": provider.value, "profileDir": str(profile_dir)}

    async def close_all(self) -> None:
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            await self._close_handle(handle)
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    async def _close_handle(self, handle: ProviderSessionHandle) -> None:
        try:
            await handle.context.close()
        except PlaywrightError as e:
            slog.debug("context_close_failed", provider=handle.provider.value, error=str(e))
        handle.closed = True

    async def describe(self) -> dict[str, dict[str, Any]]:
        """Per-provider context status for the worker health report."""
        statuses: dict[str, dict[str, Any]] = {}
        for provider, handle in self._handles.items():
            safe_url, state = await self.session_state(handle)
            statuses[provider.value] = {
                "contextOpen": not handle.closed,
                "profileDir": str(handle.profile_dir),
                "url": safe_url,
                "sessionState": state.value,
            }
        return statuses


async def has_visible_selector(page: Page, selectors: Sequence[str]) -> bool:
    for selector in selectors:
        locator = page.locator(selector).first
        try:
            if await locator.count() > 0 and await locator.is_visible():
                return True
        except PlaywrightError:
            continue
    return False


async def wait_for_first_visible(page: Page, selectors: Sequence[str], timeout_ms: int) -> Locator | None:
    """First visible match among selectors, polling until timeout_ms."""
    remaining = timeout_ms
    while remaining > 0:
        for selector in selectors:
            locator = page.locator(selector).first
            try:
                if await locator.count() > 0 and await locator.is_visible():
                    return locator
            except PlaywrightError:
                continue
        await page.wait_for_timeout(200)
        remaining -= 200
    return None
