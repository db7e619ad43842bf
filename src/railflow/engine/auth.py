# src/railflow/engine/auth.py
"""Login-state debounce for the local engine.

Auth probes occasionally report login_required while a session is still
valid (token refresh in progress, a slow probe). AuthGrace keeps a session
that has completed login authenticated until the report is confirmed:
the grace window since the last authenticated probe has passed and
enough consecutive login_required probes were seen.
"""

from __future__ import annotations

import structlog

from railflow.contracts.errors import ErrorCode, WebTurnError
from railflow.core.config import AuthSettings
from railflow.engine.clock import DEFAULT_CLOCK, Clock
from railflow.engine.protocols import AuthProbe, AuthProbeState

slog = structlog.get_logger(__name__)

_LOGIN_REQUIRED_MARKERS = (
    "login required",
    "login_required",
    "not logged in",
    "not_logged_in",
    "unauthorized",
    "unauthenticated",
    "401",
    "please sign in",
    "please log in",
)


def is_login_required_error(message: object) -> bool:
    """Heuristic match for engine errors that mean the session has expired."""
    lowered = str(message).lower()
    return any(marker in lowered for marker in _LOGIN_REQUIRED_MARKERS)


class AuthGrace:
    """Debounced login state.

    Example:
        grace = AuthGrace(settings.auth)
        grace.observe("authenticated")
        grace.observe("login_required")   # still authenticated
    """

    def __init__(self, settings: AuthSettings | None = None, *, clock: Clock | None = None) -> None:
        self._settings = settings or AuthSettings()
        self._clock = clock or DEFAULT_CLOCK
        self._login_completed = False
        self._last_authenticated_at: float | None = None
        self._login_required_count = 0

    @property
    def authenticated(self) -> bool:
        return self._login_completed

    @property
    def login_required_count(self) -> int:
        return self._login_required_count

    def observe(self, state: AuthProbeState) -> bool:
        """Record one probe result and return the debounced authenticated flag."""
        now = self._clock.monotonic()
        if state == "authenticated":
            self._login_required_count = 0
            self._last_authenticated_at = now
            self._login_completed = True
        elif state == "login_required":
            self._login_required_count += 1
            within_grace = (
                self._last_authenticated_at is not None
                and (now - self._last_authenticated_at) * 1000 < self._settings.grace_ms
            )
            keep = self._login_completed and (
                within_grace or self._login_required_count < self._settings.confirm_count
            )
            if not keep:
                if self._login_completed:
                    slog.warning("auth_login_required_confirmed", probes=self._login_required_count)
                self._login_completed = False
        return self._login_completed


class AuthGate:
    """Checks the local engine's login state before a local turn runs."""

    def __init__(self, probe: AuthProbe, grace: AuthGrace) -> None:
        self._probe = probe
        self._grace = grace

    @property
    def grace(self) -> AuthGrace:
        return self._grace

    async def ensure_authenticated(self) -> None:
        """Raises WebTurnError(NOT_LOGGED_IN) when the debounced state is logged out."""
        state = await self._probe.probe()
        if not self._grace.observe(state) and state != "unknown":
            raise WebTurnError(ErrorCode.NOT_LOGGED_IN, "local engine login required")

    def record_failure(self, error: BaseException) -> None:
        """Feed a turn failure that looks like an expired session into the debounce."""
        if is_login_required_error(error):
            self._grace.observe("login_required")
