# src/railflow/core/config.py
"""
Configuration schema and loading for Railflow.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction.
"""

import os
import re
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from railflow.contracts.enums import AgentMode

DEFAULT_BRIDGE_PORT = 38961
LOOPBACK_HOST = "127.0.0.1"

_MULTI_PRESET_THREADS: dict[str, int] = {"balanced": 2, "max": 4}


def _default_profile_root() -> Path:
    override = os.environ.get("RAIL_WEB_PROFILE_ROOT", "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".rail" / "providers"


def _default_worker_log_path() -> Path | None:
    override = os.environ.get("RAIL_WEB_LOG_PATH", "").strip()
    return Path(override).expanduser() if override else None


class SchedulerSettings(BaseModel):
    """DAG scheduler concurrency and polling.

    Example YAML:
        scheduler:
          agent_mode: multi
          preset: balanced     # or max, or omit and set max_threads
    """

    model_config = {"frozen": True, "extra": "forbid"}

    agent_mode: AgentMode = Field(
        default=AgentMode.SINGLE,
        description="single runs one node at a time; multi allows concurrent nodes",
    )
    max_threads: int = Field(default=2, gt=0, le=16, description="Concurrent node tasks in multi mode")
    preset: Literal["balanced", "max"] | None = Field(
        default=None,
        description="Named multi-mode concurrency preset (overrides max_threads)",
    )
    pause_poll_interval_ms: int = Field(default=100, gt=0, description="Polling granularity while paused")

    def resolve_max_threads(self) -> int:
        """Bound on concurrently running node tasks for this configuration."""
        if self.agent_mode is AgentMode.SINGLE:
            return 1
        if self.preset is not None:
            return _MULTI_PRESET_THREADS[self.preset]
        return self.max_threads


class WebTurnSettings(BaseModel):
    """Timeouts and soft-warning windows for web turn nodes."""

    model_config = {"frozen": True, "extra": "forbid"}

    default_timeout_ms: int = Field(default=180_000, gt=0)
    min_timeout_ms: int = Field(default=5_000, gt=0)
    claim_warn_ms: int = Field(default=8_000, gt=0, description="Warn when no context claims the task")
    prompt_filled_warn_ms: int = Field(default=8_000, gt=0, description="Warn when a filled prompt is never sent")
    waiting_user_stall_ms: int = Field(default=1_600, gt=0, description="Warn when waiting on a manual send")
    claim_fallback_ms: int | None = Field(
        default=None,
        gt=0,
        description="Withdraw an unclaimed task and run it on the headless worker after this long",
    )

    def clamp_timeout(self, timeout_ms: int | None) -> int:
        if timeout_ms is None:
            return self.default_timeout_ms
        return max(self.min_timeout_ms, timeout_ms)


class BridgeSettings(BaseModel):
    """Loopback bridge server.

    The token is never written to disk by Railflow; leave it unset to have
    one generated at startup.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    host: Literal["127.0.0.1"] = Field(default=LOOPBACK_HOST, description="Bind address (loopback only)")
    port: int = Field(default=DEFAULT_BRIDGE_PORT, gt=0, lt=65536)
    token: str | None = Field(default=None, min_length=16, description="Bearer token (generated if unset)")


class ExtractorSettings(BaseModel):
    """Response stability extraction timing and filters."""

    model_config = {"frozen": True, "extra": "forbid"}

    poll_interval_ms: int = Field(default=450, gt=0)
    quiet_period_ms: int = Field(default=1_600, gt=0)
    min_text_length: int = Field(default=24, ge=0)
    max_text_length: int = Field(default=12_000, gt=0)
    max_candidates: int = Field(default=12, gt=0)

    @model_validator(mode="after")
    def validate_quiet_period(self) -> "ExtractorSettings":
        if self.quiet_period_ms < self.poll_interval_ms:
            raise ValueError("quiet_period_ms must be at least poll_interval_ms")
        return self


class WorkerSettings(BaseModel):
    """Headless browser worker process."""

    model_config = {"frozen": True, "extra": "forbid"}

    profile_root: Path = Field(default_factory=_default_profile_root)
    log_path: Path | None = Field(default_factory=_default_worker_log_path)
    headless: bool = Field(default=False, description="Visible windows allow interactive login")
    default_timeout_ms: int = Field(default=90_000, gt=0)
    input_timeout_ms: int = Field(default=15_000, gt=0)
    navigation_timeout_ms: int = Field(default=45_000, gt=0)
    request_timeout_ms: int = Field(default=240_000, gt=0, description="Client-side RPC timeout")
    command: list[str] = Field(
        default_factory=lambda: ["railflow", "worker"],
        min_length=1,
        description="Command used by the client to spawn the worker",
    )


class AuthSettings(BaseModel):
    """Debounce for transient login-required probes.

    A login_required probe is ignored while login previously completed and
    either the last authenticated probe is within grace_ms or fewer than
    confirm_count consecutive login_required probes were seen.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    grace_ms: int = Field(default=120_000, ge=0)
    confirm_count: int = Field(default=3, gt=0)


class LedgerSettings(BaseModel):
    """Run ledger persistence."""

    model_config = {"frozen": True, "extra": "forbid"}

    # NOTE: str instead of Path - Path mangles "postgresql://" DSNs
    url: str = Field(default="sqlite:///./runs/railflow.db", description="SQLAlchemy database URL")
    export_dir: Path | None = Field(default=None, description="Also write run-<id>.json here when set")


class RailflowSettings(BaseModel):
    """Top-level Railflow configuration.

    All sections have defaults, so an empty file is a valid configuration.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    web_turn: WebTurnSettings = Field(default_factory=WebTurnSettings)
    bridge: BridgeSettings = Field(default_factory=BridgeSettings)
    extractor: ExtractorSettings = Field(default_factory=ExtractorSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)


# Regex pattern for ${VAR} or ${VAR:-default} syntax
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")


def _expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ${VAR} and ${VAR:-default} patterns in config values."""

    def _expand_string(value: str) -> str:
        def replacer(match: re.Match[str]) -> str:
            env_value = os.environ.get(match.group(1))
            if env_value is not None:
                return env_value
            if match.group(2) is not None:
                return match.group(2)
            # No env var and no default - keep original so validation reports it
            return match.group(0)

        return _ENV_VAR_PATTERN.sub(replacer, value)

    def _expand_value(value: Any) -> Any:
        if isinstance(value, str):
            return _expand_string(value)
        elif isinstance(value, dict):
            return {k: _expand_value(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [_expand_value(item) for item in value]
        else:
            return value

    return {k: _expand_value(v) for k, v in config.items()}


def _lower_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k).lower(): _lower_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_lower_keys(item) for item in value]
    return value


def load_settings(config_path: Path | None = None) -> RailflowSettings:
    """Load settings from YAML file with environment variable overrides.

    Precedence:
    1. Environment variables (RAILFLOW_*) - highest priority
    2. Config file
    3. Defaults from the Pydantic schema - lowest priority

    Environment variable format: RAILFLOW_BRIDGE__PORT for nested keys.

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If an explicit config file doesn't exist
    """
    from dynaconf import Dynaconf

    settings_files: list[str] = []
    if config_path is not None:
        # Dynaconf silently accepts missing files
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        settings_files.append(str(config_path))

    dynaconf_settings = Dynaconf(
        envvar_prefix="RAILFLOW",
        settings_files=settings_files,
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k: v for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}
    raw_config = _lower_keys(raw_config)
    raw_config = _expand_env_vars(raw_config)

    return RailflowSettings(**raw_config)
