# src/railflow/web/worker.py
"""Headless worker: NDJSON JSON-RPC 2.0 over stdio.

One JSON object per line on stdin; responses and notifications are written
one per line to stdout. stdout is the RPC channel, so all logging goes to
stderr or the worker log file.

Methods:
    health                   worker and per-provider context status
    provider/run             {provider, prompt, timeoutMs} -> {ok, text, raw, meta}
    provider/openSession     {provider} -> {ok, provider, url, sessionState}
    provider/resetSession    {provider} -> {ok, provider, profileDir}
    provider/cancel          {provider} -> {ok, cancelled}

Run failures are returned in-band as {ok: false, errorCode, error, meta};
only malformed requests and unknown methods produce JSON-RPC errors.
"""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from railflow.contracts.enums import Provider
from railflow.contracts.errors import ErrorCode, WebTurnError
from railflow.contracts.records import utc_now
from railflow.core.config import RailflowSettings
from railflow.web.automation import ProviderAutomation, RunToken
from railflow.web.extractor import StabilityExtractor
from railflow.web.lock import WorkerLock, harden_dir
from railflow.web.providers import parse_provider
from railflow.web.sessions import ProviderSessionManager

slog = structlog.get_logger(__name__)

JSONRPC_VERSION = "2.0"
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601

type Writer = Callable[[dict[str, Any]], None]
type MethodHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


def write_stdout(payload: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False) + "\n")
    sys.stdout.flush()


class WorkerRpcHandler:
    """Dispatches JSON-RPC requests to the session manager and automation.

    The handler never raises out of handle_line(): every request gets exactly
    one response, and invalid JSON is logged and dropped.
    """

    def __init__(
        self,
        settings: RailflowSettings,
        *,
        write: Writer = write_stdout,
        sessions: ProviderSessionManager | None = None,
        automation: ProviderAutomation | None = None,
    ) -> None:
        self._settings = settings
        self._write = write
        self._sessions = sessions or ProviderSessionManager(settings.worker, on_progress=self._on_progress)
        self._automation = automation or ProviderAutomation(
            self._sessions,
            StabilityExtractor(settings.extractor),
            settings.worker,
            on_progress=self._on_progress,
        )
        self._active_runs: dict[Provider, RunToken] = {}
        self._last_error: str | None = None
        self._methods: dict[str, MethodHandler] = {
            "health": self._health,
            "provider/run": self._run,
            "provider/openSession": self._open_session,
            "provider/resetSession": self._reset_session,
            "provider/cancel": self._cancel,
        }

    @property
    def sessions(self) -> ProviderSessionManager:
        return self._sessions

    @property
    def last_error(self) -> str | None:
        return self._last_error

    def active_providers(self) -> list[str]:
        return sorted(provider.value for provider in self._active_runs)

    # --- wire -----------------------------------------------------------

    def notify(self, method: str, params: dict[str, Any]) -> None:
        self._write({"jsonrpc": JSONRPC_VERSION, "method": method, "params": params})

    def _respond(self, request_id: Any, result: dict[str, Any]) -> None:
        self._write({"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result})

    def _respond_error(self, request_id: Any, code: int, message: str) -> None:
        self._write(
            {
                "jsonrpc": JSONRPC_VERSION,
                "id": request_id,
                "error": {"code": code, "message": message, "data": None},
            }
        )

    def _on_progress(self, provider: Provider, stage: str, message: str) -> None:
        self.notify("web/progress", {"provider": provider.value, "stage": stage, "message": message})

    async def handle_line(self, raw_line: str) -> None:
        line = raw_line.strip()
        if not line:
            return
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            slog.warning("rpc_invalid_json", line=line[:200])
            return

        if not isinstance(message, dict):
            self._respond_error(None, INVALID_REQUEST, "Invalid request")
            return
        if "id" not in message:
            # Notifications never get a response
            slog.info("rpc_notification_ignored", method=message.get("method"))
            return
        request_id = message.get("id")
        method = message.get("method")
        if not isinstance(method, str):
            self._respond_error(request_id, INVALID_REQUEST, "Invalid request")
            return

        handler = self._methods.get(method)
        if handler is None:
            self._respond_error(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")
            return

        params = message.get("params")
        if not isinstance(params, dict):
            params = {}
        try:
            result = await handler(params)
        except WebTurnError as e:
            self._last_error = f"{e.code.value}: {e.message}"
            result = {"ok": False, "errorCode": e.code.value, "error": e.message}
        except Exception as e:
            slog.exception("rpc_handler_failed", method=method)
            self._last_error = f"{ErrorCode.INTERNAL.value}: {e}"
            result = {"ok": False, "errorCode": ErrorCode.INTERNAL.value, "error": str(e)}
        self._respond(request_id, result)

    # --- methods --------------------------------------------------------

    async def _health(self, params: dict[str, Any]) -> dict[str, Any]:
        active = self.active_providers()
        return {
            "running": True,
            "lastError": self._last_error,
            "providers": await self._sessions.describe(),
            "logPath": str(self._settings.worker.log_path) if self._settings.worker.log_path else None,
            "profileRoot": str(self._settings.worker.profile_root),
            "activeProviders": active,
            "activeProvider": active[0] if active else None,
        }

    async def _run(self, params: dict[str, Any]) -> dict[str, Any]:
        raw_provider = str(params.get("provider") or "").strip()
        provider = parse_provider(raw_provider)
        if provider is None:
            return {
                "ok": False,
                "errorCode": ErrorCode.UNSUPPORTED_PROVIDER.value,
                "error": f"unsupported provider: {raw_provider or '<empty>'}",
            }
        prompt = str(params.get("prompt") or "")
        timeout_ms = _positive_int(params.get("timeoutMs"), self._settings.worker.default_timeout_ms)

        if provider in self._active_runs:
            return {
                "ok": False,
                "errorCode": ErrorCode.INTERNAL.value,
                "error": f"{provider.value} is busy with another run",
            }

        token = RunToken(provider=provider)
        self._active_runs[provider] = token
        try:
            return await self._automation.run(token, prompt, timeout_ms)
        except WebTurnError as e:
            code, message = e.code, e.message
        except Exception as e:
            slog.exception("provider_run_failed", provider=provider.value)
            code, message = ErrorCode.EXTRACTION_FAILED, str(e)
        finally:
            if self._active_runs.get(provider) is token:
                del self._active_runs[provider]

        self._last_error = f"{code.value}: {message}"
        self._on_progress(provider, "error", self._last_error)
        return {
            "ok": False,
            "errorCode": code.value,
            "error": message,
            "meta": {"provider": provider.value, "failedAt": utc_now().isoformat()},
        }

    async def _open_session(self, params: dict[str, Any]) -> dict[str, Any]:
        provider = _require_provider(params)
        return await self._sessions.open_session(provider)

    async def _reset_session(self, params: dict[str, Any]) -> dict[str, Any]:
        provider = _require_provider(params)
        token = self._active_runs.get(provider)
        if token is not None:
            token.cancelled = True
        return await self._sessions.reset_session(provider)

    async def _cancel(self, params: dict[str, Any]) -> dict[str, Any]:
        provider = parse_provider(params.get("provider"))
        token = self._active_runs.get(provider) if provider is not None else None
        if token is None:
            return {"ok": True, "cancelled": False}
        token.cancelled = True
        slog.info("provider_run_cancel_requested", provider=token.provider.value)
        return {"ok": True, "cancelled": True}


def _require_provider(params: dict[str, Any]) -> Provider:
    provider = parse_provider(params.get("provider"))
    if provider is None:
        raise WebTurnError(ErrorCode.UNSUPPORTED_PROVIDER, f"unsupported provider: {params.get('provider')!r}")
    return provider


def _positive_int(value: Any, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


async def _stdin_reader() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    return reader


async def serve_stdio(settings: RailflowSettings) -> int:
    """Run the worker until stdin closes or SIGTERM/SIGINT arrives.

    Returns:
        Process exit code.
    """
    harden_dir(settings.worker.profile_root)
    lock = WorkerLock(settings.worker.profile_root)
    lock.acquire()
    handler = WorkerRpcHandler(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, stop.set)

    handler.notify(
        "web/worker/started",
        {
            "profileRoot": str(settings.worker.profile_root),
            "logPath": str(settings.worker.log_path) if settings.worker.log_path else None,
            "startedAt": utc_now().isoformat(),
        },
    )
    slog.info("worker_started", profile_root=str(settings.worker.profile_root))

    reader = await _stdin_reader()
    pending: set[asyncio.Task[None]] = set()
    reason = "stdin closed"
    stop_waiter = asyncio.create_task(stop.wait())
    try:
        while True:
            read = asyncio.create_task(reader.readline())
            done, _ = await asyncio.wait({read, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
            if stop_waiter in done:
                read.cancel()
                reason = "signal"
                break
            line = read.result()
            if not line:
                break
            # Requests run concurrently so provider/cancel can reach an in-flight run
            task = asyncio.create_task(handler.handle_line(line.decode("utf-8", errors="replace")))
            pending.add(task)
            task.add_done_callback(pending.discard)
    finally:
        stop_waiter.cancel()
        for task in pending:
            task.cancel()
        handler.notify("web/worker/stopped", {"reason": reason, "stoppedAt": utc_now().isoformat()})
        slog.info("worker_stopped", reason=reason)
        await handler.sessions.close_all()
        lock.release()
    return 0
