# src/railflow/web/client.py
"""Client side of the headless worker protocol.

Spawns the worker as a subprocess, correlates responses by request id and
routes web/progress notifications to per-provider listeners. Transport
faults (worker exited, closed pipe, write failure, request timeout) restart
the worker once and resend the request.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from collections.abc import Callable, Sequence
from typing import Any

import structlog

from railflow.contracts.enums import Provider
from railflow.contracts.errors import ErrorCode, WebTurnError
from railflow.contracts.web import WebTurnResult
from railflow.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager

slog = structlog.get_logger(__name__)

type ProgressListener = Callable[[str, str], None]

_STOP_TIMEOUT_SECONDS = 3.0


class WorkerTransportError(Exception):
    """The worker process or its pipes failed; the request may be retried."""


def is_recoverable_worker_error(error: BaseException) -> bool:
    return isinstance(error, WorkerTransportError)


class WebWorkerClient:
    """JSON-RPC client for `railflow worker`.

    Example:
        client = WebWorkerClient(settings.worker.command, request_timeout_ms=240_000)
        await client.start()
        result = await client.run(Provider.GEMINI, prompt, timeout_ms=90_000)
        await client.stop()
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        request_timeout_ms: int = 240_000,
        retry_config: RetryConfig | None = None,
    ) -> None:
        self._command = list(command)
        self._request_timeout = request_timeout_ms / 1000
        self._retry = RetryManager(retry_config or RetryConfig(max_attempts=2))
        self._process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._ids = itertools.count(1)
        self._listeners: dict[str, list[ProgressListener]] = {}
        self._start_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self) -> None:
        async with self._start_lock:
            if self.running:
                return
            self._process = await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
            )
            self._reader_task = asyncio.create_task(self._read_loop(self._process))
            slog.info("worker_spawned", pid=self._process.pid, command=self._command)

    async def stop(self) -> None:
        process, self._process = self._process, None
        if process is None:
            return
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        try:
            await asyncio.wait_for(process.wait(), timeout=_STOP_TIMEOUT_SECONDS)
        except TimeoutError:
            process.terminate()
            await process.wait()
        if self._reader_task is not None:
            self._reader_task.cancel()
            self._reader_task = None
        self._fail_pending(WorkerTransportError("worker stopped"))

    async def restart(self) -> None:
        slog.warning("worker_restarting")
        await self.stop()
        await self.start()

    def add_progress_listener(self, provider: Provider, listener: ProgressListener) -> Callable[[], None]:
        """Subscribe to (stage, message) progress for provider; returns an unsubscribe function."""
        listeners = self._listeners.setdefault(provider.value, [])
        listeners.append(listener)

        def _remove() -> None:
            if listener in listeners:
                listeners.remove(listener)

        return _remove

    async def _read_loop(self, process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None
        while True:
            line = await process.stdout.readline()
            if not line:
                break
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                slog.warning("worker_output_not_json", line=line[:200])
                continue
            if isinstance(message, dict):
                self._dispatch(message)
        self._fail_pending(WorkerTransportError("worker stdout closed"))

    def _dispatch(self, message: dict[str, Any]) -> None:
        if "id" in message and ("result" in message or "error" in message):
            future = self._pending.pop(message["id"], None)
            if future is None or future.done():
                return
            if "error" in message:
                error = message["error"] or {}
                future.set_exception(WebTurnError(ErrorCode.INTERNAL, str(error.get("message", "worker error"))))
            else:
                future.set_result(message["result"] or {})
            return

        method = message.get("method")
        params = message.get("params") or {}
        if method == "web/progress":
            for listener in list(self._listeners.get(str(params.get("provider")), [])):
                listener(str(params.get("stage", "")), str(params.get("message", "")))
        elif method in ("web/worker/started", "web/worker/stopped", "web/worker/error"):
            slog.info("worker_lifecycle", method=method, params=params)

    def _fail_pending(self, error: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    async def _request_once(self, method: str, params: dict[str, Any], timeout: float) -> dict[str, Any]:
        await self.start()
        process = self._process
        if process is None or process.stdin is None or process.returncode is not None:
            raise WorkerTransportError("worker is not running")

        request_id = next(self._ids)
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        payload = json.dumps({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
        try:
            process.stdin.write(payload.encode("utf-8") + b"\n")
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            self._pending.pop(request_id, None)
            raise WorkerTransportError(f"write to worker failed: {e}") from e

        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except TimeoutError as e:
            self._pending.pop(request_id, None)
            raise WorkerTransportError(f"{method} timed out after {int(timeout * 1000)}ms") from e

    async def request(self, method: str, params: dict[str, Any] | None = None, *, timeout_ms: int | None = None) -> dict[str, Any]:
        """Send one request, restarting the worker once on a transport fault.

        Raises:
            WebTurnError: INTERNAL when the worker stays unreachable.
        """
        timeout = timeout_ms / 1000 if timeout_ms is not None else self._request_timeout

        async def _restart(attempt: int, error: BaseException) -> None:
            slog.warning("worker_request_retry", method=method, attempt=attempt, error=str(error))
            await self.restart()

        try:
            return await self._retry.execute_with_retry(
                lambda: self._request_once(method, params or {}, timeout),
                is_retryable=is_recoverable_worker_error,
                on_retry=_restart,
            )
        except MaxRetriesExceeded as e:
            raise WebTurnError(ErrorCode.INTERNAL, f"worker unavailable: {e.last_error}") from e

    async def health(self) -> dict[str, Any]:
        return await self.request("health")

    async def open_session(self, provider: Provider) -> dict[str, Any]:
        return await self.request("provider/openSession", {"provider": provider.value})

    async def reset_session(self, provider: Provider) -> dict[str, Any]:
        return await self.request("provider/resetSession", {"provider": provider.value})

    async def cancel(self, provider: Provider) -> bool:
        result = await self.request("provider/cancel", {"provider": provider.value})
        return bool(result.get("cancelled"))

    async def run(
        self,
        provider: Provider,
        prompt: str,
        *,
        timeout_ms: int,
        on_progress: ProgressListener | None = None,
    ) -> WebTurnResult:
        """Run a prompt on the worker.

        Raises:
            WebTurnError: With the worker's error code for in-band failures.
        """
        unsubscribe = self.add_progress_listener(provider, on_progress) if on_progress else None
        try:
            # Leave the worker room to report its own TIMEOUT before the RPC times out
            result = await self.request(
                "provider/run",
                {"provider": provider.value, "prompt": prompt, "timeoutMs": timeout_ms},
                timeout_ms=max(timeout_ms + 15_000, int(self._request_timeout * 1000)),
            )
        finally:
            if unsubscribe is not None:
                unsubscribe()

        if not result.get("ok"):
            raise WebTurnError(ErrorCode.coerce(result.get("errorCode")), str(result.get("error", "worker run failed")))
        return WebTurnResult(
            provider=provider,
            text=str(result.get("text", "")),
            raw=result.get("raw"),
            meta=dict(result.get("meta") or {}),
            via="worker",
        )
