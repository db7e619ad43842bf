# tests/unit/web/test_worker_client.py
"""Tests for WebWorkerClient against a scripted worker subprocess."""

from __future__ import annotations

import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import pytest

from railflow.contracts.enums import Provider
from railflow.contracts.errors import ErrorCode, WebTurnError
from railflow.engine.retry import RetryConfig
from railflow.web.client import WebWorkerClient

FAST_RETRY = RetryConfig(max_attempts=2, base_delay=0.001, max_delay=0.001, jitter=0.0)

# Minimal stand-in for `railflow worker`: behaviour is chosen by the prompt.
FAKE_WORKER = r"""
import json, os, sys

marker = sys.argv[1]
print(json.dumps({"jsonrpc": "2.0", "method": "web/worker/started", "params": {"pid": os.getpid()}}), flush=True)


def send(payload):
    sys.stdout.write(json.dumps(payload) + "\n")
    sys.stdout.flush()


for line in sys.stdin:
    message = json.loads(line)
    request_id, method, params = message["id"], message["method"], message.get("params", {})
    if method == "health":
        send({"jsonrpc": "2.0", "id": request_id, "result": {"running": True, "pid": os.getpid()}})
    elif method == "provider/cancel":
        send({"jsonrpc": "2.0", "id": request_id, "result": {"ok": True, "cancelled": True}})
    elif method == "provider/run":
        prompt = params["prompt"]
        if prompt == "crash" and not os.path.exists(marker):
            open(marker, "w").close()
            sys.exit(3)
        if prompt == "hang":
            continue
        send({"jsonrpc": "2.0", "method": "web/progress",
              "params": {"provider": params["provider"], "stage": "navigation", "message": "preparing page"}})
        send({"jsonrpc": "2.0", "method": "web/progress",
              "params": {"provider": "gpt", "stage": "other", "message": "not for us"}})
        if prompt == "fail":
            send({"jsonrpc": "2.0", "id": request_id,
                  "result": {"ok": False, "errorCode": "NOT_LOGGED_IN", "error": "log in first"}})
        elif prompt == "rpc-error":
            send({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32603, "message": "boom", "data": None}})
        else:
            send({"jsonrpc": "2.0", "id": request_id,
                  "result": {"ok": True, "text": "echo:" + prompt, "raw": None,
                             "meta": {"timeoutMs": params["timeoutMs"], "pid": os.getpid()}}})
    else:
        send({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32601, "message": "Method not found"}})
"""


@asynccontextmanager
async def fake_worker(tmp_path: Path, *, request_timeout_ms: int = 10_000) -> AsyncIterator[WebWorkerClient]:
    client = WebWorkerClient(
        [sys.executable, "-c", FAKE_WORKER, str(tmp_path / "crashed-once")],
        request_timeout_ms=request_timeout_ms,
        retry_config=FAST_RETRY,
    )
    try:
        yield client
    finally:
        await client.stop()


class TestWebWorkerClient:
    @pytest.mark.asyncio
    async def test_run_with_progress(self, tmp_path: Path) -> None:
        progress: list[tuple[str, str]] = []

        async with fake_worker(tmp_path) as client:
            result = await client.run(
                Provider.GEMINI, "hello", timeout_ms=5_000, on_progress=lambda s, m: progress.append((s, m))
            )

        assert result.text == "echo:hello"
        assert result.via == "worker"
        assert result.provider is Provider.GEMINI
        assert result.meta["timeoutMs"] == 5_000
        assert progress == [("navigation", "preparing page")]

    @pytest.mark.asyncio
    async def test_listener_removed_after_run(self, tmp_path: Path) -> None:
        progress: list[tuple[str, str]] = []

        async with fake_worker(tmp_path) as client:
            await client.run(Provider.GEMINI, "one", timeout_ms=5_000, on_progress=lambda s, m: progress.append((s, m)))
            await client.run(Provider.GEMINI, "two", timeout_ms=5_000)

        assert len(progress) == 1

    @pytest.mark.asyncio
    async def test_in_band_failure_keeps_code(self, tmp_path: Path) -> None:
        async with fake_worker(tmp_path) as client:
            with pytest.raises(WebTurnError) as excinfo:
                await client.run(Provider.GEMINI, "fail", timeout_ms=5_000)

        assert excinfo.value.code is ErrorCode.NOT_LOGGED_IN
        assert excinfo.value.message == "log in first"

    @pytest.mark.asyncio
    async def test_rpc_error_is_internal(self, tmp_path: Path) -> None:
        async with fake_worker(tmp_path) as client:
            with pytest.raises(WebTurnError) as excinfo:
                await client.run(Provider.GEMINI, "rpc-error", timeout_ms=5_000)

        assert excinfo.value.code is ErrorCode.INTERNAL
        assert "boom" in excinfo.value.message

    @pytest.mark.asyncio
    async def test_restarts_once_after_crash(self, tmp_path: Path) -> None:
        async with fake_worker(tmp_path) as client:
            await client.start()
            first_pid = (await client.health())["pid"]

            result = await client.run(Provider.GEMINI, "crash", timeout_ms=5_000)
            second_pid = (await client.health())["pid"]

        assert result.text == "echo:crash"
        assert first_pid != second_pid
        assert (tmp_path / "crashed-once").exists()

    @pytest.mark.asyncio
    async def test_unresponsive_worker(self, tmp_path: Path) -> None:
        async with fake_worker(tmp_path) as client:
            with pytest.raises(WebTurnError) as excinfo:
                await client.request("provider/run", {"provider": "gemini", "prompt": "hang", "timeoutMs": 1}, timeout_ms=300)

        assert excinfo.value.code is ErrorCode.INTERNAL
        assert "worker unavailable" in excinfo.value.message

    @pytest.mark.asyncio
    async def test_cancel(self, tmp_path: Path) -> None:
        async with fake_worker(tmp_path) as client:
            assert await client.cancel(Provider.GEMINI) is True

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, tmp_path: Path) -> None:
        async with fake_worker(tmp_path) as client:
            await client.start()
            assert client.running
            await client.stop()
            assert not client.running
