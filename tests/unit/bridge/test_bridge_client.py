# tests/unit/bridge/test_bridge_client.py
"""Tests for BridgeClient against the in-process ASGI app."""

from __future__ import annotations

import httpx
import pytest

from railflow.bridge.client import BridgeClient
from railflow.bridge.mailbox import TaskMailbox
from railflow.bridge.server import BridgeServer
from railflow.bridge.token import BridgeToken
from railflow.bridge.url import BridgeUrlError
from railflow.contracts.enums import Provider, TaskStatus
from railflow.contracts.errors import BridgeProtocolError, ErrorCode, WebTurnError

TOKEN = "client-token-" + "y" * 24


def make_client(server: BridgeServer, token: str = TOKEN) -> BridgeClient:
    return BridgeClient("http://127.0.0.1:38961", token, transport=httpx.ASGITransport(app=server.app))


@pytest.fixture
def server() -> BridgeServer:
    return BridgeServer(TaskMailbox(), token=BridgeToken(TOKEN))


class TestBridgeClient:
    @pytest.mark.asyncio
    async def test_full_exchange(self, server: BridgeServer) -> None:
        task, future = await server.mailbox.enqueue(Provider.GEMINI, "hello", 30_000)

        async with make_client(server) as client:
            claimed = await client.claim(Provider.GEMINI, "https://gemini.google.com/app")
            assert claimed is not None
            await client.stage(claimed["id"], TaskStatus.PROMPT_FILLED, "prompt entered")
            await client.stage(claimed["id"], TaskStatus.RESPONDING)
            await client.result(claimed["id"], "hi there", meta={"citations": []})

        result = await future
        assert claimed["id"] == task.task_id
        assert result.text == "hi there"
        assert result.meta == {"citations": []}

    @pytest.mark.asyncio
    async def test_error_report(self, server: BridgeServer) -> None:
        task, future = await server.mailbox.enqueue(Provider.GPT, "hello", 30_000)

        async with make_client(server) as client:
            await client.claim(Provider.GPT)
            await client.error(task.task_id, ErrorCode.NOT_LOGGED_IN, "login page shown")

        with pytest.raises(WebTurnError) as excinfo:
            await future
        assert excinfo.value.code is ErrorCode.NOT_LOGGED_IN

    @pytest.mark.asyncio
    async def test_empty_claim(self, server: BridgeServer) -> None:
        async with make_client(server) as client:
            assert await client.claim(Provider.GROK) is None
            health = await client.health()

        assert health["pending"] == 0

    @pytest.mark.asyncio
    async def test_unauthorized(self, server: BridgeServer) -> None:
        async with make_client(server, token="wrong") as client:
            with pytest.raises(BridgeProtocolError) as excinfo:
                await client.health()

        assert excinfo.value.status_code == 401
        assert "unauthorized" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_unknown_task_is_protocol_error(self, server: BridgeServer) -> None:
        async with make_client(server) as client:
            with pytest.raises(BridgeProtocolError) as excinfo:
                await client.result("missing", "x")

        assert excinfo.value.status_code == 404

    @pytest.mark.asyncio
    async def test_event_and_status(self, server: BridgeServer) -> None:
        async with make_client(server) as client:
            await client.event("warning", provider=Provider.CLAUDE, message="tab closed")
            status = await client.status()

        assert status["recentEvents"][0]["provider"] == "claude"

    def test_rejects_remote_url(self) -> None:
        with pytest.raises(BridgeUrlError):
            BridgeClient("http://example.com:38961", TOKEN)
