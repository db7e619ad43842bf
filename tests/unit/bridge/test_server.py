# tests/unit/bridge/test_server.py
"""Tests for the bridge HTTP endpoints."""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from typing import Any

import pytest
from starlette.testclient import TestClient

from railflow import __version__
from railflow.bridge.mailbox import TaskMailbox
from railflow.bridge.server import BridgeServer
from railflow.bridge.token import BridgeToken
from railflow.contracts.enums import Provider
from railflow.contracts.errors import ErrorCode, WebTurnError
from railflow.contracts.web import WebTurnResult, WebTurnTask

TOKEN = "test-token-" + "x" * 24


@pytest.fixture
def server() -> BridgeServer:
    return BridgeServer(TaskMailbox(), token=BridgeToken(TOKEN))


@pytest.fixture
def client(server: BridgeServer) -> Iterator[TestClient]:
    with TestClient(server.app, headers={"Authorization": f"Bearer {TOKEN}"}) as test_client:
        yield test_client


def enqueue(client: TestClient, server: BridgeServer, provider: Provider) -> tuple[WebTurnTask, asyncio.Future[WebTurnResult]]:
    """Enqueue on the event loop the test client serves from."""

    async def _enqueue() -> tuple[WebTurnTask, asyncio.Future[WebTurnResult]]:
        return await server.mailbox.enqueue(provider, "what is 2+2?", 60_000)

    return client.portal.call(_enqueue)  # type: ignore[union-attr]  # portal is set inside the context manager


def outcome(client: TestClient, future: asyncio.Future[WebTurnResult]) -> Any:
    async def _await() -> Any:
        try:
            return await future
        except WebTurnError as e:
            return e

    return client.portal.call(_await)  # type: ignore[union-attr]


class TestAuthentication:
    def test_missing_token(self, server: BridgeServer) -> None:
        with TestClient(server.app) as anonymous:
            response = anonymous.get("/v1/health")

        assert response.status_code == 401
        assert response.json() == {"ok": False, "error": "unauthorized"}

    def test_wrong_token(self, client: TestClient) -> None:
        response = client.post("/v1/task/claim", json={"provider": "gpt"}, headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401

    def test_rotated_token(self, server: BridgeServer, client: TestClient) -> None:
        new_token = server.rotate_token()

        assert client.get("/v1/health").status_code == 401
        assert client.get("/v1/health", headers={"Authorization": f"Bearer {new_token}"}).status_code == 200
        status = client.get("/v1/bridge/status", headers={"Authorization": f"Bearer {new_token}"}).json()
        assert status["tokenRotatedAt"] is not None


class TestHealthAndStatus:
    def test_health(self, client: TestClient) -> None:
        assert client.get("/v1/health").json() == {"ok": True, "version": __version__, "pending": 0, "claimed": 0}

    def test_status_lists_every_provider(self, client: TestClient) -> None:
        body = client.get("/v1/bridge/status").json()

        assert body["ok"] is True
        assert set(body["providers"]) == {p.value for p in Provider}
        assert body["url"] == "http://127.0.0.1:38961"

    def test_events_are_recorded(self, server: BridgeServer, client: TestClient) -> None:
        response = client.post(
            "/v1/bridge/event",
            json={"type": "warning", "provider": "gemini", "code": "INPUT_NOT_FOUND", "message": "no textarea"},
        )

        assert response.json() == {"ok": True}
        (event,) = server.recent_events()
        assert event["type"] == "warning"
        assert event["message"] == "no textarea"
        assert client.get("/v1/bridge/status").json()["recentEvents"][0]["code"] == "INPUT_NOT_FOUND"


class TestClaimFlow:
    def test_empty_claim(self, client: TestClient) -> None:
        for _ in range(2):
            response = client.post("/v1/task/claim", json={"provider": "gemini"})
            assert response.json() == {"ok": True, "task": None}

    def test_claim_stage_result(self, server: BridgeServer, client: TestClient) -> None:
        task, future = enqueue(client, server, Provider.GEMINI)

        claimed = client.post(
            "/v1/task/claim", json={"provider": "GEMINI", "pageUrl": "https://gemini.google.com/app"}
        ).json()["task"]
        assert claimed["id"] == task.task_id
        assert claimed["prompt"] == "what is 2+2?"
        assert claimed["timeoutMs"] == 60_000
        assert claimed["status"] == "claimed"

        assert client.post(f"/v1/task/{task.task_id}/stage", json={"stage": "responding"}).status_code == 200
        response = client.post(
            f"/v1/task/{task.task_id}/result",
            json={"text": "4", "pageUrl": "https://gemini.google.com/app/abc"},
        )

        assert response.json() == {"ok": True}
        result = outcome(client, future)
        assert result.text == "4"
        assert result.via == "bridge"
        assert result.meta == {"url": "https://gemini.google.com/app/abc"}
        assert client.get("/v1/health").json()["claimed"] == 0

    def test_error_with_unknown_code(self, server: BridgeServer, client: TestClient) -> None:
        task, future = enqueue(client, server, Provider.GPT)

        client.post(f"/v1/task/{task.task_id}/error", json={"code": "RATE_LIMITED", "message": "slow down"})

        error = outcome(client, future)
        assert isinstance(error, WebTurnError)
        assert error.code is ErrorCode.INTERNAL
        assert error.message == "slow down"

    def test_error_without_message_uses_code(self, server: BridgeServer, client: TestClient) -> None:
        task, future = enqueue(client, server, Provider.GPT)

        client.post(f"/v1/task/{task.task_id}/error", json={"code": "submit_failed"})

        error = outcome(client, future)
        assert error.code is ErrorCode.SUBMIT_FAILED
        assert error.message == "SUBMIT_FAILED"


class TestBadRequests:
    @pytest.mark.parametrize(
        ("path", "body"),
        [
            ("/v1/task/claim", {"provider": "bard"}),
            ("/v1/task/claim", {"provider": "gpt", "pageUrl": 5}),
            ("/v1/task/claim", ["gpt"]),
        ],
    )
    def test_invalid_bodies(self, client: TestClient, path: str, body: Any) -> None:
        assert client.post(path, json=body).status_code == 400

    def test_invalid_json(self, client: TestClient) -> None:
        response = client.post("/v1/task/claim", content=b"{not json", headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        assert response.json()["ok"] is False

    def test_unknown_stage(self, server: BridgeServer, client: TestClient) -> None:
        task, _ = enqueue(client, server, Provider.GROK)

        assert client.post(f"/v1/task/{task.task_id}/stage", json={"stage": "dancing"}).status_code == 400
        assert client.post(f"/v1/task/{task.task_id}/stage", json={"stage": "done"}).status_code == 400

    def test_stage_on_unclaimed_task(self, server: BridgeServer, client: TestClient) -> None:
        task, _ = enqueue(client, server, Provider.GROK)

        response = client.post(f"/v1/task/{task.task_id}/stage", json={"stage": "responding"})

        assert response.status_code == 400
        assert "has not been claimed" in response.json()["error"]
        assert client.post("/v1/task/claim", json={"provider": "grok"}).json()["task"]["id"] == task.task_id

    def test_result_text_must_be_string(self, server: BridgeServer, client: TestClient) -> None:
        task, _ = enqueue(client, server, Provider.GROK)

        assert client.post(f"/v1/task/{task.task_id}/result", json={"text": 4}).status_code == 400
        assert client.post(f"/v1/task/{task.task_id}/result", json={"text": "x", "meta": []}).status_code == 400

    @pytest.mark.parametrize("suffix", ["stage", "result", "error"])
    def test_unknown_task(self, client: TestClient, suffix: str) -> None:
        body = {"stage": "responding", "text": "x", "code": "TIMEOUT"}

        response = client.post(f"/v1/task/missing/{suffix}", json=body)

        assert response.status_code == 404
        assert response.json()["error"] == "unknown task: missing"
