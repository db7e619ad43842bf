# src/railflow/bridge/server.py
"""Starlette application for the loopback web bridge.

Browser contexts (the extension content script or a headless runner) poll
the claim endpoint, then report stages and post a result or a typed error
for the task they claimed. Every endpoint requires the bearer token.

Usage:
    mailbox = TaskMailbox()
    server = BridgeServer(mailbox, settings=settings.bridge)
    await server.serve()      # or mount server.app in a TestClient
"""

from __future__ import annotations

import contextlib
import json
from collections import deque
from collections.abc import Awaitable, Callable, Iterator
from typing import Any

import structlog
import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from railflow import __version__
from railflow.bridge.mailbox import TaskMailbox, UnknownTaskError
from railflow.bridge.token import BridgeToken
from railflow.contracts.enums import TaskStatus
from railflow.contracts.errors import ErrorCode
from railflow.contracts.records import utc_now
from railflow.contracts.web import WebTurnResult
from railflow.core.config import BridgeSettings
from railflow.web.providers import parse_provider

slog = structlog.get_logger(__name__)

type Endpoint = Callable[[Request], Awaitable[Response]]

MAX_RECENT_EVENTS = 50


class BadRequest(Exception):
    """Malformed request body; answered with 400."""


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that does not take over process signal handling."""

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield

    def install_signal_handlers(self) -> None:
        return None


class BridgeServer:
    """Loopback bridge server.

    Attributes:
        app: The Starlette ASGI application
        mailbox: The task mailbox shared with the node processor
    """

    def __init__(
        self,
        mailbox: TaskMailbox,
        *,
        settings: BridgeSettings | None = None,
        token: BridgeToken | None = None,
    ) -> None:
        self._mailbox = mailbox
        self._settings = settings or BridgeSettings()
        self._token = token or BridgeToken(self._settings.token)
        self._events: deque[dict[str, Any]] = deque(maxlen=MAX_RECENT_EVENTS)
        self._token_rotated_at: str | None = None
        self._app = self._create_app()

    def _create_app(self) -> Starlette:
        routes = [
            Route("/v1/health", self._guard(self._health_endpoint), methods=["GET"]),
            Route("/v1/task/claim", self._guard(self._claim_endpoint), methods=["POST"]),
            Route("/v1/task/{task_id}/stage", self._guard(self._stage_endpoint), methods=["POST"]),
            Route("/v1/task/{task_id}/result", self._guard(self._result_endpoint), methods=["POST"]),
            Route("/v1/task/{task_id}/error", self._guard(self._error_endpoint), methods=["POST"]),
            Route("/v1/bridge/event", self._guard(self._event_endpoint), methods=["POST"]),
            Route("/v1/bridge/status", self._guard(self._status_endpoint), methods=["GET"]),
        ]
        return Starlette(debug=False, routes=routes)

    @property
    def app(self) -> Starlette:
        return self._app

    @property
    def mailbox(self) -> TaskMailbox:
        return self._mailbox

    @property
    def token(self) -> str:
        return self._token.value

    @property
    def url(self) -> str:
        return f"http://{self._settings.host}:{self._settings.port}"

    def rotate_token(self) -> str:
        """Issue a new token; requests with the old one get 401 from now on."""
        value = self._token.rotate()
        self._token_rotated_at = utc_now().isoformat()
        slog.info("bridge_token_rotated")
        return value

    def recent_events(self) -> list[dict[str, Any]]:
        return list(self._events)

    async def serve(self, *, handle_signals: bool = True) -> None:
        """Serve on 127.0.0.1 until cancelled.

        With handle_signals=False uvicorn leaves SIGINT/SIGTERM to the caller,
        which is how the bridge runs embedded next to a graph run.
        """
        config = uvicorn.Config(
            self._app,
            host=self._settings.host,
            port=self._settings.port,
            log_config=None,
            access_log=False,
            lifespan="off",
        )
        slog.info("bridge_listening", url=self.url)
        server = uvicorn.Server(config) if handle_signals else _EmbeddedServer(config)
        await server.serve()

    # === Request plumbing ===

    def _guard(self, endpoint: Endpoint) -> Endpoint:
        async def guarded(request: Request) -> Response:
            if not self._token.verify_header(request.headers.get("authorization")):
                return JSONResponse({"ok": False, "error": "unauthorized"}, status_code=401)
            try:
                return await endpoint(request)
            except BadRequest as e:
                return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
            except UnknownTaskError as e:
                return JSONResponse({"ok": False, "error": f"unknown task: {e.args[0]}"}, status_code=404)

        return guarded

    @staticmethod
    async def _json_body(request: Request) -> dict[str, Any]:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise BadRequest(f"invalid JSON body: {e}") from e
        if not isinstance(body, dict):
            raise BadRequest("JSON body must be an object")
        return body

    @staticmethod
    def _optional_str(body: dict[str, Any], key: str) -> str | None:
        value = body.get(key)
        if value is None:
            return None
        if not isinstance(value, str):
            raise BadRequest(f"{key} must be a string")
        return value

    # === Endpoint handlers ===

    async def _health_endpoint(self, request: Request) -> JSONResponse:
        return JSONResponse({"ok": True, "version": __version__, **self._mailbox.counts()})

    async def _claim_endpoint(self, request: Request) -> JSONResponse:
        body = await self._json_body(request)
        provider = parse_provider(body.get("provider"))
        if provider is None:
            raise BadRequest(f"unknown provider: {body.get('provider')!r}")
        task = await self._mailbox.claim(provider, self._optional_str(body, "pageUrl"))
        return JSONResponse({"ok": True, "task": task.to_wire() if task else None})

    async def _stage_endpoint(self, request: Request) -> JSONResponse:
        task_id = request.path_params["task_id"]
        body = await self._json_body(request)
        try:
            stage = TaskStatus(str(body.get("stage", "")).strip().lower())
        except ValueError as e:
            raise BadRequest(f"unknown stage: {body.get('stage')!r}") from e
        try:
            await self._mailbox.record_stage(
                task_id,
                stage,
                detail=self._optional_str(body, "detail") or "",
                page_url=self._optional_str(body, "pageUrl"),
            )
        except ValueError as e:
            raise BadRequest(str(e)) from e
        return JSONResponse({"ok": True})

    async def _result_endpoint(self, request: Request) -> JSONResponse:
        task_id = request.path_params["task_id"]
        body = await self._json_body(request)
        text = body.get("text")
        if not isinstance(text, str):
            raise BadRequest("text must be a string")
        meta = body.get("meta") or {}
        if not isinstance(meta, dict):
            raise BadRequest("meta must be an object")
        task = self._mailbox.get(task_id)
        if task is None:
            raise UnknownTaskError(task_id)
        page_url = self._optional_str(body, "pageUrl")
        if page_url and "url" not in meta:
            meta = {**meta, "url": page_url}
        result = WebTurnResult(provider=task.provider, text=text, raw=body.get("raw"), meta=meta, via="bridge")
        await self._mailbox.resolve_result(task_id, result)
        return JSONResponse({"ok": True})

    async def _error_endpoint(self, request: Request) -> JSONResponse:
        task_id = request.path_params["task_id"]
        body = await self._json_body(request)
        code = ErrorCode.coerce(body.get("code"))
        message = str(body.get("message") or code.value)
        await self._mailbox.resolve_error(task_id, code, message)
        return JSONResponse({"ok": True})

    async def _event_endpoint(self, request: Request) -> JSONResponse:
        body = await self._json_body(request)
        event = {
            "type": str(body.get("type") or body.get("level") or "event"),
            "provider": body.get("provider"),
            "code": body.get("code"),
            "message": str(body.get("message") or ""),
            "at": utc_now().isoformat(),
        }
        self._events.append(event)
        slog.warning(
            "bridge_client_event",
            event_type=event["type"],
            provider=event["provider"],
            code=event["code"],
            message=event["message"],
        )
        return JSONResponse({"ok": True})

    async def _status_endpoint(self, request: Request) -> JSONResponse:
        return JSONResponse(
            {
                "ok": True,
                "version": __version__,
                "url": self.url,
                "tokenRotatedAt": self._token_rotated_at,
                "recentEvents": self.recent_events()[-10:],
                **self._mailbox.status(),
            }
        )
