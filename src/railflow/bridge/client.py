# src/railflow/bridge/client.py
"""HTTP client for the bridge, as used by a browser-side runner.

Any non-2xx status or a body with ok=false raises BridgeProtocolError. The
token is held in memory only and never logged.
"""

from __future__ import annotations

from json import JSONDecodeError
from typing import Any

import httpx
import structlog

from railflow.bridge.url import validate_bridge_url
from railflow.contracts.enums import Provider, TaskStatus
from railflow.contracts.errors import BridgeProtocolError, ErrorCode

slog = structlog.get_logger(__name__)


class BridgeClient:
    """Async bridge client.

    Example:
        async with BridgeClient("http://127.0.0.1:38961", token) as client:
            task = await client.claim(Provider.GEMINI, page_url)
            if task is not None:
                await client.stage(task["id"], TaskStatus.PROMPT_FILLED, "prompt entered")
                await client.result(task["id"], text)
    """

    def __init__(
        self,
        base_url: str | None,
        token: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = validate_bridge_url(base_url)
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout,
            follow_redirects=False,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def __aenter__(self) -> BridgeClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _call(self, method: str, path: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=body)
        except httpx.HTTPError as e:
            raise BridgeProtocolError(f"bridge request failed: {e}") from e

        try:
            payload = response.json()
        except (JSONDecodeError, UnicodeDecodeError):
            payload = None

        if not response.is_success:
            detail = payload.get("error") if isinstance(payload, dict) else response.text[:200]
            raise BridgeProtocolError(
                f"bridge {method} {path} returned {response.status_code}: {detail}",
                status_code=response.status_code,
            )
        if not isinstance(payload, dict) or payload.get("ok") is not True:
            detail = payload.get("error") if isinstance(payload, dict) else "non-JSON body"
            raise BridgeProtocolError(f"bridge {method} {path} not ok: {detail}", status_code=response.status_code)
        return payload

    async def health(self) -> dict[str, Any]:
        return await self._call("GET", "/v1/health")

    async def status(self) -> dict[str, Any]:
        return await self._call("GET", "/v1/bridge/status")

    async def claim(self, provider: Provider, page_url: str | None = None) -> dict[str, Any] | None:
        """The claimed task in wire form, or None when nothing is pending."""
        payload = await self._call("POST", "/v1/task/claim", {"provider": provider.value, "pageUrl": page_url})
        task = payload.get("task")
        return task if isinstance(task, dict) else None

    async def stage(self, task_id: str, stage: TaskStatus, detail: str = "", page_url: str | None = None) -> None:
        await self._call(
            "POST",
            f"/v1/task/{task_id}/stage",
            {"stage": stage.value, "detail": detail, "pageUrl": page_url},
        )

    async def result(
        self,
        task_id: str,
        text: str,
        *,
        raw: Any = None,
        meta: dict[str, Any] | None = None,
        page_url: str | None = None,
    ) -> None:
        await self._call(
            "POST",
            f"/v1/task/{task_id}/result",
            {"text": text, "raw": raw, "meta": meta or {}, "pageUrl": page_url},
        )

    async def error(self, task_id: str, code: ErrorCode, message: str) -> None:
        await self._call("POST", f"/v1/task/{task_id}/error", {"code": code.value, "message": message})

    async def event(self, event_type: str, *, provider: Provider | None = None, code: str | None = None, message: str = "") -> None:
        await self._call(
            "POST",
            "/v1/bridge/event",
            {
                "type": event_type,
                "provider": provider.value if provider else None,
                "code": code,
                "message": message,
            },
        )
