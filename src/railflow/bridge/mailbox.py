# src/railflow/bridge/mailbox.py
"""Claim mailbox for web turn tasks.

The node processor enqueues a task and awaits its future; a browser context
claims it over HTTP, reports stages, and posts a result or a typed error.
Every status change happens under one asyncio.Lock, and claiming is an
explicit compare-and-swap pending -> claimed, so two contexts polling the
same provider can never both receive a task.

A task leaves the mailbox when it is resolved (result or error) or
withdrawn; its future is resolved exactly once.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import structlog

from railflow.contracts.enums import Provider, TaskStatus
from railflow.contracts.errors import ErrorCode, WebTurnError
from railflow.contracts.records import utc_now
from railflow.contracts.web import StageEvent, WebTurnResult, WebTurnTask

slog = structlog.get_logger(__name__)

type StageListener = Callable[[StageEvent], None]

# Stages a claimed task may report; terminal states only come from result/error/withdraw
REPORTABLE_STAGES = frozenset(
    {
        TaskStatus.CLAIMED,
        TaskStatus.PROMPT_FILLED,
        TaskStatus.WAITING_USER_SEND,
        TaskStatus.RESPONDING,
    }
)


class UnknownTaskError(KeyError):
    """Raised when a task id is not (or no longer) in the mailbox."""


class TaskMailbox:
    """Pending web turn tasks, keyed by id, at most one unresolved per provider."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._tasks: dict[str, WebTurnTask] = {}
        self._futures: dict[str, asyncio.Future[WebTurnResult]] = {}
        self._listeners: dict[str, list[StageListener]] = {}
        self._provider_slots: dict[Provider, asyncio.Lock] = {}
        self._last_seen: dict[Provider, datetime] = {}
        self._last_page_url: dict[Provider, str] = {}

    @asynccontextmanager
    async def provider_slot(self, provider: Provider) -> AsyncIterator[None]:
        """Serialize web turns per provider; hold this around enqueue...resolve."""
        slot = self._provider_slots.setdefault(provider, asyncio.Lock())
        async with slot:
            yield

    async def enqueue(
        self,
        provider: Provider,
        prompt: str,
        timeout_ms: int,
        *,
        node_id: str | None = None,
        on_stage: StageListener | None = None,
    ) -> tuple[WebTurnTask, asyncio.Future[WebTurnResult]]:
        """Add a pending task and return it with the future its result resolves.

        Raises:
            WebTurnError: INTERNAL if the provider already has an unresolved task.
        """
        async with self._lock:
            if any(task.provider is provider for task in self._tasks.values()):
                raise WebTurnError(ErrorCode.INTERNAL, f"{provider.value} already has an unresolved task")
            task = WebTurnTask(
                task_id=uuid.uuid4().hex,
                provider=provider,
                prompt=prompt,
                timeout_ms=timeout_ms,
                node_id=node_id,
            )
            future: asyncio.Future[WebTurnResult] = asyncio.get_running_loop().create_future()
            self._tasks[task.task_id] = task
            self._futures[task.task_id] = future
            if on_stage is not None:
                self._listeners[task.task_id] = [on_stage]
        slog.info("bridge_task_queued", task_id=task.task_id, provider=provider.value, node_id=node_id)
        return task, future

    async def claim(self, provider: Provider, page_url: str | None = None) -> WebTurnTask | None:
        """Compare-and-swap the provider's pending task to claimed.

        Returns None when nothing is pending; repeated empty claims change
        nothing except the provider's last-seen time.
        """
        async with self._lock:
            self._last_seen[provider] = utc_now()
            if page_url:
                self._last_page_url[provider] = page_url
            task = next(
                (t for t in self._tasks.values() if t.provider is provider and t.status is TaskStatus.PENDING),
                None,
            )
            if task is None:
                return None
            task.status = TaskStatus.CLAIMED
            task.claimed_at = utc_now()
            task.page_url = page_url
            event = StageEvent(task_id=task.task_id, stage=TaskStatus.CLAIMED, detail="claimed", page_url=page_url)
        slog.info("bridge_task_claimed", task_id=task.task_id, provider=provider.value)
        self._emit(event)
        return task

    async def record_stage(
        self,
        task_id: str,
        stage: TaskStatus,
        *,
        detail: str = "",
        page_url: str | None = None,
    ) -> WebTurnTask:
        """Record a progress stage reported by the claiming context.

        Raises:
            UnknownTaskError: If task_id is not in the mailbox.
            ValueError: If stage is not a reportable (non-terminal) stage, or
                the task has not been claimed yet.
        """
        if stage not in REPORTABLE_STAGES:
            raise ValueError(f"stage {stage.value!r} cannot be reported")
        async with self._lock:
            task = self._require(task_id)
            # Only claim() moves a task out of pending
            if task.status is TaskStatus.PENDING:
                raise ValueError(f"task {task_id} has not been claimed")
            task.status = stage
            task.last_detail = detail
            if page_url:
                task.page_url = page_url
            event = StageEvent(task_id=task_id, stage=stage, detail=detail, page_url=page_url)
        self._emit(event)
        return task

    async def resolve_result(self, task_id: str, result: WebTurnResult) -> WebTurnTask:
        async with self._lock:
            task = self._require(task_id)
            task.status = TaskStatus.DONE
            future = self._remove(task_id)
        if not future.done():
            future.set_result(result)
        slog.info("bridge_task_done", task_id=task_id, provider=task.provider.value, length=len(result.text))
        return task

    async def resolve_error(self, task_id: str, code: ErrorCode, message: str) -> WebTurnTask:
        async with self._lock:
            task = self._require(task_id)
            task.status = TaskStatus.ERROR
            future = self._remove(task_id)
        if not future.done():
            future.set_exception(WebTurnError(code, message))
        slog.warning("bridge_task_error", task_id=task_id, provider=task.provider.value, code=code.value)
        return task

    async def withdraw(self, task_id: str, *, only_if_pending: bool = False) -> bool:
        """Remove a task before it resolves.

        With only_if_pending the removal is a CAS pending -> withdrawn and
        returns False when a context has already claimed the task.
        """
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return False
            if only_if_pending and task.status is not TaskStatus.PENDING:
                return False
            task.status = TaskStatus.WITHDRAWN
            future = self._remove(task_id)
        if not future.done():
            future.cancel()
        slog.info("bridge_task_withdrawn", task_id=task_id, provider=task.provider.value)
        return True

    def add_stage_listener(self, task_id: str, listener: StageListener) -> None:
        self._listeners.setdefault(task_id, []).append(listener)

    def get(self, task_id: str) -> WebTurnTask | None:
        return self._tasks.get(task_id)

    def counts(self) -> dict[str, int]:
        pending = sum(1 for t in self._tasks.values() if t.status is TaskStatus.PENDING)
        return {"pending": pending, "claimed": len(self._tasks) - pending}

    def status(self) -> dict[str, Any]:
        """Per-provider client presence and queue sizes."""
        providers: dict[str, Any] = {}
        for provider in Provider:
            seen = self._last_seen.get(provider)
            queued = [t for t in self._tasks.values() if t.provider is provider]
            providers[provider.value] = {
                "connected": seen is not None,
                "lastSeenAt": seen.isoformat() if seen else None,
                "pageUrl": self._last_page_url.get(provider),
                "queued": len(queued),
                "activeTaskId": queued[0].task_id if queued else None,
                "activeStatus": queued[0].status.value if queued else None,
            }
        return {"providers": providers, **self.counts()}

    def _require(self, task_id: str) -> WebTurnTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise UnknownTaskError(task_id)
        return task

    def _remove(self, task_id: str) -> asyncio.Future[WebTurnResult]:
        self._tasks.pop(task_id)
        self._listeners.pop(task_id, None)
        return self._futures.pop(task_id)

    def _emit(self, event: StageEvent) -> None:
        for listener in list(self._listeners.get(event.task_id, [])):
            listener(event)
