# src/railflow/engine/executors/web_turn.py
"""One prompt/response exchange with a web provider.

The prompt is queued in the bridge mailbox and answered by whichever
browser context claims it. Stage reports become node log lines; a manual
send request puts the node into waiting_user. Stalls produce one soft
warning per stage. When nothing claims the task within claim_fallback_ms
and a headless worker client is configured, the task is withdrawn and the
worker runs the prompt instead.

Turns on the same provider are serialized through the mailbox's provider
slot, since a provider tab can only work on one prompt at a time.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from railflow.bridge.mailbox import TaskMailbox
from railflow.contracts.enums import NodeStatus, Provider, TaskStatus
from railflow.contracts.errors import ErrorCode, WebTurnError
from railflow.contracts.web import StageEvent, WebTurnResult, WebTurnTask
from railflow.core.config import WebTurnSettings
from railflow.engine.clock import DEFAULT_CLOCK, Clock
from railflow.engine.evidence import normalize_web_evidence
from railflow.engine.executors.types import NodeContext
from railflow.web.echo import is_prompt_echo

if TYPE_CHECKING:
    from railflow.web.client import WebWorkerClient

slog = structlog.get_logger(__name__)

T = TypeVar("T")

WATCH_INTERVAL_SECONDS = 0.25

_STAGE_LOG = {
    TaskStatus.CLAIMED: "browser context claimed the task",
    TaskStatus.PROMPT_FILLED: "prompt entered",
    TaskStatus.WAITING_USER_SEND: "waiting for the prompt to be sent in the browser",
    TaskStatus.RESPONDING: "response streaming",
}


class _StageWatcher:
    """Tracks the latest stage of one task and emits stall warnings."""

    def __init__(self, ctx: NodeContext, settings: WebTurnSettings, clock: Clock) -> None:
        self._ctx = ctx
        self._settings = settings
        self._clock = clock
        self.stage = TaskStatus.PENDING
        self._since = clock.monotonic()
        self._warned = False

    def on_stage(self, event: StageEvent) -> None:
        self.stage = event.stage
        self._since = self._clock.monotonic()
        self._warned = False
        line = _STAGE_LOG.get(event.stage, event.stage.value)
        self._ctx.log(f"[web] {line}{f': {event.detail}' if event.detail else ''}")
        if event.stage is TaskStatus.WAITING_USER_SEND:
            self._ctx.set_status(NodeStatus.WAITING_USER, "waiting for manual send")
        elif event.stage is TaskStatus.RESPONDING:
            self._ctx.set_status(NodeStatus.RUNNING, "response streaming")

    def check_stall(self) -> None:
        if self._warned:
            return
        elapsed_ms = (self._clock.monotonic() - self._since) * 1000
        match self.stage:
            case TaskStatus.PENDING if elapsed_ms >= self._settings.claim_warn_ms:
                message = "no browser context has claimed the task; open the provider tab with the extension"
            case TaskStatus.PROMPT_FILLED if elapsed_ms >= self._settings.prompt_filled_warn_ms:
                message = "prompt was entered but not sent; check the provider tab"
            case TaskStatus.WAITING_USER_SEND if elapsed_ms >= self._settings.waiting_user_stall_ms:
                message = "still waiting for the prompt to be sent in the browser"
            case _:
                return
        self._warned = True
        self._ctx.log(f"[web] warning: {message}")
        slog.warning("web_turn_stalled", node_id=self._ctx.node_id, stage=self.stage.value, elapsed_ms=int(elapsed_ms))


class WebTurnRunner:
    """Runs web turns through the bridge mailbox, with optional worker fallback.

    Example:
        runner = WebTurnRunner(mailbox, settings.web_turn, worker_client=client)
        output = await runner.run(Provider.GEMINI, prompt, timeout_ms=None, ctx=ctx)
    """

    def __init__(
        self,
        mailbox: TaskMailbox,
        settings: WebTurnSettings | None = None,
        *,
        worker_client: WebWorkerClient | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._mailbox = mailbox
        self._settings = settings or WebTurnSettings()
        self._worker = worker_client
        self._clock = clock or DEFAULT_CLOCK

    @property
    def mailbox(self) -> TaskMailbox:
        return self._mailbox

    async def run(self, provider: Provider, prompt: str, *, timeout_ms: int | None, ctx: NodeContext) -> dict[str, Any]:
        """Exchange one prompt and return the normalized web evidence payload.

        Raises:
            WebTurnError: TIMEOUT, CANCELLED, EXTRACTION_FAILED for an echoed
                prompt, or the code the browser side reported.
        """
        prompt = prompt.strip()
        if not prompt:
            raise WebTurnError(ErrorCode.INVALID_PROMPT, "prompt is empty")
        timeout = self._settings.clamp_timeout(timeout_ms) / 1000

        async with self._mailbox.provider_slot(provider):
            if ctx.is_cancelled():
                raise WebTurnError(ErrorCode.CANCELLED, "run cancelled")
            result = await self._exchange(provider, prompt, timeout, ctx)

        if not result.text.strip():
            raise WebTurnError(ErrorCode.EXTRACTION_FAILED, "provider returned an empty response")
        if is_prompt_echo(result.text, prompt):
            raise WebTurnError(ErrorCode.EXTRACTION_FAILED, "captured text is an echo of the prompt")
        ctx.log(f"[web] response received via {result.via} ({len(result.text)} chars)")
        return normalize_web_evidence(result, mode=result.via)

    async def _exchange(self, provider: Provider, prompt: str, timeout: float, ctx: NodeContext) -> WebTurnResult:
        started = self._clock.monotonic()
        deadline = started + timeout
        watcher = _StageWatcher(ctx, self._settings, self._clock)
        task, future = await self._mailbox.enqueue(
            provider, prompt, int(timeout * 1000), node_id=ctx.node_id, on_stage=watcher.on_stage
        )
        ctx.log(f"[web] task queued for {provider.value} (timeout {int(timeout)}s)")

        try:
            while True:
                if future.done():
                    return future.result()
                if ctx.is_cancelled():
                    raise WebTurnError(ErrorCode.CANCELLED, "run cancelled")
                now = self._clock.monotonic()
                if now >= deadline:
                    raise WebTurnError(ErrorCode.TIMEOUT, f"no response from {provider.value} within {int(timeout)}s")
                if self._should_fall_back(watcher, now - started) and await self._mailbox.withdraw(
                    task.task_id, only_if_pending=True
                ):
                    return await self._run_on_worker(task, deadline, ctx)
                watcher.check_stall()
                await self._wait_one_tick(future, deadline - now)
        finally:
            await self._mailbox.withdraw(task.task_id)

    def _should_fall_back(self, watcher: _StageWatcher, elapsed: float) -> bool:
        fallback_ms = self._settings.claim_fallback_ms
        return (
            self._worker is not None
            and fallback_ms is not None
            and watcher.stage is TaskStatus.PENDING
            and elapsed * 1000 >= fallback_ms
        )

    async def _wait_one_tick(self, awaitable: asyncio.Future[Any], remaining: float) -> None:
        """Sleep one watch interval, returning early when awaitable completes."""
        sleeper = asyncio.ensure_future(self._clock.sleep(min(WATCH_INTERVAL_SECONDS, max(remaining, 0.0))))
        try:
            await asyncio.wait({awaitable, sleeper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()

    async def _run_on_worker(self, task: WebTurnTask, deadline: float, ctx: NodeContext) -> WebTurnResult:
        assert self._worker is not None
        remaining_ms = max(1, int((deadline - self._clock.monotonic()) * 1000))
        ctx.log("[web] no browser context claimed the task; running on the headless worker")
        slog.info("web_turn_worker_fallback", node_id=ctx.node_id, provider=task.provider.value)

        def on_progress(stage: str, message: str) -> None:
            ctx.log(f"[worker] {stage}{f': {message}' if message else ''}")

        run = asyncio.ensure_future(
            self._worker.run(task.provider, task.prompt, timeout_ms=remaining_ms, on_progress=on_progress)
        )
        return await self._await_cancellable(run, task.provider, deadline, ctx)

    async def _await_cancellable(
        self, run: asyncio.Future[T], provider: Provider, deadline: float, ctx: NodeContext
    ) -> T:
        try:
            while not run.done():
                if ctx.is_cancelled():
                    await self._cancel_worker(provider)
                    raise WebTurnError(ErrorCode.CANCELLED, "run cancelled")
                remaining = deadline - self._clock.monotonic()
                if remaining <= 0:
                    await self._cancel_worker(provider)
                    raise WebTurnError(ErrorCode.TIMEOUT, "worker did not answer within the turn timeout")
                await self._wait_one_tick(run, remaining)
            return run.result()
        finally:
            if not run.done():
                run.cancel()

    async def _cancel_worker(self, provider: Provider) -> None:
        assert self._worker is not None
        try:
            await self._worker.cancel(provider)
        except WebTurnError as e:
            slog.warning("web_worker_cancel_failed", provider=provider.value, error=str(e))
