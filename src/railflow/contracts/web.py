"""Web turn task contracts shared by the bridge mailbox, worker client and node processor.

Wire payloads use camelCase keys because the browser-side clients are
JavaScript; Python attributes stay snake_case.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from railflow.contracts.enums import Provider, TaskStatus
from railflow.contracts.records import utc_now


@dataclass(slots=True)
class WebTurnTask:
    """One pending web turn in the bridge mailbox.

    status is only changed by the mailbox, under its lock.
    """

    task_id: str
    provider: Provider
    prompt: str
    timeout_ms: int
    node_id: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = field(default_factory=utc_now)
    claimed_at: datetime | None = None
    page_url: str | None = None
    last_detail: str = ""

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.task_id,
            "provider": self.provider.value,
            "prompt": self.prompt,
            "timeoutMs": self.timeout_ms,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class StageEvent:
    """Progress report posted by whichever context claimed a task."""

    task_id: str
    stage: TaskStatus
    detail: str = ""
    page_url: str | None = None
    at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class WebTurnResult:
    """Successful answer scraped from a provider page."""

    provider: Provider
    text: str
    raw: Any = None
    meta: dict[str, Any] = field(default_factory=dict)
    via: str = "bridge"  # "bridge" or "worker"
