# src/railflow/engine/executors/types.py
"""Shared types for executor modules."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from railflow.contracts.enums import NodeStatus
from railflow.contracts.errors import ErrorCode, ExecutionError


@dataclass(frozen=True)
class NodeContext:
    """Everything an executor may see about the node it runs.

    input_value is the resolved input: the question for a root, the single
    active parent's output, or {parent_id: output} over active parents.
    """

    run_id: str
    node_id: str
    question: str
    input_value: Any
    inputs: Mapping[str, Any]
    children: tuple[str, ...]
    log: Callable[[str], None]
    set_status: Callable[[NodeStatus, str], None]
    is_cancelled: Callable[[], bool]

    @property
    def is_final(self) -> bool:
        """Nodes without children produce the run's answer."""
        return not self.children


@dataclass(frozen=True)
class NodeResult:
    """What an executor produced.

    status is done or low_quality on success; executors raise on failure and
    the processor turns the exception into a failed result carrying error.
    The processor also returns queued (put back, the run is paused),
    skipped and cancelled results without running an executor.
    """

    status: NodeStatus
    output: Any = None
    message: str = ""
    routed_away: frozenset[str] = frozenset()
    data_issues: tuple[str, ...] = ()
    usage: dict[str, int] = field(default_factory=dict)
    error: ExecutionError | None = None


class NodeExecutionError(Exception):
    """Node-local failure with an optional typed code.

    Raised by executors for config and input problems that are not
    exceptions from a library call.
    """

    def __init__(self, message: str, *, code: ErrorCode | None = None) -> None:
        self.code = code
        super().__init__(message)
