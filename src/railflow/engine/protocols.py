# src/railflow/engine/protocols.py
"""Interfaces the engine calls but does not implement.

The local model engine is an external process; Railflow only sees it
through these protocols. Tests supply fakes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, runtime_checkable

type AuthProbeState = Literal["authenticated", "login_required", "unknown"]


@dataclass(frozen=True, slots=True)
class TurnOutcome:
    """Result of one local turn.

    raw is the engine's structured output if it produced one; usage holds
    token counts keyed by kind (input_tokens, output_tokens, ...).
    """

    text: str
    raw: Any = None
    usage: dict[str, int] = field(default_factory=dict)
    artifact: dict[str, Any] | None = None


@runtime_checkable
class TurnExecutor(Protocol):
    async def execute_turn(self, *, node_id: str, model: str | None, role: str | None, prompt: str) -> TurnOutcome:
        """Run one prompt on the local engine.

        Raises any exception on failure; the node processor records it.
        """
        ...


@runtime_checkable
class AuthProbe(Protocol):
    async def probe(self) -> AuthProbeState:
        """Current login state of the local engine."""
        ...
