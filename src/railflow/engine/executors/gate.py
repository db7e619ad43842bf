# src/railflow/engine/executors/gate.py
"""Gate nodes: two-way PASS/REJECT routing.

Decision order:
1. predicate expression, when configured (truthy -> PASS)
2. value at decision_path (DECISION and decision fall back to each other)
3. inferred from the input text: a "DECISION": "..." pair, then whole-word
   REJECT, then whole-word PASS
4. PASS when the gate is lenient

PASS enables pass_node_id (default: first child), REJECT enables
reject_node_id (default: second child). Every other child is routed away
and the scheduler marks it skipped.
"""

from __future__ import annotations

import re
from typing import Any

import structlog

from railflow.contracts.enums import GateDecision, NodeStatus
from railflow.core.dag.models import GateNodeSpec
from railflow.engine.executors.types import NodeContext, NodeExecutionError, NodeResult
from railflow.engine.outputs import get_by_path, stringify
from railflow.engine.predicate import (
    GatePredicate,
    PredicateEvaluationError,
    PredicateSecurityError,
    PredicateSyntaxError,
)
from railflow.engine.schema import schema_errors

slog = structlog.get_logger(__name__)

_JSON_DECISION = re.compile(r'"DECISION"\s*:\s*"(PASS|REJECT)"')
_REJECT_WORD = re.compile(r"\bREJECT\b")
_PASS_WORD = re.compile(r"\bPASS\b")

_DECISION_PATH_FALLBACKS = {"DECISION": "decision", "decision": "DECISION"}


class GateExecutor:
    """Executes gate nodes."""

    async def execute(self, spec: GateNodeSpec, ctx: NodeContext) -> NodeResult:
        schema_note = self._check_schema(spec, ctx)
        decision, decision_note = self._decide(spec, ctx)

        target = self._target(spec, ctx.children, decision)
        allowed = {target} if target else set()
        routed_away = frozenset(child for child in ctx.children if child not in allowed)

        notes = [note for note in (schema_note, decision_note) if note]
        message = f"decision={decision.value}, next={target or 'none'}"
        if notes:
            message = f"{message} (fallback applied)"
        slog.debug("gate_decided", node_id=ctx.node_id, decision=decision.value, routed_away=sorted(routed_away))
        return NodeResult(
            status=NodeStatus.DONE,
            output={
                "decision": decision.value,
                "fallback": {"schema": schema_note, "decision": decision_note},
            },
            message=message,
            routed_away=routed_away,
            data_issues=tuple(notes),
        )

    @staticmethod
    def _check_schema(spec: GateNodeSpec, ctx: NodeContext) -> str | None:
        if not spec.input_schema:
            return None
        errors = schema_errors(spec.input_schema, ctx.input_value)
        if not errors:
            return None
        if not spec.lenient:
            raise NodeExecutionError(f"input schema validation failed: {'; '.join(errors)}")
        note = f"input schema relaxed ({'; '.join(errors)})"
        ctx.log(f"[gate] {note}")
        return note

    def _decide(self, spec: GateNodeSpec, ctx: NodeContext) -> tuple[GateDecision, str | None]:
        if spec.predicate:
            try:
                matched = GatePredicate(spec.predicate).evaluate(ctx.input_value, ctx.inputs)
            except (PredicateSyntaxError, PredicateSecurityError, PredicateEvaluationError) as e:
                raise NodeExecutionError(f"gate predicate {spec.predicate!r} failed: {e}") from e
            return (GateDecision.PASS if matched else GateDecision.REJECT), None

        raw = self._decision_value(ctx.input_value, spec.decision_path)
        normalized = str(raw if raw is not None else "").strip().upper()
        if normalized in GateDecision.__members__:
            return GateDecision(normalized), None

        inferred = self._infer(ctx.input_value, lenient=spec.lenient)
        if inferred is None:
            raise NodeExecutionError(f"gate decision must be PASS or REJECT, got {raw!r}")
        decision, note = inferred
        ctx.log(f"[gate] {note}")
        return decision, note

    @staticmethod
    def _decision_value(input_value: Any, path: str) -> Any:
        value = get_by_path(input_value, path)
        if value is None and path in _DECISION_PATH_FALLBACKS:
            value = get_by_path(input_value, _DECISION_PATH_FALLBACKS[path])
        return value

    @staticmethod
    def _infer(input_value: Any, *, lenient: bool) -> tuple[GateDecision, str] | None:
        text = stringify(input_value).upper()
        match = _JSON_DECISION.search(text)
        if match:
            return GateDecision(match.group(1)), f"DECISION={match.group(1)} inferred from JSON text"
        if _REJECT_WORD.search(text):
            return GateDecision.REJECT, "REJECT inferred from keyword"
        if _PASS_WORD.search(text):
            return GateDecision.PASS, "PASS inferred from keyword"
        if lenient:
            return GateDecision.PASS, "no DECISION found, defaulted to PASS"
        return None

    @staticmethod
    def _target(spec: GateNodeSpec, children: tuple[str, ...], decision: GateDecision) -> str | None:
        match decision:
            case GateDecision.PASS:
                return spec.pass_node_id or (children[0] if children else None)
            case GateDecision.REJECT:
                return spec.reject_node_id or (children[1] if len(children) > 1 else None)
