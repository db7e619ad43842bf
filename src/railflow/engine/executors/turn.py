# src/railflow/engine/executors/turn.py
"""Turn nodes: one prompt/response exchange with bounded schema retry.

The exchange itself goes to the local engine (a TurnExecutor) or, for
``executor: web/<provider>``, to a WebTurnRunner. When the node declares an
output schema, the validation target of each output is checked and the
turn is re-requested with a retry prompt until it validates or
max_schema_retries is used up. An output that never validates is kept and
the node ends low_quality.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from railflow.contracts.enums import NodeStatus
from railflow.contracts.errors import ConfigurationError
from railflow.contracts.records import utc_now
from railflow.core.dag.models import TurnNodeSpec
from railflow.engine.auth import AuthGate
from railflow.engine.executors.types import NodeContext, NodeResult
from railflow.engine.executors.web_turn import WebTurnRunner
from railflow.engine.outputs import extract_text, extract_validation_target, parse_json_text
from railflow.engine.prompts import build_schema_retry_prompt, build_turn_prompt
from railflow.engine.protocols import TurnExecutor
from railflow.engine.retry import execute_until_accepted
from railflow.engine.schema import schema_errors


@dataclass
class _Attempt:
    output: Any
    errors: list[str] = field(default_factory=list)


class TurnNodeExecutor:
    """Executes turn nodes against the local engine or a web provider.

    Either backend may be absent. The scheduler calls require_backend() for
    every turn node before a run starts, so a missing backend aborts the run
    instead of failing nodes one by one.
    """

    def __init__(
        self,
        *,
        local: TurnExecutor | None = None,
        web: WebTurnRunner | None = None,
        auth_gate: AuthGate | None = None,
    ) -> None:
        self._local = local
        self._web = web
        self._auth_gate = auth_gate

    async def execute(self, spec: TurnNodeSpec, ctx: NodeContext) -> NodeResult:
        prompt = build_turn_prompt(
            spec.prompt_template,
            ctx.input_value,
            output_schema=spec.output_schema,
            is_final=ctx.is_final,
        )
        if spec.output_schema:
            ctx.log("[schema] output schema contract added to the prompt")
        usage: Counter[str] = Counter()
        schema = spec.output_schema

        last: _Attempt | None = None

        async def operation(number: int) -> _Attempt:
            nonlocal last
            if last is None:
                text = prompt
            else:
                assert schema is not None
                ctx.log(f"[schema] retry {number - 1}/{spec.max_schema_retries}: {len(last.errors)} error(s)")
                text = build_schema_retry_prompt(ctx.input_value, last.output, schema, last.errors)
            output, turn_usage = await self._exchange(spec, ctx, text)
            usage.update(turn_usage)
            errors = schema_errors(schema, self._validation_target(spec, output)) if schema else []
            last = _Attempt(output=output, errors=errors)
            return last

        final = await execute_until_accepted(
            operation,
            accept=lambda result: not result.errors,
            max_attempts=(spec.max_schema_retries + 1) if schema else 1,
        )

        if final.errors:
            ctx.log(f"[schema] output still invalid after retries: {'; '.join(final.errors)}")
            return NodeResult(
                status=NodeStatus.LOW_QUALITY,
                output=final.output,
                message="output did not satisfy the schema",
                data_issues=tuple(final.errors),
                usage=dict(usage),
            )
        return NodeResult(status=NodeStatus.DONE, output=final.output, message="turn completed", usage=dict(usage))

    def require_backend(self, spec: TurnNodeSpec) -> None:
        """Raises ConfigurationError when the backend spec needs is not configured."""
        if spec.web_provider is not None and self._web is None:
            raise ConfigurationError(f"node '{spec.id}' uses {spec.executor} but no web bridge is configured")
        if spec.web_provider is None and self._local is None:
            raise ConfigurationError(f"node '{spec.id}' is a local turn but no local engine is configured")

    async def _exchange(self, spec: TurnNodeSpec, ctx: NodeContext, prompt: str) -> tuple[Any, dict[str, int]]:
        self.require_backend(spec)
        provider = spec.web_provider
        if provider is not None:
            assert self._web is not None
            output = await self._web.run(provider, prompt, timeout_ms=spec.timeout_ms, ctx=ctx)
            return output, {}

        assert self._local is not None
        if self._auth_gate is not None:
            await self._auth_gate.ensure_authenticated()
        try:
            outcome = await self._local.execute_turn(node_id=spec.id, model=spec.model, role=spec.role, prompt=prompt)
        except Exception as e:
            if self._auth_gate is not None:
                self._auth_gate.record_failure(e)
            raise

        output: dict[str, Any] = {
            "provider": "local",
            "model": spec.model,
            "timestamp": utc_now().isoformat(),
            "text": outcome.text,
            "raw": outcome.raw,
            "usage": dict(outcome.usage),
        }
        if outcome.artifact is not None:
            output["artifact"] = outcome.artifact
        return output, dict(outcome.usage)

    @staticmethod
    def _validation_target(spec: TurnNodeSpec, output: Any) -> Any:
        # Web raw payloads describe the page, not the answer
        if spec.web_provider is not None:
            text = extract_text(output) or ""
            try:
                return parse_json_text(text)
            except ValueError:
                return text
        return extract_validation_target(output)
