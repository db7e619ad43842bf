# src/railflow/engine/executors/transform.py
"""Transform nodes: pure mappings over the resolved input.

pick   - value at a dotted path (missing paths give None)
merge  - a JSON object merged over a mapping input, else {input, merge}
template - sandboxed Jinja2 rendering, output {text}
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from railflow.contracts.enums import NodeStatus, TransformMode
from railflow.core.dag.models import TransformNodeSpec
from railflow.engine.executors.types import NodeContext, NodeExecutionError, NodeResult
from railflow.engine.outputs import get_by_path, stringify
from railflow.engine.templates import NodeTemplate, TemplateError


class TransformExecutor:
    """Executes transform nodes. Stateless; one instance serves a whole run."""

    async def execute(self, spec: TransformNodeSpec, ctx: NodeContext) -> NodeResult:
        match spec.mode:
            case TransformMode.PICK:
                output = get_by_path(ctx.input_value, spec.pick_path)
                message = f"pick {spec.pick_path or '<input>'}"
            case TransformMode.MERGE:
                output = self._merge(ctx.input_value, spec.merge_json)
                message = "merge"
            case TransformMode.TEMPLATE:
                output = {"text": self._render(spec.template, ctx)}
                message = "template rendered"
        return NodeResult(status=NodeStatus.DONE, output=output, message=message)

    @staticmethod
    def _merge(input_value: Any, merge_json: str) -> Any:
        try:
            merge_value = json.loads(merge_json or "{}")
        except json.JSONDecodeError as e:
            raise NodeExecutionError(f"merge JSON is invalid: {e}") from e

        if isinstance(input_value, Mapping) and isinstance(merge_value, Mapping):
            return {**input_value, **merge_value}
        return {"input": input_value, "merge": merge_value}

    @staticmethod
    def _render(template_string: str, ctx: NodeContext) -> str:
        try:
            template = NodeTemplate(template_string)
            return template.render(stringify(ctx.input_value), inputs=ctx.inputs, question=ctx.question)
        except TemplateError as e:
            raise NodeExecutionError(str(e)) from e
