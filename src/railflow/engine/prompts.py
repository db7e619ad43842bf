# src/railflow/engine/prompts.py
"""Prompt assembly for turn nodes.

A turn prompt is the node's template with the input substituted, followed
by optional directive blocks: the output schema contract when the node
declares an output schema, and the final synthesis directive when the node
has no children.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import Any

from railflow.engine.outputs import extract_validation_target, stringify

INPUT_PLACEHOLDER = "{{input}}"
RETRY_CLIP_CHARS = 2800

FINAL_SYNTHESIS_DIRECTIVE = "\n".join(
    [
        "[FINAL ANSWER]",
        "This is the last step of the workflow. Write the complete final answer to the original question",
        "using the material above. Resolve disagreements between sources explicitly, keep facts that are",
        "supported, and say plainly what remains uncertain. Do not describe the workflow itself.",
        "[/FINAL ANSWER]",
    ]
)


def render_turn_template(template: str, input_value: Any) -> str:
    """Substitute the input into a turn template.

    Every literal {{input}} is replaced; a template without the placeholder
    gets the input appended on a new line.
    """
    input_text = stringify(input_value)
    if INPUT_PLACEHOLDER in template:
        return template.replace(INPUT_PLACEHOLDER, input_text)
    return f"{template}\n{input_text}" if input_text else template


def output_schema_directive(schema: Mapping[str, Any]) -> str:
    return "\n".join(
        [
            "[OUTPUT SCHEMA CONTRACT]",
            "Output only a result that satisfies the JSON schema below.",
            "No introduction, explanation or closing remarks: only the structure the schema describes.",
            "```json",
            json.dumps(schema, indent=2, ensure_ascii=False),
            "```",
            "[/OUTPUT SCHEMA CONTRACT]",
        ]
    )


def build_turn_prompt(
    template: str,
    input_value: Any,
    *,
    output_schema: Mapping[str, Any] | None = None,
    is_final: bool = False,
) -> str:
    prompt = render_turn_template(template, input_value).strip()
    if is_final:
        prompt = f"{prompt}\n\n{FINAL_SYNTHESIS_DIRECTIVE}"
    if output_schema:
        prompt = f"{prompt}\n\n{output_schema_directive(output_schema)}"
    return prompt


def _clip(value: Any, max_chars: int = RETRY_CLIP_CHARS) -> str:
    text = stringify(value).strip()
    if not text:
        return "(none)"
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}\n...(truncated)"


def build_schema_retry_prompt(
    original_input: Any,
    previous_output: Any,
    schema: Mapping[str, Any],
    errors: Sequence[str],
) -> str:
    """Re-request prompt after an output failed schema validation."""
    return "\n\n".join(
        [
            "[ORIGINAL INPUT]",
            _clip(original_input),
            "[PREVIOUS OUTPUT]",
            _clip(extract_validation_target(previous_output)),
            "[OUTPUT SCHEMA (JSON)]",
            json.dumps(schema, indent=2, ensure_ascii=False),
            "[SCHEMA ERRORS]",
            "\n".join(f"{index}. {error}" for index, error in enumerate(errors, start=1)),
            "[INSTRUCTION]",
            "Produce the result again so that it strictly satisfies the schema above. "
            "Output only the structure the schema describes, without any explanation.",
        ]
    )
