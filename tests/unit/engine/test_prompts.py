# tests/unit/engine/test_prompts.py
"""Tests for turn prompt assembly and schema retry prompts."""

from railflow.engine.prompts import (
    FINAL_SYNTHESIS_DIRECTIVE,
    RETRY_CLIP_CHARS,
    build_schema_retry_prompt,
    build_turn_prompt,
    render_turn_template,
)

SCHEMA = {"type": "object", "required": ["answer"]}


class TestRenderTemplate:
    def test_every_placeholder_replaced(self) -> None:
        assert render_turn_template("{{input}} / {{input}}", "x") == "x / x"

    def test_missing_placeholder_appends_input(self) -> None:
        assert render_turn_template("Review this:", "draft") == "Review this:\ndraft"

    def test_missing_placeholder_with_empty_input(self) -> None:
        assert render_turn_template("Review this:", None) == "Review this:"

    def test_structured_input_is_json(self) -> None:
        assert render_turn_template("{{input}}", {"a": 1}) == '{\n  "a": 1\n}'


class TestBuildTurnPrompt:
    def test_plain_prompt(self) -> None:
        assert build_turn_prompt("  Ask: {{input}}  ", "why") == "Ask: why"

    def test_final_directive_precedes_schema_contract(self) -> None:
        prompt = build_turn_prompt("{{input}}", "why", output_schema=SCHEMA, is_final=True)

        assert prompt.index(FINAL_SYNTHESIS_DIRECTIVE) < prompt.index("[OUTPUT SCHEMA CONTRACT]")
        assert prompt.endswith("[/OUTPUT SCHEMA CONTRACT]")


class TestSchemaRetryPrompt:
    def test_sections_in_order(self) -> None:
        prompt = build_schema_retry_prompt("input text", {"text": "bad"}, SCHEMA, ["first", "second"])

        sections = ["[ORIGINAL INPUT]", "[PREVIOUS OUTPUT]", "[OUTPUT SCHEMA (JSON)]", "[SCHEMA ERRORS]", "[INSTRUCTION]"]
        positions = [prompt.index(section) for section in sections]
        assert positions == sorted(positions)
        assert "1. first\n2. second" in prompt

    def test_long_previous_output_is_clipped(self) -> None:
        prompt = build_schema_retry_prompt("in", "y" * (RETRY_CLIP_CHARS + 50), SCHEMA, ["e"])

        assert "y" * RETRY_CLIP_CHARS + "\n...(truncated)" in prompt
        assert "y" * (RETRY_CLIP_CHARS + 1) not in prompt

    def test_empty_previous_output(self) -> None:
        prompt = build_schema_retry_prompt("in", None, SCHEMA, ["e"])

        assert "[PREVIOUS OUTPUT]\n\n(none)" in prompt
