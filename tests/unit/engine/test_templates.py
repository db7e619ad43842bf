# tests/unit/engine/test_templates.py
"""Tests for sandboxed transform templates."""

import pytest

from railflow.engine.templates import NodeTemplate, TemplateError


class TestNodeTemplate:
    def test_renders_all_names(self) -> None:
        template = NodeTemplate("{{ question }} -> {{ input }} ({{ inputs.a.score }})")

        assert template.render("draft", inputs={"a": {"score": 3}}, question="why") == "why -> draft (3)"

    def test_no_autoescape(self) -> None:
        assert NodeTemplate("{{ input }}").render("<b>&</b>") == "<b>&</b>"

    def test_filters_and_loops(self) -> None:
        template = NodeTemplate("{% for k in inputs %}{{ k | upper }};{% endfor %}")

        assert template.render("", inputs={"a": 1, "b": 2}) == "A;B;"

    def test_hash_is_stable(self) -> None:
        assert NodeTemplate("x").template_hash == NodeTemplate("x").template_hash
        assert NodeTemplate("x").template_hash != NodeTemplate("y").template_hash

    def test_invalid_syntax(self) -> None:
        with pytest.raises(TemplateError, match="Invalid template syntax"):
            NodeTemplate("{% if %}")

    def test_undefined_variable(self) -> None:
        with pytest.raises(TemplateError, match="Undefined variable"):
            NodeTemplate("{{ missing }}").render("x")

    def test_sandbox_blocks_dunder_access(self) -> None:
        with pytest.raises(TemplateError):
            NodeTemplate("{{ input.__class__.__mro__ }}").render("x")
