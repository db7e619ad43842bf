# src/railflow/engine/templates.py
"""Jinja2-based templating for transform nodes."""

from __future__ import annotations

import hashlib
from collections.abc import Mapping
from typing import Any

from jinja2 import StrictUndefined, TemplateSyntaxError, UndefinedError
from jinja2.exceptions import SecurityError
from jinja2.sandbox import SandboxedEnvironment


class TemplateError(Exception):
    """Error in template rendering (including sandbox violations)."""


def _sha256(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class NodeTemplate:
    """Sandboxed Jinja2 template over a node's input.

    Templates see three names:
        - {{ input }} - the node input as text (JSON for structured input)
        - {{ inputs.<parent_id> }} - raw outputs of active parents
        - {{ question }} - the run question

    Example:
        template = NodeTemplate("Summarize for {{ question }}:\\n{{ input }}")
        text = template.render(input_text, inputs={"research": {...}}, question="...")
    """

    def __init__(self, template_string: str) -> None:
        """Compile the template.

        Raises:
            TemplateError: If template syntax is invalid
        """
        self._template_string = template_string
        self._template_hash = _sha256(template_string)

        self._env = SandboxedEnvironment(
            undefined=StrictUndefined,  # Raise on undefined variables
            autoescape=False,  # Output is prompt text, not HTML
        )

        try:
            self._template = self._env.from_string(template_string)
        except TemplateSyntaxError as e:
            raise TemplateError(f"Invalid template syntax: {e}") from e

    @property
    def template_hash(self) -> str:
        """SHA-256 hash of the template string."""
        return self._template_hash

    def render(self, input_text: str, *, inputs: Mapping[str, Any] | None = None, question: str = "") -> str:
        """Render with the node input.

        Raises:
            TemplateError: If rendering fails (undefined variable, sandbox violation, etc.)
        """
        context: dict[str, Any] = {
            "input": input_text,
            "inputs": dict(inputs or {}),
            "question": question,
        }

        try:
            return self._template.render(**context)
        except UndefinedError as e:
            raise TemplateError(f"Undefined variable: {e}") from e
        except SecurityError as e:
            raise TemplateError(f"Sandbox violation: {e}") from e
        except Exception as e:
            raise TemplateError(f"Template rendering failed: {e}") from e
