# src/railflow/engine/schema.py
"""JSON Schema checks for turn outputs and gate inputs."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError


def schema_errors(schema: Mapping[str, Any], payload: Any) -> list[str]:
    """Validation problems of payload against schema, as readable strings.

    An invalid schema is reported as a single error rather than raised, so a
    bad node config fails (or degrades) that node only.
    """
    try:
        Draft202012Validator.check_schema(schema)
    except SchemaError as e:
        return [f"invalid schema: {e.message}"]
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(payload), key=lambda e: [str(part) for part in e.absolute_path])
    return [_format_error(e.absolute_path, e.message) for e in errors]


def _format_error(path: Any, message: str) -> str:
    location = ".".join(str(part) for part in path)
    return f"{location}: {message}" if location else message
