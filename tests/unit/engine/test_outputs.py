# tests/unit/engine/test_outputs.py
"""Tests for node output helpers."""

import pytest

from railflow.engine.outputs import (
    extract_final_answer,
    extract_text,
    extract_validation_target,
    get_by_path,
    parse_json_text,
    stringify,
)


class TestGetByPath:
    def test_nested_mapping(self) -> None:
        assert get_by_path({"a": {"b": {"c": 1}}}, "a.b.c") == 1

    def test_missing_returns_default(self) -> None:
        assert get_by_path({"a": 1}, "a.b", default="none") == "none"

    def test_blank_path_returns_value(self) -> None:
        value = {"a": 1}
        assert get_by_path(value, "  ") is value

    def test_lists_are_not_indexed(self) -> None:
        assert get_by_path({"items": [1, 2]}, "items.0") is None


class TestTextExtraction:
    def test_string_is_its_own_text(self) -> None:
        assert extract_text("answer") == "answer"

    def test_blank_string_has_no_text(self) -> None:
        assert extract_text("   ") is None

    def test_first_known_path_wins(self) -> None:
        assert extract_text({"result": "late", "text": "early"}) == "early"
        assert extract_text({"completion": {"text": "nested"}}) == "nested"
        assert extract_text({"finalDraft": "draft"}) == "draft"

    def test_final_answer_falls_back_to_json(self) -> None:
        assert extract_final_answer({"decision": "PASS"}) == '{\n  "decision": "PASS"\n}'

    def test_final_answer_of_none_is_empty(self) -> None:
        assert extract_final_answer(None) == ""

    def test_stringify(self) -> None:
        assert stringify(None) == ""
        assert stringify("x") == "x"
        assert stringify([1]) == "[\n  1\n]"


class TestParseJsonText:
    def test_whole_text(self) -> None:
        assert parse_json_text(' {"a": 1} ') == {"a": 1}

    def test_fenced_block(self) -> None:
        text = 'Here it is:\n```json\n{"a": [1, 2]}\n```\nDone.'
        assert parse_json_text(text) == {"a": [1, 2]}

    def test_outermost_object(self) -> None:
        assert parse_json_text('Result: {"a": {"b": 2}} as requested') == {"a": {"b": 2}}

    def test_no_json_raises(self) -> None:
        with pytest.raises(ValueError, match="no JSON"):
            parse_json_text("plain prose")


class TestValidationTarget:
    def test_artifact_payload_first(self) -> None:
        output = {"artifact": {"payload": {"x": 1}}, "raw": {"y": 2}, "text": '{"z": 3}'}
        assert extract_validation_target(output) == {"x": 1}

    def test_structured_raw_second(self) -> None:
        assert extract_validation_target({"raw": {"y": 2}, "text": '{"z": 3}'}) == {"y": 2}

    def test_json_text_third(self) -> None:
        assert extract_validation_target({"raw": None, "text": '{"z": 3}'}) == {"z": 3}

    def test_plain_text_is_returned_as_text(self) -> None:
        assert extract_validation_target({"text": "no json"}) == "no json"
