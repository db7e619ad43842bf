# tests/unit/engine/test_predicate.py
"""Tests for safe gate predicates."""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from railflow.engine.predicate import (
    GatePredicate,
    PredicateEvaluationError,
    PredicateSecurityError,
    PredicateSyntaxError,
)


def evaluate(expression: str, input_value: object, inputs: dict[str, object] | None = None) -> bool:
    return GatePredicate(expression).evaluate(input_value, inputs or {})


class TestBasicOperations:
    """Comparisons, boolean logic and helpers."""

    def test_numeric_comparison(self) -> None:
        assert evaluate("input['score'] >= 0.85", {"score": 0.9}) is True
        assert evaluate("input['score'] >= 0.85", {"score": 0.8}) is False

    def test_chained_comparison(self) -> None:
        assert evaluate("0 < input['n'] < 10", {"n": 5}) is True
        assert evaluate("0 < input['n'] < 10", {"n": 10}) is False

    def test_boolean_operators(self) -> None:
        expression = "(input['a'] == 1 or input['b'] == 2) and not input['c']"
        assert evaluate(expression, {"a": 1, "b": 0, "c": False}) is True
        assert evaluate(expression, {"a": 0, "b": 2, "c": True}) is False

    def test_membership_on_text(self) -> None:
        assert evaluate("'approve' in lower(input)", "We APPROVE this") is True
        assert evaluate("'approve' not in lower(input)", "rejected") is True

    def test_text_helpers(self) -> None:
        assert evaluate("len(input) > 3", "four") is True
        assert evaluate("upper(input) == 'OK'", "ok") is True
        assert evaluate("int(input['n']) + 1 == 3", {"n": "2"}) is True
        assert evaluate("float(input) > 0.5", "0.75") is True
        assert evaluate("str(input['n']) == '7'", {"n": 7}) is True

    def test_get_with_default(self) -> None:
        assert evaluate("input.get('score', 0) >= 0.8", {}) is False
        assert evaluate("input.get('score') == None", {}) is True

    def test_none_checks(self) -> None:
        assert evaluate("input['x'] is None", {"x": None}) is True
        assert evaluate("input['x'] is not None", {"x": 1}) is True

    def test_inputs_mapping(self) -> None:
        assert evaluate("inputs['review']['ok']", None, {"review": {"ok": True}}) is True

    def test_literals_and_conditional(self) -> None:
        assert evaluate("input in ['a', 'b']", "b") is True
        assert evaluate("input in ('a',)", "b") is False
        assert evaluate("input in {'x', 'y'}", "x") is True
        assert evaluate("True if input else False", "") is False

    def test_arithmetic(self) -> None:
        assert evaluate("input['a'] * 2 - 1 == 5", {"a": 3}) is True
        assert evaluate("input['a'] % 2 == 1", {"a": 3}) is True
        assert evaluate("-input['a'] < 0", {"a": 3}) is True

    def test_expression_is_kept(self) -> None:
        predicate = GatePredicate("input == 1")
        assert predicate.expression == "input == 1"
        assert repr(predicate) == "GatePredicate('input == 1')"


class TestSecurity:
    """Forbidden constructs are rejected before evaluation."""

    @pytest.mark.parametrize(
        "expression",
        [
            "__import__('os')",
            "open('/etc/passwd')",
            "input.__class__",
            "input.keys()",
            "[x for x in input]",
            "lambda: 1",
            "input['a'][1:]",
            "globals",
            "input ** 2",
            "len(input, 2)",
            "input.get(key='a')",
            "input is input",
            "b'bytes'",
        ],
    )
    def test_forbidden(self, expression: str) -> None:
        with pytest.raises(PredicateSecurityError):
            GatePredicate(expression)

    def test_all_problems_reported(self) -> None:
        with pytest.raises(PredicateSecurityError) as excinfo:
            GatePredicate("secret == other")

        assert "'secret'" in str(excinfo.value)
        assert "'other'" in str(excinfo.value)

    def test_syntax_error(self) -> None:
        with pytest.raises(PredicateSyntaxError):
            GatePredicate("input ==")

    def test_statements_are_not_expressions(self) -> None:
        with pytest.raises(PredicateSyntaxError):
            GatePredicate("x = 1")


class TestEvaluationErrors:
    """Valid predicates that fail on actual inputs."""

    def test_missing_key_lists_available(self) -> None:
        with pytest.raises(PredicateEvaluationError, match=r"Available keys: \['a'\]"):
            evaluate("input['b']", {"a": 1})

    def test_get_on_non_mapping(self) -> None:
        with pytest.raises(PredicateEvaluationError, match="expected a mapping"):
            evaluate("input.get('a')", "text")

    def test_bad_comparison(self) -> None:
        with pytest.raises(PredicateEvaluationError, match="cannot compare"):
            evaluate("input > 1", "text")

    def test_division_by_zero(self) -> None:
        with pytest.raises(PredicateEvaluationError):
            evaluate("input / 0 > 1", 5)

    def test_bad_conversion(self) -> None:
        with pytest.raises(PredicateEvaluationError, match="int"):
            evaluate("int(input) > 1", "not a number")

    def test_index_out_of_range(self) -> None:
        with pytest.raises(PredicateEvaluationError, match="out of range"):
            evaluate("input[5] == 1", [1])


class TestProperties:
    @given(st.integers(), st.integers())
    def test_comparison_matches_python(self, left: int, right: int) -> None:
        assert evaluate("input['l'] < input['r']", {"l": left, "r": right}) is (left < right)

    @given(st.text(max_size=50))
    def test_length_helper_matches_len(self, text: str) -> None:
        assert evaluate(f"len(input) == {len(text)}", text) is True
