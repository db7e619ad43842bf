# src/railflow/engine/predicate.py
"""Safe predicate evaluation for gate nodes.

Uses Python's ast module to parse a restricted expression once, then
evaluates it against a gate's resolved inputs. This is NOT eval(): only
whitelisted node types survive validation.

Names available to an expression:
- input:  the gate's resolved input (question, parent output, or mapping of
          parent id to output when the gate has several parents)
- inputs: always the mapping of parent id to output

Example:
    predicate = GatePredicate("input.get('score', 0) >= 0.8 and 'error' not in lower(input['text'])")
    predicate.evaluate(input_value, {"review": input_value})
"""

from __future__ import annotations

import ast
import operator
from collections.abc import Callable, Mapping
from typing import Any


class PredicateSecurityError(Exception):
    """Raised when a predicate contains forbidden constructs."""


class PredicateSyntaxError(Exception):
    """Raised when a predicate is not valid Python expression syntax."""


class PredicateEvaluationError(Exception):
    """Raised when a valid predicate fails against actual inputs.

    The original exception (KeyError, TypeError, ...) is chained via __cause__.
    """


_DATA_NAMES = frozenset({"input", "inputs"})
_LITERAL_NAMES: dict[str, Any] = {"True": True, "False": False, "None": None}

_COMPARISON_OPS: dict[type[ast.cmpop], Callable[[Any, Any], Any]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_BINARY_OPS: dict[type[ast.operator], Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
}

_UNARY_OPS: dict[type[ast.unaryop], Callable[[Any], Any]] = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

# Text helpers are the only callable names; they never touch the filesystem or globals.
_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "lower": lambda value: str(value).lower(),
    "upper": lambda value: str(value).upper(),
}


class _PredicateValidator(ast.NodeVisitor):
    """Collects every forbidden construct rather than stopping at the first."""

    def __init__(self) -> None:
        self.errors: list[str] = []

    def generic_visit(self, node: ast.AST) -> None:
        allowed = (
            ast.Expression,
            ast.Load,
            ast.cmpop,
            ast.operator,
            ast.unaryop,
            ast.boolop,
            ast.List,
            ast.Tuple,
            ast.Set,
            ast.IfExp,
            ast.BoolOp,
        )
        if not isinstance(node, allowed):
            self.errors.append(f"Forbidden construct: {type(node).__name__}")
            return
        super().generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id not in _DATA_NAMES and node.id not in _LITERAL_NAMES and node.id not in _FUNCTIONS:
            self.errors.append(f"Forbidden name: {node.id!r}")

    def visit_Constant(self, node: ast.Constant) -> None:
        if node.value is not None and not isinstance(node.value, str | int | float | bool):
            self.errors.append(f"Forbidden constant type: {type(node.value).__name__}")

    def visit_Subscript(self, node: ast.Subscript) -> None:
        if isinstance(node.slice, ast.Slice):
            self.errors.append("Slice syntax is forbidden")
            return
        self.visit(node.value)
        self.visit(node.slice)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        # Only reachable as a bare attribute; x.get(...) is handled in visit_Call
        self.errors.append(f"Forbidden attribute access: {node.attr!r}")

    def visit_Call(self, node: ast.Call) -> None:
        if node.keywords:
            self.errors.append("Keyword arguments are forbidden")
        if isinstance(node.func, ast.Name) and node.func.id in _FUNCTIONS:
            if len(node.args) != 1:
                self.errors.append(f"{node.func.id}() takes exactly one argument")
        elif isinstance(node.func, ast.Attribute) and node.func.attr == "get":
            if not 1 <= len(node.args) <= 2:
                self.errors.append(f".get() requires 1 or 2 arguments, got {len(node.args)}")
            self.visit(node.func.value)
        else:
            self.errors.append(f"Forbidden function call: {ast.unparse(node.func)}")
            return
        for arg in node.args:
            self.visit(arg)

    def visit_Compare(self, node: ast.Compare) -> None:
        operands = [node.left, *node.comparators]
        for i, op in enumerate(node.ops):
            if isinstance(op, ast.Is | ast.IsNot):
                pair = (operands[i], operands[i + 1])
                if not any(isinstance(o, ast.Constant) and o.value is None for o in pair):
                    self.errors.append("'is' and 'is not' are only allowed for None checks")
        for operand in operands:
            self.visit(operand)

    def visit_BinOp(self, node: ast.BinOp) -> None:
        if type(node.op) not in _BINARY_OPS:
            self.errors.append(f"Forbidden binary operator: {type(node.op).__name__}")
        self.visit(node.left)
        self.visit(node.right)

    def visit_UnaryOp(self, node: ast.UnaryOp) -> None:
        if type(node.op) not in _UNARY_OPS:
            self.errors.append(f"Forbidden unary operator: {type(node.op).__name__}")
        self.visit(node.operand)


class _PredicateEvaluator(ast.NodeVisitor):
    def __init__(self, names: Mapping[str, Any]) -> None:
        self._names = names

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in self._names:
            return self._names[node.id]
        if node.id in _LITERAL_NAMES:
            return _LITERAL_NAMES[node.id]
        raise PredicateSecurityError(f"Unknown name: {node.id}")

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        value = self.visit(node.value)
        key = self.visit(node.slice)
        try:
            return value[key]
        except KeyError as e:
            available = sorted(map(str, value.keys())) if isinstance(value, Mapping) else []
            raise PredicateEvaluationError(f"Key {key!r} not found. Available keys: {available}") from e
        except IndexError as e:
            raise PredicateEvaluationError(f"Index {key} out of range for {type(value).__name__}") from e
        except TypeError as e:
            raise PredicateEvaluationError(f"Cannot access {key!r} on {type(value).__name__}: {e}") from e

    def visit_Call(self, node: ast.Call) -> Any:
        args = [self.visit(arg) for arg in node.args]
        if isinstance(node.func, ast.Name):
            func = _FUNCTIONS[node.func.id]
        else:
            assert isinstance(node.func, ast.Attribute)  # validated: only .get survives
            target = self.visit(node.func.value)
            if not isinstance(target, Mapping):
                raise PredicateEvaluationError(f".get() called on {type(target).__name__}, expected a mapping")
            func = target.get
        try:
            return func(*args)
        except (TypeError, ValueError) as e:
            raise PredicateEvaluationError(f"{ast.unparse(node.func)}() failed: {e}") from e

    def visit_Compare(self, node: ast.Compare) -> Any:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators, strict=True):
            right = self.visit(comparator)
            try:
                if not _COMPARISON_OPS[type(op)](left, right):
                    return False
            except TypeError as e:
                raise PredicateEvaluationError(
                    f"cannot compare {type(left).__name__} and {type(right).__name__} with {type(op).__name__}"
                ) from e
            left = right
        return True

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        result: Any = None
        for value in node.values:
            result = self.visit(value)
            if isinstance(node.op, ast.And) and not result:
                return result
            if isinstance(node.op, ast.Or) and result:
                return result
        return result

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        left = self.visit(node.left)
        right = self.visit(node.right)
        try:
            return _BINARY_OPS[type(node.op)](left, right)
        except (ZeroDivisionError, TypeError) as e:
            raise PredicateEvaluationError(f"{type(node.op).__name__} failed: {e}") from e

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        try:
            return _UNARY_OPS[type(node.op)](operand)
        except TypeError as e:
            raise PredicateEvaluationError(f"unary {type(node.op).__name__} failed: {e}") from e

    def visit_List(self, node: ast.List) -> Any:
        return [self.visit(elt) for elt in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> Any:
        return tuple(self.visit(elt) for elt in node.elts)

    def visit_Set(self, node: ast.Set) -> Any:
        try:
            return {self.visit(elt) for elt in node.elts}
        except TypeError as e:
            raise PredicateEvaluationError(f"cannot create set literal: {e}") from e

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)


class GatePredicate:
    """A validated gate predicate.

    Raises PredicateSyntaxError or PredicateSecurityError at construction;
    evaluate() raises PredicateEvaluationError.
    """

    def __init__(self, expression: str) -> None:
        self._expression = expression
        try:
            self._ast = ast.parse(expression.strip(), mode="eval")
        except SyntaxError as e:
            raise PredicateSyntaxError(f"Invalid syntax: {e.msg}") from e

        validator = _PredicateValidator()
        validator.visit(self._ast)
        if validator.errors:
            raise PredicateSecurityError("; ".join(validator.errors))

    @property
    def expression(self) -> str:
        return self._expression

    def evaluate(self, input_value: Any, inputs: Mapping[str, Any]) -> bool:
        result = _PredicateEvaluator({"input": input_value, "inputs": inputs}).visit(self._ast)
        return bool(result)

    def __repr__(self) -> str:
        return f"GatePredicate({self._expression!r})"
