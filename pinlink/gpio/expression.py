"""Sandboxed expression evaluator for rule conditions and conversion formulas.

Expressions are parsed with :mod:`ast` and interpreted node by node. Only
literals, names from the caller's bindings, arithmetic, comparisons and
boolean connectives are accepted. Attribute access, subscripts, calls and
every other construct are rejected before anything is evaluated, so an
expression can never reach process state outside its bindings.

JavaScript-style connectives (``&&``, ``||``, ``!``, ``===``, ``!==``) are
rewritten to their Python spelling first, outside string literals, so rules
written for the browser UI keep working. Integer results are capped at
``MAX_INT_BITS`` so nested powers cannot stall the event loop.
"""

from __future__ import annotations

import ast
import math
import operator
import re
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from loguru import logger

from pinlink.gpio.errors import EvaluationError

MAX_EXPRESSION_CHARS = 512
MAX_EXPONENT = 64
MAX_INT_BITS = 256

INVALID = "Invalid formula"

_CONSTANT_ALIASES: dict[str, Any] = {
    "true": True,
    "false": False,
    "null": None,
    "True": True,
    "False": False,
    "None": None,
}

_BINARY_OPERATORS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_COMPARE_OPERATORS: dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}

_JS_REWRITES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"==="), "=="),
    (re.compile(r"!=="), "!="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
)

_STRING_LITERAL = re.compile(r"""("(?:\\.|[^"\\])*"|'(?:\\.|[^'\\])*')""")


def normalize_expression(expression: str) -> str:
    """Rewrite JavaScript connectives outside string literals."""
    text = str(expression or "").strip()
    # split() keeps the captured literals at odd indexes
    parts = _STRING_LITERAL.split(text)
    for index in range(0, len(parts), 2):
        for pattern, replacement in _JS_REWRITES:
            parts[index] = pattern.sub(replacement, parts[index])
    return "".join(parts).strip()


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, complex)


class _Interpreter:
    """Walks a parsed expression tree against a fixed set of bindings."""

    def __init__(self, bindings: Mapping[str, Any]) -> None:
        self._bindings = bindings

    def run(self, node: ast.AST) -> Any:
        method = getattr(self, f"_eval_{type(node).__name__}", None)
        if method is None:
            raise EvaluationError(f"unsupported syntax: {type(node).__name__}")
        return method(node)

    def _eval_Expression(self, node: ast.Expression) -> Any:  # noqa: N802
        return self.run(node.body)

    def _eval_Constant(self, node: ast.Constant) -> Any:  # noqa: N802
        if node.value is None or isinstance(node.value, (bool, int, float, str)):
            return node.value
        raise EvaluationError(f"unsupported literal: {type(node.value).__name__}")

    def _eval_Name(self, node: ast.Name) -> Any:  # noqa: N802
        if node.id in self._bindings:
            return self._bindings[node.id]
        if node.id in _CONSTANT_ALIASES:
            return _CONSTANT_ALIASES[node.id]
        raise EvaluationError(f"unknown name: {node.id}")

    def _eval_UnaryOp(self, node: ast.UnaryOp) -> Any:  # noqa: N802
        operand = self.run(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        if not _is_number(operand):
            raise EvaluationError("unary arithmetic on non-number")
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
        raise EvaluationError(f"unsupported unary operator: {type(node.op).__name__}")

    def _eval_BinOp(self, node: ast.BinOp) -> Any:  # noqa: N802
        func = _BINARY_OPERATORS.get(type(node.op))
        if func is None:
            raise EvaluationError(f"unsupported operator: {type(node.op).__name__}")
        left = self.run(node.left)
        right = self.run(node.right)
        if not (_is_number(left) and _is_number(right)):
            raise EvaluationError("arithmetic on non-number")
        if isinstance(node.op, ast.Pow):
            if abs(right) > MAX_EXPONENT:
                raise EvaluationError("exponent too large")
            if isinstance(left, int) and isinstance(right, int) and right > 0:
                if (abs(left).bit_length() - 1) * right > MAX_INT_BITS:
                    raise EvaluationError("result too large")
        result = func(left, right)
        if isinstance(result, complex):
            raise EvaluationError("complex result")
        if isinstance(result, int) and result.bit_length() > MAX_INT_BITS:
            raise EvaluationError("result too large")
        return result

    def _eval_BoolOp(self, node: ast.BoolOp) -> Any:  # noqa: N802
        if isinstance(node.op, ast.And):
            value: Any = True
            for item in node.values:
                value = self.run(item)
                if not value:
                    return value
            return value
        value = False
        for item in node.values:
            value = self.run(item)
            if value:
                return value
        return value

    def _eval_Compare(self, node: ast.Compare) -> bool:  # noqa: N802
        left = self.run(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            func = _COMPARE_OPERATORS.get(type(op))
            if func is None:
                raise EvaluationError(f"unsupported comparison: {type(op).__name__}")
            right = self.run(comparator)
            try:
                ok = func(left, right)
            except TypeError as e:
                raise EvaluationError(f"cannot compare: {e}") from e
            if not ok:
                return False
            left = right
        return True

    def _eval_IfExp(self, node: ast.IfExp) -> Any:  # noqa: N802
        return self.run(node.body) if self.run(node.test) else self.run(node.orelse)


def compile_expression(expression: str) -> ast.Expression:
    """Parse `expression` into a tree, raising EvaluationError on bad input."""
    text = normalize_expression(expression)
    if not text:
        raise EvaluationError("empty expression")
    if len(text) > MAX_EXPRESSION_CHARS:
        raise EvaluationError(f"expression longer than {MAX_EXPRESSION_CHARS} characters")
    try:
        return ast.parse(text, mode="eval")
    except (SyntaxError, ValueError, RecursionError) as e:
        raise EvaluationError(f"syntax error: {e}") from e


@dataclass(slots=True)
class ExpressionEvaluator:
    """Fail-closed evaluator that remembers the most recent failure."""

    failures: int = 0
    last_error: str = ""

    def evaluate_value(self, expression: str, bindings: Mapping[str, Any] | None = None) -> Any:
        """Evaluate and return the raw result; raises EvaluationError."""
        tree = compile_expression(expression)
        try:
            return _Interpreter(dict(bindings or {})).run(tree)
        except EvaluationError:
            raise
        except (ArithmeticError, ValueError, TypeError, RecursionError) as e:
            raise EvaluationError(f"{type(e).__name__}: {e}") from e

    def evaluate(self, expression: str, bindings: Mapping[str, Any] | None = None) -> bool:
        """Evaluate as a condition. Any failure returns False."""
        try:
            return bool(self.evaluate_value(expression, bindings))
        except EvaluationError as e:
            self._record(expression, e)
            return False

    def evaluate_formula(self, expression: str, bindings: Mapping[str, Any] | None = None) -> Any:
        """Evaluate as a numeric formula; failure yields the INVALID sentinel."""
        try:
            value = self.evaluate_value(expression, bindings)
        except EvaluationError as e:
            self._record(expression, e)
            return INVALID
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return value

    def _record(self, expression: str, error: EvaluationError) -> None:
        self.failures += 1
        self.last_error = error.message
        logger.warning(f"Expression evaluation failed expr={expression!r}: {error.message}")


_default_evaluator = ExpressionEvaluator()


def evaluate(expression: str, bindings: Mapping[str, Any] | None = None) -> bool:
    return _default_evaluator.evaluate(expression, bindings)


def evaluate_formula(expression: str, bindings: Mapping[str, Any] | None = None) -> Any:
    return _default_evaluator.evaluate_formula(expression, bindings)
