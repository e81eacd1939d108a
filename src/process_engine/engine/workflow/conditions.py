"""Transition condition evaluation.

Two forms are supported:

* a structured :class:`TransitionCondition` (property, operator, value), and
* a small boolean expression in Python syntax, e.g. ``amount > 100 and
  customer.tier == "gold"``.

Expressions are parsed with :mod:`ast` and evaluated by walking a whitelist
of node types. Calls, imports, lambdas and comprehensions are rejected, so an
expression can only read the context it is given.
"""

from __future__ import annotations

import ast
import logging
import operator
from collections.abc import Mapping
from functools import lru_cache
from typing import Any

from .models import ConditionOperator, Transition, TransitionCondition

logger = logging.getLogger(__name__)

MISSING = object()


class ConditionError(ValueError):
    pass


def resolve_path(path: str, context: Mapping[str, Any]) -> Any:
    """Resolve ``a.b.0.c`` against nested mappings/sequences; missing → sentinel."""

    current: Any = context
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return MISSING
        else:
            return MISSING
    return current


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _coerce_pair(left: Any, right: Any) -> tuple[Any, Any]:
    # Designer values are often strings; compare numerically when both sides allow it.
    if isinstance(left, str) != isinstance(right, str):
        ln, rn = _as_number(left), _as_number(right)
        if ln is not None and rn is not None:
            return ln, rn
        if isinstance(left, bool) and isinstance(right, str):
            return left, right.strip().lower() == "true"
        if isinstance(right, bool) and isinstance(left, str):
            return left.strip().lower() == "true", right
    return left, right


_ORDERED = {
    ConditionOperator.GT: operator.gt,
    ConditionOperator.GE: operator.ge,
    ConditionOperator.LT: operator.lt,
    ConditionOperator.LE: operator.le,
}


def evaluate_condition(condition: TransitionCondition, context: Mapping[str, Any]) -> bool:
    actual = resolve_path(condition.prop_name, context)
    op = condition.operator

    if op == ConditionOperator.EXISTS:
        return actual is not MISSING and actual is not None
    if op == ConditionOperator.NOT_EXISTS:
        return actual is MISSING or actual is None
    if actual is MISSING:
        return False

    if op in (ConditionOperator.EQ, ConditionOperator.NE):
        left, right = _coerce_pair(actual, condition.value)
        equal = left == right
        return equal if op == ConditionOperator.EQ else not equal
    if op in _ORDERED:
        left, right = _coerce_pair(actual, condition.value)
        try:
            return bool(_ORDERED[op](left, right))
        except TypeError:
            return False
    if op == ConditionOperator.CONTAINS:
        try:
            return condition.value in actual
        except TypeError:
            return False
    if op == ConditionOperator.IN:
        try:
            return actual in condition.value
        except TypeError:
            return False
    raise ConditionError(f"Unsupported operator: {op}")


def _multiply(left: Any, right: Any) -> Any:
    # Sequence repetition can allocate without bound.
    if isinstance(left, (str, list, tuple)) or isinstance(right, (str, list, tuple)):
        raise ConditionError("Sequence repetition is not supported in expressions")
    return operator.mul(left, right)


_BIN_OPS: dict[type[ast.operator], Any] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: _multiply,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
}

_CMP_OPS: dict[type[ast.cmpop], Any] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_NAME_CONSTANTS = {"true": True, "false": False, "null": None, "none": None}


@lru_cache(maxsize=512)
def _parse(expression: str) -> ast.Expression:
    try:
        return ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise ConditionError(f"Invalid expression {expression!r}: {e.msg}") from e


def _eval(node: ast.AST, context: Mapping[str, Any]) -> Any:
    if isinstance(node, ast.Expression):
        return _eval(node.body, context)
    if isinstance(node, ast.Constant):
        return node.value
    if isinstance(node, ast.Name):
        if node.id in context:
            return context[node.id]
        return _NAME_CONSTANTS.get(node.id.lower())
    if isinstance(node, ast.Attribute):
        base = _eval(node.value, context)
        if isinstance(base, Mapping):
            return base.get(node.attr)
        return None
    if isinstance(node, ast.Subscript):
        base = _eval(node.value, context)
        key = _eval(node.slice, context)
        try:
            return base[key]
        except (KeyError, IndexError, TypeError):
            return None
    if isinstance(node, (ast.List, ast.Tuple)):
        return [_eval(e, context) for e in node.elts]
    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            return all(_eval(v, context) for v in node.values)
        return any(_eval(v, context) for v in node.values)
    if isinstance(node, ast.UnaryOp):
        operand = _eval(node.operand, context)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
    if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
        return _BIN_OPS[type(node.op)](_eval(node.left, context), _eval(node.right, context))
    if isinstance(node, ast.Compare):
        left = _eval(node.left, context)
        for op, comparator in zip(node.ops, node.comparators, strict=True):
            right = _eval(comparator, context)
            if type(op) not in _CMP_OPS:
                raise ConditionError(f"Unsupported comparison: {type(op).__name__}")
            a, b = _coerce_pair(left, right)
            if not _CMP_OPS[type(op)](a, b):
                return False
            left = right
        return True
    raise ConditionError(f"Unsupported expression element: {type(node).__name__}")


def evaluate_expression(expression: str, context: Mapping[str, Any]) -> bool:
    return bool(_eval(_parse(expression), context))


def transition_matches(transition: Transition, context: Mapping[str, Any]) -> bool:
    """True when every condition attached to the transition holds.

    A transition without conditions matches. Evaluation failures are logged
    and count as no match.
    """

    try:
        if transition.condition is not None and not evaluate_condition(
            transition.condition, context
        ):
            return False
        if transition.expression and transition.expression.strip():
            return evaluate_expression(transition.expression, context)
        return True
    except (ConditionError, TypeError, ArithmeticError, RecursionError) as e:
        logger.warning(
            "Transition condition evaluation failed",
            extra={"transition_id": transition.id, "error": str(e)},
        )
        return False
