from __future__ import annotations

"""Built-in predicates and transforms, plus the whitelisted expression evaluator."""

import ast
import logging
from typing import Any, Dict, Optional

from nibble.engine.registry import predicate_registry, transform_registry

logger = logging.getLogger(__name__)

ALLOWED_NAMES = {"value", "expected", "True", "False", "None"}
ALLOWED_CALLS = {"get", "len", "min", "max", "sum", "str", "int", "float", "lower", "startswith"}


def _validate(node: ast.AST) -> bool:
    if isinstance(node, ast.Expression):
        return _validate(node.body)
    if isinstance(node, ast.BoolOp):
        return all(_validate(value) for value in node.values)
    if isinstance(node, ast.UnaryOp):
        return isinstance(node.op, (ast.Not, ast.USub)) and _validate(node.operand)
    if isinstance(node, ast.Compare):
        return _validate(node.left) and all(_validate(c) for c in node.comparators)
    if isinstance(node, ast.BinOp):
        return (
            isinstance(node.op, (ast.Add, ast.Sub, ast.Mult, ast.Div, ast.Mod))
            and _validate(node.left)
            and _validate(node.right)
        )
    if isinstance(node, ast.Name):
        return node.id in ALLOWED_NAMES or node.id in ALLOWED_CALLS
    if isinstance(node, ast.Constant):
        return True
    if isinstance(node, (ast.List, ast.Tuple)):
        return all(_validate(item) for item in node.elts)
    if isinstance(node, ast.Attribute):
        return not node.attr.startswith("_") and _validate(node.value)
    if isinstance(node, ast.Subscript):
        return _validate(node.value) and _validate(node.slice)
    if isinstance(node, ast.Call):
        if isinstance(node.func, ast.Attribute):
            if node.func.attr not in ALLOWED_CALLS:
                return False
            if not _validate(node.func.value):
                return False
        elif isinstance(node.func, ast.Name):
            if node.func.id not in ALLOWED_CALLS:
                return False
        else:
            return False
        return all(_validate(arg) for arg in node.args) and all(
            _validate(kw.value) for kw in node.keywords
        )
    return False


def is_safe_expression(expression: str) -> bool:
    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError:
        return False
    return _validate(tree)


def evaluate_expression(expression: str, value: Any, expected: Any = None) -> bool:
    """Evaluate `expression` against `value` using a minimal AST whitelist."""
    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as exc:
        logger.warning("Rejected predicate '%s': %s", expression, exc)
        return False

    if not _validate(tree):
        logger.warning("Rejected unsafe predicate: %s", expression)
        return False

    safe_globals: Dict[str, Any] = {"__builtins__": {}}
    safe_locals: Dict[str, Any] = {
        "value": value,
        "expected": expected,
        "True": True,
        "False": False,
        "None": None,
        "len": len,
        "min": min,
        "max": max,
        "sum": sum,
        "str": str,
        "int": int,
        "float": float,
    }
    try:
        return bool(eval(compile(tree, "<predicate>", "eval"), safe_globals, safe_locals))
    except Exception as exc:
        logger.warning("Failed to evaluate predicate '%s': %s", expression, exc)
        return False


def apply_predicate(
    predicate: Optional[str], expression: Optional[str], value: Any, expected: Any
) -> bool:
    if expression:
        return evaluate_expression(expression, value, expected)
    return bool(predicate_registry.call(predicate or "truthy", value, expected))


def _as_number(value: Any) -> float:
    return float(value)


# Predicates: (value, expected) -> bool -------------------------------------


@predicate_registry.register("truthy")
def truthy(value: Any, expected: Any = None) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("", "false", "0", "no")
    return bool(value)


@predicate_registry.register("falsy")
def falsy(value: Any, expected: Any = None) -> bool:
    return not truthy(value)


@predicate_registry.register("always")
def always(value: Any, expected: Any = None) -> bool:
    return True


@predicate_registry.register("never")
def never(value: Any, expected: Any = None) -> bool:
    return False


@predicate_registry.register("equals")
def equals(value: Any, expected: Any = None) -> bool:
    if value == expected:
        return True
    return str(value) == str(expected)


@predicate_registry.register("not_equals")
def not_equals(value: Any, expected: Any = None) -> bool:
    return not equals(value, expected)


@predicate_registry.register("greater_than")
def greater_than(value: Any, expected: Any = None) -> bool:
    try:
        return _as_number(value) > _as_number(expected)
    except (TypeError, ValueError):
        return False


@predicate_registry.register("less_than")
def less_than(value: Any, expected: Any = None) -> bool:
    try:
        return _as_number(value) < _as_number(expected)
    except (TypeError, ValueError):
        return False


@predicate_registry.register("contains")
def contains(value: Any, expected: Any = None) -> bool:
    try:
        return expected in value
    except TypeError:
        return False


# Transforms: value -> value ------------------------------------------------


@transform_registry.register("identity")
def identity(value: Any) -> Any:
    return value


@transform_registry.register("first")
def first(value: Any) -> Any:
    if isinstance(value, list):
        return value[0] if value else None
    return value
