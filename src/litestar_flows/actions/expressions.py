"""Template interpolation and safe expression evaluation for actions.

Placeholders use ``{{dotted.path}}`` syntax and are resolved against the
instance context. Expressions are parsed with :mod:`ast` and only a small
whitelist of node types is evaluated, so no real attribute access, calls, or names
outside the context can ever run.
"""

from __future__ import annotations

import ast
import operator as op
import re
from collections.abc import Callable, Mapping
from typing import Any

from litestar_flows.core.context import MISSING, resolve_path
from litestar_flows.exceptions import ExpressionError

__all__ = ["evaluate_expression", "interpolate", "interpolate_data"]

_PLACEHOLDER = re.compile(r"\{\{\s*(.+?)\s*\}\}")
_WHOLE_PLACEHOLDER = re.compile(r"^\{\{\s*(.+?)\s*\}\}$")

_BINARY_OPS: dict[type[ast.operator], Callable[[Any, Any], Any]] = {
    ast.Add: op.add,
    ast.Sub: op.sub,
    ast.Mult: op.mul,
    ast.Div: op.truediv,
    ast.FloorDiv: op.floordiv,
    ast.Mod: op.mod,
}
_SEQUENCES = (str, bytes, list, tuple)
_UNARY_OPS: dict[type[ast.unaryop], Callable[[Any], Any]] = {
    ast.UAdd: op.pos,
    ast.USub: op.neg,
    ast.Not: op.not_,
}
_COMPARE_OPS: dict[type[ast.cmpop], Callable[[Any, Any], bool]] = {
    ast.Eq: op.eq,
    ast.NotEq: op.ne,
    ast.Lt: op.lt,
    ast.LtE: op.le,
    ast.Gt: op.gt,
    ast.GtE: op.ge,
    ast.In: lambda left, right: left in right,
    ast.NotIn: lambda left, right: left not in right,
}
_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "concat": lambda *parts: "".join(str(part) for part in parts),
    "upper": lambda value: str(value).upper(),
    "lower": lambda value: str(value).lower(),
    "trim": lambda value: str(value).strip(),
    "len": len,
    "round": round,
    "abs": abs,
    "min": min,
    "max": max,
}


def interpolate(template: str, context: Mapping[str, Any]) -> Any:
    """Replace ``{{path}}`` placeholders with context values.

    A template made of a single placeholder returns the raw value, keeping its
    type. Unresolved placeholders are left untouched.
    """
    whole = _WHOLE_PLACEHOLDER.match(template)
    if whole:
        value = resolve_path(context, whole.group(1))
        return template if value is MISSING else value

    def _replace(match: re.Match[str]) -> str:
        value = resolve_path(context, match.group(1))
        return match.group(0) if value is MISSING else str(value)

    return _PLACEHOLDER.sub(_replace, template)


def interpolate_data(data: Any, context: Mapping[str, Any]) -> Any:
    """Recursively interpolate every string inside dicts and lists."""
    if isinstance(data, str):
        return interpolate(data, context)
    if isinstance(data, Mapping):
        return {key: interpolate_data(value, context) for key, value in data.items()}
    if isinstance(data, (list, tuple)):
        return [interpolate_data(value, context) for value in data]
    return data


class _Evaluator:
    def __init__(self, context: Mapping[str, Any]) -> None:
        self.context = context

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"visit_{type(node).__name__}", None)
        if method is None:
            msg = f"Unsupported expression element: {type(node).__name__}"
            raise ExpressionError(msg)
        return method(node)

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in ("true", "True"):
            return True
        if node.id in ("false", "False"):
            return False
        if node.id in ("null", "None"):
            return None
        value = resolve_path(self.context, node.id)
        if value is MISSING:
            msg = f"Unknown name '{node.id}'"
            raise ExpressionError(msg)
        return value

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        # Dotted context paths only; never real attribute access.
        parts = [node.attr]
        current = node.value
        while isinstance(current, ast.Attribute):
            parts.append(current.attr)
            current = current.value
        if not isinstance(current, ast.Name):
            msg = "Attribute access is only allowed on context paths"
            raise ExpressionError(msg)
        parts.append(current.id)
        path = ".".join(reversed(parts))
        value = resolve_path(self.context, path)
        if value is MISSING:
            msg = f"Unknown name '{path}'"
            raise ExpressionError(msg)
        return value

    def visit_List(self, node: ast.List) -> Any:
        return [self.visit(element) for element in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> Any:
        return tuple(self.visit(element) for element in node.elts)

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        operator = _BINARY_OPS.get(type(node.op))
        if operator is None:
            msg = f"Unsupported operator: {type(node.op).__name__}"
            raise ExpressionError(msg)
        left, right = self.visit(node.left), self.visit(node.right)
        if isinstance(node.op, (ast.Div, ast.FloorDiv, ast.Mod)) and right == 0:
            msg = "Division by zero"
            raise ExpressionError(msg)
        if isinstance(node.op, ast.Mult) and (isinstance(left, _SEQUENCES) or isinstance(right, _SEQUENCES)):
            msg = "Sequence repetition is not supported"
            raise ExpressionError(msg)
        return operator(left, right)

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operator = _UNARY_OPS.get(type(node.op))
        if operator is None:
            msg = f"Unsupported operator: {type(node.op).__name__}"
            raise ExpressionError(msg)
        return operator(self.visit(node.operand))

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            return all(self.visit(value) for value in node.values)
        return any(self.visit(value) for value in node.values)

    def visit_Compare(self, node: ast.Compare) -> Any:
        left = self.visit(node.left)
        for operator_node, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            if not _COMPARE_OPS[type(operator_node)](left, right):
                return False
            left = right
        return True

    def visit_Call(self, node: ast.Call) -> Any:
        if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCTIONS or node.keywords:
            msg = "Only concat, upper, lower, trim, len, round, abs, min and max may be called"
            raise ExpressionError(msg)
        return _FUNCTIONS[node.func.id](*(self.visit(arg) for arg in node.args))


def evaluate_expression(expression: str, context: Mapping[str, Any]) -> Any:
    """Evaluate an arithmetic, comparison, or boolean expression.

    Context values are available both as bare names (``price * quantity``)
    and as placeholders (``{{price}} * {{quantity}}``). ``&&`` and ``||`` are
    accepted as aliases of ``and`` and ``or``.

    Raises:
        ExpressionError: If the expression is malformed or uses anything
            outside the supported subset.

    Example:
        >>> evaluate_expression("{{price}} * quantity > 100", {"price": 30, "quantity": 4})
        True
    """
    source = _PLACEHOLDER.sub(lambda m: f"({m.group(1)})", expression)
    source = source.replace("&&", " and ").replace("||", " or ")
    try:
        tree = ast.parse(source.strip(), mode="eval")
    except SyntaxError as exc:
        msg = f"Invalid expression '{expression}': {exc.msg}"
        raise ExpressionError(msg) from exc
    try:
        return _Evaluator(context).visit(tree)
    except ExpressionError:
        raise
    except (TypeError, ValueError, KeyError) as exc:
        msg = f"Expression '{expression}' failed: {exc}"
        raise ExpressionError(msg) from exc
