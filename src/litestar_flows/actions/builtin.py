"""Action handlers registered by default."""

from __future__ import annotations

from typing import Any

from litestar_flows.actions.expressions import evaluate_expression
from litestar_flows.exceptions import ExpressionError

__all__ = ["BUILTIN_HANDLERS", "evaluate", "set_context", "wait"]


async def set_context(params: dict[str, Any], context: dict[str, Any]) -> dict[str, Any]:
    """Return the (already interpolated) ``data`` param so it is merged into the context.

    Example config::

        ActionConfig(handler="set_context", params={"data": {"owner": "{{entity.owner}}"}})
    """
    data = params.get("data", {})
    if not isinstance(data, dict):
        msg = "set_context expects a mapping under 'data'"
        raise TypeError(msg)
    return dict(data)


async def evaluate(params: dict[str, Any], context: dict[str, Any]) -> dict[str, Any]:
    """Evaluate ``expression`` and store the result under ``output`` (default ``result``)."""
    expression = params.get("expression")
    if not expression:
        msg = "Expression is required"
        raise ExpressionError(msg)
    language = params.get("language", "expression")
    if language != "expression":
        msg = f"Unsupported expression language '{language}'"
        raise ExpressionError(msg)
    return {params.get("output", "result"): evaluate_expression(str(expression), context)}


async def wait(params: dict[str, Any], context: dict[str, Any]) -> dict[str, Any]:
    """Record a wait request; scheduling the wake-up is left to the caller."""
    return {"wait": {"duration": params.get("duration", 0), "until": params.get("until")}}


BUILTIN_HANDLERS = {
    "set_context": set_context,
    "evaluate": evaluate,
    "wait": wait,
}
