"""Action handlers for action steps."""

from __future__ import annotations

from litestar_flows.actions.builtin import BUILTIN_HANDLERS
from litestar_flows.actions.expressions import evaluate_expression, interpolate, interpolate_data
from litestar_flows.actions.registry import ActionHandlerRegistry

__all__ = [
    "BUILTIN_HANDLERS",
    "ActionHandlerRegistry",
    "evaluate_expression",
    "interpolate",
    "interpolate_data",
]
