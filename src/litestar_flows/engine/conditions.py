"""Branch selection for condition steps.

The evaluator is a pure function of the instance context and the step's
conditions: no state, no I/O, and the same inputs always select the same step.
"""

from __future__ import annotations

import operator as op
from collections.abc import Callable, Iterable, Mapping
from typing import TYPE_CHECKING, Any

from litestar_flows.core.context import MISSING, resolve_path
from litestar_flows.core.types import Operator
from litestar_flows.exceptions import NoMatchingBranch

if TYPE_CHECKING:
    from litestar_flows.core.definition import Condition

__all__ = ["ConditionEvaluator"]


def _as_number(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return value
    return value


def _coerce_pair(left: Any, right: Any) -> tuple[Any, Any]:
    # Numeric strings compare numerically against numbers.
    left_numeric = isinstance(left, (int, float)) and not isinstance(left, bool)
    right_numeric = isinstance(right, (int, float)) and not isinstance(right, bool)
    if left_numeric and isinstance(right, str):
        return left, _as_number(right)
    if right_numeric and isinstance(left, str):
        return _as_number(left), right
    return left, right


def _contains(container: Any, item: Any) -> bool:
    if isinstance(container, str):
        return isinstance(item, str) and item in container
    if isinstance(container, (Mapping, list, tuple, set, frozenset)):
        return item in container
    return False


_OPERATORS: dict[Operator, Callable[[Any, Any], bool]] = {
    Operator.EQ: op.eq,
    Operator.NE: op.ne,
    Operator.GT: op.gt,
    Operator.GTE: op.ge,
    Operator.LT: op.lt,
    Operator.LTE: op.le,
    Operator.CONTAINS: _contains,
    Operator.IN: lambda left, right: _contains(right, left),
}


class ConditionEvaluator:
    """Selects the next step of a condition step.

    Non-default conditions are evaluated in ascending ``sequence`` order and
    the first match wins. When nothing matches the single default branch is
    used.

    Example:
        >>> evaluator = ConditionEvaluator()
        >>> evaluator.select(
        ...     {"amount": 1200},
        ...     [
        ...         Condition(field="amount", operator=Operator.GT, value=1000, next_step_id="cfo", sequence=1),
        ...         Condition(next_step_id="manager", is_default=True),
        ...     ],
        ... )
        'cfo'
    """

    def matches(self, context: Mapping[str, Any], condition: Condition) -> bool:
        """Return whether ``context[field] <operator> value`` holds.

        A missing field or incomparable operands never match.
        """
        actual = resolve_path(context, condition.field)
        if actual is MISSING:
            return False
        left, right = _coerce_pair(actual, condition.value)
        try:
            return bool(_OPERATORS[Operator(condition.operator)](left, right))
        except TypeError:
            return False

    def select_condition(self, context: Mapping[str, Any], conditions: Iterable[Condition]) -> Condition:
        """Return the condition that decides the branch.

        Raises:
            NoMatchingBranch: If nothing matches and no default exists.
        """
        ordered = sorted(conditions, key=lambda c: c.sequence)
        default: Condition | None = None
        for condition in ordered:
            if condition.is_default:
                default = default or condition
                continue
            if self.matches(context, condition):
                return condition
        if default is None:
            raise NoMatchingBranch
        return default

    def select(self, context: Mapping[str, Any], conditions: Iterable[Condition]) -> str:
        """Return the ID of the next step.

        Args:
            context: The instance context bag.
            conditions: The step's outgoing conditions.

        Returns:
            The ``next_step_id`` of the first matching condition, or of the
            default condition.

        Raises:
            NoMatchingBranch: If nothing matches and no default exists.
        """
        return self.select_condition(context, conditions).next_step_id
