"""Core type definitions for litestar-flows.

This module defines the enums and type aliases shared by the definition model,
the runtime records, and the engine components.
"""

from __future__ import annotations

import sys
from enum import Enum, auto
from typing import Any, TypeAlias

# StrEnum backport for Python < 3.11
if sys.version_info >= (3, 11):
    from enum import StrEnum
else:

    class StrEnum(str, Enum):
        """String enumeration compatibility for Python < 3.11."""

        @staticmethod
        def _generate_next_value_(name: str, start: int, count: int, last_values: list[Any]) -> str:
            return name.lower()

        def __str__(self) -> str:
            return str(self.value)


__all__ = [
    "ApprovalStatus",
    "Context",
    "DefinitionStatus",
    "InstanceStatus",
    "Operator",
    "StepStatus",
    "StepType",
    "TriggerType",
]


class StepType(StrEnum):
    """Classification of steps within a workflow definition.

    Attributes:
        ACTION: Calls an external action handler synchronously, with a timeout.
        CONDITION: Picks the next step by evaluating branch conditions.
        APPROVAL: Creates a human approval task and waits for a decision.
        NOTIFICATION: Dispatches a notification and moves on.
    """

    ACTION = auto()
    CONDITION = auto()
    APPROVAL = auto()
    NOTIFICATION = auto()


class StepStatus(StrEnum):
    """Status of a single instance-step attempt.

    Attributes:
        PENDING: Created (or scheduled for retry) but not started.
        RUNNING: Dispatched to its handler, or waiting on an approval decision.
        COMPLETED: Finished successfully.
        FAILED: Finished with an error.
    """

    PENDING = auto()
    RUNNING = auto()
    COMPLETED = auto()
    FAILED = auto()


class InstanceStatus(StrEnum):
    """Overall status of a workflow instance.

    ``RUNNING`` is the only non-terminal status.

    Attributes:
        RUNNING: The instance is advancing, or waiting on an approval or retry.
        COMPLETED: The last step succeeded and no successor exists.
        FAILED: A required step failed terminally.
        CANCELLED: The instance was cancelled while running.
    """

    RUNNING = auto()
    COMPLETED = auto()
    FAILED = auto()
    CANCELLED = auto()

    @property
    def is_terminal(self) -> bool:
        """Whether no further transitions are possible."""
        return self is not InstanceStatus.RUNNING


class ApprovalStatus(StrEnum):
    """Status of an approval task.

    Attributes:
        PENDING: Waiting for a decision.
        APPROVED: The approver accepted.
        REJECTED: The approver rejected.
        DELEGATED: Handed over to a delegate; a new pending approval exists.
    """

    PENDING = auto()
    APPROVED = auto()
    REJECTED = auto()
    DELEGATED = auto()


class DefinitionStatus(StrEnum):
    """Lifecycle status of a workflow definition."""

    DRAFT = auto()
    ACTIVE = auto()
    ARCHIVED = auto()


class TriggerType(StrEnum):
    """What starts instances of a definition."""

    MANUAL = auto()
    EVENT = auto()
    SCHEDULE = auto()


class Operator(StrEnum):
    """Comparison operators supported by branch conditions."""

    EQ = "="
    NE = "!="
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="
    CONTAINS = "contains"
    IN = "in"


# Type aliases for workflow data
Context: TypeAlias = dict[str, Any]
"""Type alias for the instance context bag."""
