"""Domain events for the workflow lifecycle.

Events are buffered while an instance lease is held and written to the event
sink only after the transition is committed. Delivery is at-least-once, so
every event exposes a ``dedup_key`` consumers can use to drop duplicates.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, ClassVar
from uuid import UUID

if TYPE_CHECKING:
    from litestar_flows.core.protocols import EventSink

__all__ = [
    "ApprovalCreated",
    "ApprovalEscalated",
    "EventBuffer",
    "InstanceCancelled",
    "InstanceCompleted",
    "InstanceFailed",
    "InstanceStarted",
    "NotificationRequested",
    "StepCompleted",
    "StepFailed",
    "StepRetrying",
    "WorkflowEvent",
]

logger = logging.getLogger(__name__)


@dataclass
class WorkflowEvent:
    """Base class for all workflow events.

    Attributes:
        instance_id: Unique identifier of the workflow instance.
        timestamp: When the transition happened.
    """

    event_type: ClassVar[str] = "workflow.event"

    instance_id: UUID
    timestamp: datetime

    @property
    def dedup_key(self) -> tuple[Any, ...]:
        """Key identifying this transition for consumer-side deduplication."""
        return (self.instance_id, getattr(self, "step_id", None), self.event_type, getattr(self, "attempt", None))

    def to_dict(self) -> dict[str, Any]:
        """Return the event payload including its type."""
        return {"event_type": self.event_type, **asdict(self)}


@dataclass
class InstanceStarted(WorkflowEvent):
    """Emitted when an instance is created from an active definition.

    Example:
        >>> event = InstanceStarted(
        ...     instance_id=uuid4(),
        ...     timestamp=datetime.now(timezone.utc),
        ...     definition_code="expense_approval",
        ...     definition_version=3,
        ...     step_id="validate",
        ... )
    """

    event_type: ClassVar[str] = "instance.started"

    definition_code: str
    definition_version: int
    step_id: str | None = None
    entity_type: str | None = None
    entity_id: str | None = None


@dataclass
class InstanceCompleted(WorkflowEvent):
    """Emitted when the last step succeeds and no successor exists."""

    event_type: ClassVar[str] = "instance.completed"

    final_step: str | None = None


@dataclass
class InstanceFailed(WorkflowEvent):
    """Emitted when an instance transitions to Failed.

    Attributes:
        error: Human-readable message carried from the failing step.
        failed_step: ID of the step that failed.
    """

    event_type: ClassVar[str] = "instance.failed"

    error: str
    failed_step: str | None = None


@dataclass
class InstanceCancelled(WorkflowEvent):
    """Emitted when a running instance is cancelled."""

    event_type: ClassVar[str] = "instance.cancelled"

    reason: str | None = None
    current_step: str | None = None


@dataclass
class StepCompleted(WorkflowEvent):
    """Emitted when a step attempt completes.

    Example:
        >>> event = StepCompleted(
        ...     instance_id=uuid4(),
        ...     timestamp=datetime.now(timezone.utc),
        ...     step_id="validate",
        ...     output={"valid": True},
        ... )
    """

    event_type: ClassVar[str] = "step.completed"

    step_id: str
    output: dict[str, Any] | None = None
    attempt: int = 1


@dataclass
class StepFailed(WorkflowEvent):
    """Emitted when a step fails terminally (retries exhausted or rejected).

    Attributes:
        step_id: The step that failed.
        error: Error message describing the failure.
        required: Whether the failure fails the instance.
        attempt: The attempt that failed last.
    """

    event_type: ClassVar[str] = "step.failed"

    step_id: str
    error: str
    required: bool = True
    attempt: int = 1


@dataclass
class StepRetrying(WorkflowEvent):
    """Emitted when a failed attempt is scheduled for retry."""

    event_type: ClassVar[str] = "step.retrying"

    step_id: str
    error: str
    attempt: int
    delay_seconds: float
    retry_at: datetime


@dataclass
class ApprovalCreated(WorkflowEvent):
    """Emitted when an approval task is created for an approval step."""

    event_type: ClassVar[str] = "approval.created"

    approval_id: UUID
    step_id: str
    approver: str | None = None
    due_at: datetime | None = None

    @property
    def dedup_key(self) -> tuple[Any, ...]:
        return (self.instance_id, self.approval_id, self.event_type, None)


@dataclass
class ApprovalEscalated(WorkflowEvent):
    """Emitted when an overdue approval is reassigned.

    Example:
        >>> event = ApprovalEscalated(
        ...     instance_id=uuid4(),
        ...     timestamp=datetime.now(timezone.utc),
        ...     approval_id=uuid4(),
        ...     new_level=1,
        ...     new_approver="finance-director",
        ... )
    """

    event_type: ClassVar[str] = "approval.escalated"

    approval_id: UUID
    new_level: int
    new_approver: str | None
    step_id: str | None = None

    @property
    def dedup_key(self) -> tuple[Any, ...]:
        return (self.instance_id, self.approval_id, self.event_type, self.new_level)


@dataclass
class NotificationRequested(WorkflowEvent):
    """Emitted by the default notifier for notification steps."""

    event_type: ClassVar[str] = "notification.requested"

    step_id: str
    channel: str
    template: str | None = None
    recipients: tuple[str, ...] = ()
    data: dict[str, Any] | None = None


class EventBuffer:
    """Collects events during a locked transition and publishes them afterwards."""

    def __init__(self) -> None:
        self.events: list[WorkflowEvent] = []

    def add(self, event: WorkflowEvent) -> None:
        self.events.append(event)

    def clear(self) -> None:
        self.events.clear()

    def __len__(self) -> int:
        return len(self.events)

    async def flush(self, sink: EventSink | None) -> None:
        """Publish buffered events in order.

        Publication is fire-and-forget: a sink error is logged and the
        remaining events are still published.
        """
        events, self.events = self.events, []
        if sink is None:
            return
        for event in events:
            try:
                await sink.publish(event)
            except Exception:
                logger.exception("Failed to publish %s for instance %s", event.event_type, event.instance_id)
