"""Runtime data models for litestar-flows.

This module provides the dataclasses the engine reads and writes while
executing workflows: instances, per-attempt step records, approvals, and the
lease that guards an instance while it is advanced.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from litestar_flows.core.types import ApprovalStatus, InstanceStatus, StepStatus, StepType

__all__ = ["Approval", "Decision", "InstanceStep", "Lease", "WorkflowInstance", "utcnow"]


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass
class WorkflowInstance:
    """One running execution of a definition against an entity.

    Owned by the orchestrator and only mutated while its lease is held.

    Attributes:
        definition_id: ID of the pinned definition version.
        definition_code: Code of the definition, for lookups and logs.
        definition_version: Version pinned when the instance started.
        status: Current status.
        current_step_id: Step the instance is on.
        context: Key/value bag accumulated from step outputs.
        entity_type: Type of the entity the instance operates on.
        entity_id: ID of the entity the instance operates on.
        tenant: Tenant the instance belongs to.
        error: Human-readable error message once Failed.
    """

    definition_id: UUID
    definition_code: str
    definition_version: int
    current_step_id: str | None
    status: InstanceStatus = InstanceStatus.RUNNING
    context: dict[str, Any] = field(default_factory=dict)
    entity_type: str | None = None
    entity_id: str | None = None
    tenant: str | None = None
    error: str | None = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    cancelled_at: datetime | None = None
    id: UUID = field(default_factory=uuid4)

    @property
    def is_running(self) -> bool:
        return self.status is InstanceStatus.RUNNING


@dataclass
class InstanceStep:
    """Record of one attempt to execute a step within an instance.

    A new record is appended for every retry, so the records of an instance
    form its full execution history.

    Attributes:
        instance_id: Owning instance.
        step_id: Step being attempted.
        step_type: Type of the step, denormalized for sweeps.
        attempt: 1-based attempt number within the current visit of the step.
        status: Attempt status.
        input_data: Snapshot of the instance context when the attempt started.
        output_data: Output recorded on completion.
        error: Error message recorded on failure.
        not_before: Earliest time a scheduled retry may run.
        deadline_at: Time after which a running attempt counts as timed out.
    """

    instance_id: UUID
    step_id: str
    step_type: StepType
    attempt: int = 1
    status: StepStatus = StepStatus.PENDING
    input_data: dict[str, Any] | None = None
    output_data: dict[str, Any] | None = None
    error: str | None = None
    not_before: datetime | None = None
    deadline_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    id: UUID = field(default_factory=uuid4)


@dataclass
class Approval:
    """A human decision task backing an approval step.

    Attributes:
        instance_id: Owning instance.
        step_id: Approval step.
        instance_step_id: The waiting instance-step attempt.
        approver: Identity currently assigned.
        delegate: Identity the task was delegated to, on a Delegated record.
        status: Approval status.
        priority: Priority copied from the step configuration.
        due_at: Deadline after which the task is escalated.
        escalation_level: Starts at 0, incremented per escalation.
        decision: Payload recorded with the decision.
        decided_by: Identity that recorded the decision.
        responded_at: When the decision was recorded.
    """

    instance_id: UUID
    step_id: str
    instance_step_id: UUID
    approver: str | None
    status: ApprovalStatus = ApprovalStatus.PENDING
    delegate: str | None = None
    priority: int = 0
    due_at: datetime | None = None
    escalation_level: int = 0
    decision: dict[str, Any] | None = None
    decided_by: str | None = None
    responded_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    id: UUID = field(default_factory=uuid4)

    @property
    def is_pending(self) -> bool:
        return self.status is ApprovalStatus.PENDING


@dataclass(frozen=True)
class Decision:
    """An approver's answer to an approval task.

    Attributes:
        approved: True to approve, False to reject.
        payload: Data merged into the instance context on approval.
        decided_by: Identity recording the decision.
        comment: Optional free-text comment.
    """

    approved: bool
    payload: dict[str, Any] = field(default_factory=dict)
    decided_by: str | None = None
    comment: str | None = None

    @property
    def status(self) -> ApprovalStatus:
        return ApprovalStatus.APPROVED if self.approved else ApprovalStatus.REJECTED


@dataclass(frozen=True)
class Lease:
    """Exclusive right to advance one instance, until released or expired."""

    instance_id: UUID
    token: str
    expires_at: datetime
