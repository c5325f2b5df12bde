"""SQLAlchemy models for flow persistence.

This module defines the database models for persisting workflow state:
- FlowDefinitionModel: Versioned workflow definitions, serialized as JSON
- FlowInstanceModel: Workflow instances, including their lease columns
- InstanceStepModel: One row per step attempt
- ApprovalModel: Human approval tasks
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from advanced_alchemy.base import UUIDAuditBase
from advanced_alchemy.types import DateTimeUTC
from sqlalchemy import JSON, Enum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from litestar_flows.core.types import (
    ApprovalStatus,
    DefinitionStatus,
    InstanceStatus,
    StepStatus,
    StepType,
    TriggerType,
)

__all__ = [
    "ApprovalModel",
    "FlowDefinitionModel",
    "FlowInstanceModel",
    "InstanceStepModel",
]


# Cross-database JSON type: uses JSONB for PostgreSQL, JSON for others (SQLite, MySQL, etc.)
JSONType = JSON().with_variant(JSONB, "postgresql")


class FlowDefinitionModel(UUIDAuditBase):
    """Persisted workflow definition version.

    The full step list is stored in ``definition_json``; the scalar columns
    exist for lookups.

    Attributes:
        code: Definition code, unique per tenant and version.
        name: Human-readable name.
        tenant: Owning tenant.
        version: Monotonic version per code.
        status: Draft, active, or archived.
        trigger_type: How instances are started.
        entity_type: Entity type instances operate on.
        definition_json: Serialized ``WorkflowDefinition``.
    """

    __tablename__ = "flow_definitions"
    __table_args__ = (
        Index("ix_flow_definitions_tenant_code_version", "tenant", "code", "version", unique=True),
        Index("ix_flow_definitions_tenant_code_status", "tenant", "code", "status"),
    )

    code: Mapped[str] = mapped_column(String(255))
    name: Mapped[str] = mapped_column(String(255))
    tenant: Mapped[str | None] = mapped_column(String(255), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[DefinitionStatus] = mapped_column(
        Enum(DefinitionStatus, native_enum=False, length=50),
        default=DefinitionStatus.DRAFT,
    )
    trigger_type: Mapped[TriggerType] = mapped_column(
        Enum(TriggerType, native_enum=False, length=50),
        default=TriggerType.MANUAL,
    )
    entity_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    definition_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)


class FlowInstanceModel(UUIDAuditBase):
    """Persisted workflow instance.

    ``lock_token`` and ``lock_expires_at`` hold the advancement lease. They
    are only written through a conditional update so two workers can never
    hold an unexpired lease at the same time.

    Attributes:
        definition_id: Pinned definition version.
        definition_code: Denormalized definition code.
        definition_version: Denormalized definition version.
        status: Current instance status.
        current_step_id: Step the instance is on.
        context_data: Context bag as JSON.
        entity_type: Entity type the instance operates on.
        entity_id: Entity the instance operates on.
        tenant: Owning tenant.
        error: Error message once Failed.
        lock_token: Token of the current lease holder.
        lock_expires_at: Expiry of the current lease.
    """

    __tablename__ = "flow_instances"
    __table_args__ = (
        Index("ix_flow_instances_status", "status"),
        Index("ix_flow_instances_definition_code", "definition_code"),
        Index("ix_flow_instances_tenant", "tenant"),
        Index("ix_flow_instances_entity", "entity_type", "entity_id"),
    )

    definition_id: Mapped[UUID] = mapped_column(index=True)
    definition_code: Mapped[str] = mapped_column(String(255))
    definition_version: Mapped[int] = mapped_column(Integer)
    status: Mapped[InstanceStatus] = mapped_column(
        Enum(InstanceStatus, native_enum=False, length=50),
        default=InstanceStatus.RUNNING,
    )
    current_step_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    context_data: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    entity_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tenant: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTimeUTC(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)

    # Lease
    lock_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lock_expires_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)

    # Relationships
    steps: Mapped[list[InstanceStepModel]] = relationship(
        back_populates="instance",
        lazy="noload",
        order_by="InstanceStepModel.created_at",
    )
    approvals: Mapped[list[ApprovalModel]] = relationship(
        back_populates="instance",
        lazy="noload",
    )


class InstanceStepModel(UUIDAuditBase):
    """Record of one attempt to execute a step.

    Attributes:
        instance_id: Owning instance.
        step_id: Attempted step.
        step_type: Type of the step.
        attempt: 1-based attempt number.
        status: Attempt status.
        input_data: Context snapshot when the attempt started.
        output_data: Output on completion.
        error: Error on failure.
        not_before: Earliest start of a scheduled retry.
        deadline_at: Handler deadline of a running attempt.
    """

    __tablename__ = "flow_instance_steps"
    __table_args__ = (
        Index("ix_flow_instance_steps_instance_step", "instance_id", "step_id"),
        Index("ix_flow_instance_steps_status", "status"),
        Index("ix_flow_instance_steps_not_before", "not_before"),
        Index("ix_flow_instance_steps_deadline_at", "deadline_at"),
    )

    instance_id: Mapped[UUID] = mapped_column(
        ForeignKey("flow_instances.id", ondelete="CASCADE"),
    )
    step_id: Mapped[str] = mapped_column(String(255))
    step_type: Mapped[StepType] = mapped_column(
        Enum(StepType, native_enum=False, length=50),
    )
    attempt: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[StepStatus] = mapped_column(
        Enum(StepStatus, native_enum=False, length=50),
        default=StepStatus.PENDING,
    )
    input_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    output_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    not_before: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    deadline_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)

    # Relationships
    instance: Mapped[FlowInstanceModel] = relationship(
        back_populates="steps",
    )


class ApprovalModel(UUIDAuditBase):
    """Persisted approval task.

    Attributes:
        instance_id: Owning instance.
        step_id: Approval step.
        instance_step_id: Waiting attempt.
        approver: Current assignee.
        delegate: Identity a Delegated task was handed to.
        status: Approval status.
        priority: Task priority.
        due_at: Escalation deadline.
        escalation_level: Number of escalations so far.
        decision: Decision payload.
        decided_by: Identity that decided.
        responded_at: When the decision was recorded.
    """

    __tablename__ = "flow_approvals"
    __table_args__ = (
        Index("ix_flow_approvals_instance_step", "instance_id", "step_id"),
        Index("ix_flow_approvals_approver", "approver"),
        Index("ix_flow_approvals_status_due_at", "status", "due_at"),
    )

    instance_id: Mapped[UUID] = mapped_column(
        ForeignKey("flow_instances.id", ondelete="CASCADE"),
    )
    step_id: Mapped[str] = mapped_column(String(255))
    instance_step_id: Mapped[UUID] = mapped_column(
        ForeignKey("flow_instance_steps.id", ondelete="CASCADE"),
    )
    approver: Mapped[str | None] = mapped_column(String(255), nullable=True)
    delegate: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[ApprovalStatus] = mapped_column(
        Enum(ApprovalStatus, native_enum=False, length=50),
        default=ApprovalStatus.PENDING,
    )
    priority: Mapped[int] = mapped_column(Integer, default=0)
    due_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    escalation_level: Mapped[int] = mapped_column(Integer, default=0)
    decision: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    decided_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    responded_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)

    # Relationships
    instance: Mapped[FlowInstanceModel] = relationship(
        back_populates="approvals",
    )
