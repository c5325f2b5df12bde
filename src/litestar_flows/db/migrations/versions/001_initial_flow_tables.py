"""Initial flow tables.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _audit_columns() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    """Create flow tables."""
    op.create_table(
        "flow_definitions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("code", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("tenant", sa.String(length=255), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("trigger_type", sa.String(length=50), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("definition_json", sa.JSON(), nullable=False),
        *_audit_columns(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_flow_definitions_tenant_code_version",
        "flow_definitions",
        ["tenant", "code", "version"],
        unique=True,
    )
    op.create_index(
        "ix_flow_definitions_tenant_code_status",
        "flow_definitions",
        ["tenant", "code", "status"],
    )

    op.create_table(
        "flow_instances",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("definition_id", sa.Uuid(), nullable=False),
        sa.Column("definition_code", sa.String(length=255), nullable=False),
        sa.Column("definition_version", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("current_step_id", sa.String(length=255), nullable=True),
        sa.Column("context_data", sa.JSON(), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("tenant", sa.String(length=255), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lock_token", sa.String(length=64), nullable=True),
        sa.Column("lock_expires_at", sa.DateTime(timezone=True), nullable=True),
        *_audit_columns(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_flow_instances_definition_id", "flow_instances", ["definition_id"])
    op.create_index("ix_flow_instances_status", "flow_instances", ["status"])
    op.create_index("ix_flow_instances_definition_code", "flow_instances", ["definition_code"])
    op.create_index("ix_flow_instances_tenant", "flow_instances", ["tenant"])
    op.create_index("ix_flow_instances_entity", "flow_instances", ["entity_type", "entity_id"])

    op.create_table(
        "flow_instance_steps",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("instance_id", sa.Uuid(), nullable=False),
        sa.Column("step_id", sa.String(length=255), nullable=False),
        sa.Column("step_type", sa.String(length=50), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("input_data", sa.JSON(), nullable=True),
        sa.Column("output_data", sa.JSON(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("not_before", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deadline_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_audit_columns(),
        sa.ForeignKeyConstraint(
            ["instance_id"],
            ["flow_instances.id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_flow_instance_steps_instance_step", "flow_instance_steps", ["instance_id", "step_id"])
    op.create_index("ix_flow_instance_steps_status", "flow_instance_steps", ["status"])
    op.create_index("ix_flow_instance_steps_not_before", "flow_instance_steps", ["not_before"])
    op.create_index("ix_flow_instance_steps_deadline_at", "flow_instance_steps", ["deadline_at"])

    op.create_table(
        "flow_approvals",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("instance_id", sa.Uuid(), nullable=False),
        sa.Column("step_id", sa.String(length=255), nullable=False),
        sa.Column("instance_step_id", sa.Uuid(), nullable=False),
        sa.Column("approver", sa.String(length=255), nullable=True),
        sa.Column("delegate", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escalation_level", sa.Integer(), nullable=False),
        sa.Column("decision", sa.JSON(), nullable=True),
        sa.Column("decided_by", sa.String(length=255), nullable=True),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        *_audit_columns(),
        sa.ForeignKeyConstraint(
            ["instance_id"],
            ["flow_instances.id"],
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["instance_step_id"],
            ["flow_instance_steps.id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_flow_approvals_instance_step", "flow_approvals", ["instance_id", "step_id"])
    op.create_index("ix_flow_approvals_approver", "flow_approvals", ["approver"])
    op.create_index("ix_flow_approvals_status_due_at", "flow_approvals", ["status", "due_at"])


def downgrade() -> None:
    """Drop flow tables."""
    op.drop_table("flow_approvals")
    op.drop_table("flow_instance_steps")
    op.drop_table("flow_instances")
    op.drop_table("flow_definitions")
