"""Repository implementations for flow persistence.

This module provides async repositories for the queries the engine needs on
top of advanced-alchemy's generic CRUD operations.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from advanced_alchemy.repository import SQLAlchemyAsyncRepository
from sqlalchemy import and_, or_, select, update

from litestar_flows.core.types import ApprovalStatus, DefinitionStatus, InstanceStatus, StepStatus, StepType
from litestar_flows.db.models import (
    ApprovalModel,
    FlowDefinitionModel,
    FlowInstanceModel,
    InstanceStepModel,
)

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime
    from uuid import UUID

__all__ = [
    "ApprovalRepository",
    "FlowDefinitionRepository",
    "FlowInstanceRepository",
    "InstanceStepRepository",
]


class FlowDefinitionRepository(SQLAlchemyAsyncRepository[FlowDefinitionModel]):
    """Repository for workflow definition versions."""

    model_type = FlowDefinitionModel

    async def get_active(self, code: str, tenant: str | None = None) -> FlowDefinitionModel | None:
        """Get the highest active version of a definition code within a tenant.

        Args:
            code: The definition code.
            tenant: The tenant; None matches definitions without a tenant.

        Returns:
            The definition or None if no active version exists.
        """
        tenant_clause = FlowDefinitionModel.tenant.is_(None) if tenant is None else FlowDefinitionModel.tenant == tenant
        stmt = (
            select(FlowDefinitionModel)
            .where(
                and_(
                    FlowDefinitionModel.code == code,
                    tenant_clause,
                    FlowDefinitionModel.status == DefinitionStatus.ACTIVE,
                )
            )
            .order_by(FlowDefinitionModel.version.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def archive_active(self, code: str, tenant: str | None = None) -> None:
        """Archive every active version of a definition code."""
        tenant_clause = FlowDefinitionModel.tenant.is_(None) if tenant is None else FlowDefinitionModel.tenant == tenant
        stmt = (
            update(FlowDefinitionModel)
            .where(
                and_(
                    FlowDefinitionModel.code == code,
                    tenant_clause,
                    FlowDefinitionModel.status == DefinitionStatus.ACTIVE,
                )
            )
            .values(status=DefinitionStatus.ARCHIVED)
        )
        await self.session.execute(stmt)


class FlowInstanceRepository(SQLAlchemyAsyncRepository[FlowInstanceModel]):
    """Repository for workflow instances and their leases."""

    model_type = FlowInstanceModel

    async def acquire_lease(self, instance_id: UUID, token: str, now: datetime, expires_at: datetime) -> bool:
        """Take the lease if it is free or expired.

        The check and the write happen in one conditional UPDATE, so the
        lease is exclusive across processes.

        Returns:
            True if the lease was taken.
        """
        stmt = (
            update(FlowInstanceModel)
            .where(
                and_(
                    FlowInstanceModel.id == instance_id,
                    or_(
                        FlowInstanceModel.lock_token.is_(None),
                        FlowInstanceModel.lock_expires_at.is_(None),
                        FlowInstanceModel.lock_expires_at <= now,
                    ),
                )
            )
            .values(lock_token=token, lock_expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def release_lease(self, instance_id: UUID, token: str) -> bool:
        """Clear the lease if ``token`` still holds it."""
        stmt = (
            update(FlowInstanceModel)
            .where(and_(FlowInstanceModel.id == instance_id, FlowInstanceModel.lock_token == token))
            .values(lock_token=None, lock_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1


class InstanceStepRepository(SQLAlchemyAsyncRepository[InstanceStepModel]):
    """Repository for step attempt records."""

    model_type = InstanceStepModel

    async def get_latest(self, instance_id: UUID, step_id: str) -> InstanceStepModel | None:
        """Get the most recent attempt of a step within an instance."""
        stmt = (
            select(InstanceStepModel)
            .where(and_(InstanceStepModel.instance_id == instance_id, InstanceStepModel.step_id == step_id))
            .order_by(InstanceStepModel.created_at.desc(), InstanceStepModel.attempt.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_instance(self, instance_id: UUID) -> Sequence[InstanceStepModel]:
        """Get the attempts of an instance, oldest first."""
        stmt = (
            select(InstanceStepModel)
            .where(InstanceStepModel.instance_id == instance_id)
            .order_by(InstanceStepModel.created_at, InstanceStepModel.attempt)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def find_stalled(self, now: datetime, limit: int = 100) -> Sequence[InstanceStepModel]:
        """Find running non-approval attempts of running instances past their deadline."""
        stmt = (
            select(InstanceStepModel)
            .join(FlowInstanceModel, FlowInstanceModel.id == InstanceStepModel.instance_id)
            .where(
                and_(
                    InstanceStepModel.status == StepStatus.RUNNING,
                    InstanceStepModel.step_type != StepType.APPROVAL,
                    InstanceStepModel.deadline_at.is_not(None),
                    InstanceStepModel.deadline_at < now,
                    FlowInstanceModel.status == InstanceStatus.RUNNING,
                )
            )
            .order_by(InstanceStepModel.deadline_at)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def find_due_retries(self, now: datetime, limit: int = 100) -> Sequence[InstanceStepModel]:
        """Find scheduled retries of running instances whose time has come."""
        stmt = (
            select(InstanceStepModel)
            .join(FlowInstanceModel, FlowInstanceModel.id == InstanceStepModel.instance_id)
            .where(
                and_(
                    InstanceStepModel.status == StepStatus.PENDING,
                    InstanceStepModel.not_before.is_not(None),
                    InstanceStepModel.not_before <= now,
                    FlowInstanceModel.status == InstanceStatus.RUNNING,
                    FlowInstanceModel.current_step_id == InstanceStepModel.step_id,
                )
            )
            .order_by(InstanceStepModel.not_before)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()


class ApprovalRepository(SQLAlchemyAsyncRepository[ApprovalModel]):
    """Repository for approval tasks."""

    model_type = ApprovalModel

    async def find_pending(self, instance_id: UUID, step_id: str) -> ApprovalModel | None:
        """Get the Pending approval of a step, if any."""
        stmt = select(ApprovalModel).where(
            and_(
                ApprovalModel.instance_id == instance_id,
                ApprovalModel.step_id == step_id,
                ApprovalModel.status == ApprovalStatus.PENDING,
            )
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def find_by_instance(self, instance_id: UUID) -> Sequence[ApprovalModel]:
        """Get the approvals of an instance, oldest first."""
        stmt = select(ApprovalModel).where(ApprovalModel.instance_id == instance_id).order_by(ApprovalModel.created_at)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def find_overdue(self, now: datetime, limit: int = 100) -> Sequence[ApprovalModel]:
        """Find Pending approvals of running instances past their due time."""
        stmt = (
            select(ApprovalModel)
            .join(FlowInstanceModel, FlowInstanceModel.id == ApprovalModel.instance_id)
            .where(
                and_(
                    ApprovalModel.status == ApprovalStatus.PENDING,
                    ApprovalModel.due_at.is_not(None),
                    ApprovalModel.due_at < now,
                    FlowInstanceModel.status == InstanceStatus.RUNNING,
                )
            )
            .order_by(ApprovalModel.due_at)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()
