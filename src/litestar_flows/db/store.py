"""SQLAlchemy-backed definition store and instance repository.

Both stores open one session per operation from an ``async_sessionmaker`` so
they can be shared by concurrent workers and the background sweeper.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from litestar_flows.core.definition import WorkflowDefinition
from litestar_flows.core.models import Approval, InstanceStep, Lease, WorkflowInstance, utcnow
from litestar_flows.core.types import ApprovalStatus, DefinitionStatus, InstanceStatus, StepStatus, StepType
from litestar_flows.db.models import ApprovalModel, FlowDefinitionModel, FlowInstanceModel, InstanceStepModel
from litestar_flows.db.repositories import (
    ApprovalRepository,
    FlowDefinitionRepository,
    FlowInstanceRepository,
    InstanceStepRepository,
)
from litestar_flows.exceptions import DefinitionNotFound, InstanceNotFound, LockContention

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

__all__ = ["SQLAlchemyDefinitionStore", "SQLAlchemyInstanceStore"]

logger = logging.getLogger(__name__)


def _definition_from_model(model: FlowDefinitionModel) -> WorkflowDefinition:
    definition = WorkflowDefinition.from_dict({**model.definition_json, "id": str(model.id)})
    definition.status = DefinitionStatus(model.status)
    return definition


class SQLAlchemyDefinitionStore:
    """Definition store reading serialized definitions from ``flow_definitions``.

    Definitions are immutable once saved, so lookups by ID are cached.

    Example:
        >>> store = SQLAlchemyDefinitionStore(session_maker)
        >>> await store.save_definition(expense_definition)
        >>> definition = await store.get_active_definition("expense_approval", tenant="acme")
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self.session_maker = session_maker
        self._cache: dict[UUID, WorkflowDefinition] = {}

    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Persist a definition version.

        Saving an active version archives the previously active versions of
        the same code.

        Raises:
            DefinitionValidationError: If an active definition is structurally invalid.
        """
        if definition.status is DefinitionStatus.ACTIVE:
            definition.ensure_valid()
        async with self.session_maker() as session:
            repo = FlowDefinitionRepository(session=session)
            if definition.status is DefinitionStatus.ACTIVE:
                await repo.archive_active(definition.code, definition.tenant)
            model = FlowDefinitionModel(
                id=definition.id,
                code=definition.code,
                name=definition.name,
                tenant=definition.tenant,
                version=definition.version,
                status=definition.status,
                trigger_type=definition.trigger_type,
                entity_type=definition.entity_type,
                definition_json=definition.to_dict(),
            )
            await repo.add(model, auto_commit=True)
        logger.info("Saved definition %s v%d (%s)", definition.code, definition.version, definition.status)
        return definition

    async def get_active_definition(self, code: str, tenant: str | None = None) -> WorkflowDefinition:
        async with self.session_maker() as session:
            model = await FlowDefinitionRepository(session=session).get_active(code, tenant)
        if model is None:
            raise DefinitionNotFound(code, tenant)
        definition = _definition_from_model(model)
        self._cache[definition.id] = definition
        return definition

    async def get_definition(self, definition_id: UUID) -> WorkflowDefinition:
        if definition_id in self._cache:
            return self._cache[definition_id]
        async with self.session_maker() as session:
            model = await FlowDefinitionRepository(session=session).get_one_or_none(id=definition_id)
        if model is None:
            raise DefinitionNotFound(definition_id)
        definition = _definition_from_model(model)
        self._cache[definition_id] = definition
        return definition


class SQLAlchemyInstanceStore:
    """Instance repository backed by the ``flow_*`` tables.

    Leases are taken with a conditional UPDATE on ``lock_token`` and
    ``lock_expires_at``, which makes them exclusive across processes.

    Attributes:
        session_maker: Factory for the per-operation sessions.
        lock_ttl: Lifetime of a lease.
        clock: Source of the current time for lease expiry.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        lock_ttl: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_maker = session_maker
        self.lock_ttl = lock_ttl
        self.clock = clock

    # Leases

    async def lock(self, instance_id: UUID) -> Lease:
        now = self.clock()
        token = uuid4().hex
        expires_at = now + self.lock_ttl
        async with self.session_maker() as session:
            repo = FlowInstanceRepository(session=session)
            acquired = await repo.acquire_lease(instance_id, token, now, expires_at)
            await session.commit()
            if not acquired:
                if await repo.get_one_or_none(id=instance_id) is None:
                    raise InstanceNotFound(instance_id)
                raise LockContention(instance_id)
        return Lease(instance_id=instance_id, token=token, expires_at=expires_at)

    async def unlock(self, lease: Lease) -> None:
        async with self.session_maker() as session:
            released = await FlowInstanceRepository(session=session).release_lease(lease.instance_id, lease.token)
            await session.commit()
        if not released:
            logger.warning("Lease on instance %s expired before it was released", lease.instance_id)

    # Instances

    async def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        model = FlowInstanceModel(id=instance.id, created_at=instance.started_at)
        _instance_to_model(instance, model)
        async with self.session_maker() as session:
            await FlowInstanceRepository(session=session).add(model, auto_commit=True)
        return instance

    async def load_instance(self, instance_id: UUID) -> WorkflowInstance:
        async with self.session_maker() as session:
            model = await FlowInstanceRepository(session=session).get_one_or_none(id=instance_id)
        if model is None:
            raise InstanceNotFound(instance_id)
        return _instance_from_model(model)

    async def save_instance(self, instance: WorkflowInstance) -> None:
        async with self.session_maker() as session:
            model = await FlowInstanceRepository(session=session).get_one_or_none(id=instance.id)
            if model is None:
                raise InstanceNotFound(instance.id)
            _instance_to_model(instance, model)
            await session.commit()

    # Instance steps

    async def save_step(self, record: InstanceStep) -> None:
        async with self.session_maker() as session:
            repo = InstanceStepRepository(session=session)
            model = await repo.get_one_or_none(id=record.id)
            if model is None:
                model = InstanceStepModel(id=record.id, created_at=record.created_at)
                _step_to_model(record, model)
                await repo.add(model, auto_commit=True)
                return
            _step_to_model(record, model)
            await session.commit()

    async def load_step(self, record_id: UUID) -> InstanceStep | None:
        async with self.session_maker() as session:
            model = await InstanceStepRepository(session=session).get_one_or_none(id=record_id)
        return _step_from_model(model) if model is not None else None

    async def latest_step(self, instance_id: UUID, step_id: str) -> InstanceStep | None:
        async with self.session_maker() as session:
            model = await InstanceStepRepository(session=session).get_latest(instance_id, step_id)
        return _step_from_model(model) if model is not None else None

    async def list_steps(self, instance_id: UUID) -> list[InstanceStep]:
        async with self.session_maker() as session:
            models = await InstanceStepRepository(session=session).find_by_instance(instance_id)
        return [_step_from_model(model) for model in models]

    # Approvals

    async def save_approval(self, approval: Approval) -> None:
        async with self.session_maker() as session:
            repo = ApprovalRepository(session=session)
            model = await repo.get_one_or_none(id=approval.id)
            if model is None:
                model = ApprovalModel(id=approval.id, created_at=approval.created_at)
                _approval_to_model(approval, model)
                await repo.add(model, auto_commit=True)
                return
            _approval_to_model(approval, model)
            await session.commit()

    async def load_approval(self, approval_id: UUID) -> Approval | None:
        async with self.session_maker() as session:
            model = await ApprovalRepository(session=session).get_one_or_none(id=approval_id)
        return _approval_from_model(model) if model is not None else None

    async def find_pending_approval(self, instance_id: UUID, step_id: str) -> Approval | None:
        async with self.session_maker() as session:
            model = await ApprovalRepository(session=session).find_pending(instance_id, step_id)
        return _approval_from_model(model) if model is not None else None

    async def list_approvals(self, instance_id: UUID) -> list[Approval]:
        async with self.session_maker() as session:
            models = await ApprovalRepository(session=session).find_by_instance(instance_id)
        return [_approval_from_model(model) for model in models]

    # Sweeps

    async def find_stalled_steps(self, now: datetime, limit: int = 100) -> list[InstanceStep]:
        async with self.session_maker() as session:
            models = await InstanceStepRepository(session=session).find_stalled(now, limit)
        return [_step_from_model(model) for model in models]

    async def find_overdue_approvals(self, now: datetime, limit: int = 100) -> list[Approval]:
        async with self.session_maker() as session:
            models = await ApprovalRepository(session=session).find_overdue(now, limit)
        return [_approval_from_model(model) for model in models]

    async def find_due_retries(self, now: datetime, limit: int = 100) -> list[InstanceStep]:
        async with self.session_maker() as session:
            models = await InstanceStepRepository(session=session).find_due_retries(now, limit)
        return [_step_from_model(model) for model in models]


def _instance_to_model(instance: WorkflowInstance, model: FlowInstanceModel) -> None:
    model.definition_id = instance.definition_id
    model.definition_code = instance.definition_code
    model.definition_version = instance.definition_version
    model.status = instance.status
    model.current_step_id = instance.current_step_id
    model.context_data = dict(instance.context)
    model.entity_type = instance.entity_type
    model.entity_id = instance.entity_id
    model.tenant = instance.tenant
    model.error = instance.error
    model.started_at = instance.started_at
    model.completed_at = instance.completed_at
    model.failed_at = instance.failed_at
    model.cancelled_at = instance.cancelled_at


def _instance_from_model(model: FlowInstanceModel) -> WorkflowInstance:
    return WorkflowInstance(
        id=model.id,
        definition_id=model.definition_id,
        definition_code=model.definition_code,
        definition_version=model.definition_version,
        current_step_id=model.current_step_id,
        status=InstanceStatus(model.status),
        context=dict(model.context_data or {}),
        entity_type=model.entity_type,
        entity_id=model.entity_id,
        tenant=model.tenant,
        error=model.error,
        started_at=model.started_at,
        completed_at=model.completed_at,
        failed_at=model.failed_at,
        cancelled_at=model.cancelled_at,
    )


def _step_to_model(record: InstanceStep, model: InstanceStepModel) -> None:
    model.instance_id = record.instance_id
    model.step_id = record.step_id
    model.step_type = record.step_type
    model.attempt = record.attempt
    model.status = record.status
    model.input_data = _copy(record.input_data)
    model.output_data = _copy(record.output_data)
    model.error = record.error
    model.not_before = record.not_before
    model.deadline_at = record.deadline_at
    model.started_at = record.started_at
    model.completed_at = record.completed_at


def _step_from_model(model: InstanceStepModel) -> InstanceStep:
    return InstanceStep(
        id=model.id,
        instance_id=model.instance_id,
        step_id=model.step_id,
        step_type=StepType(model.step_type),
        attempt=model.attempt,
        status=StepStatus(model.status),
        input_data=_copy(model.input_data),
        output_data=_copy(model.output_data),
        error=model.error,
        not_before=model.not_before,
        deadline_at=model.deadline_at,
        started_at=model.started_at,
        completed_at=model.completed_at,
        created_at=model.created_at,
    )


def _approval_to_model(approval: Approval, model: ApprovalModel) -> None:
    model.instance_id = approval.instance_id
    model.step_id = approval.step_id
    model.instance_step_id = approval.instance_step_id
    model.approver = approval.approver
    model.delegate = approval.delegate
    model.status = approval.status
    model.priority = approval.priority
    model.due_at = approval.due_at
    model.escalation_level = approval.escalation_level
    model.decision = _copy(approval.decision)
    model.decided_by = approval.decided_by
    model.responded_at = approval.responded_at


def _approval_from_model(model: ApprovalModel) -> Approval:
    return Approval(
        id=model.id,
        instance_id=model.instance_id,
        step_id=model.step_id,
        instance_step_id=model.instance_step_id,
        approver=model.approver,
        delegate=model.delegate,
        status=ApprovalStatus(model.status),
        priority=model.priority,
        due_at=model.due_at,
        escalation_level=model.escalation_level,
        decision=_copy(model.decision),
        decided_by=model.decided_by,
        responded_at=model.responded_at,
        created_at=model.created_at,
    )


def _copy(data: dict[str, Any] | None) -> dict[str, Any] | None:
    return dict(data) if data is not None else None
