"""Local in-memory collaborators.

This module provides in-process implementations of the instance repository,
the event sink, and the actor resolver, suitable for development, testing,
and single-instance deployments.
"""

from __future__ import annotations

import asyncio
import logging
from copy import deepcopy
from datetime import timedelta
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from litestar_flows.core.definition import ApprovalConfig
from litestar_flows.core.models import Lease, utcnow
from litestar_flows.core.types import ApprovalStatus, StepStatus, StepType
from litestar_flows.exceptions import InstanceNotFound, LockContention

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping
    from datetime import datetime
    from uuid import UUID

    from litestar_flows.core.definition import Step
    from litestar_flows.core.events import WorkflowEvent
    from litestar_flows.core.models import Approval, InstanceStep, WorkflowInstance

__all__ = ["InMemoryEventSink", "LocalInstanceRepository", "StaticActorResolver"]

logger = logging.getLogger(__name__)


class LocalInstanceRepository:
    """In-memory instance repository with TTL leases.

    Records are copied on the way in and out so callers never share state
    with the store, matching the behaviour of a database-backed repository.

    Attributes:
        lock_ttl: Lifetime of a lease.
        clock: Source of the current time for lease expiry.
    """

    def __init__(self, lock_ttl: timedelta = timedelta(minutes=5), clock: Callable[[], datetime] = utcnow) -> None:
        self.lock_ttl = lock_ttl
        self.clock = clock
        self._instances: dict[UUID, WorkflowInstance] = {}
        self._steps: dict[UUID, InstanceStep] = {}
        self._approvals: dict[UUID, Approval] = {}
        self._leases: dict[UUID, Lease] = {}
        self._guard = asyncio.Lock()

    async def lock(self, instance_id: UUID) -> Lease:
        async with self._guard:
            now = self.clock()
            held = self._leases.get(instance_id)
            if held is not None and held.expires_at > now:
                raise LockContention(instance_id)
            if held is not None:
                logger.warning("Taking over expired lease on instance %s", instance_id)
            lease = Lease(instance_id=instance_id, token=uuid4().hex, expires_at=now + self.lock_ttl)
            self._leases[instance_id] = lease
            return lease

    async def unlock(self, lease: Lease) -> None:
        async with self._guard:
            held = self._leases.get(lease.instance_id)
            if held is not None and held.token == lease.token:
                del self._leases[lease.instance_id]

    def is_locked(self, instance_id: UUID) -> bool:
        held = self._leases.get(instance_id)
        return held is not None and held.expires_at > self.clock()

    async def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        self._instances[instance.id] = deepcopy(instance)
        return deepcopy(instance)

    async def load_instance(self, instance_id: UUID) -> WorkflowInstance:
        try:
            return deepcopy(self._instances[instance_id])
        except KeyError:
            raise InstanceNotFound(instance_id) from None

    async def save_instance(self, instance: WorkflowInstance) -> None:
        if instance.id not in self._instances:
            raise InstanceNotFound(instance.id)
        self._instances[instance.id] = deepcopy(instance)

    async def save_step(self, record: InstanceStep) -> None:
        self._steps[record.id] = deepcopy(record)

    async def load_step(self, record_id: UUID) -> InstanceStep | None:
        record = self._steps.get(record_id)
        return deepcopy(record) if record is not None else None

    async def latest_step(self, instance_id: UUID, step_id: str) -> InstanceStep | None:
        # Insertion order is attempt order.
        for record in reversed(self._steps.values()):
            if record.instance_id == instance_id and record.step_id == step_id:
                return deepcopy(record)
        return None

    async def list_steps(self, instance_id: UUID) -> list[InstanceStep]:
        return [deepcopy(r) for r in self._steps.values() if r.instance_id == instance_id]

    async def save_approval(self, approval: Approval) -> None:
        self._approvals[approval.id] = deepcopy(approval)

    async def load_approval(self, approval_id: UUID) -> Approval | None:
        approval = self._approvals.get(approval_id)
        return deepcopy(approval) if approval is not None else None

    async def find_pending_approval(self, instance_id: UUID, step_id: str) -> Approval | None:
        for approval in self._approvals.values():
            if approval.instance_id == instance_id and approval.step_id == step_id and approval.is_pending:
                return deepcopy(approval)
        return None

    async def list_approvals(self, instance_id: UUID) -> list[Approval]:
        approvals = [a for a in self._approvals.values() if a.instance_id == instance_id]
        return [deepcopy(a) for a in sorted(approvals, key=lambda a: a.created_at)]

    def _is_running(self, instance_id: UUID) -> bool:
        instance = self._instances.get(instance_id)
        return instance is not None and instance.is_running

    async def find_stalled_steps(self, now: datetime, limit: int = 100) -> list[InstanceStep]:
        stalled = [
            r
            for r in self._steps.values()
            if r.status is StepStatus.RUNNING
            and r.step_type is not StepType.APPROVAL
            and r.deadline_at is not None
            and r.deadline_at < now
            and self._is_running(r.instance_id)
        ]
        return [deepcopy(r) for r in sorted(stalled, key=lambda r: r.deadline_at)[:limit]]

    async def find_overdue_approvals(self, now: datetime, limit: int = 100) -> list[Approval]:
        overdue = [
            a
            for a in self._approvals.values()
            if a.status is ApprovalStatus.PENDING
            and a.due_at is not None
            and a.due_at < now
            and self._is_running(a.instance_id)
        ]
        return [deepcopy(a) for a in sorted(overdue, key=lambda a: a.due_at)[:limit]]

    async def find_due_retries(self, now: datetime, limit: int = 100) -> list[InstanceStep]:
        due = [
            r
            for r in self._steps.values()
            if r.status is StepStatus.PENDING
            and r.not_before is not None
            and r.not_before <= now
            and self._is_running(r.instance_id)
            and self._instances[r.instance_id].current_step_id == r.step_id
        ]
        return [deepcopy(r) for r in sorted(due, key=lambda r: r.not_before)[:limit]]


class InMemoryEventSink:
    """Event sink that keeps published events in a list.

    Attributes:
        events: Events in publication order.
    """

    def __init__(self) -> None:
        self.events: list[WorkflowEvent] = []

    async def publish(self, event: WorkflowEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[WorkflowEvent]:
        """Return the published events with the given ``event_type``."""
        return [event for event in self.events if event.event_type == event_type]

    def clear(self) -> None:
        self.events.clear()


class StaticActorResolver:
    """Resolves approvers from a fixed role to candidates mapping.

    Context keys can override the mapping: a list under
    ``approvers.<role>`` in the instance context takes precedence.

    Example:
        >>> resolver = StaticActorResolver({"manager": ["alice", "bob"]})
    """

    def __init__(self, roles: Mapping[str, Iterable[str]] | None = None, default: Iterable[str] = ()) -> None:
        self.roles = {role: list(candidates) for role, candidates in (roles or {}).items()}
        self.default = list(default)

    async def resolve_approvers(self, step: Step, context: dict[str, Any]) -> list[str]:
        role = step.config.role if isinstance(step.config, ApprovalConfig) else None
        overrides = context.get("approvers")
        if role and isinstance(overrides, dict) and isinstance(overrides.get(role), list):
            return [str(candidate) for candidate in overrides[role]]
        if role and role in self.roles:
            return list(self.roles[role])
        return list(self.default)
