"""Core protocols for litestar-flows.

This module defines the Protocol-based interfaces of the collaborators the
engine consumes. Using Protocol allows duck typing while maintaining type
safety: the in-memory and SQLAlchemy stores, test spies, and user supplied
resolvers all satisfy these interfaces structurally.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime
    from uuid import UUID

    from litestar_flows.core.definition import ActionConfig, NotificationConfig, Step, WorkflowDefinition
    from litestar_flows.core.events import WorkflowEvent
    from litestar_flows.core.models import Approval, InstanceStep, Lease, WorkflowInstance


__all__ = [
    "ActionHandler",
    "ActionInvoker",
    "ActorResolver",
    "DefinitionStore",
    "EventSink",
    "InstanceRepository",
    "Notifier",
]


@runtime_checkable
class DefinitionStore(Protocol):
    """Read-only lookup of workflow definitions.

    Stores are already tenant scoped and only return definitions whose
    structural invariants hold.
    """

    async def get_active_definition(self, code: str, tenant: str | None = None) -> WorkflowDefinition:
        """Return the active definition for ``code``.

        Raises:
            DefinitionNotFound: If no active definition exists.
        """
        ...

    async def get_definition(self, definition_id: UUID) -> WorkflowDefinition:
        """Return the definition version with the given ID.

        Raises:
            DefinitionNotFound: If no such definition exists.
        """
        ...


@runtime_checkable
class InstanceRepository(Protocol):
    """Durable storage for instances, instance-steps, and approvals.

    ``lock`` must provide mutual exclusion across process boundaries and fail
    fast with ``LockContention`` when another holder has an unexpired lease.
    """

    async def lock(self, instance_id: UUID) -> Lease: ...

    async def unlock(self, lease: Lease) -> None: ...

    async def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance: ...

    async def load_instance(self, instance_id: UUID) -> WorkflowInstance:
        """Return the instance.

        Raises:
            InstanceNotFound: If the instance does not exist.
        """
        ...

    async def save_instance(self, instance: WorkflowInstance) -> None: ...

    async def save_step(self, record: InstanceStep) -> None:
        """Insert or update an instance-step record."""
        ...

    async def load_step(self, record_id: UUID) -> InstanceStep | None: ...

    async def latest_step(self, instance_id: UUID, step_id: str) -> InstanceStep | None:
        """Return the most recent attempt of ``step_id`` within the instance."""
        ...

    async def list_steps(self, instance_id: UUID) -> Sequence[InstanceStep]:
        """Return the execution history of the instance, oldest first."""
        ...

    async def save_approval(self, approval: Approval) -> None:
        """Insert or update an approval."""
        ...

    async def load_approval(self, approval_id: UUID) -> Approval | None: ...

    async def find_pending_approval(self, instance_id: UUID, step_id: str) -> Approval | None: ...

    async def list_approvals(self, instance_id: UUID) -> Sequence[Approval]: ...

    async def find_stalled_steps(self, now: datetime, limit: int = 100) -> Sequence[InstanceStep]:
        """Return running non-approval attempts whose deadline has passed."""
        ...

    async def find_overdue_approvals(self, now: datetime, limit: int = 100) -> Sequence[Approval]:
        """Return pending approvals whose ``due_at`` has passed."""
        ...

    async def find_due_retries(self, now: datetime, limit: int = 100) -> Sequence[InstanceStep]:
        """Return pending retry attempts whose ``not_before`` has passed."""
        ...


@runtime_checkable
class ActorResolver(Protocol):
    """Resolves candidate approvers for an approval step.

    The returned list is ordered: the first entry is the initial assignee and
    the following entries form the escalation chain.
    """

    async def resolve_approvers(self, step: Step, context: dict[str, Any]) -> list[str]: ...


@runtime_checkable
class ActionHandler(Protocol):
    """A callable that performs the work of an action step."""

    async def __call__(self, params: dict[str, Any], context: dict[str, Any]) -> dict[str, Any] | None: ...


@runtime_checkable
class ActionInvoker(Protocol):
    """Synchronous-call boundary for action steps."""

    async def invoke(self, config: ActionConfig, context: dict[str, Any], timeout: float | None) -> dict[str, Any]:
        """Run the handler named by ``config``.

        Raises:
            HandlerTimeout: If the handler exceeded ``timeout``.
            HandlerError: If the handler raised.
        """
        ...


@runtime_checkable
class Notifier(Protocol):
    """Fire-and-forget dispatch for notification steps."""

    async def send(self, instance: WorkflowInstance, step: Step, config: NotificationConfig) -> None: ...


@runtime_checkable
class EventSink(Protocol):
    """Receives lifecycle events after each committed transition."""

    async def publish(self, event: WorkflowEvent) -> None: ...
