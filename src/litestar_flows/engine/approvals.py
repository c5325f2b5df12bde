"""Human approval tasks: creation, decisions, escalation, and delegation."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from litestar_flows.config import EngineConfig
from litestar_flows.core.definition import ApprovalConfig
from litestar_flows.core.events import ApprovalCreated, ApprovalEscalated
from litestar_flows.core.models import Approval, utcnow
from litestar_flows.core.types import ApprovalStatus, StepStatus
from litestar_flows.exceptions import AlreadyDecided, ApprovalNotFound

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime
    from uuid import UUID

    from litestar_flows.core.definition import Step
    from litestar_flows.core.events import EventBuffer
    from litestar_flows.core.models import Decision, InstanceStep
    from litestar_flows.core.protocols import ActorResolver, DefinitionStore, InstanceRepository

__all__ = ["ApprovalManager"]

logger = logging.getLogger(__name__)


class ApprovalManager:
    """Creates and resolves approval tasks for approval steps.

    The manager never takes the instance lease itself. Callers (the
    orchestrator and the sweeper) hold it around every mutating call.

    Attributes:
        repository: Instance persistence store.
        definitions: Definition store, used to look up steps on escalation.
        resolver: Actor resolver producing the ordered candidate chain.
        config: Engine configuration.
    """

    def __init__(
        self,
        repository: InstanceRepository,
        definitions: DefinitionStore,
        resolver: ActorResolver | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self.repository = repository
        self.definitions = definitions
        self.resolver = resolver
        self.config = config or EngineConfig()

    def fallback_approver(self, step: Step) -> str | None:
        """Return the approver used once the candidate chain is exhausted."""
        if isinstance(step.config, ApprovalConfig) and step.config.fallback_approver:
            return step.config.fallback_approver
        return self.config.fallback_approver

    def escalation_extension(self, step: Step) -> timedelta:
        """Return how far ``due_at`` moves when the task is escalated."""
        if isinstance(step.config, ApprovalConfig) and step.config.escalation_extension is not None:
            return step.config.escalation_extension
        return step.timeout or self.config.escalation_extension

    async def resolve_candidates(self, step: Step, context: dict[str, Any]) -> list[str]:
        """Ask the actor resolver for the ordered candidate chain."""
        if self.resolver is None:
            return []
        return list(await self.resolver.resolve_approvers(step, dict(context)))

    async def create_task(
        self,
        instance_step: InstanceStep,
        step: Step,
        candidates: Sequence[str],
        events: EventBuffer | None = None,
        now: datetime | None = None,
    ) -> Approval:
        """Create the Pending approval backing ``instance_step``.

        Idempotent while a Pending approval for the same instance and step
        exists: that approval is returned unchanged.

        Args:
            instance_step: The waiting instance-step attempt.
            step: The approval step.
            candidates: Ordered candidates; the first one is assigned.
            events: Buffer receiving ``approval.created``.
            now: Current time.

        Returns:
            The Pending approval.
        """
        existing = await self.repository.find_pending_approval(instance_step.instance_id, step.id)
        if existing is not None:
            return existing

        now = now or utcnow()
        approver = candidates[0] if candidates else self.fallback_approver(step)
        priority = step.config.priority if isinstance(step.config, ApprovalConfig) else 0
        approval = Approval(
            instance_id=instance_step.instance_id,
            step_id=step.id,
            instance_step_id=instance_step.id,
            approver=approver,
            priority=priority,
            due_at=now + step.timeout if step.timeout is not None else None,
            created_at=now,
        )
        await self.repository.save_approval(approval)
        logger.info("Created approval %s on step %s for %s", approval.id, step.id, approver)

        if events is not None:
            events.add(
                ApprovalCreated(
                    instance_id=approval.instance_id,
                    timestamp=now,
                    approval_id=approval.id,
                    step_id=step.id,
                    approver=approver,
                    due_at=approval.due_at,
                )
            )
        return approval

    async def get_approval(self, approval_id: UUID) -> Approval:
        """Return the approval or raise ApprovalNotFound."""
        approval = await self.repository.load_approval(approval_id)
        if approval is None:
            raise ApprovalNotFound(approval_id)
        return approval

    async def record_decision(self, approval_id: UUID, decision: Decision, now: datetime | None = None) -> Approval:
        """Record an approver's decision and resolve the waiting instance-step.

        Approved completes the instance-step with the decision payload as
        output; Rejected fails it. Applying the outcome to the instance is the
        orchestrator's job.

        Raises:
            ApprovalNotFound: If the approval does not exist.
            AlreadyDecided: If the approval is not Pending.
        """
        now = now or utcnow()
        approval = await self.get_approval(approval_id)
        if not approval.is_pending:
            raise AlreadyDecided(approval.id, approval.status)

        approval.status = decision.status
        approval.decision = {**decision.payload, **({"comment": decision.comment} if decision.comment else {})}
        approval.decided_by = decision.decided_by
        approval.responded_at = now
        await self.repository.save_approval(approval)

        record = await self.repository.load_step(approval.instance_step_id)
        if record is not None:
            record.completed_at = now
            if decision.approved:
                record.status = StepStatus.COMPLETED
                record.output_data = dict(decision.payload)
            else:
                record.status = StepStatus.FAILED
                record.error = self.rejection_message(decision)
            await self.repository.save_step(record)

        logger.info("Approval %s %s by %s", approval.id, approval.status, decision.decided_by)
        return approval

    @staticmethod
    def rejection_message(decision: Decision) -> str:
        message = f"Rejected by {decision.decided_by}" if decision.decided_by else "Rejected"
        return f"{message}: {decision.comment}" if decision.comment else message

    async def escalate(
        self,
        approval_id: UUID,
        now: datetime | None = None,
        events: EventBuffer | None = None,
    ) -> Approval | None:
        """Reassign an overdue Pending approval to the next candidate.

        The escalation level is incremented, the approver becomes the
        candidate at index ``level`` of the resolver chain (or the fallback
        approver once the chain is exhausted) and ``due_at`` is extended. The
        status stays Pending.

        Returns:
            The escalated approval, or None when it is no longer Pending or
            not yet overdue.

        Raises:
            ApprovalNotFound: If the approval does not exist.
        """
        now = now or utcnow()
        approval = await self.get_approval(approval_id)
        if not approval.is_pending or approval.due_at is None or approval.due_at >= now:
            return None

        instance = await self.repository.load_instance(approval.instance_id)
        definition = await self.definitions.get_definition(instance.definition_id)
        step = definition.get_step(approval.step_id)

        candidates = await self.resolve_candidates(step, instance.context)
        level = approval.escalation_level + 1
        new_approver = candidates[level] if level < len(candidates) else self.fallback_approver(step)

        approval.escalation_level = level
        approval.approver = new_approver
        approval.due_at = now + self.escalation_extension(step)
        await self.repository.save_approval(approval)
        logger.info("Escalated approval %s to level %d (%s)", approval.id, level, new_approver)

        if events is not None:
            events.add(
                ApprovalEscalated(
                    instance_id=approval.instance_id,
                    timestamp=now,
                    approval_id=approval.id,
                    new_level=level,
                    new_approver=new_approver,
                    step_id=approval.step_id,
                )
            )
        return approval

    async def delegate(
        self,
        approval_id: UUID,
        delegate_to: str,
        now: datetime | None = None,
        events: EventBuffer | None = None,
    ) -> Approval:
        """Hand a Pending approval over to another identity.

        The original approval becomes Delegated and a new Pending approval is
        created for ``delegate_to`` with the same deadline and level.

        Returns:
            The new Pending approval.

        Raises:
            ApprovalNotFound: If the approval does not exist.
            AlreadyDecided: If the approval is not Pending.
        """
        now = now or utcnow()
        original = await self.get_approval(approval_id)
        if not original.is_pending:
            raise AlreadyDecided(original.id, original.status)

        original.status = ApprovalStatus.DELEGATED
        original.delegate = delegate_to
        original.responded_at = now
        await self.repository.save_approval(original)

        delegated = Approval(
            instance_id=original.instance_id,
            step_id=original.step_id,
            instance_step_id=original.instance_step_id,
            approver=delegate_to,
            priority=original.priority,
            due_at=original.due_at,
            escalation_level=original.escalation_level,
            created_at=now,
        )
        await self.repository.save_approval(delegated)
        logger.info("Delegated approval %s to %s as %s", original.id, delegate_to, delegated.id)

        if events is not None:
            events.add(
                ApprovalCreated(
                    instance_id=delegated.instance_id,
                    timestamp=now,
                    approval_id=delegated.id,
                    step_id=delegated.step_id,
                    approver=delegate_to,
                    due_at=delegated.due_at,
                )
            )
        return delegated
