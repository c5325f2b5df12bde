"""Instance state machine.

The orchestrator owns every transition of a workflow instance. Each public
operation acquires the instance lease, performs at most one step transition,
persists it, releases the lease and only then publishes the events the
transition produced.

State machine::

    Running --(last step done)--------------> Completed
    Running --(step done, successor)--------> Running (next step)
    Running --(required step fails)---------> Failed
    Running --(cancel)----------------------> Cancelled
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from litestar_flows.actions.registry import ActionHandlerRegistry
from litestar_flows.config import EngineConfig
from litestar_flows.core.context import merge_output
from litestar_flows.core.events import (
    EventBuffer,
    InstanceCancelled,
    InstanceCompleted,
    InstanceFailed,
    InstanceStarted,
    StepCompleted,
    StepFailed,
    StepRetrying,
)
from litestar_flows.core.models import InstanceStep, WorkflowInstance, utcnow
from litestar_flows.core.types import InstanceStatus, StepStatus, StepType
from litestar_flows.engine.approvals import ApprovalManager
from litestar_flows.engine.executor import StepExecutor
from litestar_flows.engine.locking import instance_lease
from litestar_flows.engine.retry import Retry
from litestar_flows.exceptions import (
    HandlerTimeout,
    InvalidTransition,
    LockContention,
    NoMatchingBranch,
)

if TYPE_CHECKING:
    from datetime import datetime
    from uuid import UUID

    from litestar_flows.core.definition import Step, WorkflowDefinition
    from litestar_flows.core.models import Approval, Decision
    from litestar_flows.core.protocols import (
        ActionInvoker,
        ActorResolver,
        DefinitionStore,
        EventSink,
        InstanceRepository,
        Notifier,
    )
    from litestar_flows.engine.executor import StepOutcome

__all__ = ["InstanceOrchestrator"]

logger = logging.getLogger(__name__)


class InstanceOrchestrator:
    """Drives workflow instances through their definitions.

    Example:
        >>> orchestrator = InstanceOrchestrator(
        ...     definitions=registry,
        ...     repository=LocalInstanceRepository(),
        ...     sink=InMemoryEventSink(),
        ... )
        >>> instance = await orchestrator.start("expense_approval", tenant="acme")
        >>> instance = await orchestrator.advance(instance.id)

    Attributes:
        definitions: Definition store the pinned definition is read from.
        repository: Instance persistence store.
        sink: Event sink receiving events after each transition.
        approvals: Approval manager.
        executor: Step executor.
        config: Engine configuration.
    """

    def __init__(
        self,
        definitions: DefinitionStore,
        repository: InstanceRepository,
        sink: EventSink | None = None,
        actions: ActionInvoker | None = None,
        resolver: ActorResolver | None = None,
        notifier: Notifier | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self.definitions = definitions
        self.repository = repository
        self.sink = sink
        self.config = config or EngineConfig()
        self.approvals = ApprovalManager(repository, definitions, resolver=resolver, config=self.config)
        self.executor = StepExecutor(
            repository,
            actions=actions or ActionHandlerRegistry(),
            approvals=self.approvals,
            notifier=notifier,
            config=self.config,
        )

    async def start(
        self,
        code: str,
        tenant: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        context: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> WorkflowInstance:
        """Create a Running instance of the active definition for ``code``.

        The definition version is pinned on the instance. No step is executed
        until ``advance`` is called.

        Raises:
            DefinitionNotFound: If no active definition exists.
        """
        now = now or utcnow()
        definition = await self.definitions.get_active_definition(code, tenant)
        first = definition.first_step
        instance = WorkflowInstance(
            definition_id=definition.id,
            definition_code=definition.code,
            definition_version=definition.version,
            current_step_id=first.id,
            context=dict(context or {}),
            entity_type=entity_type or definition.entity_type,
            entity_id=entity_id,
            tenant=tenant,
            started_at=now,
        )
        instance = await self.repository.create_instance(instance)
        logger.info("Started instance %s of %s v%d", instance.id, definition.code, definition.version)

        events = EventBuffer()
        events.add(
            InstanceStarted(
                instance_id=instance.id,
                timestamp=now,
                definition_code=definition.code,
                definition_version=definition.version,
                step_id=first.id,
                entity_type=instance.entity_type,
                entity_id=entity_id,
            )
        )
        await events.flush(self.sink)
        return instance

    async def advance(self, instance_id: UUID, now: datetime | None = None) -> WorkflowInstance:
        """Perform one step transition of a Running instance.

        A terminal instance is returned unchanged without any write or event.
        An instance waiting on an approval or a scheduled retry is returned
        unchanged as well.

        Raises:
            LockContention: If another worker holds the lease.
            InstanceNotFound: If the instance does not exist.
        """
        now = now or utcnow()
        events = EventBuffer()
        try:
            async with instance_lease(self.repository, instance_id):
                instance = await self.repository.load_instance(instance_id)
                if not instance.is_running:
                    logger.debug("Instance %s is %s, nothing to advance", instance_id, instance.status)
                    return instance
                try:
                    return await self._advance_locked(instance, events, now)
                except LockContention:
                    raise
                except NoMatchingBranch as exc:
                    logger.warning("Instance %s has no branch to follow: %s", instance_id, exc)
                    return await self._fail_current(instance_id, str(exc), events, now)
                except Exception as exc:
                    logger.exception("Unexpected error advancing instance %s", instance_id)
                    events.clear()
                    return await self._fail_current(instance_id, f"{type(exc).__name__}: {exc}", events, now)
        finally:
            await events.flush(self.sink)

    async def cancel(self, instance_id: UUID, reason: str | None = None, now: datetime | None = None) -> WorkflowInstance:
        """Cancel a Running instance.

        An action handler already dispatched for the instance is not
        interrupted; its result is discarded when it returns.

        Raises:
            LockContention: If another worker holds the lease.
            InvalidTransition: If the instance is not Running.
        """
        now = now or utcnow()
        events = EventBuffer()
        try:
            async with instance_lease(self.repository, instance_id):
                instance = await self.repository.load_instance(instance_id)
                if not instance.is_running:
                    raise InvalidTransition(instance.id, instance.status, "cancel")
                instance.status = InstanceStatus.CANCELLED
                instance.cancelled_at = now
                await self.repository.save_instance(instance)
                events.add(
                    InstanceCancelled(
                        instance_id=instance.id,
                        timestamp=now,
                        reason=reason,
                        current_step=instance.current_step_id,
                    )
                )
                logger.info("Cancelled instance %s on step %s", instance.id, instance.current_step_id)
                return instance
        finally:
            await events.flush(self.sink)

    async def record_decision(self, approval_id: UUID, decision: Decision, now: datetime | None = None) -> WorkflowInstance:
        """Record an approval decision and apply it to the waiting instance.

        Approved completes the approval step with the decision payload as
        output. Rejected is a terminal step failure: a required step fails the
        instance, an optional one continues with its default successor.

        Raises:
            ApprovalNotFound: If the approval does not exist.
            LockContention: If another worker holds the lease.
            InvalidTransition: If the instance is no longer Running.
            AlreadyDecided: If the approval is not Pending.
        """
        now = now or utcnow()
        approval = await self.approvals.get_approval(approval_id)
        events = EventBuffer()
        try:
            async with instance_lease(self.repository, approval.instance_id):
                instance = await self.repository.load_instance(approval.instance_id)
                if not instance.is_running:
                    raise InvalidTransition(instance.id, instance.status, "decide approval for")
                approval = await self.approvals.record_decision(approval_id, decision, now=now)
                if instance.current_step_id != approval.step_id:
                    logger.warning(
                        "Approval %s decided for step %s but instance %s is on %s",
                        approval.id,
                        approval.step_id,
                        instance.id,
                        instance.current_step_id,
                    )
                    return instance

                definition = await self.definitions.get_definition(instance.definition_id)
                step = definition.get_step(approval.step_id)
                record = await self.repository.load_step(approval.instance_step_id)
                attempt = record.attempt if record is not None else 1
                if decision.approved:
                    return await self._complete_step(
                        instance, definition, step, attempt, dict(decision.payload), None, events, now
                    )
                return await self._terminal_failure(
                    instance, definition, step, attempt, self.approvals.rejection_message(decision), events, now
                )
        finally:
            await events.flush(self.sink)

    async def delegate(
        self, approval_id: UUID, delegate_to: str, now: datetime | None = None
    ) -> Approval:
        """Delegate a Pending approval under the instance lease.

        Raises:
            ApprovalNotFound: If the approval does not exist.
            LockContention: If another worker holds the lease.
            AlreadyDecided: If the approval is not Pending.
        """
        approval = await self.approvals.get_approval(approval_id)
        events = EventBuffer()
        try:
            async with instance_lease(self.repository, approval.instance_id):
                return await self.approvals.delegate(approval_id, delegate_to, now=now, events=events)
        finally:
            await events.flush(self.sink)

    async def expire_step(self, instance_step_id: UUID, now: datetime | None = None) -> WorkflowInstance | None:
        """Fail a Running attempt whose handler deadline has passed.

        The attempt goes through the same retry and failure path as a handler
        that raised ``HandlerTimeout``. Attempts that finished in the meantime
        are left alone.

        Returns:
            The instance, or None if the attempt no longer exists.

        Raises:
            LockContention: If another worker holds the lease.
        """
        now = now or utcnow()
        record = await self.repository.load_step(instance_step_id)
        if record is None:
            return None
        events = EventBuffer()
        try:
            async with instance_lease(self.repository, record.instance_id):
                instance = await self.repository.load_instance(record.instance_id)
                record = await self.repository.load_step(instance_step_id)
                if (
                    record is None
                    or not instance.is_running
                    or record.status is not StepStatus.RUNNING
                    or record.step_type is StepType.APPROVAL
                    or instance.current_step_id != record.step_id
                ):
                    return instance

                definition = await self.definitions.get_definition(instance.definition_id)
                step = definition.get_step(record.step_id)
                timeout = self.executor.action_timeout(step) if step.type is StepType.ACTION else step.timeout_seconds
                outcome = await self.executor.fail(record, step, HandlerTimeout(step.id, timeout))
                return await self._apply_failure(instance, definition, step, outcome, events, now)
        finally:
            await events.flush(self.sink)

    async def run_to_rest(
        self, instance_id: UUID, max_steps: int | None = None, now: datetime | None = None
    ) -> WorkflowInstance:
        """Advance until the instance is terminal or waiting.

        Waiting means an approval is pending or a retry is scheduled in the
        future.

        Args:
            instance_id: The instance to drive.
            max_steps: Upper bound of ``advance`` calls.
            now: Fixed current time for every call; the wall clock otherwise.
        """
        limit = max_steps if max_steps is not None else self.config.max_steps_per_run
        instance = await self.repository.load_instance(instance_id)
        for _ in range(limit):
            instance = await self.advance(instance_id, now=now)
            if not instance.is_running or await self.is_waiting(instance, now=now):
                break
        return instance

    async def is_waiting(self, instance: WorkflowInstance, now: datetime | None = None) -> bool:
        """Return whether a Running instance waits on an approval or a retry."""
        if instance.current_step_id is None:
            return False
        record = await self.repository.latest_step(instance.id, instance.current_step_id)
        if record is None:
            return False
        if record.status is StepStatus.RUNNING:
            return True
        now = now or utcnow()
        return record.status is StepStatus.PENDING and record.not_before is not None and record.not_before > now

    async def _advance_locked(self, instance: WorkflowInstance, events: EventBuffer, now: datetime) -> WorkflowInstance:
        definition = await self.definitions.get_definition(instance.definition_id)
        if instance.current_step_id is None:
            return await self._finish(instance, None, events, now)
        step = definition.get_step(instance.current_step_id)

        record = await self.repository.latest_step(instance.id, step.id)
        if record is not None and record.status is StepStatus.RUNNING:
            # Waiting on an approval, or an attempt the sweeper will expire.
            return instance
        if record is not None and record.status is StepStatus.PENDING:
            if record.not_before is not None and record.not_before > now:
                return instance
        else:
            record = InstanceStep(instance_id=instance.id, step_id=step.id, step_type=step.type, created_at=now)

        outcome = await self.executor.execute(instance, step, record, events, now)

        current = await self.repository.load_instance(instance.id)
        if not current.is_running:
            logger.info("Instance %s became %s during step %s, discarding result", instance.id, current.status, step.id)
            events.clear()
            return current

        if outcome.is_waiting:
            return current
        if outcome.status is StepStatus.COMPLETED:
            return await self._complete_step(
                current, definition, step, record.attempt, outcome.output, outcome.next_step_id, events, now
            )
        return await self._apply_failure(current, definition, step, outcome, events, now)

    async def _apply_failure(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: Step,
        outcome: StepOutcome,
        events: EventBuffer,
        now: datetime,
    ) -> WorkflowInstance:
        record = outcome.record
        error = outcome.error or f"Step '{step.id}' failed"
        if isinstance(outcome.decision, Retry):
            retry_at = now + timedelta(seconds=outcome.decision.delay)
            retry = InstanceStep(
                instance_id=instance.id,
                step_id=step.id,
                step_type=step.type,
                attempt=record.attempt + 1,
                not_before=retry_at,
                created_at=now,
            )
            await self.repository.save_step(retry)
            events.add(
                StepRetrying(
                    instance_id=instance.id,
                    timestamp=now,
                    step_id=step.id,
                    error=error,
                    attempt=record.attempt,
                    delay_seconds=outcome.decision.delay,
                    retry_at=retry_at,
                )
            )
            return instance
        return await self._terminal_failure(instance, definition, step, record.attempt, error, events, now)

    async def _terminal_failure(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: Step,
        attempt: int,
        error: str,
        events: EventBuffer,
        now: datetime,
    ) -> WorkflowInstance:
        events.add(
            StepFailed(
                instance_id=instance.id,
                timestamp=now,
                step_id=step.id,
                error=error,
                required=step.required,
                attempt=attempt,
            )
        )
        if step.required:
            return await self._fail(instance, error, step.id, events, now)

        logger.warning("Optional step %s of instance %s failed, continuing: %s", step.id, instance.id, error)
        successor = definition.default_successor_of(step)
        return await self._move_to(instance, step, successor, events, now)

    async def _complete_step(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: Step,
        attempt: int,
        output: dict[str, Any],
        next_step_id: str | None,
        events: EventBuffer,
        now: datetime,
    ) -> WorkflowInstance:
        events.add(
            StepCompleted(instance_id=instance.id, timestamp=now, step_id=step.id, output=output, attempt=attempt)
        )
        instance.context = merge_output(instance.context, output)
        successor = definition.get_step(next_step_id) if next_step_id else definition.successor_of(step)
        return await self._move_to(instance, step, successor, events, now)

    async def _move_to(
        self,
        instance: WorkflowInstance,
        step: Step,
        successor: Step | None,
        events: EventBuffer,
        now: datetime,
    ) -> WorkflowInstance:
        if successor is None:
            return await self._finish(instance, step.id, events, now)
        instance.current_step_id = successor.id
        await self.repository.save_instance(instance)
        logger.info("Instance %s moved from %s to %s", instance.id, step.id, successor.id)
        return instance

    async def _finish(
        self, instance: WorkflowInstance, final_step: str | None, events: EventBuffer, now: datetime
    ) -> WorkflowInstance:
        instance.status = InstanceStatus.COMPLETED
        instance.completed_at = now
        await self.repository.save_instance(instance)
        events.add(InstanceCompleted(instance_id=instance.id, timestamp=now, final_step=final_step))
        logger.info("Instance %s completed", instance.id)
        return instance

    async def _fail(
        self, instance: WorkflowInstance, error: str, step_id: str | None, events: EventBuffer, now: datetime
    ) -> WorkflowInstance:
        instance.status = InstanceStatus.FAILED
        instance.error = error
        instance.failed_at = now
        await self.repository.save_instance(instance)
        events.add(InstanceFailed(instance_id=instance.id, timestamp=now, error=error, failed_step=step_id))
        logger.info("Instance %s failed on step %s: %s", instance.id, step_id, error)
        return instance

    async def _fail_current(self, instance_id: UUID, error: str, events: EventBuffer, now: datetime) -> WorkflowInstance:
        # Reload so partially applied in-memory changes are not persisted.
        instance = await self.repository.load_instance(instance_id)
        if not instance.is_running:
            return instance
        step_id = instance.current_step_id
        record = await self.repository.latest_step(instance.id, step_id) if step_id else None
        if record is not None:
            if record.status in (StepStatus.PENDING, StepStatus.RUNNING):
                record.status = StepStatus.FAILED
                record.error = error
                record.completed_at = now
                await self.repository.save_step(record)
            if record.status is StepStatus.FAILED and record.error == error:
                events.add(
                    StepFailed(
                        instance_id=instance.id,
                        timestamp=now,
                        step_id=record.step_id,
                        error=error,
                        attempt=record.attempt,
                    )
                )
        return await self._fail(instance, error, step_id, events, now)
