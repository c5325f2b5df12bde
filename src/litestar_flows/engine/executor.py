"""Execution of a single instance-step.

The executor dispatches one attempt to the handler for its step type, records
the attempt on its ``InstanceStep`` and, on failure, asks the retry policy
what happens next. It never changes the instance itself: the orchestrator
applies the returned ``StepOutcome``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any, cast

from litestar_flows.actions.expressions import interpolate, interpolate_data
from litestar_flows.config import EngineConfig
from litestar_flows.core.definition import ActionConfig
from litestar_flows.core.events import NotificationRequested
from litestar_flows.core.models import utcnow
from litestar_flows.core.types import StepStatus, StepType
from litestar_flows.engine.conditions import ConditionEvaluator
from litestar_flows.engine.retry import Exhausted, RetryPolicy
from litestar_flows.exceptions import HandlerError, NoMatchingBranch, StepExecutionError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime

    from litestar_flows.core.definition import NotificationConfig, Step
    from litestar_flows.core.events import EventBuffer
    from litestar_flows.core.models import Approval, InstanceStep, WorkflowInstance
    from litestar_flows.core.protocols import ActionInvoker, InstanceRepository, Notifier
    from litestar_flows.engine.approvals import ApprovalManager
    from litestar_flows.engine.retry import RetryDecision

__all__ = ["StepExecutor", "StepOutcome"]

logger = logging.getLogger(__name__)


@dataclass
class StepOutcome:
    """Result of one step attempt.

    Attributes:
        record: The instance-step the attempt was recorded on.
        status: Completed, Failed, or Running for an approval that waits.
        output: Output merged into the instance context on completion.
        next_step_id: Branch chosen by a condition step.
        error: Error message of a failed attempt.
        decision: Retry decision of a failed attempt.
        approval: Pending approval of a waiting approval step.
    """

    record: InstanceStep
    status: StepStatus
    output: dict[str, Any] = field(default_factory=dict)
    next_step_id: str | None = None
    error: str | None = None
    decision: RetryDecision | None = None
    approval: Approval | None = None

    @property
    def is_waiting(self) -> bool:
        return self.status is StepStatus.RUNNING


class StepExecutor:
    """Dispatches instance-steps to the handler for their step type.

    Attributes:
        repository: Instance persistence store the attempt is recorded in.
        actions: Invoker for action handlers.
        approvals: Approval manager for approval steps.
        notifier: Notifier for notification steps. When None a
            ``notification.requested`` event is buffered instead.
        evaluator: Branch selection for condition steps.
        retry_policy: Retry decisions for failed attempts.
        config: Engine configuration.
    """

    def __init__(
        self,
        repository: InstanceRepository,
        actions: ActionInvoker,
        approvals: ApprovalManager,
        notifier: Notifier | None = None,
        evaluator: ConditionEvaluator | None = None,
        retry_policy: RetryPolicy | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self.repository = repository
        self.actions = actions
        self.approvals = approvals
        self.notifier = notifier
        self.evaluator = evaluator or ConditionEvaluator()
        self.config = config or EngineConfig()
        self.retry_policy = retry_policy or RetryPolicy(
            base_delay=self.config.retry_base_delay,
            max_delay=self.config.retry_max_delay,
        )
        self._handlers: dict[
            StepType,
            Callable[[WorkflowInstance, Step, InstanceStep, EventBuffer, datetime], Awaitable[StepOutcome]],
        ] = {
            StepType.ACTION: self._execute_action,
            StepType.CONDITION: self._execute_condition,
            StepType.APPROVAL: self._execute_approval,
            StepType.NOTIFICATION: self._execute_notification,
        }

    def action_timeout(self, step: Step) -> float:
        """Return the handler timeout of an action step, in seconds.

        The timeout never exceeds ``lock_ttl`` so the lease outlives the call.
        """
        if isinstance(step.config, ActionConfig) and step.config.timeout is not None:
            timeout = step.config.timeout
        elif step.timeout is not None:
            timeout = step.timeout.total_seconds()
        else:
            timeout = self.config.default_action_timeout
        ceiling = self.config.lock_ttl.total_seconds()
        if timeout > ceiling:
            logger.warning(
                "Timeout %.1fs of step %s exceeds the lease TTL, capping at %.1fs", timeout, step.id, ceiling
            )
            return ceiling
        return timeout

    async def execute(
        self,
        instance: WorkflowInstance,
        step: Step,
        record: InstanceStep,
        events: EventBuffer,
        now: datetime | None = None,
    ) -> StepOutcome:
        """Run one attempt of ``step`` recorded on ``record``.

        Args:
            instance: The instance being advanced.
            step: The current step.
            record: The attempt; marked Running before dispatch.
            events: Buffer for events raised during the attempt.
            now: Current time.

        Returns:
            The outcome of the attempt.

        Raises:
            NoMatchingBranch: If a condition step cannot select a branch.
        """
        now = now or utcnow()
        record.status = StepStatus.RUNNING
        record.started_at = now
        record.input_data = dict(instance.context)
        record.not_before = None
        if step.type is StepType.ACTION:
            record.deadline_at = now + timedelta(seconds=self.action_timeout(step))
        await self.repository.save_step(record)
        logger.debug("Executing step %s attempt %d of instance %s", step.id, record.attempt, instance.id)

        try:
            return await self._handlers[step.type](instance, step, record, events, now)
        except NoMatchingBranch as exc:
            record.status = StepStatus.FAILED
            record.error = str(exc)
            record.completed_at = utcnow()
            await self.repository.save_step(record)
            raise
        except StepExecutionError as exc:
            return await self.fail(record, step, exc)

    async def fail(self, record: InstanceStep, step: Step, error: BaseException | str) -> StepOutcome:
        """Mark an attempt Failed and decide whether it is retried.

        Used both for handler errors and for attempts the sweeper found past
        their deadline.
        """
        message = str(error)
        record.status = StepStatus.FAILED
        record.error = message
        record.completed_at = utcnow()
        await self.repository.save_step(record)

        decision = self.retry_policy.decide(record.attempt, step.max_retries)
        if isinstance(decision, Exhausted):
            logger.info("Step %s failed on attempt %d, retries exhausted: %s", step.id, record.attempt, message)
        else:
            logger.info(
                "Step %s failed on attempt %d, retrying in %.1fs: %s", step.id, record.attempt, decision.delay, message
            )
        return StepOutcome(record=record, status=StepStatus.FAILED, error=message, decision=decision)

    async def _complete(self, record: InstanceStep, output: dict[str, Any]) -> None:
        record.status = StepStatus.COMPLETED
        record.output_data = output
        record.completed_at = utcnow()
        await self.repository.save_step(record)

    async def _execute_action(
        self, instance: WorkflowInstance, step: Step, record: InstanceStep, events: EventBuffer, now: datetime
    ) -> StepOutcome:
        output = await self.actions.invoke(step.config, dict(instance.context), self.action_timeout(step))
        await self._complete(record, output)
        return StepOutcome(record=record, status=StepStatus.COMPLETED, output=output)

    async def _execute_condition(
        self, instance: WorkflowInstance, step: Step, record: InstanceStep, events: EventBuffer, now: datetime
    ) -> StepOutcome:
        try:
            condition = self.evaluator.select_condition(instance.context, step.conditions)
        except NoMatchingBranch:
            raise NoMatchingBranch(step.id) from None
        await self._complete(record, {"next_step_id": condition.next_step_id, "condition_id": condition.id})
        return StepOutcome(record=record, status=StepStatus.COMPLETED, next_step_id=condition.next_step_id)

    async def _execute_approval(
        self, instance: WorkflowInstance, step: Step, record: InstanceStep, events: EventBuffer, now: datetime
    ) -> StepOutcome:
        candidates = await self.approvals.resolve_candidates(step, instance.context)
        approval = await self.approvals.create_task(record, step, candidates, events=events, now=now)
        return StepOutcome(record=record, status=StepStatus.RUNNING, approval=approval)

    async def _execute_notification(
        self, instance: WorkflowInstance, step: Step, record: InstanceStep, events: EventBuffer, now: datetime
    ) -> StepOutcome:
        config = cast("NotificationConfig", step.config)
        if self.notifier is not None:
            try:
                await self.notifier.send(instance, step, config)
            except Exception as exc:
                raise HandlerError(step.id, exc, message=f"Notification '{step.id}' failed: {exc}") from exc
        else:
            events.add(
                NotificationRequested(
                    instance_id=instance.id,
                    timestamp=now,
                    step_id=step.id,
                    channel=config.channel,
                    template=interpolate(config.template, instance.context) if config.template else None,
                    recipients=tuple(str(interpolate(r, instance.context)) for r in config.recipients),
                    data=interpolate_data(config.data, instance.context),
                )
            )
        await self._complete(record, {})
        return StepOutcome(record=record, status=StepStatus.COMPLETED)
