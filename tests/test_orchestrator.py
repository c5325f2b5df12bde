"""Tests for the instance orchestrator state machine."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any

import pytest

from litestar_flows.actions.registry import ActionHandlerRegistry
from litestar_flows.config import EngineConfig
from litestar_flows.core.definition import (
    Condition,
    ConditionConfig,
    NotificationConfig,
    Step,
    WorkflowDefinition,
)
from litestar_flows.core.models import InstanceStep, utcnow
from litestar_flows.core.types import InstanceStatus, Operator, StepStatus, StepType
from litestar_flows.engine.local import InMemoryEventSink, LocalInstanceRepository
from litestar_flows.engine.orchestrator import InstanceOrchestrator
from litestar_flows.engine.registry import DefinitionRegistry
from litestar_flows.exceptions import DefinitionNotFound, InstanceNotFound, InvalidTransition, LockContention
from tests.conftest import FlakyHandler, action_step


def routing_definition(with_default: bool = True, required: bool = True) -> WorkflowDefinition:
    conditions = [
        Condition(field="amount", operator=Operator.GT, value=1000, next_step_id="director", sequence=1, id="big"),
    ]
    if with_default:
        conditions.append(Condition(next_step_id="manager", is_default=True, sequence=2, id="default"))
    return WorkflowDefinition(
        code="routing",
        name="Routing",
        steps=[
            Step(id="route", sequence=1, required=required, config=ConditionConfig(conditions=tuple(conditions))),
            action_step("manager", 2, is_terminal=True),
            action_step("director", 3),
        ],
    )


class BrokenInvoker:
    """Action invoker raising an error the executor does not expect."""

    async def invoke(self, config: Any, context: dict[str, Any], timeout: float | None) -> dict[str, Any]:
        msg = "invoker bug"
        raise KeyError(msg)


class BrokenResolver:
    """Actor resolver failing while an approval task is being created."""

    async def resolve_approvers(self, step: Step, context: dict[str, Any]) -> list[str]:
        msg = "directory offline"
        raise RuntimeError(msg)



# =============================================================================
# Start and linear progress
# =============================================================================


@pytest.mark.unit
@pytest.mark.asyncio
class TestStartAndAdvance:
    """Tests for starting instances and advancing through action steps."""

    async def test_start_pins_definition(
        self,
        orchestrator: InstanceOrchestrator,
        linear_definition: WorkflowDefinition,
        sink: InMemoryEventSink,
    ) -> None:
        instance = await orchestrator.start("linear", entity_type="order", entity_id="o-1", context={"amount": 5})

        assert instance.status is InstanceStatus.RUNNING
        assert instance.definition_id == linear_definition.id
        assert instance.definition_version == 1
        assert instance.current_step_id == "a"
        assert instance.context == {"amount": 5}
        started = sink.of_type("instance.started")
        assert len(started) == 1
        assert started[0].entity_id == "o-1"

    async def test_start_does_not_execute(
        self,
        orchestrator: InstanceOrchestrator,
        linear_definition: WorkflowDefinition,
        repository: LocalInstanceRepository,
    ) -> None:
        instance = await orchestrator.start("linear")
        assert await repository.list_steps(instance.id) == []

    async def test_start_unknown_definition(self, orchestrator: InstanceOrchestrator) -> None:
        with pytest.raises(DefinitionNotFound):
            await orchestrator.start("ghost")

    async def test_linear_three_steps(
        self,
        orchestrator: InstanceOrchestrator,
        linear_definition: WorkflowDefinition,
        sink: InMemoryEventSink,
    ) -> None:
        instance = await orchestrator.start("linear")

        for expected_step in ("b", "c"):
            instance = await orchestrator.advance(instance.id)
            assert instance.status is InstanceStatus.RUNNING
            assert instance.current_step_id == expected_step
        instance = await orchestrator.advance(instance.id)

        assert instance.status is InstanceStatus.COMPLETED
        assert instance.completed_at is not None
        assert instance.context == {"a_done": True, "b_done": True, "c_done": True}
        assert [e.step_id for e in sink.of_type("step.completed")] == ["a", "b", "c"]
        completed = sink.of_type("instance.completed")
        assert len(completed) == 1
        assert completed[0].final_step == "c"

    async def test_events_follow_transition_order(
        self,
        orchestrator: InstanceOrchestrator,
        linear_definition: WorkflowDefinition,
        sink: InMemoryEventSink,
    ) -> None:
        instance = await orchestrator.run_to_rest((await orchestrator.start("linear")).id)

        assert instance.status is InstanceStatus.COMPLETED
        assert [e.event_type for e in sink.events] == [
            "instance.started",
            "step.completed",
            "step.completed",
            "step.completed",
            "instance.completed",
        ]

    async def test_step_records_history(
        self,
        orchestrator: InstanceOrchestrator,
        linear_definition: WorkflowDefinition,
        repository: LocalInstanceRepository,
    ) -> None:
        instance = await orchestrator.start("linear", context={"seed": 1})
        await orchestrator.run_to_rest(instance.id)

        records = await repository.list_steps(instance.id)
        assert [(r.step_id, r.status, r.attempt) for r in records] == [
            ("a", StepStatus.COMPLETED, 1),
            ("b", StepStatus.COMPLETED, 1),
            ("c", StepStatus.COMPLETED, 1),
        ]
        assert records[0].input_data == {"seed": 1}
        assert records[1].input_data == {"seed": 1, "a_done": True}
        assert records[2].output_data == {"c_done": True}

    async def test_advance_terminal_instance_is_noop(
        self,
        orchestrator: InstanceOrchestrator,
        linear_definition: WorkflowDefinition,
        repository: LocalInstanceRepository,
        sink: InMemoryEventSink,
    ) -> None:
        instance = await orchestrator.run_to_rest((await orchestrator.start("linear")).id)
        records_before = await repository.list_steps(instance.id)
        sink.clear()

        again = await orchestrator.advance(instance.id)

        assert again == instance
        assert sink.events == []
        assert await repository.list_steps(instance.id) == records_before

    async def test_advance_unknown_instance(self, orchestrator: InstanceOrchestrator) -> None:
        from uuid import uuid4

        with pytest.raises(InstanceNotFound):
            await orchestrator.advance(uuid4())

    async def test_explicit_next_step(
        self, orchestrator: InstanceOrchestrator, registry: DefinitionRegistry
    ) -> None:
        registry.register(
            WorkflowDefinition(
                code="skip",
                name="Skip",
                steps=[action_step("a", 1, next_step_id="c"), action_step("b", 2), action_step("c", 3)],
            )
        )

        instance = await orchestrator.run_to_rest((await orchestrator.start("skip")).id)

        assert instance.status is InstanceStatus.COMPLETED
        assert "b_done" not in instance.context

    async def test_new_version_does_not_affect_running_instance(
        self,
        orchestrator: InstanceOrchestrator,
        linear_definition: WorkflowDefinition,
        registry: DefinitionRegistry,
    ) -> None:
        instance = await orchestrator.start("linear")
        registry.register(WorkflowDefinition(code="linear", name="Linear", version=2, steps=[action_step("z", 1)]))

        instance = await orchestrator.run_to_rest(instance.id)
        fresh = await orchestrator.start("linear")

        assert instance.status is InstanceStatus.COMPLETED
        assert instance.context == {"a_done": True, "b_done": True, "c_done": True}
        assert fresh.definition_version == 2
        assert fresh.current_step_id == "z"


# =============================================================================
# Leasing
# =============================================================================


@pytest.mark.unit
@pytest.mark.asyncio
class TestLeasing:
    """Tests for mutual exclusion between workers."""

    async def test_concurrent_advances_one_wins(
        self, orchestrator: InstanceOrchestrator, registry: DefinitionRegistry, sink: InMemoryEventSink
    ) -> None:
        registry.register(
            WorkflowDefinition(
                code="slow",
                name="Slow",
                steps=[action_step("a", 1, handler="slow", params={"seconds": 0.05}), action_step("b", 2)],
            )
        )
        instance = await orchestrator.start("slow")

        results = await asyncio.gather(*(orchestrator.advance(instance.id) for _ in range(5)), return_exceptions=True)

        contended = [r for r in results if isinstance(r, LockContention)]
        advanced = [r for r in results if not isinstance(r, BaseException)]
        assert len(contended) == 4
        assert len(advanced) == 1
        assert advanced[0].current_step_id == "b"
        assert len(sink.of_type("step.completed")) == 1

    async def test_lease_released_after_advance(
        self,
        orchestrator: InstanceOrchestrator,
        linear_definition: WorkflowDefinition,
        repository: LocalInstanceRepository,
    ) -> None:
        instance = await orchestrator.start("linear")
        await orchestrator.advance(instance.id)
        assert not repository.is_locked(instance.id)

    async def test_lease_released_after_failure(
        self, orchestrator: InstanceOrchestrator, registry: DefinitionRegistry, repository: LocalInstanceRepository
    ) -> None:
        registry.register(WorkflowDefinition(code="boom", name="Boom", steps=[action_step("a", 1, handler="boom")]))
        instance = await orchestrator.start("boom")

        await orchestrator.advance(instance.id)

        assert not repository.is_locked(instance.id)

    async def test_held_lease_blocks_advance(
        self,
        orchestrator: InstanceOrchestrator,
        linear_definition: WorkflowDefinition,
        repository: LocalInstanceRepository,
    ) -> None:
        instance = await orchestrator.start("linear")
        lease = await repository.lock(instance.id)

        with pytest.raises(LockContention):
            await orchestrator.advance(instance.id)
        with pytest.raises(LockContention):
            await orchestrator.cancel(instance.id)

        await repository.unlock(lease)
        instance = await orchestrator.advance(instance.id)
        assert instance.current_step_id == "b"
        assert len(await repository.list_steps(instance.id)) == 1

    async def test_expired_lease_is_taken_over(self, linear_definition: WorkflowDefinition) -> None:
        clock_now = [utcnow()]
        repository = LocalInstanceRepository(lock_ttl=timedelta(seconds=30), clock=lambda: clock_now[0])
        registry = DefinitionRegistry()
        registry.register(linear_definition)
        orchestrator = InstanceOrchestrator(definitions=registry, repository=repository)
        instance = await orchestrator.start("linear")

        await repository.lock(instance.id)
        clock_now[0] += timedelta(minutes=1)

        instance = await orchestrator.advance(instance.id)
        assert instance.current_step_id == "b"


# =============================================================================
# Cancellation
# =============================================================================


@pytest.mark.unit
@pytest.mark.asyncio
class TestCancel:
    """Tests for cancelling instances."""

    async def test_cancel_running_instance(
        self,
        orchestrator: InstanceOrchestrator,
        linear_definition: WorkflowDefinition,
        sink: InMemoryEventSink,
    ) -> None:
        instance = await orchestrator.start("linear")
        await orchestrator.advance(instance.id)

        cancelled = await orchestrator.cancel(instance.id, reason="customer withdrew")

        assert cancelled.status is InstanceStatus.CANCELLED
        assert cancelled.cancelled_at is not None
        event = sink.of_type("instance.cancelled")[0]
        assert event.reason == "customer withdrew"
        assert event.current_step == "b"

    async def test_cancelled_instance_does_not_advance(
        self,
        orchestrator: InstanceOrchestrator,
        linear_definition: WorkflowDefinition,
        repository: LocalInstanceRepository,
    ) -> None:
        instance = await orchestrator.start("linear")
        await orchestrator.cancel(instance.id)

        instance = await orchestrator.advance(instance.id)

        assert instance.status is InstanceStatus.CANCELLED
        assert await repository.list_steps(instance.id) == []

    @pytest.mark.parametrize("handler", ["succeed", "boom"])
    async def test_cancel_terminal_instance_raises(
        self,
        orchestrator: InstanceOrchestrator,
        registry: DefinitionRegistry,
        sink: InMemoryEventSink,
        handler: str,
    ) -> None:
        registry.register(WorkflowDefinition(code="one", name="One", steps=[action_step("a", 1, handler=handler)]))
        instance = await orchestrator.run_to_rest((await orchestrator.start("one")).id)
        assert instance.status.is_terminal

        with pytest.raises(InvalidTransition):
            await orchestrator.cancel(instance.id)
        assert sink.of_type("instance.cancelled") == []

    async def test_result_discarded_when_cancelled_during_handler(
        self,
        orchestrator: InstanceOrchestrator,
        registry: DefinitionRegistry,
        repository: LocalInstanceRepository,
        actions: ActionHandlerRegistry,
        sink: InMemoryEventSink,
    ) -> None:
        async def cancel_behind_lease(params: dict[str, Any], context: dict[str, Any]) -> dict[str, Any]:
            # Another worker that took over an expired lease cancels the instance.
            current = await repository.load_instance(instance.id)
            current.status = InstanceStatus.CANCELLED
            await repository.save_instance(current)
            return {"late": True}

        actions.register("cancel_behind_lease", cancel_behind_lease)
        registry.register(
            WorkflowDefinition(
                code="race",
                name="Race",
                steps=[action_step("a", 1, handler="cancel_behind_lease"), action_step("b", 2)],
            )
        )
        instance = await orchestrator.start("race")

        result = await orchestrator.advance(instance.id)

        assert result.status is InstanceStatus.CANCELLED
        assert "late" not in result.context
        assert result.current_step_id == "a"
        assert sink.of_type("step.completed") == []


# =============================================================================
# Failures and retries
# =============================================================================


@pytest.mark.unit
@pytest.mark.asyncio
class TestFailures:
    """Tests for step failures, retries, and required/optional semantics."""

    async def test_required_step_failure_fails_instance(
        self, orchestrator: InstanceOrchestrator, registry: DefinitionRegistry, sink: InMemoryEventSink
    ) -> None:
        registry.register(
            WorkflowDefinition(
                code="boom", name="Boom", steps=[action_step("a", 1, handler="boom"), action_step("b", 2)]
            )
        )
        instance = await orchestrator.start("boom")

        instance = await orchestrator.advance(instance.id)

        assert instance.status is InstanceStatus.FAILED
        assert "handler exploded" in instance.error
        assert instance.failed_at is not None
        assert [e.event_type for e in sink.events[1:]] == ["step.failed", "instance.failed"]
        assert sink.of_type("instance.failed")[0].failed_step == "a"

    async def test_optional_step_failure_continues(
        self,
        orchestrator: InstanceOrchestrator,
        registry: DefinitionRegistry,
        sink: InMemoryEventSink,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        registry.register(
            WorkflowDefinition(
                code="optional",
                name="Optional",
                steps=[action_step("a", 1, handler="boom", required=False), action_step("b", 2)],
            )
        )
        instance = await orchestrator.start("optional")

        with caplog.at_level("WARNING"):
            instance = await orchestrator.run_to_rest(instance.id)

        assert instance.status is InstanceStatus.COMPLETED
        assert instance.context == {"b_done": True}
        assert sink.of_type("step.failed")[0].required is False
        assert "Optional step a" in caplog.text

    async def test_retry_scheduled_then_succeeds(
        self,
        orchestrator: InstanceOrchestrator,
        registry: DefinitionRegistry,
        repository: LocalInstanceRepository,
        sink: InMemoryEventSink,
        flaky: FlakyHandler,
    ) -> None:
        registry.register(
            WorkflowDefinition(code="flaky", name="Flaky", steps=[action_step("a", 1, handler="flaky", max_retries=2)])
        )
        t0 = utcnow()
        instance = await orchestrator.start("flaky", now=t0)

        instance = await orchestrator.advance(instance.id, now=t0)
        assert instance.status is InstanceStatus.RUNNING
        retry = await repository.latest_step(instance.id, "a")
        assert retry is not None
        assert (retry.status, retry.attempt, retry.not_before) == (StepStatus.PENDING, 2, t0 + timedelta(seconds=2))
        assert await orchestrator.is_waiting(instance, now=t0)

        # Not due yet.
        await orchestrator.advance(instance.id, now=t0 + timedelta(seconds=1))
        assert flaky.calls == 1

        instance = await orchestrator.advance(instance.id, now=t0 + timedelta(seconds=2))
        assert flaky.calls == 2
        retry = await repository.latest_step(instance.id, "a")
        assert retry is not None
        assert retry.not_before == t0 + timedelta(seconds=6)

        instance = await orchestrator.advance(instance.id, now=t0 + timedelta(seconds=6))
        assert instance.status is InstanceStatus.COMPLETED
        assert instance.context == {"flaky_calls": 3}

        retrying = sink.of_type("step.retrying")
        assert [(e.attempt, e.delay_seconds) for e in retrying] == [(1, 2.0), (2, 4.0)]
        assert sink.of_type("step.completed")[0].attempt == 3
        records = await repository.list_steps(instance.id)
        assert [(r.attempt, r.status) for r in records] == [
            (1, StepStatus.FAILED),
            (2, StepStatus.FAILED),
            (3, StepStatus.COMPLETED),
        ]

    async def test_retries_exhausted(
        self, orchestrator: InstanceOrchestrator, registry: DefinitionRegistry, sink: InMemoryEventSink
    ) -> None:
        registry.register(
            WorkflowDefinition(code="boom", name="Boom", steps=[action_step("a", 1, handler="boom", max_retries=1)])
        )
        t0 = utcnow()
        instance = await orchestrator.start("boom", now=t0)

        instance = await orchestrator.advance(instance.id, now=t0)
        assert instance.status is InstanceStatus.RUNNING
        instance = await orchestrator.advance(instance.id, now=t0 + timedelta(seconds=5))

        assert instance.status is InstanceStatus.FAILED
        assert len(sink.of_type("step.retrying")) == 1
        failed = sink.of_type("step.failed")
        assert len(failed) == 1
        assert failed[0].attempt == 2

    async def test_handler_timeout_is_a_step_failure(
        self, orchestrator: InstanceOrchestrator, registry: DefinitionRegistry
    ) -> None:
        registry.register(
            WorkflowDefinition(
                code="timeout",
                name="Timeout",
                steps=[action_step("a", 1, handler="slow", params={"seconds": 1}, handler_timeout=0.01)],
            )
        )
        instance = await orchestrator.start("timeout")

        instance = await orchestrator.advance(instance.id)

        assert instance.status is InstanceStatus.FAILED
        assert "timed out" in instance.error

    async def test_unknown_handler_fails_step(
        self, orchestrator: InstanceOrchestrator, registry: DefinitionRegistry
    ) -> None:
        registry.register(WorkflowDefinition(code="ghost", name="Ghost", steps=[action_step("a", 1, handler="ghost")]))

        instance = await orchestrator.run_to_rest((await orchestrator.start("ghost")).id)

        assert instance.status is InstanceStatus.FAILED
        assert "not registered" in instance.error

    async def test_unexpected_error_fails_instance(
        self,
        registry: DefinitionRegistry,
        repository: LocalInstanceRepository,
        sink: InMemoryEventSink,
        linear_definition: WorkflowDefinition,
    ) -> None:
        orchestrator = InstanceOrchestrator(
            definitions=registry, repository=repository, sink=sink, actions=BrokenInvoker()
        )
        instance = await orchestrator.start("linear")

        instance = await orchestrator.advance(instance.id)

        assert instance.status is InstanceStatus.FAILED
        assert instance.error.startswith("KeyError")
        assert [e.event_type for e in sink.events] == ["instance.started", "step.failed", "instance.failed"]
        assert sink.of_type("step.failed")[0].step_id == "a"
        records = await repository.list_steps(instance.id)
        assert [(r.step_id, r.status, r.error) for r in records] == [("a", StepStatus.FAILED, instance.error)]
        assert not repository.is_locked(instance.id)

    async def test_unexpected_error_closes_approval_attempt(
        self,
        registry: DefinitionRegistry,
        repository: LocalInstanceRepository,
        sink: InMemoryEventSink,
        approval_definition: WorkflowDefinition,
        actions: ActionHandlerRegistry,
    ) -> None:
        orchestrator = InstanceOrchestrator(
            definitions=registry, repository=repository, sink=sink, actions=actions, resolver=BrokenResolver()
        )
        instance = await orchestrator.start("expense_approval", tenant="acme")

        instance = await orchestrator.run_to_rest(instance.id)

        assert instance.status is InstanceStatus.FAILED
        assert instance.error == "RuntimeError: directory offline"
        records = await repository.list_steps(instance.id)
        assert [(r.step_id, r.status) for r in records] == [
            ("validate", StepStatus.COMPLETED),
            ("approve", StepStatus.FAILED),
        ]
        (failed,) = sink.of_type("step.failed")
        assert (failed.step_id, failed.attempt) == ("approve", 1)
        assert await repository.list_approvals(instance.id) == []

    async def test_expire_stalled_attempt(
        self,
        orchestrator: InstanceOrchestrator,
        registry: DefinitionRegistry,
        repository: LocalInstanceRepository,
        sink: InMemoryEventSink,
    ) -> None:
        registry.register(
            WorkflowDefinition(code="stall", name="Stall", steps=[action_step("a", 1, max_retries=1), action_step("b", 2)])
        )
        t0 = utcnow()
        instance = await orchestrator.start("stall", now=t0)
        # A worker dispatched the handler and died before recording the result.
        stalled = InstanceStep(
            instance_id=instance.id,
            step_id="a",
            step_type=StepType.ACTION,
            status=StepStatus.RUNNING,
            started_at=t0,
            deadline_at=t0 + timedelta(seconds=30),
        )
        await repository.save_step(stalled)

        assert (await orchestrator.advance(instance.id, now=t0)).current_step_id == "a"

        later = t0 + timedelta(minutes=1)
        instance = await orchestrator.expire_step(stalled.id, now=later)

        assert instance is not None
        assert instance.status is InstanceStatus.RUNNING
        expired = await repository.load_step(stalled.id)
        assert expired is not None
        assert expired.status is StepStatus.FAILED
        assert "timed out" in expired.error
        assert sink.of_type("step.retrying")[0].attempt == 1

        instance = await orchestrator.run_to_rest(instance.id, now=later + timedelta(seconds=5))
        assert instance.status is InstanceStatus.COMPLETED

    async def test_expire_finished_attempt_is_noop(
        self,
        orchestrator: InstanceOrchestrator,
        linear_definition: WorkflowDefinition,
        repository: LocalInstanceRepository,
    ) -> None:
        instance = await orchestrator.start("linear")
        await orchestrator.advance(instance.id)
        record = (await repository.list_steps(instance.id))[0]

        result = await orchestrator.expire_step(record.id)

        assert result is not None
        assert result.current_step_id == "b"
        assert (await repository.load_step(record.id)).status is StepStatus.COMPLETED


# =============================================================================
# Condition steps
# =============================================================================


@pytest.mark.unit
@pytest.mark.asyncio
class TestConditionSteps:
    """Tests for branching within running instances."""

    @pytest.mark.parametrize(("amount", "expected"), [(5000, "director"), (10, "manager")])
    async def test_routes_by_context(
        self, orchestrator: InstanceOrchestrator, registry: DefinitionRegistry, amount: int, expected: str
    ) -> None:
        registry.register(routing_definition())
        instance = await orchestrator.start("routing", context={"amount": amount})

        instance = await orchestrator.advance(instance.id)

        assert instance.current_step_id == expected

    async def test_terminal_branch_completes(
        self, orchestrator: InstanceOrchestrator, registry: DefinitionRegistry, sink: InMemoryEventSink
    ) -> None:
        registry.register(routing_definition())

        instance = await orchestrator.run_to_rest((await orchestrator.start("routing", context={"amount": 10})).id)

        assert instance.status is InstanceStatus.COMPLETED
        assert "director_done" not in instance.context
        assert sink.of_type("instance.completed")[0].final_step == "manager"

    async def test_condition_records_chosen_branch(
        self,
        orchestrator: InstanceOrchestrator,
        registry: DefinitionRegistry,
        repository: LocalInstanceRepository,
    ) -> None:
        registry.register(routing_definition())
        instance = await orchestrator.start("routing", context={"amount": 5000})

        instance = await orchestrator.advance(instance.id)

        record = await repository.latest_step(instance.id, "route")
        assert record is not None
        assert record.output_data == {"next_step_id": "director", "condition_id": "big"}
        assert instance.context == {"amount": 5000}

    async def test_no_matching_branch_fails_instance(
        self, orchestrator: InstanceOrchestrator, registry: DefinitionRegistry, sink: InMemoryEventSink
    ) -> None:
        registry.register(routing_definition(with_default=False))
        instance = await orchestrator.start("routing", context={"amount": 10})

        instance = await orchestrator.advance(instance.id)

        assert instance.status is InstanceStatus.FAILED
        assert "No condition matched" in instance.error
        assert sink.of_type("instance.failed")[0].failed_step == "route"
        (failed,) = sink.of_type("step.failed")
        assert failed.step_id == "route"
        assert failed.error == instance.error
        assert [e.event_type for e in sink.events][-2:] == ["step.failed", "instance.failed"]

    async def test_no_matching_branch_is_not_retried(
        self, orchestrator: InstanceOrchestrator, registry: DefinitionRegistry, repository: LocalInstanceRepository
    ) -> None:
        registry.register(routing_definition(with_default=False, required=False))
        instance = await orchestrator.start("routing", context={"amount": 10})

        instance = await orchestrator.advance(instance.id)

        assert instance.status is InstanceStatus.FAILED
        records = await repository.list_steps(instance.id)
        assert [(r.step_id, r.status) for r in records] == [("route", StepStatus.FAILED)]


# =============================================================================
# Notification steps
# =============================================================================


@pytest.mark.unit
@pytest.mark.asyncio
class TestNotificationSteps:
    """Tests for notification steps."""

    async def test_default_notifier_emits_event(
        self, orchestrator: InstanceOrchestrator, registry: DefinitionRegistry, sink: InMemoryEventSink
    ) -> None:
        registry.register(
            WorkflowDefinition(
                code="notify",
                name="Notify",
                steps=[
                    Step(
                        id="tell",
                        sequence=1,
                        config=NotificationConfig(
                            channel="email",
                            template="Expense {{expense.id}} approved",
                            recipients=("{{owner}}",),
                            data={"amount": "{{expense.amount}}"},
                        ),
                    )
                ],
            )
        )
        context = {"owner": "ada@x.io", "expense": {"id": "e-9", "amount": 40}}

        instance = await orchestrator.run_to_rest((await orchestrator.start("notify", context=context)).id)

        assert instance.status is InstanceStatus.COMPLETED
        event = sink.of_type("notification.requested")[0]
        assert event.channel == "email"
        assert event.template == "Expense e-9 approved"
        assert event.recipients == ("ada@x.io",)
        assert event.data == {"amount": 40}

    async def test_custom_notifier(
        self, registry: DefinitionRegistry, repository: LocalInstanceRepository, sink: InMemoryEventSink
    ) -> None:
        sent: list[str] = []

        class RecordingNotifier:
            async def send(self, instance: Any, step: Step, config: NotificationConfig) -> None:
                sent.append(config.channel)

        registry.register(
            WorkflowDefinition(
                code="notify", name="Notify", steps=[Step(id="tell", config=NotificationConfig(channel="sms"))]
            )
        )
        orchestrator = InstanceOrchestrator(
            definitions=registry, repository=repository, sink=sink, notifier=RecordingNotifier()
        )

        instance = await orchestrator.run_to_rest((await orchestrator.start("notify")).id)

        assert instance.status is InstanceStatus.COMPLETED
        assert sent == ["sms"]
        assert sink.of_type("notification.requested") == []


# =============================================================================
# Running to rest
# =============================================================================


@pytest.mark.unit
@pytest.mark.asyncio
class TestRunToRest:
    """Tests for driving an instance until it is terminal or waiting."""

    async def test_stops_at_approval(
        self, orchestrator: InstanceOrchestrator, approval_definition: WorkflowDefinition
    ) -> None:
        instance = await orchestrator.start("expense_approval", tenant="acme")

        instance = await orchestrator.run_to_rest(instance.id)

        assert instance.status is InstanceStatus.RUNNING
        assert instance.current_step_id == "approve"
        assert await orchestrator.is_waiting(instance)

    async def test_respects_max_steps(
        self, orchestrator: InstanceOrchestrator, linear_definition: WorkflowDefinition
    ) -> None:
        instance = await orchestrator.start("linear")

        instance = await orchestrator.run_to_rest(instance.id, max_steps=2)

        assert instance.status is InstanceStatus.RUNNING
        assert instance.current_step_id == "c"

    async def test_stops_at_scheduled_retry(
        self, orchestrator: InstanceOrchestrator, registry: DefinitionRegistry, flaky: FlakyHandler
    ) -> None:
        registry.register(
            WorkflowDefinition(code="flaky", name="Flaky", steps=[action_step("a", 1, handler="flaky", max_retries=5)])
        )

        instance = await orchestrator.run_to_rest((await orchestrator.start("flaky")).id)

        assert instance.status is InstanceStatus.RUNNING
        assert flaky.calls == 1


# =============================================================================
# Action timeouts and leases
# =============================================================================


@pytest.mark.unit
class TestActionTimeout:
    """Tests for deriving the action handler timeout."""

    @pytest.fixture
    def short_lease_orchestrator(
        self, registry: DefinitionRegistry, repository: LocalInstanceRepository
    ) -> InstanceOrchestrator:
        config = EngineConfig(lock_ttl=timedelta(seconds=10), default_action_timeout=3.0)
        return InstanceOrchestrator(definitions=registry, repository=repository, config=config)

    def test_config_timeout_wins(self, short_lease_orchestrator: InstanceOrchestrator) -> None:
        step = action_step("a", 1, handler_timeout=2.0, timeout=timedelta(seconds=8))
        assert short_lease_orchestrator.executor.action_timeout(step) == 2.0

    def test_step_timeout_then_default(self, short_lease_orchestrator: InstanceOrchestrator) -> None:
        executor = short_lease_orchestrator.executor

        assert executor.action_timeout(action_step("a", 1, timeout=timedelta(seconds=8))) == 8.0
        assert executor.action_timeout(action_step("b", 2)) == 3.0

    def test_capped_at_lease_ttl(
        self, short_lease_orchestrator: InstanceOrchestrator, caplog: pytest.LogCaptureFixture
    ) -> None:
        step = action_step("slow_call", 1, timeout=timedelta(minutes=2))

        with caplog.at_level(logging.WARNING, logger="litestar_flows.engine.executor"):
            timeout = short_lease_orchestrator.executor.action_timeout(step)

        assert timeout == 10.0
        assert "exceeds the lease TTL" in caplog.text
