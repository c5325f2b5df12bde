"""Shared test fixtures for litestar-flows test suite."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import pytest

from litestar_flows.actions.registry import ActionHandlerRegistry
from litestar_flows.config import EngineConfig
from litestar_flows.core.definition import ActionConfig, ApprovalConfig, Step, WorkflowDefinition
from litestar_flows.engine.local import InMemoryEventSink, LocalInstanceRepository, StaticActorResolver
from litestar_flows.engine.orchestrator import InstanceOrchestrator
from litestar_flows.engine.registry import DefinitionRegistry

if TYPE_CHECKING:
    from litestar_flows.core.events import WorkflowEvent


class FlakyHandler:
    """Action handler failing a fixed number of times before succeeding."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    async def __call__(self, params: dict[str, Any], context: dict[str, Any]) -> dict[str, Any]:
        self.calls += 1
        if self.calls <= self.failures:
            msg = f"transient failure {self.calls}"
            raise ConnectionError(msg)
        return {"flaky_calls": self.calls}


class FailingSink:
    """Event sink raising on every publish."""

    def __init__(self) -> None:
        self.attempts: list[WorkflowEvent] = []

    async def publish(self, event: WorkflowEvent) -> None:
        self.attempts.append(event)
        msg = "broker unavailable"
        raise RuntimeError(msg)


async def succeed(params: dict[str, Any], context: dict[str, Any]) -> dict[str, Any]:
    return {f"{params.get('name', 'step')}_done": True}


async def boom(params: dict[str, Any], context: dict[str, Any]) -> dict[str, Any]:
    msg = "handler exploded"
    raise RuntimeError(msg)


async def slow(params: dict[str, Any], context: dict[str, Any]) -> dict[str, Any]:
    await asyncio.sleep(params.get("seconds", 0.05))
    return {"slow_done": True}


def action_step(step_id: str, sequence: int, handler: str = "succeed", **kwargs: Any) -> Step:
    """Build an action step whose handler parameters name the step."""
    params = kwargs.pop("params", {"name": step_id})
    timeout = kwargs.pop("handler_timeout", None)
    return Step(id=step_id, sequence=sequence, config=ActionConfig(handler=handler, params=params, timeout=timeout), **kwargs)


@pytest.fixture
def engine_config() -> EngineConfig:
    """Engine configuration with a fallback approver."""
    return EngineConfig(retry_base_delay=1.0, retry_max_delay=60.0, fallback_approver="finance-director")


@pytest.fixture
def registry() -> DefinitionRegistry:
    """Empty in-memory definition registry."""
    return DefinitionRegistry()


@pytest.fixture
def repository() -> LocalInstanceRepository:
    """Empty in-memory instance repository."""
    return LocalInstanceRepository()


@pytest.fixture
def sink() -> InMemoryEventSink:
    """Event sink recording published events."""
    return InMemoryEventSink()


@pytest.fixture
def flaky() -> FlakyHandler:
    """Handler failing twice before succeeding."""
    return FlakyHandler(failures=2)


@pytest.fixture
def actions(flaky: FlakyHandler) -> ActionHandlerRegistry:
    """Action registry with the builtin and test handlers."""
    registry = ActionHandlerRegistry()
    registry.register("succeed", succeed)
    registry.register("boom", boom)
    registry.register("slow", slow)
    registry.register("flaky", flaky)
    return registry


@pytest.fixture
def resolver() -> StaticActorResolver:
    """Resolver with a single manager candidate."""
    return StaticActorResolver({"manager": ["alice"], "board": ["carol", "dave", "erin"]})


@pytest.fixture
def orchestrator(
    registry: DefinitionRegistry,
    repository: LocalInstanceRepository,
    sink: InMemoryEventSink,
    actions: ActionHandlerRegistry,
    resolver: StaticActorResolver,
    engine_config: EngineConfig,
) -> InstanceOrchestrator:
    """Orchestrator wired to the in-memory collaborators."""
    return InstanceOrchestrator(
        definitions=registry,
        repository=repository,
        sink=sink,
        actions=actions,
        resolver=resolver,
        config=engine_config,
    )


@pytest.fixture
def linear_definition(registry: DefinitionRegistry) -> WorkflowDefinition:
    """Registered A -> B -> C action workflow."""
    return registry.register(
        WorkflowDefinition(
            code="linear",
            name="Linear",
            steps=[action_step("a", 1), action_step("b", 2), action_step("c", 3)],
        )
    )


@pytest.fixture
def approval_definition(registry: DefinitionRegistry) -> WorkflowDefinition:
    """Registered workflow with a one hour approval between two actions."""
    return registry.register(
        WorkflowDefinition(
            code="expense_approval",
            name="Expense approval",
            tenant="acme",
            entity_type="expense",
            steps=[
                action_step("validate", 1),
                Step(
                    id="approve",
                    sequence=2,
                    timeout=timedelta(hours=1),
                    config=ApprovalConfig(role="manager", priority=2),
                ),
                action_step("pay", 3),
            ],
        )
    )
