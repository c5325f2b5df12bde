"""Litestar plugin for flow integration.

This module provides the FlowsPlugin, which wires the engine into a Litestar
application: dependency injection for the orchestrator, the approval manager
and the sweeper, a background sweeper bound to the app lifespan, and an event
sink forwarding lifecycle events to Litestar's event emitter.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from litestar.di import Provide
from litestar.plugins import InitPluginProtocol

from litestar_flows.actions.registry import ActionHandlerRegistry
from litestar_flows.config import EngineConfig
from litestar_flows.core.protocols import DefinitionStore
from litestar_flows.engine.approvals import ApprovalManager
from litestar_flows.engine.local import LocalInstanceRepository
from litestar_flows.engine.orchestrator import InstanceOrchestrator
from litestar_flows.engine.registry import DefinitionRegistry
from litestar_flows.engine.sweeper import TimeoutSweeper

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from litestar import Litestar
    from litestar.config.app import AppConfig

    from litestar_flows.core.definition import WorkflowDefinition
    from litestar_flows.core.events import WorkflowEvent
    from litestar_flows.core.protocols import ActorResolver, InstanceRepository, Notifier

__all__ = ["FlowsPlugin", "FlowsPluginConfig", "LitestarEventSink"]

logger = logging.getLogger(__name__)


class LitestarEventSink:
    """Event sink forwarding workflow events to ``app.emit``.

    Events are emitted under their ``event_type`` with the event object as the
    single argument, so listeners are declared with
    ``@listener("step.completed")``. Event types nobody listens to are
    dropped, since Litestar refuses to emit events without listeners.
    """

    def __init__(self) -> None:
        self.app: Litestar | None = None

    def bind(self, app: Litestar) -> None:
        self.app = app

    async def publish(self, event: WorkflowEvent) -> None:
        if self.app is None:
            logger.debug("Dropping %s, event sink is not bound to an app", event.event_type)
            return
        listeners = getattr(self.app.event_emitter, "listeners", None)
        if listeners is not None and event.event_type not in listeners:
            return
        self.app.emit(event.event_type, event)


@dataclass
class FlowsPluginConfig:
    """Configuration for the FlowsPlugin.

    Attributes:
        definitions: Definition store. Defaults to an in-memory DefinitionRegistry.
        repository: Instance repository. Defaults to an in-memory store.
        resolver: Actor resolver for approval steps.
        actions: Action handler registry. Defaults to one with the builtin handlers.
        notifier: Notifier for notification steps. Defaults to emitting
            ``notification.requested`` events.
        engine: Engine tunables.
        register_definitions: Definitions registered on startup when the
            definition store is a DefinitionRegistry.
        dependency_key_orchestrator: DI key of the InstanceOrchestrator.
        dependency_key_approvals: DI key of the ApprovalManager.
        dependency_key_definitions: DI key of the definition store.
        dependency_key_sweeper: DI key of the TimeoutSweeper.
        enable_sweeper: Whether a background sweeper runs during the app lifespan.
        sweep_interval: Seconds between sweeps. Defaults to ``engine.sweep_interval``.
    """

    definitions: DefinitionStore | None = None
    repository: InstanceRepository | None = None
    resolver: ActorResolver | None = None
    actions: ActionHandlerRegistry | None = None
    notifier: Notifier | None = None
    engine: EngineConfig = field(default_factory=EngineConfig)
    register_definitions: list[WorkflowDefinition] = field(default_factory=list)
    dependency_key_orchestrator: str = "flow_orchestrator"
    dependency_key_approvals: str = "flow_approvals"
    dependency_key_definitions: str = "flow_definitions"
    dependency_key_sweeper: str = "flow_sweeper"
    enable_sweeper: bool = True
    sweep_interval: float | None = None


class FlowsPlugin(InitPluginProtocol):
    """Litestar plugin for workflow execution.

    Example:
        Basic usage::

            from litestar import Litestar, post
            from litestar_flows import FlowsPlugin, FlowsPluginConfig, InstanceOrchestrator


            @post("/expenses/{expense_id:str}/approval")
            async def start_approval(expense_id: str, flow_orchestrator: InstanceOrchestrator) -> dict:
                instance = await flow_orchestrator.start("expense_approval", entity_type="expense", entity_id=expense_id)
                instance = await flow_orchestrator.run_to_rest(instance.id)
                return {"instance_id": str(instance.id), "status": instance.status}


            app = Litestar(
                route_handlers=[start_approval],
                plugins=[FlowsPlugin(FlowsPluginConfig(register_definitions=[expense_definition]))],
            )
    """

    __slots__ = ("_config", "_orchestrator", "_sink", "_sweeper")

    def __init__(self, config: FlowsPluginConfig | None = None) -> None:
        """Initialize the plugin.

        Args:
            config: Optional configuration for the plugin.
        """
        self._config = config or FlowsPluginConfig()
        self._orchestrator: InstanceOrchestrator | None = None
        self._sweeper: TimeoutSweeper | None = None
        self._sink = LitestarEventSink()

    @property
    def orchestrator(self) -> InstanceOrchestrator:
        """Get the instance orchestrator.

        Raises:
            RuntimeError: If accessed before plugin initialization.
        """
        if self._orchestrator is None:
            msg = "FlowsPlugin has not been initialized. Access orchestrator after app init."
            raise RuntimeError(msg)
        return self._orchestrator

    @property
    def sweeper(self) -> TimeoutSweeper:
        """Get the timeout sweeper.

        Raises:
            RuntimeError: If accessed before plugin initialization.
        """
        if self._sweeper is None:
            msg = "FlowsPlugin has not been initialized. Access sweeper after app init."
            raise RuntimeError(msg)
        return self._sweeper

    @property
    def sink(self) -> LitestarEventSink:
        return self._sink

    def on_app_init(self, app_config: AppConfig) -> AppConfig:
        """Build the engine and register it with the application.

        This method:
        1. Creates or uses the configured stores
        2. Registers ``register_definitions`` with an in-memory registry
        3. Builds the orchestrator and the sweeper
        4. Adds dependency providers to the app config
        5. Adds a lifespan hook binding the event sink and running the sweeper

        Args:
            app_config: The Litestar application configuration.

        Returns:
            The modified application configuration.
        """
        config = self._config
        definitions = config.definitions or DefinitionRegistry()
        if config.register_definitions:
            if not isinstance(definitions, DefinitionRegistry):
                msg = "register_definitions requires the definition store to be a DefinitionRegistry"
                raise TypeError(msg)
            for definition in config.register_definitions:
                definitions.register(definition)

        repository = config.repository or LocalInstanceRepository(lock_ttl=config.engine.lock_ttl)
        self._orchestrator = InstanceOrchestrator(
            definitions=definitions,
            repository=repository,
            sink=self._sink,
            actions=config.actions,
            resolver=config.resolver,
            notifier=config.notifier,
            config=config.engine,
        )
        self._sweeper = TimeoutSweeper(self._orchestrator, config=config.engine)

        # Create dependency providers
        def provide_orchestrator() -> InstanceOrchestrator:
            return self.orchestrator

        def provide_approvals() -> ApprovalManager:
            return self.orchestrator.approvals

        def provide_definitions() -> DefinitionStore:
            return self.orchestrator.definitions

        def provide_sweeper() -> TimeoutSweeper:
            return self.sweeper

        app_config.dependencies[config.dependency_key_orchestrator] = Provide(provide_orchestrator, sync_to_thread=False)
        app_config.dependencies[config.dependency_key_approvals] = Provide(provide_approvals, sync_to_thread=False)
        app_config.dependencies[config.dependency_key_definitions] = Provide(provide_definitions, sync_to_thread=False)
        app_config.dependencies[config.dependency_key_sweeper] = Provide(provide_sweeper, sync_to_thread=False)

        app_config.lifespan.append(self._lifespan)
        return app_config

    @asynccontextmanager
    async def _lifespan(self, app: Litestar) -> AsyncIterator[None]:
        self._sink.bind(app)
        task: asyncio.Task[Any] | None = None
        if self._config.enable_sweeper:
            task = asyncio.create_task(self.sweeper.run(self._config.sweep_interval))
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
                logger.info("Timeout sweeper stopped")
