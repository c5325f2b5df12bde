"""Litestar Flows - workflow definition and instance execution for Litestar.

This package turns declarative workflow definitions (ordered steps, branch
conditions, approval rules) into resumable instances that advance one step
at a time, evaluate branches, create and escalate approval tasks, and retry
or fail individual steps without corrupting instance state.

Key Features:
    - Versioned definitions with action, condition, approval, and notification steps
    - Per-instance leases so concurrent workers never advance the same instance twice
    - Exponential retry backoff and required/optional step failure handling
    - Approval escalation and delegation driven by a timeout sweeper
    - In-memory and SQLAlchemy persistence
    - Litestar plugin with dependency injection and event emission

Example:
    >>> from litestar_flows import (
    ...     ActionConfig,
    ...     DefinitionRegistry,
    ...     InstanceOrchestrator,
    ...     LocalInstanceRepository,
    ...     Step,
    ...     WorkflowDefinition,
    ... )
    >>>
    >>> registry = DefinitionRegistry()
    >>> registry.register(
    ...     WorkflowDefinition(
    ...         code="onboarding",
    ...         name="Onboarding",
    ...         steps=[
    ...             Step(id="welcome", config=ActionConfig(handler="set_context", params={"data": {"welcomed": True}})),
    ...         ],
    ...     )
    ... )
    >>> orchestrator = InstanceOrchestrator(definitions=registry, repository=LocalInstanceRepository())
    >>> instance = await orchestrator.start("onboarding")
    >>> instance = await orchestrator.run_to_rest(instance.id)
"""

from __future__ import annotations

from litestar_flows.__metadata__ import __project__, __version__
from litestar_flows.config import EngineConfig
from litestar_flows.core import (
    ActionConfig,
    Approval,
    ApprovalConfig,
    ApprovalStatus,
    Condition,
    ConditionConfig,
    Decision,
    InstanceStatus,
    InstanceStep,
    NotificationConfig,
    Operator,
    Step,
    StepStatus,
    StepType,
    WorkflowDefinition,
    WorkflowInstance,
)
from litestar_flows.engine import (
    ApprovalManager,
    DefinitionRegistry,
    InMemoryEventSink,
    InstanceOrchestrator,
    LocalInstanceRepository,
    StaticActorResolver,
    TimeoutSweeper,
)
from litestar_flows.exceptions import (
    AlreadyDecided,
    ApprovalNotFound,
    DefinitionNotFound,
    DefinitionValidationError,
    ExpressionError,
    FlowsError,
    HandlerError,
    HandlerTimeout,
    InstanceNotFound,
    InvalidTransition,
    LockContention,
    NoMatchingBranch,
    StepExecutionError,
    UnknownActionHandler,
)
from litestar_flows.plugin import FlowsPlugin, FlowsPluginConfig, LitestarEventSink

__all__ = (
    "ActionConfig",
    "AlreadyDecided",
    "Approval",
    "ApprovalConfig",
    "ApprovalManager",
    "ApprovalNotFound",
    "ApprovalStatus",
    "Condition",
    "ConditionConfig",
    "Decision",
    "DefinitionNotFound",
    "DefinitionRegistry",
    "DefinitionValidationError",
    "EngineConfig",
    "ExpressionError",
    "FlowsError",
    "FlowsPlugin",
    "FlowsPluginConfig",
    "HandlerError",
    "HandlerTimeout",
    "InMemoryEventSink",
    "InstanceNotFound",
    "InstanceOrchestrator",
    "InstanceStatus",
    "InstanceStep",
    "InvalidTransition",
    "LitestarEventSink",
    "LocalInstanceRepository",
    "LockContention",
    "NoMatchingBranch",
    "NotificationConfig",
    "Operator",
    "StaticActorResolver",
    "Step",
    "StepExecutionError",
    "StepStatus",
    "StepType",
    "TimeoutSweeper",
    "UnknownActionHandler",
    "WorkflowDefinition",
    "WorkflowInstance",
    "__project__",
    "__version__",
)
