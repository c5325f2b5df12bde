"""Core domain module for litestar-flows.

This module exports the building blocks shared by every engine component:
types, definitions, runtime records, events, and collaborator protocols.
"""

from __future__ import annotations

from litestar_flows.core.context import MISSING, merge_output, resolve_path
from litestar_flows.core.definition import (
    ActionConfig,
    ApprovalConfig,
    Condition,
    ConditionConfig,
    NotificationConfig,
    Step,
    StepConfig,
    WorkflowDefinition,
)
from litestar_flows.core.events import (
    ApprovalCreated,
    ApprovalEscalated,
    EventBuffer,
    InstanceCancelled,
    InstanceCompleted,
    InstanceFailed,
    InstanceStarted,
    NotificationRequested,
    StepCompleted,
    StepFailed,
    StepRetrying,
    WorkflowEvent,
)
from litestar_flows.core.models import Approval, Decision, InstanceStep, Lease, WorkflowInstance, utcnow
from litestar_flows.core.protocols import (
    ActionHandler,
    ActionInvoker,
    ActorResolver,
    DefinitionStore,
    EventSink,
    InstanceRepository,
    Notifier,
)
from litestar_flows.core.types import (
    ApprovalStatus,
    Context,
    DefinitionStatus,
    InstanceStatus,
    Operator,
    StepStatus,
    StepType,
    TriggerType,
)

__all__ = [
    "MISSING",
    "ActionConfig",
    "ActionHandler",
    "ActionInvoker",
    "ActorResolver",
    "Approval",
    "ApprovalConfig",
    "ApprovalCreated",
    "ApprovalEscalated",
    "ApprovalStatus",
    "Condition",
    "ConditionConfig",
    "Context",
    "Decision",
    "DefinitionStatus",
    "DefinitionStore",
    "EventBuffer",
    "EventSink",
    "InstanceCancelled",
    "InstanceCompleted",
    "InstanceFailed",
    "InstanceRepository",
    "InstanceStarted",
    "InstanceStatus",
    "InstanceStep",
    "Lease",
    "NotificationConfig",
    "NotificationRequested",
    "Notifier",
    "Operator",
    "Step",
    "StepCompleted",
    "StepConfig",
    "StepFailed",
    "StepRetrying",
    "StepStatus",
    "StepType",
    "TriggerType",
    "WorkflowDefinition",
    "WorkflowEvent",
    "WorkflowInstance",
    "merge_output",
    "resolve_path",
    "utcnow",
]
