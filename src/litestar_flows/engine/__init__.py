"""Workflow execution engine.

This module provides the components that orchestrate workflow instances:
branch selection, retry decisions, approvals, step execution, the instance
state machine, the timeout sweeper, and in-memory collaborators.
"""

from __future__ import annotations

from litestar_flows.engine.approvals import ApprovalManager
from litestar_flows.engine.conditions import ConditionEvaluator
from litestar_flows.engine.executor import StepExecutor, StepOutcome
from litestar_flows.engine.local import InMemoryEventSink, LocalInstanceRepository, StaticActorResolver
from litestar_flows.engine.locking import instance_lease
from litestar_flows.engine.orchestrator import InstanceOrchestrator
from litestar_flows.engine.registry import DefinitionRegistry
from litestar_flows.engine.retry import Exhausted, Retry, RetryDecision, RetryPolicy
from litestar_flows.engine.sweeper import SweepReport, TimeoutSweeper

__all__ = [
    "ApprovalManager",
    "ConditionEvaluator",
    "DefinitionRegistry",
    "Exhausted",
    "InMemoryEventSink",
    "InstanceOrchestrator",
    "LocalInstanceRepository",
    "Retry",
    "RetryDecision",
    "RetryPolicy",
    "StaticActorResolver",
    "StepExecutor",
    "StepOutcome",
    "SweepReport",
    "TimeoutSweeper",
    "instance_lease",
]
