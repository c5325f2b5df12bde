"""Database persistence layer for litestar-flows.

This module provides SQLAlchemy models, repositories, and the stores the
engine uses to persist definitions, instances, step attempts, and approvals.
"""

from __future__ import annotations

from litestar_flows.db.models import (
    ApprovalModel,
    FlowDefinitionModel,
    FlowInstanceModel,
    InstanceStepModel,
)
from litestar_flows.db.repositories import (
    ApprovalRepository,
    FlowDefinitionRepository,
    FlowInstanceRepository,
    InstanceStepRepository,
)
from litestar_flows.db.store import SQLAlchemyDefinitionStore, SQLAlchemyInstanceStore

__all__ = [
    "ApprovalModel",
    "ApprovalRepository",
    "FlowDefinitionModel",
    "FlowDefinitionRepository",
    "FlowInstanceModel",
    "FlowInstanceRepository",
    "InstanceStepModel",
    "InstanceStepRepository",
    "SQLAlchemyDefinitionStore",
    "SQLAlchemyInstanceStore",
]
