"""Per-instance lease handling shared by the orchestrator and the sweeper."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from uuid import UUID

    from litestar_flows.core.models import Lease
    from litestar_flows.core.protocols import InstanceRepository

__all__ = ["instance_lease"]

logger = logging.getLogger(__name__)


@asynccontextmanager
async def instance_lease(repository: InstanceRepository, instance_id: UUID) -> AsyncIterator[Lease]:
    """Hold the advancement lease of one instance for the duration of the block.

    Raises:
        LockContention: If another worker holds an unexpired lease.

    Example:
        >>> async with instance_lease(repository, instance.id):
        ...     instance = await repository.load_instance(instance.id)
    """
    lease = await repository.lock(instance_id)
    logger.debug("Acquired lease on instance %s", instance_id)
    try:
        yield lease
    finally:
        await repository.unlock(lease)
        logger.debug("Released lease on instance %s", instance_id)
