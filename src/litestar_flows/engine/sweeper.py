"""Recurring scan for expired attempts, overdue approvals, and due retries."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from litestar_flows.core.events import EventBuffer
from litestar_flows.core.models import utcnow
from litestar_flows.engine.locking import instance_lease
from litestar_flows.exceptions import LockContention

if TYPE_CHECKING:
    from datetime import datetime

    from litestar_flows.config import EngineConfig
    from litestar_flows.core.models import Approval
    from litestar_flows.engine.orchestrator import InstanceOrchestrator

__all__ = ["SweepReport", "TimeoutSweeper"]

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Counters of one sweep.

    Attributes:
        expired: Running attempts failed with a handler timeout.
        escalated: Overdue approvals escalated.
        retried: Due retries advanced.
        contended: Items skipped because another worker held the lease.
        errors: Items that raised an unexpected error.
    """

    expired: int = 0
    escalated: int = 0
    retried: int = 0
    contended: int = 0
    errors: int = 0

    @property
    def total(self) -> int:
        return self.expired + self.escalated + self.retried


class TimeoutSweeper:
    """Feeds timed-out work back into the orchestrator and the approval manager.

    Every mutation happens under the same instance lease the orchestrator
    uses, so a sweep can run concurrently with workers advancing the same
    instances. Contended instances are skipped and picked up by a later sweep.

    Example:
        >>> sweeper = TimeoutSweeper(orchestrator)
        >>> report = await sweeper.sweep()
        >>> report.escalated
        1
    """

    def __init__(self, orchestrator: InstanceOrchestrator, config: EngineConfig | None = None) -> None:
        self.orchestrator = orchestrator
        self.config = config or orchestrator.config

    async def sweep(self, now: datetime | None = None) -> SweepReport:
        """Run one pass over stalled attempts, overdue approvals, and due retries."""
        now = now or utcnow()
        report = SweepReport()
        repository = self.orchestrator.repository
        limit = self.config.sweep_batch_size

        for record in await repository.find_stalled_steps(now, limit):
            try:
                await self.orchestrator.expire_step(record.id, now=now)
                report.expired += 1
            except LockContention:
                report.contended += 1
            except Exception:
                logger.exception("Failed to expire step %s of instance %s", record.step_id, record.instance_id)
                report.errors += 1

        for approval in await repository.find_overdue_approvals(now, limit):
            try:
                if await self._escalate(approval, now):
                    report.escalated += 1
            except LockContention:
                report.contended += 1
            except Exception:
                logger.exception("Failed to escalate approval %s", approval.id)
                report.errors += 1

        for record in await repository.find_due_retries(now, limit):
            try:
                await self.orchestrator.advance(record.instance_id, now=now)
                report.retried += 1
            except LockContention:
                report.contended += 1
            except Exception:
                logger.exception("Failed to retry step %s of instance %s", record.step_id, record.instance_id)
                report.errors += 1

        if report.total or report.contended or report.errors:
            logger.info(
                "Sweep: %d expired, %d escalated, %d retried, %d contended, %d errors",
                report.expired,
                report.escalated,
                report.retried,
                report.contended,
                report.errors,
            )
        return report

    async def _escalate(self, approval: Approval, now: datetime) -> bool:
        repository = self.orchestrator.repository
        events = EventBuffer()
        try:
            async with instance_lease(repository, approval.instance_id):
                instance = await repository.load_instance(approval.instance_id)
                if not instance.is_running:
                    return False
                escalated = await self.orchestrator.approvals.escalate(approval.id, now=now, events=events)
                return escalated is not None
        finally:
            await events.flush(self.orchestrator.sink)

    async def run(self, interval: float | None = None) -> None:
        """Sweep forever, sleeping ``interval`` seconds between passes.

        Stops when the surrounding task is cancelled.
        """
        interval = self.config.sweep_interval if interval is None else interval
        logger.info("Timeout sweeper started, interval %.1fs", interval)
        while True:
            try:
                await self.sweep()
            except Exception:
                logger.exception("Sweep failed")
            await asyncio.sleep(interval)
