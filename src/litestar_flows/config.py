"""Engine configuration for litestar-flows."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

__all__ = ["EngineConfig"]


@dataclass
class EngineConfig:
    """Tunables shared by the engine components.

    Attributes:
        retry_base_delay: Base of the exponential retry backoff, in seconds.
        retry_max_delay: Ceiling applied to every retry delay, in seconds.
        lock_ttl: Lifetime of an instance lease. Action timeouts are capped
            at this value so a live worker never loses its lease mid-step.
        default_action_timeout: Timeout for action handlers when neither the
            action config nor the step sets one, in seconds.
        fallback_approver: Approver used when a step defines none and the
            resolver's escalation chain is exhausted.
        escalation_extension: How far ``due_at`` moves on escalation when the
            step sets neither an extension nor a timeout.
        sweep_interval: Seconds between two sweeps of the background sweeper.
        sweep_batch_size: Maximum records fetched per sweep category.
        max_steps_per_run: Upper bound for ``run_to_rest`` loops.
    """

    retry_base_delay: float = 1.0
    retry_max_delay: float = 300.0
    lock_ttl: timedelta = timedelta(minutes=5)
    default_action_timeout: float = 30.0
    fallback_approver: str | None = None
    escalation_extension: timedelta = timedelta(hours=24)
    sweep_interval: float = 60.0
    sweep_batch_size: int = 100
    max_steps_per_run: int = 100
