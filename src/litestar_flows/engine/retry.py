"""Retry decisions for failed step attempts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

__all__ = ["Exhausted", "Retry", "RetryDecision", "RetryPolicy"]


@dataclass(frozen=True)
class Retry:
    """Run the step again after ``delay`` seconds."""

    delay: float


@dataclass(frozen=True)
class Exhausted:
    """The retry budget is spent; the step fails terminally."""


RetryDecision = Union[Retry, Exhausted]


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with a fixed ceiling.

    ``attempt_count`` is the number of attempts that have failed so far. The
    policy allows ``max_retries`` retries after the first failure:
    ``Retry`` for ``1..max_retries`` and ``Exhausted`` beyond that.

    Example:
        >>> policy = RetryPolicy(base_delay=1.0, max_delay=60.0)
        >>> policy.decide(1, max_retries=2)
        Retry(delay=2.0)
        >>> policy.decide(3, max_retries=2)
        Exhausted()
    """

    base_delay: float = 1.0
    max_delay: float = 300.0

    def delay_for(self, attempt_count: int) -> float:
        """Return ``base_delay * 2**attempt_count`` capped at ``max_delay``."""
        try:
            delay = self.base_delay * (2**attempt_count)
        except OverflowError:
            return self.max_delay
        return min(delay, self.max_delay)

    def decide(self, attempt_count: int, max_retries: int) -> RetryDecision:
        if attempt_count > max(max_retries, 0):
            return Exhausted()
        return Retry(delay=self.delay_for(attempt_count))
