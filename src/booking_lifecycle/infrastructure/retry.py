"""Exponential backoff helpers shared by the bus and the orchestrator."""

from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff with optional jitter.

    ``delay(n)`` is the wait before retry *n* (1-based):
    ``base_delay * 2 ** (n - 1)``, capped at ``max_delay``, then spread by
    up to ``±jitter`` of itself.
    """

    max_attempts: int = 3  # Including the first attempt
    base_delay: float = 0.2
    max_delay: float = 5.0
    jitter: float = 0.0

    def delay(self, retry_number: int, rng: random.Random | None = None) -> float:
        raw = min(self.base_delay * (2 ** (retry_number - 1)), self.max_delay)
        if self.jitter <= 0 or raw <= 0:
            return raw
        spread = raw * self.jitter
        return max(0.0, raw + (rng or random).uniform(-spread, spread))

    def should_retry(self, attempt: int) -> bool:
        """Whether another attempt is allowed after *attempt* (1-based)."""
        return attempt < self.max_attempts
