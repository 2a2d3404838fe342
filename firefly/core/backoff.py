"""
Firefly Offline Sync — Retry backoff policy.

Exponential backoff for operations that hit a transient network failure:
1s, 2s, 4s ... capped at 60s by default, escalated to a terminal failure
once the attempt count goes past the configured maximum.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay schedule for retryable sync failures."""

    base_delay: float = 1.0
    max_delay: float = 60.0
    max_attempts: int = 8

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before retrying after the ``attempt``-th failure.

        Non-decreasing in ``attempt`` and never above ``max_delay``.
        """
        if attempt < 1:
            return 0.0
        # Cap the exponent so huge attempt counts cannot overflow a float
        exponent = min(attempt - 1, 62)
        return min(self.base_delay * (2 ** exponent), self.max_delay)

    def is_exhausted(self, attempts: int) -> bool:
        """True once failures exceed the maximum and the op becomes terminal."""
        return attempts > self.max_attempts
