"""Back-off policies for snapshot retries and watch reconnects."""

from __future__ import annotations

import random
from dataclasses import dataclass, field

_RECONNECT_DELAY_CAP_S: float = 30.0


@dataclass
class ExponentialBackoff:
    """Exponential back-off with proportional jitter.

    ``delay(0)`` is ``base_s`` (+/- jitter), each subsequent attempt multiplies
    by ``factor``, and the result never exceeds ``cap_s``.  ``steps`` bounds
    how many retries a caller should make before giving up.
    """

    base_s: float = 1.0
    factor: float = 2.0
    jitter: float = 0.1
    cap_s: float = 300.0
    steps: int = 10
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def delay(self, attempt: int) -> float:
        """Return the sleep duration for zero-based *attempt*."""
        raw = min(self.base_s * (self.factor ** max(attempt, 0)), self.cap_s)
        if self.jitter:
            raw *= 1.0 + self.rng.uniform(-self.jitter, self.jitter)
        return max(0.0, min(raw, self.cap_s))

    def exhausted(self, attempt: int) -> bool:
        """True once *attempt* (zero-based) has used up the step budget."""
        return attempt >= self.steps


def linear_reconnect_delay(
    reconnect_count: int,
    base_s: float = 5.0,
    cap_s: float = _RECONNECT_DELAY_CAP_S,
) -> float:
    """Delay before an ordinary watch reconnect: ``min(count * base, cap)``."""
    return min(max(reconnect_count, 0) * base_s, cap_s)
