"""Exponential backoff shared by the gateway, token provider and progress consumer."""
from __future__ import annotations
import random
from dataclasses import dataclass
from typing import Iterator


@dataclass(frozen=True)
class Backoff:
    """Capped exponential backoff with optional jitter.

    ``delay(0)`` is the base delay; each further attempt multiplies by
    ``factor``. The result never exceeds ``cap`` even after jitter is added.

    Usage:
        backoff = Backoff(base=1.0, cap=30.0)
        for attempt, delay in enumerate(backoff.delays(3)):
            time.sleep(delay)
    """

    base: float = 1.0
    cap: float = 30.0
    factor: float = 2.0
    jitter: float = 0.0

    def delay(self, attempt: int) -> float:
        """Return the delay in seconds before retry number ``attempt`` (0-based)."""
        if attempt < 0:
            raise ValueError("attempt must be >= 0")
        raw = min(self.cap, self.base * (self.factor ** attempt))
        if self.jitter > 0:
            raw += random.uniform(0, self.jitter)
        return min(self.cap, raw)

    def delays(self, attempts: int) -> Iterator[float]:
        """Yield the delays for ``attempts`` consecutive retries."""
        for attempt in range(attempts):
            yield self.delay(attempt)
