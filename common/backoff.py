# common/backoff.py
from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True)
class Backoff:
    """
    Exponential backoff with multiplicative jitter.

    attempt n sleeps base_delay * 2 ** (n - 1), scaled by a factor drawn from
    [1 - jitter, 1 + jitter] and capped at max_delay.
    """
    base_delay: float = 0.5
    max_delay: float = 12.0
    max_retries: int = 6
    jitter: float = 0.2

    def delay(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        if attempt < 1:
            return 0.0
        raw = self.base_delay * (2 ** (attempt - 1))
        factor = (1.0 - self.jitter) + 2.0 * self.jitter * rand()
        return min(raw * factor, self.max_delay)

    def exhausted(self, attempt: int) -> bool:
        return attempt > self.max_retries
