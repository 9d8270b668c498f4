"""Exponential backoff with jitter for transient registry failures."""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from typing import Callable

RETRYABLE_STATUSES = frozenset({429, 503, 504})


def is_retryable(status_code: int | None) -> bool:
    return status_code in RETRYABLE_STATUSES


@dataclass
class RetryPolicy:
    """
    Delay before retry ``k`` (0-based) is ``2**k * base_delay`` plus a uniform
    jitter in ``[0, jitter)``. Both the random source and the sleep function
    are injectable so retry timing is deterministic under test.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    jitter: float = 1.0
    rand: Callable[[], float] = random.random
    sleep: Callable[[float], None] = field(default=time.sleep)

    def delay(self, retry_index: int) -> float:
        return (2 ** retry_index) * self.base_delay + self.rand() * self.jitter

    def wait(self, retry_index: int) -> float:
        seconds = self.delay(retry_index)
        self.sleep(seconds)
        return seconds
