"""Bounded polling with a typed reached / timed-out result."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass
from typing import Callable, Optional


class PollStatus(enum.Enum):
    REACHED = 'reached'
    TIMED_OUT = 'timed_out'


@dataclass(frozen=True)
class PollResult:
    status: PollStatus
    attempts: int
    elapsed_s: float

    @property
    def reached(self) -> bool:
        return self.status is PollStatus.REACHED


def poll_until(
    predicate: Callable[[], bool],
    *,
    interval_s: float,
    timeout_s: Optional[float] = None,
    max_attempts: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> PollResult:
    """Call ``predicate`` until it is true or the budget runs out.

    The predicate is always evaluated at least once. The budget is a
    wall-clock ``timeout_s``, a ``max_attempts`` count, or both (whichever
    runs out first). No sleep happens after the final attempt.

    Example:
        >>> seen = []
        >>> res = poll_until(lambda: seen.append(1) or len(seen) >= 3,
        ...                  interval_s=0, max_attempts=5, sleep=lambda s: None)
        >>> (res.status.value, res.attempts)
        ('reached', 3)
    """
    if timeout_s is None and max_attempts is None:
        raise ValueError('poll_until needs timeout_s or max_attempts')
    start = clock()
    attempts = 0
    while True:
        attempts += 1
        if predicate():
            return PollResult(PollStatus.REACHED, attempts, clock() - start)
        if max_attempts is not None and attempts >= max_attempts:
            break
        if timeout_s is not None and clock() - start + interval_s > timeout_s:
            break
        sleep(interval_s)
    return PollResult(PollStatus.TIMED_OUT, attempts, clock() - start)
