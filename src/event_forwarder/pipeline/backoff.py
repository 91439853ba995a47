from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from typing import Optional

# Session replay retry defaults
SESSION_BACKOFF_BASE = 3.0
SESSION_BACKOFF_MAX = 120.0
SESSION_BACKOFF_NUM_TRIES = 5


@dataclass
class DecorrelatedBackoff:
    """Decorrelated-jitter backoff.

    Each delay is drawn uniformly from [base, prev * 3] and capped at `max_delay`,
    with `prev` starting at `base`. One instance covers one retry sequence; create
    a fresh one per session replay task.
    """

    base: float = SESSION_BACKOFF_BASE
    max_delay: float = SESSION_BACKOFF_MAX
    rng: random.Random = field(default_factory=random.Random, repr=False)
    _prev: Optional[float] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.base <= 0:
            raise ValueError("base must be > 0")
        if self.max_delay < self.base:
            raise ValueError("max_delay must be >= base")

    @property
    def current(self) -> float:
        return self._prev if self._prev is not None else self.base

    def next_delay(self) -> float:
        upper = self.current * 3
        delay = min(self.max_delay, self.rng.uniform(self.base, upper))
        self._prev = delay
        return delay

    def reset(self) -> None:
        self._prev = None

    async def wait(self, stop: asyncio.Event) -> bool:
        """Sleep for the next delay. Returns False if `stop` fired first."""
        delay = self.next_delay()
        if stop.is_set():
            return False
        try:
            await asyncio.wait_for(stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False
