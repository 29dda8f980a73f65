from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional


@dataclass
class Budget:
    """Cap on paid extraction calls for one run."""

    max_calls: int
    calls_used: int = 0

    def can_call(self) -> bool:
        return self.calls_used < self.max_calls

    def consume_call(self, n: int = 1) -> None:
        self.calls_used += n

    @property
    def remaining(self) -> int:
        return max(0, self.max_calls - self.calls_used)


@dataclass
class RunDeadline:
    """Wall-clock cap for one run, which a signal handler can also end early.

    `seconds` of 0 or None means no time limit; `cancel()` still stops the run.
    """

    seconds: Optional[float] = None
    clock: Callable[[], float] = time.monotonic
    _stop: threading.Event = field(default_factory=threading.Event, init=False, repr=False)
    _started: float = field(default=0.0, init=False, repr=False)

    def __post_init__(self) -> None:
        self._started = self.clock()

    def cancel(self) -> None:
        self._stop.set()

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()

    def timed_out(self) -> bool:
        return bool(self.seconds) and self.clock() - self._started >= float(self.seconds)

    def expired(self) -> bool:
        return self.cancelled or self.timed_out()

    @property
    def reason(self) -> Optional[str]:
        if self.cancelled:
            return "cancelled"
        if self.timed_out():
            return "deadline"
        return None
