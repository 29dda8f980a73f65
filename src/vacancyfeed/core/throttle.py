from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Optional


@dataclass
class Throttle:
    """Minimum spacing between consecutive calls of one kind (pages, details, AI)."""

    min_interval_sec: float
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic
    _last: Optional[float] = field(default=None, init=False, repr=False)

    @classmethod
    def from_ms(cls, ms, **kwargs) -> "Throttle":
        return cls(max(0.0, float(ms or 0)) / 1000.0, **kwargs)

    def wait(self) -> float:
        waited = 0.0
        if self._last is not None and self.min_interval_sec > 0:
            elapsed = self.clock() - self._last
            if elapsed < self.min_interval_sec:
                waited = self.min_interval_sec - elapsed
                self.sleep(waited)
        self._last = self.clock()
        return waited
