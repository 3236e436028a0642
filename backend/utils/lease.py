from __future__ import annotations

import time
from typing import Callable, Optional


class Lease:
    """Non-blocking rate limiter / busy guard.

    - try_acquire(min_interval) grants at most one acquisition per interval;
      callers that arrive early are refused, never queued.
    - try_acquire(exclusive=True) additionally refuses while a previous
      holder has not called release().
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._stamp: Optional[float] = None
        self.busy = False

    @property
    def last_acquired(self) -> Optional[float]:
        return self._stamp

    def try_acquire(self, min_interval: float = 0.0, exclusive: bool = False) -> bool:
        if exclusive and self.busy:
            return False
        now = self._clock()
        if self._stamp is not None and now - self._stamp < min_interval:
            return False
        self._stamp = now
        if exclusive:
            self.busy = True
        return True

    def release(self) -> None:
        self.busy = False

    def reset(self) -> None:
        self._stamp = None
        self.busy = False
