"""PULSE — Manual sync cooldown."""

import threading
import time
from typing import Callable, Dict

ALL_ACCOUNTS = "__all__"


class SyncCooldown:
    """Remembers when each account (or sync-all) was last triggered by hand."""

    def __init__(self, seconds: float = 60, clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self._last: Dict[str, float] = {}
        self._lock = threading.Lock()

    def remaining(self, key: str) -> float:
        with self._lock:
            last = self._last.get(key)
            if last is None:
                return 0.0
            return max(0.0, self.seconds - (self._clock() - last))

    def try_acquire(self, key: str) -> bool:
        """Record a trigger unless `key` is still cooling down."""
        with self._lock:
            now = self._clock()
            last = self._last.get(key)
            if last is not None and now - last < self.seconds:
                return False
            self._last[key] = now
            return True
