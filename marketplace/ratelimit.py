"""Per-user fixed-window limits for user-facing write endpoints.

Backed by ``limits`` in-memory storage: counts reset on restart and are not
shared between instances. Pass another ``limits`` storage to share them.
"""

import time
from dataclasses import dataclass

from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter


@dataclass
class RateDecision:
    allowed: bool
    retry_after: float = 0.0


class RateLimiter:
    def __init__(self, storage=None):
        self.storage = storage or MemoryStorage()
        self._strategy = FixedWindowRateLimiter(self.storage)

    def hit(self, key: str, limit: int, window: int) -> RateDecision:
        item = RateLimitItemPerSecond(limit, max(1, int(window)))
        if self._strategy.hit(item, key):
            return RateDecision(True)
        reset_time, _ = self._strategy.get_window_stats(item, key)
        return RateDecision(False, retry_after=max(0.0, reset_time - time.time()))

    def reset(self) -> None:
        self.storage.reset()
