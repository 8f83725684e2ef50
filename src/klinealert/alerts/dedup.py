from __future__ import annotations

import time
from typing import Callable

from klinealert.utils.types import Candle


def candle_key(candle: Candle) -> str:
    # one finalized bar per (symbol, timeframe, open time)
    return f"{candle.symbol}:{candle.timeframe}:{candle.open_time}"


class TTLDeduper:
    """
    Remembers keys for ttl_s seconds, bounded to max_size entries.

    The pipeline uses it to drop a finalized candle delivered twice
    (e.g. two connections briefly open for the same key).
    """
    def __init__(self, ttl_s: float, max_size: int = 10_000, clock: Callable[[], float] = time.time):
        self.ttl_s = float(ttl_s)
        self.max_size = int(max_size)
        self._clock = clock
        self._expiry: dict[str, float] = {}  # key -> expire_ts

    def seen_recently(self, key: str) -> bool:
        exp = self._expiry.get(key)
        if exp is None:
            return False
        if exp < self._clock():
            del self._expiry[key]
            return False
        return True

    def mark(self, key: str) -> None:
        now = self._clock()
        if len(self._expiry) >= self.max_size:
            self._evict(now)
        self._expiry[key] = now + self.ttl_s

    def check_and_mark(self, key: str) -> bool:
        """True if `key` is new (and is now remembered); False if seen within ttl."""
        if self.seen_recently(key):
            return False
        self.mark(key)
        return True

    def _evict(self, now: float) -> None:
        expired = [k for k, exp in self._expiry.items() if exp < now]
        for k in expired:
            del self._expiry[k]
        # still full: drop the oldest quarter (dicts keep insertion order)
        if len(self._expiry) >= self.max_size:
            for k in list(self._expiry)[: max(1, self.max_size // 4)]:
                del self._expiry[k]

    def __len__(self) -> int:
        return len(self._expiry)
