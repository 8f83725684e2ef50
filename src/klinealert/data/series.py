from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, Optional

from klinealert.data.ring_buffer import RingBufferOHLCV, SeriesView
from klinealert.utils.types import Candle, FeedKey

DEFAULT_CAPACITY = 500


@dataclass(slots=True)
class _Slot:
    ring: RingBufferOHLCV
    lock: threading.Lock = field(default_factory=threading.Lock)


class TimeSeriesBuffer:
    """
    Rolling candle history keyed by (symbol, timeframe).

    - append() writes at the end of the key's ring, evicting the oldest
      entries once `capacity` is exceeded (FIFO).
    - read() / view_last() return detached snapshots.
    - Each key has its own lock; unrelated keys never contend.
    """
    def __init__(self, default_capacity: int = DEFAULT_CAPACITY):
        if default_capacity <= 0:
            raise ValueError("default_capacity must be >= 1")
        self.default_capacity = int(default_capacity)
        self._slots: Dict[FeedKey, _Slot] = {}
        self._slots_lock = threading.Lock()

    def _slot(self, key: FeedKey, capacity: Optional[int] = None) -> _Slot:
        slot = self._slots.get(key)
        if slot is None:
            with self._slots_lock:
                slot = self._slots.get(key)
                if slot is None:
                    slot = _Slot(RingBufferOHLCV(capacity or self.default_capacity))
                    self._slots[key] = slot
        return slot

    def append(self, candle: Candle, capacity: Optional[int] = None) -> None:
        cap = int(capacity) if capacity is not None else None
        slot = self._slot(candle.key, cap)
        with slot.lock:
            if cap is not None and cap != slot.ring.capacity:
                slot.ring = slot.ring.resized(cap)
            slot.ring.append(candle)

    def read(self, symbol: str, timeframe: str) -> tuple[Candle, ...]:
        slot = self._slots.get((symbol, timeframe))
        if slot is None:
            return ()
        with slot.lock:
            return slot.ring.candles(symbol, timeframe)

    def view_last(self, symbol: str, timeframe: str, n: int) -> SeriesView:
        slot = self._slots.get((symbol, timeframe))
        if slot is None:
            return SeriesView.empty()
        with slot.lock:
            return slot.ring.view_last(n)

    def view_all(self, symbol: str, timeframe: str) -> SeriesView:
        slot = self._slots.get((symbol, timeframe))
        if slot is None:
            return SeriesView.empty()
        with slot.lock:
            return slot.ring.view_last(slot.ring.size)

    def size(self, symbol: str, timeframe: str) -> int:
        slot = self._slots.get((symbol, timeframe))
        return slot.ring.size if slot else 0

    def last_close_time(self, symbol: str, timeframe: str) -> int | None:
        slot = self._slots.get((symbol, timeframe))
        if slot is None:
            return None
        with slot.lock:
            return slot.ring.last_close_time()

    def keys(self) -> list[FeedKey]:
        return list(self._slots)
