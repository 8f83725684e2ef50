from __future__ import annotations

import numpy as np

from klinealert.utils.types import Candle


class SeriesView:
    """
    Copied, time-ordered columns of the last N candles.
    Arrays are detached from the ring, so later appends never show through.
    """
    __slots__ = ("open_time", "close_time", "o", "h", "l", "c", "v", "final", "length")

    def __init__(self, open_time, close_time, o, h, l, c, v, final):
        self.open_time = open_time
        self.close_time = close_time
        self.o = o
        self.h = h
        self.l = l
        self.c = c
        self.v = v
        self.final = final
        self.length = int(len(close_time))

    @classmethod
    def empty(cls) -> "SeriesView":
        i = np.empty(0, dtype=np.int64)
        f = np.empty(0, dtype=np.float64)
        return cls(i, i.copy(), f, f.copy(), f.copy(), f.copy(), f.copy(), np.empty(0, dtype=bool))


class RingBufferOHLCV:
    """
    Fixed-size circular buffer of candles for one (symbol, timeframe).
    Arrays:
      open_time, close_time[int64] (epoch ms), o,h,l,c,v[float64], final[bool]
    """
    __slots__ = ("capacity", "size", "head", "open_time", "close_time", "o", "h", "l", "c", "v", "final")

    def __init__(self, capacity: int):
        self.capacity = int(capacity)
        if self.capacity <= 0:
            raise ValueError("capacity must be >= 1")
        self.size = 0
        self.head = 0  # next write index
        self.open_time = np.empty(self.capacity, dtype=np.int64)
        self.close_time = np.empty(self.capacity, dtype=np.int64)
        self.o = np.empty(self.capacity, dtype=np.float64)
        self.h = np.empty(self.capacity, dtype=np.float64)
        self.l = np.empty(self.capacity, dtype=np.float64)
        self.c = np.empty(self.capacity, dtype=np.float64)
        self.v = np.empty(self.capacity, dtype=np.float64)
        self.final = np.empty(self.capacity, dtype=bool)

    def append(self, candle: Candle) -> None:
        i = self.head
        self.open_time[i] = candle.open_time
        self.close_time[i] = candle.close_time
        self.o[i] = candle.open
        self.h[i] = candle.high
        self.l[i] = candle.low
        self.c[i] = candle.close
        self.v[i] = candle.volume
        self.final[i] = candle.is_final
        self.head = (i + 1) % self.capacity
        if self.size < self.capacity:
            self.size += 1

    def last_close_time(self) -> int | None:
        if self.size == 0:
            return None
        idx = (self.head - 1) % self.capacity
        return int(self.close_time[idx])

    def _order(self, n: int) -> np.ndarray:
        # ring indices of the last n entries, oldest first
        start = self.head - n
        return np.arange(start, self.head) % self.capacity

    def view_last(self, n: int) -> SeriesView:
        """
        Return up to the last n candles as copied arrays in time order.
        """
        n = min(int(n), self.size)
        if n <= 0:
            return SeriesView.empty()
        idx = self._order(n)
        # fancy indexing copies
        return SeriesView(
            self.open_time[idx], self.close_time[idx],
            self.o[idx], self.h[idx], self.l[idx], self.c[idx], self.v[idx],
            self.final[idx],
        )

    def candles(self, symbol: str, timeframe: str) -> tuple[Candle, ...]:
        view = self.view_last(self.size)
        return tuple(
            Candle(
                symbol=symbol,
                timeframe=timeframe,
                open_time=int(view.open_time[i]),
                close_time=int(view.close_time[i]),
                open=float(view.o[i]),
                high=float(view.h[i]),
                low=float(view.l[i]),
                close=float(view.c[i]),
                volume=float(view.v[i]),
                is_final=bool(view.final[i]),
            )
            for i in range(view.length)
        )

    def resized(self, capacity: int) -> "RingBufferOHLCV":
        """New ring of `capacity` holding the newest entries of this one."""
        out = RingBufferOHLCV(capacity)
        n = min(self.size, out.capacity)
        if n:
            idx = self._order(n)
            for name in ("open_time", "close_time", "o", "h", "l", "c", "v", "final"):
                getattr(out, name)[:n] = getattr(self, name)[idx]
            out.size = n
            out.head = n % out.capacity
        return out
