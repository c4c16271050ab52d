from __future__ import annotations

from typing import Literal

import numpy as np

from scanner.utils.types import Candle

UpsertResult = Literal["append", "replace", "insert", "stale"]


class CandleView:
    """
    Detached copy of the last N candles in ascending open_time order.
    Arrays are owned by the view; later ring writes never show through.
    """
    __slots__ = ("open_time", "open", "high", "low", "close", "volume", "length")

    def __init__(
        self,
        open_time: np.ndarray,
        o: np.ndarray,
        h: np.ndarray,
        l: np.ndarray,
        c: np.ndarray,
        v: np.ndarray,
    ):
        self.open_time = open_time
        self.open = o
        self.high = h
        self.low = l
        self.close = c
        self.volume = v
        self.length = int(open_time.size)
        for arr in (open_time, o, h, l, c, v):
            arr.setflags(write=False)

    @classmethod
    def empty(cls) -> "CandleView":
        return cls(
            np.empty(0, dtype=np.int64),
            *(np.empty(0, dtype=np.float64) for _ in range(5)),
        )

    def __len__(self) -> int:
        return self.length

    def candles(self) -> list[Candle]:
        return [
            Candle(
                open_time=int(self.open_time[i]),
                open=float(self.open[i]),
                high=float(self.high[i]),
                low=float(self.low[i]),
                close=float(self.close[i]),
                volume=float(self.volume[i]),
            )
            for i in range(self.length)
        ]


class CandleRing:
    """
    Fixed-size circular buffer of candles for one (symbol, interval).
    Arrays:
      open_time[int64], o,h,l,c,v[float64]

    Writes go through upsert():
      - same open_time as an existing bar -> overwrite in place (forming bar)
      - newer than the last bar           -> append, oldest evicted when full
      - older, unseen open_time           -> sorted insert (rare; upstream is ordered)
    """
    __slots__ = ("capacity", "size", "head", "open_time", "o", "h", "l", "c", "v")

    def __init__(self, capacity: int = 100):
        capacity = int(capacity)
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self.size = 0
        self.head = 0  # next write index
        self.open_time = np.empty(self.capacity, dtype=np.int64)
        self.o = np.empty(self.capacity, dtype=np.float64)
        self.h = np.empty(self.capacity, dtype=np.float64)
        self.l = np.empty(self.capacity, dtype=np.float64)
        self.c = np.empty(self.capacity, dtype=np.float64)
        self.v = np.empty(self.capacity, dtype=np.float64)

    # ------------------------------------------------------------------ writes

    def upsert(self, candle: Candle) -> UpsertResult:
        last = self.last_open_time()
        if last is None or candle.open_time > last:
            self._write(self.head, candle)
            self.head = (self.head + 1) % self.capacity
            if self.size < self.capacity:
                self.size += 1
            return "append"

        idx = self._index_of(candle.open_time)
        if idx is not None:
            self._write(idx, candle)
            return "replace"

        oldest = int(self.open_time[self._physical(0)])
        if self.size == self.capacity and candle.open_time < oldest:
            # would be evicted straight away
            return "stale"

        self._insert_sorted(candle)
        return "insert"

    def _write(self, i: int, candle: Candle) -> None:
        self.open_time[i] = candle.open_time
        self.o[i] = candle.open
        self.h[i] = candle.high
        self.l[i] = candle.low
        self.c[i] = candle.close
        self.v[i] = candle.volume

    def _insert_sorted(self, candle: Candle) -> None:
        view = self.view_last(self.size)
        pos = int(np.searchsorted(view.open_time, candle.open_time))
        cols = [
            np.insert(view.open_time, pos, candle.open_time),
            np.insert(view.open, pos, candle.open),
            np.insert(view.high, pos, candle.high),
            np.insert(view.low, pos, candle.low),
            np.insert(view.close, pos, candle.close),
            np.insert(view.volume, pos, candle.volume),
        ]
        keep = min(self.capacity, cols[0].size)
        cols = [col[-keep:] for col in cols]
        for dst, src in zip((self.open_time, self.o, self.h, self.l, self.c, self.v), cols):
            dst[:keep] = src
        self.size = keep
        self.head = keep % self.capacity

    # ------------------------------------------------------------------- reads

    def _physical(self, logical: int) -> int:
        """Map logical index (0 = oldest) to the array slot."""
        start = (self.head - self.size) % self.capacity
        return (start + logical) % self.capacity

    def _index_of(self, open_time: int) -> int | None:
        # newest first: in-place updates almost always hit the forming bar
        for k in range(self.size - 1, -1, -1):
            i = self._physical(k)
            if int(self.open_time[i]) == open_time:
                return i
        return None

    def last_open_time(self) -> int | None:
        if self.size == 0:
            return None
        idx = (self.head - 1) % self.capacity
        return int(self.open_time[idx])

    def view_last(self, n: int) -> CandleView:
        """
        Return up to the last n candles, oldest first, as copied arrays.
        """
        if self.size == 0:
            return CandleView.empty()
        n = int(n)
        if n <= 0:
            return CandleView.empty()
        n = min(n, self.size)

        end = self.head  # exclusive
        start = (end - n) % self.capacity

        if start < end:
            sl = slice(start, end)
            cols = [arr[sl].copy() for arr in (self.open_time, self.o, self.h, self.l, self.c, self.v)]
        else:
            # wrapped: [start..cap) + [0..end)
            sl1 = slice(start, self.capacity)
            sl2 = slice(0, end)
            cols = [
                np.concatenate((arr[sl1], arr[sl2]))
                for arr in (self.open_time, self.o, self.h, self.l, self.c, self.v)
            ]
        return CandleView(*cols)
