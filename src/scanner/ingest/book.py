from __future__ import annotations

import math
from typing import Optional

from scanner.ingest.parser import BookUpdate
from scanner.utils.types import FeedEvent


def _level(raw) -> Optional[tuple[float, float]]:
    try:
        px, sz = float(raw[0]), float(raw[1])
    except (TypeError, ValueError, IndexError):
        return None
    if not (math.isfinite(px) and math.isfinite(sz)):
        return None
    return px, sz


class LocalBook:
    """
    Exchange-side book for one symbol. Snapshots reset it, deltas patch it
    (size 0 removes a level). The core only ever sees to_event() output,
    i.e. a complete best-first snapshot.
    """
    __slots__ = ("symbol", "depth", "bids", "asks", "ready", "update_id", "ts")

    def __init__(self, symbol: str, depth: int = 50):
        self.symbol = symbol
        self.depth = depth
        self.bids: dict[float, float] = {}
        self.asks: dict[float, float] = {}
        self.ready = False
        self.update_id: Optional[int] = None
        self.ts: Optional[float] = None

    def apply(self, upd: BookUpdate) -> bool:
        """Returns False when the update could not be applied (delta before snapshot)."""
        # u == 1 on a delta means the exchange restarted its book
        if upd.kind == "snapshot" or upd.update_id == 1:
            self.bids.clear()
            self.asks.clear()
            self.ready = True
        elif not self.ready:
            return False

        for side, levels in ((self.bids, upd.bids), (self.asks, upd.asks)):
            for raw in levels:
                lvl = _level(raw)
                if lvl is None:
                    continue
                px, sz = lvl
                if sz == 0.0:
                    side.pop(px, None)
                else:
                    side[px] = sz
        self.update_id = upd.update_id
        self.ts = upd.ts
        return True

    def levels(self) -> tuple[list[list[float]], list[list[float]]]:
        bids = sorted(self.bids.items(), key=lambda kv: -kv[0])[: self.depth]
        asks = sorted(self.asks.items(), key=lambda kv: kv[0])[: self.depth]
        return [[p, s] for p, s in bids], [[p, s] for p, s in asks]

    def to_event(self, received_at: float) -> FeedEvent:
        bids, asks = self.levels()
        payload: dict = {"bids": bids, "asks": asks}
        if self.ts is not None:
            payload["ts"] = self.ts
        return FeedEvent(type="orderbook", symbol=self.symbol, payload=payload, received_at=received_at)
