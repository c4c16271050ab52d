from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Optional, TypedDict

# ---- ingest-level primitives ----

FeedType = Literal["ticker", "kline", "orderbook"]

@dataclass(slots=True, frozen=True)
class Candle:
    """
    OHLCV bar. open_time is epoch milliseconds (exchange convention).
    """
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float

@dataclass(slots=True, frozen=True)
class BookLevel:
    price: float
    size: float

@dataclass(slots=True, frozen=True)
class OrderBookSnapshot:
    """
    Full book, best-first on both sides. Replaced wholesale, never patched.
    """
    bids: tuple[BookLevel, ...] = ()
    asks: tuple[BookLevel, ...] = ()
    timestamp: float = 0.0

@dataclass(slots=True, frozen=True)
class TickerState:
    symbol: str
    last_price: Optional[float] = None
    change_24h: Optional[float] = None      # percent, e.g. 3.5 == +3.5%
    volume_24h: Optional[float] = None
    turnover_24h: Optional[float] = None
    updated_at: float = 0.0                 # epoch seconds

    def as_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "price": self.last_price,
            "change24h": self.change_24h,
            "volume24h": self.volume_24h,
            "turnover24h": self.turnover_24h,
            "updatedAt": self.updated_at,
        }

@dataclass(slots=True)
class FeedEvent:
    """
    Normalized inbound event handed from the feed adapter to the store.
    payload keeps the decoded-but-unvalidated fields; the store parses numbers.
    """
    type: FeedType
    symbol: str
    payload: dict[str, Any] = field(default_factory=dict)
    received_at: float = 0.0

# ---- outbound (consumer) wire shape ----

class BroadcastMessage(TypedDict):
    event: str
    data: Any
    channel: Optional[str]
    timestamp: int   # epoch millis
