from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from scanner.utils.time import utc_now_s
from scanner.utils.types import FeedEvent


@dataclass(slots=True)
class BookUpdate:
    """Raw order-book frame; folded into a LocalBook by the adapter."""
    symbol: str
    kind: str                    # "snapshot" | "delta"
    bids: list
    asks: list
    ts: Optional[float] = None   # epoch millis from the exchange
    update_id: Optional[int] = None


Parsed = Union[FeedEvent, BookUpdate]


def topic_parts(topic: str) -> list[str]:
    """
    "tickers.BTCUSDT"      -> ["tickers", "BTCUSDT"]
    "kline.1.BTCUSDT"      -> ["kline", "1", "BTCUSDT"]
    "orderbook.50.BTCUSDT" -> ["orderbook", "50", "BTCUSDT"]
    """
    return topic.split(".") if topic else []


def _pct_to_percent(raw):
    # Bybit sends price24hPcnt as a fraction ("0.0312" == 3.12%)
    try:
        return float(raw) * 100.0
    except (TypeError, ValueError):
        return raw  # left for the store to count as a bad field


def parse_ticker(m: dict, received_at: float) -> Optional[FeedEvent]:
    d = m.get("data")
    if not isinstance(d, dict):
        return None
    sym = d.get("symbol") or topic_parts(m.get("topic", ""))[-1]
    payload = {}
    if "lastPrice" in d:
        payload["lastPrice"] = d["lastPrice"]
    if "price24hPcnt" in d:
        payload["change24h"] = _pct_to_percent(d["price24hPcnt"])
    if "volume24h" in d:
        payload["volume24h"] = d["volume24h"]
    if "turnover24h" in d:
        payload["turnover24h"] = d["turnover24h"]
    if not payload:
        return None
    return FeedEvent(type="ticker", symbol=str(sym), payload=payload, received_at=received_at)


def parse_kline(m: dict, received_at: float) -> list[FeedEvent]:
    parts = topic_parts(m.get("topic", ""))
    if len(parts) < 3:
        return []
    interval, sym = parts[1], parts[-1]
    out: list[FeedEvent] = []
    for k in m.get("data") or []:
        if not isinstance(k, dict):
            continue
        out.append(FeedEvent(
            type="kline",
            symbol=sym,
            payload={
                "interval": str(k.get("interval") or interval),
                "start": k.get("start"),
                "open": k.get("open"),
                "high": k.get("high"),
                "low": k.get("low"),
                "close": k.get("close"),
                "volume": k.get("volume"),
                "confirm": bool(k.get("confirm", False)),
            },
            received_at=received_at,
        ))
    return out


def parse_orderbook(m: dict) -> Optional[BookUpdate]:
    d = m.get("data")
    if not isinstance(d, dict):
        return None
    sym = d.get("s") or topic_parts(m.get("topic", ""))[-1]
    uid = d.get("u")
    return BookUpdate(
        symbol=str(sym),
        kind=str(m.get("type") or "snapshot"),
        bids=list(d.get("b") or []),
        asks=list(d.get("a") or []),
        ts=m.get("ts"),
        update_id=int(uid) if isinstance(uid, (int, float)) else None,
    )


def parse_message(m: dict, received_at: Optional[float] = None) -> list[Parsed]:
    """
    Decode one Bybit v5 public frame. Control frames (subscribe acks, pongs)
    and unknown topics return [].
    """
    topic = m.get("topic")
    if not topic:
        return []
    received_at = received_at if received_at is not None else utc_now_s()
    kind = topic_parts(topic)[0]
    if kind == "tickers":
        evt = parse_ticker(m, received_at)
        return [evt] if evt else []
    if kind == "kline":
        return list(parse_kline(m, received_at))
    if kind == "orderbook":
        upd = parse_orderbook(m)
        return [upd] if upd else []
    return []


def parse_rest_kline_row(symbol: str, interval: str, row: list, received_at: float) -> Optional[FeedEvent]:
    """REST /v5/market/kline row: [start, open, high, low, close, volume, turnover]."""
    if not isinstance(row, (list, tuple)) or len(row) < 6:
        return None
    start, o, h, l, c, v = row[:6]
    return FeedEvent(
        type="kline",
        symbol=symbol,
        payload={"interval": interval, "start": start, "open": o, "high": h, "low": l, "close": c, "volume": v},
        received_at=received_at,
    )
