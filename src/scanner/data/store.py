from __future__ import annotations

import math
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Optional

import structlog

from scanner.data.ring_buffer import CandleRing, CandleView, UpsertResult
from scanner.utils.time import normalize_epoch_s, utc_now_s
from scanner.utils.types import BookLevel, Candle, FeedEvent, OrderBookSnapshot, TickerState

log = structlog.get_logger("store")

DEFAULT_CANDLE_CAPACITY = 100
DEFAULT_VOLUME_HISTORY = 20

_TICKER_FIELDS = {
    # payload key -> TickerState attribute
    "lastPrice": "last_price",
    "change24h": "change_24h",
    "volume24h": "volume_24h",
    "turnover24h": "turnover_24h",
}


@dataclass(slots=True)
class IngestStats:
    """Diagnostic counters for the ingest path."""
    records: dict[str, int] = field(default_factory=dict)      # feed type -> accepted records
    bad_fields: int = 0
    bad_records: int = 0
    field_errors: dict[str, int] = field(default_factory=dict)  # "type.field" -> count

    def as_dict(self) -> dict:
        return {
            "records": dict(self.records),
            "badFields": self.bad_fields,
            "badRecords": self.bad_records,
            "fieldErrors": dict(self.field_errors),
        }


@dataclass(slots=True, frozen=True)
class SymbolSnapshot:
    """
    Consistent read of everything detectors need for one symbol,
    taken under that symbol's lock.
    """
    symbol: str
    candles: dict[str, CandleView]
    order_book: Optional[OrderBookSnapshot]
    ticker: Optional[TickerState]
    volume_history: tuple[float, ...]


class _SymbolSlot:
    __slots__ = ("lock", "candles", "order_book", "ticker", "volume_history")

    def __init__(self, symbol: str, volume_history: int):
        self.lock = threading.Lock()
        self.candles: dict[str, CandleRing] = {}
        self.order_book: Optional[OrderBookSnapshot] = None
        self.ticker: Optional[TickerState] = None
        self.volume_history: deque[float] = deque(maxlen=volume_history)


class RollingSeriesStore:
    """
    Latest bounded market state per symbol.

    - One slot per symbol, each with its own lock. Writers for different
      symbols never contend; the registry lock is only taken to create a slot.
    - Every read returns a detached copy or an immutable object.
    - ingest() accepts normalized FeedEvents and never raises on bad input:
      unparseable fields are dropped and counted in `stats`.
    """

    def __init__(
        self,
        candle_capacity: int = DEFAULT_CANDLE_CAPACITY,
        volume_history: int = DEFAULT_VOLUME_HISTORY,
    ):
        if int(candle_capacity) < 1:
            raise ValueError("candle_capacity must be >= 1")
        if int(volume_history) < 1:
            raise ValueError("volume_history must be >= 1")
        self.candle_capacity = int(candle_capacity)
        self.volume_history_size = int(volume_history)
        self._slots: dict[str, _SymbolSlot] = {}
        self._registry_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self.stats = IngestStats()

    # ------------------------------------------------------------------ slots

    def _slot(self, symbol: str) -> _SymbolSlot:
        slot = self._slots.get(symbol)
        if slot is None:
            with self._registry_lock:
                slot = self._slots.get(symbol)
                if slot is None:
                    slot = _SymbolSlot(symbol, self.volume_history_size)
                    self._slots[symbol] = slot
        return slot

    def symbols(self) -> list[str]:
        return list(self._slots.keys())

    # ----------------------------------------------------------------- writes

    def upsert_candle(self, symbol: str, interval: str, candle: Candle) -> UpsertResult:
        slot = self._slot(symbol)
        with slot.lock:
            ring = slot.candles.get(interval)
            if ring is None:
                ring = CandleRing(self.candle_capacity)
                slot.candles[interval] = ring
            return ring.upsert(candle)

    def replace_order_book(self, symbol: str, snapshot: OrderBookSnapshot) -> None:
        slot = self._slot(symbol)
        with slot.lock:
            slot.order_book = snapshot

    def update_ticker(self, symbol: str, **fields: Any) -> TickerState:
        """
        Last-write-wins merge: fields given (and not None) overwrite,
        everything else keeps its prior value.
        """
        updates = {k: v for k, v in fields.items() if v is not None}
        updates.setdefault("updated_at", utc_now_s())
        slot = self._slot(symbol)
        with slot.lock:
            prev = slot.ticker or TickerState(symbol=symbol)
            slot.ticker = replace(prev, **updates)
            return slot.ticker

    def push_volume_sample(self, symbol: str, value: float) -> None:
        slot = self._slot(symbol)
        with slot.lock:
            slot.volume_history.append(float(value))

    # ------------------------------------------------------------------ reads

    def get_candles(self, symbol: str, interval: str, limit: Optional[int] = None) -> CandleView:
        slot = self._slots.get(symbol)
        if slot is None:
            return CandleView.empty()
        with slot.lock:
            ring = slot.candles.get(interval)
            if ring is None:
                return CandleView.empty()
            return ring.view_last(ring.size if limit is None else limit)

    def get_order_book(self, symbol: str) -> Optional[OrderBookSnapshot]:
        slot = self._slots.get(symbol)
        return slot.order_book if slot is not None else None

    def get_ticker(self, symbol: str) -> Optional[TickerState]:
        slot = self._slots.get(symbol)
        return slot.ticker if slot is not None else None

    def get_volume_history(self, symbol: str) -> tuple[float, ...]:
        slot = self._slots.get(symbol)
        if slot is None:
            return ()
        with slot.lock:
            return tuple(slot.volume_history)

    def snapshot(self, symbol: str) -> SymbolSnapshot:
        slot = self._slots.get(symbol)
        if slot is None:
            return SymbolSnapshot(symbol, {}, None, None, ())
        with slot.lock:
            return SymbolSnapshot(
                symbol=symbol,
                candles={iv: ring.view_last(ring.size) for iv, ring in slot.candles.items()},
                order_book=slot.order_book,
                ticker=slot.ticker,
                volume_history=tuple(slot.volume_history),
            )

    # ----------------------------------------------------------------- ingest

    def ingest(self, evt: FeedEvent) -> bool:
        """
        Apply one normalized feed event. Returns True if anything was stored.
        """
        if not evt.symbol:
            self._bad_record(evt.type, "missing_symbol")
            return False
        if evt.type == "ticker":
            ok = self._ingest_ticker(evt)
        elif evt.type == "kline":
            ok = self._ingest_kline(evt)
        elif evt.type == "orderbook":
            ok = self._ingest_orderbook(evt)
        else:
            self._bad_record(str(evt.type), "unknown_type")
            return False
        if ok:
            with self._stats_lock:
                self.stats.records[evt.type] = self.stats.records.get(evt.type, 0) + 1
        return ok

    def _ingest_ticker(self, evt: FeedEvent) -> bool:
        p = evt.payload
        fields: dict[str, float] = {}
        for key, attr in _TICKER_FIELDS.items():
            if key not in p:
                continue
            val = self._num("ticker", key, p[key])
            if val is not None:
                fields[attr] = val
        if not fields:
            self._bad_record("ticker", "no_fields")
            return False
        self.update_ticker(evt.symbol, updated_at=evt.received_at or utc_now_s(), **fields)
        if "volume_24h" in fields:
            self.push_volume_sample(evt.symbol, fields["volume_24h"])
        return True

    def _ingest_kline(self, evt: FeedEvent) -> bool:
        p = evt.payload
        interval = p.get("interval")
        start = self._num("kline", "start", p.get("start"))
        if not interval or start is None:
            self._bad_record("kline", "missing_key")
            return False
        open_time = int(start)

        parsed = {k: self._num("kline", k, p.get(k)) for k in ("open", "high", "low", "close", "volume")}

        # dropped fields fall back to the stored version of the same bar
        prior = None
        if any(v is None for v in parsed.values()):
            view = self.get_candles(evt.symbol, str(interval))
            for c in reversed(view.candles()):
                if c.open_time == open_time:
                    prior = c
                    break

        def pick(name: str, fallback: Optional[float]) -> Optional[float]:
            if parsed[name] is not None:
                return parsed[name]
            if prior is not None:
                return float(getattr(prior, name))
            return fallback

        close = pick("close", next((parsed[k] for k in ("open", "high", "low") if parsed[k] is not None), None))
        if close is None:
            self._bad_record("kline", "no_price")
            return False
        candle = Candle(
            open_time=open_time,
            open=pick("open", close),
            high=pick("high", close),
            low=pick("low", close),
            close=close,
            volume=pick("volume", 0.0),
        )
        self.upsert_candle(evt.symbol, str(interval), candle)
        return True

    def _ingest_orderbook(self, evt: FeedEvent) -> bool:
        p = evt.payload
        bids = self._levels("bids", p.get("bids") or ())
        asks = self._levels("asks", p.get("asks") or ())
        ts = self._num("orderbook", "ts", p.get("ts")) if "ts" in p else None
        snap = OrderBookSnapshot(
            bids=tuple(bids),
            asks=tuple(asks),
            timestamp=normalize_epoch_s(ts) if ts is not None else (evt.received_at or utc_now_s()),
        )
        self.replace_order_book(evt.symbol, snap)
        return True

    def _levels(self, side: str, raw) -> list[BookLevel]:
        out: list[BookLevel] = []
        for lvl in raw:
            try:
                price, size = lvl[0], lvl[1]
            except (TypeError, IndexError, KeyError):
                self._bad_field("orderbook", side)
                continue
            px = self._num("orderbook", side, price)
            sz = self._num("orderbook", side, size)
            if px is None or sz is None:
                continue
            out.append(BookLevel(price=px, size=sz))
        return out

    # ---------------------------------------------------------------- helpers

    def _num(self, kind: str, name: str, raw) -> Optional[float]:
        if raw is None or raw == "":
            if raw == "":
                self._bad_field(kind, name)
            return None
        try:
            val = float(raw)
        except (TypeError, ValueError):
            self._bad_field(kind, name)
            return None
        if not math.isfinite(val):
            self._bad_field(kind, name)
            return None
        return val

    def _bad_field(self, kind: str, name: str) -> None:
        key = f"{kind}.{name}"
        with self._stats_lock:
            self.stats.bad_fields += 1
            self.stats.field_errors[key] = self.stats.field_errors.get(key, 0) + 1
        log.debug("ingest_bad_field", field=key)

    def _bad_record(self, kind: str, reason: str) -> None:
        with self._stats_lock:
            self.stats.bad_records += 1
        log.warning("ingest_bad_record", type=kind, reason=reason)
