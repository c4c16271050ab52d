from __future__ import annotations

import asyncio
from typing import Any, Iterable, Mapping, Optional

import structlog

from scanner.broadcast.hub import Broadcaster
from scanner.config import ConfigStore
from scanner.data.store import RollingSeriesStore
from scanner.signals.aggregator import SignalAggregator
from scanner.utils.time import utc_now_ms, utc_now_s
from scanner.utils.types import FeedEvent

log = structlog.get_logger("signal_engine")

# feed type -> (event name, channel)
MARKET_EVENTS: dict[str, tuple[str, str]] = {
    "ticker": ("market_update", "market"),
    "kline": ("kline_update", "kline"),
    "orderbook": ("orderbook_update", "orderbook"),
}


class SignalEngine:
    """
    Glue between the feed, the store, the aggregator and the broadcaster.

    - ingest loop: FeedEvent -> store -> market event -> (when generating) evaluate -> "signals"
    - periodic loop: re-evaluate every tracked symbol every eval_interval_s while generating
    - start_generation()/stop_generation() own the periodic task; stop cancels and awaits it
    """

    def __init__(
        self,
        store: RollingSeriesStore,
        aggregator: SignalAggregator,
        hub: Broadcaster,
        config: ConfigStore,
        q_events: Optional[asyncio.Queue] = None,
        *,
        eval_interval_s: float = 30.0,
        publish_market: bool = True,
    ):
        self.store = store
        self.aggregator = aggregator
        self.hub = hub
        self.config = config
        self.q_events = q_events if q_events is not None else asyncio.Queue(maxsize=10_000)
        self.eval_interval_s = eval_interval_s
        self.publish_market = publish_market

        self._stop = asyncio.Event()
        self._periodic: Optional[asyncio.Task] = None
        self._selected: Optional[frozenset[str]] = None
        self._started_at: Optional[int] = None
        self.generating: bool = False

    # ------------------------------------------------------------- lifecycle

    async def start(self) -> None:
        """Drain feed events until stop()."""
        log.info("engine_started")
        while not self._stop.is_set():
            try:
                evt = await asyncio.wait_for(self.q_events.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            self.handle_event(evt)
        log.info("engine_stopped")

    async def stop(self) -> None:
        self._stop.set()
        await self.stop_generation()

    def handle_event(self, evt: FeedEvent) -> Optional[dict]:
        """Ingest one event; returns the "signals" payload when one was published."""
        if not self.store.ingest(evt):
            return None
        if self.publish_market:
            self._publish_market(evt)
        if not self.generating or not self._wants(evt.symbol):
            return None
        return self.evaluate_symbol(evt.symbol)

    def evaluate_symbol(self, symbol: str, now: Optional[float] = None) -> Optional[dict]:
        event = self.aggregator.evaluate(symbol, now)
        if event is not None:
            self.hub.publish("signals", event, channel="signals")
        return event

    def _publish_market(self, evt: FeedEvent) -> None:
        name, channel = MARKET_EVENTS[evt.type]
        if evt.type == "ticker":
            t = self.store.get_ticker(evt.symbol)
            data: Any = t.as_dict() if t else None
        elif evt.type == "kline":
            data = {"symbol": evt.symbol, **evt.payload}
        else:
            book = self.store.get_order_book(evt.symbol)
            if book is None:
                return
            data = {
                "symbol": evt.symbol,
                "bids": [[lv.price, lv.size] for lv in book.bids[:10]],
                "asks": [[lv.price, lv.size] for lv in book.asks[:10]],
                "timestamp": book.timestamp,
            }
        if data is not None:
            self.hub.publish(name, data, channel=channel)

    # ------------------------------------------------------------ generation

    async def start_generation(self, symbols: Optional[Iterable[str]] = None) -> bool:
        """
        Begin alert generation. `symbols` restricts evaluation to that set;
        None means every tracked symbol. Returns False if already generating.
        """
        if self.generating:
            return False
        self._selected = frozenset(s.upper() for s in symbols) if symbols else None
        self._started_at = utc_now_ms()
        self.generating = True
        self._periodic = asyncio.create_task(self._periodic_loop(), name="signal_periodic")
        selected = sorted(self._selected) if self._selected else None
        self.hub.publish("generation_started", {"symbols": selected, "timestamp": self._started_at}, channel="system")
        log.info("generation_started", symbols=len(selected) if selected else "all")
        return True

    async def stop_generation(self) -> bool:
        if not self.generating:
            return False
        self.generating = False
        task, self._periodic = self._periodic, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.hub.publish("generation_stopped", {"timestamp": utc_now_ms()}, channel="system")
        log.info("generation_stopped")
        return True

    async def _periodic_loop(self) -> None:
        try:
            while self.generating:
                await asyncio.sleep(self.eval_interval_s)
                self.evaluate_all()
        except asyncio.CancelledError:
            return

    def evaluate_all(self, now: Optional[float] = None) -> list[dict]:
        now = utc_now_s() if now is None else now
        out: list[dict] = []
        for sym in self.store.symbols():
            if not self._wants(sym):
                continue
            evt = self.evaluate_symbol(sym, now)
            if evt is not None:
                out.append(evt)
        if out:
            log.info("periodic_signals", emitted=len(out))
        return out

    def _wants(self, symbol: str) -> bool:
        return self._selected is None or symbol in self._selected

    # ---------------------------------------------------------------- queries

    def get_current_state(self, symbol: str) -> Optional[dict]:
        t = self.store.get_ticker(symbol)
        st = self.aggregator.get_state(symbol)
        if t is None and st is None:
            return None
        out = t.as_dict() if t else {"symbol": symbol}
        out["signals"] = [f.as_dict() for f in st.findings] if st else []
        out["lastAlertAt"] = st.last_alert_at if st else None
        return out

    def get_all_current_states(self) -> list[dict]:
        out = []
        for sym in self.store.symbols():
            s = self.get_current_state(sym)
            if s is not None:
                out.append(s)
        return out

    def get_signal_history(self, limit: int = 100) -> list[dict]:
        return self.aggregator.history(limit)

    def update_thresholds(self, partial: Mapping[str, Any]) -> dict[str, Any]:
        """Raises ConfigError and keeps the old thresholds when invalid."""
        return self.config.update(partial).as_dict()

    def get_signal_statistics(self) -> dict:
        stats = self.aggregator.stats
        return {
            "totalSignals": stats.emitted,
            "evaluations": stats.evaluations,
            "suppressed": stats.suppressed,
            "detectorErrors": stats.detector_errors,
            "activeSymbols": len(self.aggregator.active_states()),
            "byType": dict(stats.by_type),
            "isGenerating": self.generating,
            "selectedSymbols": sorted(self._selected) if self._selected else None,
            "startedAt": self._started_at if self.generating else None,
            "ingest": self.store.stats.as_dict(),
            "consumers": self.hub.consumer_count(),
        }

    def clear_signals(self) -> None:
        self.aggregator.clear()

    def get_candles(self, symbol: str, interval: str = "1", limit: int = 100) -> list[dict]:
        view = self.store.get_candles(symbol, interval, limit)
        return [
            {"openTime": c.open_time, "open": c.open, "high": c.high, "low": c.low, "close": c.close, "volume": c.volume}
            for c in view.candles()
        ]

    def get_market_data(self) -> list[dict]:
        rows = [t.as_dict() for t in (self.store.get_ticker(s) for s in self.store.symbols()) if t is not None]
        rows.sort(key=lambda r: r["volume24h"] or 0.0, reverse=True)
        return rows

    def get_top_movers(self, limit: int = 10) -> list[dict]:
        rows = [r for r in self.get_market_data() if r["change24h"] is not None]
        rows.sort(key=lambda r: abs(r["change24h"]), reverse=True)
        return rows[:limit]
