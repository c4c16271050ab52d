from __future__ import annotations

import threading
from collections import deque
from typing import Callable, Iterable, Optional

import structlog

from scanner.config import ConfigStore, ScannerThresholds
from scanner.data.store import RollingSeriesStore
from scanner.detectors.base import Detector, SignalFinding
from scanner.detectors.registry import default_detectors
from scanner.signals.state import AggregateSignalState, AggregatorStats
from scanner.utils.time import utc_now_s

log = structlog.get_logger("aggregator")

DEFAULT_HISTORY_SIZE = 1000


class SignalAggregator:
    """
    Runs the detector set for a symbol, keeps the per-symbol aggregate, and
    decides whether it is alert-worthy.

    Alert gating (per symbol, under that symbol's lock):
      findings non-empty AND (no prior alert OR now - last_alert_at >= min interval)
    Emitting sets last_alert_at = now. A pass with no findings clears the
    findings but keeps last_alert_at so flapping cannot bypass the window.
    """

    def __init__(
        self,
        store: RollingSeriesStore,
        config: ConfigStore,
        detectors: Optional[Iterable[Detector]] = None,
        *,
        history_size: int = DEFAULT_HISTORY_SIZE,
        clock: Callable[[], float] = utc_now_s,
    ):
        self.store = store
        self.config = config
        self.detectors: list[Detector] = list(detectors) if detectors is not None else default_detectors()
        self._clock = clock
        self._states: dict[str, AggregateSignalState] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._history: deque[dict] = deque(maxlen=history_size)
        self._history_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self.stats = AggregatorStats()

    # ------------------------------------------------------------------ core

    def _lock_for(self, symbol: str) -> threading.Lock:
        lock = self._locks.get(symbol)
        if lock is None:
            with self._locks_guard:
                lock = self._locks.setdefault(symbol, threading.Lock())
        return lock

    def detect(self, symbol: str, now: float, cfg: Optional[ScannerThresholds] = None) -> list[SignalFinding]:
        """Run every enabled detector against one consistent snapshot."""
        cfg = self.config.current if cfg is None else cfg
        view = self.store.snapshot(symbol)
        findings: list[SignalFinding] = []
        for det in self.detectors:
            if not det.enabled(cfg):
                continue
            try:
                f = det.evaluate(view, cfg, now)
            except Exception as e:
                self._count("detector_errors")
                log.warning("detector_error", detector=det.type, symbol=symbol, err=str(e))
                continue
            if f is not None:
                findings.append(f)
        return findings

    def evaluate(self, symbol: str, now: Optional[float] = None) -> Optional[dict]:
        """
        Recompute the aggregate for `symbol`. Returns the "signals" event payload
        when the aggregate is alertable, otherwise None.
        """
        now = self._clock() if now is None else now
        # one config for the whole pass
        cfg = self.config.current
        findings = self.detect(symbol, now, cfg)
        min_interval_s = cfg.min_alert_interval_ms / 1000.0

        with self._lock_for(symbol):
            st = self._states.get(symbol)
            if st is None:
                st = AggregateSignalState(symbol=symbol)
                self._states[symbol] = st
            st.findings = tuple(findings)
            st.evaluated_at = now
            self._count("evaluations")

            if not findings:
                return None
            if st.last_alert_at is not None and now - st.last_alert_at < min_interval_s:
                self._count("suppressed")
                return None

            st.last_alert_at = now
            st.alert_count += 1
            event = self._build_event(symbol, st.findings, now)

        self._record(event)
        return event

    def _count(self, name: str) -> None:
        with self._stats_lock:
            setattr(self.stats, name, getattr(self.stats, name) + 1)

    def _build_event(self, symbol: str, findings: tuple[SignalFinding, ...], now: float) -> dict:
        ticker = self.store.get_ticker(symbol)
        return {
            "symbol": symbol,
            "signals": [f.as_dict() for f in findings],
            "signalCount": len(findings),
            "maxConfidence": max(f.confidence for f in findings),
            "price": ticker.last_price if ticker else None,
            "volume": ticker.volume_24h if ticker else None,
            "change": ticker.change_24h if ticker else None,
            "timestamp": int(now * 1000),
        }

    def _record(self, event: dict) -> None:
        with self._history_lock:
            self._history.append(event)
            self.stats.emitted += 1
            for s in event["signals"]:
                self.stats.by_type[s["type"]] = self.stats.by_type.get(s["type"], 0) + 1

    # --------------------------------------------------------------- queries

    def get_state(self, symbol: str) -> Optional[AggregateSignalState]:
        return self._states.get(symbol)

    def active_states(self) -> list[AggregateSignalState]:
        return [st for st in list(self._states.values()) if st.active]

    def history(self, limit: int = 100) -> list[dict]:
        """Most recent emitted events, newest first."""
        if limit <= 0:
            return []
        with self._history_lock:
            items = list(self._history)[-limit:]
        items.reverse()
        return items

    def clear(self) -> None:
        with self._locks_guard:
            self._states.clear()
        with self._history_lock:
            self._history.clear()
            self.stats.by_type.clear()
        log.info("signals_cleared")
