import threading
from concurrent.futures import ThreadPoolExecutor

from scanner.config import ConfigStore, ScannerThresholds
from scanner.data.store import RollingSeriesStore
from scanner.signals.aggregator import SignalAggregator
from scanner.utils.types import BookLevel, Candle, OrderBookSnapshot

T0 = 1_700_000_000.0


def _imbalanced_store(sym="BTCUSDT"):
    store = RollingSeriesStore()
    store.replace_order_book(sym, OrderBookSnapshot((BookLevel(100, 30),), (BookLevel(101, 10),), T0))
    store.update_ticker(sym, last_price=100.5, change_24h=1.0, volume_24h=1234.0)
    return store


def _agg(store, **overrides):
    cfg = ScannerThresholds(**{"order_book_imbalance_threshold": 2.0, **overrides})
    return SignalAggregator(store, ConfigStore(cfg))


def test_emits_event_with_findings():
    agg = _agg(_imbalanced_store())
    evt = agg.evaluate("BTCUSDT", T0)
    assert evt["symbol"] == "BTCUSDT"
    assert evt["signalCount"] == 1
    assert evt["signals"][0]["type"] == "orderbook_imbalance"
    assert evt["price"] == 100.5
    assert evt["volume"] == 1234.0
    assert evt["timestamp"] == int(T0 * 1000)
    assert 0 < evt["maxConfidence"] <= 1


def test_rate_limit_emits_exactly_once_inside_window():
    agg = _agg(_imbalanced_store(), min_alert_interval_ms=60_000)
    emitted = [agg.evaluate("BTCUSDT", T0), agg.evaluate("BTCUSDT", T0 + 30)]
    assert sum(1 for e in emitted if e is not None) == 1
    assert agg.stats.suppressed == 1
    # state still reflects the latest evaluation
    assert agg.get_state("BTCUSDT").evaluated_at == T0 + 30
    assert agg.evaluate("BTCUSDT", T0 + 60) is not None


def test_rate_limit_is_per_symbol():
    store = _imbalanced_store("BTCUSDT")
    store.replace_order_book("ETHUSDT", OrderBookSnapshot((BookLevel(1, 30),), (BookLevel(2, 10),), T0))
    agg = _agg(store)
    assert agg.evaluate("BTCUSDT", T0) is not None
    assert agg.evaluate("ETHUSDT", T0 + 1) is not None


def test_no_findings_clears_state_but_keeps_window():
    store = _imbalanced_store()
    agg = _agg(store)
    assert agg.evaluate("BTCUSDT", T0) is not None
    store.replace_order_book("BTCUSDT", OrderBookSnapshot((BookLevel(100, 10),), (BookLevel(101, 10),), T0 + 1))
    assert agg.evaluate("BTCUSDT", T0 + 1) is None
    st = agg.get_state("BTCUSDT")
    assert not st.active
    assert st.last_alert_at == T0
    store.replace_order_book("BTCUSDT", OrderBookSnapshot((BookLevel(100, 30),), (BookLevel(101, 10),), T0 + 2))
    # flapping back inside the window does not re-alert
    assert agg.evaluate("BTCUSDT", T0 + 2) is None


def test_disabled_detector_is_skipped():
    agg = _agg(_imbalanced_store(), spoof_detection_enabled=False, liquidity_walls_enabled=False)
    assert agg.evaluate("BTCUSDT", T0) is None
    assert agg.active_states() == []


def test_detector_error_is_isolated():
    class Boom:
        type = "volume_spike"

        def enabled(self, cfg):
            return True

        def evaluate(self, view, cfg, now):
            raise RuntimeError("boom")

    store = _imbalanced_store()
    base = _agg(store)
    agg = SignalAggregator(store, base.config, detectors=[Boom(), *base.detectors])
    assert agg.evaluate("BTCUSDT", T0) is not None
    assert agg.stats.detector_errors == 1


def test_history_newest_first_and_bounded():
    store = RollingSeriesStore()
    agg = SignalAggregator(store, ConfigStore(ScannerThresholds(min_alert_interval_ms=0)), history_size=3)
    for i in range(5):
        store.upsert_candle("BTCUSDT", "1", Candle(i * 60_000, 100 * 1.1 ** i, 0, 0, 100 * 1.1 ** i, 1))
        agg.evaluate("BTCUSDT", T0 + i)
    h = agg.history(10)
    assert len(h) == 3
    assert [e["timestamp"] for e in h] == sorted((e["timestamp"] for e in h), reverse=True)
    assert agg.history(0) == []
    assert agg.stats.by_type["price_breakout"] == 4


def test_clear_resets_states_and_history():
    agg = _agg(_imbalanced_store())
    agg.evaluate("BTCUSDT", T0)
    agg.clear()
    assert agg.history() == []
    assert agg.get_state("BTCUSDT") is None
    # window is gone with the state
    assert agg.evaluate("BTCUSDT", T0 + 1) is not None


def test_uses_injected_clock():
    agg = SignalAggregator(_imbalanced_store(), ConfigStore(ScannerThresholds(order_book_imbalance_threshold=2.0)),
                           clock=lambda: T0 + 5)
    assert agg.evaluate("BTCUSDT")["timestamp"] == int((T0 + 5) * 1000)


def test_concurrent_triggers_alert_once():
    agg = _agg(_imbalanced_store())
    n = 8
    barrier = threading.Barrier(n)

    def trigger(_):
        barrier.wait()
        return agg.evaluate("BTCUSDT", T0)

    with ThreadPoolExecutor(max_workers=n) as pool:
        results = list(pool.map(trigger, range(n)))

    assert sum(1 for r in results if r is not None) == 1
    assert agg.stats.emitted == 1
    assert agg.stats.suppressed == n - 1
    assert agg.stats.evaluations == n


def test_counters_survive_concurrent_symbols():
    store = RollingSeriesStore()
    symbols = [f"S{i}USDT" for i in range(6)]
    for sym in symbols:
        store.replace_order_book(sym, OrderBookSnapshot((BookLevel(1, 30),), (BookLevel(2, 10),), T0))
    agg = _agg(store)
    rounds = 50
    barrier = threading.Barrier(len(symbols))

    def hammer(sym):
        barrier.wait()
        for i in range(rounds):
            agg.evaluate(sym, T0 + i)

    with ThreadPoolExecutor(max_workers=len(symbols)) as pool:
        list(pool.map(hammer, symbols))

    assert agg.stats.evaluations == len(symbols) * rounds
    assert agg.stats.emitted == len(symbols)
    assert agg.stats.suppressed == len(symbols) * (rounds - 1)


def test_one_config_snapshot_per_pass():
    store = _imbalanced_store()
    cfg = ConfigStore(ScannerThresholds(order_book_imbalance_threshold=2.0, min_alert_interval_ms=60_000))
    agg = SignalAggregator(store, cfg)
    assert agg.evaluate("BTCUSDT", T0) is not None

    class SwapsConfig:
        type = "whale_activity"

        def enabled(self, c):
            return True

        def evaluate(self, view, c, now):
            # a concurrent update landing mid-pass
            cfg.update({"minAlertIntervalMs": 0})
            return None

    agg.detectors = [SwapsConfig(), *agg.detectors]
    # the pass started under the 60s window, so it stays suppressed
    assert agg.evaluate("BTCUSDT", T0 + 1) is None
    # the next pass sees the new window
    assert agg.evaluate("BTCUSDT", T0 + 2) is not None
