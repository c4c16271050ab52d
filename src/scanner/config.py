from __future__ import annotations

import math
import os
import threading
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Mapping, Optional

import structlog

log = structlog.get_logger("config")


class ConfigError(ValueError):
    """Rejected configuration update. The previous config stays active."""

    def __init__(self, errors: dict[str, str]):
        self.errors = dict(errors)
        detail = "; ".join(f"{k}: {v}" for k, v in sorted(self.errors.items()))
        super().__init__(f"invalid configuration: {detail}")


@dataclass(slots=True, frozen=True)
class ScannerThresholds:
    """
    Detector thresholds and enable flags, read synchronously at evaluation time.

    Ratios (volume / breakout / imbalance / wall) are multipliers and must be > 1.
    whale_min_change_pct is in percent (3.0 == 3%).
    """
    volume_spike_threshold: float = 1.2
    price_breakout_threshold: float = 1.01
    order_book_imbalance_threshold: float = 1.5
    liquidity_wall_threshold: float = 2.0
    whale_min_turnover: float = 5_000_000.0
    whale_min_change_pct: float = 3.0

    volume_spike_enabled: bool = True
    price_breakout_enabled: bool = True
    spoof_detection_enabled: bool = True     # order-book imbalance
    liquidity_walls_enabled: bool = True
    whale_alerts_enabled: bool = True

    min_alert_interval_ms: int = 60_000

    order_book_depth: int = 10
    volume_lookback: int = 10
    candle_interval: str = "1"

    # multi-method volume agreement (optional mode)
    multi_method_enabled: bool = False
    multi_method_min_agree: int = 2
    acceleration_threshold: float = 1.3

    def as_dict(self) -> dict[str, Any]:
        return {_CAMEL[k]: v for k, v in asdict(self).items()}


# camelCase keys as they arrive from the settings collaborator
_CAMEL = {
    "volume_spike_threshold": "volumeSpikeThreshold",
    "price_breakout_threshold": "priceBreakoutThreshold",
    "order_book_imbalance_threshold": "orderBookImbalanceThreshold",
    "liquidity_wall_threshold": "liquidityWallThreshold",
    "whale_min_turnover": "whaleMinTurnover",
    "whale_min_change_pct": "whaleMinChangePct",
    "volume_spike_enabled": "volumeSpikeEnabled",
    "price_breakout_enabled": "priceBreakoutEnabled",
    "spoof_detection_enabled": "spoofDetectionEnabled",
    "liquidity_walls_enabled": "liquidityWallsEnabled",
    "whale_alerts_enabled": "whaleAlertsEnabled",
    "min_alert_interval_ms": "minAlertIntervalMs",
    "order_book_depth": "orderBookDepth",
    "volume_lookback": "volumeLookback",
    "candle_interval": "candleInterval",
    "multi_method_enabled": "multiMethodEnabled",
    "multi_method_min_agree": "multiMethodMinAgree",
    "acceleration_threshold": "accelerationThreshold",
}
_SNAKE = {v: k for k, v in _CAMEL.items()}
_TYPES = {f.name: f.type for f in fields(ScannerThresholds)}

_RATIO_KEYS = (
    "volume_spike_threshold",
    "price_breakout_threshold",
    "order_book_imbalance_threshold",
    "liquidity_wall_threshold",
    "acceleration_threshold",
)
_NON_NEGATIVE_KEYS = ("whale_min_turnover", "whale_min_change_pct", "min_alert_interval_ms")


def _coerce(name: str, value: Any) -> Any:
    kind = _TYPES[name]
    if kind == "bool":
        if isinstance(value, bool):
            return value
        raise TypeError("expected bool")
    if kind == "int":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError("expected int")
        if not math.isfinite(value) or int(value) != value:
            raise TypeError("expected int")
        return int(value)
    if kind == "float":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError("expected number")
        if not math.isfinite(value):
            raise TypeError("expected a finite number")
        return float(value)
    if kind == "str":
        return str(value)
    return value


def validate(cfg: ScannerThresholds) -> dict[str, str]:
    errors: dict[str, str] = {}
    for k in _RATIO_KEYS:
        if not getattr(cfg, k) > 1.0:
            errors[_CAMEL[k]] = "must be > 1"
    for k in _NON_NEGATIVE_KEYS:
        if getattr(cfg, k) < 0:
            errors[_CAMEL[k]] = "must be >= 0"
    if cfg.order_book_depth < 1:
        errors["orderBookDepth"] = "must be >= 1"
    if cfg.volume_lookback < 2:
        errors["volumeLookback"] = "must be >= 2"
    if not 1 <= cfg.multi_method_min_agree <= 4:
        errors["multiMethodMinAgree"] = "must be within 1..4"
    if not cfg.candle_interval:
        errors["candleInterval"] = "must be non-empty"
    return errors


def merge(base: ScannerThresholds, partial: Mapping[str, Any]) -> ScannerThresholds:
    """
    Apply a partial update (camelCase or snake_case keys) and validate the result.
    Raises ConfigError with every problem found; nothing is applied on error.
    """
    errors: dict[str, str] = {}
    updates: dict[str, Any] = {}
    for key, value in partial.items():
        name = _SNAKE.get(key, key)
        if name not in _TYPES:
            errors[key] = "unknown key"
            continue
        try:
            updates[name] = _coerce(name, value)
        except TypeError as e:
            errors[key] = str(e)
    if errors:
        raise ConfigError(errors)
    merged = replace(base, **updates)
    errors = validate(merged)
    if errors:
        raise ConfigError(errors)
    return merged


class ConfigStore:
    """
    Holds the active thresholds. Reads are a single attribute load;
    update() swaps in a fully validated copy or leaves the old one alone.
    """

    def __init__(self, initial: Optional[ScannerThresholds] = None):
        initial = initial or ScannerThresholds()
        errors = validate(initial)
        if errors:
            raise ConfigError(errors)
        self._current = initial
        self._lock = threading.Lock()

    @property
    def current(self) -> ScannerThresholds:
        return self._current

    def update(self, partial: Mapping[str, Any]) -> ScannerThresholds:
        with self._lock:
            try:
                merged = merge(self._current, partial)
            except ConfigError as e:
                log.warning("config_update_rejected", errors=e.errors)
                raise
            self._current = merged
        log.info("config_updated", keys=sorted(partial.keys()))
        return merged


# ---------------------------------------------------------------------------
# process settings (env)
# ---------------------------------------------------------------------------

def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _env_list(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [s.strip() for s in raw.split(",") if s.strip()]


@dataclass(slots=True)
class AppConfig:
    stream_url: str = "wss://stream.bybit.com/v5/public/linear"
    rest_url: str = "https://api.bybit.com"
    symbols: list[str] = field(default_factory=list)
    symbol_limit: int = 50
    kline_intervals: list[str] = field(default_factory=lambda: ["1", "5"])
    orderbook_depth: int = 50
    ws_host: str = "0.0.0.0"
    ws_port: int = 8765
    redis_url: str = "redis://localhost:6379/0"
    redis_mirror: bool = False
    print_alerts: bool = True
    eval_interval_s: float = 30.0
    consumer_queue_size: int = 256
    consumer_send_timeout_s: float = 5.0
    reconnect_delay_s: float = 5.0
    rest_bootstrap: bool = True
    alert_tz: str = "UTC"
    thresholds: ScannerThresholds = field(default_factory=ScannerThresholds)

    @classmethod
    def from_env(cls) -> "AppConfig":
        thresholds = ScannerThresholds()
        overrides: dict[str, Any] = {}
        for snake, camel in _CAMEL.items():
            raw = os.getenv(f"SCANNER_{snake.upper()}")
            if raw is None:
                continue
            kind = _TYPES[snake]
            if kind == "bool":
                overrides[camel] = raw.lower() in ("1", "true", "yes")
            elif kind == "int":
                overrides[camel] = int(raw)
            elif kind == "float":
                overrides[camel] = float(raw)
            else:
                overrides[camel] = raw
        if overrides:
            thresholds = merge(thresholds, overrides)

        return cls(
            stream_url=os.getenv("BYBIT_STREAM_URL", "wss://stream.bybit.com/v5/public/linear"),
            rest_url=os.getenv("BYBIT_REST_URL", "https://api.bybit.com"),
            symbols=[s.upper() for s in _env_list("SYMBOLS", "")],
            symbol_limit=int(os.getenv("SYMBOL_LIMIT", "50")),
            kline_intervals=_env_list("KLINE_INTERVALS", "1,5"),
            orderbook_depth=int(os.getenv("ORDERBOOK_DEPTH", "50")),
            ws_host=os.getenv("WS_HOST", "0.0.0.0"),
            ws_port=int(os.getenv("WS_PORT", "8765")),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            redis_mirror=_env_bool("REDIS_MIRROR", "0"),
            print_alerts=_env_bool("PRINT_ALERTS", "1"),
            eval_interval_s=float(os.getenv("EVAL_INTERVAL_S", "30")),
            consumer_queue_size=int(os.getenv("CONSUMER_QUEUE_SIZE", "256")),
            consumer_send_timeout_s=float(os.getenv("CONSUMER_SEND_TIMEOUT_S", "5")),
            reconnect_delay_s=float(os.getenv("RECONNECT_DELAY_S", "5")),
            rest_bootstrap=_env_bool("REST_BOOTSTRAP", "1"),
            alert_tz=os.getenv("ALERT_TZ", "UTC"),
            thresholds=thresholds,
        )
