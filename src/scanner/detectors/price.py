from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

from scanner.config import ScannerThresholds
from scanner.data.store import SymbolSnapshot
from scanner.detectors.base import SignalFinding, confidence_from_margin, ratio_margin, severity_from_margin

BreakoutDirection = Literal["up", "down"]


@dataclass(slots=True, frozen=True)
class BreakoutResult:
    direction: BreakoutDirection
    ratio: float            # move expressed as a ratio >= 1 in the breakout direction
    previous_close: float
    current_close: float


def price_breakout(previous_close: float, current_close: float, threshold: float) -> Optional[BreakoutResult]:
    """
    up   if current > previous * threshold
    down if current < previous / threshold
    """
    if threshold <= 1.0:
        raise ValueError("breakout threshold must be > 1")
    if previous_close <= 0.0 or current_close <= 0.0:
        return None
    if current_close > previous_close * threshold:
        return BreakoutResult("up", current_close / previous_close, previous_close, current_close)
    if current_close < previous_close / threshold:
        return BreakoutResult("down", previous_close / current_close, previous_close, current_close)
    return None


class PriceBreakoutDetector:
    type = "price_breakout"

    def enabled(self, cfg: ScannerThresholds) -> bool:
        return cfg.price_breakout_enabled

    def evaluate(self, view: SymbolSnapshot, cfg: ScannerThresholds, now: float) -> Optional[SignalFinding]:
        candles = view.candles.get(cfg.candle_interval)
        if candles is None or candles.length < 2:
            return None
        res = price_breakout(float(candles.close[-2]), float(candles.close[-1]), cfg.price_breakout_threshold)
        if res is None:
            return None
        margin = ratio_margin(res.ratio, cfg.price_breakout_threshold)
        return SignalFinding(
            type="price_breakout",
            symbol=view.symbol,
            severity=severity_from_margin(margin),
            confidence=confidence_from_margin(margin),
            evidence={
                "interval": cfg.candle_interval,
                "direction": res.direction,
                "ratio": round(res.ratio, 6),
                "previousPrice": res.previous_close,
                "currentPrice": res.current_close,
                "pctMove": round((res.current_close - res.previous_close) / res.previous_close * 100.0, 4),
                "threshold": cfg.price_breakout_threshold,
            },
            detected_at=now,
        )
