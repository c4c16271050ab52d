from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

from scanner.config import ScannerThresholds
from scanner.data.store import SymbolSnapshot
from scanner.detectors.base import SignalFinding, confidence_from_margin, relative_margin, severity_from_margin


@dataclass(slots=True, frozen=True)
class WhaleResult:
    direction: Literal["bullish", "bearish"]
    sign: int
    turnover: float
    change_pct: float


def whale_activity(
    turnover: float, change_pct: float, min_turnover: float, min_change_pct: float
) -> Optional[WhaleResult]:
    """Heavy 24h turnover together with a large 24h move."""
    if turnover > min_turnover and abs(change_pct) > min_change_pct:
        sign = 1 if change_pct > 0 else -1
        return WhaleResult("bullish" if sign > 0 else "bearish", sign, turnover, change_pct)
    return None


class WhaleActivityDetector:
    type = "whale_activity"

    def enabled(self, cfg: ScannerThresholds) -> bool:
        return cfg.whale_alerts_enabled

    def evaluate(self, view: SymbolSnapshot, cfg: ScannerThresholds, now: float) -> Optional[SignalFinding]:
        t = view.ticker
        if t is None or t.turnover_24h is None or t.change_24h is None:
            return None
        res = whale_activity(t.turnover_24h, t.change_24h, cfg.whale_min_turnover, cfg.whale_min_change_pct)
        if res is None:
            return None
        # the weaker of the two overshoots bounds how sure we are
        margin = min(
            relative_margin(res.turnover, cfg.whale_min_turnover),
            relative_margin(abs(res.change_pct), cfg.whale_min_change_pct),
        )
        return SignalFinding(
            type="whale_activity",
            symbol=view.symbol,
            severity=severity_from_margin(margin),
            confidence=confidence_from_margin(margin),
            evidence={
                "direction": res.direction,
                "sign": res.sign,
                "turnover24h": res.turnover,
                "change24h": res.change_pct,
                "minTurnover": cfg.whale_min_turnover,
                "minChangePct": cfg.whale_min_change_pct,
            },
            detected_at=now,
        )
