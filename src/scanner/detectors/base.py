from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Protocol

from scanner.config import ScannerThresholds
from scanner.data.store import SymbolSnapshot

SignalType = Literal[
    "volume_spike",
    "price_breakout",
    "orderbook_imbalance",
    "liquidity_wall",
    "whale_activity",
]
Severity = Literal["low", "medium", "high"]


@dataclass(slots=True, frozen=True)
class SignalFinding:
    type: SignalType
    symbol: str
    severity: Severity
    confidence: float                 # 0..1
    evidence: dict[str, Any] = field(default_factory=dict)
    detected_at: float = 0.0          # epoch seconds

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "symbol": self.symbol,
            "severity": self.severity,
            "confidence": self.confidence,
            "evidence": dict(self.evidence),
            "detectedAt": self.detected_at,
        }


class Detector(Protocol):
    """
    Pure detector: same snapshot + thresholds + now -> same result.
    """
    type: SignalType

    def enabled(self, cfg: ScannerThresholds) -> bool: ...

    def evaluate(
        self, view: SymbolSnapshot, cfg: ScannerThresholds, now: float
    ) -> Optional[SignalFinding]: ...


# ---------------------------------------------------------------------------
# confidence from overshoot
# ---------------------------------------------------------------------------

def ratio_margin(observed: float, threshold: float) -> float:
    """
    Overshoot of a ratio past its threshold, in units of the threshold's own
    margin over 1.0. observed == threshold -> 0; threshold 1.2, observed 1.4 -> 1.
    """
    if math.isinf(observed):
        return math.inf
    return max(0.0, (observed - threshold) / (threshold - 1.0))


def relative_margin(observed: float, threshold: float) -> float:
    """Overshoot relative to an absolute threshold (turnover, percent change)."""
    if threshold <= 0:
        return 1.0 if observed > 0 else 0.0
    return max(0.0, (observed - threshold) / threshold)


def confidence_from_margin(margin: float) -> float:
    """0.5 at the threshold, approaching 1.0 as the overshoot grows."""
    if math.isinf(margin):
        return 1.0
    return round(1.0 - 0.5 * math.exp(-margin), 4)


def severity_from_margin(margin: float) -> Severity:
    if margin < 1.0:
        return "low"
    if margin < 3.0:
        return "medium"
    return "high"


def finite_or_none(x: float) -> Optional[float]:
    return x if math.isfinite(x) else None
