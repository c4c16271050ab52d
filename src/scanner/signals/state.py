from __future__ import annotations
from dataclasses import dataclass, field

from scanner.detectors.base import SignalFinding

# current truth for one symbol; recomputed on every evaluation, never appended
@dataclass(slots=True)
class AggregateSignalState:
    symbol: str
    findings: tuple[SignalFinding, ...] = ()
    last_alert_at: float | None = None      # epoch seconds of last emitted alert
    evaluated_at: float = 0.0
    alert_count: int = 0

    @property
    def active(self) -> bool:
        return bool(self.findings)

    def as_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "findings": [f.as_dict() for f in self.findings],
            "lastAlertAt": self.last_alert_at,
            "evaluatedAt": self.evaluated_at,
            "alertCount": self.alert_count,
        }

@dataclass(slots=True)
class AggregatorStats:
    evaluations: int = 0
    emitted: int = 0
    suppressed: int = 0                     # had findings but inside the rate-limit window
    detector_errors: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
