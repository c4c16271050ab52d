from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np

from scanner.config import ScannerThresholds
from scanner.data.ring_buffer import CandleView
from scanner.data.store import SymbolSnapshot
from scanner.detectors.base import (
    SignalFinding,
    confidence_from_margin,
    finite_or_none,
    ratio_margin,
    severity_from_margin,
)
from scanner.utils.time import utc_hour

ANALYSIS_WINDOW = 10       # current candle + 9 previous
ACCELERATION_WINDOW = 5
TOTAL_METHODS = 4


def _ratio(current: float, baseline: float) -> float:
    if baseline > 0:
        return current / baseline
    return math.inf if current > 0 else 0.0


# ============================================================
# Simple ratio spike
# ============================================================

@dataclass(slots=True, frozen=True)
class VolumeSpikeResult:
    is_spike: bool
    current_volume: float
    avg_volume: float
    ratio: float


def volume_spike(current: float, previous: Sequence[float], threshold: float) -> Optional[VolumeSpikeResult]:
    """
    current > mean(previous) * threshold.
    None when there is no baseline. A zero baseline spikes on any volume.
    """
    if len(previous) == 0:
        return None
    avg = float(np.mean(np.asarray(previous, dtype=np.float64)))
    if avg == 0.0:
        is_spike = current > 0.0
    else:
        is_spike = current > avg * threshold
    return VolumeSpikeResult(is_spike, float(current), avg, _ratio(current, avg))


# ============================================================
# Multi-method analysis
# ============================================================

@dataclass(slots=True, frozen=True)
class MethodResult:
    name: str
    is_spike: bool
    value: float           # ratio or acceleration factor
    threshold: float       # effective threshold the value was compared to

    def as_dict(self) -> dict:
        return {
            "method": self.name,
            "isSpike": self.is_spike,
            "value": finite_or_none(self.value),
            "threshold": self.threshold,
        }


@dataclass(slots=True, frozen=True)
class VolumeAnalysis:
    is_signal: bool
    agreeing: int
    signal_strength: float          # agreeing / TOTAL_METHODS
    simple: VolumeSpikeResult
    methods: tuple[MethodResult, ...] = field(default_factory=tuple)

    def as_dict(self) -> dict:
        return {
            "isVolumeSignal": self.is_signal,
            "agreeingMethods": self.agreeing,
            "signalStrength": self.signal_strength,
            "simple": {
                "currentVolume": self.simple.current_volume,
                "avgVolume": self.simple.avg_volume,
                "ratio": finite_or_none(self.simple.ratio),
                "isSpike": self.simple.is_spike,
            },
            "methods": [m.as_dict() for m in self.methods],
        }


def volatility_adjusted(volumes: np.ndarray, closes: np.ndarray, base_threshold: float) -> MethodResult:
    """
    Raise the threshold when recent closes are jumpy:
      adjusted = base * (1 + 10 * std(|pct change of previous closes|))
    """
    prev_v = volumes[:-1]
    prev_c = closes[:-1]
    avg = float(prev_v.mean())
    with np.errstate(divide="ignore", invalid="ignore"):
        changes = np.abs(np.diff(prev_c) / prev_c[:-1])
    changes = changes[np.isfinite(changes)]
    volatility = float(changes.std()) if changes.size else 0.0
    adjusted = base_threshold * (1.0 + volatility * 10.0)
    ratio = _ratio(float(volumes[-1]), avg)
    return MethodResult("volatility_adjusted", ratio > adjusted, ratio, round(adjusted, 6))


def weighted_average(volumes: np.ndarray, threshold: float) -> MethodResult:
    """Baseline weights the most recent previous candle highest (n, n-1, ..., 1)."""
    prev_v = volumes[:-1]
    weights = np.arange(1, prev_v.size + 1, dtype=np.float64)  # oldest=1 .. newest=n
    wavg = float(np.dot(prev_v, weights) / weights.sum())
    ratio = _ratio(float(volumes[-1]), wavg)
    return MethodResult("weighted_average", ratio > threshold, ratio, threshold)


def acceleration(volumes: np.ndarray, threshold: float) -> MethodResult:
    """
    Compare the newest candle-over-candle volume growth with the average of the
    growth rates before it (last ACCELERATION_WINDOW candles).
    """
    recent = volumes[-ACCELERATION_WINDOW:][::-1]  # newest first
    rates = [float(recent[i] / recent[i + 1]) for i in range(recent.size - 1) if recent[i + 1] != 0]
    if len(rates) < 2:
        return MethodResult("acceleration", False, 0.0, threshold)
    prev_avg = sum(rates[1:]) / (len(rates) - 1)
    factor = _ratio(rates[0], prev_avg)
    return MethodResult("acceleration", factor > threshold, factor, threshold)


def time_of_day_factor(hour_utc: int) -> float:
    # EU/US overlap is the busiest; off-hours are quiet so be more sensitive
    if 13 <= hour_utc <= 16:
        return 1.3
    if 8 <= hour_utc < 13 or 16 < hour_utc <= 21:
        return 1.1
    return 0.9


def time_adjusted(volumes: np.ndarray, current_open_time_ms: int, threshold: float) -> MethodResult:
    adjusted = threshold * time_of_day_factor(utc_hour(current_open_time_ms))
    ratio = _ratio(float(volumes[-1]), float(volumes[:-1].mean()))
    return MethodResult("time_adjusted", ratio > adjusted, ratio, round(adjusted, 6))


def analyze_volume(
    candles: CandleView,
    base_threshold: float,
    *,
    acceleration_threshold: float = 1.3,
    min_agree: int = 2,
) -> Optional[VolumeAnalysis]:
    """
    Run the four volume methods over the last ANALYSIS_WINDOW candles and count
    how many agree. None when there are fewer candles than the window.
    """
    if candles.length < ANALYSIS_WINDOW:
        return None
    volumes = np.asarray(candles.volume[-ANALYSIS_WINDOW:], dtype=np.float64)
    closes = np.asarray(candles.close[-ANALYSIS_WINDOW:], dtype=np.float64)
    current_open = int(candles.open_time[-1])

    methods = (
        volatility_adjusted(volumes, closes, base_threshold),
        weighted_average(volumes, base_threshold),
        acceleration(volumes, acceleration_threshold),
        time_adjusted(volumes, current_open, base_threshold),
    )
    agreeing = sum(1 for m in methods if m.is_spike)
    simple = volume_spike(float(volumes[-1]), volumes[:-1].tolist(), base_threshold)
    assert simple is not None
    return VolumeAnalysis(
        is_signal=agreeing >= min_agree,
        agreeing=agreeing,
        signal_strength=agreeing / TOTAL_METHODS,
        simple=simple,
        methods=methods,
    )


# ============================================================
# Detector
# ============================================================

class VolumeSpikeDetector:
    type = "volume_spike"

    def enabled(self, cfg: ScannerThresholds) -> bool:
        return cfg.volume_spike_enabled

    def evaluate(self, view: SymbolSnapshot, cfg: ScannerThresholds, now: float) -> Optional[SignalFinding]:
        candles = view.candles.get(cfg.candle_interval)
        if candles is None or candles.length < 2:
            return None
        if cfg.multi_method_enabled:
            return self._multi_method(view.symbol, candles, cfg, now)

        window = candles.volume[-cfg.volume_lookback:]
        res = volume_spike(float(window[-1]), window[:-1].tolist(), cfg.volume_spike_threshold)
        if res is None or not res.is_spike:
            return None
        margin = ratio_margin(res.ratio, cfg.volume_spike_threshold)
        return SignalFinding(
            type="volume_spike",
            symbol=view.symbol,
            severity=severity_from_margin(margin),
            confidence=confidence_from_margin(margin),
            evidence={
                "interval": cfg.candle_interval,
                "currentVolume": res.current_volume,
                "avgVolume": res.avg_volume,
                "ratio": finite_or_none(round(res.ratio, 4)),
                "threshold": cfg.volume_spike_threshold,
            },
            detected_at=now,
        )

    def _multi_method(
        self, symbol: str, candles: CandleView, cfg: ScannerThresholds, now: float
    ) -> Optional[SignalFinding]:
        analysis = analyze_volume(
            candles,
            cfg.volume_spike_threshold,
            acceleration_threshold=cfg.acceleration_threshold,
            min_agree=cfg.multi_method_min_agree,
        )
        if analysis is None or not analysis.is_signal:
            return None
        margin = ratio_margin(analysis.simple.ratio, cfg.volume_spike_threshold)
        return SignalFinding(
            type="volume_spike",
            symbol=symbol,
            severity=severity_from_margin(margin),
            confidence=round(analysis.signal_strength * confidence_from_margin(margin), 4),
            evidence={
                "interval": cfg.candle_interval,
                "threshold": cfg.volume_spike_threshold,
                "minAgree": cfg.multi_method_min_agree,
                **analysis.as_dict(),
            },
            detected_at=now,
        )
