from __future__ import annotations

import time
from datetime import datetime, timezone

# --- fast, allocation-free time helpers ---

def utc_now_s() -> float:
    """Unix epoch seconds (float)."""
    return time.time()

def utc_now_ms() -> int:
    """Unix epoch milliseconds (int)."""
    return time.time_ns() // 1_000_000

def ms_to_s(ts_ms: int | float) -> float:
    return float(ts_ms) / 1000.0

def normalize_epoch_s(ts: float | int) -> float:
    """Accept s / ms / ns epochs and return seconds."""
    ts = float(ts)
    if ts > 1e17:  # ns → s
        return ts / 1e9
    if ts > 1e11:  # ms → s
        return ts / 1e3
    return ts

def utc_dt(ts: float | int) -> datetime:
    """Epoch seconds -> timezone-aware UTC datetime."""
    return datetime.fromtimestamp(float(ts), tz=timezone.utc)

def utc_hour(ts_ms: int | float) -> int:
    """UTC hour of day for an epoch-millis timestamp."""
    return utc_dt(ms_to_s(ts_ms)).hour
