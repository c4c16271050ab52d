from __future__ import annotations

import random
from typing import Iterator

def jitter(v: float, *, ratio: float = 0.2) -> float:
    """
    Add ±ratio jitter. ratio=0.2 -> multiply by [0.8, 1.2].
    """
    lo = 1.0 - ratio
    hi = 1.0 + ratio
    return v * (lo + (hi - lo) * random.random())

def fixed_iter(delay: float = 5.0) -> Iterator[float]:
    """Unbounded constant retry delay (the feed reconnect policy)."""
    while True:
        yield delay
