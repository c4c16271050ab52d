from __future__ import annotations

from scanner.detectors.base import Detector
from scanner.detectors.orderbook import LiquidityWallDetector, OrderBookImbalanceDetector
from scanner.detectors.price import PriceBreakoutDetector
from scanner.detectors.volume import VolumeSpikeDetector
from scanner.detectors.whale import WhaleActivityDetector


def default_detectors() -> list[Detector]:
    """The full detector set, in evaluation order."""
    return [
        VolumeSpikeDetector(),
        PriceBreakoutDetector(),
        OrderBookImbalanceDetector(),
        LiquidityWallDetector(),
        WhaleActivityDetector(),
    ]
