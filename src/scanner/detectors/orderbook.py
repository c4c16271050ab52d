from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional, Sequence

from scanner.config import ScannerThresholds
from scanner.data.store import SymbolSnapshot
from scanner.detectors.base import SignalFinding, confidence_from_margin, ratio_margin, severity_from_margin
from scanner.utils.types import BookLevel

ImbalanceSide = Literal["buy", "sell"]


# ============================================================
# Imbalance (top-N depth ratio)
# ============================================================

@dataclass(slots=True, frozen=True)
class ImbalanceResult:
    direction: ImbalanceSide
    ratio: float            # bid volume / ask volume
    bid_volume: float
    ask_volume: float


def order_book_imbalance(
    bids: Sequence[BookLevel], asks: Sequence[BookLevel], threshold: float, depth: int = 10
) -> Optional[ImbalanceResult]:
    bid_vol = sum(lvl.size for lvl in bids[:depth])
    ask_vol = sum(lvl.size for lvl in asks[:depth])
    if bid_vol <= 0.0 or ask_vol <= 0.0:
        return None
    ratio = bid_vol / ask_vol
    if ratio > threshold:
        return ImbalanceResult("buy", ratio, bid_vol, ask_vol)
    if ratio < 1.0 / threshold:
        return ImbalanceResult("sell", ratio, bid_vol, ask_vol)
    return None


class OrderBookImbalanceDetector:
    type = "orderbook_imbalance"

    def enabled(self, cfg: ScannerThresholds) -> bool:
        return cfg.spoof_detection_enabled

    def evaluate(self, view: SymbolSnapshot, cfg: ScannerThresholds, now: float) -> Optional[SignalFinding]:
        book = view.order_book
        if book is None:
            return None
        res = order_book_imbalance(book.bids, book.asks, cfg.order_book_imbalance_threshold, cfg.order_book_depth)
        if res is None:
            return None
        skew = res.ratio if res.direction == "buy" else 1.0 / res.ratio
        margin = ratio_margin(skew, cfg.order_book_imbalance_threshold)
        return SignalFinding(
            type="orderbook_imbalance",
            symbol=view.symbol,
            severity=severity_from_margin(margin),
            confidence=confidence_from_margin(margin),
            evidence={
                "direction": res.direction,
                "ratio": round(res.ratio, 6),
                "bidVolume": res.bid_volume,
                "askVolume": res.ask_volume,
                "depth": cfg.order_book_depth,
                "threshold": cfg.order_book_imbalance_threshold,
                "bookTs": book.timestamp,
            },
            detected_at=now,
        )


# ============================================================
# Liquidity walls (oversized levels)
# ============================================================

@dataclass(slots=True, frozen=True)
class Wall:
    price: float
    size: float
    ratio: float            # size / average level size on that side

    def as_dict(self) -> dict:
        return {"price": self.price, "size": self.size, "ratio": round(self.ratio, 4)}


def find_walls(levels: Sequence[BookLevel], threshold: float) -> list[Wall]:
    if not levels:
        return []
    avg = sum(lvl.size for lvl in levels) / len(levels)
    if avg <= 0.0:
        return []
    return [Wall(lvl.price, lvl.size, lvl.size / avg) for lvl in levels if lvl.size > avg * threshold]


class LiquidityWallDetector:
    type = "liquidity_wall"

    def enabled(self, cfg: ScannerThresholds) -> bool:
        return cfg.liquidity_walls_enabled

    def evaluate(self, view: SymbolSnapshot, cfg: ScannerThresholds, now: float) -> Optional[SignalFinding]:
        book = view.order_book
        if book is None:
            return None
        buy = find_walls(book.bids, cfg.liquidity_wall_threshold)
        sell = find_walls(book.asks, cfg.liquidity_wall_threshold)
        if not buy and not sell:
            return None
        top = max(w.ratio for w in (*buy, *sell))
        margin = ratio_margin(top, cfg.liquidity_wall_threshold)
        return SignalFinding(
            type="liquidity_wall",
            symbol=view.symbol,
            severity=severity_from_margin(margin),
            confidence=confidence_from_margin(margin),
            evidence={
                "buy": [w.as_dict() for w in buy],
                "sell": [w.as_dict() for w in sell],
                "maxRatio": round(top, 4),
                "threshold": cfg.liquidity_wall_threshold,
                "bookTs": book.timestamp,
            },
            detected_at=now,
        )
