from __future__ import annotations
from datetime import datetime
from zoneinfo import ZoneInfo

_LABELS = {
    "volume_spike": "Volume Spike",
    "price_breakout": "Price Breakout",
    "orderbook_imbalance": "Order Book Imbalance",
    "liquidity_wall": "Liquidity Walls",
    "whale_activity": "Whale Activity",
}

def _fmt_ts(ts_ms: int, tz_name: str) -> str:
    tz = ZoneInfo(tz_name)
    return datetime.fromtimestamp(ts_ms / 1000.0, tz).strftime("%H:%M:%S %Z")

def _reason(sig: dict) -> str:
    ev = sig.get("evidence", {})
    kind = sig.get("type", "?")
    label = _LABELS.get(kind, kind)
    conf = float(sig.get("confidence", 0.0)) * 100.0
    head = f"- {label} [{sig.get('severity', '?')}, {conf:.0f}%]"

    if kind == "volume_spike":
        ratio = ev.get("ratio")
        if ratio is None and "simple" in ev:
            ratio = ev["simple"].get("ratio")
        tail = f" ratio={ratio:.2f}x" if isinstance(ratio, (int, float)) else " ratio=inf"
        if "signalStrength" in ev:
            agreeing = [m["method"] for m in ev.get("methods", []) if m.get("isSpike")]
            tail += f" strength={ev['signalStrength'] * 100:.0f}% ({', '.join(agreeing)})"
        return head + tail
    if kind == "price_breakout":
        arrow = "↑" if ev.get("direction") == "up" else "↓"
        return head + f" {arrow} {ev.get('pctMove', 0.0):+.2f}%"
    if kind == "orderbook_imbalance":
        return head + f" {ev.get('direction')} side, bid/ask={ev.get('ratio', 0.0):.2f}"
    if kind == "liquidity_wall":
        return head + f" bids={len(ev.get('buy', []))} asks={len(ev.get('sell', []))}"
    if kind == "whale_activity":
        return head + f" {ev.get('direction')} turnover={ev.get('turnover24h', 0.0):,.0f} chg={ev.get('change24h', 0.0):+.2f}%"
    return head

def format_signals_pretty(evt: dict, tz_name: str = "UTC") -> str:
    """Multi-line alert block for one aggregate "signals" event."""
    sym = evt.get("symbol", "?")
    price = evt.get("price")
    change = evt.get("change")
    ts = int(evt.get("timestamp", 0))

    bar = "=" * 50
    lines = [bar, f"MARKET ALERT: {sym}  {_fmt_ts(ts, tz_name)}", bar]
    if isinstance(price, (int, float)):
        lines.append(f"Price: {price:.8f}")
    if isinstance(change, (int, float)):
        lines.append(f"24h: {change:+.2f}%")
    lines.append("Alert Reasons:")
    lines.extend(_reason(s) for s in evt.get("signals", []))
    lines.append("-" * 50)
    return "\n".join(lines)
