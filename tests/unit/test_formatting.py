import pytest

from scanner.broadcast.formatting import format_signals_pretty
from scanner.broadcast.notifiers import ConsoleNotifier

EVT = {
    "symbol": "BTCUSDT",
    "price": 65000.5,
    "change": 3.2,
    "timestamp": 1_700_000_000_000,
    "signals": [
        {"type": "volume_spike", "severity": "medium", "confidence": 0.8, "evidence": {"ratio": 2.5}},
        {"type": "price_breakout", "severity": "low", "confidence": 0.55,
         "evidence": {"direction": "down", "pctMove": -1.25}},
        {"type": "whale_activity", "severity": "high", "confidence": 0.9,
         "evidence": {"direction": "bullish", "turnover24h": 9_000_000, "change24h": 3.2}},
    ],
}


def test_pretty_block():
    text = format_signals_pretty(EVT, "UTC")
    lines = text.splitlines()
    assert "MARKET ALERT: BTCUSDT" in lines[1]
    assert "22:13:20" in lines[1]
    assert "24h: +3.20%" in text
    assert "Volume Spike [medium, 80%] ratio=2.50x" in text
    assert "Price Breakout [low, 55%] ↓ -1.25%" in text
    assert "turnover=9,000,000" in text


def test_infinite_volume_ratio_is_rendered():
    evt = dict(EVT, signals=[{"type": "volume_spike", "severity": "high", "confidence": 1.0,
                              "evidence": {"ratio": None}}])
    assert "ratio=inf" in format_signals_pretty(evt)


@pytest.mark.asyncio
async def test_console_notifier_prints_only_signals(capsys):
    n = ConsoleNotifier(format_fn=format_signals_pretty)
    await n.send({"event": "market_update", "data": {}, "channel": "market", "timestamp": 0})
    await n.send({"event": "signals", "data": EVT, "channel": "signals", "timestamp": 0})
    out = capsys.readouterr().out
    assert n.printed == 1
    assert "MARKET ALERT: BTCUSDT" in out


@pytest.mark.asyncio
async def test_console_notifier_falls_back_on_format_error(capsys):
    def broken(evt):
        raise KeyError("x")

    n = ConsoleNotifier(format_fn=broken)
    await n.send({"event": "signals", "data": EVT, "channel": "signals", "timestamp": 0})
    assert "[ALERT] BTCUSDT volume_spike,price_breakout,whale_activity" in capsys.readouterr().out
