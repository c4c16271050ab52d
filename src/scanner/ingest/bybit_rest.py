from __future__ import annotations

import asyncio
from typing import Optional

import aiohttp
import structlog

from scanner.ingest.parser import parse_rest_kline_row, parse_ticker
from scanner.utils.time import utc_now_s
from scanner.utils.types import FeedEvent

log = structlog.get_logger("bybit_rest")


class BybitRestError(RuntimeError):
    pass


async def _get(session: aiohttp.ClientSession, base_url: str, path: str, params: dict) -> dict:
    async with session.get(f"{base_url.rstrip('/')}{path}", params=params) as resp:
        resp.raise_for_status()
        body = await resp.json()
    if body.get("retCode") != 0:
        raise BybitRestError(f"{path}: retCode={body.get('retCode')} msg={body.get('retMsg')}")
    return body.get("result") or {}


async def fetch_symbols(session: aiohttp.ClientSession, base_url: str, limit: int = 50) -> list[str]:
    """Trading USDT linear perpetuals, exchange order, first `limit`."""
    result = await _get(session, base_url, "/v5/market/instruments-info",
                        {"category": "linear", "status": "Trading", "limit": 1000})
    out = [
        item["symbol"]
        for item in result.get("list", [])
        if item.get("quoteCoin") == "USDT" and item.get("contractType") == "LinearPerpetual"
    ]
    return out[:limit]


async def fetch_ticker_events(session: aiohttp.ClientSession, base_url: str, symbols: list[str]) -> list[FeedEvent]:
    result = await _get(session, base_url, "/v5/market/tickers", {"category": "linear"})
    wanted = set(symbols)
    now = utc_now_s()
    out: list[FeedEvent] = []
    for t in result.get("list", []):
        if t.get("symbol") not in wanted:
            continue
        evt = parse_ticker({"topic": f"tickers.{t['symbol']}", "data": t}, now)
        if evt:
            out.append(evt)
    return out


async def fetch_kline_events(
    session: aiohttp.ClientSession, base_url: str, symbol: str, interval: str, limit: int = 100
) -> list[FeedEvent]:
    result = await _get(session, base_url, "/v5/market/kline",
                        {"category": "linear", "symbol": symbol, "interval": interval, "limit": limit})
    now = utc_now_s()
    rows = result.get("list", [])
    # REST returns newest first
    events = [parse_rest_kline_row(symbol, interval, row, now) for row in reversed(rows)]
    return [e for e in events if e is not None]


async def bootstrap(
    base_url: str,
    symbols: Optional[list[str]],
    intervals: list[str],
    *,
    symbol_limit: int = 50,
    kline_limit: int = 100,
    concurrency: int = 8,
    timeout_s: float = 10.0,
) -> tuple[list[str], list[FeedEvent]]:
    """
    Resolve the symbol universe (when not given) and pull initial tickers and
    candle history so detectors are not blind until the stream fills up.
    """
    timeout = aiohttp.ClientTimeout(total=timeout_s)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        if not symbols:
            symbols = await fetch_symbols(session, base_url, symbol_limit)
            log.info("symbols_bootstrapped", count=len(symbols))

        events: list[FeedEvent] = []
        try:
            events.extend(await fetch_ticker_events(session, base_url, symbols))
        except (aiohttp.ClientError, asyncio.TimeoutError, BybitRestError) as e:
            log.warning("ticker_bootstrap_failed", err=str(e))

        sem = asyncio.Semaphore(concurrency)

        async def one(sym: str, iv: str) -> list[FeedEvent]:
            async with sem:
                try:
                    return await fetch_kline_events(session, base_url, sym, iv, kline_limit)
                except (aiohttp.ClientError, asyncio.TimeoutError, BybitRestError) as e:
                    log.warning("kline_bootstrap_failed", symbol=sym, interval=iv, err=str(e))
                    return []

        batches = await asyncio.gather(*(one(s, iv) for s in symbols for iv in intervals))
        for b in batches:
            events.extend(b)
    return list(symbols), events
