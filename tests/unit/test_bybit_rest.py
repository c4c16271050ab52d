import pytest

import scanner.ingest.bybit_rest as rest


class _Resp:
    def __init__(self, body):
        self.body = body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *a):
        return False

    def raise_for_status(self):
        pass

    async def json(self):
        return self.body


class _Session:
    """Routes GET paths to canned Bybit v5 bodies."""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def get(self, url, params=None):
        self.calls.append((url, params))
        for path, body in self.routes.items():
            if url.endswith(path):
                return _Resp(body)
        raise AssertionError(url)


def _ok(items):
    return {"retCode": 0, "retMsg": "OK", "result": {"list": items}}


@pytest.mark.asyncio
async def test_fetch_symbols_filters_usdt_perpetuals():
    session = _Session({"/v5/market/instruments-info": _ok([
        {"symbol": "BTCUSDT", "quoteCoin": "USDT", "contractType": "LinearPerpetual"},
        {"symbol": "BTCUSDC", "quoteCoin": "USDC", "contractType": "LinearPerpetual"},
        {"symbol": "BTC-27DEC24", "quoteCoin": "USDT", "contractType": "LinearFutures"},
        {"symbol": "ETHUSDT", "quoteCoin": "USDT", "contractType": "LinearPerpetual"},
        {"symbol": "SOLUSDT", "quoteCoin": "USDT", "contractType": "LinearPerpetual"},
    ])})
    assert await rest.fetch_symbols(session, "https://api.test/", limit=2) == ["BTCUSDT", "ETHUSDT"]
    url, params = session.calls[0]
    assert url == "https://api.test/v5/market/instruments-info"
    assert params["category"] == "linear" and params["status"] == "Trading"


@pytest.mark.asyncio
async def test_fetch_kline_events_oldest_first():
    session = _Session({"/v5/market/kline": _ok([
        ["120000", "2", "2", "2", "2", "20", "0"],
        ["60000", "1", "1", "1", "1", "10", "0"],
    ])})
    evts = await rest.fetch_kline_events(session, "https://api.test", "BTCUSDT", "1")
    assert [e.payload["start"] for e in evts] == ["60000", "120000"]
    assert all(e.type == "kline" and e.payload["interval"] == "1" for e in evts)


@pytest.mark.asyncio
async def test_fetch_ticker_events_only_for_wanted_symbols():
    session = _Session({"/v5/market/tickers": _ok([
        {"symbol": "BTCUSDT", "lastPrice": "1", "price24hPcnt": "0.05", "turnover24h": "9"},
        {"symbol": "XRPUSDT", "lastPrice": "1"},
    ])})
    evts = await rest.fetch_ticker_events(session, "https://api.test", ["BTCUSDT"])
    assert [e.symbol for e in evts] == ["BTCUSDT"]
    assert evts[0].payload["change24h"] == pytest.approx(5.0)


@pytest.mark.asyncio
async def test_non_zero_ret_code_raises():
    session = _Session({"/v5/market/kline": {"retCode": 10001, "retMsg": "params error", "result": {}}})
    with pytest.raises(rest.BybitRestError):
        await rest.fetch_kline_events(session, "https://api.test", "BTCUSDT", "1")
