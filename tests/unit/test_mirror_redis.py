import json

import pytest

import scanner.data.mirror_redis as mr


class _FakePipeline:
    def __init__(self, fail=False):
        self.cmds = []
        self.fail = fail
        self.executed = False

    def lpush(self, key, value):
        self.cmds.append(("LPUSH", key, value))

    def ltrim(self, key, start, stop):
        self.cmds.append(("LTRIM", key, start, stop))

    def hset(self, key, field, value):
        self.cmds.append(("HSET", key, field, value))

    async def execute(self):
        if self.fail:
            raise ConnectionError("redis down")
        self.executed = True


class _FakeRedis:
    def __init__(self, fail=False):
        self.pipes = []
        self.fail = fail
        self.closed = False

    def pipeline(self):
        p = _FakePipeline(self.fail)
        self.pipes.append(p)
        return p

    async def close(self):
        self.closed = True


class _FakeRedisModule:
    Redis = _FakeRedis

    def __init__(self, fail=False):
        self.last_url = None
        self.instance = _FakeRedis(fail)

    def from_url(self, url, decode_responses=True):
        self.last_url = url
        return self.instance


def _msg(event="signals", symbol="BTCUSDT"):
    return {"event": event, "data": {"symbol": symbol, "signals": [], "timestamp": 1}, "channel": "signals",
            "timestamp": 1}


@pytest.mark.asyncio
async def test_mirror_writes_history_and_last(monkeypatch):
    fake_mod = _FakeRedisModule()
    monkeypatch.setattr(mr, "redis", fake_mod)

    m = mr.RedisMirror(url="redis://localhost:6379/0", max_history=1000, enabled=True)
    await m.start()
    await m.send(_msg())
    await m.stop()

    assert fake_mod.last_url == "redis://localhost:6379/0"
    (pipe,) = fake_mod.instance.pipes
    assert pipe.executed
    kinds = [c[0] for c in pipe.cmds]
    assert kinds == ["LPUSH", "LTRIM", "HSET"]
    assert pipe.cmds[1] == ("LTRIM", mr.HISTORY_KEY, 0, 999)
    assert pipe.cmds[2][:3] == ("HSET", mr.LAST_KEY, "BTCUSDT")
    assert json.loads(pipe.cmds[0][2])["symbol"] == "BTCUSDT"
    assert m.written == 1
    assert fake_mod.instance.closed


@pytest.mark.asyncio
async def test_mirror_disabled_is_noop(monkeypatch):
    fake_mod = _FakeRedisModule()
    monkeypatch.setattr(mr, "redis", fake_mod)

    m = mr.RedisMirror(url="redis://x", enabled=False)
    await m.start()
    await m.send(_msg())
    await m.stop()
    assert fake_mod.instance.pipes == []
    assert fake_mod.last_url is None


@pytest.mark.asyncio
async def test_mirror_ignores_other_events_and_swallows_failures(monkeypatch):
    fake_mod = _FakeRedisModule(fail=True)
    monkeypatch.setattr(mr, "redis", fake_mod)

    m = mr.RedisMirror(url="redis://x", enabled=True)
    await m.start()
    await m.send(_msg(event="market_update"))
    assert fake_mod.instance.pipes == []
    await m.send(_msg())
    assert m.failed == 1 and m.written == 0
    await m.stop()
