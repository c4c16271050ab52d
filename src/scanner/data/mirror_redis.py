from __future__ import annotations

import json
from typing import Optional

import redis.asyncio as redis
import structlog

from scanner.utils.types import BroadcastMessage

log = structlog.get_logger("redis_mirror")

HISTORY_KEY = "signals:history"
LAST_KEY = "signals:last"


class RedisMirror:
    """
    Optional Redis mirror of emitted "signals" events. Best-effort writes:
    used as a broadcaster sink, it never raises so a Redis outage cannot get it pruned.
      LPUSH signals:history <json>; LTRIM to max_history
      HSET  signals:last <symbol> <json>
    """
    def __init__(self, url: str, max_history: int = 1000, enabled: bool = False):
        self.enabled = enabled
        self.url = url
        self.max_history = max_history
        self._r: Optional[redis.Redis] = None
        self.written = 0
        self.failed = 0

    async def start(self):
        if not self.enabled:
            return
        self._r = redis.from_url(self.url, decode_responses=True)

    async def stop(self):
        if self._r:
            await self._r.close()
            self._r = None

    async def send(self, msg: BroadcastMessage) -> None:
        if not self.enabled or self._r is None or msg.get("event") != "signals":
            return
        evt = msg.get("data") or {}
        payload = json.dumps(evt, default=str)
        p = self._r.pipeline()
        p.lpush(HISTORY_KEY, payload)
        p.ltrim(HISTORY_KEY, 0, self.max_history - 1)
        p.hset(LAST_KEY, evt.get("symbol", "?"), payload)
        try:
            await p.execute()
            self.written += 1
        except Exception as e:
            # ignore intermittent errors; it's a mirror
            self.failed += 1
            log.debug("redis_mirror_write_failed", err=str(e))
