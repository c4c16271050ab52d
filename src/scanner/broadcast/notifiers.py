from __future__ import annotations
import structlog
from typing import Callable, Optional

from scanner.utils.types import BroadcastMessage

log = structlog.get_logger("notifier")

class ConsoleNotifier:
    """Broadcaster sink that prints "signals" events."""
    def __init__(self, format_fn: Optional[Callable[[dict], str]] = None):
        self._format_fn = format_fn
        self.printed = 0

    async def send(self, msg: BroadcastMessage):
        if msg.get("event") != "signals":
            return
        evt = msg.get("data") or {}
        self.printed += 1
        if self._format_fn:
            try:
                text = self._format_fn(evt)
                print(text, flush=True)
                return
            except Exception as e:
                log.warning("console_format_failed", err=str(e))
        # fallback (raw)
        kinds = ",".join(s.get("type", "?") for s in evt.get("signals", []))
        print(f"[ALERT] {evt.get('symbol')} {kinds} price={evt.get('price')}", flush=True)
