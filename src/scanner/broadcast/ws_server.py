from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Optional

import structlog
from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from scanner.broadcast.hub import Broadcaster
from scanner.utils.time import utc_now_ms
from scanner.utils.types import BroadcastMessage

log = structlog.get_logger("ws_server")


@dataclass(slots=True)
class WSServerConfig:
    host: str = "0.0.0.0"
    port: int = 8765
    ping_interval_s: float = 20.0
    greeting: str = "Connected to market signal scanner"


class WSConsumerServer:
    """
    Websocket session layer for consumers.

    Inbound (client -> server) JSON text frames:
      {"action": "subscribe",   "channels": ["market", "signals"]}
      {"action": "unsubscribe", "channels": ["market"]}
      {"action": "ping"}
    Outbound frames are broadcaster messages: {event, data, channel, timestamp}.
    """

    def __init__(self, hub: Broadcaster, cfg: Optional[WSServerConfig] = None):
        self.hub = hub
        self.cfg = cfg or WSServerConfig()
        self._stop = asyncio.Event()

    async def start(self) -> None:
        async with serve(
            self.handler,
            self.cfg.host,
            self.cfg.port,
            ping_interval=self.cfg.ping_interval_s,
        ):
            log.info("ws_server_listening", host=self.cfg.host, port=self.cfg.port)
            await self._stop.wait()
        log.info("ws_server_exit")

    async def stop(self) -> None:
        self._stop.set()

    async def handler(self, ws) -> None:
        async def sink(msg: BroadcastMessage) -> None:
            await ws.send(json.dumps(msg, default=str))

        cid = await self.hub.connect(sink)
        self.hub.send_to(cid, "connection", {
            "message": self.cfg.greeting,
            "clientId": cid,
            "timestamp": utc_now_ms(),
        })
        try:
            async for raw in ws:
                self.on_message(cid, raw)
        except ConnectionClosed as e:
            log.info("ws_client_closed", consumer=cid, code=getattr(e, "code", None))
        finally:
            await self.hub.disconnect(cid, reason="transport_closed")

    def on_message(self, cid: str, raw) -> None:
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            self.hub.send_to(cid, "error", {"message": "invalid JSON"})
            return
        if not isinstance(msg, dict):
            self.hub.send_to(cid, "error", {"message": "expected an object"})
            return

        action = msg.get("action") or msg.get("type")
        channels = msg.get("channels") or []
        if isinstance(channels, str):
            channels = [channels]

        if action == "subscribe":
            self.hub.subscribe(cid, channels)
            self.hub.send_to(cid, "subscription_confirmed", {"channels": channels, "timestamp": utc_now_ms()})
        elif action == "unsubscribe":
            self.hub.unsubscribe(cid, channels)
            self.hub.send_to(cid, "unsubscription_confirmed", {"channels": channels, "timestamp": utc_now_ms()})
        elif action == "ping":
            self.hub.send_to(cid, "pong", {"timestamp": utc_now_ms()})
        else:
            self.hub.send_to(cid, "error", {"message": f"unknown action: {action}"})
