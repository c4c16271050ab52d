from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field

import structlog
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from scanner.ingest import parser
from scanner.ingest.book import LocalBook
from scanner.utils.backoff import fixed_iter, jitter
from scanner.utils.time import utc_now_s
from scanner.utils.types import FeedEvent


@dataclass(slots=True)
class BybitWSConfig:
    stream_url: str
    symbols: list[str]
    kline_intervals: list[str] = field(default_factory=lambda: ["1", "5"])
    orderbook_depth: int = 50
    subscribe_tickers: bool = True
    subscribe_klines: bool = True
    subscribe_orderbook: bool = True
    # reconnect behavior: fixed delay, unbounded retries
    reconnect_delay_s: float = 5.0
    reconnect_jitter: float = 0.0
    # heartbeat / staleness
    expect_heartbeat_s: float = 10.0
    app_ping_interval_s: float = 20.0     # Bybit drops idle sockets without {"op":"ping"}
    # timeouts
    open_timeout_s: float = 5.0
    ping_interval_s: float = 20.0
    # Bybit caps args per subscribe request
    topics_per_request: int = 10


class BybitWS:
    """
    Bybit v5 public stream adapter (inbound feed collaborator).

    Lifecycle:
      - Connect -> Subscribe (tickers / klines / orderbook) -> Stream
      - On any error, close and reconnect after a fixed delay, forever, until stop()
      - Decodes frames into normalized FeedEvents and enqueues them.
        Order-book deltas are folded into a LocalBook and forwarded as full snapshots.

    Usage:
        cfg = BybitWSConfig(stream_url=..., symbols=["BTCUSDT", "ETHUSDT"])
        client = BybitWS(cfg, q_events)
        await client.start()   # runs until cancelled/stop() called
    """

    def __init__(self, cfg: BybitWSConfig, events_queue: asyncio.Queue):
        self.cfg = cfg
        self.q_events = events_queue

        self._log = structlog.get_logger("bybit_ws")
        self._stop = asyncio.Event()
        self._last_msg_ts: float = 0.0
        self._last_ping_ts: float = 0.0
        self._ws = None
        self._books: dict[str, LocalBook] = {}
        self._delays = fixed_iter(cfg.reconnect_delay_s)

        self.connected: bool = False
        self.subscribed: bool = False
        self.reconnects: int = 0
        self.dropped: int = 0

    # ---------------------------- public API ---------------------------- #

    async def start(self) -> None:
        while not self._stop.is_set():
            try:
                await self._connect_and_stream()
                break
            except asyncio.CancelledError:
                # allow cooperative shutdown without error
                break
            except Exception as e:
                if self._stop.is_set():
                    break
                delay = jitter(next(self._delays), ratio=self.cfg.reconnect_jitter)
                self.reconnects += 1
                self._log.warning("ws_error_reconnect", err=str(e), retry_in_s=round(delay, 3))
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        self._log.info("ws_loop_exit")

    async def stop(self) -> None:
        self._stop.set()
        if self._ws and hasattr(self._ws, "close"):
            try:
                await self._ws.close()
            except Exception:
                pass

    def topics(self) -> list[str]:
        out: list[str] = []
        for s in self.cfg.symbols:
            if self.cfg.subscribe_tickers:
                out.append(f"tickers.{s}")
            if self.cfg.subscribe_klines:
                out.extend(f"kline.{iv}.{s}" for iv in self.cfg.kline_intervals)
            if self.cfg.subscribe_orderbook:
                out.append(f"orderbook.{self.cfg.orderbook_depth}.{s}")
        return out

    # --------------------------- core internals ------------------------- #

    async def _connect_and_stream(self) -> None:
        self._reset_state()
        url = self.cfg.stream_url

        self._log.info("ws_connecting", url=url)
        async with ws_connect(
            url,
            open_timeout=self.cfg.open_timeout_s,
            ping_interval=self.cfg.ping_interval_s,
            ping_timeout=None,
            max_queue=None,
        ) as ws:
            self._ws = ws
            self.connected = True
            self._log.info("ws_connected")

            await self._subscribe(ws)
            await self._stream_loop(ws)

    async def _subscribe(self, ws) -> None:
        topics = self.topics()
        n = max(1, self.cfg.topics_per_request)
        for i in range(0, len(topics), n):
            await ws.send(json.dumps({"op": "subscribe", "args": topics[i:i + n]}))
        self.subscribed = True
        self._log.info("ws_subscribed", symbols=len(self.cfg.symbols), topics=len(topics))

    async def _stream_loop(self, ws) -> None:
        self._last_msg_ts = utc_now_s()
        self._last_ping_ts = self._last_msg_ts
        while not self._stop.is_set():
            await self._maybe_ping(ws)
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=self._recv_timeout())
            except asyncio.TimeoutError:
                if (utc_now_s() - self._last_msg_ts) > self.cfg.expect_heartbeat_s:
                    self._log.warning("ws_stale_no_messages", age_s=round(utc_now_s() - self._last_msg_ts, 3))
                continue
            except ConnectionClosed as e:
                self._log.warning("ws_closed", code=getattr(e, "code", None), reason=str(e))
                raise
            except asyncio.CancelledError:
                self._log.info("ws_recv_cancelled")
                return

            self._last_msg_ts = utc_now_s()
            try:
                msg = json.loads(raw)
            except Exception as e:
                self._log.warning("ws_json_error", err=str(e))
                continue
            batch = msg if isinstance(msg, list) else [msg]
            for m in batch:
                if isinstance(m, dict):
                    self.handle_message(m)

        self._log.info("ws_stream_loop_exit")

    def handle_message(self, m: dict) -> None:
        if not m.get("topic"):
            self._handle_control(m)
            return
        now = utc_now_s()
        try:
            items = parser.parse_message(m, received_at=now)
        except Exception as e:
            self._log.warning("parse_error", err=str(e), snippet=str(m)[:200])
            return
        for item in items:
            if isinstance(item, parser.BookUpdate):
                book = self._books.get(item.symbol)
                if book is None:
                    book = LocalBook(item.symbol, self.cfg.orderbook_depth)
                    self._books[item.symbol] = book
                if book.apply(item):
                    self._enqueue(book.to_event(now))
            else:
                self._enqueue(item)

    # --------------------------- helpers -------------------------------- #

    def healthy(self) -> bool:
        if not self.connected or not self.subscribed:
            return False
        return (utc_now_s() - self._last_msg_ts) <= self.cfg.expect_heartbeat_s

    def last_message_age_s(self) -> float:
        return max(0.0, utc_now_s() - self._last_msg_ts) if self._last_msg_ts else float("inf")

    def _enqueue(self, evt: FeedEvent) -> None:
        try:
            self.q_events.put_nowait(evt)
        except asyncio.QueueFull:
            # keep the socket drained; the next update for the symbol supersedes this one
            self.dropped += 1
            self._log.info("events_queue_full_drop", symbol=evt.symbol, type=evt.type)

    def _handle_control(self, m: dict) -> None:
        # {"success":true,"ret_msg":"","op":"subscribe",...}
        # {"success":true,"ret_msg":"pong","op":"ping",...}
        # {"success":false,"ret_msg":"error:handler not found","op":"subscribe"}
        if m.get("success") is False:
            self._log.warning("bybit_stream_error", msg=m)

    async def _maybe_ping(self, ws) -> None:
        now = utc_now_s()
        if now - self._last_ping_ts >= self.cfg.app_ping_interval_s:
            self._last_ping_ts = now
            await ws.send(json.dumps({"op": "ping"}))

    def _recv_timeout(self) -> float:
        return max(1.0, min(self.cfg.expect_heartbeat_s, self.cfg.app_ping_interval_s, 5.0))

    def _reset_state(self) -> None:
        self.connected = False
        self.subscribed = False
        self._last_msg_ts = 0.0
        self._ws = None
        # a fresh connection starts with fresh book snapshots
        self._books.clear()
