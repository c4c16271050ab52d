from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional

import structlog

from scanner.broadcast.queue import ChannelDropQueue
from scanner.utils.time import utc_now_ms
from scanner.utils.types import BroadcastMessage

log = structlog.get_logger("broadcaster")

Sink = Callable[[BroadcastMessage], Awaitable[None]]

ALL_CHANNELS = "*"


class ConsumerState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    SUBSCRIBED = "subscribed"
    CLOSED = "closed"


@dataclass(slots=True)
class Consumer:
    id: str
    sink: Sink
    queue: ChannelDropQueue
    subscriptions: set[str] = field(default_factory=set)
    state: ConsumerState = ConsumerState.CONNECTING
    task: Optional[asyncio.Task] = None
    delivered: int = 0
    close_reason: Optional[str] = None

    def wants(self, channel: Optional[str]) -> bool:
        # an empty subscription set is "no filter"
        if channel is None or not self.subscriptions:
            return True
        return channel in self.subscriptions or ALL_CHANNELS in self.subscriptions


class Broadcaster:
    """
    Pub/sub hub. The registry is the single source of truth for fan-out.

    - publish() is synchronous and never awaits: it only drops the message into
      each matching consumer's bounded queue.
    - Every consumer has its own drain task calling its sink. A sink that raises
      or takes longer than send_timeout_s gets the consumer pruned; nobody else
      notices.
    - A consumer with no subscriptions has no filter; subscribing "*" also
      receives every channel.

    Lifecycle per consumer: connecting -> open -> subscribed -> closed.
    """

    def __init__(self, queue_size: int = 256, send_timeout_s: float = 5.0):
        self.queue_size = queue_size
        self.send_timeout_s = send_timeout_s
        self._consumers: dict[str, Consumer] = {}
        self._ids = itertools.count(1)
        self.published = 0

    # ------------------------------------------------------------- lifecycle

    async def connect(self, sink: Sink, consumer_id: Optional[str] = None) -> str:
        cid = consumer_id or f"c{next(self._ids)}"
        if cid in self._consumers:
            raise ValueError(f"consumer {cid!r} already connected")
        c = Consumer(id=cid, sink=sink, queue=ChannelDropQueue(self.queue_size))
        self._consumers[cid] = c
        c.task = asyncio.create_task(self._drain(c), name=f"consumer-{cid}")
        c.state = ConsumerState.OPEN
        log.info("consumer_connected", consumer=cid, total=len(self._consumers))
        return cid

    async def disconnect(self, consumer_id: str, reason: str = "client") -> None:
        c = self._remove(consumer_id, reason)
        if c is None or c.task is None:
            return
        if c.task is not asyncio.current_task() and not c.task.done():
            c.task.cancel()
            try:
                await c.task
            except asyncio.CancelledError:
                pass

    async def close(self) -> None:
        for cid in list(self._consumers):
            await self.disconnect(cid, reason="shutdown")

    def _remove(self, consumer_id: str, reason: str) -> Optional[Consumer]:
        c = self._consumers.pop(consumer_id, None)
        if c is None:
            return None
        c.state = ConsumerState.CLOSED
        c.close_reason = reason
        c.queue.clear()
        log.info("consumer_closed", consumer=consumer_id, reason=reason, delivered=c.delivered)
        return c

    # ---------------------------------------------------------- subscriptions

    def subscribe(self, consumer_id: str, channels: Iterable[str]) -> set[str]:
        c = self._consumers.get(consumer_id)
        if c is None:
            return set()
        c.subscriptions.update(ch for ch in channels if ch)
        if c.subscriptions:
            c.state = ConsumerState.SUBSCRIBED
        return set(c.subscriptions)

    def unsubscribe(self, consumer_id: str, channels: Iterable[str]) -> set[str]:
        c = self._consumers.get(consumer_id)
        if c is None:
            return set()
        c.subscriptions.difference_update(channels)
        if not c.subscriptions:
            c.state = ConsumerState.OPEN
        return set(c.subscriptions)

    # -------------------------------------------------------------- delivery

    def publish(self, event: str, data: Any, channel: Optional[str] = None) -> int:
        """
        Queue `event` for every consumer subscribed to `channel` (all consumers
        when channel is None). Returns the number of consumers targeted.
        """
        msg: BroadcastMessage = {
            "event": event,
            "data": data,
            "channel": channel,
            "timestamp": utc_now_ms(),
        }
        sent = 0
        for c in list(self._consumers.values()):
            if c.state is ConsumerState.CLOSED or not c.wants(channel):
                continue
            c.queue.try_put(msg)
            sent += 1
        self.published += 1
        return sent

    def send_to(self, consumer_id: str, event: str, data: Any) -> bool:
        """Direct message to one consumer, bypassing channel filters."""
        c = self._consumers.get(consumer_id)
        if c is None:
            return False
        c.queue.try_put({"event": event, "data": data, "channel": None, "timestamp": utc_now_ms()})
        return True

    async def _drain(self, c: Consumer) -> None:
        try:
            while True:
                msg = await c.queue.get()
                try:
                    await asyncio.wait_for(c.sink(msg), timeout=self.send_timeout_s)
                except asyncio.TimeoutError:
                    self._remove(c.id, "send_timeout")
                    return
                except Exception as e:
                    log.warning("consumer_send_failed", consumer=c.id, err=str(e))
                    self._remove(c.id, "send_error")
                    return
                c.delivered += 1
        except asyncio.CancelledError:
            return

    # ---------------------------------------------------------------- queries

    def consumer_count(self) -> int:
        return len(self._consumers)

    def consumer_ids(self) -> list[str]:
        return list(self._consumers.keys())

    def get_consumer(self, consumer_id: str) -> Optional[Consumer]:
        return self._consumers.get(consumer_id)

    def get_subscriptions(self, consumer_id: str) -> set[str]:
        c = self._consumers.get(consumer_id)
        return set(c.subscriptions) if c else set()
