from __future__ import annotations
import asyncio
from collections import deque
from dataclasses import dataclass

from scanner.utils.types import BroadcastMessage

@dataclass(slots=True)
class QueueStats:
    enq_ok: int = 0
    enq_drop: int = 0       # older messages evicted to make room
    deq_ok: int = 0

class ChannelDropQueue:
    """
    Bounded, non-blocking outbound queue for one consumer.
    - try_put(msg) never waits. When full it evicts the oldest queued message
      of the same channel (falling back to the oldest overall) and keeps the new one.
    - get() awaits like a normal queue.
    Must be used from the event loop thread.
    """
    def __init__(self, maxsize: int = 256):
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self.maxsize = maxsize
        self._items: deque[BroadcastMessage] = deque()
        self._not_empty = asyncio.Event()
        self.stats = QueueStats()

    def try_put(self, msg: BroadcastMessage) -> bool:
        """Returns False when an older message had to be dropped."""
        dropped = False
        if len(self._items) >= self.maxsize:
            self._evict_for(msg.get("channel"))
            dropped = True
        self._items.append(msg)
        self.stats.enq_ok += 1
        self._not_empty.set()
        return not dropped

    def _evict_for(self, channel) -> None:
        for i, queued in enumerate(self._items):
            if queued.get("channel") == channel:
                del self._items[i]
                break
        else:
            self._items.popleft()
        self.stats.enq_drop += 1

    async def get(self) -> BroadcastMessage:
        while not self._items:
            self._not_empty.clear()
            await self._not_empty.wait()
        item = self._items.popleft()
        self.stats.deq_ok += 1
        return item

    def qsize(self) -> int:
        return len(self._items)

    def clear(self) -> None:
        self._items.clear()
