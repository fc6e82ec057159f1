from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Protocol, Set

logger = logging.getLogger(__name__)


class TrackingChannel(Protocol):
    async def publish(self, order_id: str, event: Dict[str, Any]) -> None:
        ...


class InMemoryTrackingChannel:
    """
    Per-order fan-out of tracking events to subscriber queues.

    Subscribers that fall behind lose the oldest events: only the latest
    position matters to a live map.
    """

    def __init__(self, max_queue: int = 32):
        self.max_queue = max_queue
        self._subscribers: Dict[str, Set[asyncio.Queue]] = defaultdict(set)

    def subscribe(self, order_id: str) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue)
        self._subscribers[order_id].add(q)
        return q

    def unsubscribe(self, order_id: str, q: asyncio.Queue) -> None:
        subs = self._subscribers.get(order_id)
        if not subs:
            return
        subs.discard(q)
        if not subs:
            del self._subscribers[order_id]

    def subscriber_count(self, order_id: str) -> int:
        return len(self._subscribers.get(order_id, ()))

    async def publish(self, order_id: str, event: Dict[str, Any]) -> None:
        for q in list(self._subscribers.get(order_id, ())):
            if q.full():
                q.get_nowait()
            q.put_nowait(event)
        logger.debug(f"tracking event for {order_id}: {event.get('type')}")
