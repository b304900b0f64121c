import asyncio
import itertools
import logging
from typing import Dict, Iterable, Optional

from ordersync.types.order_types import OrderChange, OrderFilter

logger = logging.getLogger("change-feed")

_CLOSED = object()


class Subscription:
    """Async iterator over the changes matching one filter.

    Changes are queued in the order the store published them. Closing the
    subscription ends iteration for the consumer.
    """

    def __init__(self, feed: "ChangeFeed", sub_id: int, order_filter: OrderFilter):
        self.id = sub_id
        self.filter = order_filter
        self._feed = feed
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def offer(self, change: OrderChange) -> None:
        if not self.closed and self.filter.matches(change):
            self._queue.put_nowait(change)

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self, timeout: Optional[float] = None) -> OrderChange:
        item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._feed._remove(self.id)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> OrderChange:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        return await self.get()


class ChangeFeed:
    def __init__(self):
        self._subscribers: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)

    def subscribe(self, order_filter: OrderFilter, backlog: Iterable[OrderChange] = ()) -> Subscription:
        sub = Subscription(self, next(self._ids), order_filter)
        for change in backlog:
            sub.offer(change)
        self._subscribers[sub.id] = sub
        logger.info(f"[ChangeFeed] subscribed: #{sub.id} {order_filter}")
        return sub

    def publish(self, change: OrderChange) -> None:
        for sub in list(self._subscribers.values()):
            sub.offer(change)
        logger.debug(
            f"[ChangeFeed] published v{change.version} {sorted(change.changed_fields)}: {change.order_id}"
        )

    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _remove(self, sub_id: int) -> None:
        if self._subscribers.pop(sub_id, None) is not None:
            logger.info(f"[ChangeFeed] unsubscribed: #{sub_id}")
