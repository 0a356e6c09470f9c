"""
Ingest Buffer

Bounded FIFO hand-off between the trade stream (producer) and the
imbalance aggregator (consumer).
"""

import asyncio
import logging
from collections import deque
from enum import Enum

from dataflow.errors import BufferClosed
from schemas.market_data import Trade

logger = logging.getLogger(__name__)


class BackpressurePolicy(str, Enum):
    """What push() does when the buffer is full"""
    BLOCK = "block"  # suspend the producer until space frees up
    DROP_OLDEST = "drop_oldest"  # evict the oldest queued trade and count it


class IngestBuffer:
    """
    Bounded, ordered trade queue with an explicit backpressure policy.

    - push() blocks when full (BLOCK) or evicts the oldest trade (DROP_OLDEST)
    - pop() waits until a trade is available
    - close() rejects further pushes; queued trades can still be popped,
      after which pop() raises BufferClosed

    Safe for multiple producers within one event loop.
    """

    def __init__(
        self,
        capacity: int = 1000,
        policy: BackpressurePolicy = BackpressurePolicy.BLOCK,
    ):
        if capacity <= 0:
            raise ValueError(f"Buffer capacity must be positive, got {capacity}")

        self.capacity = capacity
        self.policy = BackpressurePolicy(policy)

        self._items: deque[Trade] = deque()
        self._cond = asyncio.Condition()
        self._closed = False

        # Metrics
        self._pushed = 0
        self._popped = 0
        self._dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def dropped(self) -> int:
        """Trades evicted under DROP_OLDEST"""
        return self._dropped

    def qsize(self) -> int:
        return len(self._items)

    def full(self) -> bool:
        return len(self._items) >= self.capacity

    async def push(self, trade: Trade) -> None:
        """
        Enqueue a trade.

        Raises:
            BufferClosed: If the buffer was closed before or while waiting
        """
        async with self._cond:
            if self._closed:
                raise BufferClosed("Ingest buffer is closed")

            if self.full():
                if self.policy is BackpressurePolicy.DROP_OLDEST:
                    evicted = self._items.popleft()
                    self._dropped += 1
                    logger.warning(
                        f"Ingest buffer full ({self.capacity}), dropped trade "
                        f"@ {evicted.timestamp} (total dropped: {self._dropped})"
                    )
                else:
                    logger.debug("Ingest buffer full, producer waiting")
                    await self._cond.wait_for(lambda: self._closed or not self.full())
                    if self._closed:
                        raise BufferClosed("Ingest buffer closed while waiting to push")

            self._items.append(trade)
            self._pushed += 1
            self._cond.notify_all()

    async def pop(self) -> Trade:
        """
        Dequeue the oldest trade, waiting until one is available.

        Raises:
            BufferClosed: If the buffer is closed and fully drained
        """
        async with self._cond:
            await self._cond.wait_for(lambda: self._items or self._closed)
            if not self._items:
                raise BufferClosed("Ingest buffer is closed and drained")

            trade = self._items.popleft()
            self._popped += 1
            self._cond.notify_all()
            return trade

    async def close(self) -> None:
        """Reject further pushes and wake all waiters"""
        async with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()

        logger.info(
            f"Ingest buffer closed with {len(self._items)} trades pending "
            f"(pushed={self._pushed}, popped={self._popped}, dropped={self._dropped})"
        )

    def __aiter__(self) -> "IngestBuffer":
        return self

    async def __anext__(self) -> Trade:
        try:
            return await self.pop()
        except BufferClosed:
            raise StopAsyncIteration

    def get_metrics(self) -> dict:
        return {
            "capacity": self.capacity,
            "policy": self.policy.value,
            "size": len(self._items),
            "pushed": self._pushed,
            "popped": self._popped,
            "dropped": self._dropped,
            "closed": self._closed,
        }
