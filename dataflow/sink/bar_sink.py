"""
Bar Sink

Delivers each completed bar to every configured target. Targets fail
independently: a slow or broken database never holds back the live
broadcast, and vice versa. Failed deliveries are not retried.
"""

import asyncio
import logging
from typing import Optional, Protocol, Sequence

from dataflow.adapters.nats_client import NatsClient, Topics
from dataflow.errors import SinkError
from schemas.market_data import Bar

logger = logging.getLogger(__name__)


class BarTarget(Protocol):
    """Destination for completed bars"""
    name: str

    async def write_bar(self, bar: Bar) -> None:
        ...


class NatsBarBroadcaster:
    """Publishes bars to live subscribers on bars.imbalance.{symbol}"""

    name = "nats"

    def __init__(self, nats_client: NatsClient, symbol: str):
        self.nats = nats_client
        self.topic = Topics.imbalance_bars(symbol)

    async def write_bar(self, bar: Bar) -> None:
        await self.nats.publish_json(self.topic, bar.to_json())
        logger.debug(f"Broadcast bar @ {bar.timestamp} on {self.topic}")


class BarSink:
    """
    Fan-out of bars to storage and broadcast targets.

    Example usage:
        sink = BarSink([store, NatsBarBroadcaster(nats_client, "BTCUSDT")])
        await sink.accept(bar)  # raises SinkError if any target failed
    """

    def __init__(self, targets: Sequence[BarTarget], timeout: Optional[float] = 5.0):
        """
        Args:
            targets: Bar destinations
            timeout: Per-target delivery timeout in seconds (None = no limit)
        """
        self.targets = list(targets)
        self.timeout = timeout

        # Metrics
        self.bars_accepted = 0
        self.target_failures = 0

    async def _deliver(self, target: BarTarget, bar: Bar) -> None:
        if self.timeout is None:
            await target.write_bar(bar)
        else:
            await asyncio.wait_for(target.write_bar(bar), timeout=self.timeout)

    async def accept(self, bar: Bar) -> None:
        """
        Deliver a bar to all targets concurrently.

        Raises:
            SinkError: After every target was attempted, if any of them failed
        """
        self.bars_accepted += 1
        if not self.targets:
            return

        results = await asyncio.gather(
            *(self._deliver(target, bar) for target in self.targets),
            return_exceptions=True,
        )

        failed = []
        for target, result in zip(self.targets, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.TimeoutError):
                    reason = f"timed out after {self.timeout}s"
                else:
                    reason = str(result) or type(result).__name__
                logger.error(f"Bar target '{target.name}' failed for bar @ {bar.timestamp}: {reason}")
                failed.append(target.name)

        if failed:
            self.target_failures += len(failed)
            raise SinkError(
                f"Bar @ {bar.timestamp} not delivered to: {', '.join(failed)}",
                failed_targets=failed,
            )

    def get_metrics(self) -> dict:
        return {
            "targets": [t.name for t in self.targets],
            "bars_accepted": self.bars_accepted,
            "target_failures": self.target_failures,
        }
