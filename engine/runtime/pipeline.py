"""
Imbalance Bar Pipeline

Owns the ingest buffer and runs the two concurrent activities of one
symbol's pipeline:

    StreamSource --push--> IngestBuffer --pop--> ImbalanceAggregator --> BarSink

The buffer is the only state shared by producer and consumer.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from dataflow.errors import FeedConnectionError
from dataflow.imbalance_bars.aggregator import BarConsumer, ImbalanceAggregator, TradeRecorder
from dataflow.ingestion.buffer import IngestBuffer
from dataflow.ingestion.stream_source import StreamSource
from engine.config.loader import PipelineConfig

logger = logging.getLogger(__name__)


class ImbalanceBarPipeline:
    """
    Wires source, buffer, aggregator and sink for one trade stream.

    Shutdown (stop()):
    1. close the buffer to new trades and stop the feed connection
    2. let the aggregator drain trades already queued
    3. discard the remaining partial imbalance (never flushed as a bar)

    Example usage:
        pipeline = ImbalanceBarPipeline(config, sink=bar_sink, trade_recorder=store)
        await pipeline.start()
        await pipeline.wait()   # until stop is requested or the feed fails
        await pipeline.stop()
    """

    def __init__(
        self,
        config: PipelineConfig,
        sink: BarConsumer,
        trade_recorder: Optional[TradeRecorder] = None,
        source: Optional[StreamSource] = None,
        aggregator: Optional[ImbalanceAggregator] = None,
    ):
        self.config = config
        self.sink = sink
        self.trade_recorder = trade_recorder

        self.buffer = IngestBuffer(
            capacity=config.buffer.capacity,
            policy=config.buffer.policy,
        )
        self.source = source or StreamSource(config.feed)
        self.aggregator = aggregator or ImbalanceAggregator(
            threshold=config.aggregator.threshold
        )

        self._producer: Optional[asyncio.Task] = None
        self._consumer: Optional[asyncio.Task] = None
        self._stop_requested = asyncio.Event()
        self._stopped = False
        self.error: Optional[BaseException] = None

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._stopped

    async def start(self) -> None:
        """Start the consumer, then the feed producer"""
        if self._consumer is not None:
            raise RuntimeError("Pipeline already started")

        logger.info(
            f"Starting imbalance bar pipeline for {self.config.feed.symbol} "
            f"(threshold={self.aggregator.threshold}, buffer={self.buffer.capacity}, "
            f"policy={self.buffer.policy.value})"
        )

        self._consumer = asyncio.create_task(
            self.aggregator.run(self.buffer, self.sink, self.trade_recorder),
            name="imbalance-aggregator",
        )
        self._producer = asyncio.create_task(self._run_source(), name="trade-stream")

    async def _run_source(self) -> None:
        try:
            await self.source.run(self.buffer)
        except FeedConnectionError as e:
            self.error = e
            logger.error(f"Trade feed unavailable, stopping pipeline: {e}")
        except Exception as e:
            self.error = e
            logger.error(f"Trade stream crashed, stopping pipeline: {e}", exc_info=True)
        finally:
            self._stop_requested.set()

    def request_stop(self) -> None:
        """Ask wait() to return (safe to call from signal handlers)"""
        self._stop_requested.set()

    async def wait(self) -> None:
        """Block until a stop is requested or the feed stops"""
        await self._stop_requested.wait()

    async def stop(self) -> None:
        """Close the buffer, stop the feed, drain, discard partial state"""
        if self._stopped:
            return
        self._stopped = True
        self._stop_requested.set()

        logger.info(f"Stopping imbalance bar pipeline for {self.config.feed.symbol}...")

        await self.buffer.close()
        await self.source.stop()

        timeout = self.config.drain_timeout
        await self._finish(self._producer, timeout, "trade stream")
        await self._finish(self._consumer, timeout, "aggregator drain")

        self.aggregator.discard_partial()

        logger.info(
            f"Pipeline stopped for {self.config.feed.symbol}: "
            f"{self.aggregator.trades_processed} trades, "
            f"{self.aggregator.bars_emitted} bars"
        )

    @staticmethod
    async def _finish(task: Optional[asyncio.Task], timeout: float, what: str) -> None:
        if task is None:
            return

        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            logger.warning(f"{what} did not finish within {timeout}s, cancelling")
            task.cancel()

        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"{what} failed: {e}", exc_info=True)

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "symbol": self.config.feed.symbol,
            "source": self.source.get_metrics(),
            "buffer": self.buffer.get_metrics(),
            "aggregator": self.aggregator.get_metrics(),
        }
