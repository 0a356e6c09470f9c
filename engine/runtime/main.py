"""
Imbalance Bar Pipeline - Main Entry Point

Reads the trade feed, builds dollar imbalance bars, persists trades and
bars to TimescaleDB and broadcasts bars over NATS.
"""

import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Optional

from dataflow.adapters.nats_client import NatsClient, NatsConfig
from dataflow.persistence.store import TimescaleDBStore
from dataflow.sink.bar_sink import BarSink, NatsBarBroadcaster
from engine.config.loader import ConfigLoader
from engine.runtime.pipeline import ImbalanceBarPipeline

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

STATS_INTERVAL = 60.0


async def _log_stats(pipeline: ImbalanceBarPipeline, store: TimescaleDBStore) -> None:
    """Periodically log pipeline metrics"""
    while True:
        await asyncio.sleep(STATS_INTERVAL)
        metrics = pipeline.get_metrics()
        logger.info(
            f"Stats [{metrics['symbol']}]: "
            f"{metrics['source']['trades_received']} trades received, "
            f"{metrics['aggregator']['bars_emitted']} bars, "
            f"buffer {metrics['buffer']['size']}/{metrics['buffer']['capacity']}, "
            f"{store.trades_written} trades / {store.bars_written} bars written"
        )


async def main() -> int:
    """
    Main entry point for the pipeline service.

    Environment Variables:
        CONFIG_FILE: Optional YAML config path
        FEED_URL, BINANCE_API_KEY, SYMBOL: Trade feed
        DOLLAR_IMBALANCE_THRESHOLD: Bar threshold (default 5000)
        BUFFER_CAPACITY, BACKPRESSURE_POLICY: Ingest buffer
        DATABASE_URL: TimescaleDB connection string
        NATS_SERVERS: NATS server URLs (default: "nats://localhost:4222")
    """
    config_file = os.getenv("CONFIG_FILE")
    config = ConfigLoader(Path(config_file) if config_file else None).load()

    logger.info("=" * 60)
    logger.info("Dollar Imbalance Bar Pipeline Starting")
    logger.info("=" * 60)
    logger.info(f"Symbol: {config.feed.symbol}")
    logger.info(f"Threshold: {config.aggregator.threshold}")

    store = TimescaleDBStore(
        config.storage.database_url,
        batch_size=config.storage.batch_size,
        flush_interval=config.storage.flush_interval,
        max_pending=config.storage.max_pending,
    )
    await store.start()

    targets = [store]
    nats_client: Optional[NatsClient] = None
    if config.publish_bars:
        nats_client = NatsClient(NatsConfig.from_env())
        try:
            await nats_client.connect()
            targets.append(NatsBarBroadcaster(nats_client, config.feed.symbol))
        except Exception as e:
            logger.warning(f"Failed to connect to NATS: {e}. Running in standalone mode.")
            nats_client = None

    sink = BarSink(targets, timeout=config.storage.sink_timeout)
    pipeline = ImbalanceBarPipeline(
        config,
        sink=sink,
        trade_recorder=store if config.storage.persist_trades else None,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, pipeline.request_stop)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt
            pass

    stats_task = None
    try:
        await pipeline.start()
        stats_task = asyncio.create_task(_log_stats(pipeline, store))

        logger.info("Pipeline running. Press Ctrl+C to stop.")
        await pipeline.wait()

    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        if stats_task:
            stats_task.cancel()
        await pipeline.stop()
        await store.stop()
        if nats_client:
            await nats_client.close()

    return 1 if pipeline.error else 0


def run() -> None:
    """Console script entry point"""
    raise SystemExit(asyncio.run(main()))


if __name__ == "__main__":
    run()
