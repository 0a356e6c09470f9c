"""
TimescaleDB Store

Durable storage for raw trades and dollar imbalance bars.

- trades          <- batched inserts, flushed by size or interval
- imbalance_bars  <- one insert per bar (a BarSink target)

Also serves the "most recent N bars" query used by the dashboard API.
"""

import asyncio
import logging
from typing import Optional

import asyncpg

from dataflow.errors import SinkError
from schemas.market_data import Bar, Trade

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS trades (
    id              BIGSERIAL PRIMARY KEY,
    price           DOUBLE PRECISION NOT NULL,
    quantity        DOUBLE PRECISION NOT NULL,
    timestamp       BIGINT NOT NULL,
    is_buyer_maker  BOOLEAN NOT NULL
);

CREATE TABLE IF NOT EXISTS imbalance_bars (
    id                  BIGSERIAL PRIMARY KEY,
    timestamp           BIGINT NOT NULL,
    dollar_imbalance    DOUBLE PRECISION NOT NULL,
    threshold_reached   BOOLEAN NOT NULL DEFAULT TRUE
);

CREATE INDEX IF NOT EXISTS imbalance_bars_timestamp_idx
    ON imbalance_bars (timestamp DESC);
"""


class TimescaleDBStore:
    """
    Persists trades and bars to TimescaleDB.

    Features:
    - Batch inserts for trades, never blocking the aggregator
    - Immediate, best-effort bar inserts
    - Graceful shutdown with pending flush
    """

    name = "timescaledb"

    def __init__(
        self,
        db_url: str,
        batch_size: int = 100,
        flush_interval: float = 1.0,
        max_pending: int = 10000,
    ):
        self.db_url = db_url
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.max_pending = max_pending

        self._pool: Optional[asyncpg.Pool] = None
        self._trade_buffer: list[Trade] = []
        self._flush_task: Optional[asyncio.Task] = None
        self._flush_requested = asyncio.Event()
        self._lock = asyncio.Lock()

        # Metrics
        self._trades_written = 0
        self._trades_dropped = 0
        self._bars_written = 0

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    @property
    def trades_written(self) -> int:
        return self._trades_written

    @property
    def bars_written(self) -> int:
        return self._bars_written

    async def connect_db(self) -> None:
        """Connect to TimescaleDB"""
        logger.info("Connecting to TimescaleDB...")

        self._pool = await asyncpg.create_pool(
            self.db_url,
            min_size=2,
            max_size=10,
            command_timeout=60,
        )

        logger.info("Connected to TimescaleDB")

    async def close_db(self) -> None:
        """Close database connection"""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("TimescaleDB connection closed")

    async def ensure_schema(self) -> None:
        """Create tables and indexes if they do not exist"""
        async with self._pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("TimescaleDB schema ready")

    async def write_bar(self, bar: Bar) -> None:
        """
        Insert a completed bar.

        Raises:
            SinkError: If the store is not connected or the insert fails
        """
        if self._pool is None:
            raise SinkError("TimescaleDB not connected")

        try:
            async with self._pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO imbalance_bars (timestamp, dollar_imbalance, threshold_reached)
                    VALUES ($1, $2, $3)
                    """,
                    bar.timestamp,
                    bar.dollar_imbalance,
                    bar.threshold_reached,
                )
        except Exception as e:
            raise SinkError(f"Failed to insert bar: {e}") from e

        self._bars_written += 1
        logger.debug(f"Stored bar @ {bar.timestamp} (total: {self._bars_written})")

    async def recent_bars(self, limit: int = 50) -> list[Bar]:
        """
        Fetch the most recent bars.

        Args:
            limit: Maximum number of bars

        Returns:
            Bars ordered by timestamp descending (most recent first)
        """
        if self._pool is None:
            raise RuntimeError("TimescaleDB not connected")

        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT timestamp, dollar_imbalance, threshold_reached
                FROM imbalance_bars
                ORDER BY timestamp DESC, id DESC
                LIMIT $1
                """,
                limit,
            )

        return [
            Bar(
                timestamp=row["timestamp"],
                dollar_imbalance=float(row["dollar_imbalance"]),
                threshold_reached=row["threshold_reached"],
            )
            for row in rows
        ]

    def record_trade(self, trade: Trade) -> None:
        """Queue a trade for the next batch insert"""
        self._trade_buffer.append(trade)

        if len(self._trade_buffer) > self.max_pending:
            overflow = len(self._trade_buffer) - self.max_pending
            del self._trade_buffer[:overflow]
            self._trades_dropped += overflow
            logger.warning(
                f"Trade write backlog above {self.max_pending}, dropped {overflow} oldest "
                f"(total dropped: {self._trades_dropped})"
            )

        if len(self._trade_buffer) >= self.batch_size:
            self._flush_requested.set()

    async def flush_trades(self) -> None:
        """Flush trade buffer to database"""
        async with self._lock:
            await self._flush_trades()

    async def _flush_trades(self) -> None:
        if not self._trade_buffer or self._pool is None:
            return

        trades = self._trade_buffer
        self._trade_buffer = []

        try:
            async with self._pool.acquire() as conn:
                await conn.executemany(
                    """
                    INSERT INTO trades (price, quantity, timestamp, is_buyer_maker)
                    VALUES ($1, $2, $3, $4)
                    """,
                    [
                        (
                            trade.price,
                            trade.quantity,
                            trade.timestamp,
                            trade.is_buyer_maker,
                        )
                        for trade in trades
                    ],
                )

            self._trades_written += len(trades)
            logger.debug(f"Flushed {len(trades)} trades (total: {self._trades_written})")

        except asyncio.CancelledError:
            self._requeue(trades)
            raise
        except Exception as e:
            logger.error(f"Failed to flush {len(trades)} trades, will retry: {e}")
            self._requeue(trades)

    def _requeue(self, trades: list[Trade]) -> None:
        """Put an unwritten batch back in front of newer trades"""
        self._trade_buffer = trades + self._trade_buffer
        if len(self._trade_buffer) > self.max_pending:
            overflow = len(self._trade_buffer) - self.max_pending
            del self._trade_buffer[:overflow]
            self._trades_dropped += overflow
            logger.warning(
                f"Trade write backlog above {self.max_pending}, dropped {overflow} oldest "
                f"(total dropped: {self._trades_dropped})"
            )

    async def _periodic_flush(self) -> None:
        """Flush on interval, or earlier when a full batch is waiting"""
        while True:
            try:
                await asyncio.wait_for(self._flush_requested.wait(), self.flush_interval)
            except asyncio.TimeoutError:
                pass
            self._flush_requested.clear()
            try:
                await self.flush_trades()
            except Exception as e:
                logger.error(f"Trade flush failed: {e}", exc_info=True)

    async def start(self) -> None:
        """Connect, provision schema and start the flush task"""
        logger.info("Starting TimescaleDB store...")

        await self.connect_db()
        await self.ensure_schema()
        self._flush_task = asyncio.create_task(self._periodic_flush())

        logger.info("TimescaleDB store started")

    async def stop(self) -> None:
        """Stop the flush task, flush pending trades, close the pool"""
        logger.info("Stopping TimescaleDB store...")

        if self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None

        # Final flush
        await self.flush_trades()
        await self.close_db()

        logger.info(
            f"TimescaleDB store stopped. "
            f"Total written: {self._trades_written} trades, {self._bars_written} bars"
        )

    def get_metrics(self) -> dict:
        return {
            "trades_written": self._trades_written,
            "trades_pending": len(self._trade_buffer),
            "trades_dropped": self._trades_dropped,
            "bars_written": self._bars_written,
        }
