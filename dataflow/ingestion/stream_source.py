"""
Trade Stream Source

Maintains a WebSocket connection to the venue's trade stream, decodes
messages into Trade values and pushes them into the ingest buffer.

A malformed message is logged and skipped on the same connection.
A closed connection is replaced by a brand-new one through the
reconnect policy; trades only held by the dead connection are lost.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Protocol, Union

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from dataflow.errors import BufferClosed, DecodeError, FeedConnectionError, StreamClosed
from dataflow.ingestion.buffer import IngestBuffer
from dataflow.ingestion.reconnect import ReconnectPolicy
from engine.config.loader import FeedConfig
from schemas.market_data import Trade

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """Minimal surface of a feed connection"""

    async def recv(self) -> Union[str, bytes]:
        ...

    async def close(self) -> None:
        ...


Connector = Callable[[], Awaitable[Connection]]


class StreamSource:
    """
    Live trade feed reader.

    Example usage:
        source = StreamSource(feed_config, ReconnectPolicy(max_attempts=10))
        await source.run(buffer)  # until the buffer is closed or stop() is called
    """

    def __init__(
        self,
        config: FeedConfig,
        reconnect: Optional[ReconnectPolicy] = None,
        connector: Optional[Connector] = None,
    ):
        self.config = config
        self.reconnect = reconnect or ReconnectPolicy(
            initial_delay=config.reconnect_initial_delay,
            max_delay=config.reconnect_max_delay,
            max_attempts=config.max_reconnect_attempts,
        )
        self._connector = connector or self._open_websocket
        self._conn: Optional[Connection] = None
        self._stopping = False
        self._stop_event = asyncio.Event()

        # Metrics
        self.trades_received = 0
        self.decode_errors = 0
        self.reconnects = 0

    async def _open_websocket(self) -> Connection:
        headers = {}
        if self.config.api_key:
            headers["X-MBX-APIKEY"] = self.config.api_key

        return await ws_connect(
            self.config.url,
            additional_headers=headers,
            ping_interval=self.config.ping_interval,
            ping_timeout=self.config.ping_timeout,
            open_timeout=self.config.open_timeout,
        )

    async def connect(self) -> Connection:
        """
        Open a new feed connection.

        Raises:
            FeedConnectionError: If the feed cannot be reached
        """
        logger.info(f"Connecting to trade feed at {self.config.url}...")
        try:
            conn = await self._connector()
        except FeedConnectionError:
            raise
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            raise FeedConnectionError(f"Failed to connect to {self.config.url}: {e}") from e

        logger.info(f"Connected to trade feed for {self.config.symbol}")
        return conn

    async def next_trade(self, conn: Connection) -> Trade:
        """
        Read and decode the next trade from a connection.

        Raises:
            StreamClosed: If the connection was closed or the transport failed
            DecodeError: If the message is malformed
        """
        try:
            raw = await conn.recv()
        except ConnectionClosed as e:
            raise StreamClosed(f"Feed connection closed: {e}") from e
        except OSError as e:
            raise StreamClosed(f"Feed transport error: {e}") from e

        return Trade.from_feed_message(raw)

    async def _reconnect(self) -> Optional[Connection]:
        """
        Connect through the reconnect policy.

        Returns None when stop() is called while the policy is still
        connecting or backing off.
        """
        attempt = asyncio.create_task(self.reconnect.attempt(self.connect))
        stopped = asyncio.create_task(self._stop_event.wait())
        try:
            await asyncio.wait({attempt, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopped.cancel()
            if not attempt.done():
                attempt.cancel()
                try:
                    await attempt
                except asyncio.CancelledError:
                    pass

        if attempt.cancelled():
            logger.info("Feed reconnect abandoned, stream is stopping")
            return None
        return attempt.result()

    async def trades(self) -> AsyncIterator[Trade]:
        """
        Lazy, unbounded sequence of trades across reconnects.

        Raises:
            FeedConnectionError: When the reconnect policy is exhausted
        """
        while not self._stopping:
            self._conn = await self._reconnect()
            if self._conn is None:
                break
            try:
                while not self._stopping:
                    try:
                        trade = await self.next_trade(self._conn)
                    except DecodeError as e:
                        self.decode_errors += 1
                        logger.warning(f"Skipping malformed feed message: {e}")
                        continue

                    self.trades_received += 1
                    logger.debug(
                        f"Trade: {trade.quantity} @ {trade.price} "
                        f"T={trade.timestamp} maker={'buy' if trade.is_buyer_maker else 'sell'}"
                    )
                    yield trade

            except StreamClosed as e:
                if self._stopping:
                    break
                self.reconnects += 1
                logger.warning(f"{e}. Reconnecting (reconnect #{self.reconnects})")
            finally:
                await self._close_connection()

    async def run(self, buffer: IngestBuffer) -> None:
        """
        Push decoded trades into the buffer until it is closed.

        Blocks on buffer.push() under backpressure, which throttles feed reads.
        """
        logger.info(f"Starting trade stream for {self.config.symbol}")
        stream = self.trades()
        try:
            async for trade in stream:
                try:
                    await buffer.push(trade)
                except BufferClosed:
                    logger.info("Ingest buffer closed, stopping trade stream")
                    break
        finally:
            await stream.aclose()
            logger.info(
                f"Trade stream stopped. Received {self.trades_received} trades, "
                f"{self.decode_errors} decode errors, {self.reconnects} reconnects"
            )

    async def stop(self) -> None:
        """Stop reading and close the live connection"""
        self._stopping = True
        self._stop_event.set()
        await self._close_connection()

    async def _close_connection(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            await conn.close()
        except (OSError, WebSocketException) as e:
            logger.debug(f"Error closing feed connection: {e}")

    def get_metrics(self) -> dict[str, Any]:
        return {
            "symbol": self.config.symbol,
            "trades_received": self.trades_received,
            "decode_errors": self.decode_errors,
            "reconnects": self.reconnects,
        }
