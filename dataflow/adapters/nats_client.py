"""
NATS Client Adapter

Publish-only NATS connection for the live bar broadcast. Subscribers
(dashboards, downstream strategies) listen on bars.imbalance.{SYMBOL}.

The pipeline never depends on NATS being up: a failed publish surfaces
as an exception to the BarSink, which logs it and moves on.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

import nats
from nats.aio.client import Client as NatsConnection

logger = logging.getLogger(__name__)

DEFAULT_NATS_SERVER = "nats://localhost:4222"
DEFAULT_CLIENT_NAME = "imbalance-bars"


@dataclass
class NatsConfig:
    """Broadcast connection settings"""
    servers: list[str] = field(default_factory=lambda: [DEFAULT_NATS_SERVER])
    name: str = DEFAULT_CLIENT_NAME
    connect_timeout: float = 2.0
    reconnect_time_wait: float = 2.0
    max_reconnect_attempts: int = -1  # keep reconnecting in the background

    @classmethod
    def from_env(cls, prefix: str = "NATS") -> "NatsConfig":
        """Read {prefix}_SERVERS (comma separated) and {prefix}_CLIENT_NAME"""
        servers = os.getenv(f"{prefix}_SERVERS", DEFAULT_NATS_SERVER)
        return cls(
            servers=[s.strip() for s in servers.split(",") if s.strip()],
            name=os.getenv(f"{prefix}_CLIENT_NAME", DEFAULT_CLIENT_NAME),
        )


class NatsClient:
    """
    Thin publisher over nats-py.

    Example usage:
        client = NatsClient(NatsConfig.from_env())
        await client.connect()
        await client.publish_json(Topics.imbalance_bars("BTCUSDT"), bar.to_json())
        await client.close()
    """

    def __init__(self, config: Optional[NatsConfig] = None):
        self.config = config or NatsConfig()
        self._nc: Optional[NatsConnection] = None
        self._connected = False

        # Metrics
        self.messages_published = 0

    @property
    def is_connected(self) -> bool:
        return self._connected and self._nc is not None and self._nc.is_connected

    async def _on_error(self, e: Exception) -> None:
        logger.error(f"NATS error: {e}")

    async def _on_disconnected(self) -> None:
        logger.warning("NATS disconnected, bars will not be broadcast until reconnect")
        self._connected = False

    async def _on_reconnected(self) -> None:
        logger.info("NATS reconnected")
        self._connected = True

    async def _on_closed(self) -> None:
        logger.warning("NATS connection closed")
        self._connected = False

    async def connect(self) -> None:
        """
        Open the connection. nats-py keeps reconnecting on its own after
        the first successful connect.
        """
        if self._connected:
            return

        try:
            self._nc = await nats.connect(
                servers=self.config.servers,
                name=self.config.name,
                connect_timeout=self.config.connect_timeout,
                reconnect_time_wait=self.config.reconnect_time_wait,
                max_reconnect_attempts=self.config.max_reconnect_attempts,
                allow_reconnect=True,
                error_cb=self._on_error,
                disconnected_cb=self._on_disconnected,
                reconnected_cb=self._on_reconnected,
                closed_cb=self._on_closed,
            )
        except Exception as e:
            logger.error(f"Failed to connect to NATS at {self.config.servers}: {e}")
            raise

        self._connected = True
        logger.info(f"Connected to NATS: {self.config.servers} as '{self.config.name}'")

    async def close(self) -> None:
        """Flush outstanding messages and close"""
        if self._nc is None:
            return

        await self._nc.drain()
        self._nc = None
        self._connected = False
        logger.info(f"NATS closed after {self.messages_published} messages")

    async def publish(self, subject: str, data: bytes) -> None:
        """
        Publish raw bytes.

        Raises:
            RuntimeError: If the client is not connected
        """
        if not self.is_connected:
            raise RuntimeError("NATS client not connected")

        await self._nc.publish(subject, data)
        self.messages_published += 1
        logger.debug(f"Published {len(data)} bytes to {subject}")

    async def publish_json(self, subject: str, data: str) -> None:
        await self.publish(subject, data.encode("utf-8"))


class Topics:
    """Subject names used by the pipeline"""

    @staticmethod
    def _sanitize(name: str) -> str:
        # NATS uses '.' as token separator and '*'/'>' as wildcards
        return "".join(c if c.isalnum() or c in "-_" else "_" for c in name)

    @staticmethod
    def imbalance_bars(symbol: str) -> str:
        """bars.imbalance.{SYMBOL}"""
        return f"bars.imbalance.{Topics._sanitize(symbol.upper())}"
