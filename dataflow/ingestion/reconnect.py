"""
Reconnect Policy

Bounded exponential backoff around the feed's connect() call.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from dataflow.errors import FeedConnectionError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ReconnectPolicy:
    """
    Retries a connect coroutine with exponential backoff.

    Delay before retry n (0-based) is initial_delay * multiplier**n,
    capped at max_delay. max_attempts < 0 retries forever, so a
    sustained outage stalls the feed instead of terminating it.

    Example usage:
        policy = ReconnectPolicy(initial_delay=1.0, max_delay=30.0, max_attempts=10)
        conn = await policy.attempt(source.connect)
    """

    def __init__(
        self,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        multiplier: float = 2.0,
        max_attempts: int = -1,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if initial_delay < 0 or max_delay < 0:
            raise ValueError("Reconnect delays must be non-negative")
        if multiplier < 1.0:
            raise ValueError("Reconnect multiplier must be >= 1.0")
        if max_attempts == 0:
            raise ValueError("max_attempts must be positive, or negative for unbounded")

        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.multiplier = float(multiplier)
        self.max_attempts = max_attempts
        self._sleep = sleep or asyncio.sleep

    @property
    def unbounded(self) -> bool:
        return self.max_attempts < 0

    def delay_for(self, retry: int) -> float:
        """Backoff delay before the given retry (0-based)"""
        if self.initial_delay == 0:
            return 0.0
        try:
            delay = self.initial_delay * (self.multiplier ** retry)
        except OverflowError:
            # Long outages push the exponent past float range; the cap applies
            return self.max_delay
        return min(delay, self.max_delay)

    async def attempt(self, connect: Callable[[], Awaitable[T]]) -> T:
        """
        Call connect() until it succeeds or attempts are exhausted.

        Args:
            connect: Coroutine function raising FeedConnectionError on failure

        Returns:
            Whatever connect() returns

        Raises:
            FeedConnectionError: After max_attempts consecutive failures
        """
        failures = 0
        while True:
            try:
                return await connect()
            except FeedConnectionError as e:
                failures += 1
                if not self.unbounded and failures >= self.max_attempts:
                    logger.error(
                        f"Feed connection failed {failures} times, giving up: {e}"
                    )
                    raise

                delay = self.delay_for(failures - 1)
                logger.warning(
                    f"Feed connection attempt {failures} failed: {e}. "
                    f"Retrying in {delay:.1f}s"
                )
                await self._sleep(delay)
