"""
Dollar Imbalance Aggregator

State machine with a single state ACCUMULATING(buy_volume, sell_volume):

1. dollar_value = price * quantity
2. buy-initiated trades (is_buyer_maker == False) add to buy_volume,
   sell-initiated trades add to sell_volume
3. imbalance = |buy_volume - sell_volume|
4. if the threshold policy says so, emit a Bar stamped with the
   triggering trade and reset to (0, 0)

Steps 1-4 run synchronously inside process(), so no other trade can be
applied between the crossing and the reset.
"""

import logging
from dataclasses import dataclass, replace
from typing import Optional, Protocol

from dataflow.errors import BufferClosed, SinkError
from dataflow.ingestion.buffer import IngestBuffer
from schemas.market_data import Bar, Trade

logger = logging.getLogger(__name__)


@dataclass
class ImbalanceState:
    """Dollar volume accumulated since the last emitted bar"""
    buy_volume: float = 0.0
    sell_volume: float = 0.0

    @property
    def imbalance(self) -> float:
        return abs(self.buy_volume - self.sell_volume)

    def is_empty(self) -> bool:
        return self.buy_volume == 0.0 and self.sell_volume == 0.0

    def reset(self) -> None:
        self.buy_volume = 0.0
        self.sell_volume = 0.0


class ThresholdPolicy(Protocol):
    """
    Decides when a bar is emitted.

    should_emit() is evaluated after every trade; next_threshold() is
    called once per emitted bar, before the state is reset, so adaptive
    policies can derive the next threshold from the completed bar.
    """

    def should_emit(self, state: ImbalanceState) -> bool:
        ...

    def next_threshold(self, state: ImbalanceState) -> float:
        ...


class FixedThreshold:
    """Constant threshold on the absolute dollar imbalance"""

    def __init__(self, threshold: float):
        if threshold <= 0:
            raise ValueError(f"Threshold must be positive, got {threshold}")
        self.threshold = threshold

    def should_emit(self, state: ImbalanceState) -> bool:
        return state.imbalance >= self.threshold

    def next_threshold(self, state: ImbalanceState) -> float:
        return self.threshold


class BarConsumer(Protocol):
    async def accept(self, bar: Bar) -> None:
        ...


class TradeRecorder(Protocol):
    def record_trade(self, trade: Trade) -> None:
        ...


class ImbalanceAggregator:
    """
    Converts an ordered trade sequence into dollar imbalance bars.

    The aggregator is the only writer of its ImbalanceState; callers get
    copies through snapshot().

    Example usage:
        aggregator = ImbalanceAggregator(threshold=5000.0)
        bar = aggregator.process(trade)  # Bar or None

        # or as the pipeline consumer
        await aggregator.run(buffer, bar_sink)
    """

    def __init__(
        self,
        threshold: Optional[float] = None,
        policy: Optional[ThresholdPolicy] = None,
    ):
        if policy is None:
            if threshold is None:
                raise ValueError("Either threshold or policy is required")
            policy = FixedThreshold(threshold)

        self.policy = policy
        self._state = ImbalanceState()
        self._threshold = getattr(policy, "threshold", threshold)

        # Metrics
        self.trades_processed = 0
        self.bars_emitted = 0
        self.sink_failures = 0

    @property
    def threshold(self) -> Optional[float]:
        """Threshold currently in force (as reported by the policy)"""
        return self._threshold

    def snapshot(self) -> ImbalanceState:
        """Copy of the running state"""
        return replace(self._state)

    def process(self, trade: Trade) -> Optional[Bar]:
        """
        Apply one trade. Returns the emitted Bar, if this trade crossed
        the threshold.
        """
        state = self._state
        dollar_value = trade.dollar_value

        if trade.is_buy_initiated:
            state.buy_volume += dollar_value
        else:
            state.sell_volume += dollar_value

        self.trades_processed += 1

        if not self.policy.should_emit(state):
            return None

        bar = Bar(
            timestamp=trade.timestamp,
            dollar_imbalance=state.imbalance,
            threshold_reached=True,
        )
        self._threshold = self.policy.next_threshold(state)
        state.reset()
        self.bars_emitted += 1

        logger.info(
            f"Imbalance bar #{self.bars_emitted} @ {bar.timestamp}: "
            f"imbalance={bar.dollar_imbalance:.2f}"
        )
        return bar

    async def run(
        self,
        buffer: IngestBuffer,
        sink: BarConsumer,
        trade_recorder: Optional[TradeRecorder] = None,
    ) -> None:
        """
        Consume the buffer until it is closed and drained.

        Sink failures are logged; the bar is not retried and aggregation
        continues from the already-reset state.
        """
        logger.info(f"Imbalance aggregator started (threshold={self.threshold})")

        while True:
            try:
                trade = await buffer.pop()
            except BufferClosed:
                break

            if trade_recorder is not None:
                trade_recorder.record_trade(trade)

            bar = self.process(trade)
            if bar is None:
                continue

            try:
                await sink.accept(bar)
            except SinkError as e:
                self.sink_failures += 1
                logger.error(f"Failed to deliver bar @ {bar.timestamp}: {e}")

        logger.info(
            f"Imbalance aggregator stopped. Processed {self.trades_processed} trades, "
            f"emitted {self.bars_emitted} bars"
        )

    def discard_partial(self) -> ImbalanceState:
        """
        Drop the accumulated-but-unthresholded state (shutdown).

        Returns the discarded state.
        """
        discarded = self.snapshot()
        if not discarded.is_empty():
            logger.info(
                f"Discarding partial imbalance on shutdown: "
                f"buy={discarded.buy_volume:.2f} sell={discarded.sell_volume:.2f} "
                f"imbalance={discarded.imbalance:.2f}"
            )
        self._state.reset()
        return discarded

    def get_metrics(self) -> dict:
        return {
            "threshold": self.threshold,
            "trades_processed": self.trades_processed,
            "bars_emitted": self.bars_emitted,
            "sink_failures": self.sink_failures,
            "imbalance": self._state.imbalance,
        }
