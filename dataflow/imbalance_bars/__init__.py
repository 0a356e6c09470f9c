"""
Imbalance Bar Aggregation

Consumes trades from the ingest buffer and emits dollar imbalance bars
whenever the running buy/sell dollar imbalance crosses a threshold.
"""

from dataflow.imbalance_bars.aggregator import (
    FixedThreshold,
    ImbalanceAggregator,
    ImbalanceState,
    ThresholdPolicy,
)

__all__ = [
    "FixedThreshold",
    "ImbalanceAggregator",
    "ImbalanceState",
    "ThresholdPolicy",
]
