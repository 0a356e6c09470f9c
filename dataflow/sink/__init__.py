"""
Bar Sink

Fans completed imbalance bars out to durable storage and live subscribers.
"""

from dataflow.sink.bar_sink import BarSink, BarTarget, NatsBarBroadcaster

__all__ = ["BarSink", "BarTarget", "NatsBarBroadcaster"]
