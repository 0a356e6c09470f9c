"""
NATS Adapters

NATS client wrapper and topic helpers for bar broadcast.
"""

from dataflow.adapters.nats_client import NatsClient, NatsConfig, Topics

__all__ = ["NatsClient", "NatsConfig", "Topics"]
