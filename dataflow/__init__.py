"""
Dataflow Layer

Event I/O layer for the imbalance bar pipeline. Contains:
- ingestion: trade stream, reconnect policy, ingest buffer
- imbalance_bars: dollar imbalance aggregation
- sink: bar fan-out to storage and live subscribers
- persistence: TimescaleDB store
- query: HTTP dashboard API
- adapters: NATS client adapters
"""
