"""
Ingestion

Trade feed reader, reconnect policy and the bounded ingest buffer.
"""
