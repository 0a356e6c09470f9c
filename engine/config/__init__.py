"""
Config Module

Pipeline configuration loading and validation.
"""

from .loader import (
    AggregatorConfig,
    BufferConfig,
    ConfigLoader,
    database_url_from_env,
    FeedConfig,
    PipelineConfig,
    StorageConfig,
)

__all__ = [
    "ConfigLoader",
    "PipelineConfig",
    "FeedConfig",
    "BufferConfig",
    "AggregatorConfig",
    "StorageConfig",
    "database_url_from_env",
]
