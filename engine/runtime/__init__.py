"""
Runtime Module

Pipeline wiring and service entry point.
"""

from .pipeline import ImbalanceBarPipeline

__all__ = [
    "ImbalanceBarPipeline",
]
