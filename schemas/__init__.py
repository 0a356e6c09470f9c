"""
Typed Message Catalog

Value types flowing through the pipeline: trades in, imbalance bars out.
"""

from schemas.market_data import Bar, Trade, TradeMessage

__all__ = [
    "Bar",
    "Trade",
    "TradeMessage",
]
