"""Price feed adapters."""

from .base import PriceFeed, PriceHandler
from .kline_feed import KlineFeed
from .websocket_feed import TradeStreamFeed, parse_trade_message

__version__ = "1.0.0"

__all__ = [
    "PriceFeed",
    "PriceHandler",
    "KlineFeed",
    "TradeStreamFeed",
    "parse_trade_message",
]
