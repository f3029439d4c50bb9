"""Price feed layer -- exchange access behind the PriceFeed interface."""

from tickerwatch.feed.binance_client import BinanceFeed
from tickerwatch.feed.client import PriceFeed

__all__ = ["BinanceFeed", "PriceFeed"]
