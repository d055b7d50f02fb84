"""
Exchange Core - Market Data Package.

============================================================
PURPOSE
============================================================
Real-time and REST market data.

- TickerTable: process-wide latest-ticker map
- MarketDataRelay: relay client with direct-upstream fallback
- RelayServer: single-upstream websocket multiplexer
- PriceCache / KrakenMarketData: cached public REST data

============================================================
"""

from .price_cache import PriceCache
from .tickers import TickerTable, ticker_from_mini, ticker_from_snapshot, tickers_from_upstream
from .rest import Candle, KrakenMarketData, OrderBook, interval_to_kraken
from .relay import MarketDataRelay, RelayState
from .relay_server import RelayServer

__all__ = [
    "PriceCache",
    "TickerTable",
    "ticker_from_mini",
    "ticker_from_snapshot",
    "tickers_from_upstream",
    "Candle",
    "KrakenMarketData",
    "OrderBook",
    "interval_to_kraken",
    "MarketDataRelay",
    "RelayState",
    "RelayServer",
]
