"""
Exchange Core - Adapters Package.

============================================================
PURPOSE
============================================================
Live exchange adapter implementations.

AVAILABLE ADAPTERS:
- BinanceAdapter: Binance spot (global / US auto-detected)
- KrakenAdapter: Kraken spot
- KucoinAdapter: KuCoin spot

UTILITIES:
- AdapterFactory: Creates adapters sharing config and caches
- AdapterLogger: Secure logging

============================================================
"""

from .base import ExchangeAdapter, HttpReply, normalize_balances
from .binance import BinanceAdapter
from .kraken import KrakenAdapter
from .kucoin import KucoinAdapter
from .factory import AdapterFactory, credentials_from_env, parse_exchange
from .logging_utils import (
    AdapterLogger,
    mask_value,
    mask_headers,
    mask_params,
    mask_url,
)

__all__ = [
    "ExchangeAdapter",
    "HttpReply",
    "normalize_balances",
    "BinanceAdapter",
    "KrakenAdapter",
    "KucoinAdapter",
    "AdapterFactory",
    "credentials_from_env",
    "parse_exchange",
    "AdapterLogger",
    "mask_value",
    "mask_headers",
    "mask_params",
    "mask_url",
]
