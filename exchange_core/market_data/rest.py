"""
Market Data - Kraken Public REST.

============================================================
PURPOSE
============================================================
Public market data (ticker, OHLC candles, order book depth)
used when the websocket feed is unavailable and for indicator
alerts. Every call goes through PriceCache so repeated reads
within the TTL hit memory and upstream failures degrade to
stale data.

Canonical symbols are quoted in USDT; Kraken public pairs are
requested against USD.

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from ..config import ExchangeEndpoints, PriceCacheConfig
from ..errors import TradingException, create_network_error, map_kraken_error
from ..symbols import KrakenSymbolTranslator, split_canonical
from ..types import Ticker, to_decimal
from .price_cache import PriceCache


logger = logging.getLogger(__name__)


# Chart interval -> Kraken OHLC minutes (unsupported intervals round to the nearest offered)
INTERVAL_MAP: Dict[str, int] = {
    "1m": 1, "3m": 5, "5m": 5, "15m": 15, "30m": 30,
    "1h": 60, "2h": 60, "4h": 240, "6h": 240, "8h": 240,
    "12h": 720, "1d": 1440, "3d": 10080, "1w": 10080, "1M": 21600,
}

DEFAULT_INTERVAL_MINUTES = 60
PUBLIC_QUOTE = "USD"


def interval_to_kraken(interval: str) -> int:
    return INTERVAL_MAP.get(interval, DEFAULT_INTERVAL_MINUTES)


@dataclass
class Candle:
    """One OHLC candle. Times are epoch milliseconds."""

    open_time: int
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    close_time: int
    trades: int = 0


@dataclass
class OrderBook:
    bids: List[Tuple[Decimal, Decimal]] = field(default_factory=list)
    asks: List[Tuple[Decimal, Decimal]] = field(default_factory=list)


def parse_kraken_ticker(symbol: str, raw: Dict[str, Any]) -> Ticker:
    """
    Build a Ticker from a Kraken Ticker entry.

    Kraken fields: c[0] last, o open, h[1]/l[1] 24h high/low,
    v[1] 24h volume, p[1] 24h VWAP. Quote volume is volume * VWAP.
    """
    volume = to_decimal(raw["v"][1])
    vwap = to_decimal(raw.get("p", [0, 0])[1])
    return Ticker.from_prices(
        symbol=symbol,
        last_price=raw["c"][0],
        open_price=raw.get("o"),
        high_price=raw["h"][1],
        low_price=raw["l"][1],
        volume=volume,
        quote_volume=(volume * vwap).quantize(Decimal("0.01")),
    )


class KrakenMarketData:
    """Cached public Kraken market data client."""

    def __init__(
        self,
        cache: Optional[PriceCache] = None,
        ttl_config: Optional[PriceCacheConfig] = None,
        endpoints: Optional[ExchangeEndpoints] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._cache = cache or PriceCache()
        self._ttl = ttl_config or PriceCacheConfig()
        self._base_url = (endpoints or ExchangeEndpoints()).kraken_base
        self._session = session
        self._owns_session = session is None
        self._translator = KrakenSymbolTranslator()

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _pair(self, symbol: str) -> str:
        return self._translator.to_native(symbol, quote_override=PUBLIC_QUOTE)

    # --------------------------------------------------------
    # PUBLIC CALLS
    # --------------------------------------------------------

    async def fetch_ticker(self, symbol: str) -> Optional[Ticker]:
        """Ticker for one canonical symbol, None when Kraken has no such pair."""
        result = await self._cached_get(f"/0/public/Ticker?pair={self._pair(symbol)}", self._ttl.ticker_ttl_seconds)
        for key, raw in result.items():
            return parse_kraken_ticker(symbol.upper(), raw)
        return None

    async def fetch_tickers(self, symbols: List[str]) -> List[Ticker]:
        """Tickers for many symbols in one request."""
        if not symbols:
            return []
        by_base = {split_canonical(s)[0]: s.upper() for s in symbols}
        pairs = ",".join(self._pair(s) for s in symbols)
        result = await self._cached_get(f"/0/public/Ticker?pair={pairs}", self._ttl.ticker_ttl_seconds)

        tickers = []
        for key, raw in result.items():
            base = self._translator.to_canonical(key)[:-len(PUBLIC_QUOTE)]
            symbol = by_base.get(base)
            if symbol:
                tickers.append(parse_kraken_ticker(symbol, raw))
        return tickers

    async def fetch_price(self, symbol: str) -> Optional[Decimal]:
        ticker = await self.fetch_ticker(symbol)
        return ticker.last_price if ticker else None

    async def fetch_ohlc(self, symbol: str, interval: str = "1h", limit: int = 200) -> List[Candle]:
        """Most recent `limit` candles, oldest first."""
        minutes = interval_to_kraken(interval)
        result = await self._cached_get(
            f"/0/public/OHLC?pair={self._pair(symbol)}&interval={minutes}",
            self._ttl.ohlc_ttl_seconds,
        )
        key = next((k for k in result if k != "last"), None)
        if key is None:
            return []

        candles = []
        for row in result[key][-limit:]:
            open_time = int(row[0]) * 1000
            candles.append(Candle(
                open_time=open_time,
                open=to_decimal(row[1]),
                high=to_decimal(row[2]),
                low=to_decimal(row[3]),
                close=to_decimal(row[4]),
                volume=to_decimal(row[6]),
                close_time=open_time + minutes * 60000 - 1,
                trades=int(row[7]),
            ))
        return candles

    async def fetch_closes(self, symbol: str, interval: str = "1h", limit: int = 200) -> List[Decimal]:
        return [candle.close for candle in await self.fetch_ohlc(symbol, interval, limit)]

    async def fetch_depth(self, symbol: str, limit: int = 100) -> OrderBook:
        result = await self._cached_get(
            f"/0/public/Depth?pair={self._pair(symbol)}&count={limit}",
            self._ttl.depth_ttl_seconds,
        )
        for key, book in result.items():
            return OrderBook(
                bids=[(to_decimal(b[0]), to_decimal(b[1])) for b in book.get("bids", [])],
                asks=[(to_decimal(a[0]), to_decimal(a[1])) for a in book.get("asks", [])],
            )
        return OrderBook()

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    async def _cached_get(self, path: str, ttl_seconds: float) -> Dict[str, Any]:
        url = f"{self._base_url}{path}"
        return await self._cache.get(url, lambda: self._fetch(url), ttl_seconds)

    async def _fetch(self, url: str) -> Dict[str, Any]:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10))
            self._owns_session = True

        try:
            async with self._session.get(url) as response:
                status = response.status
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise TradingException(create_network_error("kraken", f"Market data request failed: {e}", "market_data"))

        errors = (data or {}).get("error") or []
        if errors:
            raise map_kraken_error(str(errors[0]), status).to_exception()
        if status != 200 or not isinstance(data, dict):
            raise TradingException(create_network_error("kraken", f"Kraken API error: HTTP {status}", "market_data"))
        return data.get("result") or {}
