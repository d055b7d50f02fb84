"""
Market Data - Ticker Table.

============================================================
PURPOSE
============================================================
Process-wide symbol -> Ticker map shared by the relay client,
the simulation engines and the alert monitor.

- Last write wins per symbol, in arrival order
- Concurrent readers, one writer at a time
- Listeners are called synchronously after each update

Also holds the frame decoders for the two wire shapes that
carry tickers (upstream miniTicker and relay snapshot items).

============================================================
"""

import logging
import threading
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..types import Ticker, to_decimal


logger = logging.getLogger(__name__)


TickerListener = Callable[[Ticker], None]


class TickerTable:
    """Synchronized latest-ticker map with change listeners."""

    def __init__(self):
        self._tickers: Dict[str, Ticker] = {}
        self._listeners: List[TickerListener] = []
        self._lock = threading.RLock()

    def update(self, ticker: Ticker) -> None:
        with self._lock:
            self._tickers[ticker.symbol] = ticker
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(ticker)
            except Exception as e:
                logger.error(f"Ticker listener failed for {ticker.symbol}: {e}", exc_info=True)

    def update_many(self, tickers: Iterable[Ticker]) -> int:
        count = 0
        for ticker in tickers:
            self.update(ticker)
            count += 1
        return count

    def get(self, symbol: str) -> Optional[Ticker]:
        return self._tickers.get(symbol.upper())

    def get_price(self, symbol: str) -> Optional[Decimal]:
        ticker = self.get(symbol)
        return ticker.last_price if ticker else None

    def snapshot(self) -> List[Ticker]:
        with self._lock:
            return list(self._tickers.values())

    def subscribe(self, listener: TickerListener) -> Callable[[], None]:
        """Register a listener. Returns an unsubscribe callable."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def clear(self) -> None:
        with self._lock:
            self._tickers.clear()

    def __contains__(self, symbol: str) -> bool:
        return symbol.upper() in self._tickers

    def __len__(self) -> int:
        return len(self._tickers)


# ============================================================
# FRAME DECODERS
# ============================================================

def ticker_from_mini(data: Dict[str, Any]) -> Optional[Ticker]:
    """Decode an upstream 24h miniTicker payload {s, c, o, h, l, v, q}."""
    symbol = data.get("s")
    if not symbol or data.get("c") is None:
        return None
    return Ticker.from_prices(
        symbol=symbol,
        last_price=data.get("c"),
        open_price=data.get("o"),
        high_price=data.get("h"),
        low_price=data.get("l"),
        volume=data.get("v"),
        quote_volume=data.get("q"),
    )


def ticker_from_snapshot(item: Dict[str, Any]) -> Optional[Ticker]:
    """Decode one item of a relay `tickers` frame (Ticker.to_dict shape)."""
    symbol = item.get("symbol")
    if not symbol or item.get("lastPrice") is None:
        return None
    ticker = Ticker.from_prices(
        symbol=symbol,
        last_price=item.get("lastPrice"),
        open_price=item.get("openPrice"),
        high_price=item.get("highPrice"),
        low_price=item.get("lowPrice"),
        volume=item.get("volume"),
        quote_volume=item.get("quoteVolume"),
    )
    if item.get("priceChangePercent") is not None:
        ticker.change_percent = to_decimal(item["priceChangePercent"])
    return ticker


def tickers_from_upstream(frame: Dict[str, Any]) -> List[Ticker]:
    """Decode a combined-stream frame {stream, data} or a bare miniTicker (or list of them)."""
    payload = frame.get("data", frame) if isinstance(frame, dict) else frame
    items = payload if isinstance(payload, list) else [payload]
    tickers = []
    for item in items:
        if isinstance(item, dict):
            ticker = ticker_from_mini(item)
            if ticker is not None:
                tickers.append(ticker)
    return tickers
