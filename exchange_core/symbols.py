"""
Exchange Core - Symbol Translation.

============================================================
PURPOSE
============================================================
Pure, stateless mapping between the canonical BASEQUOTE form
(e.g. BTCUSDT) and each exchange's native pair notation.

- Binance: native form is canonical
- Kraken: legacy base aliases (XBT, XDG, XXBT, ...) and Z/X
  prefixed fiat codes; quotes limited to USD/USDT/USDC
- KuCoin: dash separated BASE-QUOTE

Round trip: to_canonical(to_native(s)) == s for every
supported symbol.

============================================================
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

from .types import ExchangeName


# Canonical quote currencies, matched longest first
CANONICAL_QUOTES: Tuple[str, ...] = ("USDT", "USDC", "BUSD", "FDUSD", "USD", "EUR", "BTC", "ETH", "BNB")


def split_canonical(symbol: str) -> Tuple[str, str]:
    """
    Split a canonical symbol into (base, quote).

    Raises:
        ValueError: If no known quote suffix is present
    """
    upper = symbol.upper()
    for quote in sorted(CANONICAL_QUOTES, key=len, reverse=True):
        if upper.endswith(quote) and len(upper) > len(quote):
            return upper[:-len(quote)], quote
    raise ValueError(f"Unrecognized quote currency in symbol: {symbol}")


class SymbolTranslator(ABC):
    """Bidirectional canonical <-> native symbol mapping."""

    exchange: ExchangeName

    @abstractmethod
    def to_native(self, symbol: str, quote_override: Optional[str] = None) -> str:
        """
        Canonical to native.

        Args:
            symbol: Canonical BASEQUOTE symbol
            quote_override: Quote to trade against instead of the canonical one
        """
        pass

    @abstractmethod
    def to_canonical(self, native: str, canonical_quote: Optional[str] = None) -> str:
        """
        Native to canonical.

        Args:
            native: Exchange-native pair
            canonical_quote: Restores the canonical quote after an override
        """
        pass


# ============================================================
# BINANCE
# ============================================================

class BinanceSymbolTranslator(SymbolTranslator):
    """Binance uses the canonical form directly."""

    exchange = ExchangeName.BINANCE

    def to_native(self, symbol: str, quote_override: Optional[str] = None) -> str:
        upper = symbol.upper()
        if not quote_override:
            return upper
        base, _ = split_canonical(upper)
        return f"{base}{quote_override.upper()}"

    def to_canonical(self, native: str, canonical_quote: Optional[str] = None) -> str:
        upper = native.upper()
        if not canonical_quote:
            return upper
        base, _ = split_canonical(upper)
        return f"{base}{canonical_quote.upper()}"


# ============================================================
# KRAKEN
# ============================================================

KRAKEN_BASE_RENAMES: Dict[str, str] = {
    "BTC": "XBT",
    "DOGE": "XDG",
}

# Native base aliases back to canonical, including legacy X-prefixed codes
KRAKEN_BASE_ALIASES: Dict[str, str] = {
    "XXBT": "BTC",
    "XBT": "BTC",
    "XXDG": "DOGE",
    "XDG": "DOGE",
    "XETH": "ETH",
    "XETC": "ETC",
    "XLTC": "LTC",
    "XXLM": "XLM",
    "XXRP": "XRP",
    "XXMR": "XMR",
    "XZEC": "ZEC",
}

# Native quote codes back to canonical
KRAKEN_QUOTES: Dict[str, str] = {
    "ZUSD": "USD",
    "ZEUR": "EUR",
    "USDT": "USDT",
    "USDC": "USDC",
    "USD": "USD",
    "EUR": "EUR",
}

KRAKEN_SUPPORTED_QUOTES: Tuple[str, ...] = ("USD", "USDT", "USDC")

# Balance asset codes that do not follow the 4-letter prefix rule
KRAKEN_ASSETS: Dict[str, str] = {
    "XXBT": "BTC",
    "XBT": "BTC",
    "XXDG": "DOGE",
    "XDG": "DOGE",
    "XETH": "ETH",
    "XXRP": "XRP",
    "XSOL": "SOL",
    "ZUSD": "USD",
    "ZEUR": "EUR",
    "USDT": "USDT",
    "USDC": "USDC",
}


class KrakenSymbolTranslator(SymbolTranslator):
    """Kraken pair notation with legacy asset aliases."""

    exchange = ExchangeName.KRAKEN

    def to_native(self, symbol: str, quote_override: Optional[str] = None) -> str:
        base, quote = split_canonical(symbol)
        native_base = KRAKEN_BASE_RENAMES.get(base, base)
        return f"{native_base}{(quote_override or quote).upper()}"

    def to_ws_pair(self, symbol: str, quote_override: Optional[str] = None) -> str:
        """Websocket form, e.g. XBT/USD."""
        base, quote = split_canonical(symbol)
        native_base = KRAKEN_BASE_RENAMES.get(base, base)
        return f"{native_base}/{(quote_override or quote).upper()}"

    def to_canonical(self, native: str, canonical_quote: Optional[str] = None) -> str:
        key = native.upper().replace("/", "")
        base, quote = self._split_native(key)
        return f"{base}{(canonical_quote or quote).upper()}"

    def _split_native(self, key: str) -> Tuple[str, str]:
        # Longest alias prefix wins so XXBTZUSD is not read as base XXBTZ
        for alias in sorted(KRAKEN_BASE_ALIASES, key=len, reverse=True):
            if key.startswith(alias):
                rest = key[len(alias):]
                if rest in KRAKEN_QUOTES:
                    return KRAKEN_BASE_ALIASES[alias], KRAKEN_QUOTES[rest]

        for native_quote in sorted(KRAKEN_QUOTES, key=len, reverse=True):
            if key.endswith(native_quote) and len(key) > len(native_quote):
                return key[:-len(native_quote)], KRAKEN_QUOTES[native_quote]

        return key, ""

    @staticmethod
    def asset_to_canonical(asset: str) -> str:
        """Map a Kraken balance asset code (XXBT, ZUSD, ...) to canonical."""
        upper = asset.upper()
        if upper in KRAKEN_ASSETS:
            return KRAKEN_ASSETS[upper]
        if len(upper) == 4 and upper[0] in ("X", "Z"):
            return upper[1:]
        return upper


# ============================================================
# KUCOIN
# ============================================================

KUCOIN_QUOTES: Tuple[str, ...] = ("USDT", "USDC", "BTC", "ETH", "KCS")


class KucoinSymbolTranslator(SymbolTranslator):
    """KuCoin BASE-QUOTE notation."""

    exchange = ExchangeName.KUCOIN

    def to_native(self, symbol: str, quote_override: Optional[str] = None) -> str:
        upper = symbol.upper()
        if "-" in upper:
            base, quote = upper.split("-", 1)
        else:
            base, quote = self._split(upper)
        return f"{base}-{(quote_override or quote).upper()}"

    def to_canonical(self, native: str, canonical_quote: Optional[str] = None) -> str:
        upper = native.upper()
        if "-" in upper:
            base, quote = upper.split("-", 1)
        else:
            base, quote = self._split(upper)
        return f"{base}{(canonical_quote or quote).upper()}"

    @staticmethod
    def _split(symbol: str) -> Tuple[str, str]:
        for quote in sorted(KUCOIN_QUOTES, key=len, reverse=True):
            if symbol.endswith(quote) and len(symbol) > len(quote):
                return symbol[:-len(quote)], quote
        return split_canonical(symbol)


# ============================================================
# REGISTRY
# ============================================================

_TRANSLATORS: Dict[ExchangeName, SymbolTranslator] = {
    ExchangeName.BINANCE: BinanceSymbolTranslator(),
    ExchangeName.KRAKEN: KrakenSymbolTranslator(),
    ExchangeName.KUCOIN: KucoinSymbolTranslator(),
}


def get_translator(exchange: ExchangeName) -> SymbolTranslator:
    """Shared translator instance (translators are stateless)."""
    return _TRANSLATORS[exchange]
