"""
Exchange Core - Configuration.

============================================================
PURPOSE
============================================================
Configuration dataclasses for every component of the core.

Defaults are production values. CoreConfig.from_env() overlays
EXCHANGE_CORE_* environment variables (a local .env file is
loaded first via python-dotenv).

============================================================
"""

import logging
import math
import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, List, Optional, Tuple

from dotenv import load_dotenv

from .errors import ConfigurationError, ErrorCategory, make_error


logger = logging.getLogger(__name__)


ENV_PREFIX = "EXCHANGE_CORE_"

DEFAULT_TRACKED_SYMBOLS: List[str] = [
    "BTCUSDT", "ETHUSDT", "BNBUSDT", "XRPUSDT", "SOLUSDT",
    "ADAUSDT", "DOGEUSDT", "DOTUSDT", "TRXUSDT", "LINKUSDT",
    "AVAXUSDT", "UNIUSDT", "LTCUSDT", "ATOMUSDT", "ETCUSDT",
    "XLMUSDT", "NEARUSDT", "ALGOUSDT", "FILUSDT", "POLUSDT",
]


# ============================================================
# RETRY CONFIGURATION
# ============================================================

@dataclass
class RetryConfig:
    """
    Retry configuration for exchange read operations.

    SAFETY: Order placement is never retried.
    """

    max_retries: int = 3
    """Maximum number of retry attempts."""

    initial_delay_seconds: float = 0.5
    """Initial delay before first retry."""

    max_delay_seconds: float = 8.0
    """Maximum delay between retries."""

    backoff_multiplier: float = 2.0
    """Exponential backoff multiplier."""

    def get_delay(self, attempt: int, retry_after_ms: Optional[int] = None) -> float:
        """
        Delay before retry number `attempt` (0-based).

        A server-provided retry-after hint wins when it is longer.
        """
        delay = min(
            self.initial_delay_seconds * (self.backoff_multiplier ** attempt),
            self.max_delay_seconds,
        )
        if retry_after_ms is not None:
            delay = max(delay, retry_after_ms / 1000.0)
        return delay


# ============================================================
# EXCHANGE ENDPOINTS
# ============================================================

@dataclass
class ExchangeEndpoints:
    """Base URLs and HTTP settings for the live exchanges."""

    binance_bases: List[str] = field(default_factory=lambda: [
        "https://api.binance.com",
        "https://api.binance.us",
    ])
    """Binance regional bases, primary first."""

    kraken_base: str = "https://api.kraken.com"
    """Kraken REST base."""

    kucoin_base: str = "https://api.kucoin.com"
    """KuCoin REST base."""

    request_timeout_seconds: float = 15.0
    """Total timeout per HTTP request."""

    probe_timeout_seconds: float = 8.0
    """Timeout per platform-detection probe."""

    binance_recv_window_ms: int = 10000
    """Binance recvWindow injected into signed requests."""


# ============================================================
# MARKET DATA RELAY
# ============================================================

@dataclass
class RelayConfig:
    """
    Market data relay configuration.

    Used by both the relay server (multiplexer) and the relay client.
    """

    relay_url: str = "ws://localhost:8080/ws/market"
    """Relay endpoint the client connects to first."""

    upstream_base_url: str = "wss://data-stream.binance.vision/stream"
    """Upstream combined-stream endpoint."""

    tracked_symbols: List[str] = field(default_factory=lambda: list(DEFAULT_TRACKED_SYMBOLS))
    """Canonical symbols streamed from upstream."""

    # Client
    status_timeout_seconds: float = 5.0
    """How long to wait for the relay status frame before falling back."""

    health_check_interval_seconds: float = 10.0
    """Health monitor period."""

    stale_timeout_seconds: float = 30.0
    """No data for this long while connected forces a reconnect."""

    direct_reconnect_delay_seconds: float = 2.0
    """Fixed backoff for the direct upstream fallback."""

    relay_reconnect_delay_seconds: float = 5.0
    """Fixed backoff for the relay."""

    # Server
    host: str = "0.0.0.0"
    port: int = 8080
    path: str = "/ws/market"

    broadcast_interval_seconds: float = 1.0
    """Ticker snapshot broadcast period."""

    upstream_reconnect_delay_seconds: float = 3.0
    """Server-side upstream reconnect delay after a clean close."""

    upstream_failure_delay_seconds: float = 5.0
    """Server-side upstream reconnect delay after a failed connect."""

    def upstream_stream_url(self) -> str:
        """Combined miniTicker stream URL for the tracked symbols."""
        streams = "/".join(f"{symbol.lower()}@miniTicker" for symbol in self.tracked_symbols)
        return f"{self.upstream_base_url}?streams={streams}"


# ============================================================
# PRICE CACHE
# ============================================================

@dataclass
class PriceCacheConfig:
    """TTLs for cached public market REST calls."""

    ticker_ttl_seconds: float = 3.0
    ohlc_ttl_seconds: float = 10.0
    depth_ttl_seconds: float = 5.0


# ============================================================
# SIMULATION
# ============================================================

@dataclass
class SimulationConfig:
    """Simulated spot and futures trading parameters."""

    quote_currency: str = "USDT"
    """Cash currency of the simulated wallets."""

    min_order_total: Decimal = Decimal("5")
    """Smallest accepted order value in quote currency."""

    starting_balance: Decimal = Decimal("100000")
    """Baseline used by the cumulative PnL report."""

    fee_buffer: Decimal = Decimal("0.004")
    """Maintenance buffer in liquidation math. Must stay below 1/max_leverage."""

    max_leverage: int = 125

    leverage_options: Tuple[int, ...] = (1, 2, 3, 5, 10, 20, 50, 75, 100, 125)
    """Leverage presets offered to users."""

    trading_day_start_hour: int = 6
    """Hour (UTC) where a trading day begins for PnL history."""

    alert_check_interval_seconds: float = 3.0


# ============================================================
# CORE CONFIG
# ============================================================

@dataclass
class CoreConfig:
    """Top-level configuration."""

    endpoints: ExchangeEndpoints = field(default_factory=ExchangeEndpoints)
    relay: RelayConfig = field(default_factory=RelayConfig)
    price_cache: PriceCacheConfig = field(default_factory=PriceCacheConfig)
    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)

    database_url: Optional[str] = None
    """SQLAlchemy async URL. None keeps state in memory."""

    @classmethod
    def from_env(cls) -> "CoreConfig":
        """
        Create config from environment variables.

        Recognized variables (all optional):
            EXCHANGE_CORE_RELAY_URL, EXCHANGE_CORE_UPSTREAM_URL,
            EXCHANGE_CORE_TRACKED_SYMBOLS (comma separated),
            EXCHANGE_CORE_BINANCE_BASES (comma separated),
            EXCHANGE_CORE_KRAKEN_BASE, EXCHANGE_CORE_KUCOIN_BASE,
            EXCHANGE_CORE_RELAY_PORT, EXCHANGE_CORE_STALE_TIMEOUT,
            EXCHANGE_CORE_DATABASE_URL

        Raises:
            ConfigurationError: A numeric variable is malformed or out of range
        """
        load_dotenv()
        config = cls()

        relay_url = _env("RELAY_URL")
        if relay_url:
            config.relay.relay_url = relay_url

        upstream = _env("UPSTREAM_URL")
        if upstream:
            config.relay.upstream_base_url = upstream

        symbols = _env_list("TRACKED_SYMBOLS")
        if symbols:
            config.relay.tracked_symbols = [s.upper() for s in symbols]

        port = _env_number("RELAY_PORT", int, "an integer port")
        if port is not None:
            if not 0 < port < 65536:
                raise _setting_error("RELAY_PORT", str(port), "a port between 1 and 65535")
            config.relay.port = port

        stale = _env_number("STALE_TIMEOUT", float, "a number of seconds")
        if stale is not None:
            if not stale > 0:
                raise _setting_error("STALE_TIMEOUT", str(stale), "a positive number of seconds")
            config.relay.stale_timeout_seconds = stale

        bases = _env_list("BINANCE_BASES")
        if bases:
            config.endpoints.binance_bases = bases

        kraken = _env("KRAKEN_BASE")
        if kraken:
            config.endpoints.kraken_base = kraken

        kucoin = _env("KUCOIN_BASE")
        if kucoin:
            config.endpoints.kucoin_base = kucoin

        config.database_url = _env("DATABASE_URL") or None

        logger.debug(
            f"Loaded config: relay={config.relay.relay_url} "
            f"symbols={len(config.relay.tracked_symbols)} "
            f"database={'yes' if config.database_url else 'memory'}"
        )
        return config


def _env(name: str) -> Optional[str]:
    return os.getenv(f"{ENV_PREFIX}{name}")


def _env_list(name: str) -> List[str]:
    raw = _env(name)
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def _setting_error(name: str, raw: str, expected: str) -> ConfigurationError:
    return ConfigurationError(make_error(
        ErrorCategory.CONFIGURATION,
        f"{ENV_PREFIX}{name} must be {expected}, got {raw!r}",
        code="INVALID_SETTING",
        operation="load_config",
    ))


def _env_number(name: str, convert: Callable[[str], Any], expected: str) -> Optional[Any]:
    """
    Numeric environment variable, None when unset.

    Raises:
        ConfigurationError: The value does not parse; the message names the variable
    """
    raw = _env(name)
    if not raw:
        return None
    try:
        value = convert(raw.strip())
    except ValueError as e:
        raise _setting_error(name, raw, expected) from e
    if isinstance(value, float) and not math.isfinite(value):
        raise _setting_error(name, raw, expected)
    return value
