"""
Exchange Core Package.

============================================================
PURPOSE
============================================================
Exchange integration and simulated order execution.

- Uniform adapters over three exchange APIs (signing,
  symbol mapping, balances, orders, region detection)
- Simulated spot order engine, portfolio ledger, futures
  engine and alerts driven by live prices
- Market data relay with direct-upstream fallback

============================================================
MODULES
============================================================
- types: Domain types and outcomes
- errors: Error taxonomy and exchange error mapping
- config: Configuration dataclasses (env via python-dotenv)
- signing: Per-exchange request signers
- symbols: Canonical <-> native symbol translation
- platform_detector: Regional base probing and cache
- adapters: Live exchange adapters and factory
- market_data: Ticker table, relay client/server, REST data
- simulation: Order engine, ledger, futures, alerts
- storage: Persistence interface, memory and SQL stores
- notifications: Notification dispatcher interface
- core: TradingCore facade

============================================================
"""

# ============================================================
# TYPES
# ============================================================
from .types import (
    AlertDirection,
    AlertType,
    Balance,
    BalancesResult,
    CredentialCheck,
    Credentials,
    ExchangeName,
    FuturesOutcome,
    FuturesPosition,
    MarginMode,
    MarginTransferType,
    OrderOutcome,
    OrderRequest,
    OrderResult,
    OrderSide,
    OrderType,
    PortfolioPosition,
    PositionSide,
    PositionStatus,
    PriceAlert,
    Ticker,
    Trade,
    TradeStatus,
    TriggerDirection,
)

# ============================================================
# ERRORS
# ============================================================
from .errors import (
    AlreadyTerminalError,
    AuthError,
    ConfigurationError,
    ErrorCategory,
    GeoRestrictedError,
    InsufficientFundsError,
    NetworkError,
    RateLimitedError,
    TradingError,
    TradingException,
    ValidationError,
)

# ============================================================
# CONFIG
# ============================================================
from .config import CoreConfig, RelayConfig, SimulationConfig

# ============================================================
# FACADE
# ============================================================
from .core import TradingCore


__all__ = [
    "AlertDirection",
    "AlertType",
    "Balance",
    "BalancesResult",
    "CredentialCheck",
    "Credentials",
    "ExchangeName",
    "FuturesOutcome",
    "FuturesPosition",
    "MarginMode",
    "MarginTransferType",
    "OrderOutcome",
    "OrderRequest",
    "OrderResult",
    "OrderSide",
    "OrderType",
    "PortfolioPosition",
    "PositionSide",
    "PositionStatus",
    "PriceAlert",
    "Ticker",
    "Trade",
    "TradeStatus",
    "TriggerDirection",
    "AlreadyTerminalError",
    "AuthError",
    "ConfigurationError",
    "ErrorCategory",
    "GeoRestrictedError",
    "InsufficientFundsError",
    "NetworkError",
    "RateLimitedError",
    "TradingError",
    "TradingException",
    "ValidationError",
    "CoreConfig",
    "RelayConfig",
    "SimulationConfig",
    "TradingCore",
]
