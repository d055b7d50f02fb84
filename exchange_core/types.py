"""
Exchange Core - Shared Types.

============================================================
PURPOSE
============================================================
Domain types shared by adapters, the simulation engines and
the storage layer.

All money and quantity fields are Decimal.

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, Dict, Any, List, TYPE_CHECKING

if TYPE_CHECKING:
    from .errors import TradingError


ZERO = Decimal("0")


# ============================================================
# ENUMS
# ============================================================

class ExchangeName(Enum):
    """Supported live exchanges."""

    BINANCE = "binance"
    KRAKEN = "kraken"
    KUCOIN = "kucoin"


class OrderSide(Enum):
    """Order side."""

    BUY = "buy"
    SELL = "sell"


class OrderType(Enum):
    """Order type. STOP is only available to simulated orders."""

    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"


class TradeStatus(Enum):
    """Simulated order lifecycle status."""

    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not TradeStatus.PENDING


class TriggerDirection(Enum):
    """Price movement that fires a stop order."""

    RISE = "rise"     # Fires when price >= stop
    FALL = "fall"     # Fires when price <= stop


class PositionSide(Enum):
    """Futures position side."""

    LONG = "long"
    SHORT = "short"


class MarginMode(Enum):
    """Futures margin mode."""

    CROSS = "cross"
    ISOLATED = "isolated"


class PositionStatus(Enum):
    """Futures position status."""

    OPEN = "open"
    CLOSED = "closed"
    LIQUIDATED = "liquidated"


class MarginTransferType(Enum):
    """Isolated margin transfer direction."""

    ADD = "add"
    REMOVE = "remove"


class AlertType(Enum):
    """Price alert kind."""

    PRICE = "price"
    INDICATOR = "indicator"


class AlertDirection(Enum):
    """Price alert direction."""

    ABOVE = "above"
    BELOW = "below"


# ============================================================
# HELPERS
# ============================================================

def to_decimal(value: Any, default: Decimal = ZERO) -> Decimal:
    """Convert an exchange value (str/int/float/None) to Decimal."""
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def compute_change_percent(last_price: Decimal, open_price: Decimal) -> Decimal:
    """Percent change from open, rounded to 2 decimals. Zero when open is zero."""
    if open_price == 0:
        return Decimal("0.00")
    change = (last_price - open_price) / open_price * 100
    return change.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


# ============================================================
# CREDENTIALS
# ============================================================

@dataclass(frozen=True)
class Credentials:
    """
    Exchange API credentials.

    Never persisted by the core. Secret material is kept out of repr().
    """

    api_key: str
    api_secret: str = field(repr=False)
    passphrase: Optional[str] = field(default=None, repr=False)


# ============================================================
# MARKET DATA
# ============================================================

@dataclass
class Ticker:
    """24h rolling ticker for one canonical symbol."""

    symbol: str
    last_price: Decimal
    open_price: Decimal = ZERO
    high_price: Decimal = ZERO
    low_price: Decimal = ZERO
    volume: Decimal = ZERO
    quote_volume: Decimal = ZERO
    change_percent: Decimal = ZERO

    @classmethod
    def from_prices(
        cls,
        symbol: str,
        last_price: Any,
        open_price: Any = None,
        high_price: Any = None,
        low_price: Any = None,
        volume: Any = None,
        quote_volume: Any = None,
    ) -> "Ticker":
        """Build a ticker, deriving change_percent from last/open."""
        last = to_decimal(last_price)
        opened = to_decimal(open_price)
        return cls(
            symbol=symbol.upper(),
            last_price=last,
            open_price=opened,
            high_price=to_decimal(high_price),
            low_price=to_decimal(low_price),
            volume=to_decimal(volume),
            quote_volume=to_decimal(quote_volume),
            change_percent=compute_change_percent(last, opened),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "lastPrice": str(self.last_price),
            "openPrice": str(self.open_price),
            "highPrice": str(self.high_price),
            "lowPrice": str(self.low_price),
            "volume": str(self.volume),
            "quoteVolume": str(self.quote_volume),
            "priceChangePercent": str(self.change_percent),
        }


@dataclass
class Balance:
    """Normalized balance of one canonical currency."""

    currency: str
    available: Decimal
    total: Decimal


# ============================================================
# EXCHANGE ORDERS
# ============================================================

@dataclass
class OrderRequest:
    """
    Order request, used both for live exchange orders and simulated orders.

    A market buy may carry quote_amount; when present it takes precedence
    over quantity.
    """

    symbol: str
    side: OrderSide
    order_type: OrderType = OrderType.MARKET
    quantity: Optional[Decimal] = None
    quote_amount: Optional[Decimal] = None
    price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None

    @property
    def uses_quote_amount(self) -> bool:
        """True when this is a market buy sized by quote amount."""
        return (
            self.order_type == OrderType.MARKET
            and self.side == OrderSide.BUY
            and self.quote_amount is not None
        )

    def validate(self) -> Optional[str]:
        """
        Validate the request shape.

        Returns:
            Reason string if invalid, None otherwise
        """
        if not self.symbol or not self.symbol.strip():
            return "Symbol is required"

        if self.quote_amount is not None and not self.uses_quote_amount:
            return "quote_amount is only supported for market buys"

        if self.uses_quote_amount:
            if self.quote_amount <= 0:
                return "quote_amount must be positive"
            return None

        if self.quantity is None or self.quantity <= 0:
            return "quantity must be positive"

        if self.order_type == OrderType.LIMIT:
            if self.price is None or self.price <= 0:
                return "Limit orders require a positive price"
        elif self.order_type == OrderType.STOP:
            if self.stop_price is None or self.stop_price <= 0:
                return "Stop orders require a positive stop_price"

        return None


@dataclass
class OrderResult:
    """Result of a live exchange order placement."""

    success: bool
    exchange_order_id: Optional[str] = None
    status: Optional[str] = None
    executed_quantity: Decimal = ZERO
    executed_quote_amount: Decimal = ZERO
    error: Optional["TradingError"] = None
    raw: Optional[Dict[str, Any]] = None


@dataclass
class OrderStatusResult:
    """Result of a live exchange order lookup."""

    success: bool
    order_id: Optional[str] = None
    status: Optional[str] = None
    executed_quantity: Decimal = ZERO
    executed_quote_amount: Decimal = ZERO
    error: Optional["TradingError"] = None
    raw: Optional[Dict[str, Any]] = None


@dataclass
class BalancesResult:
    """Result of a live balance query."""

    success: bool
    balances: List[Balance] = field(default_factory=list)
    error: Optional["TradingError"] = None

    def get(self, currency: str) -> Optional[Balance]:
        for balance in self.balances:
            if balance.currency == currency.upper():
                return balance
        return None


@dataclass
class CredentialCheck:
    """Outcome of a credential validation."""

    valid: bool
    error: Optional[str] = None
    platform: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"valid": self.valid}
        if self.error:
            result["error"] = self.error
        if self.platform:
            result["platform"] = self.platform
        return result


# ============================================================
# SIMULATED TRADING ENTITIES
# ============================================================

@dataclass
class Trade:
    """A simulated order (market, limit or stop) owned by one user."""

    id: int
    user_id: int
    symbol: str
    side: OrderSide
    order_type: OrderType
    quantity: Decimal
    price: Decimal
    """Execution price once completed, reference price while pending."""

    total: Decimal = ZERO
    status: TradeStatus = TradeStatus.PENDING
    limit_price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None
    trigger_direction: Optional[TriggerDirection] = None
    stop_triggered: bool = False
    realized_pnl: Optional[Decimal] = None
    cancel_reason: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    executed_at: Optional[datetime] = None


@dataclass
class PortfolioPosition:
    """Spot holding with weighted-average cost basis."""

    user_id: int
    symbol: str
    quantity: Decimal = ZERO
    avg_buy_price: Decimal = ZERO


@dataclass
class FuturesPosition:
    """Leveraged futures position."""

    id: int
    user_id: int
    symbol: str
    side: PositionSide
    quantity: Decimal
    entry_price: Decimal
    leverage: int
    margin_mode: MarginMode
    isolated_margin: Decimal
    liquidation_price: Decimal
    status: PositionStatus = PositionStatus.OPEN
    realized_pnl: Decimal = ZERO
    opened_at: datetime = field(default_factory=datetime.utcnow)
    closed_at: Optional[datetime] = None

    @property
    def notional(self) -> Decimal:
        return self.entry_price * self.quantity

    @property
    def initial_margin(self) -> Decimal:
        return self.notional / Decimal(self.leverage)


@dataclass
class FuturesCloseRecord:
    """A realized close (full, partial or liquidation) of a futures position."""

    position_id: int
    user_id: int
    symbol: str
    side: PositionSide
    quantity: Decimal
    entry_price: Decimal
    exit_price: Decimal
    realized_pnl: Decimal
    closed_at: datetime = field(default_factory=datetime.utcnow)
    liquidated: bool = False


@dataclass
class PriceAlert:
    """Price or indicator alert."""

    id: int
    user_id: int
    symbol: str
    direction: AlertDirection
    alert_type: AlertType = AlertType.PRICE
    target_price: Optional[Decimal] = None
    indicator: Optional[str] = None
    indicator_condition: Optional[str] = None
    chart_interval: Optional[str] = None
    notify: bool = True
    is_active: bool = True
    triggered: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)
    triggered_at: Optional[datetime] = None


# ============================================================
# OPERATION OUTCOMES
# ============================================================

@dataclass
class OrderOutcome:
    """Outcome of a simulated order operation (place, cancel)."""

    success: bool
    trade: Optional[Trade] = None
    error: Optional["TradingError"] = None

    @property
    def reason(self) -> Optional[str]:
        return self.error.message if self.error else None

    def raise_for_error(self) -> "OrderOutcome":
        if self.error is not None:
            raise self.error.to_exception()
        return self


@dataclass
class FuturesOutcome:
    """Outcome of a futures operation (open, close, transfer margin)."""

    success: bool
    position: Optional[FuturesPosition] = None
    realized_pnl: Decimal = ZERO
    error: Optional["TradingError"] = None

    @property
    def reason(self) -> Optional[str]:
        return self.error.message if self.error else None

    def raise_for_error(self) -> "FuturesOutcome":
        if self.error is not None:
            raise self.error.to_exception()
        return self
