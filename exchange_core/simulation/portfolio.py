"""
Simulation - Portfolio Ledger.

============================================================
PURPOSE
============================================================
Spot holdings with weighted-average cost basis, and the PnL
reports built from completed trades.

COST BASIS:
- Buy:  avg = (qty * avg + bought * price) / (qty + bought)
- Sell: qty -= sold, avg unchanged
        realized = (price - avg) * sold
- Selling the whole holding resets the row to zero

TRADING DAY:
Days start at trading_day_start_hour (06:00). Earlier
timestamps belong to the previous calendar day.

============================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..config import SimulationConfig
from ..storage.base import SPOT_WALLET, TradingStorage
from ..types import ZERO, OrderSide, PortfolioPosition, Ticker, TradeStatus


logger = logging.getLogger(__name__)


# ============================================================
# PURE COST-BASIS MATH
# ============================================================

def apply_buy(position: PortfolioPosition, quantity: Decimal, price: Decimal) -> PortfolioPosition:
    """Return the position after buying `quantity` at `price`."""
    if quantity <= 0:
        raise ValueError("Buy quantity must be positive")
    new_quantity = position.quantity + quantity
    avg = (position.quantity * position.avg_buy_price + quantity * price) / new_quantity
    return PortfolioPosition(
        user_id=position.user_id,
        symbol=position.symbol,
        quantity=new_quantity,
        avg_buy_price=avg,
    )


def apply_sell(
    position: PortfolioPosition,
    quantity: Decimal,
    price: Decimal,
) -> Tuple[PortfolioPosition, Decimal]:
    """
    Return the position after selling, and the realized PnL.

    Raises:
        ValueError: If selling more than held
    """
    if quantity <= 0:
        raise ValueError("Sell quantity must be positive")
    if quantity > position.quantity:
        raise ValueError(f"Cannot sell {quantity} {position.symbol}, holding {position.quantity}")

    realized = (price - position.avg_buy_price) * quantity
    remaining = position.quantity - quantity
    if remaining <= 0:
        return PortfolioPosition(position.user_id, position.symbol), realized
    return PortfolioPosition(position.user_id, position.symbol, remaining, position.avg_buy_price), realized


# ============================================================
# TRADING DAYS
# ============================================================

def trading_day_start(now: datetime, start_hour: int = 6) -> datetime:
    """Start of the trading day containing `now`."""
    start = now.replace(hour=start_hour, minute=0, second=0, microsecond=0)
    if now.hour < start_hour:
        start -= timedelta(days=1)
    return start


def trading_day_key(ts: datetime, start_hour: int = 6) -> str:
    return trading_day_start(ts, start_hour).strftime("%Y-%m-%d")


# ============================================================
# REPORTS
# ============================================================

@dataclass
class DailyPnl:
    date: str
    pnl: Decimal
    cumulative: Decimal


@dataclass
class PnlHistory:
    """Realized PnL per trading day."""

    daily: List[DailyPnl] = field(default_factory=list)
    cumulative_pnl: Decimal = ZERO
    weekly_pnl: Decimal = ZERO
    starting_balance: Decimal = Decimal("100000")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dailyPnl": [
                {"date": d.date, "pnl": str(d.pnl), "cumulative": str(d.cumulative)}
                for d in self.daily
            ],
            "cumulativePnl": str(self.cumulative_pnl),
            "weeklyPnl": str(self.weekly_pnl),
            "startingBalance": str(self.starting_balance),
        }


@dataclass
class TodayPnl:
    """PnL since the start of the current trading day."""

    total_pnl: Decimal
    per_symbol: Dict[str, Decimal]
    start_of_day_value: Decimal
    current_value: Decimal
    period_start: datetime


def build_pnl_history(
    entries: Iterable[Tuple[datetime, Decimal]],
    now: datetime,
    start_hour: int = 6,
    starting_balance: Decimal = Decimal("100000"),
) -> PnlHistory:
    """
    Group (timestamp, realized pnl) pairs by trading day.

    Args:
        entries: Realized PnL events
        now: Reference time for the 7-day window
        start_hour: Trading day start hour
        starting_balance: Reported starting balance

    Returns:
        PnlHistory with days in ascending order
    """
    daily: Dict[str, Decimal] = {}
    for ts, pnl in entries:
        key = trading_day_key(ts, start_hour)
        daily[key] = daily.get(key, ZERO) + pnl

    history = PnlHistory(starting_balance=starting_balance)
    week_key = (now - timedelta(days=7)).strftime("%Y-%m-%d")
    cumulative = ZERO
    for day in sorted(daily):
        cumulative += daily[day]
        history.daily.append(DailyPnl(date=day, pnl=daily[day], cumulative=cumulative))
        if day >= week_key:
            history.weekly_pnl += daily[day]
    history.cumulative_pnl = cumulative
    return history


# ============================================================
# LEDGER
# ============================================================

class PortfolioLedger:
    """Spot holdings bookkeeping on top of TradingStorage."""

    def __init__(
        self,
        storage: TradingStorage,
        config: Optional[SimulationConfig] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._storage = storage
        self._config = config or SimulationConfig()
        self._clock = clock

    async def _load(self, user_id: int, symbol: str) -> PortfolioPosition:
        position = await self._storage.get_position(user_id, symbol)
        return position or PortfolioPosition(user_id=user_id, symbol=symbol)

    async def holding(self, user_id: int, symbol: str) -> Decimal:
        return (await self._load(user_id, symbol)).quantity

    async def holdings(self, user_id: int) -> List[PortfolioPosition]:
        """Non-empty holdings only."""
        return [p for p in await self._storage.list_positions(user_id) if p.quantity > 0]

    async def preview_fill(
        self,
        user_id: int,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
    ) -> Tuple[PortfolioPosition, Optional[Decimal]]:
        """
        Holding after a fill, without saving it.

        Returns:
            (position, realized PnL); realized is None for buys
        """
        position = await self._load(user_id, symbol)
        if side == OrderSide.BUY:
            return apply_buy(position, quantity, price), None
        return apply_sell(position, quantity, price)

    async def record_buy(self, user_id: int, symbol: str, quantity: Decimal, price: Decimal) -> PortfolioPosition:
        """Apply a filled buy. Caller holds the user's lock."""
        position, _ = await self.preview_fill(user_id, symbol, OrderSide.BUY, quantity, price)
        await self._storage.save_position(position)
        return position

    async def record_sell(self, user_id: int, symbol: str, quantity: Decimal, price: Decimal) -> Decimal:
        """
        Apply a filled sell. Caller holds the user's lock.

        Returns:
            Realized PnL of the sale
        """
        position, realized = await self.preview_fill(user_id, symbol, OrderSide.SELL, quantity, price)
        await self._storage.save_position(position)
        return realized

    # --------------------------------------------------------
    # REPORTS
    # --------------------------------------------------------

    async def pnl_history(self, user_id: int, now: Optional[datetime] = None) -> PnlHistory:
        """Realized PnL by trading day, replaying completed trades."""
        trades = await self._storage.list_trades(user_id, status=TradeStatus.COMPLETED)
        trades.sort(key=lambda t: t.executed_at or t.created_at)

        replay: Dict[str, PortfolioPosition] = {}
        entries: List[Tuple[datetime, Decimal]] = []
        for trade in trades:
            ts = trade.executed_at or trade.created_at
            position = replay.get(trade.symbol) or PortfolioPosition(user_id, trade.symbol)
            if trade.side == OrderSide.BUY:
                replay[trade.symbol] = apply_buy(position, trade.quantity, trade.price)
                entries.append((ts, ZERO))
            elif position.quantity > 0:
                sold = min(trade.quantity, position.quantity)
                replay[trade.symbol], realized = apply_sell(position, sold, trade.price)
                entries.append((ts, realized))

        return build_pnl_history(
            entries,
            now or self._clock(),
            self._config.trading_day_start_hour,
            self._config.starting_balance,
        )

    async def today_pnl(
        self,
        user_id: int,
        ticker_for: Callable[[str], Optional[Ticker]],
        now: Optional[datetime] = None,
    ) -> TodayPnl:
        """
        PnL since the trading day started.

        Start-of-day cash and holdings are rebuilt by undoing today's
        trades. Start-of-day holdings are valued at the ticker open price,
        current holdings at the last price.

        Args:
            user_id: User
            ticker_for: Ticker lookup by symbol
            now: Reference time
        """
        period_start = trading_day_start(now or self._clock(), self._config.trading_day_start_hour)
        trades = [
            t for t in await self._storage.list_trades(user_id, status=TradeStatus.COMPLETED)
            if (t.executed_at or t.created_at) >= period_start
        ]

        cash = await self._storage.get_wallet(user_id, SPOT_WALLET)
        current = {p.symbol: p.quantity for p in await self.holdings(user_id)}

        start_cash = cash
        start = dict(current)
        cash_flow: Dict[str, Decimal] = {}
        for trade in trades:
            if trade.side == OrderSide.BUY:
                start_cash += trade.total
                start[trade.symbol] = start.get(trade.symbol, ZERO) - trade.quantity
                cash_flow[trade.symbol] = cash_flow.get(trade.symbol, ZERO) - trade.total
            else:
                start_cash -= trade.total
                start[trade.symbol] = start.get(trade.symbol, ZERO) + trade.quantity
                cash_flow[trade.symbol] = cash_flow.get(trade.symbol, ZERO) + trade.total

        current_value = cash
        start_value = start_cash
        per_symbol: Dict[str, Decimal] = {}
        for symbol in set(current) | set(start):
            ticker = ticker_for(symbol)
            last = ticker.last_price if ticker else ZERO
            opened = ticker.open_price if ticker and ticker.open_price else last
            now_qty = current.get(symbol, ZERO)
            start_qty = start.get(symbol, ZERO)

            current_value += now_qty * last
            start_value += start_qty * opened
            per_symbol[symbol] = now_qty * last - start_qty * opened + cash_flow.get(symbol, ZERO)

        return TodayPnl(
            total_pnl=current_value - start_value,
            per_symbol=per_symbol,
            start_of_day_value=start_value,
            current_value=current_value,
            period_start=period_start,
        )
