"""
Simulation - Order Simulation Engine.

============================================================
PURPOSE
============================================================
Places, triggers and cancels simulated spot orders.

ORDER LIFECYCLE:
    pending -> completed   trigger condition met on a tick
    pending -> cancelled   user cancel, or funds gone at trigger

TRIGGERS:
- Limit buy:  price <= limit        Limit sell: price >= limit
- Stop rise:  price >= stop         Stop fall:  price <= stop
  Direction fixed at placement: rise if the stop is above the
  current price, fall if below. One-shot.
- Fills execute at the tick price, never at the limit/stop.

CONCURRENCY:
- One evaluation pass per tick per symbol (per-symbol lock)
- Balance, holding and order mutations under the user lock
- Fill vs. cancel decided by the storage compare-and-set;
  the loser reports ALREADY_TERMINAL
- A fill books status, cash and holding in one storage call
  (settle_trade / insert_settled_trade)

============================================================
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal, ROUND_DOWN
from typing import Callable, Dict, List, Optional, Set

from ..config import SimulationConfig
from ..errors import (
    TradingError,
    already_terminal_error,
    insufficient_funds_error,
    not_found_error,
    validation_error,
)
from ..market_data.tickers import TickerTable
from ..notifications import NotificationDispatcher, deliver
from ..storage.base import SPOT_WALLET, TradingStorage
from ..symbols import split_canonical
from ..types import (
    OrderOutcome,
    OrderRequest,
    OrderSide,
    OrderType,
    Ticker,
    Trade,
    TradeStatus,
    TriggerDirection,
)
from .portfolio import PortfolioLedger


logger = logging.getLogger(__name__)


QUANTITY_STEP = Decimal("0.00000001")


def stop_direction(side: OrderSide, stop_price: Decimal, current_price: Optional[Decimal]) -> TriggerDirection:
    """Direction a stop fires in, fixed when the order is placed."""
    if current_price is None or current_price == stop_price:
        return TriggerDirection.RISE if side == OrderSide.BUY else TriggerDirection.FALL
    return TriggerDirection.RISE if stop_price > current_price else TriggerDirection.FALL


def cash_delta(side: OrderSide, total: Decimal) -> Decimal:
    """Spot wallet change of a fill: buys pay `total`, sells receive it."""
    return -total if side == OrderSide.BUY else total


def should_trigger(trade: Trade, price: Decimal) -> bool:
    """True if a pending trade fires at `price`."""
    if trade.order_type == OrderType.MARKET:
        return True

    if trade.order_type == OrderType.LIMIT:
        if trade.side == OrderSide.BUY:
            return price <= trade.limit_price
        return price >= trade.limit_price

    if trade.trigger_direction == TriggerDirection.RISE:
        return price >= trade.stop_price
    return price <= trade.stop_price


class OrderSimulationEngine:
    """Simulated spot order placement, triggering and cancellation."""

    def __init__(
        self,
        storage: TradingStorage,
        table: Optional[TickerTable] = None,
        ledger: Optional[PortfolioLedger] = None,
        notifier: Optional[NotificationDispatcher] = None,
        config: Optional[SimulationConfig] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._storage = storage
        self._table = table if table is not None else TickerTable()
        self._config = config or SimulationConfig()
        self._ledger = ledger or PortfolioLedger(storage, self._config, clock)
        self._notifier = notifier
        self._clock = clock

        self._symbol_locks: Dict[str, asyncio.Lock] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def ledger(self) -> PortfolioLedger:
        return self._ledger

    # --------------------------------------------------------
    # TICK INGESTION
    # --------------------------------------------------------

    def attach(self) -> None:
        """Evaluate pending orders on every ticker table update."""
        if self._unsubscribe is None:
            self._unsubscribe = self._table.subscribe(self.on_tick)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def on_tick(self, ticker: Ticker) -> None:
        """Ticker listener. Schedules one evaluation pass for the symbol."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"Tick for {ticker.symbol} outside an event loop, not evaluated")
            return
        task = loop.create_task(self._run_tick(ticker.symbol, ticker.last_price))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for all scheduled evaluation passes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run_tick(self, symbol: str, price: Decimal) -> None:
        try:
            await self.process_tick(symbol, price)
        except Exception as e:
            logger.error(f"Order evaluation failed for {symbol} @ {price}: {e}", exc_info=True)

    async def process_tick(self, symbol: str, price: Decimal) -> List[Trade]:
        """
        Evaluate every pending order on `symbol` against `price`.

        Returns:
            Trades completed by this pass
        """
        symbol = symbol.upper()
        lock = self._symbol_locks.setdefault(symbol, asyncio.Lock())
        async with lock:
            filled = []
            for trade in await self._storage.list_pending(symbol):
                if should_trigger(trade, price):
                    completed = await self._fill_pending(trade, price)
                    if completed is not None:
                        filled.append(completed)
            return filled

    # --------------------------------------------------------
    # PLACEMENT
    # --------------------------------------------------------

    async def place_order(self, user_id: int, request: OrderRequest) -> OrderOutcome:
        """
        Place a simulated order.

        Market orders fill at the current price. Limit and stop orders
        whose condition already holds fill immediately at the current
        price; otherwise they are stored as pending.

        Args:
            user_id: Order owner
            request: Order request

        Returns:
            OrderOutcome with the created trade or the failure reason
        """
        reason = request.validate()
        if reason:
            return self._failed(validation_error(reason, "place_order", request.symbol))

        symbol = request.symbol.strip().upper()
        try:
            _, quote = split_canonical(symbol)
        except ValueError:
            quote = None
        if quote != self._config.quote_currency:
            return self._failed(validation_error(
                f"Unsupported symbol {symbol}: simulated trading is quoted in {self._config.quote_currency}",
                "place_order", symbol,
            ))

        current = self._table.get_price(symbol)
        if request.order_type == OrderType.MARKET and not current:
            return self._failed(validation_error(f"No market price for {symbol}", "place_order", symbol))

        quantity = request.quantity
        if request.uses_quote_amount:
            quantity = (request.quote_amount / current).quantize(QUANTITY_STEP, rounding=ROUND_DOWN)
            if quantity <= 0:
                return self._failed(validation_error("quote_amount is too small", "place_order", symbol))

        if request.order_type == OrderType.LIMIT:
            reference = request.price
        elif request.order_type == OrderType.STOP:
            reference = request.stop_price
        else:
            reference = current

        total = reference * quantity
        if total < self._config.min_order_total:
            return self._failed(validation_error(
                f"Minimum order total is {self._config.min_order_total} {self._config.quote_currency}",
                "place_order", symbol,
            ))

        trade = Trade(
            id=0,
            user_id=user_id,
            symbol=symbol,
            side=request.side,
            order_type=request.order_type,
            quantity=quantity,
            price=reference,
            total=total,
            limit_price=request.price if request.order_type == OrderType.LIMIT else None,
            stop_price=request.stop_price if request.order_type == OrderType.STOP else None,
            created_at=self._clock(),
        )
        if request.order_type == OrderType.STOP:
            trade.trigger_direction = stop_direction(request.side, request.stop_price, current)

        async with self._storage.user_lock(user_id):
            shortfall = await self._check_funds(trade, total)
            if shortfall is not None:
                return self._failed(shortfall)

            if current and should_trigger(trade, current):
                return await self._fill_new(trade, current)

            created = await self._storage.create_trade(trade)

        logger.info(
            f"Pending {created.order_type.value} {created.side.value} #{created.id}: "
            f"{created.quantity} {symbol} @ {reference} (user {user_id})"
        )
        return OrderOutcome(success=True, trade=created)

    async def _fill_new(self, trade: Trade, price: Decimal) -> OrderOutcome:
        """Fill a not-yet-stored order at `price`. Caller holds the user lock."""
        total = price * trade.quantity
        shortfall = await self._check_funds(trade, total)
        if shortfall is not None:
            return self._failed(shortfall)

        position, realized = await self._ledger.preview_fill(
            trade.user_id, trade.symbol, trade.side, trade.quantity, price,
        )
        trade.status = TradeStatus.COMPLETED
        trade.price = price
        trade.total = total
        trade.stop_triggered = trade.order_type == OrderType.STOP
        trade.realized_pnl = realized
        trade.executed_at = self._clock()
        created = await self._storage.insert_settled_trade(
            trade, cash_delta(trade.side, total), position, SPOT_WALLET,
        )

        logger.info(
            f"Filled {created.order_type.value} {created.side.value} #{created.id}: "
            f"{created.quantity} {created.symbol} @ {price} (user {created.user_id})"
        )
        return OrderOutcome(success=True, trade=created)

    # --------------------------------------------------------
    # TRIGGERED FILLS
    # --------------------------------------------------------

    async def _fill_pending(self, trade: Trade, price: Decimal) -> Optional[Trade]:
        async with self._storage.user_lock(trade.user_id):
            total = price * trade.quantity
            shortfall = await self._check_funds(trade, total)
            if shortfall is not None:
                cancelled = await self._storage.transition_trade(
                    trade.id, TradeStatus.PENDING, TradeStatus.CANCELLED,
                    cancel_reason=shortfall.message,
                )
                if cancelled is None:
                    return None
                logger.warning(f"Cancelled #{trade.id} at trigger: {shortfall.message}")
                await deliver(
                    self._notifier, trade.user_id,
                    f"Your {trade.order_type.value} {trade.side.value} order for {trade.quantity} "
                    f"{trade.symbol} was cancelled: {shortfall.message}",
                )
                return None

            position, realized = await self._ledger.preview_fill(
                trade.user_id, trade.symbol, trade.side, trade.quantity, price,
            )
            completed = await self._storage.settle_trade(
                trade.id, TradeStatus.PENDING, TradeStatus.COMPLETED,
                wallet_delta=cash_delta(trade.side, total),
                position=position,
                price=price,
                total=total,
                stop_triggered=trade.order_type == OrderType.STOP,
                realized_pnl=realized,
                executed_at=self._clock(),
            )
            if completed is None:
                logger.info(f"Order #{trade.id} left pending before it could fill")
                return None

        logger.info(
            f"Triggered {completed.order_type.value} {completed.side.value} #{completed.id}: "
            f"{completed.quantity} {completed.symbol} @ {price}"
        )
        await deliver(
            self._notifier, completed.user_id,
            f"Your {completed.order_type.value} {completed.side.value} order for {completed.quantity} "
            f"{completed.symbol} filled at {price}",
        )
        return completed

    # --------------------------------------------------------
    # CANCELLATION
    # --------------------------------------------------------

    async def cancel_order(self, user_id: int, trade_id: int) -> OrderOutcome:
        """
        Cancel a pending order owned by `user_id`.

        Returns:
            OrderOutcome; ALREADY_TERMINAL if the order is no longer pending
        """
        trade = await self._storage.get_trade(trade_id)
        if trade is None or trade.user_id != user_id:
            return self._failed(not_found_error(f"Order {trade_id} not found", "cancel_order"))

        async with self._storage.user_lock(user_id):
            cancelled = await self._storage.transition_trade(
                trade_id, TradeStatus.PENDING, TradeStatus.CANCELLED,
                cancel_reason="Cancelled by user",
            )

        if cancelled is None:
            current = await self._storage.get_trade(trade_id)
            status = current.status.value if current else "unknown"
            return self._failed(already_terminal_error(
                f"Order {trade_id} is no longer pending ({status})", "cancel_order",
            ))

        logger.info(f"Cancelled order #{trade_id} (user {user_id})")
        return OrderOutcome(success=True, trade=cancelled)

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    async def _check_funds(self, trade: Trade, total: Decimal) -> Optional[TradingError]:
        if trade.side == OrderSide.BUY:
            balance = await self._storage.get_wallet(trade.user_id, SPOT_WALLET)
            if balance < total:
                return insufficient_funds_error("Insufficient balance", "place_order", trade.symbol)
        else:
            held = await self._ledger.holding(trade.user_id, trade.symbol)
            if held < trade.quantity:
                return insufficient_funds_error("Insufficient holdings", "place_order", trade.symbol)
        return None

    @staticmethod
    def _failed(error: TradingError) -> OrderOutcome:
        logger.info(f"Order rejected: {error}")
        return OrderOutcome(success=False, error=error)
