"""
Simulation - Futures Engine.

============================================================
PURPOSE
============================================================
Leveraged futures positions against the futures wallet.

FORMULAS (fb = fee_buffer, M = position margin):
- Initial margin      entry * qty / leverage
- Liquidation long    entry * (1 + fb) - M / qty
- Liquidation short   entry * (1 - fb) + M / qty
  With M = initial margin this is entry * (1 -/+ 1/L +/- fb).
  Cross positions use M = initial margin + free futures wallet.
- Unrealized PnL      (mark - entry) * qty, negated for short
- ROE                 pnl / margin * 100
                      margin = isolated_margin (isolated)
                             = entry * qty / leverage (cross)

LIFECYCLE:
    open -> closed       full close (partial close reduces qty)
    open -> liquidated   mark crosses the liquidation price

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Set

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
from ..storage.base import FUTURES_WALLET, SPOT_WALLET, TradingStorage
from ..types import (
    ZERO,
    FuturesCloseRecord,
    FuturesOutcome,
    FuturesPosition,
    MarginMode,
    MarginTransferType,
    PositionSide,
    PositionStatus,
    Ticker,
)
from .portfolio import PnlHistory, build_pnl_history


logger = logging.getLogger(__name__)


# ============================================================
# PURE FORMULAS
# ============================================================

def liquidation_price(
    side: PositionSide,
    entry_price: Decimal,
    quantity: Decimal,
    margin: Decimal,
    fee_buffer: Decimal,
) -> Decimal:
    """Price at which `margin` is exhausted. Never negative."""
    per_unit = margin / quantity
    if side == PositionSide.LONG:
        price = entry_price * (1 + fee_buffer) - per_unit
    else:
        price = entry_price * (1 - fee_buffer) + per_unit
    return max(price, ZERO)


def unrealized_pnl(side: PositionSide, entry_price: Decimal, mark_price: Decimal, quantity: Decimal) -> Decimal:
    diff = mark_price - entry_price
    return diff * quantity if side == PositionSide.LONG else -diff * quantity


def position_margin(position: FuturesPosition) -> Decimal:
    """Margin used for ROE: isolated margin, or initial margin for cross."""
    if position.margin_mode == MarginMode.ISOLATED:
        return position.isolated_margin
    return position.initial_margin


def roe_percent(position: FuturesPosition, mark_price: Decimal) -> Decimal:
    margin = position_margin(position)
    if margin <= 0:
        return ZERO
    pnl = unrealized_pnl(position.side, position.entry_price, mark_price, position.quantity)
    return pnl / margin * 100


def is_liquidated(position: FuturesPosition, mark_price: Decimal) -> bool:
    if position.side == PositionSide.LONG:
        return mark_price <= position.liquidation_price
    return mark_price >= position.liquidation_price


@dataclass
class PositionMetrics:
    """Mark-to-market view of an open position."""

    position_id: int
    mark_price: Decimal
    unrealized_pnl: Decimal
    roe: Decimal
    margin: Decimal
    liquidation_price: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "positionId": self.position_id,
            "markPrice": str(self.mark_price),
            "unrealizedPnl": str(self.unrealized_pnl),
            "roe": str(self.roe),
            "margin": str(self.margin),
            "liquidationPrice": str(self.liquidation_price),
        }


# ============================================================
# ENGINE
# ============================================================

class FuturesEngine:
    """Open, close, margin transfers and liquidation of futures positions."""

    def __init__(
        self,
        storage: TradingStorage,
        table: Optional[TickerTable] = None,
        notifier: Optional[NotificationDispatcher] = None,
        config: Optional[SimulationConfig] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._storage = storage
        self._table = table if table is not None else TickerTable()
        self._notifier = notifier
        self._config = config or SimulationConfig()
        self._clock = clock

        self._symbol_locks: Dict[str, asyncio.Lock] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._unsubscribe: Optional[Callable[[], None]] = None

    # --------------------------------------------------------
    # OPEN / CLOSE
    # --------------------------------------------------------

    async def open_position(
        self,
        user_id: int,
        symbol: str,
        side: PositionSide,
        quantity: Decimal,
        leverage: int,
        margin_mode: MarginMode = MarginMode.CROSS,
        price: Optional[Decimal] = None,
    ) -> FuturesOutcome:
        """
        Open a position at the current mark price.

        Args:
            user_id: Position owner
            symbol: Canonical symbol
            side: Long or short
            quantity: Base quantity
            leverage: 1..max_leverage
            margin_mode: Cross or isolated
            price: Entry price used only when no ticker is available

        Returns:
            FuturesOutcome with the opened position
        """
        symbol = symbol.strip().upper()
        if quantity is None or quantity <= 0:
            return self._failed(validation_error("quantity must be positive", "open_position", symbol))
        if isinstance(leverage, bool) or not isinstance(leverage, int) or not 1 <= leverage <= self._config.max_leverage:
            return self._failed(validation_error(
                f"Leverage must be between 1 and {self._config.max_leverage}", "open_position", symbol,
            ))

        entry = self._table.get_price(symbol) or price
        if not entry or entry <= 0:
            return self._failed(validation_error(f"No market price for {symbol}", "open_position", symbol))

        margin = entry * quantity / Decimal(leverage)
        if margin * leverage < self._config.min_order_total:
            return self._failed(validation_error(
                f"Minimum order total is {self._config.min_order_total} {self._config.quote_currency}",
                "open_position", symbol,
            ))

        async with self._storage.user_lock(user_id):
            balance = await self._storage.get_wallet(user_id, FUTURES_WALLET)
            if balance < margin:
                return self._failed(insufficient_funds_error("Insufficient futures balance", "open_position", symbol))
            free = await self._storage.adjust_wallet(user_id, -margin, FUTURES_WALLET)

            isolated = margin_mode == MarginMode.ISOLATED
            liq_margin = margin if isolated else margin + free
            position = await self._storage.create_futures_position(FuturesPosition(
                id=0,
                user_id=user_id,
                symbol=symbol,
                side=side,
                quantity=quantity,
                entry_price=entry,
                leverage=leverage,
                margin_mode=margin_mode,
                isolated_margin=margin if isolated else ZERO,
                liquidation_price=liquidation_price(side, entry, quantity, liq_margin, self._config.fee_buffer),
                opened_at=self._clock(),
            ))

        logger.info(
            f"Opened {side.value} #{position.id} {quantity} {symbol} @ {entry} "
            f"{leverage}x {margin_mode.value} (liq {position.liquidation_price}, user {user_id})"
        )
        return FuturesOutcome(success=True, position=position)

    async def close_position(
        self,
        user_id: int,
        position_id: int,
        quantity: Optional[Decimal] = None,
        price: Optional[Decimal] = None,
    ) -> FuturesOutcome:
        """
        Close all or part of a position at the mark price.

        Realized PnL and the released share of margin go back to the
        futures wallet. A partial close keeps entry_price. An isolated
        position never loses more than its margin.
        """
        async with self._storage.user_lock(user_id):
            position = await self._owned_open(user_id, position_id, "close_position")
            if isinstance(position, TradingError):
                return self._failed(position)

            close_qty = position.quantity if quantity is None else quantity
            if close_qty <= 0 or close_qty > position.quantity:
                return self._failed(validation_error(
                    f"Close quantity must be between 0 and {position.quantity}", "close_position", position.symbol,
                ))

            mark = self._table.get_price(position.symbol) or price
            if not mark:
                return self._failed(validation_error(
                    f"No market price for {position.symbol}", "close_position", position.symbol,
                ))

            fraction = close_qty / position.quantity
            released = position_margin(position) * fraction
            pnl = unrealized_pnl(position.side, position.entry_price, mark, close_qty)
            credit = released + pnl
            if position.margin_mode == MarginMode.ISOLATED and credit < 0:
                credit = ZERO
                pnl = -released
            await self._storage.adjust_wallet(user_id, credit, FUTURES_WALLET)

            now = self._clock()
            position.realized_pnl += pnl
            remaining = position.quantity - close_qty
            if remaining <= 0:
                position.status = PositionStatus.CLOSED
                position.closed_at = now
            else:
                position.quantity = remaining
                if position.margin_mode == MarginMode.ISOLATED:
                    position.isolated_margin -= released
                position.liquidation_price = await self._liquidation_for(position)
            await self._storage.update_futures_position(position)
            await self._storage.add_futures_close(FuturesCloseRecord(
                position_id=position.id,
                user_id=user_id,
                symbol=position.symbol,
                side=position.side,
                quantity=close_qty,
                entry_price=position.entry_price,
                exit_price=mark,
                realized_pnl=pnl,
                closed_at=now,
            ))

        logger.info(f"Closed {close_qty} of #{position.id} {position.symbol} @ {mark}, pnl {pnl} (user {user_id})")
        return FuturesOutcome(success=True, position=position, realized_pnl=pnl)

    # --------------------------------------------------------
    # TRANSFERS
    # --------------------------------------------------------

    async def transfer_margin(
        self,
        user_id: int,
        position_id: int,
        amount: Decimal,
        transfer_type: MarginTransferType,
    ) -> FuturesOutcome:
        """
        Add or remove isolated margin, recomputing the liquidation price.

        Removal may not take margin below the initial margin.
        """
        if amount is None or amount <= 0:
            return self._failed(validation_error("amount must be positive", "transfer_margin"))

        async with self._storage.user_lock(user_id):
            position = await self._owned_open(user_id, position_id, "transfer_margin")
            if isinstance(position, TradingError):
                return self._failed(position)
            if position.margin_mode != MarginMode.ISOLATED:
                return self._failed(validation_error(
                    "Margin transfer is only available for isolated positions", "transfer_margin", position.symbol,
                ))

            if transfer_type == MarginTransferType.ADD:
                balance = await self._storage.get_wallet(user_id, FUTURES_WALLET)
                if balance < amount:
                    return self._failed(insufficient_funds_error(
                        "Insufficient futures balance", "transfer_margin", position.symbol,
                    ))
                await self._storage.adjust_wallet(user_id, -amount, FUTURES_WALLET)
                position.isolated_margin += amount
            else:
                if position.isolated_margin - amount < position.initial_margin:
                    return self._failed(validation_error(
                        f"Cannot remove margin below initial margin {position.initial_margin}",
                        "transfer_margin", position.symbol,
                    ))
                position.isolated_margin -= amount
                await self._storage.adjust_wallet(user_id, amount, FUTURES_WALLET)

            position.liquidation_price = await self._liquidation_for(position)
            await self._storage.update_futures_position(position)

        logger.info(
            f"Margin {transfer_type.value} {amount} on #{position.id}: "
            f"margin {position.isolated_margin}, liq {position.liquidation_price}"
        )
        return FuturesOutcome(success=True, position=position)

    async def transfer_wallet(self, user_id: int, amount: Decimal, to_futures: bool = True) -> FuturesOutcome:
        """Move quote currency between the spot and futures wallets."""
        if amount is None or amount <= 0:
            return self._failed(validation_error("amount must be positive", "transfer_wallet"))

        source, target = (SPOT_WALLET, FUTURES_WALLET) if to_futures else (FUTURES_WALLET, SPOT_WALLET)
        async with self._storage.user_lock(user_id):
            balance = await self._storage.get_wallet(user_id, source)
            if balance < amount:
                return self._failed(insufficient_funds_error(f"Insufficient {source} balance", "transfer_wallet"))
            await self._storage.adjust_wallet(user_id, -amount, source)
            await self._storage.adjust_wallet(user_id, amount, target)

        logger.info(f"Transferred {amount} {source} -> {target} (user {user_id})")
        return FuturesOutcome(success=True)

    # --------------------------------------------------------
    # LIQUIDATION
    # --------------------------------------------------------

    def attach(self) -> None:
        """Sweep liquidations on every ticker table update."""
        if self._unsubscribe is None:
            self._unsubscribe = self._table.subscribe(self.on_tick)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def on_tick(self, ticker: Ticker) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"Tick for {ticker.symbol} outside an event loop, liquidations not checked")
            return
        task = loop.create_task(self._run_sweep(ticker.symbol, ticker.last_price))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run_sweep(self, symbol: str, price: Decimal) -> None:
        try:
            await self.check_liquidations(symbol, price)
        except Exception as e:
            logger.error(f"Liquidation sweep failed for {symbol} @ {price}: {e}", exc_info=True)

    async def check_liquidations(self, symbol: str, price: Decimal) -> List[FuturesPosition]:
        """
        Liquidate open positions on `symbol` whose liquidation price `price` crosses.

        Isolated margin is forfeited. Cross losses are taken from the
        futures wallet, floored at zero.

        Returns:
            Positions liquidated by this pass
        """
        symbol = symbol.upper()
        lock = self._symbol_locks.setdefault(symbol, asyncio.Lock())
        liquidated = []
        async with lock:
            for candidate in await self._storage.list_futures_positions(symbol=symbol):
                async with self._storage.user_lock(candidate.user_id):
                    position = await self._storage.get_futures_position(candidate.id)
                    if position is None or position.status != PositionStatus.OPEN:
                        continue
                    if position.margin_mode == MarginMode.CROSS:
                        position.liquidation_price = await self._liquidation_for(position)
                    if not is_liquidated(position, price):
                        continue
                    await self._liquidate(position, price)
                    liquidated.append(position)

        for position in liquidated:
            await deliver(
                self._notifier, position.user_id,
                f"Your {position.leverage}x {position.side.value} {position.symbol} position was "
                f"liquidated at {price}",
            )
        return liquidated

    async def _liquidate(self, position: FuturesPosition, price: Decimal) -> None:
        margin = position_margin(position)
        if position.margin_mode == MarginMode.ISOLATED:
            loss = -margin
        else:
            pnl = unrealized_pnl(position.side, position.entry_price, price, position.quantity)
            balance = await self._storage.get_wallet(position.user_id, FUTURES_WALLET)
            new_balance = max(balance + margin + pnl, ZERO)
            await self._storage.set_wallet(position.user_id, new_balance, FUTURES_WALLET)
            loss = new_balance - balance - margin

        now = self._clock()
        position.status = PositionStatus.LIQUIDATED
        position.realized_pnl += loss
        position.closed_at = now
        await self._storage.update_futures_position(position)
        await self._storage.add_futures_close(FuturesCloseRecord(
            position_id=position.id,
            user_id=position.user_id,
            symbol=position.symbol,
            side=position.side,
            quantity=position.quantity,
            entry_price=position.entry_price,
            exit_price=price,
            realized_pnl=loss,
            closed_at=now,
            liquidated=True,
        ))
        logger.warning(
            f"Liquidated #{position.id} {position.side.value} {position.quantity} {position.symbol} "
            f"@ {price} (liq {position.liquidation_price}, user {position.user_id})"
        )

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    async def position_metrics(
        self,
        user_id: int,
        position_id: int,
        mark_price: Optional[Decimal] = None,
    ) -> Optional[PositionMetrics]:
        """Mark-to-market metrics, None when the position or a price is unavailable."""
        position = await self._storage.get_futures_position(position_id)
        if position is None or position.user_id != user_id:
            return None
        mark = mark_price or self._table.get_price(position.symbol)
        if not mark:
            return None
        return PositionMetrics(
            position_id=position.id,
            mark_price=mark,
            unrealized_pnl=unrealized_pnl(position.side, position.entry_price, mark, position.quantity),
            roe=roe_percent(position, mark),
            margin=position_margin(position),
            liquidation_price=position.liquidation_price,
        )

    async def pnl_history(self, user_id: int, now: Optional[datetime] = None) -> PnlHistory:
        closes = await self._storage.list_futures_closes(user_id)
        return build_pnl_history(
            ((c.closed_at, c.realized_pnl) for c in closes),
            now or self._clock(),
            self._config.trading_day_start_hour,
            self._config.starting_balance,
        )

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    async def _owned_open(self, user_id: int, position_id: int, operation: str):
        position = await self._storage.get_futures_position(position_id)
        if position is None or position.user_id != user_id:
            return not_found_error(f"Position {position_id} not found", operation)
        if position.status != PositionStatus.OPEN:
            return already_terminal_error(f"Position {position_id} is {position.status.value}", operation)
        return position

    async def _liquidation_for(self, position: FuturesPosition) -> Decimal:
        if position.margin_mode == MarginMode.ISOLATED:
            margin = position.isolated_margin
        else:
            margin = position.initial_margin + await self._storage.get_wallet(position.user_id, FUTURES_WALLET)
        return liquidation_price(
            position.side, position.entry_price, position.quantity, margin, self._config.fee_buffer,
        )

    @staticmethod
    def _failed(error: TradingError) -> FuturesOutcome:
        logger.info(f"Futures operation rejected: {error}")
        return FuturesOutcome(success=False, error=error)
