"""
Storage - In-Memory Implementation.

Process-local TradingStorage used by default and in tests.
Rows are stored as dataclasses and copied on the way in and
out, so callers never share mutable state with the store.
"""

import itertools
from dataclasses import replace
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from ..types import (
    ZERO,
    FuturesCloseRecord,
    FuturesPosition,
    PortfolioPosition,
    PositionStatus,
    PriceAlert,
    Trade,
    TradeStatus,
)
from .base import SPOT_WALLET, TradingStorage, check_fill


class InMemoryStorage(TradingStorage):
    """Dictionary-backed storage."""

    def __init__(self):
        super().__init__()
        self._wallets: Dict[Tuple[int, str], Decimal] = {}
        self._trades: Dict[int, Trade] = {}
        self._positions: Dict[Tuple[int, str], PortfolioPosition] = {}
        self._futures: Dict[int, FuturesPosition] = {}
        self._closes: List[FuturesCloseRecord] = []
        self._alerts: Dict[int, PriceAlert] = {}

        self._trade_ids = itertools.count(1)
        self._futures_ids = itertools.count(1)
        self._alert_ids = itertools.count(1)

    # --------------------------------------------------------
    # WALLETS
    # --------------------------------------------------------

    async def get_wallet(self, user_id: int, wallet: str = SPOT_WALLET) -> Decimal:
        return self._wallets.get((user_id, wallet), ZERO)

    async def set_wallet(self, user_id: int, balance: Decimal, wallet: str = SPOT_WALLET) -> None:
        self._wallets[(user_id, wallet)] = balance

    # --------------------------------------------------------
    # TRADES
    # --------------------------------------------------------

    async def create_trade(self, trade: Trade) -> Trade:
        stored = replace(trade, id=next(self._trade_ids))
        self._trades[stored.id] = stored
        return replace(stored)

    async def get_trade(self, trade_id: int) -> Optional[Trade]:
        trade = self._trades.get(trade_id)
        return replace(trade) if trade else None

    async def list_trades(
        self,
        user_id: int,
        symbol: Optional[str] = None,
        status: Optional[TradeStatus] = None,
    ) -> List[Trade]:
        return [
            replace(t) for t in self._trades.values()
            if t.user_id == user_id
            and (symbol is None or t.symbol == symbol)
            and (status is None or t.status == status)
        ]

    async def list_pending(self, symbol: Optional[str] = None) -> List[Trade]:
        return [
            replace(t) for t in self._trades.values()
            if t.status == TradeStatus.PENDING and (symbol is None or t.symbol == symbol)
        ]

    async def transition_trade(
        self,
        trade_id: int,
        expected: TradeStatus,
        new: TradeStatus,
        **changes: Any,
    ) -> Optional[Trade]:
        trade = self._trades.get(trade_id)
        if trade is None or trade.status != expected:
            return None
        updated = replace(trade, status=new, **changes)
        self._trades[trade_id] = updated
        return replace(updated)

    # --------------------------------------------------------
    # FILLS
    # --------------------------------------------------------

    async def settle_trade(
        self,
        trade_id: int,
        expected: TradeStatus,
        new: TradeStatus,
        wallet_delta: Decimal,
        position: PortfolioPosition,
        wallet: str = SPOT_WALLET,
        **changes: Any,
    ) -> Optional[Trade]:
        trade = self._trades.get(trade_id)
        if trade is None or trade.status != expected:
            return None
        updated = replace(trade, status=new, **changes)
        self._write_fill(updated, wallet_delta, position, wallet)
        return replace(updated)

    async def insert_settled_trade(
        self,
        trade: Trade,
        wallet_delta: Decimal,
        position: PortfolioPosition,
        wallet: str = SPOT_WALLET,
    ) -> Trade:
        stored = replace(trade, id=next(self._trade_ids))
        self._write_fill(stored, wallet_delta, position, wallet)
        return replace(stored)

    def _write_fill(self, trade: Trade, wallet_delta: Decimal, position: PortfolioPosition, wallet: str) -> None:
        # Every check runs before the first write
        check_fill(trade, position)
        key = (trade.user_id, wallet)
        balance = self._wallets.get(key, ZERO) + wallet_delta
        if balance < 0:
            raise ValueError(f"{wallet} wallet of user {trade.user_id} cannot absorb {wallet_delta}")
        stored_position = replace(position)

        self._trades[trade.id] = trade
        self._wallets[key] = balance
        self._positions[(position.user_id, position.symbol)] = stored_position

    # --------------------------------------------------------
    # SPOT HOLDINGS
    # --------------------------------------------------------

    async def get_position(self, user_id: int, symbol: str) -> Optional[PortfolioPosition]:
        position = self._positions.get((user_id, symbol))
        return replace(position) if position else None

    async def save_position(self, position: PortfolioPosition) -> None:
        self._positions[(position.user_id, position.symbol)] = replace(position)

    async def list_positions(self, user_id: int) -> List[PortfolioPosition]:
        return [replace(p) for (uid, _), p in self._positions.items() if uid == user_id]

    # --------------------------------------------------------
    # FUTURES
    # --------------------------------------------------------

    async def create_futures_position(self, position: FuturesPosition) -> FuturesPosition:
        stored = replace(position, id=next(self._futures_ids))
        self._futures[stored.id] = stored
        return replace(stored)

    async def get_futures_position(self, position_id: int) -> Optional[FuturesPosition]:
        position = self._futures.get(position_id)
        return replace(position) if position else None

    async def list_futures_positions(
        self,
        user_id: Optional[int] = None,
        symbol: Optional[str] = None,
        status: Optional[PositionStatus] = PositionStatus.OPEN,
    ) -> List[FuturesPosition]:
        return [
            replace(p) for p in self._futures.values()
            if (user_id is None or p.user_id == user_id)
            and (symbol is None or p.symbol == symbol)
            and (status is None or p.status == status)
        ]

    async def update_futures_position(self, position: FuturesPosition) -> None:
        if position.id not in self._futures:
            raise KeyError(f"Futures position {position.id} does not exist")
        self._futures[position.id] = replace(position)

    async def add_futures_close(self, record: FuturesCloseRecord) -> None:
        self._closes.append(replace(record))

    async def list_futures_closes(self, user_id: int) -> List[FuturesCloseRecord]:
        return [replace(r) for r in self._closes if r.user_id == user_id]

    # --------------------------------------------------------
    # ALERTS
    # --------------------------------------------------------

    async def create_alert(self, alert: PriceAlert) -> PriceAlert:
        stored = replace(alert, id=next(self._alert_ids))
        self._alerts[stored.id] = stored
        return replace(stored)

    async def get_alert(self, alert_id: int) -> Optional[PriceAlert]:
        alert = self._alerts.get(alert_id)
        return replace(alert) if alert else None

    async def list_alerts(
        self,
        user_id: Optional[int] = None,
        active_only: bool = False,
    ) -> List[PriceAlert]:
        return [
            replace(a) for a in self._alerts.values()
            if (user_id is None or a.user_id == user_id)
            and (not active_only or (a.is_active and not a.triggered))
        ]

    async def update_alert(self, alert: PriceAlert) -> None:
        if alert.id in self._alerts:
            self._alerts[alert.id] = replace(alert)

    async def delete_alert(self, alert_id: int) -> bool:
        return self._alerts.pop(alert_id, None) is not None
