"""
Storage - Collaborator Interface.

============================================================
PURPOSE
============================================================
Durable storage consumed by the simulation engines:
users' wallets, simulated trades, spot holdings, futures
positions and their close records, price alerts.

REQUIRED GUARANTEES:
- Read/write single row by id
- Read rows filtered by user
- Atomic compare-and-set status transition for trades
  (fill vs. cancel races are decided here)
- A fill (status change, wallet delta, holding row) is written
  as one unit: all of it or none of it

Mutations of one user's balances, holdings and positions are
serialized by user_lock(user_id). The trade CAS is the final
arbiter when two writers reach the same order.

============================================================
"""

import asyncio
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ..types import (
    FuturesCloseRecord,
    FuturesPosition,
    PortfolioPosition,
    PositionStatus,
    PriceAlert,
    Trade,
    TradeStatus,
)


SPOT_WALLET = "spot"
FUTURES_WALLET = "futures"


def check_fill(trade: Trade, position: PortfolioPosition) -> None:
    """Raise ValueError unless `position` is the holding `trade` books into."""
    if position.user_id != trade.user_id or position.symbol != trade.symbol:
        raise ValueError(
            f"Holding {position.user_id}/{position.symbol} does not match "
            f"trade #{trade.id} ({trade.user_id}/{trade.symbol})"
        )
    if position.quantity < 0:
        raise ValueError(f"Holding {position.symbol} cannot go negative")


class TradingStorage(ABC):
    """Abstract storage for simulated trading state."""

    def __init__(self):
        self._user_locks: Dict[int, asyncio.Lock] = {}

    def user_lock(self, user_id: int) -> asyncio.Lock:
        """Per-user lock wrapping every balance/position/order mutation."""
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()
        return lock

    # --------------------------------------------------------
    # WALLETS
    # --------------------------------------------------------

    @abstractmethod
    async def get_wallet(self, user_id: int, wallet: str = SPOT_WALLET) -> Decimal:
        """Wallet balance; zero for unknown users."""
        pass

    @abstractmethod
    async def set_wallet(self, user_id: int, balance: Decimal, wallet: str = SPOT_WALLET) -> None:
        pass

    async def adjust_wallet(self, user_id: int, delta: Decimal, wallet: str = SPOT_WALLET) -> Decimal:
        """
        Add delta to a wallet. Caller holds user_lock(user_id); backends
        shared between processes override this with an atomic update.

        Returns:
            New balance
        """
        balance = await self.get_wallet(user_id, wallet) + delta
        await self.set_wallet(user_id, balance, wallet)
        return balance

    # --------------------------------------------------------
    # TRADES
    # --------------------------------------------------------

    @abstractmethod
    async def create_trade(self, trade: Trade) -> Trade:
        """Insert a trade. Returns it with its id assigned."""
        pass

    @abstractmethod
    async def get_trade(self, trade_id: int) -> Optional[Trade]:
        pass

    @abstractmethod
    async def list_trades(
        self,
        user_id: int,
        symbol: Optional[str] = None,
        status: Optional[TradeStatus] = None,
    ) -> List[Trade]:
        """User's trades, oldest first."""
        pass

    @abstractmethod
    async def list_pending(self, symbol: Optional[str] = None) -> List[Trade]:
        """All users' pending trades, optionally for one symbol."""
        pass

    @abstractmethod
    async def transition_trade(
        self,
        trade_id: int,
        expected: TradeStatus,
        new: TradeStatus,
        **changes: Any,
    ) -> Optional[Trade]:
        """
        Atomically move a trade from `expected` to `new` status.

        Args:
            trade_id: Trade to transition
            expected: Status the trade must currently have
            new: Target status
            **changes: Other Trade fields written in the same step

        Returns:
            Updated trade, or None if the trade was not in `expected`
        """
        pass

    # --------------------------------------------------------
    # FILLS
    # --------------------------------------------------------

    @abstractmethod
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
        """
        Transition a trade and book its cash and holding change in one unit.

        The status compare-and-set, the wallet delta and the holding row
        are either all written or none of them is.

        Args:
            trade_id: Trade to transition
            expected: Status the trade must currently have
            new: Target status
            wallet_delta: Amount added to the wallet (negative for buys)
            position: Holding row after the fill
            wallet: Wallet the delta applies to
            **changes: Other Trade fields written in the same step

        Returns:
            Updated trade, or None if the trade was not in `expected`

        Raises:
            ValueError: The holding does not belong to the trade, or the
                wallet would go negative. Nothing is written.
        """
        pass

    @abstractmethod
    async def insert_settled_trade(
        self,
        trade: Trade,
        wallet_delta: Decimal,
        position: PortfolioPosition,
        wallet: str = SPOT_WALLET,
    ) -> Trade:
        """Insert an already filled trade with its cash and holding change in one unit."""
        pass

    # --------------------------------------------------------
    # SPOT HOLDINGS
    # --------------------------------------------------------

    @abstractmethod
    async def get_position(self, user_id: int, symbol: str) -> Optional[PortfolioPosition]:
        pass

    @abstractmethod
    async def save_position(self, position: PortfolioPosition) -> None:
        pass

    @abstractmethod
    async def list_positions(self, user_id: int) -> List[PortfolioPosition]:
        pass

    # --------------------------------------------------------
    # FUTURES
    # --------------------------------------------------------

    @abstractmethod
    async def create_futures_position(self, position: FuturesPosition) -> FuturesPosition:
        pass

    @abstractmethod
    async def get_futures_position(self, position_id: int) -> Optional[FuturesPosition]:
        pass

    @abstractmethod
    async def list_futures_positions(
        self,
        user_id: Optional[int] = None,
        symbol: Optional[str] = None,
        status: Optional[PositionStatus] = PositionStatus.OPEN,
    ) -> List[FuturesPosition]:
        pass

    @abstractmethod
    async def update_futures_position(self, position: FuturesPosition) -> None:
        pass

    @abstractmethod
    async def add_futures_close(self, record: FuturesCloseRecord) -> None:
        pass

    @abstractmethod
    async def list_futures_closes(self, user_id: int) -> List[FuturesCloseRecord]:
        pass

    # --------------------------------------------------------
    # ALERTS
    # --------------------------------------------------------

    @abstractmethod
    async def create_alert(self, alert: PriceAlert) -> PriceAlert:
        pass

    @abstractmethod
    async def get_alert(self, alert_id: int) -> Optional[PriceAlert]:
        pass

    @abstractmethod
    async def list_alerts(
        self,
        user_id: Optional[int] = None,
        active_only: bool = False,
    ) -> List[PriceAlert]:
        pass

    @abstractmethod
    async def update_alert(self, alert: PriceAlert) -> None:
        pass

    @abstractmethod
    async def delete_alert(self, alert_id: int) -> bool:
        pass

    async def close(self) -> None:
        """Release resources. No-op by default."""
        pass
