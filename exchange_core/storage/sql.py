"""
Storage - SQLAlchemy Implementation.

============================================================
PURPOSE
============================================================
TradingStorage backed by SQLAlchemy 2.0 async ORM.

Trade status transitions are a single
    UPDATE sim_trades SET status = :new, ...
    WHERE id = :id AND status = :expected
and succeed only when exactly one row matched, so a fill and
a cancel racing on one order cannot both win, even across
processes sharing the database.

Fills run the trade CAS, the wallet update
    UPDATE sim_wallets SET balance = balance + :delta
    WHERE ... AND balance + :delta >= 0
and the holding row in one transaction.

============================================================
"""

import logging
from dataclasses import fields
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Type

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..types import (
    ZERO,
    AlertDirection,
    AlertType,
    FuturesCloseRecord,
    FuturesPosition,
    MarginMode,
    OrderSide,
    OrderType,
    PortfolioPosition,
    PositionSide,
    PositionStatus,
    PriceAlert,
    Trade,
    TradeStatus,
    TriggerDirection,
)
from .base import SPOT_WALLET, TradingStorage, check_fill
from .models import (
    Base,
    FuturesCloseModel,
    FuturesPositionModel,
    PortfolioModel,
    PriceAlertModel,
    TradeModel,
    WalletModel,
)


logger = logging.getLogger(__name__)


TRADE_ENUMS = {
    "side": OrderSide,
    "order_type": OrderType,
    "status": TradeStatus,
    "trigger_direction": TriggerDirection,
}
FUTURES_ENUMS = {"side": PositionSide, "margin_mode": MarginMode, "status": PositionStatus}
CLOSE_ENUMS = {"side": PositionSide}
ALERT_ENUMS = {"direction": AlertDirection, "alert_type": AlertType}


def _db_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _columns(entity: Any, exclude: tuple = ()) -> Dict[str, Any]:
    return {f.name: _db_value(getattr(entity, f.name)) for f in fields(entity) if f.name not in exclude}


def _entity(cls: Type, model: Any, enums: Dict[str, Type[Enum]]) -> Any:
    kwargs = {f.name: getattr(model, f.name) for f in fields(cls)}
    for name, enum_cls in enums.items():
        if kwargs.get(name) is not None:
            kwargs[name] = enum_cls(kwargs[name])
    return cls(**kwargs)


class SqlAlchemyStorage(TradingStorage):
    """Relational storage via an async SQLAlchemy engine."""

    def __init__(self, database_url: Optional[str] = None, engine: Optional[AsyncEngine] = None):
        """
        Initialize storage.

        Args:
            database_url: Async SQLAlchemy URL (e.g. postgresql+asyncpg://...)
            engine: Pre-built engine; takes precedence over database_url
        """
        super().__init__()
        if engine is None:
            if not database_url:
                raise ValueError("database_url or engine is required")
            engine = create_async_engine(database_url)
        self._engine = engine
        self._sessions = async_sessionmaker(engine, expire_on_commit=False)

    async def create_tables(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Simulation tables ready")

    async def close(self) -> None:
        await self._engine.dispose()

    # --------------------------------------------------------
    # WALLETS
    # --------------------------------------------------------

    async def get_wallet(self, user_id: int, wallet: str = SPOT_WALLET) -> Decimal:
        async with self._sessions() as session:
            row = await session.get(WalletModel, (user_id, wallet))
            return row.balance if row else ZERO

    async def set_wallet(self, user_id: int, balance: Decimal, wallet: str = SPOT_WALLET) -> None:
        async with self._sessions() as session:
            row = await session.get(WalletModel, (user_id, wallet))
            if row is None:
                session.add(WalletModel(user_id=user_id, wallet=wallet, balance=balance))
            else:
                row.balance = balance
            await session.commit()

    async def adjust_wallet(self, user_id: int, delta: Decimal, wallet: str = SPOT_WALLET) -> Decimal:
        async with self._sessions() as session:
            async with session.begin():
                await self._add_to_wallet(session, user_id, delta, wallet, allow_negative=True)
        return await self.get_wallet(user_id, wallet)

    @staticmethod
    async def _add_to_wallet(
        session: AsyncSession,
        user_id: int,
        delta: Decimal,
        wallet: str,
        allow_negative: bool = False,
    ) -> None:
        """Atomic balance += delta inside the caller's transaction."""
        query = update(WalletModel).where(WalletModel.user_id == user_id, WalletModel.wallet == wallet)
        if not allow_negative:
            query = query.where(WalletModel.balance + delta >= 0)
        result = await session.execute(
            query.values(balance=WalletModel.balance + delta)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return

        existing = await session.get(WalletModel, (user_id, wallet))
        if existing is not None or (delta < 0 and not allow_negative):
            raise ValueError(f"{wallet} wallet of user {user_id} cannot absorb {delta}")
        session.add(WalletModel(user_id=user_id, wallet=wallet, balance=delta))

    # --------------------------------------------------------
    # TRADES
    # --------------------------------------------------------

    async def create_trade(self, trade: Trade) -> Trade:
        async with self._sessions() as session:
            model = TradeModel(**_columns(trade, exclude=("id",)))
            session.add(model)
            await session.commit()
            return _entity(Trade, model, TRADE_ENUMS)

    async def get_trade(self, trade_id: int) -> Optional[Trade]:
        async with self._sessions() as session:
            model = await session.get(TradeModel, trade_id)
            return _entity(Trade, model, TRADE_ENUMS) if model else None

    async def list_trades(
        self,
        user_id: int,
        symbol: Optional[str] = None,
        status: Optional[TradeStatus] = None,
    ) -> List[Trade]:
        query = select(TradeModel).where(TradeModel.user_id == user_id)
        if symbol is not None:
            query = query.where(TradeModel.symbol == symbol)
        if status is not None:
            query = query.where(TradeModel.status == status.value)
        async with self._sessions() as session:
            result = await session.execute(query.order_by(TradeModel.id))
            return [_entity(Trade, m, TRADE_ENUMS) for m in result.scalars()]

    async def list_pending(self, symbol: Optional[str] = None) -> List[Trade]:
        query = select(TradeModel).where(TradeModel.status == TradeStatus.PENDING.value)
        if symbol is not None:
            query = query.where(TradeModel.symbol == symbol)
        async with self._sessions() as session:
            result = await session.execute(query.order_by(TradeModel.id))
            return [_entity(Trade, m, TRADE_ENUMS) for m in result.scalars()]

    async def transition_trade(
        self,
        trade_id: int,
        expected: TradeStatus,
        new: TradeStatus,
        **changes: Any,
    ) -> Optional[Trade]:
        values = {name: _db_value(value) for name, value in changes.items()}
        values["status"] = new.value

        async with self._sessions() as session:
            result = await session.execute(
                update(TradeModel)
                .where(TradeModel.id == trade_id, TradeModel.status == expected.value)
                .values(**values)
            )
            await session.commit()
            if result.rowcount != 1:
                return None
        return await self.get_trade(trade_id)

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
        values = {name: _db_value(value) for name, value in changes.items()}
        values["status"] = new.value

        async with self._sessions() as session:
            async with session.begin():
                result = await session.execute(
                    update(TradeModel)
                    .where(TradeModel.id == trade_id, TradeModel.status == expected.value)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return None
                model = await session.get(TradeModel, trade_id)
                trade = _entity(Trade, model, TRADE_ENUMS)
                await self._book_fill(session, trade, wallet_delta, position, wallet)
        return trade

    async def insert_settled_trade(
        self,
        trade: Trade,
        wallet_delta: Decimal,
        position: PortfolioPosition,
        wallet: str = SPOT_WALLET,
    ) -> Trade:
        async with self._sessions() as session:
            async with session.begin():
                model = TradeModel(**_columns(trade, exclude=("id",)))
                session.add(model)
                await session.flush()
                stored = _entity(Trade, model, TRADE_ENUMS)
                await self._book_fill(session, stored, wallet_delta, position, wallet)
        return stored

    async def _book_fill(
        self,
        session: AsyncSession,
        trade: Trade,
        wallet_delta: Decimal,
        position: PortfolioPosition,
        wallet: str,
    ) -> None:
        """Wallet and holding writes of a fill; raising rolls back the whole transaction."""
        await self._add_to_wallet(session, trade.user_id, wallet_delta, wallet)
        check_fill(trade, position)
        await session.merge(PortfolioModel(**_columns(position)))

    # --------------------------------------------------------
    # SPOT HOLDINGS
    # --------------------------------------------------------

    async def get_position(self, user_id: int, symbol: str) -> Optional[PortfolioPosition]:
        async with self._sessions() as session:
            model = await session.get(PortfolioModel, (user_id, symbol))
            return _entity(PortfolioPosition, model, {}) if model else None

    async def save_position(self, position: PortfolioPosition) -> None:
        async with self._sessions() as session:
            await session.merge(PortfolioModel(**_columns(position)))
            await session.commit()

    async def list_positions(self, user_id: int) -> List[PortfolioPosition]:
        async with self._sessions() as session:
            result = await session.execute(select(PortfolioModel).where(PortfolioModel.user_id == user_id))
            return [_entity(PortfolioPosition, m, {}) for m in result.scalars()]

    # --------------------------------------------------------
    # FUTURES
    # --------------------------------------------------------

    async def create_futures_position(self, position: FuturesPosition) -> FuturesPosition:
        async with self._sessions() as session:
            model = FuturesPositionModel(**_columns(position, exclude=("id",)))
            session.add(model)
            await session.commit()
            return _entity(FuturesPosition, model, FUTURES_ENUMS)

    async def get_futures_position(self, position_id: int) -> Optional[FuturesPosition]:
        async with self._sessions() as session:
            model = await session.get(FuturesPositionModel, position_id)
            return _entity(FuturesPosition, model, FUTURES_ENUMS) if model else None

    async def list_futures_positions(
        self,
        user_id: Optional[int] = None,
        symbol: Optional[str] = None,
        status: Optional[PositionStatus] = PositionStatus.OPEN,
    ) -> List[FuturesPosition]:
        query = select(FuturesPositionModel)
        if user_id is not None:
            query = query.where(FuturesPositionModel.user_id == user_id)
        if symbol is not None:
            query = query.where(FuturesPositionModel.symbol == symbol)
        if status is not None:
            query = query.where(FuturesPositionModel.status == status.value)
        async with self._sessions() as session:
            result = await session.execute(query.order_by(FuturesPositionModel.id))
            return [_entity(FuturesPosition, m, FUTURES_ENUMS) for m in result.scalars()]

    async def update_futures_position(self, position: FuturesPosition) -> None:
        async with self._sessions() as session:
            result = await session.execute(
                update(FuturesPositionModel)
                .where(FuturesPositionModel.id == position.id)
                .values(**_columns(position, exclude=("id",)))
            )
            await session.commit()
            if result.rowcount != 1:
                raise KeyError(f"Futures position {position.id} does not exist")

    async def add_futures_close(self, record: FuturesCloseRecord) -> None:
        async with self._sessions() as session:
            session.add(FuturesCloseModel(**_columns(record)))
            await session.commit()

    async def list_futures_closes(self, user_id: int) -> List[FuturesCloseRecord]:
        async with self._sessions() as session:
            result = await session.execute(
                select(FuturesCloseModel)
                .where(FuturesCloseModel.user_id == user_id)
                .order_by(FuturesCloseModel.id)
            )
            return [_entity(FuturesCloseRecord, m, CLOSE_ENUMS) for m in result.scalars()]

    # --------------------------------------------------------
    # ALERTS
    # --------------------------------------------------------

    async def create_alert(self, alert: PriceAlert) -> PriceAlert:
        async with self._sessions() as session:
            model = PriceAlertModel(**_columns(alert, exclude=("id",)))
            session.add(model)
            await session.commit()
            return _entity(PriceAlert, model, ALERT_ENUMS)

    async def get_alert(self, alert_id: int) -> Optional[PriceAlert]:
        async with self._sessions() as session:
            model = await session.get(PriceAlertModel, alert_id)
            return _entity(PriceAlert, model, ALERT_ENUMS) if model else None

    async def list_alerts(
        self,
        user_id: Optional[int] = None,
        active_only: bool = False,
    ) -> List[PriceAlert]:
        query = select(PriceAlertModel)
        if user_id is not None:
            query = query.where(PriceAlertModel.user_id == user_id)
        if active_only:
            query = query.where(PriceAlertModel.is_active.is_(True), PriceAlertModel.triggered.is_(False))
        async with self._sessions() as session:
            result = await session.execute(query.order_by(PriceAlertModel.id))
            return [_entity(PriceAlert, m, ALERT_ENUMS) for m in result.scalars()]

    async def update_alert(self, alert: PriceAlert) -> None:
        async with self._sessions() as session:
            await session.execute(
                update(PriceAlertModel)
                .where(PriceAlertModel.id == alert.id)
                .values(**_columns(alert, exclude=("id",)))
            )
            await session.commit()

    async def delete_alert(self, alert_id: int) -> bool:
        async with self._sessions() as session:
            result = await session.execute(delete(PriceAlertModel).where(PriceAlertModel.id == alert_id))
            await session.commit()
            return result.rowcount == 1
