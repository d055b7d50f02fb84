"""
Storage - ORM Models.

============================================================
PURPOSE
============================================================
SQLAlchemy ORM models for simulated trading persistence.

TABLES:
- sim_wallets: Spot and futures wallet balances per user
- sim_trades: Simulated orders (market, limit, stop)
- sim_portfolio: Spot holdings with average cost
- sim_futures_positions: Leveraged positions
- sim_futures_closes: Realized closes and liquidations
- sim_price_alerts: Price and indicator alerts

All money columns are Numeric(24, 8).

============================================================
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for ORM models."""
    pass


# ============================================================
# WALLETS
# ============================================================

class WalletModel(Base):
    __tablename__ = "sim_wallets"

    user_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    wallet: Mapped[str] = mapped_column(String(16), primary_key=True)
    balance: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False, default=Decimal("0"))


# ============================================================
# TRADES
# ============================================================

class TradeModel(Base):
    """Simulated order. `status` is the CAS column."""

    __tablename__ = "sim_trades"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    side: Mapped[str] = mapped_column(String(8), nullable=False)
    order_type: Mapped[str] = mapped_column(String(16), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(24, 8), default=Decimal("0"))
    status: Mapped[str] = mapped_column(String(16), nullable=False)

    limit_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))
    stop_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))
    trigger_direction: Mapped[Optional[str]] = mapped_column(String(8))
    stop_triggered: Mapped[bool] = mapped_column(Boolean, default=False)
    realized_pnl: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("ix_sim_trades_symbol_status", "symbol", "status"),
    )


# ============================================================
# SPOT HOLDINGS
# ============================================================

class PortfolioModel(Base):
    __tablename__ = "sim_portfolio"

    user_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    symbol: Mapped[str] = mapped_column(String(32), primary_key=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(24, 8), default=Decimal("0"))
    avg_buy_price: Mapped[Decimal] = mapped_column(Numeric(24, 8), default=Decimal("0"))


# ============================================================
# FUTURES
# ============================================================

class FuturesPositionModel(Base):
    __tablename__ = "sim_futures_positions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    side: Mapped[str] = mapped_column(String(8), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    entry_price: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    leverage: Mapped[int] = mapped_column(Integer, nullable=False)
    margin_mode: Mapped[str] = mapped_column(String(16), nullable=False)
    isolated_margin: Mapped[Decimal] = mapped_column(Numeric(24, 8), default=Decimal("0"))
    liquidation_price: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    realized_pnl: Mapped[Decimal] = mapped_column(Numeric(24, 8), default=Decimal("0"))
    opened_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("ix_sim_futures_symbol_status", "symbol", "status"),
    )


class FuturesCloseModel(Base):
    __tablename__ = "sim_futures_closes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    position_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    side: Mapped[str] = mapped_column(String(8), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    entry_price: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    exit_price: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    realized_pnl: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    liquidated: Mapped[bool] = mapped_column(Boolean, default=False)
    closed_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


# ============================================================
# ALERTS
# ============================================================

class PriceAlertModel(Base):
    __tablename__ = "sim_price_alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    direction: Mapped[str] = mapped_column(String(8), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(16), nullable=False, default="price")
    target_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))
    indicator: Mapped[Optional[str]] = mapped_column(String(32))
    indicator_condition: Mapped[Optional[str]] = mapped_column(String(64))
    chart_interval: Mapped[Optional[str]] = mapped_column(String(8))
    notify: Mapped[bool] = mapped_column(Boolean, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    triggered: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    triggered_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
