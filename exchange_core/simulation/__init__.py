"""
Exchange Core - Simulation Package.

============================================================
PURPOSE
============================================================
Simulated trading against live prices.

- OrderSimulationEngine: market / limit / stop spot orders
- PortfolioLedger: cost basis and PnL reports
- FuturesEngine: leveraged positions and liquidation
- AlertMonitor: price and indicator alerts

============================================================
"""

from .engine import OrderSimulationEngine, should_trigger, stop_direction
from .portfolio import (
    DailyPnl,
    PnlHistory,
    PortfolioLedger,
    TodayPnl,
    apply_buy,
    apply_sell,
    build_pnl_history,
    trading_day_key,
    trading_day_start,
)
from .futures import (
    FuturesEngine,
    PositionMetrics,
    liquidation_price,
    roe_percent,
    unrealized_pnl,
)
from .alerts import AlertMonitor, AlertOutcome, INDICATOR_CONDITIONS
from .indicators import BollingerBands, bollinger_bands, rsi, sma

__all__ = [
    "OrderSimulationEngine",
    "should_trigger",
    "stop_direction",
    "DailyPnl",
    "PnlHistory",
    "PortfolioLedger",
    "TodayPnl",
    "apply_buy",
    "apply_sell",
    "build_pnl_history",
    "trading_day_key",
    "trading_day_start",
    "FuturesEngine",
    "PositionMetrics",
    "liquidation_price",
    "roe_percent",
    "unrealized_pnl",
    "AlertMonitor",
    "AlertOutcome",
    "INDICATOR_CONDITIONS",
    "BollingerBands",
    "bollinger_bands",
    "rsi",
    "sma",
]
