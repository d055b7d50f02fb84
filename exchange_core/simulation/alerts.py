"""
Simulation - Price and Indicator Alerts.

============================================================
PURPOSE
============================================================
User alerts evaluated against live prices every few seconds.

ALERT KINDS:
- price      above: price >= target   below: price <= target
- indicator  on a chart interval's closes
    bb_upper        last close >= upper Bollinger band
    bb_lower        last close <= lower Bollinger band
    rsi_overbought  RSI(14) >= 70
    rsi_oversold    RSI(14) <= 30

Alerts are one-shot: once fired they are marked triggered and
inactive, the owner is notified (when requested) and the
optional trigger listener receives the event payload.

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..config import SimulationConfig
from ..errors import TradingError, TradingException, not_found_error, validation_error
from ..market_data.tickers import TickerTable
from ..notifications import NotificationDispatcher, deliver
from ..storage.base import TradingStorage
from ..types import AlertDirection, AlertType, PriceAlert
from .indicators import bollinger_bands, rsi


logger = logging.getLogger(__name__)


ClosesSource = Callable[[str, str], Awaitable[List[Decimal]]]
TriggerListener = Callable[[Dict[str, Any]], Awaitable[Any]]

RSI_OVERBOUGHT = Decimal("70")
RSI_OVERSOLD = Decimal("30")
DEFAULT_CHART_INTERVAL = "1h"

# condition -> (indicator name, direction)
INDICATOR_CONDITIONS: Dict[str, Tuple[str, AlertDirection]] = {
    "bb_upper": ("bollinger_bands", AlertDirection.ABOVE),
    "bb_lower": ("bollinger_bands", AlertDirection.BELOW),
    "rsi_overbought": ("rsi", AlertDirection.ABOVE),
    "rsi_oversold": ("rsi", AlertDirection.BELOW),
}


@dataclass
class AlertOutcome:
    """Outcome of an alert operation."""

    success: bool
    alert: Optional[PriceAlert] = None
    error: Optional[TradingError] = None

    @property
    def reason(self) -> Optional[str]:
        return self.error.message if self.error else None


def price_alert_fires(alert: PriceAlert, price: Decimal) -> bool:
    if alert.direction == AlertDirection.ABOVE:
        return price >= alert.target_price
    return price <= alert.target_price


def indicator_alert_fires(condition: str, closes: List[Decimal]) -> bool:
    """Evaluate an indicator condition on closes (oldest first)."""
    if not closes:
        return False
    if condition in ("bb_upper", "bb_lower"):
        bands = bollinger_bands(closes)
        if bands is None:
            return False
        if condition == "bb_upper":
            return closes[-1] >= bands.upper
        return closes[-1] <= bands.lower

    value = rsi(closes)
    if value is None:
        return False
    if condition == "rsi_overbought":
        return value >= RSI_OVERBOUGHT
    return value <= RSI_OVERSOLD


class AlertMonitor:
    """Creates, deletes and periodically evaluates user alerts."""

    def __init__(
        self,
        storage: TradingStorage,
        table: Optional[TickerTable] = None,
        closes_source: Optional[ClosesSource] = None,
        notifier: Optional[NotificationDispatcher] = None,
        config: Optional[SimulationConfig] = None,
        on_trigger: Optional[TriggerListener] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Initialize monitor.

        Args:
            storage: Alert persistence
            table: Live ticker table
            closes_source: async (symbol, interval) -> closes, for indicator alerts
            notifier: Notification dispatcher
            config: Simulation configuration (check interval)
            on_trigger: async listener receiving each fired alert's payload
            clock: UTC clock
        """
        self._storage = storage
        self._table = table if table is not None else TickerTable()
        self._closes_source = closes_source
        self._notifier = notifier
        self._config = config or SimulationConfig()
        self._on_trigger = on_trigger
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    # --------------------------------------------------------
    # CRUD
    # --------------------------------------------------------

    async def create_alert(
        self,
        user_id: int,
        symbol: str,
        direction: Optional[AlertDirection] = None,
        target_price: Optional[Decimal] = None,
        indicator_condition: Optional[str] = None,
        chart_interval: Optional[str] = None,
        notify: bool = True,
    ) -> AlertOutcome:
        """
        Create a price alert (direction + target_price) or an
        indicator alert (indicator_condition + chart_interval).
        """
        symbol = (symbol or "").strip().upper()
        if not symbol:
            return AlertOutcome(False, error=validation_error("Symbol is required", "create_alert"))

        if indicator_condition is not None:
            if indicator_condition not in INDICATOR_CONDITIONS:
                return AlertOutcome(False, error=validation_error(
                    f"Unknown indicator condition: {indicator_condition}", "create_alert", symbol,
                ))
            if self._closes_source is None:
                return AlertOutcome(False, error=validation_error(
                    "Indicator alerts are not available", "create_alert", symbol,
                ))
            indicator, implied = INDICATOR_CONDITIONS[indicator_condition]
            alert = PriceAlert(
                id=0,
                user_id=user_id,
                symbol=symbol,
                direction=implied,
                alert_type=AlertType.INDICATOR,
                indicator=indicator,
                indicator_condition=indicator_condition,
                chart_interval=chart_interval or DEFAULT_CHART_INTERVAL,
                notify=notify,
                created_at=self._clock(),
            )
        else:
            if direction is None:
                return AlertOutcome(False, error=validation_error("direction is required", "create_alert", symbol))
            if target_price is None or target_price <= 0:
                return AlertOutcome(False, error=validation_error(
                    "target_price must be positive", "create_alert", symbol,
                ))
            alert = PriceAlert(
                id=0,
                user_id=user_id,
                symbol=symbol,
                direction=direction,
                target_price=target_price,
                notify=notify,
                created_at=self._clock(),
            )

        created = await self._storage.create_alert(alert)
        logger.info(f"Alert #{created.id} created for user {user_id} on {symbol}")
        return AlertOutcome(True, alert=created)

    async def delete_alert(self, user_id: int, alert_id: int) -> AlertOutcome:
        alert = await self._storage.get_alert(alert_id)
        if alert is None or alert.user_id != user_id:
            return AlertOutcome(False, error=not_found_error(f"Alert {alert_id} not found", "delete_alert"))
        await self._storage.delete_alert(alert_id)
        return AlertOutcome(True, alert=alert)

    # --------------------------------------------------------
    # EVALUATION
    # --------------------------------------------------------

    async def check_once(self) -> List[PriceAlert]:
        """
        Evaluate every active alert once.

        Returns:
            Alerts fired by this pass
        """
        fired = []
        closes_cache: Dict[Tuple[str, str], Optional[List[Decimal]]] = {}

        for alert in await self._storage.list_alerts(active_only=True):
            price = self._table.get_price(alert.symbol)

            if alert.alert_type == AlertType.PRICE:
                if price is None or not price_alert_fires(alert, price):
                    continue
            else:
                key = (alert.symbol, alert.chart_interval or DEFAULT_CHART_INTERVAL)
                if key not in closes_cache:
                    closes_cache[key] = await self._load_closes(*key)
                closes = closes_cache[key]
                if not closes or not indicator_alert_fires(alert.indicator_condition, closes):
                    continue
                price = price or closes[-1]

            await self._fire(alert, price)
            fired.append(alert)
        return fired

    async def _load_closes(self, symbol: str, interval: str) -> Optional[List[Decimal]]:
        try:
            return await self._closes_source(symbol, interval)
        except TradingException as e:
            logger.warning(f"Indicator data unavailable for {symbol} {interval}: {e}")
            return None

    async def _fire(self, alert: PriceAlert, price: Decimal) -> None:
        alert.triggered = True
        alert.is_active = False
        alert.triggered_at = self._clock()
        await self._storage.update_alert(alert)
        logger.info(f"Alert #{alert.id} triggered: {alert.symbol} {alert.direction.value} at {price}")

        if alert.notify:
            if alert.alert_type == AlertType.PRICE:
                message = (
                    f"Price alert: {alert.symbol} is now {alert.direction.value} your target "
                    f"{alert.target_price} (current {price})"
                )
            else:
                message = (
                    f"Indicator alert: {alert.symbol} hit {alert.indicator_condition} "
                    f"on the {alert.chart_interval} chart (current {price})"
                )
            await deliver(self._notifier, alert.user_id, message)

        if self._on_trigger is not None:
            await self._on_trigger({
                "id": alert.id,
                "userId": alert.user_id,
                "symbol": alert.symbol,
                "targetPrice": str(alert.target_price) if alert.target_price is not None else None,
                "direction": alert.direction.value,
                "indicatorCondition": alert.indicator_condition,
                "currentPrice": str(price),
            })

    # --------------------------------------------------------
    # LOOP
    # --------------------------------------------------------

    async def run(self) -> None:
        """Check alerts every alert_check_interval until cancelled."""
        while True:
            try:
                await self.check_once()
            except Exception as e:
                logger.error(f"Alert check failed: {e}", exc_info=True)
            await asyncio.sleep(self._config.alert_check_interval_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="alert-monitor")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
