"""
Exchange Core - Trading Core Facade.

============================================================
PURPOSE
============================================================
Single entry point used by the (external) API layer.

Wires together:
- Ticker table fed by the market data relay
- Simulated spot orders, futures and alerts
- Live exchange adapters for credential checks, balances
  and mirrored orders

Every mutating operation returns an outcome object carrying
either the result or a TradingError with a reason string.

============================================================
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union

from .adapters.base import ExchangeAdapter
from .adapters.factory import AdapterFactory
from .config import CoreConfig
from .errors import TradingError, validation_error
from .market_data.price_cache import PriceCache
from .market_data.relay import MarketDataRelay
from .market_data.rest import KrakenMarketData
from .market_data.tickers import TickerTable
from .notifications import LoggingNotifier, NotificationDispatcher
from .simulation.alerts import AlertMonitor, AlertOutcome, TriggerListener
from .simulation.engine import OrderSimulationEngine
from .simulation.futures import FuturesEngine, PositionMetrics
from .simulation.portfolio import PnlHistory, TodayPnl
from .storage.base import FUTURES_WALLET, SPOT_WALLET, TradingStorage
from .storage.memory import InMemoryStorage
from .storage.sql import SqlAlchemyStorage
from .types import (
    AlertDirection,
    BalancesResult,
    CredentialCheck,
    Credentials,
    ExchangeName,
    FuturesOutcome,
    MarginMode,
    MarginTransferType,
    OrderOutcome,
    OrderRequest,
    OrderResult,
    PositionSide,
    Ticker,
)


logger = logging.getLogger(__name__)


class TradingCore:
    """Facade over market data, simulation engines and exchange adapters."""

    def __init__(
        self,
        config: Optional[CoreConfig] = None,
        storage: Optional[TradingStorage] = None,
        notifier: Optional[NotificationDispatcher] = None,
        table: Optional[TickerTable] = None,
        adapters: Optional[AdapterFactory] = None,
        relay: Optional[MarketDataRelay] = None,
        market_data: Optional[KrakenMarketData] = None,
        on_alert: Optional[TriggerListener] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Initialize core. Collaborators not given are built from config.

        Args:
            config: Core configuration (CoreConfig.from_env() in production)
            storage: Persistence; SQL when config.database_url is set, else memory
            notifier: Notification dispatcher
            table: Process-wide ticker table
            adapters: Live exchange adapter factory
            relay: Market data relay client
            market_data: Cached public REST client (indicator alerts)
            on_alert: async listener for fired alerts
            clock: UTC clock
        """
        self.config = config or CoreConfig()
        self.table = table if table is not None else TickerTable()

        if storage is None:
            if self.config.database_url:
                storage = SqlAlchemyStorage(self.config.database_url)
            else:
                storage = InMemoryStorage()
        self.storage = storage
        self.notifier = notifier or LoggingNotifier()
        self.adapters = adapters or AdapterFactory(self.config)
        self.market_data = market_data or KrakenMarketData(
            PriceCache(), self.config.price_cache, self.config.endpoints,
        )
        self.relay = relay or MarketDataRelay(self.config.relay, self.table, on_event=self._on_relay_event)

        sim = self.config.simulation
        self.orders = OrderSimulationEngine(self.storage, self.table, notifier=self.notifier, config=sim, clock=clock)
        self.futures = FuturesEngine(self.storage, self.table, self.notifier, sim, clock)
        self.alerts = AlertMonitor(
            self.storage,
            self.table,
            closes_source=self.market_data.fetch_closes,
            notifier=self.notifier,
            config=sim,
            on_trigger=on_alert,
            clock=clock,
        )
        self._started = False

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def start(self, stream: bool = True) -> None:
        """
        Start tick evaluation and background loops.

        Args:
            stream: Also connect the market data relay and alert loop
        """
        if self._started:
            return
        if isinstance(self.storage, SqlAlchemyStorage):
            await self.storage.create_tables()
        self.orders.attach()
        self.futures.attach()
        if stream:
            await self.relay.start()
            self.alerts.start()
        self._started = True
        logger.info("Trading core started")

    async def stop(self) -> None:
        await self.alerts.stop()
        await self.relay.stop()
        self.orders.detach()
        self.futures.detach()
        await self.orders.drain()
        await self.futures.drain()
        await self.adapters.close()
        await self.market_data.close()
        await self.storage.close()
        self._started = False
        logger.info("Trading core stopped")

    async def __aenter__(self) -> "TradingCore":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    def _on_relay_event(self, frame: Dict[str, Any]) -> None:
        logger.info(f"Relay event: {frame.get('type')} {frame.get('data')}")

    # --------------------------------------------------------
    # ACCOUNTS
    # --------------------------------------------------------

    async def open_account(self, user_id: int, balance: Optional[Decimal] = None) -> Decimal:
        """Fund a new user's spot wallet (starting_balance by default)."""
        amount = self.config.simulation.starting_balance if balance is None else balance
        async with self.storage.user_lock(user_id):
            await self.storage.set_wallet(user_id, amount, SPOT_WALLET)
        return amount

    async def get_wallets(self, user_id: int) -> Dict[str, Decimal]:
        return {
            SPOT_WALLET: await self.storage.get_wallet(user_id, SPOT_WALLET),
            FUTURES_WALLET: await self.storage.get_wallet(user_id, FUTURES_WALLET),
        }

    # --------------------------------------------------------
    # MARKET DATA
    # --------------------------------------------------------

    def list_tickers(self) -> List[Ticker]:
        return self.table.snapshot()

    def get_price(self, symbol: str) -> Optional[Decimal]:
        """Latest streamed price, None when the symbol has not ticked."""
        return self.table.get_price(symbol)

    async def fetch_price(self, symbol: str) -> Optional[Decimal]:
        """Streamed price, falling back to cached public REST data."""
        price = self.table.get_price(symbol)
        if price is None:
            price = await self.market_data.fetch_price(symbol)
        return price

    # --------------------------------------------------------
    # SIMULATED SPOT
    # --------------------------------------------------------

    async def place_simulated_order(self, user_id: int, request: OrderRequest) -> OrderOutcome:
        return await self.orders.place_order(user_id, request)

    async def cancel_order(self, user_id: int, trade_id: int) -> OrderOutcome:
        return await self.orders.cancel_order(user_id, trade_id)

    async def spot_pnl_history(self, user_id: int) -> PnlHistory:
        return await self.orders.ledger.pnl_history(user_id)

    async def today_pnl(self, user_id: int) -> TodayPnl:
        return await self.orders.ledger.today_pnl(user_id, self.table.get)

    # --------------------------------------------------------
    # SIMULATED FUTURES
    # --------------------------------------------------------

    async def open_futures_position(
        self,
        user_id: int,
        symbol: str,
        side: PositionSide,
        quantity: Decimal,
        leverage: int,
        margin_mode: MarginMode = MarginMode.CROSS,
        price: Optional[Decimal] = None,
    ) -> FuturesOutcome:
        return await self.futures.open_position(user_id, symbol, side, quantity, leverage, margin_mode, price)

    async def close_futures_position(
        self,
        user_id: int,
        position_id: int,
        quantity: Optional[Decimal] = None,
    ) -> FuturesOutcome:
        return await self.futures.close_position(user_id, position_id, quantity)

    async def transfer_futures_margin(
        self,
        user_id: int,
        position_id: int,
        amount: Decimal,
        transfer_type: MarginTransferType,
    ) -> FuturesOutcome:
        return await self.futures.transfer_margin(user_id, position_id, amount, transfer_type)

    async def transfer_futures_wallet(self, user_id: int, amount: Decimal, to_futures: bool = True) -> FuturesOutcome:
        return await self.futures.transfer_wallet(user_id, amount, to_futures)

    async def futures_position_metrics(self, user_id: int, position_id: int) -> Optional[PositionMetrics]:
        return await self.futures.position_metrics(user_id, position_id)

    async def futures_pnl_history(self, user_id: int) -> PnlHistory:
        return await self.futures.pnl_history(user_id)

    # --------------------------------------------------------
    # ALERTS
    # --------------------------------------------------------

    async def create_price_alert(
        self,
        user_id: int,
        symbol: str,
        direction: Optional[AlertDirection] = None,
        target_price: Optional[Decimal] = None,
        indicator_condition: Optional[str] = None,
        chart_interval: Optional[str] = None,
        notify: bool = True,
    ) -> AlertOutcome:
        return await self.alerts.create_alert(
            user_id, symbol, direction, target_price, indicator_condition, chart_interval, notify,
        )

    async def delete_price_alert(self, user_id: int, alert_id: int) -> AlertOutcome:
        return await self.alerts.delete_alert(user_id, alert_id)

    # --------------------------------------------------------
    # LIVE EXCHANGES
    # --------------------------------------------------------

    def _adapter(self, exchange: Union[str, ExchangeName], operation: str) -> Union[ExchangeAdapter, TradingError]:
        try:
            return self.adapters.get(exchange)
        except ValueError as e:
            return validation_error(str(e), operation)

    async def validate_exchange_credentials(
        self,
        exchange: Union[str, ExchangeName],
        creds: Credentials,
    ) -> CredentialCheck:
        adapter = self._adapter(exchange, "validate_credentials")
        if isinstance(adapter, TradingError):
            return CredentialCheck(valid=False, error=adapter.message)
        check = await adapter.validate_credentials(creds)
        logger.info(f"Credential check on {adapter.exchange_id}: {'valid' if check.valid else check.error}")
        return check

    async def get_exchange_balances(
        self,
        exchange: Union[str, ExchangeName],
        creds: Credentials,
    ) -> BalancesResult:
        adapter = self._adapter(exchange, "get_balances")
        if isinstance(adapter, TradingError):
            return BalancesResult(success=False, error=adapter)
        return await adapter.get_balances(creds)

    async def mirror_order(
        self,
        exchange: Union[str, ExchangeName],
        creds: Credentials,
        request: OrderRequest,
    ) -> OrderResult:
        """
        Place a live order on a user's exchange account.

        Not retried. On an ambiguous NETWORK error query the order
        before placing it again.
        """
        adapter = self._adapter(exchange, "place_order")
        if isinstance(adapter, TradingError):
            return OrderResult(success=False, error=adapter)
        return await adapter.place_order(creds, request)

    def replace_credentials(self, exchange: Union[str, ExchangeName], api_key: str) -> None:
        """Forget cached platform detection for a replaced API key."""
        self.adapters.invalidate_credentials(exchange, api_key)
        logger.info(f"Cleared cached state for replaced {exchange} credentials")
