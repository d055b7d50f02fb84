"""
Trading Core Facade and CLI Tests.

============================================================
PURPOSE
============================================================
End-to-end tests of TradingCore wiring with in-memory storage,
a hand-fed ticker table and stub adapters, plus the CLI parser.

TEST CATEGORIES:
- Accounts and wallets
- Spot and futures flows through the facade
- Live exchange delegation
- CLI argument parsing and credential validation

============================================================
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from exchange_core import TradingCore
from exchange_core.cli import create_parser, main
from exchange_core.config import CoreConfig
from exchange_core.types import (
    CredentialCheck,
    Credentials,
    ExchangeName,
    MarginMode,
    OrderRequest,
    OrderResult,
    OrderSide,
    OrderType,
    PositionSide,
    Ticker,
    TradeStatus,
)


USER = 7
CREDS = Credentials(api_key="key", api_secret="secret")


def make_core():
    relay = MagicMock()
    relay.start = AsyncMock()
    relay.stop = AsyncMock()
    core = TradingCore(config=CoreConfig(), relay=relay)
    core.table.update(Ticker.from_prices("BTCUSDT", "61000", "60000"))
    return core


# ============================================================
# ACCOUNTS
# ============================================================

class TestAccounts:
    """Tests for account funding."""

    @pytest.mark.asyncio
    async def test_open_account_uses_starting_balance(self):
        core = make_core()

        amount = await core.open_account(USER)

        assert amount == Decimal("100000")
        assert await core.get_wallets(USER) == {"spot": Decimal("100000"), "futures": Decimal("0")}

    @pytest.mark.asyncio
    async def test_lifecycle(self):
        core = make_core()

        await core.start(stream=False)
        await core.start(stream=False)
        await core.stop()

        core.relay.start.assert_not_awaited()
        core.relay.stop.assert_awaited_once()


# ============================================================
# SIMULATION FLOWS
# ============================================================

class TestSimulationFlows:
    """Tests for spot and futures operations through the facade."""

    @pytest.mark.asyncio
    async def test_limit_order_fills_from_table_tick(self):
        core = make_core()
        await core.open_account(USER)
        await core.start(stream=False)

        placed = await core.place_simulated_order(USER, OrderRequest(
            symbol="BTCUSDT", side=OrderSide.BUY, order_type=OrderType.LIMIT,
            quantity=Decimal("1"), price=Decimal("60000"),
        ))
        core.table.update(Ticker.from_prices("BTCUSDT", "59800", "60000"))
        await core.orders.drain()

        trade = await core.storage.get_trade(placed.trade.id)
        assert trade.status == TradeStatus.COMPLETED
        assert trade.price == Decimal("59800")
        assert (await core.get_wallets(USER))["spot"] == Decimal("40200")
        assert core.notifier.sent
        await core.stop()

    @pytest.mark.asyncio
    async def test_cancel_through_facade(self):
        core = make_core()
        await core.open_account(USER)
        placed = await core.place_simulated_order(USER, OrderRequest(
            symbol="BTCUSDT", side=OrderSide.BUY, order_type=OrderType.LIMIT,
            quantity=Decimal("1"), price=Decimal("50000"),
        ))

        outcome = await core.cancel_order(USER, placed.trade.id)

        assert outcome.trade.status == TradeStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_today_pnl_after_buy(self):
        core = make_core()
        await core.open_account(USER)
        await core.place_simulated_order(USER, OrderRequest(
            symbol="BTCUSDT", side=OrderSide.BUY, quantity=Decimal("1"),
        ))
        core.table.update(Ticker.from_prices("BTCUSDT", "62000", "60000"))

        report = await core.today_pnl(USER)

        assert report.total_pnl == Decimal("1000")

    @pytest.mark.asyncio
    async def test_futures_round_trip(self):
        core = make_core()
        await core.open_account(USER)
        await core.transfer_futures_wallet(USER, Decimal("10000"))

        opened = await core.open_futures_position(
            USER, "BTCUSDT", PositionSide.SHORT, Decimal("1"), 20, MarginMode.ISOLATED,
        )
        metrics = await core.futures_position_metrics(USER, opened.position.id)
        closed = await core.close_futures_position(USER, opened.position.id)
        history = await core.futures_pnl_history(USER)

        assert opened.position.isolated_margin == Decimal("3050")
        assert metrics.unrealized_pnl == Decimal("0")
        assert closed.realized_pnl == Decimal("0")
        assert history.cumulative_pnl == Decimal("0")
        assert (await core.get_wallets(USER))["futures"] == Decimal("10000")

    @pytest.mark.asyncio
    async def test_price_alert_through_facade(self):
        core = make_core()

        created = await core.create_price_alert(USER, "BTCUSDT", target_price=Decimal("1"))
        deleted = await core.delete_price_alert(USER, 999)

        assert created.success is False
        assert deleted.success is False

    @pytest.mark.asyncio
    async def test_fetch_price_prefers_stream(self):
        core = make_core()
        core.market_data.fetch_price = AsyncMock(return_value=Decimal("3000"))

        assert await core.fetch_price("BTCUSDT") == Decimal("61000")
        assert await core.fetch_price("ETHUSDT") == Decimal("3000")
        core.market_data.fetch_price.assert_awaited_once_with("ETHUSDT")


# ============================================================
# LIVE EXCHANGES
# ============================================================

class TestLiveExchanges:
    """Tests for adapter delegation."""

    @pytest.mark.asyncio
    async def test_unknown_exchange(self):
        core = make_core()

        check = await core.validate_exchange_credentials("ftx", CREDS)
        balances = await core.get_exchange_balances("ftx", CREDS)

        assert check.valid is False
        assert "Unsupported exchange" in check.error
        assert balances.success is False

    @pytest.mark.asyncio
    async def test_delegates_to_adapter(self):
        core = make_core()
        adapter = MagicMock()
        adapter.exchange_id = "binance"
        adapter.validate_credentials = AsyncMock(return_value=CredentialCheck(valid=True, platform="com"))
        adapter.place_order = AsyncMock(return_value=OrderResult(success=True, exchange_order_id="42"))
        core.adapters.set(ExchangeName.BINANCE, adapter)
        request = OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, quantity=Decimal("0.01"))

        check = await core.validate_exchange_credentials("binance", CREDS)
        result = await core.mirror_order(ExchangeName.BINANCE, CREDS, request)

        assert check.platform == "com"
        assert result.exchange_order_id == "42"
        adapter.place_order.assert_awaited_once_with(CREDS, request)

    def test_replace_credentials_clears_platform_cache(self):
        core = make_core()
        core.adapters.platform_cache.invalidate = MagicMock()

        core.replace_credentials("binance", "old-key")

        core.adapters.platform_cache.invalidate.assert_called_once_with("old-key")


# ============================================================
# CLI
# ============================================================

class TestCli:
    """Tests for the command-line entry point."""

    def test_parser_commands(self):
        parser = create_parser()

        relay = parser.parse_args(["relay", "--port", "9000"])
        validate = parser.parse_args(["--log-level", "DEBUG", "validate", "--exchange", "kraken"])

        assert relay.command == "relay"
        assert relay.port == 9000
        assert validate.exchange == "kraken"
        assert validate.log_level == "DEBUG"

    def test_parser_rejects_unknown_exchange(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["validate", "--exchange", "ftx"])

    def test_validate_without_credentials(self, monkeypatch):
        monkeypatch.delenv("KUCOIN_API_KEY", raising=False)
        monkeypatch.delenv("KUCOIN_API_SECRET", raising=False)

        assert main(["validate", "--exchange", "kucoin"]) == 1
