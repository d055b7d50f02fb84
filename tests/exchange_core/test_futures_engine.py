"""
Futures Engine Tests.

============================================================
PURPOSE
============================================================
Tests for simulated leveraged futures positions.

TEST CATEGORIES:
- Pure formulas (liquidation, PnL, ROE)
- Open / close (full, partial, isolated loss floor)
- Margin and wallet transfers
- Liquidation sweeps (isolated and cross)
- Reporting

============================================================
"""

from datetime import datetime
from decimal import Decimal

import pytest

from exchange_core.errors import ErrorCategory
from exchange_core.market_data.tickers import TickerTable
from exchange_core.notifications import LoggingNotifier
from exchange_core.simulation.futures import (
    FuturesEngine,
    liquidation_price,
    roe_percent,
    unrealized_pnl,
)
from exchange_core.storage.base import FUTURES_WALLET, SPOT_WALLET
from exchange_core.storage.memory import InMemoryStorage
from exchange_core.types import (
    FuturesPosition,
    MarginMode,
    MarginTransferType,
    PositionSide,
    PositionStatus,
    Ticker,
)


USER = 1
FEE = Decimal("0.004")


async def make_engine(price="50000", futures_balance="10000"):
    storage = InMemoryStorage()
    await storage.set_wallet(USER, Decimal(futures_balance), FUTURES_WALLET)
    table = TickerTable()
    table.update(Ticker.from_prices("BTCUSDT", price))
    notifier = LoggingNotifier()
    engine = FuturesEngine(storage, table=table, notifier=notifier)
    return engine, storage, table, notifier


async def open_long(engine, mode=MarginMode.ISOLATED, quantity="1", leverage=10):
    outcome = await engine.open_position(USER, "BTCUSDT", PositionSide.LONG, Decimal(quantity), leverage, mode)
    assert outcome.success, outcome.reason
    return outcome.position


# ============================================================
# FORMULAS
# ============================================================

class TestFormulas:
    """Tests for the pure futures math."""

    def test_liquidation_long(self):
        price = liquidation_price(PositionSide.LONG, Decimal("50000"), Decimal("1"), Decimal("5000"), FEE)

        assert price == Decimal("45200")

    def test_liquidation_short(self):
        price = liquidation_price(PositionSide.SHORT, Decimal("50000"), Decimal("1"), Decimal("5000"), FEE)

        assert price == Decimal("54800")

    def test_liquidation_never_negative(self):
        price = liquidation_price(PositionSide.LONG, Decimal("100"), Decimal("1"), Decimal("1000"), FEE)

        assert price == Decimal("0")

    def test_unrealized_pnl_sign(self):
        assert unrealized_pnl(PositionSide.LONG, Decimal("100"), Decimal("110"), Decimal("2")) == Decimal("20")
        assert unrealized_pnl(PositionSide.SHORT, Decimal("100"), Decimal("110"), Decimal("2")) == Decimal("-20")

    def test_roe_uses_isolated_margin(self):
        position = FuturesPosition(
            id=1, user_id=USER, symbol="BTCUSDT", side=PositionSide.LONG,
            quantity=Decimal("1"), entry_price=Decimal("50000"), leverage=10,
            margin_mode=MarginMode.ISOLATED, isolated_margin=Decimal("10000"),
            liquidation_price=Decimal("40200"),
        )

        assert roe_percent(position, Decimal("51000")) == Decimal("10")

    def test_roe_cross_uses_initial_margin(self):
        position = FuturesPosition(
            id=1, user_id=USER, symbol="BTCUSDT", side=PositionSide.SHORT,
            quantity=Decimal("1"), entry_price=Decimal("50000"), leverage=10,
            margin_mode=MarginMode.CROSS, isolated_margin=Decimal("0"),
            liquidation_price=Decimal("60000"),
        )

        assert roe_percent(position, Decimal("49000")) == Decimal("20")


# ============================================================
# OPEN / CLOSE
# ============================================================

class TestOpenClose:
    """Tests for opening and closing positions."""

    @pytest.mark.asyncio
    async def test_open_isolated_long(self):
        engine, storage, _, _ = await make_engine()

        position = await open_long(engine)

        assert position.entry_price == Decimal("50000")
        assert position.isolated_margin == Decimal("5000")
        assert position.liquidation_price == Decimal("45200")
        assert await storage.get_wallet(USER, FUTURES_WALLET) == Decimal("5000")

    @pytest.mark.asyncio
    async def test_open_cross_includes_free_wallet(self):
        """Test cross liquidation uses initial margin plus the free wallet."""
        engine, _, _, _ = await make_engine()

        position = await open_long(engine, mode=MarginMode.CROSS)

        assert position.isolated_margin == Decimal("0")
        assert position.liquidation_price == Decimal("40200")

    @pytest.mark.asyncio
    async def test_open_rejections(self):
        engine, _, _, _ = await make_engine()

        bad_leverage = await engine.open_position(USER, "BTCUSDT", PositionSide.LONG, Decimal("1"), 126)
        too_small = await engine.open_position(USER, "BTCUSDT", PositionSide.LONG, Decimal("0.00001"), 10)
        too_big = await engine.open_position(USER, "BTCUSDT", PositionSide.LONG, Decimal("10"), 10)
        no_price = await engine.open_position(USER, "ETHUSDT", PositionSide.LONG, Decimal("1"), 10)

        assert bad_leverage.error.category == ErrorCategory.VALIDATION
        assert too_small.error.category == ErrorCategory.VALIDATION
        assert too_big.error.category == ErrorCategory.INSUFFICIENT_FUNDS
        assert no_price.error.category == ErrorCategory.VALIDATION

    @pytest.mark.asyncio
    @pytest.mark.parametrize("leverage", [True, False, 10.0, "10"])
    async def test_leverage_must_be_an_integer(self, leverage):
        engine, storage, _, _ = await make_engine()

        outcome = await engine.open_position(USER, "BTCUSDT", PositionSide.LONG, Decimal("0.1"), leverage)

        assert outcome.success is False
        assert outcome.error.category == ErrorCategory.VALIDATION
        assert "Leverage must be between 1 and" in outcome.reason
        assert await storage.list_futures_positions(USER) == []
        assert await storage.get_wallet(USER, FUTURES_WALLET) == Decimal("10000")

    @pytest.mark.asyncio
    async def test_full_close_with_profit(self):
        engine, storage, table, _ = await make_engine()
        position = await open_long(engine)
        table.update(Ticker.from_prices("BTCUSDT", "52000"))

        outcome = await engine.close_position(USER, position.id)

        assert outcome.success is True
        assert outcome.realized_pnl == Decimal("2000")
        assert outcome.position.status == PositionStatus.CLOSED
        assert await storage.get_wallet(USER, FUTURES_WALLET) == Decimal("12000")

    @pytest.mark.asyncio
    async def test_partial_close_keeps_entry(self):
        engine, storage, table, _ = await make_engine()
        position = await open_long(engine)
        table.update(Ticker.from_prices("BTCUSDT", "52000"))

        outcome = await engine.close_position(USER, position.id, quantity=Decimal("0.5"))

        remaining = await storage.get_futures_position(position.id)
        assert outcome.realized_pnl == Decimal("1000")
        assert remaining.status == PositionStatus.OPEN
        assert remaining.quantity == Decimal("0.5")
        assert remaining.entry_price == Decimal("50000")
        assert remaining.isolated_margin == Decimal("2500")
        assert remaining.liquidation_price == Decimal("45200")
        assert await storage.get_wallet(USER, FUTURES_WALLET) == Decimal("8500")

    @pytest.mark.asyncio
    async def test_isolated_loss_capped_at_margin(self):
        engine, storage, table, _ = await make_engine()
        position = await open_long(engine)
        table.update(Ticker.from_prices("BTCUSDT", "40000"))

        outcome = await engine.close_position(USER, position.id)

        assert outcome.realized_pnl == Decimal("-5000")
        assert await storage.get_wallet(USER, FUTURES_WALLET) == Decimal("5000")

    @pytest.mark.asyncio
    async def test_close_twice(self):
        engine, _, _, _ = await make_engine()
        position = await open_long(engine)
        await engine.close_position(USER, position.id)

        outcome = await engine.close_position(USER, position.id)

        assert outcome.error.category == ErrorCategory.ALREADY_TERMINAL

    @pytest.mark.asyncio
    async def test_close_checks_owner_and_quantity(self):
        engine, _, _, _ = await make_engine()
        position = await open_long(engine)

        other = await engine.close_position(2, position.id)
        oversized = await engine.close_position(USER, position.id, quantity=Decimal("2"))

        assert other.error.category == ErrorCategory.NOT_FOUND
        assert oversized.error.category == ErrorCategory.VALIDATION


# ============================================================
# TRANSFERS
# ============================================================

class TestTransfers:
    """Tests for margin and wallet transfers."""

    @pytest.mark.asyncio
    async def test_add_margin_moves_liquidation(self):
        engine, storage, _, _ = await make_engine()
        position = await open_long(engine)

        outcome = await engine.transfer_margin(USER, position.id, Decimal("1000"), MarginTransferType.ADD)

        assert outcome.position.isolated_margin == Decimal("6000")
        assert outcome.position.liquidation_price == Decimal("44200")
        assert await storage.get_wallet(USER, FUTURES_WALLET) == Decimal("4000")

    @pytest.mark.asyncio
    async def test_remove_margin_floor(self):
        engine, _, _, _ = await make_engine()
        position = await open_long(engine)
        await engine.transfer_margin(USER, position.id, Decimal("1000"), MarginTransferType.ADD)

        too_much = await engine.transfer_margin(USER, position.id, Decimal("2000"), MarginTransferType.REMOVE)
        allowed = await engine.transfer_margin(USER, position.id, Decimal("1000"), MarginTransferType.REMOVE)

        assert too_much.error.category == ErrorCategory.VALIDATION
        assert allowed.position.isolated_margin == Decimal("5000")

    @pytest.mark.asyncio
    async def test_cross_positions_reject_margin_transfer(self):
        engine, _, _, _ = await make_engine()
        position = await open_long(engine, mode=MarginMode.CROSS)

        outcome = await engine.transfer_margin(USER, position.id, Decimal("100"), MarginTransferType.ADD)

        assert outcome.error.category == ErrorCategory.VALIDATION

    @pytest.mark.asyncio
    async def test_wallet_transfer(self):
        engine, storage, _, _ = await make_engine()
        await storage.set_wallet(USER, Decimal("1000"), SPOT_WALLET)

        ok = await engine.transfer_wallet(USER, Decimal("400"))
        short = await engine.transfer_wallet(USER, Decimal("700"))

        assert ok.success is True
        assert short.error.category == ErrorCategory.INSUFFICIENT_FUNDS
        assert await storage.get_wallet(USER, SPOT_WALLET) == Decimal("600")
        assert await storage.get_wallet(USER, FUTURES_WALLET) == Decimal("10400")


# ============================================================
# LIQUIDATION
# ============================================================

class TestLiquidation:
    """Tests for liquidation sweeps."""

    @pytest.mark.asyncio
    async def test_isolated_liquidation(self):
        engine, storage, _, notifier = await make_engine()
        position = await open_long(engine)

        assert await engine.check_liquidations("BTCUSDT", Decimal("45300")) == []
        liquidated = await engine.check_liquidations("BTCUSDT", Decimal("45100"))

        assert [p.id for p in liquidated] == [position.id]
        stored = await storage.get_futures_position(position.id)
        assert stored.status == PositionStatus.LIQUIDATED
        assert stored.realized_pnl == Decimal("-5000")
        assert await storage.get_wallet(USER, FUTURES_WALLET) == Decimal("5000")
        closes = await storage.list_futures_closes(USER)
        assert closes[-1].liquidated is True
        assert "liquidated" in notifier.sent[-1][1]

    @pytest.mark.asyncio
    async def test_cross_liquidation_draws_wallet(self):
        engine, storage, _, _ = await make_engine()
        position = await open_long(engine, mode=MarginMode.CROSS)

        liquidated = await engine.check_liquidations("BTCUSDT", Decimal("40100"))

        assert [p.id for p in liquidated] == [position.id]
        assert await storage.get_wallet(USER, FUTURES_WALLET) == Decimal("100")
        assert liquidated[0].realized_pnl == Decimal("-9900")

    @pytest.mark.asyncio
    async def test_sweep_through_ticker_table(self):
        engine, storage, table, _ = await make_engine()
        position = await open_long(engine)
        engine.attach()

        table.update(Ticker.from_prices("BTCUSDT", "45000"))
        await engine.drain()

        assert (await storage.get_futures_position(position.id)).status == PositionStatus.LIQUIDATED

    @pytest.mark.asyncio
    async def test_liquidated_position_cannot_close(self):
        engine, _, _, _ = await make_engine()
        position = await open_long(engine)
        await engine.check_liquidations("BTCUSDT", Decimal("45000"))

        outcome = await engine.close_position(USER, position.id)

        assert outcome.error.category == ErrorCategory.ALREADY_TERMINAL


# ============================================================
# REPORTING
# ============================================================

class TestReporting:
    """Tests for metrics and PnL history."""

    @pytest.mark.asyncio
    async def test_position_metrics(self):
        engine, _, _, _ = await make_engine()
        position = await open_long(engine)

        metrics = await engine.position_metrics(USER, position.id, Decimal("51000"))

        assert metrics.unrealized_pnl == Decimal("1000")
        assert metrics.roe == Decimal("20")
        assert Decimal(metrics.to_dict()["liquidationPrice"]) == Decimal("45200")
        assert await engine.position_metrics(2, position.id) is None

    @pytest.mark.asyncio
    async def test_pnl_history_from_closes(self):
        engine, _, table, _ = await make_engine()
        position = await open_long(engine)
        table.update(Ticker.from_prices("BTCUSDT", "51000"))
        await engine.close_position(USER, position.id)

        history = await engine.pnl_history(USER, now=datetime.utcnow())

        assert history.cumulative_pnl == Decimal("1000")
        assert len(history.daily) == 1
