"""
Exchange Adapter Tests.

============================================================
PURPOSE
============================================================
Unit tests for the live exchange adapters with the HTTP
transport (_send) replaced by canned replies.

TEST CATEGORIES:
- Factory tests: Adapter creation and caching
- Binance: platform detection, orders, error mapping
- Kraken: asset normalization, quote detection, retries
- KuCoin: envelope handling, passphrase checks
- Logging tests: Credential masking

============================================================
"""

import json
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from exchange_core.adapters import (
    AdapterFactory,
    BinanceAdapter,
    HttpReply,
    KrakenAdapter,
    KucoinAdapter,
    normalize_balances,
)
from exchange_core.adapters.factory import credentials_from_env
from exchange_core.adapters.logging_utils import mask_headers, mask_url, mask_value
from exchange_core.config import RetryConfig
from exchange_core.errors import (
    ErrorCategory,
    TradingException,
    create_ambiguous_order_error,
    create_network_error,
)
from exchange_core.types import (
    Credentials,
    ExchangeName,
    OrderRequest,
    OrderSide,
    OrderType,
)


GLOBAL = "https://api.binance.com"
US = "https://api.binance.us"

KRAKEN_SECRET = "kQH5HW/8p1uGOVjbgWA7FunAmGO8lsSUXNsu3eow76sz84Q18fWxnyRzBHCd3pd5nE9qa99HAZtuZuj6F1huXg=="


def reply(status, data):
    """Build an HttpReply around a JSON payload."""
    text = json.dumps(data)
    return HttpReply(status=status, text=text, data=data)


BINANCE_ACCOUNT = {
    "balances": [
        {"asset": "BTC", "free": "0.1", "locked": "0"},
        {"asset": "USDT", "free": "50", "locked": "10"},
        {"asset": "ETH", "free": "0", "locked": "0"},
    ]
}
BINANCE_EMPTY_ACCOUNT = {"balances": [{"asset": "BTC", "free": "0", "locked": "0"}]}
BINANCE_BAD_KEY = {"code": -2015, "msg": "Invalid API-key, IP, or permissions for action."}
BINANCE_GEO = {"code": 0, "msg": "Service unavailable from a restricted location according to 'b. Eligibility'"}


# ============================================================
# FACTORY TESTS
# ============================================================

class TestAdapterFactory:
    """Tests for AdapterFactory."""

    def test_list_supported_exchanges(self):
        supported = AdapterFactory.list_supported()

        assert "binance" in supported
        assert "kraken" in supported
        assert "kucoin" in supported

    def test_get_creates_and_caches(self):
        """Test one adapter instance per exchange."""
        factory = AdapterFactory()

        first = factory.get("KRAKEN")
        second = factory.get(ExchangeName.KRAKEN)

        assert isinstance(first, KrakenAdapter)
        assert first is second

    def test_unsupported_raises(self):
        with pytest.raises(ValueError, match="Unsupported exchange"):
            AdapterFactory().get("bitfinex")

    def test_set_installs_stub(self):
        factory = AdapterFactory()
        stub = MagicMock()

        factory.set(ExchangeName.KUCOIN, stub)

        assert factory.get("kucoin") is stub

    def test_invalidate_credentials_clears_platform_cache(self):
        """Test replaced credentials force a new platform detection."""
        factory = AdapterFactory()
        factory.platform_cache.set("key-1", US)

        factory.invalidate_credentials("binance", "key-1")

        assert "key-1" not in factory.platform_cache

    @pytest.mark.asyncio
    async def test_close_closes_adapters(self):
        factory = AdapterFactory()
        stub = MagicMock()
        stub.close = AsyncMock()
        factory.set(ExchangeName.BINANCE, stub)

        await factory.close()

        stub.close.assert_awaited_once()

    def test_credentials_from_env(self, monkeypatch):
        monkeypatch.setenv("KUCOIN_API_KEY", "k")
        monkeypatch.setenv("KUCOIN_API_SECRET", "s")
        monkeypatch.setenv("KUCOIN_PASSPHRASE", "p")

        creds = credentials_from_env("kucoin")

        assert creds == Credentials(api_key="k", api_secret="s", passphrase="p")

    def test_credentials_from_env_missing(self, monkeypatch):
        monkeypatch.delenv("KRAKEN_API_KEY", raising=False)
        monkeypatch.delenv("KRAKEN_API_SECRET", raising=False)

        assert credentials_from_env("kraken") is None


# ============================================================
# SHARED BEHAVIOUR
# ============================================================

class TestNormalizeBalances:
    """Tests for balance normalization."""

    def test_drops_zero_and_duplicates(self):
        entries = [
            ("btc", Decimal("0.5"), Decimal("0.5")),
            ("BTC", Decimal("9"), Decimal("9")),
            ("ETH", Decimal("0"), Decimal("0")),
            ("USDT", Decimal("10"), Decimal("12")),
        ]

        balances = normalize_balances(entries)

        assert [b.currency for b in balances] == ["BTC", "USDT"]
        assert balances[0].total == Decimal("0.5")

    def test_retry_after_header(self):
        assert HttpReply(status=429, text="", headers={"Retry-After": "2"}).retry_after_ms() == 2000
        assert HttpReply(status=429, text="").retry_after_ms() is None


# ============================================================
# BINANCE
# ============================================================

class TestBinanceAdapter:
    """Tests for BinanceAdapter."""

    CREDS = Credentials(api_key="binance-key", api_secret="binance-secret")

    def _adapter(self, routes):
        """Adapter whose _send answers from routes[(base, path)]."""
        adapter = BinanceAdapter()
        calls = []

        def fake_send(base_url, signed, operation, idempotent=True):
            calls.append((base_url, signed, operation, idempotent))
            return routes[(base_url, signed.path)]

        adapter._send = AsyncMock(side_effect=fake_send)
        return adapter, calls

    @pytest.mark.asyncio
    async def test_get_balances_on_global(self):
        """Test balances are read from the base that authenticated."""
        adapter, calls = self._adapter({
            (GLOBAL, "/api/v3/account"): reply(200, BINANCE_ACCOUNT),
            (US, "/api/v3/account"): reply(401, BINANCE_BAD_KEY),
        })

        result = await adapter.get_balances(self.CREDS)

        assert result.success is True
        assert result.get("USDT").available == Decimal("50")
        assert result.get("USDT").total == Decimal("60")
        assert result.get("ETH") is None
        assert calls[-1][0] == GLOBAL

    @pytest.mark.asyncio
    async def test_validate_reports_us_platform(self):
        """Test a US key is detected and reported."""
        adapter, _ = self._adapter({
            (GLOBAL, "/api/v3/account"): reply(401, BINANCE_BAD_KEY),
            (US, "/api/v3/account"): reply(200, BINANCE_EMPTY_ACCOUNT),
        })

        check = await adapter.validate_credentials(self.CREDS)

        assert check.valid is True
        assert check.platform == US

    @pytest.mark.asyncio
    async def test_validate_geo_restricted(self):
        """Test a geo block wins over the auth failure in the report."""
        adapter, _ = self._adapter({
            (GLOBAL, "/api/v3/account"): reply(451, BINANCE_GEO),
            (US, "/api/v3/account"): reply(401, BINANCE_BAD_KEY),
        })

        check = await adapter.validate_credentials(self.CREDS)

        assert check.valid is False
        assert "restricted location" in check.error

    @pytest.mark.asyncio
    async def test_missing_secret_is_configuration_error(self):
        adapter, calls = self._adapter({})

        result = await adapter.get_balances(Credentials(api_key="k", api_secret=""))

        assert result.success is False
        assert result.error.category == ErrorCategory.CONFIGURATION
        assert calls == []

    @pytest.mark.asyncio
    async def test_market_buy_by_quote_amount(self):
        """Test quote-sized market buys use quoteOrderQty."""
        adapter, calls = self._adapter({
            (GLOBAL, "/api/v3/account"): reply(200, BINANCE_ACCOUNT),
            (US, "/api/v3/account"): reply(401, BINANCE_BAD_KEY),
            (GLOBAL, "/api/v3/order"): reply(200, {
                "orderId": 28,
                "status": "FILLED",
                "executedQty": "0.0008",
                "cummulativeQuoteQty": "50",
            }),
        })
        request = OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, quote_amount=Decimal("50"))

        result = await adapter.place_order(self.CREDS, request)

        assert result.success is True
        assert result.exchange_order_id == "28"
        assert result.executed_quote_amount == Decimal("50")
        order_call = calls[-1]
        assert order_call[2] == "place_order"
        assert order_call[3] is False
        assert "quoteOrderQty=50" in order_call[1].body
        assert "quantity=" not in order_call[1].body

    @pytest.mark.asyncio
    async def test_limit_order_is_gtc(self):
        adapter, calls = self._adapter({
            (GLOBAL, "/api/v3/account"): reply(200, BINANCE_ACCOUNT),
            (US, "/api/v3/account"): reply(401, BINANCE_BAD_KEY),
            (GLOBAL, "/api/v3/order"): reply(200, {"orderId": 5, "status": "NEW"}),
        })
        request = OrderRequest(
            symbol="ETHUSDT",
            side=OrderSide.SELL,
            order_type=OrderType.LIMIT,
            quantity=Decimal("1"),
            price=Decimal("3500"),
        )

        result = await adapter.place_order(self.CREDS, request)

        assert result.status == "NEW"
        body = calls[-1][1].body
        assert "timeInForce=GTC" in body
        assert "price=3500" in body
        assert "side=SELL" in body

    @pytest.mark.asyncio
    async def test_invalid_request_never_sent(self):
        """Test validation happens before any network call."""
        adapter, calls = self._adapter({})
        request = OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, quantity=Decimal("0"))

        result = await adapter.place_order(self.CREDS, request)

        assert result.success is False
        assert result.error.category == ErrorCategory.VALIDATION
        assert calls == []

    @pytest.mark.asyncio
    async def test_stop_orders_rejected_live(self):
        adapter, calls = self._adapter({})
        request = OrderRequest(
            symbol="BTCUSDT",
            side=OrderSide.SELL,
            order_type=OrderType.STOP,
            quantity=Decimal("1"),
            stop_price=Decimal("50000"),
        )

        result = await adapter.place_order(self.CREDS, request)

        assert result.error.category == ErrorCategory.VALIDATION
        assert "simulation" in result.error.message
        assert calls == []

    @pytest.mark.asyncio
    async def test_ambiguous_order_not_retried(self):
        """Test a failed placement is reported once, never resent."""
        adapter = BinanceAdapter()
        adapter.detector.cache.set(self.CREDS.api_key, GLOBAL)
        adapter._send = AsyncMock(
            side_effect=TradingException(create_ambiguous_order_error("binance", "Request timed out"))
        )
        request = OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, quantity=Decimal("0.01"))

        result = await adapter.place_order(self.CREDS, request)

        assert result.success is False
        assert result.error.code == "BINANCE_ORDER_STATUS_UNKNOWN"
        assert result.error.symbol == "BTCUSDT"
        assert adapter._send.await_count == 1

    @pytest.mark.asyncio
    async def test_get_order_requires_symbol(self):
        adapter, calls = self._adapter({})

        result = await adapter.get_order(self.CREDS, "123")

        assert result.success is False
        assert result.error.category == ErrorCategory.VALIDATION
        assert calls == []


# ============================================================
# KRAKEN
# ============================================================

class TestKrakenAdapter:
    """Tests for KrakenAdapter."""

    CREDS = Credentials(api_key="kraken-key", api_secret=KRAKEN_SECRET)

    BALANCE = {"error": [], "result": {"XXBT": "0.5", "ZUSD": "100", "USDT": "250", "XETH": "0"}}

    @pytest.mark.asyncio
    async def test_balances_normalized(self):
        """Test legacy asset codes map to canonical currencies."""
        adapter = KrakenAdapter()
        adapter._send = AsyncMock(return_value=reply(200, self.BALANCE))

        result = await adapter.get_balances(self.CREDS)

        assert result.success is True
        assert result.get("BTC").total == Decimal("0.5")
        assert result.get("USD").total == Decimal("100")
        assert result.get("ETH") is None

    @pytest.mark.asyncio
    async def test_invalid_key(self):
        adapter = KrakenAdapter()
        adapter._send = AsyncMock(return_value=reply(200, {"error": ["EAPI:Invalid key"]}))

        check = await adapter.validate_credentials(self.CREDS)

        assert check.valid is False
        assert check.error == "EAPI:Invalid key"

    @pytest.mark.asyncio
    async def test_malformed_secret_is_configuration_error(self):
        adapter = KrakenAdapter()
        adapter._send = AsyncMock()

        result = await adapter.get_balances(Credentials(api_key="k", api_secret="***"))

        assert result.error.category == ErrorCategory.CONFIGURATION
        adapter._send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_balance_read_retried_on_network_error(self):
        """Test reads retry transient failures."""
        adapter = KrakenAdapter(retry_config=RetryConfig(max_retries=2, initial_delay_seconds=0))
        adapter._send = AsyncMock(side_effect=[
            TradingException(create_network_error("kraken", "Connection reset", "get_balances")),
            reply(200, self.BALANCE),
        ])

        result = await adapter.get_balances(self.CREDS)

        assert result.success is True
        assert adapter._send.await_count == 2

    @pytest.mark.asyncio
    async def test_detect_quote_prefers_largest_balance(self):
        adapter = KrakenAdapter()
        adapter._send = AsyncMock(return_value=reply(200, self.BALANCE))

        assert await adapter.detect_quote_currency(self.CREDS) == "USDT"

    @pytest.mark.asyncio
    async def test_detect_quote_defaults_to_usdt(self):
        adapter = KrakenAdapter()
        adapter._send = AsyncMock(return_value=reply(200, {"error": [], "result": {"XXBT": "1"}}))

        assert await adapter.detect_quote_currency(self.CREDS) == "USDT"

    @pytest.mark.asyncio
    async def test_order_trades_against_held_quote(self):
        """Test a USD-funded account trades BTCUSDT as XBTUSD."""
        adapter = KrakenAdapter()
        adapter._send = AsyncMock(side_effect=[
            reply(200, {"error": [], "result": {"ZUSD": "500", "USDT": "20"}}),
            reply(200, {"error": [], "result": {"txid": ["OQCLML-BW3P3-BUCMWZ"]}}),
        ])
        request = OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, quote_amount=Decimal("100"))

        result = await adapter.place_order(self.CREDS, request)

        assert result.success is True
        assert result.exchange_order_id == "OQCLML-BW3P3-BUCMWZ"
        signed = adapter._send.await_args_list[1].args[1]
        assert signed.path == "/0/private/AddOrder"
        assert "pair=XBTUSD&" in signed.body
        assert "oflags=viqc" in signed.body
        assert "volume=100" in signed.body

    @pytest.mark.asyncio
    async def test_get_order(self):
        adapter = KrakenAdapter()
        adapter._send = AsyncMock(return_value=reply(200, {
            "error": [],
            "result": {"OABC": {"status": "closed", "vol_exec": "0.5", "cost": "30000"}},
        }))

        result = await adapter.get_order(self.CREDS, "OABC")

        assert result.success is True
        assert result.status == "closed"
        assert result.executed_quantity == Decimal("0.5")

    @pytest.mark.asyncio
    async def test_get_order_unknown(self):
        adapter = KrakenAdapter()
        adapter._send = AsyncMock(return_value=reply(200, {"error": [], "result": {}}))

        result = await adapter.get_order(self.CREDS, "OMISSING")

        assert result.error.category == ErrorCategory.NOT_FOUND

    @pytest.mark.asyncio
    async def test_quote_balance_sums_cash_currencies(self):
        adapter = KrakenAdapter()
        adapter._send = AsyncMock(return_value=reply(200, self.BALANCE))

        ok, amount, error = await adapter.get_quote_balance(self.CREDS)

        assert ok is True
        assert amount == Decimal("350")
        assert error is None


# ============================================================
# KUCOIN
# ============================================================

class TestKucoinAdapter:
    """Tests for KucoinAdapter."""

    CREDS = Credentials(api_key="kc-key", api_secret="kc-secret", passphrase="kc-phrase")

    @pytest.mark.asyncio
    async def test_balances(self):
        adapter = KucoinAdapter()
        adapter._send = AsyncMock(return_value=reply(200, {
            "code": "200000",
            "data": [
                {"currency": "USDT", "available": "10", "balance": "12"},
                {"currency": "KCS", "available": "0", "balance": "0"},
            ],
        }))

        result = await adapter.get_balances(self.CREDS)

        assert result.success is True
        assert len(result.balances) == 1
        assert result.get("USDT").available == Decimal("10")

    @pytest.mark.asyncio
    async def test_invalid_passphrase(self):
        adapter = KucoinAdapter()
        adapter._send = AsyncMock(return_value=reply(401, {"code": "400005", "msg": "Invalid KC-API-PASSPHRASE"}))

        check = await adapter.validate_credentials(self.CREDS)

        assert check.valid is False
        assert check.error == "Invalid KC-API-PASSPHRASE"

    @pytest.mark.asyncio
    async def test_passphrase_required(self):
        adapter = KucoinAdapter()
        adapter._send = AsyncMock()

        result = await adapter.get_balances(Credentials(api_key="k", api_secret="s"))

        assert result.error.category == ErrorCategory.CONFIGURATION
        adapter._send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_market_order_body(self):
        adapter = KucoinAdapter()
        adapter._send = AsyncMock(return_value=reply(200, {"code": "200000", "data": {"orderId": "abc"}}))
        request = OrderRequest(symbol="ETHUSDT", side=OrderSide.SELL, quantity=Decimal("0.25"))

        result = await adapter.place_order(self.CREDS, request)

        assert result.exchange_order_id == "abc"
        body = json.loads(adapter._send.await_args.args[1].body)
        assert body["symbol"] == "ETH-USDT"
        assert body["size"] == "0.25"
        assert body["type"] == "market"
        assert "clientOid" in body

    @pytest.mark.asyncio
    async def test_cancelled_order_status(self):
        adapter = KucoinAdapter()
        adapter._send = AsyncMock(return_value=reply(200, {
            "code": "200000",
            "data": {"id": "abc", "isActive": False, "cancelExist": True, "dealSize": "0", "dealFunds": "0"},
        }))

        result = await adapter.get_order(self.CREDS, "abc")

        assert result.status == "cancelled"
        assert adapter._send.await_args.args[1].path == "/api/v1/orders/abc"


# ============================================================
# LOGGING TESTS
# ============================================================

class TestCredentialMasking:
    """Tests for credential masking in request logs."""

    def test_mask_value(self):
        assert mask_value("abcdefgh") == "abcd...***"
        assert mask_value("abc") == "***"

    def test_mask_headers(self):
        masked = mask_headers({"X-MBX-APIKEY": "abcdefgh", "Content-Type": "application/json"})

        assert masked["X-MBX-APIKEY"] == "abcd...***"
        assert masked["Content-Type"] == "application/json"

    def test_mask_url_signature(self):
        url = mask_url("https://api.binance.com/api/v3/account?timestamp=1&signature=deadbeef")

        assert "deadbeef" not in url
        assert url.endswith("signature=***")
