"""
Error Mapping Tests.

============================================================
PURPOSE
============================================================
Tests for exchange error translation into TradingError.

TEST CATEGORIES:
- Binance code mapping
- Kraken string mapping
- KuCoin code mapping
- HTTP fallback and geo restriction
- Exception wrapping

============================================================
"""

import pytest

from exchange_core.errors import (
    AlreadyTerminalError,
    AuthError,
    ErrorCategory,
    GeoRestrictedError,
    RetryEligibility,
    TradingException,
    already_terminal_error,
    classify_http_status,
    create_ambiguous_order_error,
    create_network_error,
    looks_geo_restricted,
    map_binance_error,
    map_kraken_error,
    map_kucoin_error,
    validation_error,
)


# ============================================================
# BINANCE
# ============================================================

class TestBinanceErrorMapping:
    """Tests for Binance error mapping."""

    def test_auth_error(self):
        error = map_binance_error(-2015, "Invalid API-key, IP, or permissions for action.", 401)

        assert error.category == ErrorCategory.AUTHENTICATION
        assert error.retry_eligible == RetryEligibility.NO_RETRY
        assert error.exchange_id == "binance"
        assert error.code == "BINANCE_-2015"

    def test_rate_limit(self):
        error = map_binance_error(-1003, "Too many requests", 429)

        assert error.category == ErrorCategory.RATE_LIMITED
        assert error.is_retryable() is True

    def test_new_order_rejected_with_balance_message(self):
        """Test -2010 is split on the message text."""
        error = map_binance_error(-2010, "Account has insufficient balance for requested action.", 400)

        assert error.category == ErrorCategory.INSUFFICIENT_FUNDS

    def test_new_order_rejected_generic(self):
        error = map_binance_error(-2010, "Order would immediately match and take.", 400)

        assert error.category == ErrorCategory.REJECTED

    def test_geo_restriction(self):
        """Test the restricted-location response."""
        error = map_binance_error(
            0,
            "Service unavailable from a restricted location according to 'b. Eligibility'",
            451,
        )

        assert error.category == ErrorCategory.GEO_RESTRICTED

    def test_unknown_code_falls_back_to_http(self):
        error = map_binance_error(-9999, "Something", 503)

        assert error.category == ErrorCategory.NETWORK


# ============================================================
# KRAKEN
# ============================================================

class TestKrakenErrorMapping:
    """Tests for Kraken error mapping."""

    def test_invalid_key(self):
        error = map_kraken_error("EAPI:Invalid key")

        assert error.category == ErrorCategory.AUTHENTICATION
        assert error.exchange_code == "EAPI"

    def test_insufficient_funds(self):
        error = map_kraken_error("EOrder:Insufficient funds")

        assert error.category == ErrorCategory.INSUFFICIENT_FUNDS

    def test_prefix_with_detail(self):
        """Test messages with trailing detail still match."""
        error = map_kraken_error("EGeneral:Invalid arguments:volume minimum not met")

        assert error.category == ErrorCategory.REJECTED

    def test_unknown_order_prefix(self):
        error = map_kraken_error("EOrder:Something new")

        assert error.category == ErrorCategory.REJECTED

    def test_service_unavailable_retryable(self):
        error = map_kraken_error("EService:Unavailable")

        assert error.category == ErrorCategory.NETWORK
        assert error.is_retryable() is True


# ============================================================
# KUCOIN
# ============================================================

class TestKucoinErrorMapping:
    """Tests for KuCoin error mapping."""

    def test_invalid_passphrase(self):
        error = map_kucoin_error("400005", "Invalid KC-API-PASSPHRASE", 401)

        assert error.category == ErrorCategory.AUTHENTICATION

    def test_balance(self):
        error = map_kucoin_error(200004, "Balance insufficient!", 200)

        assert error.category == ErrorCategory.INSUFFICIENT_FUNDS
        assert error.exchange_code == "200004"

    def test_geo_restriction(self):
        error = map_kucoin_error("400302", "Our services are currently unavailable in the U.S.", 403)

        assert error.category == ErrorCategory.GEO_RESTRICTED


# ============================================================
# HTTP CLASSIFICATION
# ============================================================

class TestHttpClassification:
    """Tests for the status code fallback."""

    @pytest.mark.parametrize("status,category", [
        (401, ErrorCategory.AUTHENTICATION),
        (403, ErrorCategory.AUTHENTICATION),
        (404, ErrorCategory.NOT_FOUND),
        (418, ErrorCategory.RATE_LIMITED),
        (429, ErrorCategory.RATE_LIMITED),
        (400, ErrorCategory.REJECTED),
        (502, ErrorCategory.NETWORK),
        (451, ErrorCategory.GEO_RESTRICTED),
        (None, ErrorCategory.UNKNOWN),
    ])
    def test_status(self, status, category):
        assert classify_http_status(status)[0] == category

    def test_403_without_location_is_not_geo(self):
        assert looks_geo_restricted(403, "Forbidden") is False

    def test_403_with_location_is_geo(self):
        assert looks_geo_restricted(403, "Not available in your region") is True

    @pytest.mark.parametrize("status,message", [
        (400, "Invalid region parameter"),
        (400, "Country code is required for this bank transfer"),
        (403, "Region selection is locked for this sub-account"),
        (400, "Eligibility check pending for this product"),
    ])
    def test_location_words_alone_are_not_geo(self, status, message):
        assert looks_geo_restricted(status, message) is False
        assert classify_http_status(status, message)[0] != ErrorCategory.GEO_RESTRICTED

    def test_restricted_location_phrase_is_geo(self):
        message = "Service unavailable from a restricted location according to 'b. Eligibility'"

        assert looks_geo_restricted(403, message) is True
        assert classify_http_status(400, message)[0] == ErrorCategory.GEO_RESTRICTED


# ============================================================
# EXCEPTIONS
# ============================================================

class TestTradingException:
    """Tests for error to exception wrapping."""

    def test_category_selects_exception_class(self):
        error = map_binance_error(-2015, "Invalid API-key", 401)

        exc = error.to_exception()

        assert isinstance(exc, AuthError)
        assert exc.category == ErrorCategory.AUTHENTICATION
        assert exc.error is error

    def test_geo_exception(self):
        error = map_binance_error(0, "restricted location", 451)

        with pytest.raises(GeoRestrictedError):
            raise error.to_exception()

    def test_already_terminal(self):
        error = already_terminal_error("Order 7 is no longer pending", operation="cancel_order")

        assert isinstance(error.to_exception(), AlreadyTerminalError)
        assert error.code == "ALREADY_TERMINAL"

    def test_unmapped_category_uses_base_exception(self):
        error = map_kraken_error("EQuery:Unknown asset pair")

        exc = error.to_exception()

        assert type(exc) is TradingException

    def test_to_dict(self):
        error = validation_error("quantity must be positive", operation="place_order", symbol="BTCUSDT")

        data = error.to_dict()

        assert data["category"] == "VALIDATION"
        assert data["symbol"] == "BTCUSDT"
        assert data["retry_eligible"] == "NO_RETRY"


# ============================================================
# NETWORK HELPERS
# ============================================================

class TestNetworkHelpers:
    """Tests for transport error constructors."""

    def test_network_error_retryable(self):
        error = create_network_error("kraken", "Connection reset", operation="get_balances")

        assert error.is_retryable() is True
        assert error.code == "KRAKEN_NETWORK_ERROR"

    def test_ambiguous_order_not_retryable(self):
        """Test an order with unknown outcome must never be resent blindly."""
        error = create_ambiguous_order_error("binance", "Timed out")

        assert error.category == ErrorCategory.NETWORK
        assert error.is_retryable() is False
        assert "query order status" in error.message
