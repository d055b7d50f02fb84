"""
Exchange Core - Error Taxonomy and Mapping.

============================================================
PURPOSE
============================================================
Unified error handling for exchange adapters and the
simulation engines:
- One error taxonomy across exchanges and the simulator
- Exchange-specific error code mapping
- Retry eligibility classification
- Error context preservation

Expected failures travel inside result objects as TradingError.
TradingException (and its per-category subclasses) is raised
inside adapters and by raise_for_error().

============================================================
ERROR CATEGORIES
============================================================
NETWORK            - Connection issues, timeouts, exchange 5xx
AUTHENTICATION     - Invalid or expired credentials
GEO_RESTRICTED     - Service unavailable from this region
VALIDATION         - Malformed request, rejected before the network
INSUFFICIENT_FUNDS - Balance, holdings or margin too low
ALREADY_TERMINAL   - Order/position no longer pending/open
RATE_LIMITED       - Too many requests
INVALID_SYMBOL     - Unknown trading pair
REJECTED           - Exchange refused the order
NOT_FOUND          - Entity does not exist or is not owned by caller
CONFIGURATION      - Bad credential encoding, missing passphrase
UNKNOWN            - Unclassified

============================================================
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any, Tuple, Type


logger = logging.getLogger(__name__)


# ============================================================
# ERROR TAXONOMY
# ============================================================

class ErrorCategory(Enum):
    """Standardized error categories."""

    NETWORK = "NETWORK"
    AUTHENTICATION = "AUTHENTICATION"
    GEO_RESTRICTED = "GEO_RESTRICTED"
    VALIDATION = "VALIDATION"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    ALREADY_TERMINAL = "ALREADY_TERMINAL"
    RATE_LIMITED = "RATE_LIMITED"
    INVALID_SYMBOL = "INVALID_SYMBOL"
    REJECTED = "REJECTED"
    NOT_FOUND = "NOT_FOUND"
    CONFIGURATION = "CONFIGURATION"
    UNKNOWN = "UNKNOWN"


class RetryEligibility(Enum):
    """Whether error is eligible for retry."""

    RETRY = "RETRY"           # Safe to retry
    NO_RETRY = "NO_RETRY"     # Should not retry
    BACKOFF = "BACKOFF"       # Retry with exponential backoff


DEFAULT_RETRY: Dict[ErrorCategory, RetryEligibility] = {
    ErrorCategory.NETWORK: RetryEligibility.RETRY,
    ErrorCategory.RATE_LIMITED: RetryEligibility.BACKOFF,
}


# ============================================================
# TRADING ERROR
# ============================================================

@dataclass
class TradingError:
    """
    Standardized error.

    Provides unified error representation across exchanges and
    the simulation engines.
    """

    # Core fields
    category: ErrorCategory
    code: str               # Normalized error code
    message: str            # Human-readable reason

    # Retry info
    retry_eligible: RetryEligibility = RetryEligibility.NO_RETRY
    retry_after_ms: Optional[int] = None

    # Original error info
    exchange_code: Optional[str] = None
    exchange_message: Optional[str] = None
    http_status: Optional[int] = None

    # Context
    exchange_id: Optional[str] = None
    operation: Optional[str] = None
    symbol: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "category": self.category.value,
            "code": self.code,
            "message": self.message,
            "retry_eligible": self.retry_eligible.value,
            "retry_after_ms": self.retry_after_ms,
            "exchange_code": self.exchange_code,
            "exchange_message": self.exchange_message,
            "http_status": self.http_status,
            "exchange_id": self.exchange_id,
            "operation": self.operation,
            "symbol": self.symbol,
        }

    def is_retryable(self) -> bool:
        """Check if error is retryable."""
        return self.retry_eligible in (RetryEligibility.RETRY, RetryEligibility.BACKOFF)

    def to_exception(self) -> "TradingException":
        """Wrap in the exception class matching the category."""
        exc_class = EXCEPTION_CLASSES.get(self.category, TradingException)
        return exc_class(self)

    def __str__(self) -> str:
        """String representation."""
        return f"[{self.category.value}] {self.code}: {self.message}"


# ============================================================
# EXCEPTIONS
# ============================================================

class TradingException(Exception):
    """Exception wrapper for TradingError."""

    def __init__(self, error: TradingError):
        self.error = error
        super().__init__(str(error))

    @property
    def category(self) -> ErrorCategory:
        return self.error.category


class NetworkError(TradingException):
    """Transient transport failure. Reads may be retried."""


class AuthError(TradingException):
    """Invalid or expired credentials. Never retried."""


class GeoRestrictedError(TradingException):
    """Exchange refuses service from this region."""


class ValidationError(TradingException):
    """Malformed request, rejected before any network call."""


class InsufficientFundsError(TradingException):
    """Not enough balance, holdings or margin."""


class AlreadyTerminalError(TradingException):
    """Entity already left its pending/open state."""


class RateLimitedError(TradingException):
    """Rate limit hit. Retry after backoff."""


class ConfigurationError(TradingException):
    """Credential material or configuration is malformed."""


EXCEPTION_CLASSES: Dict[ErrorCategory, Type[TradingException]] = {
    ErrorCategory.NETWORK: NetworkError,
    ErrorCategory.AUTHENTICATION: AuthError,
    ErrorCategory.GEO_RESTRICTED: GeoRestrictedError,
    ErrorCategory.VALIDATION: ValidationError,
    ErrorCategory.INSUFFICIENT_FUNDS: InsufficientFundsError,
    ErrorCategory.ALREADY_TERMINAL: AlreadyTerminalError,
    ErrorCategory.RATE_LIMITED: RateLimitedError,
    ErrorCategory.CONFIGURATION: ConfigurationError,
}


# ============================================================
# GENERIC CONSTRUCTORS
# ============================================================

def make_error(
    category: ErrorCategory,
    message: str,
    code: Optional[str] = None,
    operation: Optional[str] = None,
    symbol: Optional[str] = None,
    exchange_id: Optional[str] = None,
) -> TradingError:
    """Create an error with the default retry policy for its category."""
    return TradingError(
        category=category,
        code=code or category.value,
        message=message,
        retry_eligible=DEFAULT_RETRY.get(category, RetryEligibility.NO_RETRY),
        operation=operation,
        symbol=symbol,
        exchange_id=exchange_id,
    )


def validation_error(message: str, operation: str = None, symbol: str = None) -> TradingError:
    return make_error(ErrorCategory.VALIDATION, message, operation=operation, symbol=symbol)


def insufficient_funds_error(message: str, operation: str = None, symbol: str = None) -> TradingError:
    return make_error(ErrorCategory.INSUFFICIENT_FUNDS, message, operation=operation, symbol=symbol)


def already_terminal_error(message: str, operation: str = None) -> TradingError:
    return make_error(ErrorCategory.ALREADY_TERMINAL, message, operation=operation)


def not_found_error(message: str, operation: str = None) -> TradingError:
    return make_error(ErrorCategory.NOT_FOUND, message, operation=operation)


def configuration_error(exchange_id: str, message: str, operation: str = None) -> TradingError:
    return make_error(
        ErrorCategory.CONFIGURATION,
        message,
        code=f"{exchange_id.upper()}_CONFIGURATION",
        operation=operation,
        exchange_id=exchange_id,
    )


# ============================================================
# HTTP CLASSIFICATION
# ============================================================

GEO_RESTRICTION_MARKERS = (
    "restricted location",
    "geo-restricted",
    "geo restricted",
    "not available in your country",
    "not available in your region",
    "services are currently unavailable in",
)


def looks_geo_restricted(http_status: Optional[int], message: Optional[str]) -> bool:
    """
    Decide whether a response signals a regional restriction.

    HTTP 451 always does; 403 only when the message names the location.
    """
    if http_status == 451:
        return True
    text = (message or "").lower()
    if any(marker in text for marker in GEO_RESTRICTION_MARKERS):
        return http_status in (None, 400, 403)
    return False


def classify_http_status(
    http_status: Optional[int],
    message: Optional[str] = None,
) -> Tuple[ErrorCategory, RetryEligibility]:
    """Fallback classification when the exchange code is unknown."""
    if looks_geo_restricted(http_status, message):
        return ErrorCategory.GEO_RESTRICTED, RetryEligibility.NO_RETRY
    if http_status in (418, 429):
        return ErrorCategory.RATE_LIMITED, RetryEligibility.BACKOFF
    if http_status in (401, 403):
        return ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY
    if http_status == 404:
        return ErrorCategory.NOT_FOUND, RetryEligibility.NO_RETRY
    if http_status and http_status >= 500:
        return ErrorCategory.NETWORK, RetryEligibility.RETRY
    if http_status == 400:
        return ErrorCategory.REJECTED, RetryEligibility.NO_RETRY
    return ErrorCategory.UNKNOWN, RetryEligibility.NO_RETRY


# ============================================================
# BINANCE ERROR MAPPING
# ============================================================

BINANCE_ERROR_MAP: Dict[int, Tuple[ErrorCategory, RetryEligibility]] = {
    # Rate limiting
    -1003: (ErrorCategory.RATE_LIMITED, RetryEligibility.BACKOFF),
    -1015: (ErrorCategory.RATE_LIMITED, RetryEligibility.BACKOFF),

    # Authentication
    -1002: (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    -1022: (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    -2014: (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    -2015: (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),

    # Clock skew, safe to retry with a fresh timestamp
    -1021: (ErrorCategory.NETWORK, RetryEligibility.RETRY),

    # Order rejected
    -1013: (ErrorCategory.REJECTED, RetryEligibility.NO_RETRY),
    -1100: (ErrorCategory.REJECTED, RetryEligibility.NO_RETRY),
    -1102: (ErrorCategory.REJECTED, RetryEligibility.NO_RETRY),
    -1111: (ErrorCategory.REJECTED, RetryEligibility.NO_RETRY),

    # Symbol
    -1121: (ErrorCategory.INVALID_SYMBOL, RetryEligibility.NO_RETRY),

    # Insufficient funds
    -2018: (ErrorCategory.INSUFFICIENT_FUNDS, RetryEligibility.NO_RETRY),
    -2019: (ErrorCategory.INSUFFICIENT_FUNDS, RetryEligibility.NO_RETRY),

    # Order not found
    -2011: (ErrorCategory.NOT_FOUND, RetryEligibility.NO_RETRY),
    -2013: (ErrorCategory.NOT_FOUND, RetryEligibility.NO_RETRY),

    # Exchange internal
    -1000: (ErrorCategory.NETWORK, RetryEligibility.RETRY),
    -1001: (ErrorCategory.NETWORK, RetryEligibility.RETRY),
    -1006: (ErrorCategory.NETWORK, RetryEligibility.RETRY),
    -1007: (ErrorCategory.NETWORK, RetryEligibility.RETRY),
}


def map_binance_error(
    code: int,
    message: str,
    http_status: int = None,
) -> TradingError:
    """
    Map Binance error to unified format.

    Args:
        code: Binance error code
        message: Binance error message
        http_status: HTTP status code

    Returns:
        Unified TradingError
    """
    if looks_geo_restricted(http_status, message):
        category, retry = ErrorCategory.GEO_RESTRICTED, RetryEligibility.NO_RETRY
    elif code == -2010:
        # NEW_ORDER_REJECTED covers both balance and generic rejections
        if "insufficient" in (message or "").lower():
            category, retry = ErrorCategory.INSUFFICIENT_FUNDS, RetryEligibility.NO_RETRY
        else:
            category, retry = ErrorCategory.REJECTED, RetryEligibility.NO_RETRY
    elif code in BINANCE_ERROR_MAP:
        category, retry = BINANCE_ERROR_MAP[code]
    else:
        category, retry = classify_http_status(http_status, message)

    return TradingError(
        category=category,
        code=f"BINANCE_{code}",
        message=message,
        retry_eligible=retry,
        exchange_code=str(code),
        exchange_message=message,
        http_status=http_status,
        exchange_id="binance",
    )


# ============================================================
# KRAKEN ERROR MAPPING
# ============================================================

# Kraken reports errors as "<severity><category>:<message>" strings
KRAKEN_ERROR_MAP: Dict[str, Tuple[ErrorCategory, RetryEligibility]] = {
    # Authentication
    "EAPI:Invalid key": (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    "EAPI:Invalid signature": (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    "EGeneral:Permission denied": (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    "EAPI:Feature disabled": (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),

    # Nonce went backwards, a fresh nonce fixes it
    "EAPI:Invalid nonce": (ErrorCategory.NETWORK, RetryEligibility.RETRY),

    # Rate limiting
    "EAPI:Rate limit exceeded": (ErrorCategory.RATE_LIMITED, RetryEligibility.BACKOFF),
    "EOrder:Rate limit exceeded": (ErrorCategory.RATE_LIMITED, RetryEligibility.BACKOFF),
    "EGeneral:Too many requests": (ErrorCategory.RATE_LIMITED, RetryEligibility.BACKOFF),

    # Funds
    "EOrder:Insufficient funds": (ErrorCategory.INSUFFICIENT_FUNDS, RetryEligibility.NO_RETRY),
    "EOrder:Insufficient margin": (ErrorCategory.INSUFFICIENT_FUNDS, RetryEligibility.NO_RETRY),

    # Symbol
    "EQuery:Unknown asset pair": (ErrorCategory.INVALID_SYMBOL, RetryEligibility.NO_RETRY),
    "EGeneral:Unknown asset pair": (ErrorCategory.INVALID_SYMBOL, RetryEligibility.NO_RETRY),

    # Orders
    "EOrder:Unknown order": (ErrorCategory.NOT_FOUND, RetryEligibility.NO_RETRY),
    "EOrder:Order minimum not met": (ErrorCategory.REJECTED, RetryEligibility.NO_RETRY),
    "EGeneral:Invalid arguments": (ErrorCategory.REJECTED, RetryEligibility.NO_RETRY),

    # Exchange internal
    "EService:Unavailable": (ErrorCategory.NETWORK, RetryEligibility.RETRY),
    "EService:Busy": (ErrorCategory.NETWORK, RetryEligibility.RETRY),
    "EGeneral:Internal error": (ErrorCategory.NETWORK, RetryEligibility.RETRY),
}

KRAKEN_PREFIX_MAP: Dict[str, Tuple[ErrorCategory, RetryEligibility]] = {
    "EService:": (ErrorCategory.NETWORK, RetryEligibility.RETRY),
    "EOrder:": (ErrorCategory.REJECTED, RetryEligibility.NO_RETRY),
    "EFunding:": (ErrorCategory.REJECTED, RetryEligibility.NO_RETRY),
}


def map_kraken_error(
    error_text: str,
    http_status: int = None,
) -> TradingError:
    """
    Map a Kraken error string to unified format.

    Exact matches come first, then prefix matches (the message part
    after the colon sometimes carries extra detail), then HTTP status.
    """
    entry = None
    for known, mapped in KRAKEN_ERROR_MAP.items():
        if error_text == known or error_text.startswith(known):
            entry = mapped
            break

    if entry is None and looks_geo_restricted(http_status, error_text):
        entry = (ErrorCategory.GEO_RESTRICTED, RetryEligibility.NO_RETRY)

    if entry is None:
        for prefix, mapped in KRAKEN_PREFIX_MAP.items():
            if error_text.startswith(prefix):
                entry = mapped
                break

    if entry is None:
        entry = classify_http_status(http_status, error_text)

    category, retry = entry
    code = error_text.split(":", 1)[0] if ":" in error_text else error_text

    return TradingError(
        category=category,
        code=f"KRAKEN_{code}",
        message=error_text,
        retry_eligible=retry,
        exchange_code=code,
        exchange_message=error_text,
        http_status=http_status,
        exchange_id="kraken",
    )


# ============================================================
# KUCOIN ERROR MAPPING
# ============================================================

KUCOIN_ERROR_MAP: Dict[str, Tuple[ErrorCategory, RetryEligibility]] = {
    # Authentication
    "400001": (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    "400003": (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    "400004": (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    "400005": (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    "400006": (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    "400007": (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    "411100": (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),

    # Timestamp drift
    "400002": (ErrorCategory.NETWORK, RetryEligibility.RETRY),

    # Rate limiting
    "429000": (ErrorCategory.RATE_LIMITED, RetryEligibility.BACKOFF),

    # Funds
    "200004": (ErrorCategory.INSUFFICIENT_FUNDS, RetryEligibility.NO_RETRY),
    "115013": (ErrorCategory.INSUFFICIENT_FUNDS, RetryEligibility.NO_RETRY),

    # Symbol
    "900001": (ErrorCategory.INVALID_SYMBOL, RetryEligibility.NO_RETRY),

    # Orders
    "400100": (ErrorCategory.REJECTED, RetryEligibility.NO_RETRY),
    "300000": (ErrorCategory.REJECTED, RetryEligibility.NO_RETRY),
    "400400": (ErrorCategory.NOT_FOUND, RetryEligibility.NO_RETRY),
    "404000": (ErrorCategory.NOT_FOUND, RetryEligibility.NO_RETRY),

    # Exchange internal
    "500000": (ErrorCategory.NETWORK, RetryEligibility.RETRY),
}


def map_kucoin_error(
    code: str,
    message: str,
    http_status: int = None,
) -> TradingError:
    """
    Map KuCoin error to unified format.

    Args:
        code: KuCoin error code (string, "200000" is success)
        message: KuCoin error message
        http_status: HTTP status code

    Returns:
        Unified TradingError
    """
    code = str(code)
    if looks_geo_restricted(http_status, message):
        category, retry = ErrorCategory.GEO_RESTRICTED, RetryEligibility.NO_RETRY
    elif code in KUCOIN_ERROR_MAP:
        category, retry = KUCOIN_ERROR_MAP[code]
    else:
        category, retry = classify_http_status(http_status, message)

    return TradingError(
        category=category,
        code=f"KUCOIN_{code}",
        message=message,
        retry_eligible=retry,
        exchange_code=code,
        exchange_message=message,
        http_status=http_status,
        exchange_id="kucoin",
    )


# ============================================================
# NETWORK ERROR HELPERS
# ============================================================

def create_network_error(
    exchange_id: str,
    message: str,
    operation: str = None,
) -> TradingError:
    """Create network error."""
    return TradingError(
        category=ErrorCategory.NETWORK,
        code=f"{exchange_id.upper()}_NETWORK_ERROR",
        message=message,
        retry_eligible=RetryEligibility.RETRY,
        exchange_id=exchange_id,
        operation=operation,
    )


def create_timeout_error(
    exchange_id: str,
    timeout_ms: int,
    operation: str = None,
) -> TradingError:
    """Create timeout error."""
    return TradingError(
        category=ErrorCategory.NETWORK,
        code=f"{exchange_id.upper()}_TIMEOUT",
        message=f"Request timed out after {timeout_ms}ms",
        retry_eligible=RetryEligibility.RETRY,
        exchange_id=exchange_id,
        operation=operation,
    )


def create_rate_limit_error(
    exchange_id: str,
    retry_after_ms: int = None,
) -> TradingError:
    """Create rate limit error."""
    return TradingError(
        category=ErrorCategory.RATE_LIMITED,
        code=f"{exchange_id.upper()}_RATE_LIMIT",
        message="Rate limit exceeded",
        retry_eligible=RetryEligibility.BACKOFF,
        retry_after_ms=retry_after_ms,
        exchange_id=exchange_id,
    )


def create_ambiguous_order_error(
    exchange_id: str,
    message: str,
) -> TradingError:
    """
    Order placement failed after the request may have reached the exchange.

    Never retried. The caller must query order status first.
    """
    return TradingError(
        category=ErrorCategory.NETWORK,
        code=f"{exchange_id.upper()}_ORDER_STATUS_UNKNOWN",
        message=f"{message}. Order state unknown; query order status before retrying",
        retry_eligible=RetryEligibility.NO_RETRY,
        exchange_id=exchange_id,
        operation="place_order",
    )
