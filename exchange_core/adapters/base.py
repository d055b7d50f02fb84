"""
Exchange Core - Exchange Adapter Base.

============================================================
PURPOSE
============================================================
Common capability interface for live exchange adapters:
- get_balances
- place_order
- get_order
- validate_credentials

DESIGN PRINCIPLES:
- Expected failures return inside result objects
- Requests are validated before any network call
- Reads are retried with backoff; place_order never is
- All HTTP goes through _send() so logging and error
  translation live in one place

============================================================
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

import aiohttp

from ..config import ExchangeEndpoints, RetryConfig
from ..errors import (
    TradingException,
    configuration_error,
    create_ambiguous_order_error,
    create_network_error,
    create_timeout_error,
    validation_error,
)
from ..signing import CredentialSigner, SignedRequest
from ..symbols import SymbolTranslator
from ..types import (
    Balance,
    BalancesResult,
    CredentialCheck,
    Credentials,
    ExchangeName,
    OrderRequest,
    OrderResult,
    OrderStatusResult,
    OrderType,
    ZERO,
)
from .logging_utils import AdapterLogger


logger = logging.getLogger(__name__)

T = TypeVar("T")


# ============================================================
# HTTP REPLY
# ============================================================

@dataclass
class HttpReply:
    """Raw HTTP reply with best-effort JSON decoding."""

    status: int
    text: str
    data: Any = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def retry_after_ms(self) -> Optional[int]:
        """Parse a Retry-After header given in seconds."""
        value = self.headers.get("Retry-After") or self.headers.get("retry-after")
        if not value:
            return None
        try:
            return int(float(value) * 1000)
        except ValueError:
            return None


# ============================================================
# BALANCE NORMALIZATION
# ============================================================

def normalize_balances(entries: Iterable[Tuple[str, Decimal, Decimal]]) -> List[Balance]:
    """
    Collapse raw (currency, available, total) entries.

    Zero totals are dropped and the first non-zero entry per
    canonical currency wins, so an exchange that reports the same
    asset under two codes is not double counted.
    """
    balances: Dict[str, Balance] = {}
    for currency, available, total in entries:
        if total == 0 and available == 0:
            continue
        key = currency.upper()
        if key in balances:
            continue
        balances[key] = Balance(currency=key, available=available, total=total)
    return list(balances.values())


# ============================================================
# EXCHANGE ADAPTER
# ============================================================

class ExchangeAdapter(ABC):
    """
    Abstract live exchange adapter.

    Subclasses implement the _fetch_balances / _submit_order /
    _fetch_order hooks and translate replies with _check_reply.
    """

    exchange: ExchangeName

    quote_currencies: Tuple[str, ...] = ("USDT",)
    """Balances counted by get_quote_balance()."""

    def __init__(
        self,
        signer: CredentialSigner,
        translator: SymbolTranslator,
        endpoints: Optional[ExchangeEndpoints] = None,
        retry_config: Optional[RetryConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._signer = signer
        self._translator = translator
        self._endpoints = endpoints or ExchangeEndpoints()
        self._retry = retry_config or RetryConfig()
        self._session = session
        self._owns_session = session is None
        self._log = AdapterLogger(self.exchange_id)

    @property
    def exchange_id(self) -> str:
        return self.exchange.value

    @property
    def translator(self) -> SymbolTranslator:
        return self._translator

    # --------------------------------------------------------
    # SESSION
    # --------------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._endpoints.request_timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this adapter created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "ExchangeAdapter":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # --------------------------------------------------------
    # PUBLIC OPERATIONS
    # --------------------------------------------------------

    async def get_balances(self, creds: Credentials) -> BalancesResult:
        """Query and normalize account balances. Retried on transient errors."""
        reason = self._signer.check_credentials(creds)
        if reason:
            return BalancesResult(success=False, error=configuration_error(self.exchange_id, reason, "get_balances"))

        try:
            entries = await self._with_retry("get_balances", lambda: self._fetch_balances(creds))
        except TradingException as exc:
            return BalancesResult(success=False, error=exc.error)

        return BalancesResult(success=True, balances=normalize_balances(entries))

    async def place_order(self, creds: Credentials, request: OrderRequest) -> OrderResult:
        """
        Place a live order.

        Never retried: a failure after the request may have reached the
        exchange is reported as an ambiguous NETWORK error.
        """
        reason = request.validate()
        if reason is None and request.order_type == OrderType.STOP:
            reason = "Stop orders are only supported in simulation"
        if reason:
            error = validation_error(reason, "place_order", request.symbol)
            error.exchange_id = self.exchange_id
            return OrderResult(success=False, error=error)

        reason = self._signer.check_credentials(creds)
        if reason:
            return OrderResult(success=False, error=configuration_error(self.exchange_id, reason, "place_order"))

        try:
            result = await self._submit_order(creds, request)
        except TradingException as exc:
            exc.error.symbol = exc.error.symbol or request.symbol
            self._log.log_order(
                request.symbol, request.side.value, request.order_type.value, error=exc.error.message
            )
            return OrderResult(success=False, error=exc.error)

        self._log.log_order(
            request.symbol,
            request.side.value,
            request.order_type.value,
            exchange_order_id=result.exchange_order_id,
            status=result.status,
        )
        return result

    async def get_order(
        self,
        creds: Credentials,
        order_id: str,
        symbol: Optional[str] = None,
    ) -> OrderStatusResult:
        """Look up a live order. Retried on transient errors."""
        if not order_id:
            return OrderStatusResult(success=False, error=validation_error("order_id is required", "get_order"))

        reason = self._signer.check_credentials(creds)
        if reason:
            return OrderStatusResult(success=False, error=configuration_error(self.exchange_id, reason, "get_order"))

        try:
            return await self._with_retry("get_order", lambda: self._fetch_order(creds, order_id, symbol))
        except TradingException as exc:
            return OrderStatusResult(success=False, order_id=order_id, error=exc.error)

    async def validate_credentials(self, creds: Credentials) -> CredentialCheck:
        """Credentials are valid when an authenticated balance query succeeds."""
        result = await self.get_balances(creds)
        if result.success:
            return CredentialCheck(valid=True, platform=self.exchange_id)
        return CredentialCheck(valid=False, error=result.error.message)

    async def get_quote_balance(self, creds: Credentials) -> Tuple[bool, Decimal, Optional[str]]:
        """
        Sum of the cash-like balances used to fund orders.

        Returns:
            (success, amount, error message)
        """
        result = await self.get_balances(creds)
        if not result.success:
            return False, ZERO, result.error.message
        total = sum(
            (b.available for b in result.balances if b.currency in self.quote_currencies),
            ZERO,
        )
        return True, total, None

    # --------------------------------------------------------
    # EXCHANGE HOOKS
    # --------------------------------------------------------

    @abstractmethod
    async def _fetch_balances(self, creds: Credentials) -> List[Tuple[str, Decimal, Decimal]]:
        """Return raw (canonical currency, available, total) entries."""
        pass

    @abstractmethod
    async def _submit_order(self, creds: Credentials, request: OrderRequest) -> OrderResult:
        pass

    @abstractmethod
    async def _fetch_order(
        self,
        creds: Credentials,
        order_id: str,
        symbol: Optional[str],
    ) -> OrderStatusResult:
        pass

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    async def _with_retry(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """Run a read operation, retrying retryable errors with backoff."""
        attempt = 0
        while True:
            try:
                return await call()
            except TradingException as exc:
                if not exc.error.is_retryable() or attempt >= self._retry.max_retries:
                    raise
                delay = self._retry.get_delay(attempt, exc.error.retry_after_ms)
                self._log.warning(
                    f"{operation} failed ({exc.error.code}), retry {attempt + 1}/"
                    f"{self._retry.max_retries} in {delay:.2f}s"
                )
                attempt += 1
                await asyncio.sleep(delay)

    async def _send(
        self,
        base_url: str,
        signed: SignedRequest,
        operation: str,
        idempotent: bool = True,
    ) -> HttpReply:
        """
        Send a signed request.

        Transport failures raise TradingException. For non-idempotent
        requests any failure after the connection was established is
        reported as ambiguous.
        """
        session = await self._get_session()
        url = f"{base_url}{signed.path_with_query}"
        request_id = self._log.log_request(operation, signed.method, url, signed.headers, signed.body)
        started = time.monotonic()

        try:
            async with session.request(
                signed.method,
                url,
                data=signed.body,
                headers=signed.headers,
            ) as response:
                text = await response.text()
                reply = HttpReply(
                    status=response.status,
                    text=text,
                    data=_decode_json(text),
                    headers=dict(response.headers),
                )
        except aiohttp.ClientConnectorError as e:
            # Connection never established, nothing reached the exchange
            raise TradingException(create_network_error(self.exchange_id, f"Connection failed: {e}", operation))
        except asyncio.TimeoutError:
            if not idempotent:
                raise TradingException(create_ambiguous_order_error(self.exchange_id, "Request timed out"))
            timeout_ms = int(self._endpoints.request_timeout_seconds * 1000)
            raise TradingException(create_timeout_error(self.exchange_id, timeout_ms, operation))
        except aiohttp.ClientError as e:
            if not idempotent:
                raise TradingException(create_ambiguous_order_error(self.exchange_id, f"Network error: {e}"))
            raise TradingException(create_network_error(self.exchange_id, f"Network error: {e}", operation))

        latency_ms = (time.monotonic() - started) * 1000
        self._log.log_response(
            operation,
            request_id,
            reply.status,
            latency_ms,
            reply.ok,
            response_text=None if reply.ok else reply.text,
        )
        return reply


def _decode_json(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None
