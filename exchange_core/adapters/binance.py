"""
Exchange Core - Binance Spot Adapter.

============================================================
PURPOSE
============================================================
Live adapter for the Binance spot REST API.

- Base URL chosen per credential by PlatformDetector
  (global vs US)
- Market buys sized by quote amount use quoteOrderQty
- Limit orders are GTC

============================================================
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from ..config import ExchangeEndpoints, RetryConfig
from ..errors import TradingException, map_binance_error, validation_error
from ..platform_detector import DetectionResult, PlatformCache, PlatformDetector, ProbeResult, ProbeStatus
from ..signing import BinanceSigner
from ..symbols import BinanceSymbolTranslator
from ..types import (
    CredentialCheck,
    Credentials,
    ExchangeName,
    OrderRequest,
    OrderResult,
    OrderStatusResult,
    OrderType,
    to_decimal,
)
from .base import ExchangeAdapter, HttpReply


logger = logging.getLogger(__name__)


ACCOUNT_PATH = "/api/v3/account"
ORDER_PATH = "/api/v3/order"


class BinanceAdapter(ExchangeAdapter):
    """
    Binance spot exchange adapter.

    Implements the ExchangeAdapter interface for the Binance spot API.
    """

    exchange = ExchangeName.BINANCE
    quote_currencies = ("USDT", "USD")

    def __init__(
        self,
        endpoints: Optional[ExchangeEndpoints] = None,
        platform_cache: Optional[PlatformCache] = None,
        signer: Optional[BinanceSigner] = None,
        retry_config: Optional[RetryConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize Binance adapter.

        Args:
            endpoints: Base URLs and timeouts
            platform_cache: Process-wide platform cache service
            signer: Request signer (injectable clock for tests)
            retry_config: Retry policy for reads
            session: Shared aiohttp session
        """
        endpoints = endpoints or ExchangeEndpoints()
        super().__init__(
            signer=signer or BinanceSigner(recv_window_ms=endpoints.binance_recv_window_ms),
            translator=BinanceSymbolTranslator(),
            endpoints=endpoints,
            retry_config=retry_config,
            session=session,
        )
        self._detector = PlatformDetector(
            bases=endpoints.binance_bases,
            probe=self._probe,
            cache=platform_cache,
            probe_timeout_seconds=endpoints.probe_timeout_seconds,
            exchange_id=self.exchange_id,
        )

    @property
    def detector(self) -> PlatformDetector:
        return self._detector

    # --------------------------------------------------------
    # PLATFORM DETECTION
    # --------------------------------------------------------

    async def _probe(self, base_url: str, creds: Credentials) -> ProbeResult:
        """Authenticated account read against one base."""
        data = await self._signed_request(base_url, creds, "GET", ACCOUNT_PATH, operation="probe")
        entries = self._parse_balances(data)
        has_funds = any(total > 0 for _, _, total in entries)
        status = ProbeStatus.OK_WITH_FUNDS if has_funds else ProbeStatus.OK_NO_FUNDS
        return ProbeResult(base_url=base_url, status=status)

    async def _resolve_base(self, creds: Credentials) -> str:
        detection: DetectionResult = await self._detector.resolve(creds)
        if not detection.success:
            raise detection.error.to_exception()
        return detection.base_url

    def invalidate_platform(self, api_key: str) -> bool:
        """Forget the detected platform after credentials change."""
        return self._detector.cache.invalidate(api_key)

    async def validate_credentials(self, creds: Credentials) -> CredentialCheck:
        """Valid when any regional base authenticates; reports which one."""
        reason = self._signer.check_credentials(creds)
        if reason:
            return CredentialCheck(valid=False, error=reason)

        detection = await self._detector.resolve(creds)
        if not detection.success:
            return CredentialCheck(valid=False, error=detection.error.message)
        return CredentialCheck(valid=True, platform=detection.base_url)

    # --------------------------------------------------------
    # HOOKS
    # --------------------------------------------------------

    async def _fetch_balances(self, creds: Credentials) -> List[Tuple[str, Decimal, Decimal]]:
        base_url = await self._resolve_base(creds)
        data = await self._signed_request(base_url, creds, "GET", ACCOUNT_PATH, operation="get_balances")
        return self._parse_balances(data)

    async def _submit_order(self, creds: Credentials, request: OrderRequest) -> OrderResult:
        base_url = await self._resolve_base(creds)

        params: Dict[str, Any] = {
            "symbol": self._translator.to_native(request.symbol),
            "side": request.side.value.upper(),
            "type": request.order_type.value.upper(),
        }
        if request.uses_quote_amount:
            params["quoteOrderQty"] = str(request.quote_amount)
        else:
            params["quantity"] = str(request.quantity)
        if request.order_type == OrderType.LIMIT:
            params["timeInForce"] = "GTC"
            params["price"] = str(request.price)

        data = await self._signed_request(
            base_url, creds, "POST", ORDER_PATH, params, operation="place_order", idempotent=False
        )
        return OrderResult(
            success=True,
            exchange_order_id=str(data.get("orderId")),
            status=data.get("status"),
            executed_quantity=to_decimal(data.get("executedQty")),
            executed_quote_amount=to_decimal(data.get("cummulativeQuoteQty")),
            raw=data,
        )

    async def _fetch_order(
        self,
        creds: Credentials,
        order_id: str,
        symbol: Optional[str],
    ) -> OrderStatusResult:
        if not symbol:
            raise TradingException(validation_error("Binance order lookup requires a symbol", "get_order"))

        base_url = await self._resolve_base(creds)
        params = {"symbol": self._translator.to_native(symbol), "orderId": order_id}
        data = await self._signed_request(base_url, creds, "GET", ORDER_PATH, params, operation="get_order")
        return OrderStatusResult(
            success=True,
            order_id=str(data.get("orderId", order_id)),
            status=data.get("status"),
            executed_quantity=to_decimal(data.get("executedQty")),
            executed_quote_amount=to_decimal(data.get("cummulativeQuoteQty")),
            raw=data,
        )

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    async def _signed_request(
        self,
        base_url: str,
        creds: Credentials,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        operation: str = "request",
        idempotent: bool = True,
    ) -> Dict[str, Any]:
        signed = self._signer.sign(creds, method, path, params)
        reply = await self._send(base_url, signed, operation, idempotent=idempotent)
        return self._check_reply(reply, operation)

    def _check_reply(self, reply: HttpReply, operation: str) -> Dict[str, Any]:
        """Return the JSON body or raise the mapped error."""
        data = reply.data if isinstance(reply.data, dict) else {}
        if reply.ok and "code" not in data:
            return data

        code = int(data.get("code", -1)) if data else -1
        message = data.get("msg") or (reply.text or "").strip()[:200] or f"HTTP {reply.status}"
        if reply.status == 451 and "restrict" not in message.lower():
            message = f"Geo-restricted: {message}"

        error = map_binance_error(code, message, reply.status)
        error.operation = operation
        error.retry_after_ms = reply.retry_after_ms()
        raise error.to_exception()

    @staticmethod
    def _parse_balances(data: Dict[str, Any]) -> List[Tuple[str, Decimal, Decimal]]:
        entries = []
        for item in data.get("balances", []):
            free = to_decimal(item.get("free"))
            locked = to_decimal(item.get("locked"))
            entries.append((item.get("asset", "").upper(), free, free + locked))
        return entries
