"""
Exchange Core - Kraken Spot Adapter.

============================================================
PURPOSE
============================================================
Live adapter for the Kraken private REST API.

- All private calls are POST with a nonce in the form body
- Balance asset codes (XXBT, ZUSD, ...) normalized to canonical
- Orders trade against the quote currency the account actually
  holds most of (USD, USDT or USDC)
- Market buys sized by quote amount use oflags=viqc

============================================================
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from ..config import ExchangeEndpoints, RetryConfig
from ..errors import (
    ErrorCategory,
    TradingError,
    TradingException,
    classify_http_status,
    map_kraken_error,
)
from ..signing import KrakenSigner
from ..symbols import KrakenSymbolTranslator
from ..types import (
    Credentials,
    ExchangeName,
    OrderRequest,
    OrderResult,
    OrderStatusResult,
    OrderType,
    ZERO,
    to_decimal,
)
from .base import ExchangeAdapter, HttpReply


logger = logging.getLogger(__name__)


BALANCE_PATH = "/0/private/Balance"
ADD_ORDER_PATH = "/0/private/AddOrder"
QUERY_ORDERS_PATH = "/0/private/QueryOrders"

# Preference order on ties
QUOTE_PREFERENCE = ("USDT", "USDC", "USD")


class KrakenAdapter(ExchangeAdapter):
    """Kraken spot exchange adapter."""

    exchange = ExchangeName.KRAKEN
    quote_currencies = ("USDT", "USDC", "USD")

    def __init__(
        self,
        endpoints: Optional[ExchangeEndpoints] = None,
        signer: Optional[KrakenSigner] = None,
        retry_config: Optional[RetryConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        endpoints = endpoints or ExchangeEndpoints()
        super().__init__(
            signer=signer or KrakenSigner(),
            translator=KrakenSymbolTranslator(),
            endpoints=endpoints,
            retry_config=retry_config,
            session=session,
        )
        self._base_url = endpoints.kraken_base

    # --------------------------------------------------------
    # HOOKS
    # --------------------------------------------------------

    async def _fetch_balances(self, creds: Credentials) -> List[Tuple[str, Decimal, Decimal]]:
        result = await self._private(creds, BALANCE_PATH, operation="get_balances")
        entries = []
        for asset, value in (result or {}).items():
            amount = to_decimal(value)
            entries.append((KrakenSymbolTranslator.asset_to_canonical(asset), amount, amount))
        return entries

    async def _submit_order(self, creds: Credentials, request: OrderRequest) -> OrderResult:
        quote = await self.detect_quote_currency(creds)
        pair = self._translator.to_native(request.symbol, quote_override=quote)
        self._log.info(f"Trading {request.symbol} as {pair} (quote {quote})")

        params: Dict[str, Any] = {
            "pair": pair,
            "type": request.side.value,
            "ordertype": request.order_type.value,
        }
        if request.uses_quote_amount:
            params["volume"] = str(request.quote_amount)
            params["oflags"] = "viqc"
        else:
            params["volume"] = str(request.quantity)
        if request.order_type == OrderType.LIMIT:
            params["price"] = str(request.price)

        result = await self._private(creds, ADD_ORDER_PATH, params, operation="place_order", idempotent=False)
        txids = result.get("txid") or []
        return OrderResult(
            success=True,
            exchange_order_id=txids[0] if txids else None,
            status="open",
            raw=result,
        )

    async def _fetch_order(
        self,
        creds: Credentials,
        order_id: str,
        symbol: Optional[str],
    ) -> OrderStatusResult:
        result = await self._private(creds, QUERY_ORDERS_PATH, {"txid": order_id}, operation="get_order")
        order = (result or {}).get(order_id)
        if order is None:
            raise TradingException(TradingError(
                category=ErrorCategory.NOT_FOUND,
                code="KRAKEN_ORDER_NOT_FOUND",
                message=f"Order {order_id} not found",
                exchange_id=self.exchange_id,
                operation="get_order",
            ))
        return OrderStatusResult(
            success=True,
            order_id=order_id,
            status=order.get("status"),
            executed_quantity=to_decimal(order.get("vol_exec")),
            executed_quote_amount=to_decimal(order.get("cost")),
            raw=order,
        )

    # --------------------------------------------------------
    # QUOTE DETECTION
    # --------------------------------------------------------

    async def detect_quote_currency(self, creds: Credentials) -> str:
        """
        Quote currency with the largest balance.

        Falls back to USDT when nothing is held. Balance errors propagate.
        """
        entries = await self._with_retry("detect_quote", lambda: self._fetch_balances(creds))
        held: Dict[str, Decimal] = {}
        for currency, available, _ in entries:
            if currency in QUOTE_PREFERENCE and currency not in held and available > 0:
                held[currency] = available

        best = "USDT"
        best_amount = ZERO
        for currency in QUOTE_PREFERENCE:
            amount = held.get(currency, ZERO)
            if amount > best_amount:
                best, best_amount = currency, amount
        return best

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    async def _private(
        self,
        creds: Credentials,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        operation: str = "request",
        idempotent: bool = True,
    ) -> Dict[str, Any]:
        signed = self._signer.sign(creds, "POST", path, params)
        reply = await self._send(self._base_url, signed, operation, idempotent=idempotent)
        return self._check_reply(reply, operation)

    def _check_reply(self, reply: HttpReply, operation: str) -> Dict[str, Any]:
        """Return `result` or raise the mapped error."""
        data = reply.data if isinstance(reply.data, dict) else None
        errors = (data or {}).get("error") or []

        if errors:
            error = map_kraken_error(str(errors[0]), reply.status)
        elif not reply.ok or data is None:
            message = (reply.text or "").strip()[:200] or f"HTTP {reply.status}"
            category, retry = classify_http_status(reply.status, message)
            error = TradingError(
                category=category,
                code=f"KRAKEN_HTTP_{reply.status}",
                message=message,
                retry_eligible=retry,
                http_status=reply.status,
                exchange_id=self.exchange_id,
            )
        else:
            return data.get("result") or {}

        error.operation = operation
        error.retry_after_ms = reply.retry_after_ms()
        raise error.to_exception()
