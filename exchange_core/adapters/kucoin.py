"""
Exchange Core - KuCoin Spot Adapter.

============================================================
PURPOSE
============================================================
Live adapter for the KuCoin spot REST API (key version 2).

- Every response is {"code": "...", "data": ...}; "200000" is success
- Orders carry a random clientOid
- Market buys sized by quote amount use `funds`

============================================================
"""

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from ..config import ExchangeEndpoints, RetryConfig
from ..errors import map_kucoin_error
from ..signing import KucoinSigner
from ..symbols import KucoinSymbolTranslator
from ..types import (
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


SUCCESS_CODE = "200000"
ACCOUNTS_PATH = "/api/v1/accounts"
ORDERS_PATH = "/api/v1/orders"


class KucoinAdapter(ExchangeAdapter):
    """KuCoin spot exchange adapter."""

    exchange = ExchangeName.KUCOIN

    def __init__(
        self,
        endpoints: Optional[ExchangeEndpoints] = None,
        signer: Optional[KucoinSigner] = None,
        retry_config: Optional[RetryConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        endpoints = endpoints or ExchangeEndpoints()
        super().__init__(
            signer=signer or KucoinSigner(),
            translator=KucoinSymbolTranslator(),
            endpoints=endpoints,
            retry_config=retry_config,
            session=session,
        )
        self._base_url = endpoints.kucoin_base

    # --------------------------------------------------------
    # HOOKS
    # --------------------------------------------------------

    async def _fetch_balances(self, creds: Credentials) -> List[Tuple[str, Decimal, Decimal]]:
        data = await self._request(creds, "GET", ACCOUNTS_PATH, {"type": "trade"}, operation="get_balances")
        return [
            (
                item.get("currency", "").upper(),
                to_decimal(item.get("available")),
                to_decimal(item.get("balance")),
            )
            for item in (data or [])
        ]

    async def _submit_order(self, creds: Credentials, request: OrderRequest) -> OrderResult:
        body: Dict[str, Any] = {
            "clientOid": uuid.uuid4().hex,
            "side": request.side.value,
            "symbol": self._translator.to_native(request.symbol),
            "type": request.order_type.value,
        }
        if request.uses_quote_amount:
            body["funds"] = str(request.quote_amount)
        else:
            body["size"] = str(request.quantity)
        if request.order_type == OrderType.LIMIT:
            body["price"] = str(request.price)

        data = await self._request(creds, "POST", ORDERS_PATH, body, operation="place_order", idempotent=False)
        return OrderResult(
            success=True,
            exchange_order_id=(data or {}).get("orderId"),
            status="open",
            raw=data,
        )

    async def _fetch_order(
        self,
        creds: Credentials,
        order_id: str,
        symbol: Optional[str],
    ) -> OrderStatusResult:
        data = await self._request(creds, "GET", f"{ORDERS_PATH}/{order_id}", operation="get_order") or {}
        if data.get("isActive"):
            status = "open"
        elif data.get("cancelExist"):
            status = "cancelled"
        else:
            status = "done"
        return OrderStatusResult(
            success=True,
            order_id=data.get("id", order_id),
            status=status,
            executed_quantity=to_decimal(data.get("dealSize")),
            executed_quote_amount=to_decimal(data.get("dealFunds")),
            raw=data,
        )

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    async def _request(
        self,
        creds: Credentials,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        operation: str = "request",
        idempotent: bool = True,
    ) -> Any:
        signed = self._signer.sign(creds, method, path, params)
        reply = await self._send(self._base_url, signed, operation, idempotent=idempotent)
        return self._check_reply(reply, operation)

    def _check_reply(self, reply: HttpReply, operation: str) -> Any:
        """Return `data` or raise the mapped error."""
        payload = reply.data if isinstance(reply.data, dict) else {}
        code = str(payload.get("code", ""))
        if reply.ok and code == SUCCESS_CODE:
            return payload.get("data")

        message = payload.get("msg") or (reply.text or "").strip()[:200] or f"HTTP {reply.status}"
        error = map_kucoin_error(code or str(reply.status), message, reply.status)
        error.operation = operation
        error.retry_after_ms = reply.retry_after_ms()
        raise error.to_exception()
