"""
Exchange Adapter - Secure Logging Utilities.

============================================================
PURPOSE
============================================================
Secure logging for exchange adapter operations with:
- Credential masking (API keys, signatures, passphrases)
- Request/response sanitization
- Structured JSON log lines

============================================================
SECURITY REQUIREMENTS
============================================================
1. NEVER log raw API keys or secrets
2. Mask sensitive headers (X-MBX-APIKEY, API-Sign, KC-API-*)
3. Hash request bodies instead of logging them
4. Truncate response previews

============================================================
"""

import hashlib
import json
import logging
import re
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)


# ============================================================
# SENSITIVE DATA PATTERNS
# ============================================================

# Header names that should be masked
SENSITIVE_HEADERS = {
    "authorization",
    "x-mbx-apikey",
    "api-key",
    "api-sign",
    "kc-api-key",
    "kc-api-sign",
    "kc-api-passphrase",
}

# Parameter names that should be masked
SENSITIVE_PARAMS = {
    "apikey",
    "api_key",
    "secret",
    "api_secret",
    "passphrase",
    "signature",
    "sign",
    "token",
}


# ============================================================
# MASKING FUNCTIONS
# ============================================================

def mask_value(value: str, show_chars: int = 4) -> str:
    """
    Mask a sensitive value, showing only first few chars.

    Args:
        value: Value to mask
        show_chars: Number of chars to show at start

    Returns:
        Masked value
    """
    if not value or len(value) <= show_chars:
        return "***"
    return f"{value[:show_chars]}...***"


def mask_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Mask sensitive headers."""
    if not headers:
        return {}

    masked = {}
    for key, value in headers.items():
        if key.lower() in SENSITIVE_HEADERS:
            masked[key] = mask_value(str(value))
        else:
            masked[key] = value
    return masked


def mask_params(params: Dict[str, Any]) -> Dict[str, Any]:
    """Mask sensitive parameters, recursing into nested dicts."""
    if not params:
        return {}

    masked = {}
    for key, value in params.items():
        if key.lower() in SENSITIVE_PARAMS:
            masked[key] = mask_value(str(value)) if value else value
        elif isinstance(value, dict):
            masked[key] = mask_params(value)
        else:
            masked[key] = value
    return masked


def mask_url(url: str) -> str:
    """
    Mask sensitive data in URL.

    Args:
        url: URL string (may include a query)

    Returns:
        URL with sensitive params masked
    """
    if not url:
        return url

    for param in SENSITIVE_PARAMS:
        pattern = re.compile(f'([?&]{param}=)([^&]+)', re.IGNORECASE)
        url = pattern.sub(lambda m: f'{m.group(1)}***', url)

    return url


# ============================================================
# LOG ENTRY STRUCTURES
# ============================================================

@dataclass
class RequestLogEntry:
    """Structured log entry for requests."""

    timestamp: str
    exchange_id: str
    operation: str
    method: str
    endpoint: str
    request_id: str

    headers: Dict[str, str] = None
    body_hash: str = None

    def to_json(self) -> str:
        return json.dumps({k: v for k, v in asdict(self).items() if v is not None})


@dataclass
class ResponseLogEntry:
    """Structured log entry for responses."""

    timestamp: str
    exchange_id: str
    operation: str
    request_id: str
    status_code: int
    latency_ms: float
    success: bool

    error_code: str = None
    error_message: str = None
    response_preview: str = None

    def to_json(self) -> str:
        return json.dumps({k: v for k, v in asdict(self).items() if v is not None})


# ============================================================
# ADAPTER LOGGER
# ============================================================

class AdapterLogger:
    """
    Secure logger for exchange adapter operations.

    Provides structured logging with automatic credential masking.
    """

    def __init__(self, exchange_id: str, logger_name: str = None):
        self._exchange_id = exchange_id
        self._logger = logging.getLogger(logger_name or f"exchange_core.adapters.{exchange_id}")
        self._request_counter = 0

    def _generate_request_id(self) -> str:
        self._request_counter += 1
        return f"{self._exchange_id}-{self._request_counter}"

    @staticmethod
    def _hash_body(body: Optional[str]) -> Optional[str]:
        if not body:
            return None
        return hashlib.sha256(body.encode()).hexdigest()[:16]

    def log_request(
        self,
        operation: str,
        method: str,
        endpoint: str,
        headers: Dict[str, str] = None,
        body: Optional[str] = None,
    ) -> str:
        """
        Log outgoing request.

        Returns:
            Request ID for correlation
        """
        request_id = self._generate_request_id()

        entry = RequestLogEntry(
            timestamp=datetime.utcnow().isoformat(),
            exchange_id=self._exchange_id,
            operation=operation,
            method=method,
            endpoint=mask_url(endpoint),
            request_id=request_id,
            headers=mask_headers(headers) if headers else None,
            body_hash=self._hash_body(body),
        )

        self._logger.debug(f"REQUEST: {entry.to_json()}")
        return request_id

    def log_response(
        self,
        operation: str,
        request_id: str,
        status_code: int,
        latency_ms: float,
        success: bool,
        error_code: str = None,
        error_message: str = None,
        response_text: str = None,
    ) -> None:
        """Log incoming response. Failures log at WARNING."""
        entry = ResponseLogEntry(
            timestamp=datetime.utcnow().isoformat(),
            exchange_id=self._exchange_id,
            operation=operation,
            request_id=request_id,
            status_code=status_code,
            latency_ms=round(latency_ms, 2),
            success=success,
            error_code=error_code,
            error_message=error_message[:200] if error_message else None,
            response_preview=response_text[:200] if response_text else None,
        )

        if success:
            self._logger.debug(f"RESPONSE: {entry.to_json()}")
        else:
            self._logger.warning(f"RESPONSE_ERROR: {entry.to_json()}")

    def log_order(
        self,
        symbol: str,
        side: str,
        order_type: str,
        exchange_order_id: str = None,
        status: str = None,
        error: str = None,
    ) -> None:
        """Log an order placement outcome."""
        if error:
            self._logger.warning(
                f"[{self._exchange_id}] ORDER_ERROR {side} {order_type} {symbol}: {error}"
            )
        else:
            self._logger.info(
                f"[{self._exchange_id}] ORDER {side} {order_type} {symbol} "
                f"id={exchange_order_id} status={status}"
            )

    def info(self, message: str) -> None:
        self._logger.info(f"[{self._exchange_id}] {message}")

    def warning(self, message: str) -> None:
        self._logger.warning(f"[{self._exchange_id}] {message}")

    def debug(self, message: str) -> None:
        self._logger.debug(f"[{self._exchange_id}] {message}")
