"""
Exchange Core - Request Signing.

============================================================
PURPOSE
============================================================
One signer per exchange behind a common interface. A signer
turns (credentials, method, path, params/body) into the exact
query string, body and headers to send. Inputs are never
mutated.

SCHEMES:
- Binance: HMAC-SHA256 hex over the full query string
  (recvWindow and timestamp injected), appended as &signature=
- Kraken: HMAC-SHA512 keyed by the base64-decoded secret over
  path + SHA256(nonce + form body), base64 encoded
- KuCoin: HMAC-SHA256 over timestamp + METHOD + endpoint + body,
  base64 encoded; the passphrase is HMAC-signed too (key v2)

Clocks are injectable so signatures are deterministic in tests.

============================================================
"""

import base64
import binascii
import hashlib
import hmac
import json
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

from .types import Credentials, ExchangeName


def _now_ms() -> int:
    return int(time.time() * 1000)


# ============================================================
# SIGNED REQUEST
# ============================================================

@dataclass
class SignedRequest:
    """Wire-ready request material."""

    method: str
    path: str
    headers: Dict[str, str] = field(default_factory=dict)
    query: Optional[str] = None
    body: Optional[str] = None

    @property
    def path_with_query(self) -> str:
        if self.query:
            return f"{self.path}?{self.query}"
        return self.path


# ============================================================
# SIGNER INTERFACE
# ============================================================

class CredentialSigner(ABC):
    """Per-exchange request signer."""

    exchange: ExchangeName

    @abstractmethod
    def sign(
        self,
        creds: Credentials,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> SignedRequest:
        """
        Produce signed request material.

        Args:
            creds: API credentials
            method: HTTP method
            path: Canonical request path (no host, no query)
            params: Request parameters (query for GET, body otherwise)

        Returns:
            SignedRequest
        """
        pass

    def check_credentials(self, creds: Credentials) -> Optional[str]:
        """
        Check credential material is usable by this scheme.

        Returns:
            Reason string when unusable, None otherwise
        """
        if not creds.api_key or not creds.api_secret:
            return "API key and secret are required"
        return None


# ============================================================
# BINANCE
# ============================================================

def binance_signature(secret: str, payload: str) -> str:
    """HMAC-SHA256 hex digest used by Binance."""
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


class BinanceSigner(CredentialSigner):
    """Binance HMAC-SHA256 query string signer."""

    exchange = ExchangeName.BINANCE

    def __init__(
        self,
        recv_window_ms: int = 10000,
        clock: Optional[Callable[[], int]] = None,
    ):
        self._recv_window_ms = recv_window_ms
        self._clock = clock or _now_ms

    def sign(
        self,
        creds: Credentials,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> SignedRequest:
        items = list((params or {}).items())
        items.append(("recvWindow", self._recv_window_ms))
        items.append(("timestamp", self._clock()))

        payload = urlencode(items)
        signed = f"{payload}&signature={binance_signature(creds.api_secret, payload)}"

        headers = {"X-MBX-APIKEY": creds.api_key}
        method = method.upper()

        if method == "POST":
            headers["Content-Type"] = "application/x-www-form-urlencoded"
            return SignedRequest(method=method, path=path, headers=headers, body=signed)
        return SignedRequest(method=method, path=path, headers=headers, query=signed)


# ============================================================
# KRAKEN
# ============================================================

class MonotonicNonce:
    """Millisecond nonce that never repeats or goes backwards."""

    def __init__(self, clock: Optional[Callable[[], int]] = None):
        self._clock = clock or _now_ms
        self._last = 0
        self._lock = threading.Lock()

    def __call__(self) -> int:
        with self._lock:
            value = max(self._clock(), self._last + 1)
            self._last = value
            return value


def kraken_signature(secret: str, path: str, nonce: int, postdata: str) -> str:
    """Kraken API-Sign for a private REST call."""
    sha256 = hashlib.sha256((str(nonce) + postdata).encode()).digest()
    mac = hmac.new(base64.b64decode(secret), path.encode() + sha256, hashlib.sha512)
    return base64.b64encode(mac.digest()).decode()


class KrakenSigner(CredentialSigner):
    """Kraken nonce + HMAC-SHA512 signer for private POST endpoints."""

    exchange = ExchangeName.KRAKEN

    def __init__(self, nonce_source: Optional[Callable[[], int]] = None):
        self._nonce = nonce_source or MonotonicNonce()

    def sign(
        self,
        creds: Credentials,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> SignedRequest:
        nonce = self._nonce()
        items = [("nonce", nonce)] + list((params or {}).items())
        postdata = urlencode(items)

        headers = {
            "API-Key": creds.api_key,
            "API-Sign": kraken_signature(creds.api_secret, path, nonce, postdata),
            "Content-Type": "application/x-www-form-urlencoded; charset=utf-8",
        }
        return SignedRequest(method="POST", path=path, headers=headers, body=postdata)

    def check_credentials(self, creds: Credentials) -> Optional[str]:
        reason = super().check_credentials(creds)
        if reason:
            return reason
        try:
            base64.b64decode(creds.api_secret, validate=True)
        except (binascii.Error, ValueError):
            return "Kraken API secret is not valid base64"
        return None


# ============================================================
# KUCOIN
# ============================================================

def kucoin_signature(secret: str, payload: str) -> str:
    """Base64 HMAC-SHA256 used by KuCoin for both sign and passphrase."""
    mac = hmac.new(secret.encode(), payload.encode(), hashlib.sha256)
    return base64.b64encode(mac.digest()).decode()


class KucoinSigner(CredentialSigner):
    """KuCoin key-version-2 signer."""

    exchange = ExchangeName.KUCOIN

    def __init__(self, clock: Optional[Callable[[], int]] = None):
        self._clock = clock or _now_ms

    def sign(
        self,
        creds: Credentials,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> SignedRequest:
        method = method.upper()
        timestamp = str(self._clock())

        query = None
        body = ""
        if params:
            if method in ("GET", "DELETE"):
                query = urlencode(list(params.items()))
            else:
                body = json.dumps(params, separators=(",", ":"))

        endpoint = f"{path}?{query}" if query else path
        prehash = f"{timestamp}{method}{endpoint}{body}"

        headers = {
            "KC-API-KEY": creds.api_key,
            "KC-API-SIGN": kucoin_signature(creds.api_secret, prehash),
            "KC-API-TIMESTAMP": timestamp,
            "KC-API-PASSPHRASE": kucoin_signature(creds.api_secret, creds.passphrase or ""),
            "KC-API-KEY-VERSION": "2",
            "Content-Type": "application/json",
        }
        return SignedRequest(
            method=method,
            path=path,
            headers=headers,
            query=query,
            body=body or None,
        )

    def check_credentials(self, creds: Credentials) -> Optional[str]:
        reason = super().check_credentials(creds)
        if reason:
            return reason
        if not creds.passphrase:
            return "KuCoin requires an API passphrase"
        return None


# ============================================================
# REGISTRY
# ============================================================

def create_signer(exchange: ExchangeName, **kwargs) -> CredentialSigner:
    """Create the signer for an exchange."""
    signers = {
        ExchangeName.BINANCE: BinanceSigner,
        ExchangeName.KRAKEN: KrakenSigner,
        ExchangeName.KUCOIN: KucoinSigner,
    }
    return signers[exchange](**kwargs)
