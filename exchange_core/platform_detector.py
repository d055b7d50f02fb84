"""
Exchange Core - Platform Detection.

============================================================
PURPOSE
============================================================
One exchange family can expose several regional bases that
accept the same credential shape (e.g. a global and a US base).
PlatformDetector probes all of them concurrently and picks:

1. The first base (configured order) where the account has funds
2. Else the first base that authenticated
3. Else the primary base, NOT cached, with the most informative
   failure: GEO_RESTRICTED > AUTHENTICATION > RATE_LIMITED > NETWORK

PlatformCache is the explicit per-process store of winners keyed
by API key; invalidate() must be called when credentials change.

============================================================
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from .errors import (
    ErrorCategory,
    TradingError,
    TradingException,
    create_timeout_error,
)
from .types import Credentials


logger = logging.getLogger(__name__)


# ============================================================
# PROBE TYPES
# ============================================================

class ProbeStatus(Enum):
    """Classification of one probe."""

    OK_WITH_FUNDS = "ok_with_funds"
    OK_NO_FUNDS = "ok_no_funds"
    FAILED = "failed"


@dataclass
class ProbeResult:
    """Result of probing one base URL."""

    base_url: str
    status: ProbeStatus
    error: Optional[TradingError] = None

    @property
    def authenticated(self) -> bool:
        return self.status != ProbeStatus.FAILED


@dataclass
class DetectionResult:
    """Selected base and why."""

    base_url: str
    status: Optional[ProbeStatus] = None
    """None when served from cache."""

    error: Optional[TradingError] = None
    from_cache: bool = False
    probes: List[ProbeResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.error is None


ProbeFn = Callable[[str, Credentials], Awaitable[ProbeResult]]


# Lower is more informative
FAILURE_PRIORITY: Dict[ErrorCategory, int] = {
    ErrorCategory.GEO_RESTRICTED: 0,
    ErrorCategory.AUTHENTICATION: 1,
    ErrorCategory.CONFIGURATION: 1,
    ErrorCategory.RATE_LIMITED: 2,
    ErrorCategory.NETWORK: 3,
}


# ============================================================
# PLATFORM CACHE
# ============================================================

class PlatformCache:
    """
    Detected base URL per API key.

    Reads are lock-free dict lookups. Writers for one key are
    serialized through lock_for(api_key). Invalidation drops the
    entry only; the key keeps its lock so a detection in flight
    and the next one still share it.
    """

    def __init__(self):
        self._entries: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._guard = threading.Lock()

    def get(self, api_key: str) -> Optional[str]:
        return self._entries.get(api_key)

    def set(self, api_key: str, base_url: str) -> None:
        with self._guard:
            self._entries[api_key] = base_url

    def invalidate(self, api_key: str) -> bool:
        """Forget the detected base for a key. Returns True if one was cached."""
        with self._guard:
            removed = self._entries.pop(api_key, None) is not None
        if removed:
            logger.info("Platform cache invalidated for credential")
        return removed

    def clear(self) -> None:
        with self._guard:
            self._entries.clear()

    def lock_for(self, api_key: str) -> asyncio.Lock:
        with self._guard:
            lock = self._locks.get(api_key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[api_key] = lock
            return lock

    def __contains__(self, api_key: str) -> bool:
        return api_key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


# ============================================================
# PLATFORM DETECTOR
# ============================================================

class PlatformDetector:
    """Concurrent regional base detection with caching."""

    def __init__(
        self,
        bases: Sequence[str],
        probe: ProbeFn,
        cache: Optional[PlatformCache] = None,
        probe_timeout_seconds: float = 8.0,
        exchange_id: str = "binance",
    ):
        """
        Initialize detector.

        Args:
            bases: Candidate base URLs, primary first
            probe: Async probe(base_url, creds) -> ProbeResult
            cache: Shared cache service (one per process)
            probe_timeout_seconds: Per-probe timeout
            exchange_id: Used in error codes and logs
        """
        if not bases:
            raise ValueError("At least one base URL is required")
        self._bases = list(bases)
        self._probe = probe
        self._cache = cache if cache is not None else PlatformCache()
        self._probe_timeout = probe_timeout_seconds
        self._exchange_id = exchange_id

    @property
    def primary_base(self) -> str:
        return self._bases[0]

    @property
    def cache(self) -> PlatformCache:
        return self._cache

    async def resolve(self, creds: Credentials) -> DetectionResult:
        """Cached base for these credentials, detecting on first use."""
        cached = self._cache.get(creds.api_key)
        if cached:
            return DetectionResult(base_url=cached, from_cache=True)

        async with self._cache.lock_for(creds.api_key):
            # Another task may have finished detection while we waited
            cached = self._cache.get(creds.api_key)
            if cached:
                return DetectionResult(base_url=cached, from_cache=True)

            result = await self.detect(creds)
            if result.success:
                self._cache.set(creds.api_key, result.base_url)
                logger.info(f"[{self._exchange_id}] Platform detected: {result.base_url} ({result.status.value})")
            else:
                logger.warning(
                    f"[{self._exchange_id}] Platform detection failed, using primary base: {result.error}"
                )
            return result

    async def detect(self, creds: Credentials) -> DetectionResult:
        """Probe every base concurrently and select one. Never cached."""
        tasks = [
            asyncio.create_task(self._run_probe(base, creds), name=f"probe:{base}")
            for base in self._bases
        ]
        try:
            probes = await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
        return self.select(probes)

    def select(self, probes: List[ProbeResult]) -> DetectionResult:
        """Apply the selection rules to probe results given in base order."""
        for wanted in (ProbeStatus.OK_WITH_FUNDS, ProbeStatus.OK_NO_FUNDS):
            for probe in probes:
                if probe.status == wanted:
                    return DetectionResult(base_url=probe.base_url, status=wanted, probes=probes)

        failures = [p.error for p in probes if p.error is not None]
        error = min(
            failures,
            key=lambda e: FAILURE_PRIORITY.get(e.category, len(FAILURE_PRIORITY)),
            default=None,
        )
        if error is None:
            error = TradingError(
                category=ErrorCategory.UNKNOWN,
                code=f"{self._exchange_id.upper()}_DETECTION_FAILED",
                message="No platform accepted the credentials",
                exchange_id=self._exchange_id,
            )
        return DetectionResult(
            base_url=self.primary_base,
            status=ProbeStatus.FAILED,
            error=error,
            probes=probes,
        )

    async def _run_probe(self, base: str, creds: Credentials) -> ProbeResult:
        try:
            return await asyncio.wait_for(self._probe(base, creds), timeout=self._probe_timeout)
        except asyncio.TimeoutError:
            error = create_timeout_error(self._exchange_id, int(self._probe_timeout * 1000), "probe")
            return ProbeResult(base_url=base, status=ProbeStatus.FAILED, error=error)
        except TradingException as exc:
            logger.debug(f"[{self._exchange_id}] Probe {base} failed: {exc.error}")
            return ProbeResult(base_url=base, status=ProbeStatus.FAILED, error=exc.error)
