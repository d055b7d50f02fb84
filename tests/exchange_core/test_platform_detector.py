"""
Platform Detector Tests.

============================================================
PURPOSE
============================================================
Tests for regional base detection and its per-key cache.

TEST CATEGORIES:
- Selection rules
- Failure reporting
- Caching and invalidation
- Concurrency and timeouts

============================================================
"""

import asyncio

import pytest

from exchange_core.errors import (
    ErrorCategory,
    TradingException,
    map_binance_error,
)
from exchange_core.platform_detector import (
    PlatformCache,
    PlatformDetector,
    ProbeResult,
    ProbeStatus,
)
from exchange_core.types import Credentials


GLOBAL = "https://api.binance.com"
US = "https://api.binance.us"

CREDS = Credentials(api_key="key-1", api_secret="secret")


class FakeProbe:
    """Probe answering from a per-base outcome table and counting calls."""

    def __init__(self, outcomes, delay=0.0):
        self.outcomes = outcomes
        self.delay = delay
        self.calls = []

    async def __call__(self, base_url, creds):
        self.calls.append(base_url)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes[base_url]
        if isinstance(outcome, Exception):
            raise outcome
        return ProbeResult(base_url=base_url, status=outcome)


def auth_failure():
    return TradingException(map_binance_error(-2015, "Invalid API-key", 401))


def geo_failure():
    return TradingException(map_binance_error(0, "Service unavailable from a restricted location", 451))


# ============================================================
# SELECTION
# ============================================================

class TestSelection:
    """Tests for base selection rules."""

    @pytest.mark.asyncio
    async def test_funds_win_over_primary(self):
        """Test an account with funds on the US base is routed there."""
        probe = FakeProbe({GLOBAL: ProbeStatus.OK_NO_FUNDS, US: ProbeStatus.OK_WITH_FUNDS})
        detector = PlatformDetector([GLOBAL, US], probe)

        result = await detector.detect(CREDS)

        assert result.success is True
        assert result.base_url == US
        assert result.status == ProbeStatus.OK_WITH_FUNDS

    @pytest.mark.asyncio
    async def test_primary_wins_ties(self):
        probe = FakeProbe({GLOBAL: ProbeStatus.OK_NO_FUNDS, US: ProbeStatus.OK_NO_FUNDS})
        detector = PlatformDetector([GLOBAL, US], probe)

        result = await detector.detect(CREDS)

        assert result.base_url == GLOBAL

    @pytest.mark.asyncio
    async def test_authenticated_base_wins_over_failure(self):
        """Test a 401 on the primary does not hide a working US key."""
        probe = FakeProbe({GLOBAL: auth_failure(), US: ProbeStatus.OK_NO_FUNDS})
        detector = PlatformDetector([GLOBAL, US], probe)

        result = await detector.detect(CREDS)

        assert result.base_url == US
        assert len(result.probes) == 2
        assert result.probes[0].authenticated is False

    @pytest.mark.asyncio
    async def test_all_failed_reports_geo_first(self):
        """Test the most informative failure is reported."""
        probe = FakeProbe({GLOBAL: geo_failure(), US: auth_failure()})
        detector = PlatformDetector([GLOBAL, US], probe)

        result = await detector.detect(CREDS)

        assert result.success is False
        assert result.base_url == GLOBAL
        assert result.error.category == ErrorCategory.GEO_RESTRICTED

    @pytest.mark.asyncio
    async def test_probe_timeout(self):
        """Test a hanging probe is reported as a network timeout."""
        probe = FakeProbe({GLOBAL: ProbeStatus.OK_NO_FUNDS}, delay=1.0)
        detector = PlatformDetector([GLOBAL], probe, probe_timeout_seconds=0.05)

        result = await detector.detect(CREDS)

        assert result.success is False
        assert result.error.category == ErrorCategory.NETWORK
        assert result.error.code == "BINANCE_TIMEOUT"

    def test_requires_a_base(self):
        with pytest.raises(ValueError):
            PlatformDetector([], FakeProbe({}))


# ============================================================
# CACHING
# ============================================================

class TestCaching:
    """Tests for resolve() caching."""

    @pytest.mark.asyncio
    async def test_second_resolve_served_from_cache(self):
        probe = FakeProbe({GLOBAL: ProbeStatus.OK_WITH_FUNDS, US: auth_failure()})
        detector = PlatformDetector([GLOBAL, US], probe)

        first = await detector.resolve(CREDS)
        second = await detector.resolve(CREDS)

        assert first.from_cache is False
        assert second.from_cache is True
        assert second.base_url == GLOBAL
        assert len(probe.calls) == 2

    @pytest.mark.asyncio
    async def test_failure_not_cached(self):
        probe = FakeProbe({GLOBAL: auth_failure(), US: auth_failure()})
        detector = PlatformDetector([GLOBAL, US], probe)

        await detector.resolve(CREDS)
        await detector.resolve(CREDS)

        assert len(probe.calls) == 4
        assert CREDS.api_key not in detector.cache

    @pytest.mark.asyncio
    async def test_concurrent_resolves_probe_once(self):
        """Test parallel first requests share one detection."""
        probe = FakeProbe({GLOBAL: ProbeStatus.OK_NO_FUNDS, US: ProbeStatus.OK_WITH_FUNDS}, delay=0.01)
        detector = PlatformDetector([GLOBAL, US], probe)

        results = await asyncio.gather(*(detector.resolve(CREDS) for _ in range(5)))

        assert {r.base_url for r in results} == {US}
        assert len(probe.calls) == 2

    @pytest.mark.asyncio
    async def test_invalidate_forces_new_detection(self):
        """Test replaced credentials are detected again."""
        probe = FakeProbe({GLOBAL: ProbeStatus.OK_WITH_FUNDS, US: ProbeStatus.OK_NO_FUNDS})
        cache = PlatformCache()
        detector = PlatformDetector([GLOBAL, US], probe, cache=cache)

        await detector.resolve(CREDS)
        assert cache.invalidate(CREDS.api_key) is True
        await detector.resolve(CREDS)

        assert len(probe.calls) == 4

    @pytest.mark.asyncio
    async def test_invalidate_during_detection_keeps_lock(self):
        """Test a resolve started after invalidation waits for the detection in flight."""
        probe = FakeProbe({GLOBAL: ProbeStatus.OK_WITH_FUNDS, US: ProbeStatus.OK_NO_FUNDS}, delay=0.02)
        cache = PlatformCache()
        detector = PlatformDetector([GLOBAL, US], probe, cache=cache)
        lock = cache.lock_for(CREDS.api_key)

        first = asyncio.create_task(detector.resolve(CREDS))
        await asyncio.sleep(0)
        assert lock.locked()
        cache.invalidate(CREDS.api_key)
        second = await detector.resolve(CREDS)
        await first

        assert cache.lock_for(CREDS.api_key) is lock
        assert second.from_cache is True
        assert len(probe.calls) == 2

    def test_cache_keyed_by_api_key(self):
        cache = PlatformCache()

        cache.set("key-1", US)

        assert cache.get("key-1") == US
        assert cache.get("key-2") is None
        assert len(cache) == 1
        assert cache.invalidate("key-2") is False

    def test_clear(self):
        cache = PlatformCache()
        cache.set("key-1", US)

        cache.clear()

        assert len(cache) == 0
