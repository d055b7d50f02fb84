"""
Exchange Adapter Factory.

============================================================
PURPOSE
============================================================
Factory pattern for creating exchange adapter instances.

FEATURES:
- Centralized adapter creation
- Shared endpoints, retry policy and platform cache
- Credentials from environment variables
- Adapter registry for extension

============================================================
USAGE
============================================================
```python
factory = AdapterFactory(config)
adapter = factory.get("kraken")
result = await adapter.get_balances(credentials_from_env("kraken"))
```

============================================================
"""

import logging
import os
from typing import Callable, Dict, List, Optional, Union

from dotenv import load_dotenv

from ..config import CoreConfig
from ..platform_detector import PlatformCache
from ..types import Credentials, ExchangeName
from .base import ExchangeAdapter
from .binance import BinanceAdapter
from .kraken import KrakenAdapter
from .kucoin import KucoinAdapter


logger = logging.getLogger(__name__)


AdapterCreator = Callable[[CoreConfig, PlatformCache], ExchangeAdapter]


def parse_exchange(exchange: Union[str, ExchangeName]) -> ExchangeName:
    """
    Normalize an exchange identifier.

    Raises:
        ValueError: If exchange not supported
    """
    if isinstance(exchange, ExchangeName):
        return exchange
    try:
        return ExchangeName(exchange.lower())
    except ValueError:
        raise ValueError(f"Unsupported exchange: {exchange}")


def credentials_from_env(exchange: Union[str, ExchangeName]) -> Optional[Credentials]:
    """
    Read credentials from <EXCHANGE>_API_KEY / _API_SECRET / _PASSPHRASE.

    Returns None when key or secret is missing.
    """
    load_dotenv()
    prefix = parse_exchange(exchange).value.upper()
    api_key = os.environ.get(f"{prefix}_API_KEY")
    api_secret = os.environ.get(f"{prefix}_API_SECRET")
    if not api_key or not api_secret:
        return None
    return Credentials(
        api_key=api_key,
        api_secret=api_secret,
        passphrase=os.environ.get(f"{prefix}_PASSPHRASE"),
    )


class AdapterFactory:
    """
    Creates and caches one adapter per exchange.

    Adapters built by one factory share the endpoints, the retry
    policy and the platform cache service.
    """

    _registry: Dict[ExchangeName, AdapterCreator] = {
        ExchangeName.BINANCE: lambda config, cache: BinanceAdapter(
            endpoints=config.endpoints, platform_cache=cache, retry_config=config.retry
        ),
        ExchangeName.KRAKEN: lambda config, cache: KrakenAdapter(
            endpoints=config.endpoints, retry_config=config.retry
        ),
        ExchangeName.KUCOIN: lambda config, cache: KucoinAdapter(
            endpoints=config.endpoints, retry_config=config.retry
        ),
    }

    def __init__(
        self,
        config: Optional[CoreConfig] = None,
        platform_cache: Optional[PlatformCache] = None,
    ):
        self._config = config or CoreConfig()
        self._platform_cache = platform_cache if platform_cache is not None else PlatformCache()
        self._adapters: Dict[ExchangeName, ExchangeAdapter] = {}

    @property
    def platform_cache(self) -> PlatformCache:
        return self._platform_cache

    @classmethod
    def register(cls, exchange: ExchangeName, creator: AdapterCreator) -> None:
        """Register or replace the creator for an exchange."""
        cls._registry[exchange] = creator

    @classmethod
    def list_supported(cls) -> List[str]:
        return [exchange.value for exchange in cls._registry]

    def get(self, exchange: Union[str, ExchangeName]) -> ExchangeAdapter:
        """
        Get (creating on first use) the adapter for an exchange.

        Raises:
            ValueError: If exchange not supported
        """
        name = parse_exchange(exchange)
        adapter = self._adapters.get(name)
        if adapter is None:
            creator = self._registry.get(name)
            if creator is None:
                raise ValueError(f"Unsupported exchange: {exchange}")
            adapter = creator(self._config, self._platform_cache)
            self._adapters[name] = adapter
            logger.debug(f"Created adapter for {name.value}")
        return adapter

    def set(self, exchange: ExchangeName, adapter: ExchangeAdapter) -> None:
        """Install a prebuilt adapter (e.g. a stub in tests)."""
        self._adapters[exchange] = adapter

    def invalidate_credentials(self, exchange: Union[str, ExchangeName], api_key: str) -> None:
        """Drop cached state tied to an API key after credentials change."""
        parse_exchange(exchange)
        self._platform_cache.invalidate(api_key)

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()
        self._adapters.clear()
