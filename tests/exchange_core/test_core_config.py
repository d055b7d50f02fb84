"""
Core Configuration Tests.

============================================================
PURPOSE
============================================================
Tests for CoreConfig.from_env() overlaying EXCHANGE_CORE_*
variables on the defaults.

TEST CATEGORIES:
- Defaults and overrides
- Malformed numeric settings

============================================================
"""

import pytest

from exchange_core.cli import main
from exchange_core.config import CoreConfig
from exchange_core.errors import ConfigurationError, ErrorCategory


VARIABLES = (
    "RELAY_URL", "UPSTREAM_URL", "TRACKED_SYMBOLS", "BINANCE_BASES",
    "KRAKEN_BASE", "KUCOIN_BASE", "RELAY_PORT", "STALE_TIMEOUT", "DATABASE_URL",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in VARIABLES:
        monkeypatch.delenv(f"EXCHANGE_CORE_{name}", raising=False)
    return monkeypatch


# ============================================================
# OVERRIDES
# ============================================================

class TestOverrides:
    """Tests for well-formed variables."""

    def test_defaults_without_variables(self, clean_env):
        config = CoreConfig.from_env()

        assert config.relay.port == 8080
        assert config.relay.stale_timeout_seconds == 30.0
        assert config.database_url is None

    def test_values_applied(self, clean_env):
        clean_env.setenv("EXCHANGE_CORE_RELAY_PORT", " 9001 ")
        clean_env.setenv("EXCHANGE_CORE_STALE_TIMEOUT", "12.5")
        clean_env.setenv("EXCHANGE_CORE_TRACKED_SYMBOLS", "btcusdt, ethusdt,")

        config = CoreConfig.from_env()

        assert config.relay.port == 9001
        assert config.relay.stale_timeout_seconds == 12.5
        assert config.relay.tracked_symbols == ["BTCUSDT", "ETHUSDT"]


# ============================================================
# MALFORMED SETTINGS
# ============================================================

class TestMalformedSettings:
    """Tests for numeric variables that do not parse."""

    @pytest.mark.parametrize("name,value", [
        ("RELAY_PORT", "80a"),
        ("RELAY_PORT", "8080.5"),
        ("RELAY_PORT", "70000"),
        ("STALE_TIMEOUT", "soon"),
        ("STALE_TIMEOUT", "nan"),
        ("STALE_TIMEOUT", "-1"),
    ])
    def test_error_names_the_variable(self, clean_env, name, value):
        clean_env.setenv(f"EXCHANGE_CORE_{name}", value)

        with pytest.raises(ConfigurationError) as raised:
            CoreConfig.from_env()

        assert raised.value.category == ErrorCategory.CONFIGURATION
        assert f"EXCHANGE_CORE_{name}" in raised.value.error.message
        assert raised.value.error.code == "INVALID_SETTING"

    def test_cli_exits_on_bad_setting(self, clean_env):
        clean_env.setenv("EXCHANGE_CORE_RELAY_PORT", "eighty")

        assert main(["relay"]) == 2
