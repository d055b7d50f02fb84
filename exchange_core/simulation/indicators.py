"""
Simulation - Technical Indicators.

============================================================
PURPOSE
============================================================
Indicator values for indicator alerts, computed with pandas_ta
over close prices (oldest first).

This is the only module that imports pandas_ta. Callers pass
and receive Decimal; the float Series stay inside this module.
Every function returns None when there is not enough data.

============================================================
"""

import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Sequence

import pandas as pd
import pandas_ta as ta


@dataclass
class BollingerBands:
    upper: Decimal
    middle: Decimal
    lower: Decimal


# ============================================================
# CONVERSION
# ============================================================

def _series(closes: Sequence[Decimal]) -> pd.Series:
    return pd.Series([float(c) for c in closes], dtype=float)


def _last(result: Optional[pd.Series]) -> Optional[Decimal]:
    """Latest value of an indicator series as Decimal, None while warming up."""
    if result is None or result.empty:
        return None
    value = result.iloc[-1]
    if pd.isna(value) or math.isinf(value):
        return None
    return Decimal(str(value))


def _band(result: pd.DataFrame, prefix: str) -> Optional[Decimal]:
    # pandas_ta names the columns like BBU_20_2.0
    for column in result.columns:
        if str(column).startswith(prefix):
            return _last(result[column])
    return None


# ============================================================
# INDICATORS
# ============================================================

def sma(values: Sequence[Decimal], period: int) -> Optional[Decimal]:
    if period <= 0 or len(values) < period:
        return None
    return _last(ta.sma(_series(values), length=period, talib=False))


def bollinger_bands(closes: Sequence[Decimal], period: int = 20, width: Decimal = Decimal("2")) -> Optional[BollingerBands]:
    """Simple moving average +/- `width` population standard deviations."""
    if period <= 0 or len(closes) < period:
        return None

    # Older pandas_ta releases take `std`, newer ones `lower_std`/`upper_std`
    deviation = float(width)
    result = ta.bbands(
        _series(closes), length=period, std=deviation,
        lower_std=deviation, upper_std=deviation, ddof=0, talib=False,
    )
    if result is None or result.empty:
        return None

    upper = _band(result, "BBU")
    middle = _band(result, "BBM")
    lower = _band(result, "BBL")
    if upper is None or middle is None or lower is None:
        return None
    return BollingerBands(upper=upper, middle=middle, lower=lower)


def rsi(closes: Sequence[Decimal], period: int = 14) -> Optional[Decimal]:
    """
    Relative Strength Index (pandas_ta, Wilder's moving average).

    Args:
        closes: Close prices, oldest first
        period: Lookback

    Returns:
        RSI in [0, 100], or None with fewer than period + 1 closes
        or when prices did not move at all
    """
    if period <= 0 or len(closes) < period + 1:
        return None
    return _last(ta.rsi(_series(closes), length=period, talib=False))
