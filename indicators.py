"""
Technical indicators computed from rolling kline windows.

All helpers are pure functions over an oldest-first sequence of
:class:`kline_store.Candle` objects and never raise on short input:

* ``calculate_ema(candles, period)`` – EMA seeded with the simple average of
  the first ``period`` closes.  ``0.0`` when fewer than ``period`` candles.
* ``calculate_macd(candles)`` – EMA(12) minus EMA(26).  ``0.0`` below 26
  candles.
* ``calculate_rsi(candles, period)`` – Wilder RSI in ``[0, 100]``.
* ``calculate_atr(candles, period)`` – Wilder ATR, always ``>= 0``.
* ``calculate_supertrend(candles, period, multiplier, current_price)`` –
  the recursive trend band (Supertrend).  The band of every candle depends on
  the previous band and trend, so the whole window is walked from the first
  candle on each call.  With only a few candles the period shrinks instead
  of failing.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

from kline_store import Candle

__all__ = [
    "TrendBandState",
    "NO_TREND",
    "calculate_ema",
    "calculate_macd",
    "calculate_rsi",
    "calculate_atr",
    "true_ranges",
    "calculate_supertrend",
    "SUPERTREND_PERIOD",
    "SUPERTREND_MULTIPLIER",
]

SUPERTREND_PERIOD = 10
SUPERTREND_MULTIPLIER = 3.0
_MIN_SUPERTREND_CANDLES = 3


def calculate_ema(candles: Sequence[Candle], period: int) -> float:
    if period <= 0 or len(candles) < period:
        return 0.0
    ema = sum(c.close for c in candles[:period]) / period
    multiplier = 2.0 / (period + 1)
    for candle in candles[period:]:
        ema = (candle.close - ema) * multiplier + ema
    return ema


def calculate_macd(candles: Sequence[Candle]) -> float:
    if len(candles) < 26:
        return 0.0
    return calculate_ema(candles, 12) - calculate_ema(candles, 26)


def calculate_rsi(candles: Sequence[Candle], period: int) -> float:
    """Wilder RSI; ``0.0`` when the window holds ``period`` candles or fewer."""

    if period <= 0 or len(candles) <= period:
        return 0.0

    gains = 0.0
    losses = 0.0
    for i in range(1, period + 1):
        change = candles[i].close - candles[i - 1].close
        if change > 0:
            gains += change
        else:
            losses -= change
    avg_gain = gains / period
    avg_loss = losses / period

    for i in range(period + 1, len(candles)):
        change = candles[i].close - candles[i - 1].close
        gain = change if change > 0 else 0.0
        loss = -change if change < 0 else 0.0
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period

    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def true_ranges(candles: Sequence[Candle]) -> List[float]:
    """True range per candle; index 0 has no previous close and stays 0."""

    trs = [0.0] * len(candles)
    for i in range(1, len(candles)):
        high = candles[i].high
        low = candles[i].low
        prev_close = candles[i - 1].close
        trs[i] = max(high - low, abs(high - prev_close), abs(low - prev_close))
    return trs


def calculate_atr(candles: Sequence[Candle], period: int) -> float:
    """Wilder ATR; ``0.0`` when the window holds ``period`` candles or fewer."""

    if period <= 0 or len(candles) <= period:
        return 0.0
    trs = true_ranges(candles)
    atr = sum(trs[1 : period + 1]) / period
    for i in range(period + 1, len(candles)):
        atr = (atr * (period - 1) + trs[i]) / period
    return atr


@dataclass(frozen=True)
class TrendBandState:
    """Latest Supertrend reading for one timeframe."""

    trend: str = "none"
    signal: str = "none"
    value: float = 0.0
    atr: float = 0.0
    upper_band: float = 0.0
    lower_band: float = 0.0

    @property
    def has_signal(self) -> bool:
        return self.signal in ("long", "short")


NO_TREND = TrendBandState()


def _range_fallback_atr(candles: Sequence[Candle], price: float) -> float:
    highest = max(c.high for c in candles)
    lowest = min(c.low for c in candles)
    atr = (highest - lowest) / len(candles)
    if atr == 0:
        atr = price * 0.01
    return atr


def _atr_series(candles: Sequence[Candle], period: int, price: float) -> List[float]:
    """ATR per candle over the trailing ``period + 1`` candles."""

    count = len(candles)
    if count > period:
        values = [0.0] * count
        for i in range(period, count):
            values[i] = calculate_atr(candles[i - period : i + 1], period)
        first = values[period]
        for i in range(period):
            values[i] = first
        return values

    atr = calculate_atr(candles, period)
    if atr == 0:
        atr = _range_fallback_atr(candles, price)
    return [atr] * count


def calculate_supertrend(
    candles: Sequence[Candle],
    period: int = SUPERTREND_PERIOD,
    multiplier: float = SUPERTREND_MULTIPLIER,
    current_price: float | None = None,
) -> TrendBandState:
    """Walk ``candles`` oldest-first and return the latest trend band state."""

    if len(candles) < period + 1:
        if len(candles) < _MIN_SUPERTREND_CANDLES:
            return NO_TREND
        period = max(len(candles) - 1, _MIN_SUPERTREND_CANDLES)

    price = candles[-1].close if current_price is None else float(current_price)
    atr_values = _atr_series(candles, period, price)

    first = candles[0]
    band_value = (first.high + first.low) / 2.0 - multiplier * atr_values[0]
    trend = "up"

    for i in range(1, len(candles)):
        candle = candles[i]
        atr = atr_values[i] or atr_values[i - 1]
        hl2 = (candle.high + candle.low) / 2.0
        upper_band = hl2 + multiplier * atr
        lower_band = hl2 - multiplier * atr

        if trend == "up":
            final_upper = max(upper_band, band_value)
            final_lower = max(lower_band, band_value)
        else:
            final_upper = min(upper_band, band_value)
            final_lower = min(lower_band, band_value)

        if candle.close > final_upper:
            trend = "up"
        elif candle.close < final_lower:
            trend = "down"
        band_value = final_lower if trend == "up" else final_upper

    last_atr = atr_values[-1] or calculate_atr(candles, period)
    last = candles[-1]
    hl2 = (last.high + last.low) / 2.0

    if price > band_value:
        signal = "long"
    elif price < band_value:
        signal = "short"
    else:
        signal = "long" if trend == "up" else "short"

    return TrendBandState(
        trend=trend,
        signal=signal,
        value=band_value,
        atr=last_atr,
        upper_band=hl2 + multiplier * last_atr,
        lower_band=hl2 - multiplier * last_atr,
    )
