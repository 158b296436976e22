import random

import pytest

from indicators import (
    NO_TREND,
    calculate_atr,
    calculate_ema,
    calculate_macd,
    calculate_rsi,
    calculate_supertrend,
)
from kline_store import Candle


def _bar(idx: int, high: float, low: float, close: float, volume: float = 1.0) -> Candle:
    return Candle(
        open_time=idx * 180_000,
        close_time=idx * 180_000 + 179_999,
        open=close,
        high=high,
        low=low,
        close=close,
        volume=volume,
    )


def _closes(values):
    return [_bar(i, v + 0.5, v - 0.5, v) for i, v in enumerate(values)]


def _random_walk(count: int, seed: int = 7):
    rng = random.Random(seed)
    price = 100.0
    candles = []
    for idx in range(count):
        price = max(1.0, price + rng.uniform(-3, 3))
        high = price + rng.uniform(0, 2)
        low = price - rng.uniform(0, 2)
        candles.append(_bar(idx, high, low, price))
    return candles


def test_ema_and_macd_are_zero_below_minimum_length() -> None:
    candles = _closes(range(1, 20))
    assert calculate_ema(candles, 20) == 0.0
    assert calculate_macd(_closes(range(1, 26))) == 0.0
    assert calculate_macd(_closes(range(1, 27))) != 0.0


def test_ema_seeds_with_simple_average() -> None:
    candles = _closes([1, 2, 3, 4])
    # SMA(1,2,3)=2, then (4-2)*0.5+2
    assert calculate_ema(candles, 3) == pytest.approx(3.0)
    assert calculate_ema(_closes([5.0] * 30), 20) == pytest.approx(5.0)


def test_rsi_bounds_and_edge_cases() -> None:
    assert calculate_rsi(_closes(range(7)), 7) == 0.0
    assert calculate_rsi(_closes(range(1, 30)), 14) == 100.0
    assert calculate_rsi(_closes(range(30, 1, -1)), 14) == pytest.approx(0.0)

    for seed in range(10):
        value = calculate_rsi(_random_walk(100, seed), 7)
        assert 0.0 <= value <= 100.0


def test_atr_is_non_negative_and_zero_when_short() -> None:
    assert calculate_atr(_random_walk(14), 14) == 0.0
    for seed in range(10):
        assert calculate_atr(_random_walk(60, seed), 14) >= 0.0

    flat = [_bar(i, 101.0, 99.0, 100.0) for i in range(20)]
    assert calculate_atr(flat, 14) == pytest.approx(2.0)


def test_supertrend_flips_on_crossing_candle() -> None:
    candles = [_bar(i, 101.0, 99.0, 100.0) for i in range(20)]
    candles.append(_bar(20, 81.0, 79.0, 80.0))

    before = calculate_supertrend(candles[:20])
    assert before.trend == "up"
    assert before.signal == "long"
    assert before.value == pytest.approx(94.0)

    after = calculate_supertrend(candles)
    assert after.trend == "down"
    assert after.signal == "short"
    assert after.value == pytest.approx(94.0)
    assert after.atr == pytest.approx(3.9)


def test_supertrend_signal_uses_current_price() -> None:
    candles = [_bar(i, 101.0, 99.0, 100.0) for i in range(20)]
    state = calculate_supertrend(candles, current_price=90.0)
    assert state.trend == "up"
    assert state.signal == "short"


def test_supertrend_handles_short_windows() -> None:
    assert calculate_supertrend([]) == NO_TREND
    assert calculate_supertrend(_random_walk(2)) == NO_TREND

    state = calculate_supertrend(_random_walk(5))
    assert state.trend in ("up", "down")
    assert state.signal in ("long", "short")

    flat = [_bar(i, 50.0, 50.0, 50.0) for i in range(3)]
    fallback = calculate_supertrend(flat)
    assert fallback.atr == pytest.approx(0.5)
    assert fallback.has_signal


def test_supertrend_never_raises_on_noisy_data() -> None:
    for seed in range(20):
        candles = _random_walk(100, seed)
        state = calculate_supertrend(candles)
        assert state.signal in ("long", "short")
        assert state.atr >= 0.0
