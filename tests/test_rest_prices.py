import pytest

import rest_prices
from rest_prices import (
    call_with_retries,
    candles_from_rest,
    discover_perpetual_symbols,
    fetch_funding_rate,
    fetch_open_interest,
    rest_backfill_klines,
)


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch):
    sleeps = []
    monkeypatch.setattr(rest_prices.time, "sleep", lambda seconds: sleeps.append(seconds))
    return sleeps


def test_call_with_retries_recovers(_no_sleep):
    attempts = []

    def _flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise RuntimeError("APIError(code=-1003): Too many requests")
        return "ok"

    ok, result, exc = call_with_retries(_flaky, "flaky call")

    assert (ok, result, exc) == (True, "ok", None)
    assert len(attempts) == 3
    assert len(_no_sleep) == 2


def test_call_with_retries_returns_last_error():
    ok, result, exc = call_with_retries(lambda: 1 / 0, "divide", max_attempts=2)
    assert ok is False
    assert result is None
    assert isinstance(exc, ZeroDivisionError)


def test_candles_from_rest_sorts_and_skips_short_rows():
    rows = [
        [2000, "2", "3", "1", "2.5", "10", 2999, "25", 4, "6", "15", "0"],
        [1000, "1", "2", "0.5", "1.5", "20", 1999, "30", 5],
        [3000, "1"],
    ]
    candles = candles_from_rest(rows)
    assert [c.open_time for c in candles] == [1000, 2000]
    assert candles[0].taker_buy_base == 0.0
    assert candles[1].trades == 4
    assert candles[1].taker_buy_quote == 15.0


class FakeClient:
    def __init__(self):
        self.kline_kwargs = None

    def futures_klines(self, **kwargs):
        self.kline_kwargs = kwargs
        return [[0, "1", "1", "1", "1", "1", 59_999, "1", 1]]

    def futures_open_interest(self, symbol):
        return {"symbol": symbol, "openInterest": "1234.5", "time": 0}

    def futures_mark_price(self, symbol):
        return {"symbol": symbol, "lastFundingRate": "-0.00025"}

    def futures_exchange_info(self):
        return {
            "symbols": [
                {"symbol": "ethusdt", "status": "TRADING", "contractType": "PERPETUAL"},
                {"symbol": "ETHUSDC", "status": "TRADING", "contractType": "PERPETUAL"},
            ]
        }


def test_client_helpers():
    client = FakeClient()
    assert len(rest_backfill_klines(client, "BTCUSDT", "1h", limit=5)) == 1
    assert client.kline_kwargs == {"symbol": "BTCUSDT", "interval": "1h", "limit": 5}
    assert fetch_open_interest(client, "BTCUSDT") == 1234.5
    assert fetch_funding_rate(client, "BTCUSDT") == -0.00025
    assert discover_perpetual_symbols(client) == ["ETHUSDT"]

    with pytest.raises(ValueError):
        rest_backfill_klines(client, "BTCUSDT", "1w")
