"""Helpers for REST calls against the Binance USD-M futures API.

These utilities wrap the handful of ``python-binance`` client calls the agent
needs (historical klines, open interest, funding rate and exchange info) and
shape the raw payloads into domain objects.  They are intentionally
synchronous so they can be used from the backfill worker pool and from the
on-demand cache-miss path alike.
"""

from __future__ import annotations

import random
import time
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar

from config import WINDOW_CAPACITY
from kline_store import Candle, validate_timeframe
from log_utils import setup_logger

__all__ = [
    "call_with_retries",
    "candles_from_rest",
    "rest_backfill_klines",
    "fetch_open_interest",
    "fetch_funding_rate",
    "discover_perpetual_symbols",
]

logger = setup_logger(__name__)

_T = TypeVar("_T")

_RATE_LIMIT_KEYWORDS = (
    "Too many requests",
    "too many requests",
    "Too Many Requests",
    "-1003",  # Binance rate limit error code
    "IP banned",
    "429",
)


def _is_rate_limit_error(exc: Exception) -> bool:
    """Return True if ``exc`` looks like a Binance rate limit error."""

    message = getattr(exc, "message", None)
    if not message:
        message = str(exc)
    if not message:
        return False
    return any(keyword in message for keyword in _RATE_LIMIT_KEYWORDS)


def call_with_retries(
    action: Callable[[], _T],
    description: str,
    max_attempts: int = 3,
    base_delay: float = 0.5,
) -> Tuple[bool, Optional[_T], Optional[Exception]]:
    """Execute ``action`` with retries and exponential backoff.

    Parameters
    ----------
    action : Callable
        Callable executed with no arguments that performs the Binance API
        request.
    description : str
        Human readable description for logging.
    max_attempts : int, optional
        Number of attempts before giving up, by default 3.
    base_delay : float, optional
        Initial backoff delay in seconds, by default 0.5 seconds.

    Returns
    -------
    Tuple[bool, Optional[_T], Optional[Exception]]
        Tuple of ``(success, result, exception)``.  ``result`` is populated
        only when ``success`` is True.  When ``success`` is False the last
        exception is returned for logging.
    """

    delay = max(base_delay, 0.0)
    last_exception: Optional[Exception] = None
    for attempt in range(1, max_attempts + 1):
        try:
            return True, action(), None
        except Exception as exc:  # pragma: no cover - network dependent
            last_exception = exc
            rate_limited = _is_rate_limit_error(exc)
            logger.warning(
                "Attempt %d/%d to %s failed%s: %s",
                attempt,
                max_attempts,
                description,
                " due to rate limit" if rate_limited else "",
                exc,
            )
            if attempt >= max_attempts:
                break
            multiplier = 2.0 if rate_limited else 1.5
            time.sleep(delay + random.uniform(0, delay / 2) if delay else 0)
            delay *= multiplier
    return False, None, last_exception


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _to_int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def candles_from_rest(raw: Iterable[Sequence[Any]]) -> List[Candle]:
    """Shape raw ``futures_klines`` rows into oldest-first candles.

    Rows follow the Binance layout ``[open_time, open, high, low, close,
    volume, close_time, quote_volume, trades, taker_buy_base,
    taker_buy_quote, ignore]``.  Short rows are skipped.
    """

    candles: List[Candle] = []
    for row in raw or []:
        if len(row) < 9:
            continue
        candles.append(
            Candle(
                open_time=_to_int(row[0]),
                open=_to_float(row[1]),
                high=_to_float(row[2]),
                low=_to_float(row[3]),
                close=_to_float(row[4]),
                volume=_to_float(row[5]),
                close_time=_to_int(row[6]),
                quote_volume=_to_float(row[7]),
                trades=_to_int(row[8]),
                taker_buy_base=_to_float(row[9]) if len(row) > 9 else 0.0,
                taker_buy_quote=_to_float(row[10]) if len(row) > 10 else 0.0,
            )
        )
    candles.sort(key=lambda candle: candle.open_time)
    return candles


def rest_backfill_klines(
    client, symbol: str, interval: str, limit: int = WINDOW_CAPACITY
) -> List[Candle]:
    """Return the last ``limit`` futures klines for ``symbol``.

    Raises the last client exception once the retries are exhausted so that
    callers can decide whether a failure is fatal for them.
    """

    interval = validate_timeframe(interval)
    ok, raw, exc = call_with_retries(
        lambda: client.futures_klines(symbol=symbol, interval=interval, limit=int(limit)),
        f"fetch {interval} klines for {symbol}",
    )
    if not ok:
        raise exc if exc is not None else RuntimeError(f"kline fetch failed for {symbol}")
    return candles_from_rest(raw)


def fetch_open_interest(client, symbol: str) -> float:
    """Return the latest open interest quantity (contracts) for ``symbol``."""

    ok, payload, exc = call_with_retries(
        lambda: client.futures_open_interest(symbol=symbol),
        f"fetch open interest for {symbol}",
        max_attempts=2,
    )
    if not ok:
        raise exc if exc is not None else RuntimeError(f"open interest fetch failed for {symbol}")
    if not isinstance(payload, Mapping):
        return 0.0
    return _to_float(payload.get("openInterest"))


def fetch_funding_rate(client, symbol: str) -> float:
    """Return the last funding rate from the premium index of ``symbol``."""

    ok, payload, exc = call_with_retries(
        lambda: client.futures_mark_price(symbol=symbol),
        f"fetch funding rate for {symbol}",
        max_attempts=2,
    )
    if not ok:
        raise exc if exc is not None else RuntimeError(f"funding rate fetch failed for {symbol}")
    if isinstance(payload, list):
        payload = next((item for item in payload if item.get("symbol") == symbol), {})
    if not isinstance(payload, Mapping):
        return 0.0
    return _to_float(payload.get("lastFundingRate"))


def discover_perpetual_symbols(client, quote: str = "USDT") -> List[str]:
    """Return every TRADING perpetual contract quoted in ``quote``."""

    ok, info, exc = call_with_retries(client.futures_exchange_info, "fetch futures exchange info")
    if not ok:
        raise exc if exc is not None else RuntimeError("exchange info fetch failed")
    symbols: List[str] = []
    for entry in (info or {}).get("symbols", []):
        name = str(entry.get("symbol", "")).upper()
        if (
            entry.get("status") == "TRADING"
            and entry.get("contractType") == "PERPETUAL"
            and name.endswith(quote.upper())
        ):
            symbols.append(name)
    return symbols
