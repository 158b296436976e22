"""Thread-safe rolling kline windows keyed by ``(symbol, timeframe)``.

Every pair owns a bounded deque guarded by its own lock, so updates to
different keys never contend while updates to the same key are linearised
(the "same in-progress candle?" check and the write happen under one lock).
Readers always receive an immutable tuple copy of the window.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import asdict, dataclass
from typing import Deque, Dict, Iterable, Optional, Tuple

import pandas as pd

from config import TIMEFRAMES, WINDOW_CAPACITY

__all__ = [
    "Candle",
    "KlineStore",
    "Window",
    "WindowKey",
    "validate_timeframe",
]


@dataclass(frozen=True)
class Candle:
    """Single OHLCV bar for one symbol and timeframe."""

    open_time: int
    close_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    trades: int = 0
    quote_volume: float = 0.0
    taker_buy_base: float = 0.0
    taker_buy_quote: float = 0.0


Window = Tuple[Candle, ...]
WindowKey = Tuple[str, str]


def validate_timeframe(timeframe: str) -> str:
    tf = str(timeframe or "").strip().lower()
    if tf not in TIMEFRAMES:
        raise ValueError(f"Unsupported timeframe {timeframe!r}; expected one of {TIMEFRAMES}")
    return tf


def _key(symbol: str, timeframe: str) -> WindowKey:
    return str(symbol or "").strip().upper(), validate_timeframe(timeframe)


class KlineStore:
    """Fixed-capacity candle windows for every (symbol, timeframe) pair."""

    def __init__(self, capacity: int = WINDOW_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self.capacity = int(capacity)
        self._windows: Dict[WindowKey, Deque[Candle]] = {}
        self._locks: Dict[WindowKey, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, key: WindowKey) -> threading.Lock:
        lock = self._locks.get(key)
        if lock is not None:
            return lock
        with self._registry_lock:
            return self._locks.setdefault(key, threading.Lock())

    def upsert(self, symbol: str, timeframe: str, candle: Candle) -> bool:
        """Apply a live candle update.

        Returns ``True`` when the candle opened a new bar and ``False`` when
        it replaced the still-open last bar.
        """

        key = _key(symbol, timeframe)
        with self._lock_for(key):
            window = self._windows.get(key)
            if window is None:
                window = deque(maxlen=self.capacity)
                self._windows[key] = window
            if window and window[-1].open_time == candle.open_time:
                window[-1] = candle
                return False
            window.append(candle)
            return True

    def replace(self, symbol: str, timeframe: str, candles: Iterable[Candle]) -> int:
        """Install a full window (e.g. from a REST backfill); last writer wins."""

        key = _key(symbol, timeframe)
        window: Deque[Candle] = deque(candles, maxlen=self.capacity)
        with self._lock_for(key):
            self._windows[key] = window
            return len(window)

    def get(self, symbol: str, timeframe: str) -> Optional[Window]:
        """Return a snapshot of the window or ``None`` on a cache miss."""

        key = _key(symbol, timeframe)
        with self._lock_for(key):
            window = self._windows.get(key)
            if window is None:
                return None
            return tuple(window)

    def __contains__(self, item: object) -> bool:
        if not isinstance(item, tuple) or len(item) != 2:
            return False
        try:
            key = _key(*item)
        except ValueError:
            return False
        return key in self._windows

    def __len__(self) -> int:
        return len(self._windows)

    def frame(self, symbol: str, timeframe: str) -> pd.DataFrame:
        """Return the window as a DataFrame indexed by UTC close time."""

        window = self.get(symbol, timeframe) or ()
        columns = list(Candle.__dataclass_fields__.keys())
        if not window:
            return pd.DataFrame(columns=columns)
        df = pd.DataFrame([asdict(candle) for candle in window], columns=columns)
        df.index = pd.to_datetime(df["close_time"], unit="ms", utc=True)
        df.index.name = "close_time"
        return df
