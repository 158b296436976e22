"""Per-symbol market snapshots assembled from the live kline store.

A :class:`SymbolSnapshot` bundles everything the signal fusion and the
decision prompt need for one symbol: spot indicators on the 3m window, the
Supertrend state on all six timeframes, volume/price analysis, short
intraday series, 4h context, open interest and funding.  Snapshots are built
fresh every cycle and never persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np

from config import TIMEFRAMES, LiquiditySettings, load_liquidity_settings
from indicators import (
    NO_TREND,
    TrendBandState,
    calculate_atr,
    calculate_ema,
    calculate_macd,
    calculate_rsi,
    calculate_supertrend,
)
from kline_store import Candle
from log_utils import setup_logger
from observability import log_event
from rest_prices import fetch_funding_rate, fetch_open_interest

logger = setup_logger(__name__)

SERIES_LENGTH = 10
_VOLUME_LOOKBACK = 20
_FLAT_PRICE_PCT = 0.1


class SnapshotUnavailableError(RuntimeError):
    """Raised when the 3m window needed for a snapshot is unavailable."""


def normalize_symbol(symbol: str) -> str:
    """Upper-case ``symbol`` and make sure it is a USDT pair."""

    symbol = str(symbol or "").strip().upper()
    if symbol.endswith("USDT"):
        return symbol
    return symbol + "USDT"


@dataclass
class VolumePriceData:
    volume_ratio_3m: float = 0.0
    volume_ratio_5m: float = 0.0
    volume_ratio_30m: float = 0.0
    volume_trend: str = "stable"
    price_volume_ok: bool = False


@dataclass
class IntradaySeries:
    closes: List[float] = field(default_factory=list)
    ema20: List[float] = field(default_factory=list)
    macd: List[float] = field(default_factory=list)
    rsi7: List[float] = field(default_factory=list)
    rsi14: List[float] = field(default_factory=list)


@dataclass
class LongerTermContext:
    ema20: float = 0.0
    ema50: float = 0.0
    atr3: float = 0.0
    atr14: float = 0.0
    current_volume: float = 0.0
    average_volume: float = 0.0
    macd: List[float] = field(default_factory=list)
    rsi14: List[float] = field(default_factory=list)


@dataclass
class SymbolSnapshot:
    """Point-in-time market view of one symbol."""

    symbol: str
    current_price: float = 0.0
    price_change_1h: float = 0.0
    price_change_4h: float = 0.0
    ema20: float = 0.0
    macd: float = 0.0
    rsi7: float = 0.0
    previous_macd: float = 0.0
    previous_rsi7: float = 0.0
    open_interest: float = 0.0
    funding_rate: float = 0.0
    trend_bands: Dict[str, TrendBandState] = field(default_factory=dict)
    volume_price: VolumePriceData = field(default_factory=VolumePriceData)
    intraday: IntradaySeries = field(default_factory=IntradaySeries)
    longer_term: LongerTermContext = field(default_factory=LongerTermContext)

    def band(self, timeframe: str) -> TrendBandState:
        return self.trend_bands.get(timeframe, NO_TREND)

    def signal(self, timeframe: str) -> str:
        return self.band(timeframe).signal

    @property
    def open_interest_value(self) -> float:
        """Open interest expressed in quote currency (contracts x price)."""

        return self.open_interest * self.current_price


# ---------------------------------------------------------------------------
# Volume / price analysis
# ---------------------------------------------------------------------------


def _volume_ratio(candles: Sequence[Candle]) -> float:
    """Latest volume relative to the trailing average (up to 19 prior bars)."""

    if len(candles) >= _VOLUME_LOOKBACK:
        prior = candles[-_VOLUME_LOOKBACK:-1]
    elif len(candles) >= 5:
        prior = candles[:-1]
    else:
        return 0.0
    average = float(np.mean([c.volume for c in prior]))
    if average <= 0:
        return 0.0
    return candles[-1].volume / average


def _volume_trend(candles: Sequence[Candle]) -> str:
    volumes = np.array([c.volume for c in candles], dtype=float)
    if len(volumes) >= 10:
        recent, older = volumes[-5:].mean(), volumes[-10:-5].mean()
        rising, falling = 1.15, 0.85
    elif len(volumes) >= 5:
        recent, older = volumes[-3:].mean(), volumes[-5:-3].mean()
        rising, falling = 1.2, 0.8
    elif len(volumes) >= 3:
        recent, older = volumes[-1], volumes[:-1].mean()
        rising, falling = 1.3, 0.7
    else:
        return "stable"
    if older <= 0:
        return "stable"
    ratio = recent / older
    if ratio > rising:
        return "increasing"
    if ratio < falling:
        return "decreasing"
    return "stable"


def _is_confirming(price_pct: float, volume_pct: float) -> bool:
    return (
        (price_pct > _FLAT_PRICE_PCT and volume_pct > 0)
        or (price_pct < -_FLAT_PRICE_PCT and volume_pct < 0)
        or abs(price_pct) <= _FLAT_PRICE_PCT
    )


def _price_volume_changes(candles: Sequence[Candle], start: int, allow_zero_volume: bool):
    price_changes: List[float] = []
    volume_changes: List[float] = []
    for i in range(max(start, 1), len(candles)):
        prev, curr = candles[i - 1], candles[i]
        if prev.close <= 0:
            continue
        if prev.volume > 0:
            volume_pct = (curr.volume - prev.volume) / prev.volume * 100.0
        elif allow_zero_volume and curr.volume > 0:
            volume_pct = 100.0
        else:
            continue
        price_changes.append((curr.close - prev.close) / prev.close * 100.0)
        volume_changes.append(volume_pct)
    return np.array(price_changes), np.array(volume_changes)


def _price_volume_ok(candles: Sequence[Candle]) -> bool:
    """Whether recent volume confirms price (rising on rallies, fading on dips)."""

    count = len(candles)
    if count >= 5:
        prices, volumes = _price_volume_changes(candles, count - 5, allow_zero_volume=True)
        if len(prices) < 3:
            return False
        matches = 0
        counted = 0
        for price_pct, volume_pct in zip(prices, volumes):
            if abs(price_pct) <= _FLAT_PRICE_PCT:
                continue
            counted += 1
            if _is_confirming(price_pct, volume_pct):
                matches += 1
        avg_price = float(prices.mean())
        avg_volume = float(volumes.mean())
        if (avg_price > 0 and avg_volume > 0) or (avg_price < 0 and avg_volume < 0):
            return True
        if counted and matches / counted >= 0.6:
            return True
        return abs(avg_price) < 0.2 and abs(avg_volume) < 5.0
    if count >= 2:
        prices, volumes = _price_volume_changes(candles, count - 2, allow_zero_volume=False)
        if not len(prices):
            return False
        return all(_is_confirming(p, v) for p, v in zip(prices, volumes))
    return False


def calculate_volume_price_data(
    candles_3m: Sequence[Candle],
    candles_5m: Sequence[Candle] = (),
    candles_30m: Sequence[Candle] = (),
) -> VolumePriceData:
    return VolumePriceData(
        volume_ratio_3m=_volume_ratio(candles_3m),
        volume_ratio_5m=_volume_ratio(candles_5m),
        volume_ratio_30m=_volume_ratio(candles_30m),
        volume_trend=_volume_trend(candles_3m),
        price_volume_ok=_price_volume_ok(candles_3m),
    )


# ---------------------------------------------------------------------------
# Series helpers
# ---------------------------------------------------------------------------


def calculate_intraday_series(candles: Sequence[Candle]) -> IntradaySeries:
    series = IntradaySeries()
    for i in range(max(len(candles) - SERIES_LENGTH, 0), len(candles)):
        prefix = candles[: i + 1]
        series.closes.append(candles[i].close)
        if i >= 19:
            series.ema20.append(calculate_ema(prefix, 20))
        if i >= 25:
            series.macd.append(calculate_macd(prefix))
        if i >= 7:
            series.rsi7.append(calculate_rsi(prefix, 7))
        if i >= 14:
            series.rsi14.append(calculate_rsi(prefix, 14))
    return series


def calculate_longer_term_context(candles: Sequence[Candle]) -> LongerTermContext:
    context = LongerTermContext(
        ema20=calculate_ema(candles, 20),
        ema50=calculate_ema(candles, 50),
        atr3=calculate_atr(candles, 3),
        atr14=calculate_atr(candles, 14),
    )
    if candles:
        context.current_volume = candles[-1].volume
        context.average_volume = float(np.mean([c.volume for c in candles]))
    for i in range(max(len(candles) - SERIES_LENGTH, 0), len(candles)):
        prefix = candles[: i + 1]
        if i >= 25:
            context.macd.append(calculate_macd(prefix))
        if i >= 14:
            context.rsi14.append(calculate_rsi(prefix, 14))
    return context


def _pct_change(current: float, reference: float) -> float:
    if reference <= 0:
        return 0.0
    return (current - reference) / reference * 100.0


# ---------------------------------------------------------------------------
# Snapshot assembly
# ---------------------------------------------------------------------------


def _load_windows(manager, symbol: str) -> Dict[str, Sequence[Candle]]:
    windows: Dict[str, Sequence[Candle]] = {}
    for timeframe in TIMEFRAMES:
        try:
            windows[timeframe] = manager.get_klines(symbol, timeframe)
        except Exception as exc:
            if timeframe == "3m":
                raise SnapshotUnavailableError(f"3m klines unavailable for {symbol}: {exc}") from exc
            logger.warning("%s %s klines unavailable: %s", symbol, timeframe, exc)
            windows[timeframe] = ()
    return windows


def build_snapshot(manager, symbol: str) -> SymbolSnapshot:
    """Build a :class:`SymbolSnapshot` for ``symbol`` from ``manager``.

    ``manager`` is a :class:`market_stream.KlineStreamManager` (or anything
    exposing ``get_klines`` and ``rest_client``).  Raises
    :class:`SnapshotUnavailableError` when there is no 3m data; every other
    missing input degrades to neutral values.
    """

    symbol = normalize_symbol(symbol)
    windows = _load_windows(manager, symbol)
    klines_3m = windows["3m"]
    if not klines_3m:
        raise SnapshotUnavailableError(f"3m window for {symbol} is empty")
    klines_4h = windows["4h"]

    current_price = klines_3m[-1].close
    previous = klines_3m[:-1]
    snapshot = SymbolSnapshot(
        symbol=symbol,
        current_price=current_price,
        ema20=calculate_ema(klines_3m, 20),
        macd=calculate_macd(klines_3m),
        rsi7=calculate_rsi(klines_3m, 7),
        previous_macd=calculate_macd(previous),
        previous_rsi7=calculate_rsi(previous, 7),
        trend_bands={
            tf: calculate_supertrend(windows[tf], current_price=current_price) for tf in TIMEFRAMES
        },
        volume_price=calculate_volume_price_data(klines_3m, windows["5m"], windows["30m"]),
        intraday=calculate_intraday_series(klines_3m),
        longer_term=calculate_longer_term_context(klines_4h),
    )
    if len(klines_3m) >= 21:
        snapshot.price_change_1h = _pct_change(current_price, klines_3m[-21].close)
    if len(klines_4h) >= 2:
        snapshot.price_change_4h = _pct_change(current_price, klines_4h[-2].close)

    client = manager.rest_client
    try:
        snapshot.open_interest = fetch_open_interest(client, symbol)
    except Exception as exc:
        logger.warning("Open interest unavailable for %s: %s", symbol, exc)
    try:
        snapshot.funding_rate = fetch_funding_rate(client, symbol)
    except Exception as exc:
        logger.warning("Funding rate unavailable for %s: %s", symbol, exc)
    return snapshot


def passes_liquidity_filter(
    snapshot: SymbolSnapshot,
    held: bool = False,
    settings: Optional[LiquiditySettings] = None,
) -> bool:
    """Return True when ``snapshot`` may be considered for a new position.

    Held symbols always pass so that exits can still be decided.
    """

    if held:
        return True
    settings = settings or load_liquidity_settings()
    return snapshot.open_interest_value >= settings.min_open_interest_value


def _symbol_of(item: Any) -> str:
    if isinstance(item, str):
        return item
    if isinstance(item, Mapping):
        return str(item.get("symbol", ""))
    return str(getattr(item, "symbol", ""))


def gather_market_context(
    manager,
    candidates: Iterable[Any],
    positions: Iterable[Any] = (),
    settings: Optional[LiquiditySettings] = None,
) -> Dict[str, SymbolSnapshot]:
    """Build snapshots for held symbols and candidates.

    Held symbols come first and skip the liquidity gate.  Symbols whose
    snapshot cannot be built are logged and skipped.
    """

    settings = settings or load_liquidity_settings()
    held = [normalize_symbol(_symbol_of(p)) for p in positions if _symbol_of(p)]
    held_set = set(held)
    ordered: Dict[str, None] = {}
    for symbol in held + [normalize_symbol(_symbol_of(c)) for c in candidates if _symbol_of(c)]:
        ordered.setdefault(symbol, None)

    snapshots: Dict[str, SymbolSnapshot] = {}
    for symbol in ordered:
        try:
            snapshot = build_snapshot(manager, symbol)
        except SnapshotUnavailableError as exc:
            logger.warning("Skipping %s: %s", symbol, exc)
            continue
        except Exception:
            logger.exception("Failed to build snapshot for %s", symbol)
            continue
        if not passes_liquidity_filter(snapshot, symbol in held_set, settings):
            log_event(
                logger,
                "liquidity_exclusion",
                symbol=symbol,
                open_interest=snapshot.open_interest,
                price=snapshot.current_price,
                value_musd=round(snapshot.open_interest_value / 1_000_000, 2),
                threshold_musd=round(settings.min_open_interest_value / 1_000_000, 2),
            )
            continue
        snapshots[symbol] = snapshot
    return snapshots


__all__ = [
    "SnapshotUnavailableError",
    "VolumePriceData",
    "IntradaySeries",
    "LongerTermContext",
    "SymbolSnapshot",
    "normalize_symbol",
    "calculate_volume_price_data",
    "calculate_intraday_series",
    "calculate_longer_term_context",
    "build_snapshot",
    "passes_liquidity_filter",
    "gather_market_context",
]
