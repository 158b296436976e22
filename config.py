"""Central configuration loader for environment variables."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

from dotenv import load_dotenv

# Load environment variables once when this module is imported.
load_dotenv()

import os


# ---------------------------------------------------------------------------
# Environment helpers
# ---------------------------------------------------------------------------
def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        return float(raw)
    except (TypeError, ValueError):
        return float(default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        return int(default)


def _env_list(name: str, default: Tuple[str, ...] = ()) -> Tuple[str, ...]:
    """Return a comma separated variable as an upper-cased tuple."""

    raw = os.getenv(name)
    if raw is None:
        return tuple(default)
    items = [part.split("#", 1)[0].strip().upper() for part in raw.split(",")]
    return tuple(item for item in items if item)


# ---------------------------------------------------------------------------
# Market data ingestion
# ---------------------------------------------------------------------------

TIMEFRAMES: Tuple[str, ...] = ("3m", "5m", "15m", "30m", "1h", "4h")
WINDOW_CAPACITY = 100


@dataclass(frozen=True)
class StreamSettings:
    """Knobs for the kline stream manager."""

    symbols: Tuple[str, ...] = ()
    timeframes: Tuple[str, ...] = TIMEFRAMES
    backfill_limit: int = WINDOW_CAPACITY
    backfill_concurrency: int = 5
    listener_queue_size: int = 1000
    listener_join_timeout: float = 5.0
    listener_put_timeout: float = 1.0


def load_stream_settings() -> StreamSettings:
    """Load stream manager settings from environment variables."""

    return StreamSettings(
        symbols=_env_list("SIGNAL_SYMBOLS"),
        backfill_limit=max(1, min(WINDOW_CAPACITY, _env_int("BACKFILL_LIMIT", WINDOW_CAPACITY))),
        backfill_concurrency=max(1, _env_int("BACKFILL_CONCURRENCY", 5)),
        listener_queue_size=max(10, _env_int("KLINE_LISTENER_QUEUE", 1000)),
        listener_join_timeout=max(0.1, _env_float("KLINE_LISTENER_JOIN_TIMEOUT", 5.0)),
        listener_put_timeout=max(0.0, _env_float("KLINE_LISTENER_PUT_TIMEOUT", 1.0)),
    )


# ---------------------------------------------------------------------------
# Multi-timeframe signal fusion policy
# ---------------------------------------------------------------------------

# Each entry is (primary, secondary, confirming) timeframe. The first pair
# whose signals agree provides the candidate direction; the confirming
# timeframe only adds a strength or caution note.
DEFAULT_CASCADE: Tuple[Tuple[str, str, str], ...] = (
    ("5m", "15m", "3m"),
    ("15m", "30m", "5m"),
    ("5m", "30m", "15m"),
)


@dataclass(frozen=True)
class FusionSettings:
    """Policy constants for the multi-timeframe signal fusion."""

    cascade: Tuple[Tuple[str, str, str], ...] = DEFAULT_CASCADE
    major_timeframes: Tuple[str, ...] = ("1h", "4h")
    min_edge_score: int = 2
    rsi_oversold: float = 40.0
    rsi_overbought: float = 60.0
    min_volume_ratio: float = 0.3
    max_volume_ratio: float = 3.0


def load_fusion_settings() -> FusionSettings:
    """Load fusion thresholds from environment variables."""

    return FusionSettings(
        min_edge_score=max(0, min(4, _env_int("FUSION_MIN_EDGE_SCORE", 2))),
        rsi_oversold=_env_float("FUSION_RSI_OVERSOLD", 40.0),
        rsi_overbought=_env_float("FUSION_RSI_OVERBOUGHT", 60.0),
        min_volume_ratio=max(0.0, _env_float("FUSION_MIN_VOLUME_RATIO", 0.3)),
        max_volume_ratio=max(0.0, _env_float("FUSION_MAX_VOLUME_RATIO", 3.0)),
    )


# ---------------------------------------------------------------------------
# Decision risk limits
# ---------------------------------------------------------------------------

MAJOR_SYMBOLS: Tuple[str, ...] = ("BTCUSDT", "ETHUSDT")


@dataclass(frozen=True)
class RiskSettings:
    """Hard limits enforced on every opening decision."""

    major_symbols: Tuple[str, ...] = MAJOR_SYMBOLS
    major_leverage: int = 5
    altcoin_leverage: int = 5
    major_position_cap: float = 10.0
    altcoin_position_cap: float = 1.5
    position_tolerance: float = 0.01
    min_risk_reward: float = 3.0
    entry_fraction: float = 0.2

    def is_major(self, symbol: str) -> bool:
        return str(symbol or "").strip().upper() in self.major_symbols

    def leverage_ceiling(self, symbol: str) -> int:
        return self.major_leverage if self.is_major(symbol) else self.altcoin_leverage

    def position_cap(self, symbol: str) -> float:
        return self.major_position_cap if self.is_major(symbol) else self.altcoin_position_cap


def load_risk_settings() -> RiskSettings:
    """Load leverage ceilings and risk constraints from environment variables."""

    return RiskSettings(
        major_symbols=_env_list("MAJOR_SYMBOLS", MAJOR_SYMBOLS),
        major_leverage=max(1, _env_int("BTC_ETH_LEVERAGE", 5)),
        altcoin_leverage=max(1, _env_int("ALTCOIN_LEVERAGE", 5)),
        min_risk_reward=max(0.0, _env_float("MIN_RISK_REWARD", 3.0)),
    )


# ---------------------------------------------------------------------------
# Candidate liquidity gate
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LiquiditySettings:
    """Open-interest liquidity gate for new candidates."""

    min_open_interest_value: float = 15_000_000.0


def load_liquidity_settings() -> LiquiditySettings:
    return LiquiditySettings(
        min_open_interest_value=max(0.0, _env_float("MIN_OI_VALUE_USD", 15_000_000.0)),
    )


# ---------------------------------------------------------------------------
# Decision model routing
# ---------------------------------------------------------------------------

DEFAULT_DECISION_MODEL = "qwen/qwen3-32b"


def get_decision_model() -> str:
    """Return the model used to generate trade decisions."""

    raw = os.getenv("DECISION_LLM_MODEL", "")
    return raw.strip() or DEFAULT_DECISION_MODEL


def get_decision_temperature() -> float:
    return max(0.0, min(2.0, _env_float("DECISION_LLM_TEMPERATURE", 0.5)))


def get_decision_max_tokens() -> int:
    return max(256, _env_int("DECISION_LLM_MAX_TOKENS", 4000))


__all__ = [
    "get",
    "TIMEFRAMES",
    "WINDOW_CAPACITY",
    "StreamSettings",
    "load_stream_settings",
    "DEFAULT_CASCADE",
    "FusionSettings",
    "load_fusion_settings",
    "MAJOR_SYMBOLS",
    "RiskSettings",
    "load_risk_settings",
    "LiquiditySettings",
    "load_liquidity_settings",
    "DEFAULT_DECISION_MODEL",
    "get_decision_model",
    "get_decision_temperature",
    "get_decision_max_tokens",
]
