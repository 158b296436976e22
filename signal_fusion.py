"""Multi-timeframe Supertrend fusion.

Turns the per-timeframe trend band signals of a :class:`SymbolSnapshot`
into a single long/short verdict.  The evaluation runs in three stages:

1. A timeframe cascade picks the candidate direction.  The first pair in
   ``FusionSettings.cascade`` whose signals agree wins; the pair's
   confirming timeframe strengthens the case when it agrees and adds a
   caution when it disagrees.
2. A short-term edge score (oversold/overbought RSI7, MACD turning, price
   against EMA20, RSI7 momentum) must reach ``min_edge_score``.
3. The major trend (1h/4h) vetoes a candidate it contradicts.

Volume never vetoes; unhealthy volume only adds cautions.  The public
``analyze_trend_signal`` returns ``""`` when there is no signal and a human
readable rationale otherwise.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from config import FusionSettings, load_fusion_settings
from market_data import SymbolSnapshot

__all__ = [
    "FusionResult",
    "evaluate_trend_signal",
    "analyze_trend_signal",
    "edge_conditions",
]

_DIRECTIONS = ("long", "short")


@dataclass
class FusionResult:
    """Outcome of a fusion pass; ``direction`` is ``None`` when rejected."""

    direction: Optional[str] = None
    timeframes: Tuple[str, ...] = ()
    edge_score: int = 0
    edge_conditions: List[str] = field(default_factory=list)
    strengths: List[str] = field(default_factory=list)
    cautions: List[str] = field(default_factory=list)
    rejection: str = ""

    @property
    def accepted(self) -> bool:
        return self.direction in _DIRECTIONS

    def describe(self) -> str:
        if not self.accepted:
            return ""
        parts = [
            f"{self.direction.upper()} signal: {' & '.join(self.timeframes)} agree "
            f"(edge {self.edge_score}/4: {', '.join(self.edge_conditions)})"
        ]
        parts.extend(self.strengths)
        parts.extend(f"caution: {note}" for note in self.cautions)
        return " | ".join(parts)


def _signal(snapshot: SymbolSnapshot, timeframe: str) -> str:
    signal = snapshot.signal(timeframe)
    return signal if signal in _DIRECTIONS else "none"


def _select_candidate(snapshot: SymbolSnapshot, settings: FusionSettings, result: FusionResult) -> None:
    for primary, secondary, confirming in settings.cascade:
        direction = _signal(snapshot, primary)
        if direction == "none" or direction != _signal(snapshot, secondary):
            continue
        result.direction = direction
        result.timeframes = (primary, secondary)
        confirm = _signal(snapshot, confirming)
        if confirm == direction:
            result.strengths.append(f"{confirming} confirms {direction}")
            result.timeframes = (primary, secondary, confirming)
        elif confirm != "none":
            result.cautions.append(f"{confirming} disagrees ({confirm})")
        return
    result.rejection = "no agreeing timeframe pair"


def edge_conditions(snapshot: SymbolSnapshot, direction: str, settings: FusionSettings) -> List[str]:
    """Return the names of the short-term edge conditions met for ``direction``."""

    met: List[str] = []
    if direction == "long":
        if snapshot.rsi7 < settings.rsi_oversold:
            met.append(f"RSI7 {snapshot.rsi7:.1f} oversold")
        if snapshot.macd < 0 and snapshot.macd > snapshot.previous_macd:
            met.append("MACD turning up below zero")
        if snapshot.current_price >= snapshot.ema20:
            met.append("price at/above EMA20")
        if snapshot.rsi7 > snapshot.previous_rsi7:
            met.append("RSI7 rising")
    elif direction == "short":
        if snapshot.rsi7 > settings.rsi_overbought:
            met.append(f"RSI7 {snapshot.rsi7:.1f} overbought")
        if snapshot.macd > 0 and snapshot.macd < snapshot.previous_macd:
            met.append("MACD turning down above zero")
        if snapshot.current_price <= snapshot.ema20:
            met.append("price at/below EMA20")
        if snapshot.rsi7 < snapshot.previous_rsi7:
            met.append("RSI7 falling")
    return met


def _major_trend_veto(snapshot: SymbolSnapshot, direction: str, settings: FusionSettings) -> Optional[str]:
    present = [
        (tf, _signal(snapshot, tf))
        for tf in settings.major_timeframes
        if _signal(snapshot, tf) != "none"
    ]
    if not present:
        return None
    opposing = [f"{tf}={signal}" for tf, signal in present if signal != direction]
    if len(opposing) == len(present):
        return f"major trend against {direction} ({', '.join(opposing)})"
    return None


def evaluate_trend_signal(
    snapshot: Optional[SymbolSnapshot], settings: Optional[FusionSettings] = None
) -> FusionResult:
    """Run the full fusion pipeline and return a :class:`FusionResult`."""

    result = FusionResult()
    if snapshot is None:
        result.rejection = "no snapshot"
        return result
    settings = settings or load_fusion_settings()

    _select_candidate(snapshot, settings, result)
    if not result.accepted:
        return result
    direction = result.direction

    result.edge_conditions = edge_conditions(snapshot, direction, settings)
    result.edge_score = len(result.edge_conditions)
    if result.edge_score < settings.min_edge_score:
        result.rejection = f"short-term edge {result.edge_score}/4 below {settings.min_edge_score}"
        result.direction = None
        return result

    veto = _major_trend_veto(snapshot, direction, settings)
    if veto:
        result.rejection = veto
        result.direction = None
        return result
    for tf in settings.major_timeframes:
        signal = _signal(snapshot, tf)
        if signal == direction:
            result.strengths.append(f"{tf} trend aligned")
        elif signal != "none":
            result.cautions.append(f"{tf} trend disagrees ({signal})")

    volume = snapshot.volume_price
    if not volume.price_volume_ok:
        result.cautions.append("volume does not confirm price")
    ratio = volume.volume_ratio_3m
    if ratio < settings.min_volume_ratio or ratio > settings.max_volume_ratio:
        result.cautions.append(
            f"3m volume ratio {ratio:.2f} outside "
            f"[{settings.min_volume_ratio:.1f}, {settings.max_volume_ratio:.1f}]"
        )
    return result


def analyze_trend_signal(
    snapshot: Optional[SymbolSnapshot], settings: Optional[FusionSettings] = None
) -> str:
    """Return the fused signal rationale, or ``""`` when there is none."""

    return evaluate_trend_signal(snapshot, settings).describe()
