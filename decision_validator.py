"""Hard risk limits applied to every model-proposed decision.

Non-opening actions only need a known action name.  Opening actions must
respect the per-symbol leverage ceiling, the position value cap relative to
account equity, sane stop-loss/take-profit ordering and a minimum
risk/reward ratio.  The first violated rule raises
:class:`DecisionValidationError`; nothing here mutates the decision.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from config import RiskSettings, load_risk_settings
from decision_schema import OPENING_ACTIONS, VALID_ACTIONS, Decision

__all__ = [
    "DecisionValidationError",
    "RiskReward",
    "risk_reward_ratio",
    "validate_decision",
    "validate_decisions",
]


class DecisionValidationError(ValueError):
    """A decision violated a hard limit.

    ``index`` is the 1-based position in the batch (``None`` for a single
    decision), ``rule`` names the violated constraint and ``values`` holds
    the offending numbers.
    """

    def __init__(
        self,
        rule: str,
        message: str,
        values: Optional[Dict[str, Any]] = None,
        index: Optional[int] = None,
        symbol: str = "",
    ) -> None:
        self.rule = rule
        self.detail = message
        self.values = dict(values or {})
        self.index = index
        self.symbol = symbol
        super().__init__(self._render())

    def _render(self) -> str:
        prefix = f"decision #{self.index} " if self.index is not None else ""
        subject = f"({self.symbol}) " if self.symbol else ""
        return f"{prefix}{subject}failed {self.rule}: {self.detail}"

    def at(self, index: int) -> "DecisionValidationError":
        """Return a copy of this error tagged with a batch position."""

        return DecisionValidationError(self.rule, self.detail, self.values, index, self.symbol)


@dataclass(frozen=True)
class RiskReward:
    entry: float
    risk_pct: float
    reward_pct: float
    ratio: float


def risk_reward_ratio(
    action: str, stop_loss: float, take_profit: float, entry_fraction: float = 0.2
) -> RiskReward:
    """Risk/reward of a trade entered ``entry_fraction`` of the way from SL to TP.

    Percentages are relative to the assumed entry.  The ratio is the reward
    distance over the risk distance (identical to reward% / risk%) and is 0
    when there is no risk.
    """

    if action == "open_long":
        entry = stop_loss + (take_profit - stop_loss) * entry_fraction
        risk = entry - stop_loss
        reward = take_profit - entry
    else:
        entry = stop_loss - (stop_loss - take_profit) * entry_fraction
        risk = stop_loss - entry
        reward = entry - take_profit
    if entry <= 0:
        return RiskReward(entry, 0.0, 0.0, 0.0)
    risk_pct = risk / entry * 100.0
    reward_pct = reward / entry * 100.0
    ratio = reward / risk if risk_pct > 0 else 0.0
    return RiskReward(entry, risk_pct, reward_pct, ratio)


def validate_decision(
    decision: Decision, equity: float, settings: Optional[RiskSettings] = None
) -> None:
    """Raise :class:`DecisionValidationError` when ``decision`` breaks a limit."""

    settings = settings or load_risk_settings()
    symbol = decision.symbol

    if decision.action not in VALID_ACTIONS:
        raise DecisionValidationError(
            "action",
            f"unknown action {decision.action!r}",
            {"action": decision.action},
            symbol=symbol,
        )
    if decision.action not in OPENING_ACTIONS:
        return

    ceiling = settings.leverage_ceiling(symbol)
    if decision.leverage < 1 or decision.leverage > ceiling:
        raise DecisionValidationError(
            "leverage",
            f"leverage must be within 1-{ceiling}, got {decision.leverage}",
            {"leverage": decision.leverage, "ceiling": ceiling},
            symbol=symbol,
        )

    if not math.isfinite(decision.position_size_usd) or decision.position_size_usd <= 0:
        raise DecisionValidationError(
            "position_size",
            f"position size must be > 0, got {decision.position_size_usd:.2f}",
            {"position_size_usd": decision.position_size_usd},
            symbol=symbol,
        )
    cap = settings.position_cap(symbol)
    max_value = equity * cap
    limit = max_value + max_value * settings.position_tolerance
    if decision.position_size_usd > limit:
        raise DecisionValidationError(
            "position_size",
            f"position value {decision.position_size_usd:.0f} exceeds {max_value:.0f} "
            f"({cap:g}x equity {equity:.0f})",
            {"position_size_usd": decision.position_size_usd, "max_position_usd": max_value},
            symbol=symbol,
        )

    prices = (decision.stop_loss, decision.take_profit)
    if not all(math.isfinite(price) and price > 0 for price in prices):
        raise DecisionValidationError(
            "stop_take",
            "stop loss and take profit must be finite and > 0",
            {"stop_loss": decision.stop_loss, "take_profit": decision.take_profit},
            symbol=symbol,
        )
    if decision.action == "open_long" and decision.stop_loss >= decision.take_profit:
        raise DecisionValidationError(
            "stop_take",
            "long stop loss must be below take profit",
            {"stop_loss": decision.stop_loss, "take_profit": decision.take_profit},
            symbol=symbol,
        )
    if decision.action == "open_short" and decision.stop_loss <= decision.take_profit:
        raise DecisionValidationError(
            "stop_take",
            "short stop loss must be above take profit",
            {"stop_loss": decision.stop_loss, "take_profit": decision.take_profit},
            symbol=symbol,
        )

    rr = risk_reward_ratio(
        decision.action, decision.stop_loss, decision.take_profit, settings.entry_fraction
    )
    if rr.ratio < settings.min_risk_reward:
        raise DecisionValidationError(
            "risk_reward",
            f"risk/reward {rr.ratio:.2f}:1 below {settings.min_risk_reward:.1f}:1 "
            f"[risk {rr.risk_pct:.2f}% reward {rr.reward_pct:.2f}%] "
            f"[SL {decision.stop_loss:.2f} TP {decision.take_profit:.2f}]",
            {
                "ratio": rr.ratio,
                "risk_pct": rr.risk_pct,
                "reward_pct": rr.reward_pct,
                "stop_loss": decision.stop_loss,
                "take_profit": decision.take_profit,
            },
            symbol=symbol,
        )


def validate_decisions(
    decisions: Iterable[Decision], equity: float, settings: Optional[RiskSettings] = None
) -> None:
    """Validate a batch, stopping at the first failure."""

    settings = settings or load_risk_settings()
    for index, decision in enumerate(decisions, start=1):
        try:
            validate_decision(decision, equity, settings)
        except DecisionValidationError as exc:
            raise exc.at(index) from None
