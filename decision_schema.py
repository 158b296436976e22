"""Records exchanged with the decision model and the account collaborator.

``Decision`` mirrors the JSON objects the model is asked to emit::

    {"symbol": "BTCUSDT", "action": "open_long", "leverage": 5,
     "position_size_usd": 5000, "stop_loss": 60000, "take_profit": 66000,
     "confidence": 80, "risk_usd": 300, "reasoning": "..."}

Only ``symbol``, ``action`` and ``reasoning`` are required; the sizing fields
matter for opening actions alone.  ``PositionInfo`` and ``AccountInfo`` are
read-only snapshots supplied by the caller.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping

VALID_ACTIONS = frozenset(
    {"open_long", "open_short", "close_long", "close_short", "hold", "wait"}
)
OPENING_ACTIONS = frozenset({"open_long", "open_short"})

# Optional numeric fields omitted from ``to_dict`` when unset.
_OPTIONAL_FIELDS = (
    "leverage",
    "position_size_usd",
    "stop_loss",
    "take_profit",
    "confidence",
    "risk_usd",
)


def _as_float(value: Any, name: str) -> float:
    if value is None or value == "":
        return 0.0
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be numeric, got {value!r}") from None
    if not math.isfinite(result):
        raise ValueError(f"{name} must be finite, got {value!r}")
    return result


def _as_int(value: Any, name: str) -> int:
    return int(round(_as_float(value, name)))


@dataclass(frozen=True)
class Decision:
    symbol: str
    action: str
    leverage: int = 0
    position_size_usd: float = 0.0
    stop_loss: float = 0.0
    take_profit: float = 0.0
    confidence: int = 0
    risk_usd: float = 0.0
    reasoning: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Decision":
        """Build a decision from a parsed JSON object.

        Raises ``ValueError`` when the object is not a mapping or a numeric
        field cannot be coerced.
        """

        if not isinstance(data, Mapping):
            raise ValueError(f"decision must be a JSON object, got {type(data).__name__}")
        return cls(
            symbol=str(data.get("symbol") or "").strip().upper(),
            action=str(data.get("action") or "").strip().lower(),
            leverage=_as_int(data.get("leverage"), "leverage"),
            position_size_usd=_as_float(data.get("position_size_usd"), "position_size_usd"),
            stop_loss=_as_float(data.get("stop_loss"), "stop_loss"),
            take_profit=_as_float(data.get("take_profit"), "take_profit"),
            confidence=_as_int(data.get("confidence"), "confidence"),
            risk_usd=_as_float(data.get("risk_usd"), "risk_usd"),
            reasoning=str(data.get("reasoning") or ""),
        )

    @property
    def is_opening(self) -> bool:
        return self.action in OPENING_ACTIONS

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        for name in _OPTIONAL_FIELDS:
            if not payload[name]:
                payload.pop(name)
        return payload


@dataclass(frozen=True)
class PositionInfo:
    symbol: str
    side: str
    entry_price: float = 0.0
    mark_price: float = 0.0
    quantity: float = 0.0
    leverage: int = 1
    unrealized_pnl: float = 0.0
    unrealized_pnl_pct: float = 0.0
    liquidation_price: float = 0.0
    margin_used: float = 0.0
    update_time: int = 0


@dataclass(frozen=True)
class AccountInfo:
    total_equity: float
    available_balance: float = 0.0
    total_pnl: float = 0.0
    total_pnl_pct: float = 0.0
    margin_used: float = 0.0
    margin_used_pct: float = 0.0
    position_count: int = 0


__all__ = [
    "VALID_ACTIONS",
    "OPENING_ACTIONS",
    "Decision",
    "PositionInfo",
    "AccountInfo",
]
