"""One decision cycle: prompts in, validated decisions out.

Prompt text is assembled by the caller.  ``request_decisions`` sends it to a
decision-generation callable (``groq_client.generate_decision_text`` by
default), splits the answer into rationale and decision list, validates the
list against the account's risk limits and returns a :class:`FullDecision`.

Any failure after the model call raises :class:`DecisionCycleError` with
the partial result attached so the rationale is never lost.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from config import RiskSettings, load_risk_settings
from decision_schema import AccountInfo, Decision
from decision_validator import DecisionValidationError, validate_decisions
from groq_client import DecisionModelError, generate_decision_text
from json_utils import DecisionParseError, extract_decisions, extract_rationale
from log_utils import setup_logger
from observability import log_event

logger = setup_logger(__name__)

DecisionGenerator = Callable[[str, str], str]


@dataclass
class FullDecision:
    """Everything produced by one decision cycle."""

    system_prompt: str = ""
    user_prompt: str = ""
    rationale: str = ""
    decisions: List[Decision] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "system_prompt": self.system_prompt,
            "user_prompt": self.user_prompt,
            "rationale": self.rationale,
            "decisions": [decision.to_dict() for decision in self.decisions],
            "timestamp": self.timestamp.isoformat(),
        }


class DecisionCycleError(RuntimeError):
    """A decision cycle failed; ``partial`` holds what was produced."""

    def __init__(self, stage: str, cause: Exception, partial: FullDecision) -> None:
        self.stage = stage
        self.cause = cause
        self.partial = partial
        super().__init__(f"decision {stage} failed: {cause}")


def parse_full_decision_response(
    response: str,
    equity: float,
    settings: Optional[RiskSettings] = None,
    *,
    system_prompt: str = "",
    user_prompt: str = "",
) -> FullDecision:
    """Split ``response`` into rationale and validated decisions."""

    result = FullDecision(
        system_prompt=system_prompt,
        user_prompt=user_prompt,
        rationale=extract_rationale(response),
    )
    try:
        result.decisions = extract_decisions(response)
    except DecisionParseError as exc:
        raise DecisionCycleError("extraction", exc, result) from exc
    try:
        validate_decisions(result.decisions, equity, settings or load_risk_settings())
    except DecisionValidationError as exc:
        raise DecisionCycleError("validation", exc, result) from exc
    return result


def request_decisions(
    system_prompt: str,
    user_prompt: str,
    account: AccountInfo,
    *,
    generate: Optional[DecisionGenerator] = None,
    settings: Optional[RiskSettings] = None,
) -> FullDecision:
    """Run one decision cycle for ``account``."""

    generate = generate or generate_decision_text
    settings = settings or load_risk_settings()
    try:
        response = generate(system_prompt, user_prompt)
    except DecisionModelError as exc:
        partial = FullDecision(system_prompt=system_prompt, user_prompt=user_prompt)
        raise DecisionCycleError("generation", exc, partial) from exc

    try:
        result = parse_full_decision_response(
            response,
            account.total_equity,
            settings,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
        )
    except DecisionCycleError as exc:
        log_event(
            logger,
            "decision_cycle_failed",
            stage=exc.stage,
            error=str(exc.cause),
            parsed=len(exc.partial.decisions),
        )
        raise
    log_event(
        logger,
        "decision_cycle_complete",
        decisions=len(result.decisions),
        opening=sum(1 for d in result.decisions if d.is_opening),
    )
    return result


__all__ = [
    "FullDecision",
    "DecisionCycleError",
    "DecisionGenerator",
    "parse_full_decision_response",
    "request_decisions",
]
