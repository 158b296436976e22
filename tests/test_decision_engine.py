import json

import pytest

from config import RiskSettings
from decision_engine import DecisionCycleError, parse_full_decision_response, request_decisions
from decision_schema import AccountInfo
from groq_client import DecisionModelError

SETTINGS = RiskSettings(major_leverage=10, altcoin_leverage=5)
ACCOUNT = AccountInfo(total_equity=1000.0, available_balance=800.0)


def _response(*decisions) -> str:
    return "BTC holds the range; ETH lagging.\n" + json.dumps(list(decisions))


LONG_BTC = {
    "symbol": "BTCUSDT",
    "action": "open_long",
    "leverage": 5,
    "position_size_usd": 5000,
    "stop_loss": 60000,
    "take_profit": 68000,
    "confidence": 75,
    "risk_usd": 50,
    "reasoning": "breakout retest",
}


def test_request_decisions_returns_full_decision() -> None:
    calls = []

    def _generate(system_prompt, user_prompt):
        calls.append((system_prompt, user_prompt))
        return _response(LONG_BTC, {"symbol": "ETHUSDT", "action": "wait", "reasoning": "lagging"})

    result = request_decisions("SYSTEM", "USER", ACCOUNT, generate=_generate, settings=SETTINGS)

    assert calls == [("SYSTEM", "USER")]
    assert result.system_prompt == "SYSTEM"
    assert result.user_prompt == "USER"
    assert result.rationale == "BTC holds the range; ETH lagging."
    assert [d.action for d in result.decisions] == ["open_long", "wait"]
    assert result.timestamp.tzinfo is not None
    assert result.to_dict()["decisions"][1] == {
        "symbol": "ETHUSDT",
        "action": "wait",
        "reasoning": "lagging",
    }


def test_validation_failure_keeps_partial_result() -> None:
    too_big = dict(LONG_BTC, leverage=25)
    response = _response({"symbol": "ETHUSDT", "action": "hold", "reasoning": "x"}, too_big)

    with pytest.raises(DecisionCycleError) as excinfo:
        parse_full_decision_response(response, 1000.0, SETTINGS)

    err = excinfo.value
    assert err.stage == "validation"
    assert err.cause.index == 2
    assert err.partial.rationale == "BTC holds the range; ETH lagging."
    assert len(err.partial.decisions) == 2


def test_extraction_failure_keeps_rationale() -> None:
    with pytest.raises(DecisionCycleError) as excinfo:
        request_decisions(
            "S", "U", ACCOUNT, generate=lambda s, u: "Nothing to do today.", settings=SETTINGS
        )
    assert excinfo.value.stage == "extraction"
    assert excinfo.value.partial.rationale == "Nothing to do today."
    assert excinfo.value.partial.decisions == []
    assert excinfo.value.partial.user_prompt == "U"


def test_model_failure_is_wrapped() -> None:
    def _fail(system_prompt, user_prompt):
        raise DecisionModelError("rate limited")

    with pytest.raises(DecisionCycleError) as excinfo:
        request_decisions("S", "U", ACCOUNT, generate=_fail, settings=SETTINGS)
    assert excinfo.value.stage == "generation"
    assert excinfo.value.partial.system_prompt == "S"


def test_non_finite_number_is_an_extraction_failure() -> None:
    response = (
        'Overflowing leverage.\n[{"symbol": "SOLUSDT", "action": "open_long", '
        '"leverage": 1e999, "position_size_usd": 100, "stop_loss": 90, '
        '"take_profit": 150, "reasoning": "x"}]'
    )
    with pytest.raises(DecisionCycleError) as excinfo:
        parse_full_decision_response(
            response, 1000.0, SETTINGS, system_prompt="S", user_prompt="U"
        )
    assert excinfo.value.stage == "extraction"
    assert excinfo.value.partial.rationale == "Overflowing leverage."
