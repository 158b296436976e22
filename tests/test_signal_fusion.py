from config import FusionSettings
from indicators import TrendBandState
from market_data import SymbolSnapshot, VolumePriceData
from signal_fusion import analyze_trend_signal, edge_conditions, evaluate_trend_signal

SETTINGS = FusionSettings()


def _snapshot(signals, *, rsi7=35.0, previous_rsi7=30.0, macd=0.0, previous_macd=0.0,
              price=100.0, ema20=101.0, volume_ratio=1.0, price_volume_ok=True):
    bands = {
        tf: TrendBandState(trend="up" if signal == "long" else "down", signal=signal)
        for tf, signal in signals.items()
    }
    return SymbolSnapshot(
        symbol="BTCUSDT",
        current_price=price,
        ema20=ema20,
        macd=macd,
        previous_macd=previous_macd,
        rsi7=rsi7,
        previous_rsi7=previous_rsi7,
        trend_bands=bands,
        volume_price=VolumePriceData(volume_ratio_3m=volume_ratio, price_volume_ok=price_volume_ok),
    )


def test_major_trend_veto_with_single_present_timeframe() -> None:
    snapshot = _snapshot({"5m": "long", "15m": "long", "1h": "short"})

    result = evaluate_trend_signal(snapshot, SETTINGS)

    assert analyze_trend_signal(snapshot, SETTINGS) == ""
    assert result.direction is None
    assert result.rejection.startswith("major trend against long")


def test_split_major_trend_passes_with_volume_caution() -> None:
    snapshot = _snapshot(
        {"5m": "long", "15m": "long", "1h": "long", "4h": "short"}, volume_ratio=0.1
    )

    result = evaluate_trend_signal(snapshot, SETTINGS)
    text = analyze_trend_signal(snapshot, SETTINGS)

    assert result.direction == "long"
    assert result.edge_score == 2
    assert text.startswith("LONG signal: 5m & 15m agree")
    assert "caution: 3m volume ratio 0.10 outside [0.3, 3.0]" in text
    assert "caution: 4h trend disagrees (short)" in text
    assert "1h trend aligned" in text


def test_confirming_timeframe_strengthens_or_cautions() -> None:
    agreeing = evaluate_trend_signal(_snapshot({"3m": "long", "5m": "long", "15m": "long"}), SETTINGS)
    assert agreeing.timeframes == ("5m", "15m", "3m")
    assert "3m confirms long" in agreeing.strengths

    disagreeing = evaluate_trend_signal(_snapshot({"3m": "short", "5m": "long", "15m": "long"}), SETTINGS)
    assert disagreeing.direction == "long"
    assert "3m disagrees (short)" in disagreeing.cautions


def test_cascade_falls_through_to_later_pairs() -> None:
    short_kwargs = dict(rsi7=65.0, previous_rsi7=70.0, price=100.0, ema20=99.0)
    second = evaluate_trend_signal(
        _snapshot({"5m": "long", "15m": "short", "30m": "short"}, **short_kwargs), SETTINGS
    )
    assert second.direction == "short"
    assert second.timeframes == ("15m", "30m")
    assert "5m disagrees (long)" in second.cautions

    third = evaluate_trend_signal(
        _snapshot({"5m": "short", "15m": "long", "30m": "short"}, **short_kwargs), SETTINGS
    )
    assert third.direction == "short"
    assert third.timeframes == ("5m", "30m")
    assert "15m disagrees (long)" in third.cautions


def test_no_agreeing_pair_returns_empty() -> None:
    snapshot = _snapshot({"3m": "long", "5m": "long", "15m": "short", "30m": "none"})
    assert analyze_trend_signal(snapshot, SETTINGS) == ""
    assert analyze_trend_signal(None, SETTINGS) == ""


def test_weak_short_term_edge_discards_candidate() -> None:
    snapshot = _snapshot(
        {"5m": "long", "15m": "long"}, rsi7=55.0, previous_rsi7=60.0, price=100.0, ema20=101.0
    )
    result = evaluate_trend_signal(snapshot, SETTINGS)
    assert result.direction is None
    assert result.edge_score == 0
    assert analyze_trend_signal(snapshot, SETTINGS) == ""


def test_edge_conditions_mirror_for_shorts() -> None:
    snapshot = _snapshot({}, rsi7=70.0, previous_rsi7=75.0, macd=0.5, previous_macd=0.8,
                         price=99.0, ema20=100.0)
    assert len(edge_conditions(snapshot, "short", SETTINGS)) == 4
    assert len(edge_conditions(snapshot, "long", SETTINGS)) == 0


def test_unhealthy_volume_never_vetoes() -> None:
    snapshot = _snapshot({"5m": "long", "15m": "long"}, price_volume_ok=False, volume_ratio=5.0)
    result = evaluate_trend_signal(snapshot, SETTINGS)
    assert result.accepted
    assert "volume does not confirm price" in result.cautions
    assert any("outside" in note for note in result.cautions)
