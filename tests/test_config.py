import config


def test_stream_settings_from_env(monkeypatch):
    monkeypatch.setenv("SIGNAL_SYMBOLS", "btcusdt, ethusdt ,,solusdt # comment")
    monkeypatch.setenv("BACKFILL_LIMIT", "500")
    monkeypatch.setenv("BACKFILL_CONCURRENCY", "not-a-number")

    settings = config.load_stream_settings()

    assert settings.symbols == ("BTCUSDT", "ETHUSDT", "SOLUSDT")
    assert settings.backfill_limit == 100
    assert settings.backfill_concurrency == 5
    assert settings.timeframes == ("3m", "5m", "15m", "30m", "1h", "4h")


def test_risk_settings_ceilings(monkeypatch):
    monkeypatch.setenv("BTC_ETH_LEVERAGE", "20")
    monkeypatch.setenv("ALTCOIN_LEVERAGE", "3")
    monkeypatch.delenv("MAJOR_SYMBOLS", raising=False)

    settings = config.load_risk_settings()

    assert settings.leverage_ceiling("btcusdt") == 20
    assert settings.leverage_ceiling("DOGEUSDT") == 3
    assert settings.position_cap("ETHUSDT") == 10.0
    assert settings.position_cap("DOGEUSDT") == 1.5
    assert settings.min_risk_reward == 3.0
    assert settings.entry_fraction == 0.2


def test_fusion_and_liquidity_defaults(monkeypatch):
    for name in ("FUSION_MIN_EDGE_SCORE", "FUSION_RSI_OVERSOLD", "MIN_OI_VALUE_USD"):
        monkeypatch.delenv(name, raising=False)

    fusion = config.load_fusion_settings()
    assert fusion.cascade[0] == ("5m", "15m", "3m")
    assert fusion.min_edge_score == 2
    assert fusion.rsi_oversold == 40.0
    assert (fusion.min_volume_ratio, fusion.max_volume_ratio) == (0.3, 3.0)

    assert config.load_liquidity_settings().min_open_interest_value == 15_000_000.0


def test_decision_model_settings(monkeypatch):
    monkeypatch.setenv("DECISION_LLM_MODEL", "   ")
    monkeypatch.setenv("DECISION_LLM_TEMPERATURE", "9")
    assert config.get_decision_model() == config.DEFAULT_DECISION_MODEL
    assert config.get_decision_temperature() == 2.0
