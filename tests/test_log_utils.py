import json
import logging
from importlib import reload

import log_utils
from observability import log_event


def _reset_logger(logger: logging.Logger) -> None:
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        try:
            handler.close()
        except Exception:
            pass


def test_setup_logger_writes_to_rotating_file(tmp_path, monkeypatch):
    module = reload(log_utils)
    log_path = tmp_path / "logs" / "signal_agent.log"
    monkeypatch.setattr(module, "LOG_FILE", str(log_path), raising=False)

    logger = module.setup_logger("test_log_utils_file")
    assert module.setup_logger("test_log_utils_file") is logger
    assert len(logger.handlers) == 2

    for idx in range(5):
        logger.info("line %d", idx)
    for handler in logger.handlers:
        handler.flush()

    tail = module.read_logs(tail=2)
    assert tail.count("\n") == 2
    assert "line 4" in tail
    assert "test_log_utils_file - INFO - line 3" in tail
    assert "line 0" in module.read_logs(tail=0)

    _reset_logger(logger)


def test_read_logs_without_file(tmp_path, monkeypatch):
    monkeypatch.setattr(log_utils, "LOG_FILE", str(tmp_path / "missing.log"))
    assert log_utils.read_logs() == ""


def test_log_event_emits_json(caplog):
    logger = logging.getLogger("test_log_event")
    with caplog.at_level(logging.INFO, logger="test_log_event"):
        log_event(logger, "kline_queue_drop", stream="btcusdt@kline_3m", extra=object())

    payload = json.loads(caplog.records[-1].getMessage())
    assert payload["event"] == "kline_queue_drop"
    assert payload["stream"] == "btcusdt@kline_3m"
    assert payload["extra"].startswith("<object")


def test_log_level_from_environment(tmp_path, monkeypatch):
    monkeypatch.setattr(log_utils, "LOG_FILE", str(tmp_path / "agent.log"))
    monkeypatch.setattr(log_utils, "LOG_LEVEL", "DEBUG")
    debug_logger = log_utils.setup_logger("test_log_level_debug")
    monkeypatch.setattr(log_utils, "LOG_LEVEL", "CHATTY")
    default_logger = log_utils.setup_logger("test_log_level_default")

    assert debug_logger.level == logging.DEBUG
    assert default_logger.level == logging.INFO

    _reset_logger(debug_logger)
    _reset_logger(default_logger)
