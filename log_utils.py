import logging
from logging.handlers import RotatingFileHandler
import os

_REPO_ROOT = os.path.dirname(os.path.abspath(__file__))

# Log location can be redirected per deployment; by default logs live beside
# the code so that tests and local runs never need elevated permissions.
LOG_FILE = os.getenv(
    "SIGNAL_AGENT_LOG_FILE", os.path.join(_REPO_ROOT, "logs", "signal_agent.log")
)
LOG_LEVEL = os.getenv("SIGNAL_AGENT_LOG_LEVEL", "INFO").strip().upper()


def setup_logger(name: str) -> logging.Logger:
    """Configure and return a module-level logger.

    Records go to the console and to the rotating agent log at the level
    named by ``SIGNAL_AGENT_LOG_LEVEL``.  Repeated calls with the same name
    return the already configured logger.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    level = logging.getLevelName(LOG_LEVEL)
    logger.setLevel(level if isinstance(level, int) else logging.INFO)
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    # Ensure the log directory exists before creating the handler
    os.makedirs(os.path.dirname(LOG_FILE), exist_ok=True)
    # Rotating file handler keeps last 5 logs of ~1MB each
    file_handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5)
    file_handler.setFormatter(formatter)
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    logger.addHandler(console_handler)
    return logger


def read_logs(tail: int = 100) -> str:
    """Return the last ``tail`` lines of the agent log (all lines if ``tail <= 0``).

    Used by operators to inspect recent stream and decision activity; a
    missing log file yields an empty string.
    """
    if not os.path.exists(LOG_FILE):
        return ""
    with open(LOG_FILE, "r") as f:
        lines = f.readlines()
    if tail <= 0:
        return "".join(lines)
    return "".join(lines[-tail:])
