"""Structured event logging for the signal agent.

``log_event`` emits JSON encoded log lines with a consistent schema so that
stream lifecycle events (backfill summaries, new subscriptions, dropped
ticks, liquidity exclusions) can be grepped or shipped to any sink by the
caller's logger configuration.
"""
from __future__ import annotations

import json
import logging
import time
from typing import Any, MutableMapping, Optional

_OBSERVABILITY_LOGGER = logging.getLogger("observability")


def log_event(logger: Optional[logging.Logger], event: str, **fields: Any) -> None:
    """Log ``event`` and ``fields`` as one sorted JSON object.

    Falls back to the module's ``observability`` logger when ``logger`` is
    ``None``; values JSON cannot encode are written as their ``repr``.
    """

    payload: MutableMapping[str, Any] = {"event": event, "ts": time.time()}
    payload.update(fields)
    target = logger or _OBSERVABILITY_LOGGER
    try:
        target.info(json.dumps(payload, sort_keys=True))
    except TypeError:
        serialisable = {k: _safe_json_value(v) for k, v in payload.items()}
        target.info(json.dumps(serialisable, sort_keys=True))


def _safe_json_value(value: Any) -> Any:
    try:
        json.dumps(value)
        return value
    except TypeError:
        return repr(value)


__all__ = ["log_event"]
