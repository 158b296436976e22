"""Groq-backed decision generation.

This module centralises creation of the :class:`groq.Groq` client so that
all call sites reuse a single cached instance, and exposes
``generate_decision_text`` which sends the system instruction and user
context to the configured decision model and returns the raw answer text.
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Optional

from groq import Groq

import config
from log_utils import setup_logger

logger = setup_logger(__name__)


class DecisionModelError(RuntimeError):
    """Raised when the decision model cannot produce a response."""


def get_groq_api_key() -> str | None:
    """Return the Groq API key from the environment, or None if not set."""

    key = os.getenv("GROQ_API_KEY", "").strip()
    return key or None


@lru_cache(maxsize=1)
def _build_client(api_key: Optional[str]) -> Optional[Groq]:
    """Return a cached Groq client or ``None`` when no API key is provided."""

    if not api_key:
        logger.debug("Groq API key not provided; client disabled")
        return None
    logger.debug("Initialising shared Groq client")
    return Groq(api_key=api_key)


def get_groq_client() -> Optional[Groq]:
    """Return the shared Groq SDK client if the API key is configured."""

    return _build_client(get_groq_api_key())


def reset_groq_client_cache() -> None:
    """Clear the cached client (primarily for use in tests)."""

    _build_client.cache_clear()


def generate_decision_text(
    system_prompt: str,
    user_prompt: str,
    *,
    model: str | None = None,
    client: Groq | None = None,
) -> str:
    """Return the decision model's raw answer for the given prompts.

    Raises :class:`DecisionModelError` when no client is configured, the
    request fails or the response carries no text.
    """

    client = client or get_groq_client()
    if client is None:
        raise DecisionModelError("GROQ_API_KEY is not configured")
    model_name = model or config.get_decision_model()
    try:
        response = client.chat.completions.create(
            model=model_name,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=config.get_decision_temperature(),
            max_tokens=config.get_decision_max_tokens(),
        )
    except Exception as exc:
        logger.warning("Decision model %s request failed: %s", model_name, exc)
        raise DecisionModelError(f"decision model {model_name} request failed: {exc}") from exc

    try:
        content = response.choices[0].message.content
    except (AttributeError, IndexError, TypeError):
        content = None
    if not content or not str(content).strip():
        raise DecisionModelError(f"decision model {model_name} returned an empty response")
    return str(content)


__all__ = [
    "DecisionModelError",
    "get_groq_api_key",
    "get_groq_client",
    "reset_groq_client_cache",
    "generate_decision_text",
]
