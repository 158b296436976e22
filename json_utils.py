"""Helpers for pulling a decision list out of free-form model output.

Decision models answer with a chain-of-thought followed by a JSON array::

    BTC is coiling under resistance, funding is flat ...

    ```json
    [{"symbol": "BTCUSDT", "action": "wait", "reasoning": "no edge"}]
    ```

``extract_rationale`` returns the prose before the first ``[`` and
``extract_decisions`` parses the array that starts there.  The array end is
found with a scan that understands JSON string literals so brackets quoted
inside a ``reasoning`` value never end the array early.  Typographic quotes
that keyboards and models like to produce are normalised first.
"""

from __future__ import annotations

import json
import re
from typing import List

from decision_schema import Decision

__all__ = [
    "DecisionParseError",
    "normalize_quotes",
    "extract_rationale",
    "find_array_end",
    "extract_decisions",
]

_QUOTE_TRANSLATION = str.maketrans(
    {
        "“": '"',
        "”": '"',
        "‘": "'",
        "’": "'",
    }
)
_TRAILING_FENCE = re.compile(r"\s*```[a-zA-Z0-9_-]*\s*$")
_SNIPPET_LIMIT = 500


class DecisionParseError(ValueError):
    """The model output did not contain a parseable decision array."""

    def __init__(self, message: str, snippet: str = "") -> None:
        self.snippet = snippet
        if snippet:
            shown = snippet if len(snippet) <= _SNIPPET_LIMIT else snippet[:_SNIPPET_LIMIT] + "..."
            message = f"{message}\nJSON content: {shown}"
        super().__init__(message)


def normalize_quotes(text: str) -> str:
    """Replace curly quotes with their ASCII counterparts."""

    return str(text or "").translate(_QUOTE_TRANSLATION)


def extract_rationale(text: str) -> str:
    """Return the trimmed prose before the decision array.

    When the text has no ``[`` the whole response is treated as rationale.
    A dangling Markdown fence opener right before the array is dropped; the
    prose itself is returned as written.
    """

    text = str(text or "")
    start = text.find("[")
    if start == -1:
        return text.strip()
    return _TRAILING_FENCE.sub("", text[:start]).strip()


def find_array_end(text: str, start: int) -> int:
    """Return the index of the ``]`` closing the array opened at ``start``.

    Returns ``-1`` when ``text[start]`` is not ``[`` or the array never
    closes.
    """

    if start < 0 or start >= len(text) or text[start] != "[":
        return -1
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
            if depth == 0:
                return i
    return -1


def extract_decisions(text: str) -> List[Decision]:
    """Parse the first JSON array in ``text`` into :class:`Decision` records.

    Raises :class:`DecisionParseError` with the offending substring when no
    array is present, the array is unterminated or its content is invalid.
    """

    text = normalize_quotes(text)
    start = text.find("[")
    if start == -1:
        raise DecisionParseError("no JSON array found", text.strip()[:_SNIPPET_LIMIT])
    end = find_array_end(text, start)
    if end == -1:
        raise DecisionParseError("JSON array is not terminated", text[start:].strip())

    content = text[start : end + 1].strip()
    try:
        raw = json.loads(content)
    except json.JSONDecodeError as exc:
        raise DecisionParseError(f"invalid JSON: {exc}", content) from exc

    decisions: List[Decision] = []
    for position, item in enumerate(raw, start=1):
        try:
            decisions.append(Decision.from_mapping(item))
        except ValueError as exc:
            raise DecisionParseError(
                f"decision #{position} is malformed: {exc}", json.dumps(item)
            ) from exc
    return decisions
