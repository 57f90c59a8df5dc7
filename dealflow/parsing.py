"""Structured response parser for free-text model output.

Strategies, first success wins:

1. the whole text as JSON;
2. the inside of a fenced code block (optionally tagged ``json``);
3. the outermost greedy ``{...}`` span.

No schema validation happens here; callers decode the returned value.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable

log = logging.getLogger(__name__)

_FENCED_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


class UnparsableResponse(ValueError):
    """No strategy could extract JSON from the model output."""


def _whole_text(text: str) -> str | None:
    return text


def _fenced_block(text: str) -> str | None:
    m = _FENCED_RE.search(text)
    return m.group(1).strip() if m else None


def _brace_span(text: str) -> str | None:
    m = _OBJECT_RE.search(text)
    return m.group(0) if m else None


_STRATEGIES: tuple[tuple[str, Callable[[str], str | None]], ...] = (
    ("direct", _whole_text),
    ("fenced", _fenced_block),
    ("braces", _brace_span),
)


def parse_structured_response(text: str) -> Any:
    """Extract a JSON value from *text* or raise :class:`UnparsableResponse`."""
    for name, extract in _STRATEGIES:
        candidate = extract(text or "")
        if candidate is None:
            continue
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if name != "direct":
            log.debug("Recovered model JSON via %s strategy", name)
        return value
    raise UnparsableResponse(f"Could not parse JSON response: {(text or '')[:200]!r}")
