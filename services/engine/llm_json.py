from __future__ import annotations

import json
import logging
import re
from typing import Any

_log = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?[ \t]*\n?", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def _balanced_end(text: str, start: int) -> int:
    """Index just past the value opened at ``start``, or -1 if it never closes."""
    depth = 0
    in_string = False
    escaped = False
    for idx in range(start, len(text)):
        char = text[idx]
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char in "{[":
            depth += 1
        elif char in "}]":
            depth -= 1
            if depth == 0:
                return idx + 1
    return -1


def clean_json_response(text: str) -> str:
    cleaned = _FENCE_RE.sub("", text or "").strip()

    starts = [idx for idx in (cleaned.find("["), cleaned.find("{")) if idx != -1]
    if starts:
        start = min(starts)
        end = _balanced_end(cleaned, start)
        if end != -1:
            cleaned = cleaned[start:end]

    return _TRAILING_COMMA_RE.sub(r"\1", cleaned)


def parse_llm_json(text: str, context: str) -> Any:
    cleaned = clean_json_response(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        _log.warning("%s JSON parse failed after cleaning: %s", context, cleaned[:2000])
        raise
