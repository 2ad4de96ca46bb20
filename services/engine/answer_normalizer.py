"""Turn untyped model output into the answer shapes stored on a question.

Everything leaving this module is a plain ``str`` or ``list[str]``; the
``ScalarAnswer`` / ``ListAnswer`` union is only used at the boundary.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence, Union
from urllib.parse import parse_qs, urldefrag, urlparse

from .models import AnswerValue, SourceValue

_LEADING_LETTER_RE = re.compile(r"^\s*\(?([A-Za-z])\s*(?:[.):\-]|$)")
_ISOLATED_LETTER_RE = re.compile(r"\b([A-Z])\b")
_OPTION_LABEL_RE = re.compile(r"^\s*\(?[A-Za-z][.)]\s+")
_KEY_POINT_HINT_RE = re.compile(r"\s*\[([^\]]+)\]\s*$")
_URL_RE = re.compile(r"https?://[^\s,\]\[\"'<>]+")

_ANSWER_KEYS = ("answer", "letter", "choice", "option", "value", "text")
_REDIRECT_PARAMS = ("q", "url", "u")
GROUNDING_PROXY_DOMAINS = frozenset({"vertexaisearch.cloud.google.com"})


class AnswerNormalizationError(ValueError):
    pass


@dataclass(frozen=True)
class ScalarAnswer:
    text: str

    @property
    def value(self) -> str:
        return self.text


@dataclass(frozen=True)
class ListAnswer:
    items: List[str]

    @property
    def value(self) -> List[str]:
        return list(self.items)


Answer = Union[ScalarAnswer, ListAnswer]


def display_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, dict):
        parts = []
        for key, item in value.items():
            text = display_text(item)
            if text:
                parts.append(f"{key}: {text}")
        return "; ".join(parts)
    if isinstance(value, (list, tuple)):
        return ", ".join(text for text in (display_text(item) for item in value) if text)
    return str(value).strip()


def flatten_answer_value(value: Any) -> str:
    if isinstance(value, dict):
        for key in _ANSWER_KEYS:
            if key in value and display_text(value[key]):
                return display_text(value[key])
    return display_text(value)


def _option_letters(count: int) -> List[str]:
    if count <= 0:
        return [chr(65 + i) for i in range(26)]
    return [chr(65 + i) for i in range(min(count, 26))]


def _strip_option_label(option: str) -> str:
    return _OPTION_LABEL_RE.sub("", option or "").strip()


def normalize_mcq_answer(raw: Any, options: Optional[Sequence[str]]) -> str:
    option_texts = [_strip_option_label(str(opt)) for opt in (options or [])]
    letters = _option_letters(len(option_texts))
    answer = flatten_answer_value(raw)
    if not answer:
        raise AnswerNormalizationError("empty multiple choice answer")

    folded = answer.casefold()
    for idx, text in enumerate(option_texts):
        if text and folded == text.casefold():
            return letters[idx]

    match = _LEADING_LETTER_RE.match(answer)
    if match and match.group(1).upper() in letters:
        return match.group(1).upper()

    for idx, text in enumerate(option_texts):
        if text and text.casefold() in folded:
            return letters[idx]

    for candidate in _ISOLATED_LETTER_RE.findall(answer):
        if candidate in letters:
            return candidate

    raise AnswerNormalizationError(f"cannot map multiple choice answer to an option letter: {answer[:120]!r}")


def coerce_answer(raw: Any, question_type: str) -> Answer:
    if isinstance(raw, (list, tuple)):
        items = [text for text in (display_text(item) for item in raw) if text]
    elif isinstance(raw, dict):
        items = [f"{key}: {text}" for key, text in ((k, display_text(v)) for k, v in raw.items()) if text]
    else:
        return ScalarAnswer("" if raw is None else str(raw))
    if question_type == "free_response":
        return ListAnswer(items)
    return ScalarAnswer(", ".join(items))


def normalize_answer(raw: Any, question_type: str, options: Optional[Sequence[str]] = None) -> AnswerValue:
    if question_type == "multiple_choice":
        return normalize_mcq_answer(raw, options)
    return coerce_answer(raw, question_type).value


def normalize_key_points(raw: Any) -> List[str]:
    if raw is None:
        return []
    entries: Iterable[Any] = raw if isinstance(raw, (list, tuple)) else [raw]
    points: List[str] = []
    for entry in entries:
        if isinstance(entry, dict):
            text = entry.get("point") if isinstance(entry.get("point"), str) else entry.get("text")
            text = text if isinstance(text, str) else ""
        else:
            text = display_text(entry)
        text = _KEY_POINT_HINT_RE.sub("", text.strip()).strip()
        if text:
            points.append(text)
    return points


def clean_source_url(url: str, *, drop_proxies: bool = True) -> Optional[str]:
    text = str(url or "").strip().rstrip(".,;")
    if not text.lower().startswith(("http://", "https://")):
        return None
    parsed = urlparse(text)
    host = (parsed.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    if host.split(".")[0] == "google" and parsed.path == "/url":
        params = parse_qs(parsed.query)
        for name in _REDIRECT_PARAMS:
            target = (params.get(name) or [""])[0]
            if target.lower().startswith(("http://", "https://")):
                return clean_source_url(target, drop_proxies=drop_proxies)
        return None
    if drop_proxies and host in GROUNDING_PROXY_DOMAINS:
        return None
    cleaned, _fragment = urldefrag(text)
    return cleaned or None


def _dedupe(urls: Iterable[Optional[str]]) -> List[str]:
    seen: List[str] = []
    for url in urls:
        if url and url not in seen:
            seen.append(url)
    return seen


def _reported_urls(raw: Any) -> List[str]:
    if isinstance(raw, str):
        return _URL_RE.findall(raw)
    if isinstance(raw, (list, tuple)):
        found: List[str] = []
        for item in raw:
            found.extend(_reported_urls(item))
        return found
    if isinstance(raw, dict):
        return _reported_urls(list(raw.values()))
    return []


def _reports_notes(raw: Any) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() == "notes"
    if isinstance(raw, (list, tuple)):
        return bool(raw) and all(_reports_notes(item) for item in raw)
    return False


def normalize_source(raw: Any, grounding_urls: Optional[Sequence[str]] = None) -> SourceValue:
    if _reports_notes(raw):
        return "notes"
    cleaned = _dedupe(clean_source_url(url) for url in _reported_urls(raw))
    if cleaned:
        return cleaned
    fallback = _dedupe(clean_source_url(url, drop_proxies=False) for url in grounding_urls or [])
    if fallback:
        return fallback
    return "notes"
