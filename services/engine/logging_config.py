"""Structured logging configuration.

Environment variables:
    LOG_FORMAT  – "json" for JSON lines, "text" for human-readable (default: "text")
    LOG_LEVEL   – root log level name (default: "INFO")
    DIAG_LOG    – emit pipeline diagnostic events on the "diag" logger (default: off)
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

from . import settings as _settings

_CONTEXT_FIELDS = ("assignment_id", "question_id", "session_id", "event")

_diag = logging.getLogger("diag")
_TEXT_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"


class _JsonFormatter(logging.Formatter):
    """Emit one JSON object per log record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            payload["exception"] = self.formatException(record.exc_info)
        for field_name in _CONTEXT_FIELDS:
            value = getattr(record, field_name, None)
            if value:
                payload[field_name] = value
        return json.dumps(payload, ensure_ascii=False)


def configure_logging() -> None:
    json_lines = _settings.env_str("LOG_FORMAT", "text").strip().lower() == "json"
    level = getattr(logging, _settings.env_str("LOG_LEVEL", "INFO").strip().upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter() if json_lines else logging.Formatter(_TEXT_FORMAT))

    root = logging.getLogger()
    # replace, do not stack, handlers when called twice
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)
    logging.getLogger("urllib3").setLevel(max(level, logging.WARNING))


def diag_log(event: str, payload: Dict[str, Any]) -> None:
    if not _settings.diag_log_enabled():
        return
    extra = {key: payload[key] for key in ("assignment_id", "question_id", "session_id") if payload.get(key)}
    extra["event"] = event
    _diag.info("%s %s", event, json.dumps(payload, ensure_ascii=False, default=str), extra=extra)
