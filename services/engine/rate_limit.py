"""Sliding-window admission control for tutoring chat messages.

Two scopes are evaluated on every check, day first, then minute. Both are
derived from the timestamps of the session's student messages inside the
trailing 24 hours; nothing is recorded here.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from . import config

MINUTE_MS = 60_000
DAY_MS = 86_400_000


@dataclass(frozen=True)
class RateLimitResult:
    scope: str
    retry_after_ms: int
    limit: int

    def to_dict(self) -> Dict[str, Any]:
        return {"scope": self.scope, "retry_after_ms": self.retry_after_ms, "limit": self.limit}


@dataclass(frozen=True)
class RateLimitDeps:
    list_student_timestamps: Callable[[str, int], List[int]]
    now_ms: Callable[[], int] = lambda: int(time.time() * 1000)
    per_minute: int = 100
    per_day: int = 1000


def build_rate_limit_deps(store: Any, now_ms: Optional[Callable[[], int]] = None) -> RateLimitDeps:
    return RateLimitDeps(
        list_student_timestamps=store.list_student_message_timestamps,
        now_ms=now_ms or (lambda: int(time.time() * 1000)),
        per_minute=config.CHAT_RATE_LIMIT_PER_MINUTE,
        per_day=config.CHAT_RATE_LIMIT_PER_DAY,
    )


def check_rate_limit(session_id: str, *, deps: RateLimitDeps) -> Optional[RateLimitResult]:
    now = deps.now_ms()
    day_window = [ts for ts in deps.list_student_timestamps(session_id, now - DAY_MS) if ts >= now - DAY_MS]

    if len(day_window) >= deps.per_day:
        earliest = min(day_window)
        return RateLimitResult("day", max(0, DAY_MS - (now - earliest)), deps.per_day)

    minute_window = [ts for ts in day_window if ts >= now - MINUTE_MS]
    if len(minute_window) >= deps.per_minute:
        earliest = min(minute_window)
        return RateLimitResult("minute", max(0, MINUTE_MS - (now - earliest)), deps.per_minute)

    return None


def rate_limit_notice(result: RateLimitResult) -> str:
    seconds = -(-result.retry_after_ms // 1000)
    return (
        f"You are sending messages too quickly (limit {result.limit} per {result.scope}). "
        f"Try again in {seconds} seconds."
    )
