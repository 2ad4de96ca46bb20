from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from . import config

_log = logging.getLogger(__name__)

T = TypeVar("T")


class InvocationError(RuntimeError):
    def __init__(self, context: str, attempts: int, last_error: Optional[BaseException]):
        self.context = context
        self.attempts = attempts
        self.last_error = last_error
        detail = str(last_error) if last_error is not None else "unknown error"
        super().__init__(f"{context} failed after {attempts} attempts: {detail}")


@dataclass(frozen=True)
class InvokerDeps:
    max_attempts: int = 3
    base_delay_sec: float = 1.0
    sleep: Callable[[float], None] = time.sleep


def default_invoker_deps() -> InvokerDeps:
    return InvokerDeps(
        max_attempts=config.LLM_INVOKE_MAX_ATTEMPTS,
        base_delay_sec=config.LLM_INVOKE_RETRY_DELAY_MS / 1000.0,
    )


def invoke(operation: Callable[[], T], context: str, *, deps: InvokerDeps) -> T:
    """Run ``operation`` with bounded retries and linear backoff.

    Any exception counts as a failed attempt. The wait before attempt n+1 is
    n * base delay; there is no wait after the last attempt.
    """
    attempts = max(1, int(deps.max_attempts))
    last_error: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except Exception as exc:
            last_error = exc
            if attempt < attempts:
                _log.warning(
                    "%s failed (attempt %d/%d): %s. Retrying...",
                    context,
                    attempt,
                    attempts,
                    exc,
                )
                deps.sleep(deps.base_delay_sec * attempt)
    raise InvocationError(context, attempts, last_error) from last_error
