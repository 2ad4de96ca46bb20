from __future__ import annotations

import threading
from typing import Callable, Optional, Tuple

from .models import IN_FLIGHT_STATUSES

StatusReader = Callable[[], Optional[Tuple[str, Optional[str]]]]


class CancellationContext:
    """Cooperative stop signal for one processing run.

    Polls the persisted assignment status through ``read_status`` and latches
    the first stop it observes, so every worker sharing the context stops at
    its next checkpoint without another store read. Any status outside the
    in-flight set counts as a stop: a run that was stopped and then resumed
    finds ``pending`` rather than ``error``.
    """

    def __init__(self, read_status: StatusReader, *, default_reason: str = "Processing stopped") -> None:
        self._read_status = read_status
        self._default_reason = default_reason
        self._stopped = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str) -> None:
        with self._lock:
            if self._reason is None:
                self._reason = reason
        self._stopped.set()

    def is_cancelled(self) -> bool:
        return self._stopped.is_set()

    def check(self) -> Optional[str]:
        """Return the stop reason if processing must stop, else None."""
        if self._stopped.is_set():
            return self._reason
        current = self._read_status()
        if current is None:
            self.cancel("Assignment not found")
            return self._reason
        status, error = current
        if status in IN_FLIGHT_STATUSES:
            return None
        self.cancel((error if status == "error" else None) or self._default_reason)
        return self._reason


def assignment_status_reader(store, assignment_id: str) -> StatusReader:
    def _read() -> Optional[Tuple[str, Optional[str]]]:
        assignment = store.get_assignment(assignment_id)
        if assignment is None:
            return None
        return assignment.processing_status, assignment.processing_error

    return _read
