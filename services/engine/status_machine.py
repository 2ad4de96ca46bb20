from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Set

from .models import ASSIGNMENT_STATUSES, IN_FLIGHT_STATUSES, QUESTION_STATUSES

_ASSIGNMENT_TRANSITIONS: Dict[str, Set[str]] = {
    "pending": {"extracting", "error"},
    "extracting": {"generating_answers", "error"},
    "generating_answers": {"ready", "error"},
    "ready": {"extracting", "error"},
    "error": {"pending", "extracting", "error"},
}

_QUESTION_TRANSITIONS: Dict[str, Set[str]] = {
    "pending": {"processing"},
    "processing": {"ready", "pending"},
    "ready": {"processing", "approved"},
    "approved": {"ready", "processing"},
}


class InvalidTransitionError(ValueError):
    pass


def normalize_assignment_status(status: object) -> str:
    text = str(status or "").strip().lower()
    if text not in ASSIGNMENT_STATUSES:
        return "pending"
    return text


def is_in_flight(status: object) -> bool:
    return normalize_assignment_status(status) in IN_FLIGHT_STATUSES


def can_start_processing(status: object) -> bool:
    return not is_in_flight(status)


@dataclass
class AssignmentStateMachine:
    status: str

    def __post_init__(self) -> None:
        self.status = normalize_assignment_status(self.status)

    def transition(self, next_status: object) -> str:
        target = normalize_assignment_status(next_status)
        allowed = _ASSIGNMENT_TRANSITIONS.get(self.status)
        if not allowed or target not in allowed:
            raise InvalidTransitionError(f"invalid_assignment_transition:{self.status}->{target}")
        self.status = target
        return self.status


def assignment_sources_for(target_status: object) -> Set[str]:
    """Statuses an assignment may move to ``target_status`` from."""
    target = normalize_assignment_status(target_status)
    return {src for src, targets in _ASSIGNMENT_TRANSITIONS.items() if target in targets}


def transition_assignment_status(current_status: object, target_status: object) -> str:
    sm = AssignmentStateMachine(normalize_assignment_status(current_status))
    return sm.transition(target_status)


def transition_question_status(current_status: object, target_status: object) -> str:
    current = str(current_status or "").strip().lower()
    target = str(target_status or "").strip().lower()
    if target not in QUESTION_STATUSES:
        raise InvalidTransitionError(f"unknown_question_status:{target}")
    if target not in _QUESTION_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"invalid_question_transition:{current}->{target}")
    return target
