"""Persistent store used by the orchestration engine.

``InMemoryStore`` keeps everything in process memory behind one lock.
``JsonFileStore`` adds a JSON snapshot that is rewritten atomically after every
mutation, so progress survives a crash or restart.
"""
from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from .models import CHAT_ROLES, Assignment, ChatMessage, Question

_log = logging.getLogger(__name__)

_QUESTION_FIELDS = frozenset(Question.__dataclass_fields__) - {"id", "assignment_id"}


class StoreError(RuntimeError):
    pass


class NotFoundError(StoreError):
    pass


def new_id() -> str:
    return uuid.uuid4().hex


class InMemoryStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._assignments: Dict[str, Assignment] = {}
        self._questions: Dict[str, Question] = {}
        self._messages: List[ChatMessage] = []

    def _changed(self) -> None:
        """Hook called under the lock after every mutation."""

    # -- assignments --

    def put_assignment(self, assignment: Assignment) -> Assignment:
        with self._lock:
            self._assignments[assignment.id] = assignment
            self._changed()
            return assignment

    def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        with self._lock:
            return self._assignments.get(assignment_id)

    def _require_assignment(self, assignment_id: str) -> Assignment:
        assignment = self._assignments.get(assignment_id)
        if assignment is None:
            raise NotFoundError(f"assignment not found: {assignment_id}")
        return assignment

    def set_assignment_status(self, assignment_id: str, status: str, error: Optional[str] = None) -> Assignment:
        with self._lock:
            updated = self._require_assignment(assignment_id).with_status(status, error)
            self._assignments[assignment_id] = updated
            self._changed()
            return updated

    def compare_and_set_assignment_status(
        self,
        assignment_id: str,
        *,
        allowed_from: Iterable[str],
        status: str,
        error: Optional[str] = None,
    ) -> Optional[Assignment]:
        """Set the status only when the current one is in ``allowed_from``.

        Returns the updated assignment, or None when the precondition failed.
        """
        allowed = set(allowed_from)
        with self._lock:
            current = self._require_assignment(assignment_id)
            if current.processing_status not in allowed:
                return None
            updated = current.with_status(status, error)
            self._assignments[assignment_id] = updated
            self._changed()
            return updated

    # -- questions --

    def get_question(self, question_id: str) -> Optional[Question]:
        with self._lock:
            return self._questions.get(question_id)

    def list_questions(self, assignment_id: str) -> List[Question]:
        with self._lock:
            items = [q for q in self._questions.values() if q.assignment_id == assignment_id]
        return sorted(items, key=lambda q: q.extraction_order)

    def list_pending_questions(self, assignment_id: str) -> List[Question]:
        return [q for q in self.list_questions(assignment_id) if q.status == "pending"]

    def _insert_questions_locked(self, questions: Iterable[Question]) -> List[str]:
        ids: List[str] = []
        for question in questions:
            self._questions[question.id] = question
            ids.append(question.id)
        return ids

    def _delete_questions_locked(self, assignment_id: str) -> int:
        doomed = [qid for qid, q in self._questions.items() if q.assignment_id == assignment_id]
        for qid in doomed:
            del self._questions[qid]
        return len(doomed)

    def insert_questions(self, questions: Iterable[Question]) -> List[str]:
        with self._lock:
            ids = self._insert_questions_locked(questions)
            self._changed()
        return ids

    def delete_questions_for_assignment(self, assignment_id: str) -> int:
        with self._lock:
            count = self._delete_questions_locked(assignment_id)
            self._changed()
            return count

    def replace_questions(self, assignment_id: str, questions: Iterable[Question]) -> List[str]:
        """Swap an assignment's questions in a single mutation."""
        with self._lock:
            self._delete_questions_locked(assignment_id)
            ids = self._insert_questions_locked(questions)
            self._changed()
            return ids

    def patch_question(self, question_id: str, **fields: Any) -> Question:
        unknown = set(fields) - _QUESTION_FIELDS
        if unknown:
            raise StoreError(f"unknown question fields: {sorted(unknown)}")
        with self._lock:
            current = self._questions.get(question_id)
            if current is None:
                raise NotFoundError(f"question not found: {question_id}")
            updated = replace(current, **fields)
            self._questions[question_id] = updated
            self._changed()
            return updated

    # -- chat messages --

    def add_chat_message(self, message: ChatMessage) -> ChatMessage:
        if message.role not in CHAT_ROLES:
            raise StoreError(f"unknown chat role: {message.role}")
        with self._lock:
            self._messages.append(message)
            self._changed()
            return message

    def list_chat_messages(self, session_id: str, question_id: Optional[str] = None) -> List[ChatMessage]:
        with self._lock:
            items = [
                m
                for m in self._messages
                if m.session_id == session_id and (question_id is None or m.question_id == question_id)
            ]
        return sorted(items, key=lambda m: m.timestamp)

    def list_student_message_timestamps(self, session_id: str, since_ms: int) -> List[int]:
        with self._lock:
            return [
                m.timestamp
                for m in self._messages
                if m.session_id == session_id and m.role == "student" and m.timestamp >= since_ms
            ]

    # -- snapshot --

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "assignments": [a.to_dict() for a in self._assignments.values()],
                "questions": [q.to_dict() for q in self._questions.values()],
                "chat_messages": [m.to_dict() for m in self._messages],
            }

    def load_snapshot(self, data: Dict[str, Any]) -> None:
        with self._lock:
            self._assignments = {
                a.id: a for a in (Assignment.from_dict(item) for item in data.get("assignments") or [])
            }
            self._questions = {q.id: q for q in (Question.from_dict(item) for item in data.get("questions") or [])}
            self._messages = [ChatMessage.from_dict(item) for item in data.get("chat_messages") or []]


def _write_json_atomically(path: Path, payload: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    # Unique temp names so a crashed writer never leaves a half-written snapshot behind.
    tmp = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        with tmp.open("w", encoding="utf-8") as fh:
            json.dump(payload, fh, ensure_ascii=False)
            fh.flush()
            os.fsync(fh.fileno())
        tmp.replace(path)
    finally:
        if tmp.exists():
            try:
                tmp.unlink()
            except OSError:
                _log.debug("failed to clean up temp file %s", tmp)


class JsonFileStore(InMemoryStore):
    def __init__(
        self,
        path: Path,
        *,
        write_json: Callable[[Path, Dict[str, Any]], None] = _write_json_atomically,
    ) -> None:
        super().__init__()
        self.path = Path(path)
        self._write_json = write_json
        if self.path.exists():
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise StoreError(f"store snapshot is not a JSON object: {self.path}")
            self.load_snapshot(data)

    def _changed(self) -> None:
        self._write_json(self.path, self.snapshot())
