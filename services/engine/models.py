from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Union

ASSIGNMENT_STATUSES = ("pending", "extracting", "generating_answers", "ready", "error")
IN_FLIGHT_STATUSES = frozenset({"extracting", "generating_answers"})

QUESTION_TYPES = ("multiple_choice", "single_value", "short_answer", "free_response", "skipped")
QUESTION_STATUSES = ("pending", "processing", "ready", "approved")

CHAT_ROLES = ("student", "tutor", "system")

AnswerValue = Union[str, List[str]]
SourceValue = Union[str, List[str]]


@dataclass(frozen=True)
class StoredFile:
    storage_id: str
    file_name: str = ""
    content_type: str = ""
    url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoredFile":
        return cls(
            storage_id=str(data.get("storage_id") or ""),
            file_name=str(data.get("file_name") or ""),
            content_type=str(data.get("content_type") or ""),
            url=data.get("url") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "storage_id": self.storage_id,
            "file_name": self.file_name,
            "content_type": self.content_type,
            "url": self.url,
        }


@dataclass(frozen=True)
class Assignment:
    id: str
    name: str = ""
    processing_status: str = "pending"
    processing_error: Optional[str] = None
    assignment_files: List[StoredFile] = field(default_factory=list)
    notes: List[StoredFile] = field(default_factory=list)
    additional_info: Optional[str] = None

    def with_status(self, status: str, error: Optional[str] = None) -> "Assignment":
        return replace(self, processing_status=status, processing_error=error)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Assignment":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            processing_status=str(data.get("processing_status") or "pending"),
            processing_error=data.get("processing_error") or None,
            assignment_files=[StoredFile.from_dict(f) for f in data.get("assignment_files") or []],
            notes=[StoredFile.from_dict(f) for f in data.get("notes") or []],
            additional_info=data.get("additional_info") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "processing_status": self.processing_status,
            "processing_error": self.processing_error,
            "assignment_files": [f.to_dict() for f in self.assignment_files],
            "notes": [f.to_dict() for f in self.notes],
            "additional_info": self.additional_info,
        }


@dataclass(frozen=True)
class Question:
    id: str
    assignment_id: str
    question_number: str
    extraction_order: int
    question_text: str
    question_type: str = "short_answer"
    answer_options_mcq: Optional[List[str]] = None
    additional_instructions_for_answer: Optional[str] = None
    additional_instructions_for_work: Optional[str] = None
    answer: AnswerValue = ""
    key_points: List[str] = field(default_factory=list)
    source: SourceValue = "notes"
    status: str = "pending"

    @property
    def is_mcq(self) -> bool:
        return self.question_type == "multiple_choice"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Question":
        return cls(
            id=str(data["id"]),
            assignment_id=str(data["assignment_id"]),
            question_number=str(data.get("question_number") or ""),
            extraction_order=int(data.get("extraction_order") or 0),
            question_text=str(data.get("question_text") or ""),
            question_type=str(data.get("question_type") or "short_answer"),
            answer_options_mcq=data.get("answer_options_mcq") or None,
            additional_instructions_for_answer=data.get("additional_instructions_for_answer") or None,
            additional_instructions_for_work=data.get("additional_instructions_for_work") or None,
            answer=data.get("answer") if data.get("answer") is not None else "",
            key_points=list(data.get("key_points") or []),
            source=data.get("source") or "notes",
            status=str(data.get("status") or "pending"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "assignment_id": self.assignment_id,
            "question_number": self.question_number,
            "extraction_order": self.extraction_order,
            "question_text": self.question_text,
            "question_type": self.question_type,
            "answer_options_mcq": self.answer_options_mcq,
            "additional_instructions_for_answer": self.additional_instructions_for_answer,
            "additional_instructions_for_work": self.additional_instructions_for_work,
            "answer": self.answer,
            "key_points": list(self.key_points),
            "source": self.source,
            "status": self.status,
        }


@dataclass(frozen=True)
class ChatMessage:
    session_id: str
    question_id: str
    role: str
    content: str
    timestamp: int
    attachments: Optional[List[Dict[str, Any]]] = None
    tool_call: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        return cls(
            session_id=str(data["session_id"]),
            question_id=str(data.get("question_id") or ""),
            role=str(data.get("role") or "student"),
            content=str(data.get("content") or ""),
            timestamp=int(data.get("timestamp") or 0),
            attachments=data.get("attachments") or None,
            tool_call=data.get("tool_call") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "question_id": self.question_id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
            "attachments": self.attachments,
            "tool_call": self.tool_call,
        }


@dataclass(frozen=True)
class ExtractedQuestion:
    question_number: str
    question_text: str
    question_type: str
    answer_options_mcq: Optional[List[str]] = None
    additional_instructions_for_answer: Optional[str] = None
    additional_instructions_for_work: Optional[str] = None


@dataclass(frozen=True)
class GeneratedAnswer:
    answer: AnswerValue
    key_points: List[str]
    source: SourceValue
