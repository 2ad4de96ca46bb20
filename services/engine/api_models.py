from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel


class RegenerateRequest(BaseModel):
    feedback: Optional[str] = None


class ChatFile(BaseModel):
    name: str
    type: str
    data: str


class TutorMessageRequest(BaseModel):
    question_id: str
    message: str
    selected_option: Optional[str] = None
    attempts: int = 0
    files: Optional[List[ChatFile]] = None
