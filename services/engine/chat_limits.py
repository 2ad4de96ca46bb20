from __future__ import annotations

from typing import Any, Dict, Iterable, List

from .models import ChatMessage

# Roles replayed to the model; system notices stay out of the conversation.
_HISTORY_ROLES = ("student", "tutor")


def history_turns(messages: Iterable[ChatMessage]) -> List[Dict[str, Any]]:
    return [{"role": m.role, "content": m.content} for m in messages if m.role in _HISTORY_ROLES]


def trim_messages(
    messages: List[Dict[str, Any]],
    *,
    max_messages: int,
    max_chars: int,
) -> List[Dict[str, Any]]:
    if not messages or max_messages <= 0:
        return []
    trimmed: List[Dict[str, Any]] = []
    for msg in messages[-max_messages:]:
        role = msg.get("role")
        content = msg.get("content") or ""
        if isinstance(content, str) and max_chars > 0 and len(content) > max_chars:
            content = content[:max_chars] + "…"
        trimmed.append({"role": role, "content": content})
    return trimmed
