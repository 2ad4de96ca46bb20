"""Tutoring chat turn: rate-limit gate, context assembly, model call, persistence."""
from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from llm_gateway import Attachment, InferenceRequest, InferenceResponse

from .chat_limits import history_turns, trim_messages
from .models import ChatMessage, Question
from .rate_limit import RateLimitDeps, check_rate_limit, rate_limit_notice
from .resilient_invoker import InvocationError, InvokerDeps, invoke
from .store import NotFoundError

_log = logging.getLogger(__name__)

TUTOR_CONTEXT = "Tutor response"

FALLBACK_GREETING = "I'm here to help! What would you like to know about this question?"
FALLBACK_UNAVAILABLE = "I'm having trouble connecting right now. Let me try again - what's your question?"
EVALUATION_CORRECT = "Excellent! I've marked your answer correct."
EVALUATION_INCORRECT = "Thanks for your answer. Let's adjust it."

EVALUATE_RESPONSE_TOOL: Dict[str, Any] = {
    "name": "evaluate_response",
    "description": (
        "Evaluate the student's final answer. Always include isCorrect. "
        "For multiple choice, include the detectedAnswer letter."
    ),
    "parameters": {
        "type": "OBJECT",
        "properties": {
            "isCorrect": {"type": "BOOLEAN", "description": "Whether the response is correct"},
            "missingPoints": {
                "type": "ARRAY",
                "items": {"type": "STRING"},
                "description": "Key points that were missing, if any",
            },
            "detectedAnswer": {
                "type": "STRING",
                "description": "The student's final answer (letter, number or short phrase)",
            },
        },
        "required": ["isCorrect"],
    },
}

TUTOR_SYSTEM_INSTRUCTION = """You are a friendly, direct tutor. Guide students to understanding without handing over answers, and do not slow down students who already show mastery.

General:
- Never give the answer away; help the student discover it.
- Confirm correct answers briefly ("Correct because ...").
- Keep turns to 1-3 sentences, plain text, no Markdown.
- Skip generic encouragement and meta chatter.
- End with a specific guiding question or a choice of strategies, never a generic "Ready?".
- When the student is stuck, offer a strategy or a hint and raise the support gradually. Each hint adds something new.

Teaching:
- Anchor hints in RELEVANT CONCEPTS when given and help the student put them into words.
- Offer alternatives, ask for the next step instead of giving it, and ask for the rationale behind a guess.
- When an answer is wrong, name the mismatch and ask a question that prompts self-correction.

Question types:
- multiple_choice: the letter and the option text are both valid answers. Never list all choices again. After a wrong guess, help eliminate that option with a specific reason.
- free_response: help form a thesis, then supporting evidence, then the write-up. The stored answer is a guide, not a requirement.
- short_answer: check for matching key ideas and unambiguous phrasing.
- single_value: check the value, with unit and precision when relevant. Equivalent equations are fine unless stated otherwise.

Tools:
- Call evaluate_response only when the student gives a clear final answer or asks to be graded, with isCorrect, missingPoints and detectedAnswer.
- If ATTEMPTS_SO_FAR > 1, ask the student to explain their rationale before evaluating.
- If it is unclear whether the student is guessing or exploring, ask a clarifying question."""

_DATA_URL_PREFIX = re.compile(r"^data:[^,]*,")


@dataclass(frozen=True)
class TutorFile:
    name: str
    mime_type: str
    data: str  # base64, optionally as a data URL


@dataclass(frozen=True)
class TutorDeps:
    store: Any
    generate: Callable[[InferenceRequest], InferenceResponse]
    invoker: InvokerDeps
    rate_limit: RateLimitDeps
    now_ms: Callable[[], int] = lambda: int(time.time() * 1000)
    record_evaluation: Optional[Callable[[Dict[str, Any]], None]] = None
    max_history_messages: int = 40
    max_history_chars: int = 4000


def option_letters(options: Optional[List[str]]) -> List[str]:
    return [chr(65 + idx) for idx in range(len(options or []))]


def detect_mcq_guess(message: str, options: Optional[List[str]]) -> Optional[str]:
    """Best-effort read of which option a student's message points at."""
    if not options:
        return None
    lower = message.lower()
    letters = "".join(option_letters(options)).lower()
    match = re.search(rf"\b([{letters}])\b", lower)
    if match:
        return match.group(1).upper()
    hits = [chr(65 + idx) for idx, opt in enumerate(options) if opt and opt.lower() in lower]
    return hits[0] if len(hits) == 1 else None


def build_question_context(
    question: Question,
    *,
    attempts: int,
    selected_option: Optional[str],
    detected_answer: Optional[str],
    file_names: List[str],
) -> str:
    lines = [
        f"QUESTION: {question.question_text}",
        f"TYPE: {question.question_type}",
        f"QUESTION_NUMBER: {question.question_number or 'unknown'}",
    ]
    if question.answer_options_mcq:
        lines.append("OPTIONS:")
        lines.extend(f"{letter}. {opt}" for letter, opt in zip(option_letters(question.answer_options_mcq), question.answer_options_mcq))
    lines += [
        f"ATTEMPTS_SO_FAR: {attempts}",
        f"STUDENT_SELECTED_OPTION_THIS_TURN: {selected_option or 'none'}",
        f"STUDENT_DETECTED_ANSWER: {detected_answer or 'none'}",
        f"ATTACHMENTS_INCLUDED: {', '.join(file_names) or 'none'}",
        "",
        "[HIDDEN - For guidance only]",
        f"CORRECT ANSWER: {json.dumps(question.answer, ensure_ascii=False)}",
    ]
    if question.key_points:
        lines.append(f"RELEVANT CONCEPTS: {' | '.join(question.key_points)}")
    if question.additional_instructions_for_work:
        lines.append(f"REQUIRED METHOD: Student must use this approach: {question.additional_instructions_for_work}")
    return "\n".join(lines)


def _file_attachment(file: TutorFile) -> Attachment:
    return Attachment(data=_DATA_URL_PREFIX.sub("", file.data), mime_type=file.mime_type)


def _reply_text(response: InferenceResponse) -> str:
    message = (response.text or "").rstrip()
    if not message and response.function_calls:
        first = response.function_calls[0]
        if first.get("name") == "evaluate_response":
            is_correct = bool((first.get("args") or {}).get("isCorrect"))
            message = EVALUATION_CORRECT if is_correct else EVALUATION_INCORRECT
    return message or FALLBACK_GREETING


def _report_evaluations(
    question: Question,
    session_id: str,
    function_calls: List[Dict[str, Any]],
    selected_option: Optional[str],
    deps: TutorDeps,
) -> None:
    if deps.record_evaluation is None:
        return
    for call in function_calls:
        if call.get("name") != "evaluate_response":
            continue
        args = call.get("args") or {}
        detected = args.get("detectedAnswer")
        if not isinstance(detected, str):
            detected = selected_option
        deps.record_evaluation(
            {
                "session_id": session_id,
                "question_id": question.id,
                "is_correct": bool(args.get("isCorrect")),
                "detected_answer": detected,
                "missing_points": list(args.get("missingPoints") or []),
                "is_mcq": question.is_mcq,
            }
        )


def send_message_to_tutor(
    session_id: str,
    question_id: str,
    message: str,
    *,
    deps: TutorDeps,
    selected_option: Optional[str] = None,
    files: Optional[List[TutorFile]] = None,
    attempts: int = 0,
) -> Dict[str, Any]:
    store = deps.store
    log_extra = {"session_id": session_id, "question_id": question_id}

    limited = check_rate_limit(session_id, deps=deps.rate_limit)
    if limited is not None:
        _log.info("chat rate limited scope=%s retry_after_ms=%d", limited.scope, limited.retry_after_ms, extra=log_extra)
        store.add_chat_message(
            ChatMessage(
                session_id=session_id,
                question_id=question_id,
                role="system",
                content=rate_limit_notice(limited),
                timestamp=deps.now_ms(),
            )
        )
        return {"message": "", "rate_limited": limited.to_dict()}

    question = store.get_question(question_id)
    if question is None:
        raise NotFoundError(f"question not found: {question_id}")

    history = trim_messages(
        history_turns(store.list_chat_messages(session_id, question_id)),
        max_messages=deps.max_history_messages,
        max_chars=deps.max_history_chars,
    )

    files = list(files or [])
    store.add_chat_message(
        ChatMessage(
            session_id=session_id,
            question_id=question_id,
            role="student",
            content=message,
            timestamp=deps.now_ms(),
            attachments=[{"name": f.name, "type": f.mime_type} for f in files] or None,
        )
    )

    detected = detect_mcq_guess(message, question.answer_options_mcq) if question.is_mcq else None
    context = build_question_context(
        question,
        attempts=attempts,
        selected_option=selected_option,
        detected_answer=detected,
        file_names=[f.name for f in files],
    )
    request = InferenceRequest(
        prompt=f"{context}\n\nStudent says: {message}",
        purpose="tutor",
        attachments=[_file_attachment(f) for f in files],
        history=history,
        system_instruction=TUTOR_SYSTEM_INSTRUCTION,
        function_declarations=[EVALUATE_RESPONSE_TOOL],
        metadata={"session_id": session_id, "question_id": question_id},
    )

    try:
        response = invoke(lambda: deps.generate(request), TUTOR_CONTEXT, deps=deps.invoker)
    except InvocationError as exc:
        _log.error("tutor call failed: %s", exc, extra=log_extra)
        reply = FALLBACK_UNAVAILABLE
        function_calls: List[Dict[str, Any]] = []
    else:
        reply = _reply_text(response)
        function_calls = list(response.function_calls)
        _report_evaluations(question, session_id, function_calls, selected_option, deps)

    tool_call = None
    if function_calls:
        first = function_calls[0]
        tool_call = {
            "name": first.get("name"),
            "args": {**(first.get("args") or {}), "questionNumber": question.question_number},
        }
    store.add_chat_message(
        ChatMessage(
            session_id=session_id,
            question_id=question_id,
            role="tutor",
            content=reply,
            timestamp=deps.now_ms(),
            tool_call=tool_call,
        )
    )
    out: Dict[str, Any] = {"message": reply}
    if function_calls:
        out["tool_calls"] = function_calls
    return out
