from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from llm_gateway import Attachment, InferenceRequest, InferenceResponse

from .answer_normalizer import normalize_answer, normalize_key_points, normalize_source
from .llm_json import parse_llm_json
from .models import GeneratedAnswer, Question
from .resilient_invoker import InvokerDeps, invoke

_log = logging.getLogger(__name__)

ANSWER_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "answer": {"anyOf": [{"type": "STRING"}, {"type": "ARRAY", "items": {"type": "STRING"}}]},
        "key_points": {"type": "ARRAY", "items": {"type": "STRING"}},
        "source": {"anyOf": [{"type": "STRING"}, {"type": "ARRAY", "items": {"type": "STRING"}}]},
    },
    "required": ["answer", "key_points", "source"],
}

ANSWER_PROMPT = """QUESTION #{number}: {text}
TYPE: {question_type}
{options_section}
FORMAT: {answer_format}
METHOD: {method}

Answer from the attached notes. When the notes lack the facts or method you need, use Google Search to find them, then solve the question, and list the URLs you used in source.

ANSWER FORMAT:
- short_answer: an expression or short phrase (e.g. "3x + 27")
- single_value: one value (number, word or phrase)
- multiple_choice: ONE letter only
- free_response: an array of key points

KEY_POINTS: 1-2 short facts (under 15 words each) that support this answer, taken from the notes or from the pages you searched.

SOURCE: "notes" or an array of the search URLs used.

Respond with ONLY this JSON:
{{"answer": "...", "key_points": ["..."], "source": "notes"}}"""


@dataclass(frozen=True)
class AnswerGenerationDeps:
    generate: Callable[[InferenceRequest], InferenceResponse]
    invoker: InvokerDeps


def option_letter(index: int) -> str:
    return chr(65 + index)


def format_options(options: Optional[List[str]]) -> str:
    if not options:
        return ""
    lines = [f"{option_letter(idx)}. {opt}" for idx, opt in enumerate(options)]
    return "ANSWER OPTIONS (choose ONE letter):\n" + "\n".join(lines)


def build_answer_prompt(question: Question, feedback: Optional[str] = None) -> str:
    answer_format = question.additional_instructions_for_answer or ""
    if feedback and feedback.strip():
        note = f"Teacher feedback for regeneration: {feedback.strip()}"
        answer_format = f"{answer_format}\n\n{note}" if answer_format else note
    return ANSWER_PROMPT.format(
        number=question.question_number,
        text=question.question_text,
        question_type=question.question_type,
        options_section=format_options(question.answer_options_mcq) if question.is_mcq else "",
        answer_format=answer_format or "None",
        method=question.additional_instructions_for_work or "None",
    )


def parse_answer_response(question: Question, response: InferenceResponse) -> GeneratedAnswer:
    parsed = parse_llm_json(response.text, f"Answer for Q{question.question_number}")
    if not isinstance(parsed, dict):
        raise ValueError(f"answer for Q{question.question_number} is not a JSON object")
    key_points = parsed.get("key_points")
    if key_points is None:
        key_points = parsed.get("keyPoints")
    return GeneratedAnswer(
        answer=normalize_answer(parsed.get("answer"), question.question_type, question.answer_options_mcq),
        key_points=normalize_key_points(key_points),
        source=normalize_source(parsed.get("source"), response.grounding_urls),
    )


def generate_answer(
    question: Question,
    context: List[Attachment],
    *,
    deps: AnswerGenerationDeps,
    feedback: Optional[str] = None,
) -> GeneratedAnswer:
    """One question, one shared context. Raises InvocationError once retries run out."""
    request = InferenceRequest(
        prompt=build_answer_prompt(question, feedback),
        purpose="answer_generation",
        attachments=context,
        response_schema=ANSWER_RESPONSE_SCHEMA,
        use_search=True,
        metadata={"question_id": question.id},
    )

    _log.debug("generating answer for Q%s", question.question_number, extra={"question_id": question.id})

    def _call() -> GeneratedAnswer:
        return parse_answer_response(question, deps.generate(request))

    return invoke(_call, f"Answer generation for Q{question.question_number}", deps=deps.invoker)
