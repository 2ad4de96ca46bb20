from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from llm_gateway import Attachment, InferenceRequest, InferenceResponse

from .answer_normalizer import display_text
from .llm_json import parse_llm_json
from .models import QUESTION_TYPES, ExtractedQuestion, Question
from .resilient_invoker import InvokerDeps, invoke
from .store import new_id

_log = logging.getLogger(__name__)

EXTRACTION_CONTEXT = "Question extraction"

EXTRACTION_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "questionNumber": {"type": "STRING"},
            "questionText": {"type": "STRING"},
            "questionType": {"type": "STRING", "enum": list(QUESTION_TYPES)},
            "answerOptionsMCQ": {"type": "ARRAY", "items": {"type": "STRING"}},
            "additionalInstructionsForAnswer": {"type": "STRING"},
            "additionalInstructionsForWork": {"type": "STRING"},
        },
        "required": ["questionNumber", "questionText", "questionType"],
    },
}

EXTRACTION_PROMPT = """Extract EVERY question from the attached assignment document, in document order.

For each question return:
- questionNumber: exactly as printed, keeping sub-parts (e.g. "3", "16a")
- questionText: the full question including its instruction ("Solve for x: 3x + 5 = 20", not "3x + 5 = 20"). Add an instruction verb when none is printed. Keep blanks ("____"), placeholders and references to passages or figures.
- questionType: one of "multiple_choice", "single_value", "short_answer", "free_response", "skipped"
- answerOptionsMCQ: the answer choices, multiple choice only
- additionalInstructionsForAnswer: required answer format (e.g. "round to 2 decimals")
- additionalInstructionsForWork: required method (e.g. "use the quadratic formula")

TEACHER INSTRUCTIONS (these override the defaults above):
{additional_info}

Applying teacher instructions:
- edits to a question go straight into questionText
- edits to multiple choice options never replace the correct option; change a wrong one instead
- answer format requirements go into additionalInstructionsForAnswer, method requirements into additionalInstructionsForWork
- "skip question X" sets questionType to "skipped"

Preserve math exactly. Respond with ONLY a JSON array:
[{{"questionNumber": "1", "questionText": "...", "questionType": "..."}}]"""


@dataclass(frozen=True)
class ExtractionDeps:
    generate: Callable[[InferenceRequest], InferenceResponse]
    invoker: InvokerDeps


def build_extraction_prompt(additional_info: Optional[str]) -> str:
    return EXTRACTION_PROMPT.format(additional_info=(additional_info or "").strip() or "None")


def _optional_text(value: Any) -> Optional[str]:
    text = display_text(value)
    return text or None


def _coerce_extracted(item: Any, index: int) -> ExtractedQuestion:
    if not isinstance(item, dict):
        raise ValueError(f"extracted question #{index + 1} is not an object")
    question_type = str(item.get("questionType") or "").strip().lower()
    if question_type not in QUESTION_TYPES:
        _log.info("unknown question type %r for question #%d, using short_answer", question_type, index + 1)
        question_type = "short_answer"
    options = item.get("answerOptionsMCQ")
    options_list = [display_text(opt) for opt in options] if isinstance(options, list) and options else None
    number = display_text(item.get("questionNumber")) or str(index + 1)
    return ExtractedQuestion(
        question_number=number,
        question_text=display_text(item.get("questionText")),
        question_type=question_type,
        answer_options_mcq=options_list,
        additional_instructions_for_answer=_optional_text(item.get("additionalInstructionsForAnswer")),
        additional_instructions_for_work=_optional_text(item.get("additionalInstructionsForWork")),
    )


def parse_extraction_response(text: str) -> List[ExtractedQuestion]:
    parsed = parse_llm_json(text, EXTRACTION_CONTEXT)
    if isinstance(parsed, dict) and isinstance(parsed.get("questions"), list):
        parsed = parsed["questions"]
    if not isinstance(parsed, list):
        raise ValueError("extraction response is not a JSON array")
    return [_coerce_extracted(item, idx) for idx, item in enumerate(parsed)]


def extract_questions(
    attachments: List[Attachment],
    additional_info: Optional[str],
    *,
    deps: ExtractionDeps,
) -> List[ExtractedQuestion]:
    if not attachments:
        raise ValueError("No files to process")
    request = InferenceRequest(
        prompt=build_extraction_prompt(additional_info),
        purpose="extraction",
        attachments=attachments,
        response_schema=EXTRACTION_RESPONSE_SCHEMA,
        response_mime_type="application/json",
    )

    def _call() -> List[ExtractedQuestion]:
        response = deps.generate(request)
        return parse_extraction_response(response.text)

    return invoke(_call, EXTRACTION_CONTEXT, deps=deps.invoker)


def build_question_records(assignment_id: str, extracted: List[ExtractedQuestion]) -> List[Question]:
    return [
        Question(
            id=new_id(),
            assignment_id=assignment_id,
            question_number=item.question_number,
            extraction_order=index,
            question_text=item.question_text,
            question_type=item.question_type,
            answer_options_mcq=item.answer_options_mcq,
            additional_instructions_for_answer=item.additional_instructions_for_answer,
            additional_instructions_for_work=item.additional_instructions_for_work,
            status="pending",
        )
        for index, item in enumerate(extracted)
    ]
