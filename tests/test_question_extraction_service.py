import json
import unittest

from llm_gateway import Attachment, InferenceResponse
from services.engine.question_extraction_service import (
    ExtractionDeps,
    build_extraction_prompt,
    build_question_records,
    extract_questions,
    parse_extraction_response,
)
from services.engine.resilient_invoker import InvocationError, InvokerDeps

_ITEMS = [
    {
        "questionNumber": "1",
        "questionText": "Solve for x: 3x + 5 = 20",
        "questionType": "single_value",
        "additionalInstructionsForAnswer": "integer",
    },
    {
        "questionNumber": "2a",
        "questionText": "Which city is the capital of France?",
        "questionType": "multiple_choice",
        "answerOptionsMCQ": ["Paris", "London"],
    },
    {"questionNumber": 3, "questionText": "Explain", "questionType": "essay"},
]


class TestExtraction(unittest.TestCase):
    def setUp(self):
        self.requests = []
        self.sleeps = []

    def _deps(self, texts):
        queue = list(texts)

        def generate(req):
            self.requests.append(req)
            text = queue.pop(0)
            if isinstance(text, Exception):
                raise text
            return InferenceResponse(text=text)

        return ExtractionDeps(generate=generate, invoker=InvokerDeps(max_attempts=3, sleep=self.sleeps.append))

    def test_parses_fenced_array(self):
        text = "```json\n" + json.dumps(_ITEMS) + "\n```"
        result = extract_questions([Attachment("QQ==", "application/pdf")], "skip question 4", deps=self._deps([text]))
        self.assertEqual([q.question_number for q in result], ["1", "2a", "3"])
        self.assertEqual(result[0].additional_instructions_for_answer, "integer")
        self.assertEqual(result[1].answer_options_mcq, ["Paris", "London"])
        # unknown types fall back to short_answer
        self.assertEqual(result[2].question_type, "short_answer")

        req = self.requests[0]
        self.assertEqual(req.purpose, "extraction")
        self.assertEqual(req.response_mime_type, "application/json")
        self.assertIn("skip question 4", req.prompt)

    def test_unparseable_output_is_retried(self):
        good = json.dumps(_ITEMS[:1])
        result = extract_questions([Attachment("QQ==", "application/pdf")], None, deps=self._deps(["oops", good]))
        self.assertEqual(len(result), 1)
        self.assertEqual(self.sleeps, [1.0])

    def test_exhausted_retries_raise(self):
        deps = self._deps([RuntimeError("429"), RuntimeError("429"), RuntimeError("500")])
        with self.assertRaises(InvocationError) as ctx:
            extract_questions([Attachment("QQ==", "application/pdf")], None, deps=deps)
        self.assertIn("Question extraction failed after 3 attempts: 500", str(ctx.exception))

    def test_no_files(self):
        with self.assertRaises(ValueError):
            extract_questions([], None, deps=self._deps([]))
        self.assertEqual(self.requests, [])


def test_wrapped_questions_object_is_accepted():
    parsed = parse_extraction_response(json.dumps({"questions": _ITEMS[:2]}))
    assert len(parsed) == 2


def test_prompt_without_teacher_instructions():
    assert "TEACHER INSTRUCTIONS (these override the defaults above):\nNone" in build_extraction_prompt("  ")


def test_question_records_keep_document_order():
    records = build_question_records("a1", parse_extraction_response(json.dumps(_ITEMS)))
    assert [q.extraction_order for q in records] == [0, 1, 2]
    assert {q.status for q in records} == {"pending"}
    assert {q.assignment_id for q in records} == {"a1"}
    assert len({q.id for q in records}) == 3
