import json
import threading
import unittest

from llm_gateway import InferenceResponse
from services.engine import pipeline
from services.engine.answer_generation_service import AnswerGenerationDeps
from services.engine.models import Assignment, StoredFile
from services.engine.pipeline import (
    PipelineDeps,
    approve_question,
    process_assignment,
    regenerate_answer,
    resume_processing,
    stop_processing,
    unapprove_question,
)
from services.engine.question_extraction_service import ExtractionDeps
from services.engine.resilient_invoker import InvokerDeps
from services.engine.store import InMemoryStore, StoreError

STOPPED = "Processing stopped by teacher"

_EXTRACTED = [
    {"questionNumber": "1", "questionText": "2 + 2 = ?", "questionType": "single_value"},
    {
        "questionNumber": "2",
        "questionText": "Capital of Italy?",
        "questionType": "multiple_choice",
        "answerOptionsMCQ": ["Paris", "Rome"],
    },
    {"questionNumber": "3", "questionText": "Describe photosynthesis", "questionType": "free_response"},
]

_ANSWERS = {
    "1": {"answer": "4", "key_points": ["Add the numbers"], "source": "notes"},
    "2": {"answer": "B", "key_points": [], "source": ["https://example.org/rome"]},
    "3": {"answer": ["light", "chlorophyll"], "key_points": [], "source": "notes"},
}


class _FakeModel:
    """Answers extraction and answer prompts from fixed tables."""

    def __init__(self, answers=None, on_extract=None, on_answer=None, extracted=None):
        self.answers = dict(answers or _ANSWERS)
        self.on_extract = on_extract
        self.on_answer = on_answer
        self.extracted = extracted or _EXTRACTED
        self.calls = []
        self.lock = threading.Lock()

    def __call__(self, req):
        with self.lock:
            self.calls.append(req)
        if req.purpose == "extraction":
            if self.on_extract is not None:
                self.on_extract()
            return InferenceResponse(text=json.dumps(self.extracted))
        number = req.prompt.split("QUESTION #", 1)[1].split(":", 1)[0]
        if self.on_answer is not None:
            self.on_answer(number)
        payload = self.answers[number]
        if isinstance(payload, Exception):
            raise payload
        return InferenceResponse(text=json.dumps(payload))


def _fetch(url):
    return b"file:" + url.encode("utf-8"), "application/pdf"


class PipelineTestCase(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryStore()
        self.store.put_assignment(
            Assignment(
                id="a1",
                name="Homework",
                assignment_files=[StoredFile("f1", "hw.pdf", "application/pdf", "http://files/f1")],
                notes=[StoredFile("n1", "notes.pdf", "application/pdf", "http://files/n1")],
            )
        )

    def _deps(self, model, *, batch_size=2, max_parallel=2):
        invoker = InvokerDeps(max_attempts=1, sleep=lambda s: None)
        return PipelineDeps(
            store=self.store,
            extraction=ExtractionDeps(generate=model, invoker=invoker),
            answers=AnswerGenerationDeps(generate=model, invoker=invoker),
            fetch_file=_fetch,
            batch_size=batch_size,
            max_parallel=max_parallel,
        )

    def _assignment(self):
        return self.store.get_assignment("a1")

    def _by_number(self):
        return {q.question_number: q for q in self.store.list_questions("a1")}


class TestProcessAssignment(PipelineTestCase):
    def test_full_run_reaches_ready(self):
        model = _FakeModel()
        result = process_assignment("a1", deps=self._deps(model))

        self.assertEqual(result, {"success": True, "questions_extracted": 3, "answers_generated": 3})
        self.assertEqual(self._assignment().processing_status, "ready")
        self.assertIsNone(self._assignment().processing_error)
        questions = self._by_number()
        self.assertEqual(questions["1"].answer, "4")
        self.assertEqual(questions["2"].answer, "B")
        self.assertEqual(questions["2"].source, ["https://example.org/rome"])
        self.assertEqual(questions["3"].answer, ["light", "chlorophyll"])
        self.assertEqual({q.status for q in questions.values()}, {"ready"})
        # notes are only sent with answer generation
        extraction = [c for c in model.calls if c.purpose == "extraction"][0]
        answer_call = [c for c in model.calls if c.purpose == "answer_generation"][0]
        self.assertEqual(len(extraction.attachments), 1)
        self.assertEqual(len(answer_call.attachments), 2)

    def test_partial_failure_is_ready_with_advisory(self):
        answers = dict(_ANSWERS)
        answers["2"] = {"answer": "Madrid", "key_points": [], "source": "notes"}
        result = process_assignment("a1", deps=self._deps(_FakeModel(answers)))

        self.assertTrue(result["success"])
        self.assertEqual(result["answers_generated"], 2)
        self.assertEqual(self._assignment().processing_status, "ready")
        self.assertEqual(self._assignment().processing_error, "1 of 3 answers failed to generate")
        self.assertEqual(self._by_number()["2"].status, "pending")

    def test_extraction_failure_sets_error(self):
        def broken(req):
            raise RuntimeError("quota exceeded")

        result = process_assignment("a1", deps=self._deps(broken))

        self.assertFalse(result["success"])
        self.assertEqual(
            result["error"],
            "Extraction failed: Question extraction failed after 1 attempts: quota exceeded",
        )
        self.assertEqual(self._assignment().processing_status, "error")
        self.assertEqual(self._assignment().processing_error, result["error"])

    def test_refuses_when_already_in_flight(self):
        self.store.set_assignment_status("a1", "generating_answers")
        model = _FakeModel()
        result = process_assignment("a1", deps=self._deps(model))
        self.assertEqual(result, {"success": False, "error": "Processing already in progress"})
        self.assertEqual(self._assignment().processing_status, "generating_answers")
        self.assertEqual(model.calls, [])

    def test_concurrent_calls_yield_one_run(self):
        entered = threading.Event()
        release = threading.Event()

        def on_extract():
            entered.set()
            release.wait(timeout=5)

        model = _FakeModel(on_extract=on_extract)
        deps = self._deps(model)
        results = {}
        worker = threading.Thread(target=lambda: results.setdefault("first", process_assignment("a1", deps=deps)))
        worker.start()
        self.assertTrue(entered.wait(timeout=5))

        second = process_assignment("a1", deps=deps)
        release.set()
        worker.join(timeout=10)

        self.assertEqual(second, {"success": False, "error": "Processing already in progress"})
        self.assertTrue(results["first"]["success"])
        self.assertEqual(len([c for c in model.calls if c.purpose == "extraction"]), 1)

    def test_stop_during_extraction_skips_answer_generation(self):
        model = _FakeModel(on_extract=lambda: stop_processing("a1", store=self.store))
        result = process_assignment("a1", deps=self._deps(model))

        self.assertEqual(result, {"success": False, "questions_extracted": 3, "error": STOPPED})
        self.assertEqual(self._assignment().processing_status, "error")
        self.assertEqual(self._assignment().processing_error, STOPPED)
        self.assertEqual({q.status for q in self.store.list_questions("a1")}, {"pending"})
        self.assertEqual([c.purpose for c in model.calls], ["extraction"])

    def test_stopped_assignment_needs_resume(self):
        stop_processing("a1", store=self.store)
        model = _FakeModel()
        refused = process_assignment("a1", deps=self._deps(model))
        self.assertEqual(refused, {"success": False, "error": STOPPED})
        self.assertEqual(model.calls, [])

        self.assertEqual(resume_processing("a1", store=self.store), {"success": True})
        self.assertEqual(self._assignment().processing_status, "pending")
        self.assertIsNone(self._assignment().processing_error)
        self.assertTrue(process_assignment("a1", deps=self._deps(model))["success"])

    def test_resume_requires_error(self):
        result = resume_processing("a1", store=self.store)
        self.assertFalse(result["success"])

    def test_unknown_assignment(self):
        result = process_assignment("missing", deps=self._deps(_FakeModel()))
        self.assertEqual(result, {"success": False, "error": "Assignment not found"})

    def test_reprocessing_replaces_questions(self):
        deps = self._deps(_FakeModel())
        process_assignment("a1", deps=deps)
        first_ids = {q.id for q in self.store.list_questions("a1")}
        process_assignment("a1", deps=deps)
        second_ids = {q.id for q in self.store.list_questions("a1")}
        self.assertEqual(len(second_ids), 3)
        self.assertFalse(first_ids & second_ids)

    def test_stop_during_answer_generation_abandons_later_batches(self):
        extracted = [
            {"questionNumber": str(n), "questionText": f"{n} + {n} = ?", "questionType": "single_value"}
            for n in range(1, 11)
        ]
        answers = {str(n): {"answer": str(2 * n), "key_points": [], "source": "notes"} for n in range(1, 11)}
        release = threading.Event()

        def on_answer(number):
            if number in {"1", "2", "3", "4"}:
                release.wait(timeout=5)
            if number == "7":
                stop_processing("a1", store=self.store)
                release.set()

        model = _FakeModel(answers, on_answer=on_answer, extracted=extracted)
        result = process_assignment("a1", deps=self._deps(model, batch_size=4, max_parallel=2))

        self.assertEqual(
            result,
            {"success": False, "questions_extracted": 10, "answers_generated": 2, "error": STOPPED},
        )
        self.assertEqual(self._assignment().processing_status, "error")
        self.assertEqual(self._assignment().processing_error, STOPPED)
        asked = {
            c.prompt.split("QUESTION #", 1)[1].split(":", 1)[0]
            for c in model.calls
            if c.purpose == "answer_generation"
        }
        self.assertFalse(asked & {"8", "9", "10"})
        statuses = {number: q.status for number, q in self._by_number().items()}
        self.assertNotIn("processing", statuses.values())
        self.assertEqual((statuses["5"], statuses["6"]), ("ready", "ready"))
        self.assertEqual(statuses["7"], "pending")

    def test_stop_then_quick_resume_still_ends_the_run(self):
        def on_answer(number):
            stop_processing("a1", store=self.store)
            resume_processing("a1", store=self.store)

        model = _FakeModel(on_answer=on_answer)
        result = process_assignment("a1", deps=self._deps(model, batch_size=1, max_parallel=1))

        self.assertFalse(result["success"])
        self.assertEqual(result["error"], STOPPED)
        self.assertEqual(len([c for c in model.calls if c.purpose == "answer_generation"]), 1)
        self.assertEqual((self._assignment().processing_status, self._assignment().processing_error), ("pending", None))
        self.assertEqual({q.status for q in self.store.list_questions("a1")}, {"pending"})
        self.assertTrue(process_assignment("a1", deps=self._deps(_FakeModel()))["success"])

    def test_run_registry_is_released(self):
        process_assignment("a1", deps=self._deps(_FakeModel()))
        process_assignment("missing", deps=self._deps(_FakeModel()))
        self.assertEqual(pipeline._RUNNING_ASSIGNMENTS, set())

    def test_store_failure_is_reported_not_raised(self):
        def broken(assignment_id):
            raise StoreError("disk unreadable")

        self.store.get_assignment = broken
        result = process_assignment("a1", deps=self._deps(_FakeModel()))
        self.assertEqual(result, {"success": False, "error": "disk unreadable"})


class TestQuestionActions(PipelineTestCase):
    def setUp(self):
        super().setUp()
        process_assignment("a1", deps=self._deps(_FakeModel()))
        self.q1 = self._by_number()["1"]

    def test_regenerate_updates_answer_and_passes_feedback(self):
        answers = dict(_ANSWERS)
        answers["1"] = {"answer": "four", "key_points": ["Spell it out"], "source": "notes"}
        model = _FakeModel(answers)
        result = regenerate_answer(self.q1.id, "write the number in words", deps=self._deps(model))

        self.assertEqual(result, {"success": True})
        updated = self.store.get_question(self.q1.id)
        self.assertEqual((updated.answer, updated.status), ("four", "ready"))
        self.assertEqual(updated.key_points, ["Spell it out"])
        self.assertIn("Teacher feedback for regeneration: write the number in words", model.calls[0].prompt)

    def test_regenerate_failure_preserves_previous_answer(self):
        answers = dict(_ANSWERS)
        answers["1"] = RuntimeError("model unavailable")
        result = regenerate_answer(self.q1.id, deps=self._deps(_FakeModel(answers)))

        self.assertFalse(result["success"])
        self.assertIn("model unavailable", result["error"])
        restored = self.store.get_question(self.q1.id)
        self.assertEqual(restored.answer, "4")
        self.assertEqual(restored.key_points, ["Add the numbers"])
        self.assertEqual(restored.status, "ready")

    def test_regenerate_commit_failure_restores_previous_answer(self):
        patch = self.store.patch_question
        calls = {"n": 0}

        def flaky_patch(question_id, **fields):
            calls["n"] += 1
            if calls["n"] == 2:
                raise StoreError("disk full")
            return patch(question_id, **fields)

        self.store.patch_question = flaky_patch
        answers = dict(_ANSWERS)
        answers["1"] = {"answer": "four", "key_points": [], "source": "notes"}
        with self.assertLogs("services.engine.pipeline", level="ERROR"):
            result = regenerate_answer(self.q1.id, deps=self._deps(_FakeModel(answers)))

        self.assertEqual(result, {"success": False, "error": "disk full"})
        restored = self.store.get_question(self.q1.id)
        self.assertEqual((restored.answer, restored.status), ("4", "ready"))

    def test_regenerate_unknown_question(self):
        result = regenerate_answer("nope", deps=self._deps(_FakeModel()))
        self.assertEqual(result, {"success": False, "error": "Question not found"})

    def test_approve_and_unapprove(self):
        self.assertEqual(approve_question(self.q1.id, store=self.store), {"success": True})
        self.assertEqual(self.store.get_question(self.q1.id).status, "approved")
        self.assertFalse(approve_question(self.q1.id, store=self.store)["success"])
        self.assertEqual(unapprove_question(self.q1.id, store=self.store), {"success": True})
        self.assertEqual(self.store.get_question(self.q1.id).status, "ready")
