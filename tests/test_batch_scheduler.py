import threading
import time
import unittest

from services.engine.batch_scheduler import BatchSchedulerDeps, partition_batches, run_batches
from services.engine.cancellation import CancellationContext, assignment_status_reader
from services.engine.models import Assignment, GeneratedAnswer, Question
from services.engine.store import InMemoryStore

STOPPED = "Processing stopped by teacher"


def _questions(n):
    return [
        Question(
            id=f"q{i}",
            assignment_id="a1",
            question_number=str(i + 1),
            extraction_order=i,
            question_text=f"question {i}",
        )
        for i in range(n)
    ]


def _answer(question):
    return GeneratedAnswer(answer=f"answer {question.id}", key_points=[], source="notes")


class _Harness:
    def __init__(self, n, generate, *, batch_size=4, max_parallel=2):
        self.store = InMemoryStore()
        self.store.put_assignment(Assignment(id="a1", processing_status="generating_answers"))
        self.questions = _questions(n)
        self.store.insert_questions(self.questions)
        self.deps = BatchSchedulerDeps(
            generate_answer=generate,
            mark_processing=lambda q: self.store.patch_question(q.id, status="processing"),
            commit_answer=lambda q, a: self.store.patch_question(q.id, answer=a.answer, status="ready"),
            revert_pending=lambda q: self.store.patch_question(q.id, status="pending"),
            batch_size=batch_size,
            max_parallel=max_parallel,
        )
        self.cancellation = CancellationContext(assignment_status_reader(self.store, "a1"))

    def run(self):
        return run_batches(self.questions, deps=self.deps, cancellation=self.cancellation)

    def statuses(self):
        return {q.id: q.status for q in self.store.list_questions("a1")}


class TestPartition(unittest.TestCase):
    def test_contiguous_batches_with_short_tail(self):
        batches = partition_batches(list(range(10)), 4)
        self.assertEqual(batches, [[0, 1, 2, 3], [4, 5, 6, 7], [8, 9]])

    def test_empty_and_exact(self):
        self.assertEqual(partition_batches([], 4), [])
        self.assertEqual(len(partition_batches(list(range(8)), 4)), 2)


class TestRunBatches(unittest.TestCase):
    def test_all_questions_processed_with_bounded_parallelism(self):
        lock = threading.Lock()
        state = {"active": 0, "peak": 0}
        order = []

        def generate(question):
            with lock:
                state["active"] += 1
                state["peak"] = max(state["peak"], state["active"])
                order.append(question.id)
            time.sleep(0.01)
            with lock:
                state["active"] -= 1
            return _answer(question)

        harness = _Harness(10, generate)
        result = harness.run()

        self.assertEqual(result.processed, 10)
        self.assertEqual(result.errored, 0)
        self.assertIsNone(result.aborted)
        self.assertEqual(result.batches_launched, 3)
        self.assertLessEqual(state["peak"], 2)
        self.assertEqual(set(harness.statuses().values()), {"ready"})
        # within a batch questions run in order
        for batch in (["q0", "q1", "q2", "q3"], ["q4", "q5", "q6", "q7"], ["q8", "q9"]):
            positions = [order.index(qid) for qid in batch]
            self.assertEqual(positions, sorted(positions))

    def test_failed_question_is_counted_and_reverted(self):
        def generate(question):
            if question.id == "q2":
                raise RuntimeError("model returned garbage")
            return _answer(question)

        harness = _Harness(5, generate)
        with self.assertLogs("services.engine.batch_scheduler", level="ERROR"):
            result = harness.run()

        self.assertEqual(result.processed, 4)
        self.assertEqual(result.errored, 1)
        self.assertIn("Q3: model returned garbage", result.errors[0])
        statuses = harness.statuses()
        self.assertEqual(statuses["q2"], "pending")
        self.assertEqual(statuses["q3"], "ready")

    def test_stop_mid_batch_abandons_remaining_work(self):
        release = threading.Event()
        harness = None

        def generate(question):
            if question.id in {"q0", "q1", "q2", "q3"}:
                release.wait(timeout=5)
            if question.id == "q6":
                harness.store.set_assignment_status("a1", "error", STOPPED)
                release.set()
            return _answer(question)

        harness = _Harness(10, generate)
        result = harness.run()

        self.assertEqual(result.aborted, STOPPED)
        self.assertEqual(result.batches_launched, 2)
        self.assertEqual(result.processed, 2)
        statuses = harness.statuses()
        self.assertEqual(statuses["q4"], "ready")
        self.assertEqual(statuses["q5"], "ready")
        # result for q6 was discarded, q7 never started, batch 3 never launched
        for qid in ("q0", "q6", "q7", "q8", "q9"):
            self.assertEqual(statuses[qid], "pending")
        self.assertNotIn("processing", statuses.values())

    def test_stop_before_start_launches_nothing(self):
        calls = []
        harness = _Harness(3, lambda q: calls.append(q) or _answer(q))
        harness.store.set_assignment_status("a1", "error", STOPPED)
        result = harness.run()
        self.assertEqual(result.aborted, STOPPED)
        self.assertEqual(result.batches_launched, 0)
        self.assertEqual(calls, [])

    def test_commit_failure_still_reverts(self):
        harness = _Harness(1, _answer)

        def broken_commit(question, answer):
            raise RuntimeError("disk full")

        deps = BatchSchedulerDeps(
            generate_answer=_answer,
            mark_processing=harness.deps.mark_processing,
            commit_answer=broken_commit,
            revert_pending=harness.deps.revert_pending,
        )
        with self.assertLogs("services.engine.batch_scheduler", level="ERROR"):
            result = run_batches(harness.questions, deps=deps, cancellation=harness.cancellation)
        self.assertEqual(result.errored, 1)
        self.assertEqual(harness.statuses(), {"q0": "pending"})

    def test_no_questions(self):
        harness = _Harness(0, _answer)
        result = harness.run()
        self.assertEqual((result.processed, result.batches_launched), (0, 0))

    def test_stop_after_marking_skips_the_model_call(self):
        calls = []
        harness = _Harness(2, lambda q: calls.append(q) or _answer(q), max_parallel=1)

        def mark_then_stop(question):
            harness.store.patch_question(question.id, status="processing")
            harness.store.set_assignment_status("a1", "error", STOPPED)

        deps = BatchSchedulerDeps(
            generate_answer=harness.deps.generate_answer,
            mark_processing=mark_then_stop,
            commit_answer=harness.deps.commit_answer,
            revert_pending=harness.deps.revert_pending,
        )
        result = run_batches(harness.questions, deps=deps, cancellation=harness.cancellation)

        self.assertEqual(result.aborted, STOPPED)
        self.assertEqual(calls, [])
        self.assertEqual(harness.statuses(), {"q0": "pending", "q1": "pending"})
