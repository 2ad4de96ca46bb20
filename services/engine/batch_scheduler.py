"""Bounded-parallel answer generation over an ordered list of questions.

Questions are cut into contiguous batches. At most ``max_parallel`` batches
run at once; when one finishes the next one is launched. Inside a batch the
questions run one after another against the same shared context.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set, TypeVar

from .cancellation import CancellationContext
from .models import GeneratedAnswer, Question

_log = logging.getLogger(__name__)

T = TypeVar("T")


def partition_batches(items: Sequence[T], batch_size: int) -> List[List[T]]:
    size = max(1, int(batch_size))
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


@dataclass(frozen=True)
class BatchSchedulerDeps:
    generate_answer: Callable[[Question], GeneratedAnswer]
    mark_processing: Callable[[Question], None]
    commit_answer: Callable[[Question, GeneratedAnswer], None]
    revert_pending: Callable[[Question], None]
    batch_size: int = 4
    max_parallel: int = 2


@dataclass
class BatchRunResult:
    processed: int = 0
    errored: int = 0
    aborted: Optional[str] = None
    batches_launched: int = 0
    errors: List[str] = field(default_factory=list)


class _Tally:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.result = BatchRunResult()

    def processed(self) -> None:
        with self._lock:
            self.result.processed += 1

    def errored(self, message: str) -> None:
        with self._lock:
            self.result.errored += 1
            self.result.errors.append(message)

    def aborted(self, reason: str) -> None:
        with self._lock:
            if self.result.aborted is None:
                self.result.aborted = reason


def _run_question(
    question: Question,
    deps: BatchSchedulerDeps,
    cancellation: CancellationContext,
    tally: _Tally,
) -> bool:
    """Process one question. Returns False when the batch must stop."""
    reason = cancellation.check()
    if reason is not None:
        tally.aborted(reason)
        return False

    deps.mark_processing(question)
    committed = False
    try:
        reason = cancellation.check()
        if reason is not None:
            tally.aborted(reason)
            return False
        answer = deps.generate_answer(question)
        reason = cancellation.check()
        if reason is not None:
            _log.info(
                "discarding answer for Q%s after stop",
                question.question_number,
                extra={"question_id": question.id},
            )
            tally.aborted(reason)
            return False
        deps.commit_answer(question, answer)
        committed = True
        tally.processed()
        return True
    except Exception as exc:
        _log.error(
            "answer generation failed for Q%s: %s",
            question.question_number,
            exc,
            extra={"question_id": question.id},
        )
        tally.errored(f"Q{question.question_number}: {exc}")
        return True
    finally:
        if not committed:
            deps.revert_pending(question)


def _run_batch(
    batch: List[Question],
    deps: BatchSchedulerDeps,
    cancellation: CancellationContext,
    tally: _Tally,
) -> None:
    for question in batch:
        if not _run_question(question, deps, cancellation, tally):
            return


def run_batches(
    questions: Sequence[Question],
    *,
    deps: BatchSchedulerDeps,
    cancellation: CancellationContext,
) -> BatchRunResult:
    batches = partition_batches(questions, deps.batch_size)
    tally = _Tally()
    if not batches:
        return tally.result

    max_parallel = max(1, int(deps.max_parallel))
    queue = list(batches)
    running: Dict[Future, int] = {}

    with ThreadPoolExecutor(max_workers=max_parallel, thread_name_prefix="answer-batch") as pool:

        def _launch() -> None:
            while queue and len(running) < max_parallel:
                reason = cancellation.check()
                if reason is not None:
                    tally.aborted(reason)
                    return
                batch = queue.pop(0)
                tally.result.batches_launched += 1
                index = tally.result.batches_launched
                _log.debug("launching batch %d (%d questions)", index, len(batch))
                running[pool.submit(_run_batch, batch, deps, cancellation, tally)] = index

        _launch()
        while running:
            done: Set[Future]
            done, _ = wait(list(running), return_when=FIRST_COMPLETED)
            for future in done:
                index = running.pop(future)
                exc = future.exception()
                if exc is not None:
                    _log.error("batch %d crashed: %s", index, exc)
                    tally.errored(f"batch {index}: {exc}")
            _launch()

    if queue:
        _log.info("stopped with %d batches not launched", len(queue))
    return tally.result
