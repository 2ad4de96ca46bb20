"""Processing pipeline for one assignment.

extracting -> generating_answers -> ready, or error on a fatal failure or a
teacher stop. Public functions return result dicts and never raise.
"""
from __future__ import annotations

import functools
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set

from . import config
from .answer_generation_service import AnswerGenerationDeps, generate_answer
from .batch_scheduler import BatchSchedulerDeps, run_batches
from .cancellation import CancellationContext, assignment_status_reader
from .context_builder import FetchFile, build_answer_context, build_source_attachments
from .logging_config import diag_log
from .models import IN_FLIGHT_STATUSES, GeneratedAnswer, Question
from .question_extraction_service import ExtractionDeps, build_question_records, extract_questions
from .status_machine import (
    InvalidTransitionError,
    assignment_sources_for,
    can_start_processing,
    transition_assignment_status,
    transition_question_status,
)

_log = logging.getLogger(__name__)

_RUNNING_ASSIGNMENTS: Set[str] = set()
_RUNNING_ASSIGNMENTS_GUARD = threading.Lock()


def _register_run(assignment_id: str) -> bool:
    with _RUNNING_ASSIGNMENTS_GUARD:
        if assignment_id in _RUNNING_ASSIGNMENTS:
            return False
        _RUNNING_ASSIGNMENTS.add(assignment_id)
        return True


def _release_run(assignment_id: str) -> None:
    with _RUNNING_ASSIGNMENTS_GUARD:
        _RUNNING_ASSIGNMENTS.discard(assignment_id)


@dataclass(frozen=True)
class PipelineDeps:
    store: Any
    extraction: ExtractionDeps
    answers: AnswerGenerationDeps
    fetch_file: FetchFile
    batch_size: int = 4
    max_parallel: int = 2


def _in_progress() -> Dict[str, Any]:
    return {"success": False, "error": config.PROCESSING_IN_PROGRESS_MESSAGE}


def _error_text(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


def _reports_failure(fn: Callable[..., Dict[str, Any]]) -> Callable[..., Dict[str, Any]]:
    """Turn any exception escaping ``fn`` into a failed result dict."""

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Dict[str, Any]:
        try:
            return fn(*args, **kwargs)
        except Exception as exc:
            _log.error("%s failed: %s", fn.__name__, exc, exc_info=True)
            return {"success": False, "error": _error_text(exc)}

    return wrapper


def _fail(store: Any, assignment_id: str, message: str) -> None:
    # only a run that still owns the assignment may record its failure
    try:
        store.compare_and_set_assignment_status(
            assignment_id,
            allowed_from=IN_FLIGHT_STATUSES,
            status="error",
            error=message,
        )
    except Exception:
        _log.error("failed to record error for assignment %s", assignment_id, exc_info=True)


def _stop_reason(cancellation: CancellationContext) -> Optional[str]:
    try:
        return cancellation.check()
    except Exception:
        _log.error("failed to read assignment status", exc_info=True)
        return None


def _scheduler_deps(store: Any, context, deps: PipelineDeps) -> BatchSchedulerDeps:
    def _generate(question: Question) -> GeneratedAnswer:
        return generate_answer(question, context, deps=deps.answers)

    def _mark_processing(question: Question) -> None:
        store.patch_question(question.id, status="processing")

    def _commit(question: Question, answer: GeneratedAnswer) -> None:
        store.patch_question(
            question.id,
            answer=answer.answer,
            key_points=list(answer.key_points),
            source=answer.source,
            status="ready",
        )

    def _revert(question: Question) -> None:
        store.patch_question(question.id, status="pending")

    return BatchSchedulerDeps(
        generate_answer=_generate,
        mark_processing=_mark_processing,
        commit_answer=_commit,
        revert_pending=_revert,
        batch_size=deps.batch_size,
        max_parallel=deps.max_parallel,
    )


@_reports_failure
def process_assignment(assignment_id: str, *, deps: PipelineDeps) -> Dict[str, Any]:
    if not _register_run(assignment_id):
        return _in_progress()
    try:
        return _run_processing(assignment_id, deps)
    finally:
        _release_run(assignment_id)


def _run_processing(assignment_id: str, deps: PipelineDeps) -> Dict[str, Any]:
    store = deps.store
    assignment = store.get_assignment(assignment_id)
    if assignment is None:
        return {"success": False, "error": "Assignment not found"}
    if not can_start_processing(assignment.processing_status):
        return _in_progress()
    if assignment.processing_status == "error" and assignment.processing_error == config.PROCESSING_STOPPED_MESSAGE:
        return {"success": False, "error": config.PROCESSING_STOPPED_MESSAGE}

    try:
        started = store.compare_and_set_assignment_status(
            assignment_id,
            allowed_from=assignment_sources_for("extracting"),
            status="extracting",
        )
    except Exception as exc:
        _fail(store, assignment_id, _error_text(exc))
        raise
    if started is None:
        return _in_progress()

    log_extra = {"assignment_id": assignment_id}
    cancellation = CancellationContext(
        assignment_status_reader(store, assignment_id),
        default_reason=config.PROCESSING_STOPPED_MESSAGE,
    )
    extracted_count: Optional[int] = None
    try:
        attachments = build_source_attachments(started, deps.fetch_file)
        extracted = extract_questions(attachments, started.additional_info, deps=deps.extraction)
        records = build_question_records(assignment_id, extracted)
        store.replace_questions(assignment_id, records)
        extracted_count = len(records)
        _log.info("extracted %d questions", extracted_count, extra=log_extra)
        diag_log("pipeline.extract.done", {"assignment_id": assignment_id, "questions": extracted_count})

        reason = cancellation.check()
        if reason is not None:
            return {"success": False, "questions_extracted": extracted_count, "error": reason}

        generating = store.compare_and_set_assignment_status(
            assignment_id,
            allowed_from={"extracting"},
            status="generating_answers",
        )
        if generating is None:
            reason = _stop_reason(cancellation) or config.PROCESSING_STOPPED_MESSAGE
            return {"success": False, "questions_extracted": extracted_count, "error": reason}

        context = build_answer_context(generating, deps.fetch_file)
        pending = store.list_pending_questions(assignment_id)
        result = run_batches(
            pending,
            deps=_scheduler_deps(store, context, deps),
            cancellation=cancellation,
        )
        diag_log(
            "pipeline.generate.done",
            {
                "assignment_id": assignment_id,
                "processed": result.processed,
                "errored": result.errored,
                "batches": result.batches_launched,
                "aborted": result.aborted,
            },
        )

        if result.aborted is not None:
            _fail(store, assignment_id, result.aborted)
            return {
                "success": False,
                "questions_extracted": extracted_count,
                "answers_generated": result.processed,
                "error": result.aborted,
            }

        advisory = None
        if result.errored:
            advisory = f"{result.errored} of {len(pending)} answers failed to generate"
            _log.warning("%s", advisory, extra=log_extra)
        finished = store.compare_and_set_assignment_status(
            assignment_id,
            allowed_from={"generating_answers"},
            status="ready",
            error=advisory,
        )
        if finished is None:
            reason = _stop_reason(cancellation) or config.PROCESSING_STOPPED_MESSAGE
            return {
                "success": False,
                "questions_extracted": extracted_count,
                "answers_generated": result.processed,
                "error": reason,
            }
        return {
            "success": True,
            "questions_extracted": extracted_count,
            "answers_generated": result.processed,
        }
    except Exception as exc:
        message = _error_text(exc)
        if extracted_count is None:
            message = f"Extraction failed: {message}"
        _log.error("processing failed: %s", message, extra=log_extra)
        diag_log("pipeline.failed", {"assignment_id": assignment_id, "error": message})
        stopped = _stop_reason(cancellation)
        if stopped is not None:
            message = stopped
        else:
            _fail(store, assignment_id, message)
        out: Dict[str, Any] = {"success": False, "error": message}
        if extracted_count is not None:
            out["questions_extracted"] = extracted_count
        return out


@_reports_failure
def regenerate_answer(question_id: str, feedback: Optional[str] = None, *, deps: PipelineDeps) -> Dict[str, Any]:
    store = deps.store
    question = store.get_question(question_id)
    if question is None:
        return {"success": False, "error": "Question not found"}
    assignment = store.get_assignment(question.assignment_id)
    if assignment is None:
        return {"success": False, "error": "Assignment not found"}

    log_extra = {"assignment_id": assignment.id, "question_id": question_id}
    committed = False
    try:
        store.patch_question(question_id, status="processing")
        context = build_answer_context(assignment, deps.fetch_file)
        answer = generate_answer(question, context, deps=deps.answers, feedback=feedback)
        store.patch_question(
            question_id,
            answer=answer.answer,
            key_points=list(answer.key_points),
            source=answer.source,
            status="ready",
        )
        committed = True
    except Exception as exc:
        _log.error("regeneration failed for Q%s: %s", question.question_number, exc, extra=log_extra)
        return {"success": False, "error": _error_text(exc)}
    finally:
        if not committed:
            _restore_answer(store, question)

    diag_log("pipeline.regenerate.done", {"assignment_id": assignment.id, "question_id": question_id})
    return {"success": True}


def _restore_answer(store: Any, question: Question) -> None:
    try:
        store.patch_question(
            question.id,
            answer=question.answer,
            key_points=list(question.key_points),
            source=question.source,
            status="ready",
        )
    except Exception:
        _log.error("failed to restore previous answer for question %s", question.id, exc_info=True)


@_reports_failure
def stop_processing(assignment_id: str, *, store: Any) -> Dict[str, Any]:
    assignment = store.get_assignment(assignment_id)
    if assignment is None:
        return {"success": False, "error": "Assignment not found"}
    store.set_assignment_status(assignment_id, "error", config.PROCESSING_STOPPED_MESSAGE)
    _log.info("processing stopped", extra={"assignment_id": assignment_id})
    return {"success": True}


@_reports_failure
def resume_processing(assignment_id: str, *, store: Any) -> Dict[str, Any]:
    assignment = store.get_assignment(assignment_id)
    if assignment is None:
        return {"success": False, "error": "Assignment not found"}
    try:
        transition_assignment_status(assignment.processing_status, "pending")
    except InvalidTransitionError:
        return {"success": False, "error": f"Cannot resume from status {assignment.processing_status}"}
    if store.compare_and_set_assignment_status(assignment_id, allowed_from={"error"}, status="pending") is None:
        return {"success": False, "error": "Assignment is no longer stopped"}
    return {"success": True}


def _move_question(question_id: str, target: str, *, store: Any) -> Dict[str, Any]:
    question = store.get_question(question_id)
    if question is None:
        return {"success": False, "error": "Question not found"}
    try:
        transition_question_status(question.status, target)
    except InvalidTransitionError as exc:
        return {"success": False, "error": str(exc)}
    store.patch_question(question_id, status=target)
    return {"success": True}


@_reports_failure
def approve_question(question_id: str, *, store: Any) -> Dict[str, Any]:
    return _move_question(question_id, "approved", store=store)


@_reports_failure
def unapprove_question(question_id: str, *, store: Any) -> Dict[str, Any]:
    return _move_question(question_id, "ready", store=store)
