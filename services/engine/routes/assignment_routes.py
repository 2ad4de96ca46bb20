from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException
from starlette.concurrency import run_in_threadpool

from ..api_models import RegenerateRequest
from ..pipeline import (
    approve_question,
    process_assignment,
    regenerate_answer,
    resume_processing,
    stop_processing,
    unapprove_question,
)


def _require_assignment(core: Any, assignment_id: str) -> None:
    if core.store.get_assignment(assignment_id) is None:
        raise HTTPException(status_code=404, detail="assignment not found")


def _require_question(core: Any, question_id: str) -> None:
    if core.store.get_question(question_id) is None:
        raise HTTPException(status_code=404, detail="question not found")


def build_router(core: Any) -> APIRouter:
    router = APIRouter()

    @router.post("/assignments/{assignment_id}/process")
    async def process(assignment_id: str) -> Dict[str, Any]:
        _require_assignment(core, assignment_id)
        return await run_in_threadpool(process_assignment, assignment_id, deps=core.pipeline)

    @router.post("/assignments/{assignment_id}/stop")
    async def stop(assignment_id: str) -> Dict[str, Any]:
        _require_assignment(core, assignment_id)
        return stop_processing(assignment_id, store=core.store)

    @router.post("/assignments/{assignment_id}/resume")
    async def resume(assignment_id: str) -> Dict[str, Any]:
        _require_assignment(core, assignment_id)
        result = resume_processing(assignment_id, store=core.store)
        if not result.get("success"):
            raise HTTPException(status_code=409, detail=result.get("error"))
        return result

    @router.get("/assignments/{assignment_id}/status")
    async def status(assignment_id: str) -> Dict[str, Any]:
        assignment = core.store.get_assignment(assignment_id)
        if assignment is None:
            raise HTTPException(status_code=404, detail="assignment not found")
        questions = core.store.list_questions(assignment_id)
        counts: Dict[str, int] = {}
        for question in questions:
            counts[question.status] = counts.get(question.status, 0) + 1
        return {
            "assignment_id": assignment.id,
            "processing_status": assignment.processing_status,
            "processing_error": assignment.processing_error,
            "questions": counts,
        }

    @router.post("/questions/{question_id}/regenerate")
    async def regenerate(question_id: str, req: Optional[RegenerateRequest] = None) -> Dict[str, Any]:
        _require_question(core, question_id)
        feedback = req.feedback if req is not None else None
        return await run_in_threadpool(regenerate_answer, question_id, feedback, deps=core.pipeline)

    @router.post("/questions/{question_id}/approve")
    async def approve(question_id: str) -> Dict[str, Any]:
        _require_question(core, question_id)
        result = approve_question(question_id, store=core.store)
        if not result.get("success"):
            raise HTTPException(status_code=409, detail=result.get("error"))
        return result

    @router.post("/questions/{question_id}/unapprove")
    async def unapprove(question_id: str) -> Dict[str, Any]:
        _require_question(core, question_id)
        result = unapprove_question(question_id, store=core.store)
        if not result.get("success"):
            raise HTTPException(status_code=409, detail=result.get("error"))
        return result

    return router
