from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, HTTPException
from starlette.concurrency import run_in_threadpool

from ..api_models import TutorMessageRequest
from ..rate_limit import check_rate_limit
from ..store import NotFoundError
from ..tutor_service import TutorFile, send_message_to_tutor


def build_router(core: Any) -> APIRouter:
    router = APIRouter()

    @router.get("/sessions/{session_id}/rate-limit")
    async def rate_limit(session_id: str) -> Dict[str, Any]:
        result = check_rate_limit(session_id, deps=core.rate_limit)
        return {"limited": result is not None, "rate_limit": result.to_dict() if result else None}

    @router.post("/sessions/{session_id}/messages")
    async def send_message(session_id: str, req: TutorMessageRequest) -> Dict[str, Any]:
        files = [TutorFile(name=f.name, mime_type=f.type, data=f.data) for f in req.files or []]
        try:
            return await run_in_threadpool(
                send_message_to_tutor,
                session_id,
                req.question_id,
                req.message,
                deps=core.tutor,
                selected_option=req.selected_option,
                files=files,
                attempts=req.attempts,
            )
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc))

    return router
