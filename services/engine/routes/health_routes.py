from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse

_log = logging.getLogger(__name__)
_DISK_MIN_BYTES = 100 * 1024 * 1024


def _check_store(core: Any) -> dict:
    try:
        core.store.get_assignment("__health__")
        return {"status": "ok", "backend": type(core.store).__name__}
    except Exception as exc:
        _log.warning("health: store check failed", exc_info=True)
        return {"status": "error", "detail": str(exc)}


def _check_disk(core: Any) -> dict:
    try:
        check_path = Path(str(core.data_dir or "."))
        # statvfs needs an existing path
        while not check_path.exists() and check_path.parent != check_path:
            check_path = check_path.parent
        usage = shutil.disk_usage(str(check_path))
        return {
            "status": "ok" if usage.free >= _DISK_MIN_BYTES else "degraded",
            "free_mb": int(usage.free / (1024 * 1024)),
        }
    except Exception as exc:
        _log.warning("health: disk check failed", exc_info=True)
        return {"status": "error", "detail": str(exc)}


def build_router(core: Any) -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    async def health():
        checks = {"store": _check_store(core), "disk": _check_disk(core)}
        degraded = any(c.get("status") != "ok" for c in checks.values())
        payload = {"status": "degraded" if degraded else "ok", "checks": checks}
        return JSONResponse(content=payload, status_code=503 if degraded else 200)

    return router
