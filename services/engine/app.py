from __future__ import annotations

from typing import Optional

from fastapi import FastAPI

from .container import EngineCore, build_engine_core
from .logging_config import configure_logging
from .routes import assignment_routes, chat_routes, health_routes


def create_app(core: Optional[EngineCore] = None) -> FastAPI:
    core = core or build_engine_core()
    app = FastAPI(title="Classroom LLM Engine", version="0.1.0")
    app.state.core = core
    app.include_router(health_routes.build_router(core))
    app.include_router(assignment_routes.build_router(core))
    app.include_router(chat_routes.build_router(core))
    return app


def main() -> FastAPI:
    configure_logging()
    return create_app()


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(main(), host=os.getenv("HOST", "127.0.0.1"), port=int(os.getenv("PORT", "8000")))
