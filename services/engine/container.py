from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from llm_gateway import InferenceRequest, InferenceResponse, LLMGateway

from . import config
from .answer_generation_service import AnswerGenerationDeps
from .context_builder import FetchFile, fetch_file_bytes
from .pipeline import PipelineDeps
from .question_extraction_service import ExtractionDeps
from .rate_limit import RateLimitDeps, build_rate_limit_deps
from .resilient_invoker import default_invoker_deps
from .store import InMemoryStore, JsonFileStore
from .tutor_service import TutorDeps

_log = logging.getLogger(__name__)

Generate = Callable[[InferenceRequest], InferenceResponse]


@dataclass(frozen=True)
class EngineCore:
    store: Any
    pipeline: PipelineDeps
    tutor: TutorDeps
    rate_limit: RateLimitDeps
    data_dir: Path


def _now_ms() -> int:
    return int(time.time() * 1000)


def build_store(backend: Optional[str] = None) -> InMemoryStore:
    backend = (backend or config.STORE_BACKEND).strip().lower()
    if backend == "file":
        path = config.STORE_DIR / "store.json"
        _log.info("using json file store at %s", path)
        return JsonFileStore(path)
    return InMemoryStore()


def build_engine_core(
    *,
    store: Any = None,
    generate: Optional[Generate] = None,
    fetch_file: Optional[FetchFile] = None,
    now_ms: Optional[Callable[[], int]] = None,
    record_evaluation: Optional[Callable[[Dict[str, Any]], None]] = None,
) -> EngineCore:
    store = store if store is not None else build_store()
    generate = generate or LLMGateway().generate
    fetch_file = fetch_file or fetch_file_bytes
    clock = now_ms or _now_ms
    invoker = default_invoker_deps()
    rate_limit = build_rate_limit_deps(store, now_ms=clock)

    pipeline = PipelineDeps(
        store=store,
        extraction=ExtractionDeps(generate=generate, invoker=invoker),
        answers=AnswerGenerationDeps(generate=generate, invoker=invoker),
        fetch_file=fetch_file,
        batch_size=config.ANSWER_BATCH_SIZE,
        max_parallel=config.ANSWER_MAX_PARALLEL_BATCHES,
    )
    tutor = TutorDeps(
        store=store,
        generate=generate,
        invoker=invoker,
        rate_limit=rate_limit,
        now_ms=clock,
        record_evaluation=record_evaluation,
        max_history_messages=config.CHAT_HISTORY_MAX_MESSAGES,
        max_history_chars=config.CHAT_HISTORY_MAX_CHARS,
    )
    return EngineCore(
        store=store,
        pipeline=pipeline,
        tutor=tutor,
        rate_limit=rate_limit,
        data_dir=config.DATA_DIR,
    )
