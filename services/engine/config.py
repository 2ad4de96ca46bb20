from __future__ import annotations

from pathlib import Path

from . import settings as _settings

APP_ROOT = Path(__file__).resolve().parents[2]
DATA_DIR = Path(_settings.data_dir() or (APP_ROOT / "data"))
STORE_BACKEND = _settings.store_backend()
STORE_DIR = DATA_DIR / "engine_store"

ANSWER_BATCH_SIZE = _settings.answer_batch_size()
ANSWER_MAX_PARALLEL_BATCHES = _settings.answer_max_parallel_batches()
LLM_INVOKE_MAX_ATTEMPTS = _settings.llm_invoke_max_attempts()
LLM_INVOKE_RETRY_DELAY_MS = _settings.llm_invoke_retry_delay_ms()

CHAT_RATE_LIMIT_PER_MINUTE = _settings.chat_rate_limit_per_minute()
CHAT_RATE_LIMIT_PER_DAY = _settings.chat_rate_limit_per_day()
CHAT_HISTORY_MAX_MESSAGES = _settings.chat_history_max_messages()
CHAT_HISTORY_MAX_CHARS = _settings.chat_history_max_chars()

FILE_FETCH_TIMEOUT_SEC = _settings.file_fetch_timeout_sec()
DEFAULT_FILE_CONTENT_TYPE = "application/pdf"

PROCESSING_STOPPED_MESSAGE = "Processing stopped by teacher"
PROCESSING_IN_PROGRESS_MESSAGE = "Processing already in progress"
