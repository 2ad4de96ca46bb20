from __future__ import annotations

import os
import logging
_log = logging.getLogger(__name__)



def truthy(value: str) -> bool:
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


def env_str(name: str, default: str = "") -> str:
    return str(os.getenv(name, default) or default)


def env_int(name: str, default: int) -> int:
    try:
        return int(env_str(name, str(default)) or default)
    except Exception:
        _log.debug("numeric conversion failed", exc_info=True)
        return int(default)


def env_float(name: str, default: float) -> float:
    try:
        return float(env_str(name, str(default)) or default)
    except Exception:
        _log.debug("numeric conversion failed", exc_info=True)
        return float(default)


def env_bool(name: str, default: str = "") -> bool:
    return truthy(env_str(name, default))


def data_dir() -> str:
    return env_str("DATA_DIR", "")


def store_backend() -> str:
    backend = env_str("ENGINE_STORE_BACKEND", "memory").strip().lower()
    return backend if backend in {"memory", "file"} else "memory"


def diag_log_enabled() -> bool:
    return env_bool("DIAG_LOG", "")


def answer_batch_size() -> int:
    return max(1, env_int("ANSWER_BATCH_SIZE", 4))


def answer_max_parallel_batches() -> int:
    return max(1, env_int("ANSWER_MAX_PARALLEL_BATCHES", 2))


def llm_invoke_max_attempts() -> int:
    return max(1, env_int("LLM_INVOKE_MAX_ATTEMPTS", 3))


def llm_invoke_retry_delay_ms() -> int:
    return max(0, env_int("LLM_INVOKE_RETRY_DELAY_MS", 1000))


def chat_rate_limit_per_minute() -> int:
    return max(1, env_int("CHAT_RATE_LIMIT_PER_MINUTE", 100))


def chat_rate_limit_per_day() -> int:
    return max(1, env_int("CHAT_RATE_LIMIT_PER_DAY", 1000))


def chat_history_max_messages() -> int:
    return max(1, env_int("CHAT_HISTORY_MAX_MESSAGES", 40))


def chat_history_max_chars() -> int:
    return max(200, env_int("CHAT_HISTORY_MAX_CHARS", 4000))


def file_fetch_timeout_sec() -> float:
    value = env_float("FILE_FETCH_TIMEOUT_SEC", 60.0)
    return value if value > 0 else 60.0
