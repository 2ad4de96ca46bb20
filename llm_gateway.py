from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
import logging
import os
from functools import lru_cache

import requests
import yaml


PROJECT_ROOT = Path(__file__).resolve().parent
DEFAULT_REGISTRY_PATH = PROJECT_ROOT / "config" / "model_registry.yaml"
PURPOSES = ("extraction", "answer_generation", "tutor")

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Attachment:
    data: str  # base64
    mime_type: str


@dataclass
class InferenceRequest:
    prompt: str
    purpose: str = "answer_generation"
    attachments: List[Attachment] = field(default_factory=list)
    history: List[Dict[str, str]] = field(default_factory=list)
    system_instruction: Optional[str] = None
    response_schema: Optional[Dict[str, Any]] = None
    response_mime_type: Optional[str] = None
    use_search: bool = False
    function_declarations: Optional[List[Dict[str, Any]]] = None
    temperature: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class InferenceResponse:
    text: str
    grounding_urls: List[str] = field(default_factory=list)
    function_calls: List[Dict[str, Any]] = field(default_factory=list)
    usage: Dict[str, Any] = field(default_factory=dict)
    finish_reason: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Target:
    provider: str
    model: str
    base_url: str
    endpoint: str
    headers: Dict[str, str]
    timeout_sec: Tuple[float, float]

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.endpoint.format(model=self.model)}"


def _load_registry(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Model registry not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


@lru_cache(maxsize=8)
def _load_registry_cached(path_str: str) -> Dict[str, Any]:
    # Changes require a process restart.
    return _load_registry(Path(path_str))


def _clamp_timeout_seconds(value: Any, *, default: float, min_value: float = 1.0, max_value: float = 300.0) -> float:
    try:
        parsed = float(value)
    except Exception:
        parsed = float(default)
    if parsed <= 0:
        parsed = float(default)
    return min(max_value, max(min_value, parsed))


def _parse_timeout_candidate(value: Any) -> Optional[float]:
    if value is None:
        return None
    text = str(value).strip().lower()
    if not text or text in {"0", "none", "inf", "infinite", "null"}:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def _build_timeout_pair(
    *,
    default_timeout_sec: Any,
    timeout_value: Any = None,
    connect_value: Any = None,
    read_value: Any = None,
) -> Tuple[float, float]:
    base_read = _clamp_timeout_seconds(
        _parse_timeout_candidate(timeout_value),
        default=_clamp_timeout_seconds(default_timeout_sec, default=120.0),
    )
    read_timeout = _clamp_timeout_seconds(_parse_timeout_candidate(read_value), default=base_read)
    connect_timeout = _clamp_timeout_seconds(
        _parse_timeout_candidate(connect_value),
        default=min(10.0, read_timeout),
        max_value=120.0,
    )
    return (min(connect_timeout, read_timeout), read_timeout)


def _build_contents(req: InferenceRequest) -> List[Dict[str, Any]]:
    contents: List[Dict[str, Any]] = []
    for turn in req.history:
        text = str(turn.get("content") or "")
        if not text:
            continue
        role = "user" if turn.get("role") in {"user", "student"} else "model"
        contents.append({"role": role, "parts": [{"text": text}]})
    parts: List[Dict[str, Any]] = [{"text": req.prompt}]
    for attachment in req.attachments:
        parts.append({"inline_data": {"mime_type": attachment.mime_type, "data": attachment.data}})
    contents.append({"role": "user", "parts": parts})
    return contents


def _collect_grounding_urls(candidate: Dict[str, Any]) -> List[str]:
    urls: List[str] = []
    metadata = candidate.get("groundingMetadata") or {}
    for chunk in metadata.get("groundingChunks") or []:
        uri = (chunk.get("web") or {}).get("uri")
        if uri and uri not in urls:
            urls.append(uri)
    return urls


class GeminiAdapter:
    def __init__(self, target: Target, session: requests.Session):
        self.target = target
        self.session = session

    def build_payload(self, req: InferenceRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"contents": _build_contents(req)}
        if req.system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": req.system_instruction}]}

        generation_config: Dict[str, Any] = {}
        if req.temperature is not None:
            generation_config["temperature"] = req.temperature
        if req.response_mime_type:
            generation_config["responseMimeType"] = req.response_mime_type
            # The API only honours a schema alongside a JSON mime type.
            if req.response_schema and req.response_mime_type == "application/json":
                generation_config["responseSchema"] = req.response_schema
        if generation_config:
            payload["generationConfig"] = generation_config

        tools: List[Dict[str, Any]] = []
        if req.use_search:
            tools.append({"google_search": {}})
        if req.function_declarations:
            tools.append({"functionDeclarations": req.function_declarations})
        if tools:
            payload["tools"] = tools
        return payload

    def generate(self, req: InferenceRequest) -> InferenceResponse:
        resp = self.session.post(
            self.target.url,
            headers=self.target.headers,
            json=self.build_payload(req),
            timeout=self.target.timeout_sec,
        )
        resp.raise_for_status()
        data = resp.json()
        candidates = data.get("candidates") or []
        candidate = candidates[0] if candidates else {}
        texts: List[str] = []
        function_calls: List[Dict[str, Any]] = []
        for part in (candidate.get("content") or {}).get("parts") or []:
            if part.get("text"):
                texts.append(part["text"])
            call = part.get("functionCall")
            if call and call.get("name"):
                function_calls.append({"name": call["name"], "args": call.get("args") or {}})
        return InferenceResponse(
            text="".join(texts),
            grounding_urls=_collect_grounding_urls(candidate),
            function_calls=function_calls,
            usage=data.get("usageMetadata") or {},
            finish_reason=candidate.get("finishReason"),
            raw=data,
        )


class LLMGateway:
    def __init__(self, registry_path: Optional[Path] = None, session: Optional[requests.Session] = None):
        path = Path(os.getenv("MODEL_REGISTRY_PATH") or registry_path or DEFAULT_REGISTRY_PATH)
        self.registry = _load_registry_cached(str(path))
        self._session = session or requests.Session()

    def resolve_target(self, purpose: str, provider: Optional[str] = None) -> Target:
        if purpose not in PURPOSES:
            raise ValueError(f"Unknown inference purpose: {purpose}")
        defaults = self.registry.get("defaults", {})
        provider = provider or os.getenv("LLM_PROVIDER") or defaults.get("provider") or "gemini"
        prov_cfg = self.registry.get("providers", {}).get(provider)
        if not prov_cfg:
            raise ValueError(f"Provider not configured: {provider}")

        model_env = (prov_cfg.get("model_envs") or {}).get(purpose, "")
        model = os.getenv(model_env) if model_env else None
        model = model or (prov_cfg.get("models") or {}).get(purpose) or ""
        if not model:
            raise ValueError(f"Model not configured for provider={provider} purpose={purpose}.")

        base_url = os.getenv("LLM_BASE_URL") or os.getenv(prov_cfg.get("base_url_env", "")) or prov_cfg.get("base_url")
        if not base_url:
            raise ValueError(f"Base URL not configured for provider={provider}.")
        endpoint = prov_cfg.get("endpoint") or ""
        if not endpoint:
            raise ValueError(f"Endpoint not configured for provider={provider}.")

        api_key = os.getenv("LLM_API_KEY")
        if not api_key:
            for env_name in prov_cfg.get("api_key_envs", []):
                val = os.getenv(env_name)
                if val:
                    api_key = val
                    break
        if not api_key:
            raise ValueError(f"API key missing for provider={provider}. Set LLM_API_KEY or {prov_cfg.get('api_key_envs')}")

        timeout_sec = _build_timeout_pair(
            default_timeout_sec=defaults.get("timeout_sec", 120),
            timeout_value=os.getenv("LLM_TIMEOUT_SEC"),
            connect_value=os.getenv("LLM_CONNECT_TIMEOUT_SEC"),
            read_value=os.getenv("LLM_READ_TIMEOUT_SEC"),
        )
        return Target(
            provider=provider,
            model=model,
            base_url=str(base_url).rstrip("/"),
            endpoint=endpoint,
            headers=self._build_headers(prov_cfg, api_key),
            timeout_sec=timeout_sec,
        )

    def _build_headers(self, prov_cfg: Dict[str, Any], api_key: str) -> Dict[str, str]:
        auth = prov_cfg.get("auth", {})
        auth_type = auth.get("type", "x-goog-api-key")
        headers: Dict[str, str] = {"Content-Type": "application/json"}
        if auth_type == "bearer":
            header = auth.get("header", "Authorization")
            prefix = auth.get("prefix", "Bearer ")
            headers[header] = f"{prefix}{api_key}"
        else:
            headers["x-goog-api-key"] = api_key
        return headers

    def generate(self, req: InferenceRequest) -> InferenceResponse:
        """Make exactly one remote call; retries belong to the caller."""
        target = self.resolve_target(req.purpose)
        _log.debug("inference call purpose=%s model=%s attachments=%d", req.purpose, target.model, len(req.attachments))
        return GeminiAdapter(target, self._session).generate(req)


__all__ = [
    "Attachment",
    "InferenceRequest",
    "InferenceResponse",
    "LLMGateway",
    "GeminiAdapter",
    "Target",
]
