from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
import json
import logging
import os
import random
import threading
import time
from functools import lru_cache

import boto3
import requests
import yaml

_log = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent
DEFAULT_REGISTRY_PATH = PROJECT_ROOT / "config" / "model_registry.yaml"

MODEL_IDS = {
    "AZURE_GPT_4_1": "azure/azure-gpt-4.1",
    "OPENAI_GPT_4_1": "openai/gpt-4.1",
    "GOOGLE_GEMINI_3_FLASH": "google/gemini-3-flash-preview",
    "BEDROCK_CLAUDE_SONNET_4_5": "bedrock/claude-sonnet-4-5",
}
FALLBACK_MODEL_ID = MODEL_IDS["AZURE_GPT_4_1"]


class ProviderConfigError(RuntimeError):
    """Raised on first use of a provider whose credentials or endpoint are missing."""


class GenerationCancelled(RuntimeError):
    pass


@dataclass
class UnifiedLLMRequest:
    messages: Optional[List[Dict[str, Any]]] = None
    input_text: Optional[str] = None
    temperature: Optional[float] = 0.7
    max_tokens: Optional[int] = 2048
    stream: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def chat_messages(self) -> List[Dict[str, Any]]:
        if self.messages:
            return self.messages
        return [{"role": "user", "content": self.input_text or ""}]


@dataclass
class UnifiedLLMResponse:
    text: str
    usage: Dict[str, Any] = field(default_factory=dict)
    finish_reason: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Target:
    model_id: str
    provider: str
    model: str
    timeout_sec: Tuple[float, float]
    retry: int
    settings: Dict[str, Any] = field(default_factory=dict)


def _load_registry(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Model registry not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


@lru_cache(maxsize=8)
def _load_registry_cached(path_str: str) -> Dict[str, Any]:
    # Cached for performance; changes require process restart.
    return _load_registry(Path(path_str))


def _split_system_messages(messages: List[Dict[str, Any]]) -> Tuple[str, List[Dict[str, Any]]]:
    instructions: List[str] = []
    items: List[Dict[str, Any]] = []
    for msg in messages:
        role = (msg.get("role") or "user").strip()
        content = msg.get("content", "")
        if role in {"system", "developer"}:
            if content:
                instructions.append(str(content))
            continue
        items.append({"role": role, "content": str(content)})
    return "\n\n".join(instructions).strip(), items


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
    if not text:
        return None
    if text in {"0", "none", "inf", "infinite", "null"}:
        return None
    try:
        return float(text)
    except Exception:
        return None


def _build_timeout_pair(
    *,
    default_timeout_sec: Any,
    timeout_value: Any = None,
    connect_value: Any = None,
    read_value: Any = None,
) -> Tuple[float, float]:
    default_read = _clamp_timeout_seconds(default_timeout_sec, default=120.0)
    timeout_candidate = _parse_timeout_candidate(timeout_value)
    base_read = _clamp_timeout_seconds(timeout_candidate, default=default_read)
    read_candidate = _parse_timeout_candidate(read_value)
    read_timeout = _clamp_timeout_seconds(read_candidate, default=base_read)
    connect_default = min(10.0, read_timeout)
    connect_candidate = _parse_timeout_candidate(connect_value)
    connect_timeout = _clamp_timeout_seconds(connect_candidate, default=connect_default, max_value=120.0)
    connect_timeout = min(connect_timeout, read_timeout)
    return (connect_timeout, read_timeout)


def _iter_sse_data(resp: requests.Response) -> Iterator[Dict[str, Any]]:
    for line in resp.iter_lines(decode_unicode=True):
        if not line:
            continue
        text = str(line).strip()
        if not text.startswith("data:"):
            continue
        data = text[5:].strip()
        if data == "[DONE]":
            return
        try:
            item = json.loads(data)
        except Exception:
            _log.debug("skipping undecodable stream line", exc_info=True)
            continue
        if isinstance(item, dict):
            yield item


def _env_first(names: List[str]) -> str:
    for name in names or []:
        val = os.getenv(str(name))
        if val:
            return val
    return ""


class OpenAIChatAdapter:
    """OpenAI-compatible ``/chat/completions`` over plain HTTP."""

    def __init__(self, target: Target, session: requests.Session):
        self.target = target
        self.session = session

    def _url(self) -> str:
        base_url = os.getenv(self.target.settings.get("base_url_env", "")) or self.target.settings.get("base_url") or ""
        if not base_url:
            raise ProviderConfigError(f"Base URL not configured for model={self.target.model_id}")
        return f"{base_url.rstrip('/')}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        api_key = _env_first(self.target.settings.get("api_key_envs") or [])
        if not api_key:
            raise ProviderConfigError(
                f"API key missing for model={self.target.model_id}. Set {self.target.settings.get('api_key_envs')}"
            )
        return {"Content-Type": "application/json", "Authorization": f"Bearer {api_key}"}

    def _params(self) -> Dict[str, str]:
        return {}

    def _payload(self, req: UnifiedLLMRequest, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.target.model,
            "messages": req.chat_messages(),
            "temperature": req.temperature,
            "stream": stream,
        }
        if req.max_tokens is not None:
            payload["max_tokens"] = req.max_tokens
        return payload

    def generate(self, req: UnifiedLLMRequest) -> UnifiedLLMResponse:
        resp = self.session.post(
            self._url(),
            headers=self._headers(),
            params=self._params(),
            json=self._payload(req, stream=False),
            timeout=self.target.timeout_sec,
        )
        resp.raise_for_status()
        data = resp.json()
        choice = (data.get("choices") or [{}])[0]
        text = (choice.get("message") or {}).get("content") or ""
        return UnifiedLLMResponse(
            text=text,
            usage=data.get("usage", {}),
            finish_reason=choice.get("finish_reason"),
            raw=data,
        )

    def generate_stream(self, req: UnifiedLLMRequest) -> Iterator[str]:
        resp = self.session.post(
            self._url(),
            headers=self._headers(),
            params=self._params(),
            json=self._payload(req, stream=True),
            timeout=self.target.timeout_sec,
            stream=True,
        )
        try:
            resp.raise_for_status()
            for item in _iter_sse_data(resp):
                choice = (item.get("choices") or [{}])[0]
                content = (choice.get("delta") or {}).get("content")
                if content:
                    yield content
        finally:
            resp.close()


class AzureOpenAIChatAdapter(OpenAIChatAdapter):
    """Deployment-based Azure OpenAI chat completions."""

    def _url(self) -> str:
        endpoint = os.getenv(self.target.settings.get("endpoint_env", "")) or ""
        if not endpoint:
            resource = os.getenv(self.target.settings.get("resource_name_env", "")) or ""
            if resource:
                endpoint = f"https://{resource}.openai.azure.com"
        if not endpoint:
            raise ProviderConfigError(f"Azure endpoint not configured for model={self.target.model_id}")
        return f"{endpoint.rstrip('/')}/openai/deployments/{self.target.model}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        api_key = _env_first(self.target.settings.get("api_key_envs") or [])
        if not api_key:
            raise ProviderConfigError(f"Azure API key missing for model={self.target.model_id}")
        return {"Content-Type": "application/json", "api-key": api_key}

    def _params(self) -> Dict[str, str]:
        version = os.getenv(self.target.settings.get("api_version_env", "")) or self.target.settings.get("api_version") or ""
        return {"api-version": version} if version else {}


class GeminiNativeAdapter:
    def __init__(self, target: Target, session: requests.Session):
        self.target = target
        self.session = session

    def _headers(self) -> Dict[str, str]:
        api_key = _env_first(self.target.settings.get("api_key_envs") or [])
        if not api_key:
            raise ProviderConfigError(f"Google API key missing for model={self.target.model_id}")
        return {"Content-Type": "application/json", "x-goog-api-key": api_key}

    def _url(self, action: str) -> str:
        base_url = self.target.settings.get("base_url") or "https://generativelanguage.googleapis.com/v1beta"
        return f"{base_url.rstrip('/')}/models/{self.target.model}:{action}"

    def _payload(self, req: UnifiedLLMRequest) -> Dict[str, Any]:
        instructions, items = _split_system_messages(req.chat_messages())
        payload: Dict[str, Any] = {
            "contents": [
                {"role": "model" if item["role"] == "assistant" else "user", "parts": [{"text": item["content"]}]}
                for item in items
            ],
            "generationConfig": {"temperature": req.temperature},
        }
        if req.max_tokens is not None:
            payload["generationConfig"]["maxOutputTokens"] = req.max_tokens
        if instructions:
            payload["systemInstruction"] = {"parts": [{"text": instructions}]}
        return payload

    @staticmethod
    def _candidate_text(data: Dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(str(part.get("text") or "") for part in parts)

    def generate(self, req: UnifiedLLMRequest) -> UnifiedLLMResponse:
        resp = self.session.post(
            self._url("generateContent"),
            headers=self._headers(),
            json=self._payload(req),
            timeout=self.target.timeout_sec,
        )
        resp.raise_for_status()
        data = resp.json()
        return UnifiedLLMResponse(text=self._candidate_text(data), usage=data.get("usageMetadata", {}), raw=data)

    def generate_stream(self, req: UnifiedLLMRequest) -> Iterator[str]:
        resp = self.session.post(
            self._url("streamGenerateContent"),
            headers=self._headers(),
            params={"alt": "sse"},
            json=self._payload(req),
            timeout=self.target.timeout_sec,
            stream=True,
        )
        try:
            resp.raise_for_status()
            for item in _iter_sse_data(resp):
                text = self._candidate_text(item)
                if text:
                    yield text
        finally:
            resp.close()


class BedrockConverseAdapter:
    """Amazon Bedrock Converse API through boto3."""

    def __init__(self, target: Target, session: requests.Session):
        self.target = target
        self._client: Any = None
        self._client_lock = threading.Lock()

    def _bedrock(self) -> Any:
        with self._client_lock:
            if self._client is None:
                region = os.getenv(self.target.settings.get("region_env", "")) or self.target.settings.get("region")
                if not region:
                    raise ProviderConfigError(f"AWS region not configured for model={self.target.model_id}")
                kwargs: Dict[str, Any] = {"region_name": region}
                access_key = os.getenv("AWS_ACCESS_KEY_ID")
                secret_key = os.getenv("AWS_SECRET_ACCESS_KEY")
                if access_key and secret_key:
                    kwargs["aws_access_key_id"] = access_key
                    kwargs["aws_secret_access_key"] = secret_key
                self._client = boto3.client("bedrock-runtime", **kwargs)
            return self._client

    def _model(self) -> str:
        return os.getenv(self.target.settings.get("model_env", "")) or self.target.model

    def _request(self, req: UnifiedLLMRequest) -> Dict[str, Any]:
        instructions, items = _split_system_messages(req.chat_messages())
        inference: Dict[str, Any] = {}
        if req.temperature is not None:
            inference["temperature"] = req.temperature
        if req.max_tokens is not None:
            inference["maxTokens"] = req.max_tokens
        kwargs: Dict[str, Any] = {
            "modelId": self._model(),
            "messages": [{"role": item["role"], "content": [{"text": item["content"]}]} for item in items],
            "inferenceConfig": inference,
        }
        if instructions:
            kwargs["system"] = [{"text": instructions}]
        return kwargs

    def generate(self, req: UnifiedLLMRequest) -> UnifiedLLMResponse:
        data = self._bedrock().converse(**self._request(req))
        blocks = ((data.get("output") or {}).get("message") or {}).get("content") or []
        text = "".join(str(block.get("text") or "") for block in blocks)
        return UnifiedLLMResponse(text=text, usage=data.get("usage", {}), finish_reason=data.get("stopReason"))

    def generate_stream(self, req: UnifiedLLMRequest) -> Iterator[str]:
        data = self._bedrock().converse_stream(**self._request(req))
        stream = data.get("stream") or []
        try:
            for event in stream:
                delta = (event.get("contentBlockDelta") or {}).get("delta") or {}
                text = delta.get("text")
                if text:
                    yield text
        finally:
            close = getattr(stream, "close", None)
            if callable(close):
                close()


_ADAPTERS: Dict[str, Callable[[Target, requests.Session], Any]] = {
    "azure": AzureOpenAIChatAdapter,
    "openai": OpenAIChatAdapter,
    "google": GeminiNativeAdapter,
    "bedrock": BedrockConverseAdapter,
}


def _is_retryable(exc: Exception) -> bool:
    # Conservative retry policy: only retry obvious transient failures.
    if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
        return True
    if isinstance(exc, requests.HTTPError):
        resp = getattr(exc, "response", None)
        code = getattr(resp, "status_code", None)
        if code in {408, 409, 425, 429}:
            return True
        if isinstance(code, int) and code >= 500:
            return True
    msg = str(exc).lower()
    return any(token in msg for token in ["timeout", "timed out", "temporarily", "throttl", "429", "503"])


def _backoff(attempt: int) -> None:
    # bounded exponential backoff with jitter
    base = 0.25 * (2**attempt)
    time.sleep(min(4.0, base + random.random() * 0.25))


class ModelHandle:
    """A lazily-bound client for one model identifier.

    Constructing a handle performs no I/O. Credentials and endpoints are read
    on the first ``generate``/``generate_stream`` call, so a missing key only
    fails the request that needs it.
    """

    def __init__(self, target: Target, session: requests.Session):
        self.target = target
        self.model_id = target.model_id
        self.provider = target.provider
        self._adapter = _ADAPTERS[target.provider](target, session)

    def generate(self, req: UnifiedLLMRequest) -> UnifiedLLMResponse:
        attempts = max(1, int(self.target.retry or 1))
        for attempt in range(attempts):
            try:
                return self._adapter.generate(req)
            except ProviderConfigError:
                raise
            except Exception as exc:
                if attempt < attempts - 1 and _is_retryable(exc):
                    _log.info("retrying model=%s after %s", self.model_id, type(exc).__name__)
                    _backoff(attempt)
                    continue
                raise
        raise RuntimeError("unreachable")

    def generate_stream(
        self,
        req: UnifiedLLMRequest,
        *,
        should_stop: Optional[Callable[[], bool]] = None,
        deadline: Optional[float] = None,
    ) -> Iterator[str]:
        """Yield text deltas in provider order.

        ``should_stop`` is polled between chunks; when it returns true the
        provider response is closed and ``GenerationCancelled`` is raised.
        ``deadline`` is a ``time.monotonic()`` value bounding the whole stream.
        """
        stream = self._adapter.generate_stream(req)
        try:
            for chunk in stream:
                if should_stop is not None and should_stop():
                    raise GenerationCancelled(f"stream cancelled model={self.model_id}")
                if deadline is not None and time.monotonic() > deadline:
                    raise TimeoutError(f"stream deadline exceeded model={self.model_id}")
                yield chunk
        finally:
            stream.close()


class ModelRegistry:
    def __init__(
        self,
        registry_path: Optional[Path] = None,
        *,
        default_model_id: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        path = Path(registry_path or os.getenv("MODEL_REGISTRY_PATH") or DEFAULT_REGISTRY_PATH)
        self.registry = _load_registry_cached(str(path))
        self._session = session or requests.Session()
        self._handles: Dict[str, ModelHandle] = {}
        self._lock = threading.Lock()
        configured = default_model_id if default_model_id is not None else os.getenv("LLM_DEFAULT_MODEL_ID", "")
        self.default_model_id = configured if configured in self.known_model_ids() else FALLBACK_MODEL_ID

    def known_model_ids(self) -> List[str]:
        models = self.registry.get("models") or {}
        providers = self.registry.get("providers") or {}
        out: List[str] = []
        for model_id, cfg in models.items():
            provider = str((cfg or {}).get("provider") or "")
            if provider in _ADAPTERS and provider in providers:
                out.append(str(model_id))
        return out

    def _target_for(self, model_id: str) -> Target:
        defaults = self.registry.get("defaults") or {}
        model_cfg = (self.registry.get("models") or {}).get(model_id) or {}
        provider = str(model_cfg.get("provider") or "")
        prov_cfg = (self.registry.get("providers") or {}).get(provider) or {}
        model = os.getenv(model_cfg.get("model_env", "")) or model_cfg.get("model") or ""
        timeout_sec = _build_timeout_pair(
            default_timeout_sec=defaults.get("timeout_sec", 120),
            timeout_value=os.getenv("LLM_TIMEOUT_SEC"),
            connect_value=os.getenv("LLM_CONNECT_TIMEOUT_SEC"),
            read_value=os.getenv("LLM_READ_TIMEOUT_SEC"),
        )
        retry = int(os.getenv("LLM_RETRY", "")) if os.getenv("LLM_RETRY") else int(defaults.get("retry", 1))
        settings = dict(prov_cfg)
        settings.update({k: v for k, v in model_cfg.items() if k not in {"provider", "model"}})
        return Target(
            model_id=model_id,
            provider=provider,
            model=model,
            timeout_sec=timeout_sec,
            retry=max(1, retry),
            settings=settings,
        )

    def resolve(self, model_id: Optional[str] = None) -> ModelHandle:
        selected = model_id or self.default_model_id
        if selected not in self.known_model_ids():
            raise KeyError(f"unknown model id: {selected}")
        with self._lock:
            handle = self._handles.get(selected)
            if handle is None:
                handle = ModelHandle(self._target_for(selected), self._session)
                self._handles[selected] = handle
            return handle


__all__ = [
    "MODEL_IDS",
    "FALLBACK_MODEL_ID",
    "GenerationCancelled",
    "ModelHandle",
    "ModelRegistry",
    "ProviderConfigError",
    "UnifiedLLMRequest",
    "UnifiedLLMResponse",
    "_build_timeout_pair",
    "_split_system_messages",
]
