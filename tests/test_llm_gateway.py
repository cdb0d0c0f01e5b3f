import threading
import time
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

import llm_gateway
from llm_gateway import (
    FALLBACK_MODEL_ID,
    GenerationCancelled,
    ModelRegistry,
    ProviderConfigError,
    UnifiedLLMRequest,
    _build_timeout_pair,
    _split_system_messages,
)

REGISTRY_PATH = Path(__file__).resolve().parents[1] / "config" / "model_registry.yaml"

_PROVIDER_ENVS = [
    "LLM_DEFAULT_MODEL_ID",
    "AZURE_OPENAI_API_KEY",
    "AZURE_OPENAI_ENDPOINT",
    "AZURE_OPENAI_RESOURCE_NAME",
    "AZURE_OPENAI_GPT41_DEPLOYMENT",
    "OPENAI_API_KEY",
    "OPENAI_BASE_URL",
    "GOOGLE_API_KEY",
    "GEMINI_API_KEY",
    "BEDROCK_MODEL",
    "LLM_TIMEOUT_SEC",
    "LLM_CONNECT_TIMEOUT_SEC",
    "LLM_READ_TIMEOUT_SEC",
    "LLM_RETRY",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _PROVIDER_ENVS:
        monkeypatch.delenv(name, raising=False)


class _FakeResponse:
    def __init__(self, status_code=200, payload=None, lines=None):
        self.status_code = status_code
        self._payload = payload or {}
        self._lines = lines or []
        self.closed = False

    def raise_for_status(self):
        if self.status_code >= 400:
            err = requests.HTTPError(f"HTTP {self.status_code}")
            err.response = self  # type: ignore[attr-defined]
            raise err

    def json(self):
        return self._payload

    def iter_lines(self, decode_unicode=True):
        yield from self._lines

    def close(self):
        self.closed = True


class _FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def test_registry_lists_the_four_model_ids() -> None:
    registry = ModelRegistry(REGISTRY_PATH)
    assert set(registry.known_model_ids()) == {
        "azure/azure-gpt-4.1",
        "openai/gpt-4.1",
        "google/gemini-3-flash-preview",
        "bedrock/claude-sonnet-4-5",
    }


def test_unknown_configured_default_falls_back(monkeypatch) -> None:
    monkeypatch.setenv("LLM_DEFAULT_MODEL_ID", "nonsense/model")
    assert ModelRegistry(REGISTRY_PATH).default_model_id == FALLBACK_MODEL_ID


def test_known_configured_default_is_used() -> None:
    registry = ModelRegistry(REGISTRY_PATH, default_model_id="openai/gpt-4.1")
    assert registry.default_model_id == "openai/gpt-4.1"
    assert registry.resolve() is registry.resolve("openai/gpt-4.1")


def test_resolve_is_a_singleton_per_identifier_under_concurrency() -> None:
    registry = ModelRegistry(REGISTRY_PATH)
    handles = []
    lock = threading.Lock()

    def _resolve():
        h = registry.resolve(None)
        with lock:
            handles.append(h)

    threads = [threading.Thread(target=_resolve) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len({id(h) for h in handles}) == 1
    assert handles[0] is registry.resolve(FALLBACK_MODEL_ID)


def test_resolve_unknown_model_raises_key_error() -> None:
    with pytest.raises(KeyError):
        ModelRegistry(REGISTRY_PATH).resolve("nope/nope")


def test_missing_credentials_fail_on_first_use_not_resolve() -> None:
    session = _FakeSession([])
    registry = ModelRegistry(REGISTRY_PATH, session=session)
    handle = registry.resolve("openai/gpt-4.1")
    with pytest.raises(ProviderConfigError):
        handle.generate(UnifiedLLMRequest(input_text="hi"))
    assert session.calls == []


def test_openai_stream_parses_sse_deltas(monkeypatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    resp = _FakeResponse(
        lines=[
            "",
            'data: {"choices":[{"delta":{"content":"Hel"}}]}',
            ": keep-alive",
            'data: {"choices":[{"delta":{}}]}',
            'data: {"choices":[{"delta":{"content":"lo"}}]}',
            "data: [DONE]",
            'data: {"choices":[{"delta":{"content":"ignored"}}]}',
        ]
    )
    session = _FakeSession([resp])
    handle = ModelRegistry(REGISTRY_PATH, session=session).resolve("openai/gpt-4.1")

    chunks = list(handle.generate_stream(UnifiedLLMRequest(messages=[{"role": "user", "content": "hi"}])))

    assert chunks == ["Hel", "lo"]
    assert resp.closed
    url, kwargs = session.calls[0]
    assert url == "https://api.openai.com/v1/chat/completions"
    assert kwargs["json"]["stream"] is True
    assert kwargs["headers"]["Authorization"] == "Bearer sk-test"
    assert kwargs["stream"] is True
    connect, read = kwargs["timeout"]
    assert 0 < connect <= read <= 300


def test_azure_uses_deployment_url_and_api_key_header(monkeypatch) -> None:
    monkeypatch.setenv("AZURE_OPENAI_API_KEY", "az-key")
    monkeypatch.setenv("AZURE_OPENAI_RESOURCE_NAME", "myres")
    monkeypatch.setenv("AZURE_OPENAI_GPT41_DEPLOYMENT", "gpt41-prod")
    session = _FakeSession([_FakeResponse(payload={"choices": [{"message": {"content": "ok"}}]})])
    handle = ModelRegistry(REGISTRY_PATH, session=session).resolve("azure/azure-gpt-4.1")

    resp = handle.generate(UnifiedLLMRequest(input_text="hi", temperature=0.3, max_tokens=512))

    assert resp.text == "ok"
    url, kwargs = session.calls[0]
    assert url == "https://myres.openai.azure.com/openai/deployments/gpt41-prod/chat/completions"
    assert kwargs["headers"]["api-key"] == "az-key"
    assert kwargs["params"] == {"api-version": "2024-10-21"}
    assert kwargs["json"]["max_tokens"] == 512


def test_gemini_payload_maps_roles_and_system_instruction(monkeypatch) -> None:
    monkeypatch.setenv("GOOGLE_API_KEY", "g-key")
    payload = {"candidates": [{"content": {"parts": [{"text": "fine"}]}}]}
    session = _FakeSession([_FakeResponse(payload=payload)])
    handle = ModelRegistry(REGISTRY_PATH, session=session).resolve("google/gemini-3-flash-preview")

    resp = handle.generate(
        UnifiedLLMRequest(
            messages=[
                {"role": "system", "content": "be brief"},
                {"role": "user", "content": "q"},
                {"role": "assistant", "content": "a"},
            ]
        )
    )

    assert resp.text == "fine"
    url, kwargs = session.calls[0]
    assert url.endswith("/models/gemini-3-flash-preview:generateContent")
    body = kwargs["json"]
    assert body["systemInstruction"] == {"parts": [{"text": "be brief"}]}
    assert [c["role"] for c in body["contents"]] == ["user", "model"]


def test_bedrock_stream_reads_content_block_deltas(monkeypatch) -> None:
    monkeypatch.setenv("AWS_REGION", "us-east-1")
    client = MagicMock()
    client.converse_stream.return_value = {
        "stream": [
            {"messageStart": {"role": "assistant"}},
            {"contentBlockDelta": {"delta": {"text": "Hi "}}},
            {"contentBlockDelta": {"delta": {"text": "there"}}},
            {"messageStop": {"stopReason": "end_turn"}},
        ]
    }
    with patch.object(llm_gateway.boto3, "client", return_value=client) as factory:
        registry = ModelRegistry(REGISTRY_PATH)
        handle = registry.resolve("bedrock/claude-sonnet-4-5")
        factory.assert_not_called()
        chunks = list(
            handle.generate_stream(
                UnifiedLLMRequest(messages=[{"role": "system", "content": "S"}, {"role": "user", "content": "q"}])
            )
        )

    assert chunks == ["Hi ", "there"]
    factory.assert_called_once()
    assert factory.call_args.kwargs["region_name"] == "us-east-1"
    kwargs = client.converse_stream.call_args.kwargs
    assert kwargs["system"] == [{"text": "S"}]
    assert kwargs["messages"] == [{"role": "user", "content": [{"text": "q"}]}]


class _StubAdapter:
    def __init__(self, chunks):
        self.chunks = chunks
        self.closed = False

    def generate_stream(self, req):
        try:
            for c in self.chunks:
                yield c
        finally:
            self.closed = True


class TestModelHandleStreamControl(unittest.TestCase):
    def _handle(self, chunks):
        handle = ModelRegistry(REGISTRY_PATH).resolve("openai/gpt-4.1")
        stub = _StubAdapter(chunks)
        fresh = llm_gateway.ModelHandle(handle.target, requests.Session())
        fresh._adapter = stub
        return fresh, stub

    def test_should_stop_cancels_and_closes_provider_stream(self):
        handle, stub = self._handle(["a", "b", "c"])
        seen = []
        with self.assertRaises(GenerationCancelled):
            for chunk in handle.generate_stream(UnifiedLLMRequest(), should_stop=lambda: len(seen) >= 1):
                seen.append(chunk)
        self.assertEqual(seen, ["a"])
        self.assertTrue(stub.closed)

    def test_deadline_in_the_past_raises_timeout(self):
        handle, stub = self._handle(["a", "b"])
        with self.assertRaises(TimeoutError):
            list(handle.generate_stream(UnifiedLLMRequest(), deadline=time.monotonic() - 1))
        self.assertTrue(stub.closed)


class TestRetry(unittest.TestCase):
    def test_retries_on_429_then_succeeds(self):
        with patch.dict("os.environ", {"OPENAI_API_KEY": "k"}), patch.object(llm_gateway, "_backoff"):
            session = _FakeSession(
                [_FakeResponse(status_code=429), _FakeResponse(payload={"choices": [{"message": {"content": "ok"}}]})]
            )
            handle = ModelRegistry(REGISTRY_PATH, session=session).resolve("openai/gpt-4.1")
            resp = handle.generate(UnifiedLLMRequest(input_text="hi"))
        self.assertEqual(resp.text, "ok")
        self.assertEqual(len(session.calls), 2)

    def test_does_not_retry_on_400(self):
        with patch.dict("os.environ", {"OPENAI_API_KEY": "k"}), patch.object(llm_gateway, "_backoff"):
            session = _FakeSession([_FakeResponse(status_code=400), _FakeResponse(status_code=200)])
            handle = ModelRegistry(REGISTRY_PATH, session=session).resolve("openai/gpt-4.1")
            with self.assertRaises(requests.HTTPError):
                handle.generate(UnifiedLLMRequest(input_text="hi"))
        self.assertEqual(len(session.calls), 1)


def test_timeout_pair_rejects_infinite_values() -> None:
    assert _build_timeout_pair(default_timeout_sec=120, timeout_value="none") == (10.0, 120.0)
    assert _build_timeout_pair(default_timeout_sec=120, timeout_value="5") == (5.0, 5.0)
    assert _build_timeout_pair(default_timeout_sec=9999) == (10.0, 300.0)


def test_split_system_messages() -> None:
    instructions, items = _split_system_messages(
        [{"role": "system", "content": "a"}, {"role": "user", "content": "b"}, {"role": "system", "content": "c"}]
    )
    assert instructions == "a\n\nc"
    assert items == [{"role": "user", "content": "b"}]
