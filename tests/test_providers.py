import asyncio
import json

import httpx
import pytest

from notegate import providers
from notegate.errors import (
    ExternalServiceAuthError,
    ExternalServiceRateLimited,
    ExternalServiceUnavailable,
)
from notegate.providers import (
    CohereProvider,
    OllamaProvider,
    OpenAICompatibleProvider,
    ProviderConfig,
)


def _config(name="cohere", api_key="sk-test"):
    return ProviderConfig(name=name, base_url="http://llm.test", api_key=api_key, model="m-1")


def _provider(cls, handler, **kwargs):
    return cls(_config(**kwargs), transport=httpx.MockTransport(handler))


def test_cohere_request_shape():
    captured = {}

    def handler(request):
        captured["path"] = request.url.path
        captured["auth"] = request.headers.get("authorization")
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"text": "generated"})

    provider = _provider(CohereProvider, handler)
    text = asyncio.run(provider.generate("prompt [NAME_0]", system="be brief", temperature=0.2))

    assert text == "generated"
    assert captured["path"] == "/v1/chat"
    assert captured["auth"] == "Bearer sk-test"
    assert captured["body"] == {
        "model": "m-1",
        "message": "prompt [NAME_0]",
        "preamble": "be brief",
        "temperature": 0.2,
    }


def test_openai_compatible_extracts_message():
    def handler(request):
        body = json.loads(request.content)
        assert request.url.path == "/v1/chat/completions"
        assert body["messages"] == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "hi"},
        ]
        assert body["temperature"] == 0.3
        return httpx.Response(200, json={"choices": [{"message": {"content": "hello"}}]})

    provider = _provider(OpenAICompatibleProvider, handler, name="openai")
    assert asyncio.run(provider.generate("hi", system="sys")) == "hello"


def test_ollama_needs_no_key():
    def handler(request):
        assert request.url.path == "/api/chat"
        assert "authorization" not in request.headers
        assert json.loads(request.content)["stream"] is False
        return httpx.Response(200, json={"message": {"content": "local"}})

    provider = _provider(OllamaProvider, handler, name="ollama", api_key="")
    assert asyncio.run(provider.generate("hi")) == "local"


@pytest.mark.parametrize("status, error", [
    (429, ExternalServiceRateLimited),
    (401, ExternalServiceAuthError),
    (403, ExternalServiceAuthError),
    (500, ExternalServiceUnavailable),
    (503, ExternalServiceUnavailable),
])
def test_status_mapping(status, error):
    def handler(request):
        return httpx.Response(status, text="upstream says: Dr. Jane Smith")

    provider = _provider(CohereProvider, handler)
    with pytest.raises(error) as excinfo:
        asyncio.run(provider.generate("prompt"))
    assert excinfo.value.status_code == status
    assert "Jane" not in str(excinfo.value)


def test_transport_error_is_unavailable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    provider = _provider(CohereProvider, handler)
    with pytest.raises(ExternalServiceUnavailable):
        asyncio.run(provider.generate("prompt"))
    assert provider._healthy is False


def test_invalid_json_is_unavailable():
    provider = _provider(CohereProvider, lambda request: httpx.Response(200, text="not json"))
    with pytest.raises(ExternalServiceUnavailable):
        asyncio.run(provider.generate("prompt"))


def test_missing_text_is_unavailable():
    provider = _provider(CohereProvider, lambda request: httpx.Response(200, json={"finish_reason": "ERROR"}))
    with pytest.raises(ExternalServiceUnavailable):
        asyncio.run(provider.generate("prompt"))


def test_missing_api_key_fails_before_request():
    def handler(request):
        raise AssertionError("no request expected")

    provider = _provider(CohereProvider, handler, api_key="")
    with pytest.raises(ExternalServiceAuthError):
        asyncio.run(provider.generate("prompt"))


def test_health_check_is_cached():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(200, json={"models": []})

    provider = _provider(CohereProvider, handler)
    assert asyncio.run(provider.is_available()) is True
    assert asyncio.run(provider.is_available()) is True
    assert calls == ["/v1/models"]


def test_load_providers_resolves_env(tmp_path, monkeypatch):
    monkeypatch.setenv("COHERE_API_KEY", "sk-from-env")
    config = {
        "agents": {"defaults": {"provider": "cohere", "model": "command-a-03-2025"}},
        "providers": {
            "cohere": {"type": "cohere", "baseUrl": "https://api.cohere.ai/", "apiKey": "${COHERE_API_KEY}"},
            "local-ollama": {"baseUrl": "http://ollama:11434", "model": "llama3.1:8b"},
            "gateway": {"baseUrl": "http://gateway:8000", "apiKey": "plain"},
        },
    }
    path = tmp_path / "config.json"
    path.write_text(json.dumps(config))

    providers.load_providers(str(path))

    default = providers.get_provider()
    assert isinstance(default, CohereProvider)
    assert default.config.api_key == "sk-from-env"
    assert default.config.base_url == "https://api.cohere.ai"
    assert default.config.model == "command-a-03-2025"
    assert isinstance(providers.get_provider("local-ollama"), OllamaProvider)
    assert isinstance(providers.get_provider("gateway"), OpenAICompatibleProvider)


def test_missing_config_leaves_registry_empty(tmp_path):
    providers.load_providers(str(tmp_path / "absent.json"))
    assert providers.get_provider() is None


def test_configured_reflects_key_requirement():
    assert CohereProvider(_config()).configured is True
    assert CohereProvider(_config(api_key="")).configured is False
    assert OllamaProvider(_config(name="ollama", api_key="")).configured is True
