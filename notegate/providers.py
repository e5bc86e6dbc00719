"""Language-model providers: Cohere, OpenAI-compatible and Ollama backends."""

import json
import logging
import os
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

from notegate.errors import (
    ExternalServiceAuthError,
    ExternalServiceRateLimited,
    ExternalServiceUnavailable,
)

logger = logging.getLogger("notegate.providers")


@dataclass
class ProviderConfig:
    name: str
    base_url: str
    api_key: str
    model: str
    timeout: float = 60.0
    temperature: float = 0.3


HEALTH_CACHE_TTL = 30  # seconds


def _raise_for_status(resp: httpx.Response, provider: str) -> None:
    """Map an error status to the gateway taxonomy. The body is never read."""
    if resp.is_success:
        return
    status = resp.status_code
    logger.warning("%s returned HTTP %d", provider, status)
    if status == 429:
        raise ExternalServiceRateLimited(status_code=status)
    if status in (401, 403):
        raise ExternalServiceAuthError(status_code=status)
    raise ExternalServiceUnavailable(status_code=status)


class LLMProvider(ABC):
    def __init__(self, config: ProviderConfig, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self._transport = transport
        self._healthy: bool | None = None
        self._healthy_at: float = 0

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout if timeout is not None else self.config.timeout,
            transport=self._transport,
        )

    @property
    def configured(self) -> bool:
        """False when the backend needs an API key and none was supplied."""
        return bool(self.config.api_key) or not self._requires_key()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    async def generate(self, prompt: str, system: str | None = None, temperature: float | None = None) -> str:
        """Send one prompt and return the generated text.

        Raises ExternalServiceRateLimited, ExternalServiceAuthError or
        ExternalServiceUnavailable; never returns partial output.
        """
        if not self.configured:
            raise ExternalServiceAuthError()
        if temperature is None:
            temperature = self.config.temperature
        try:
            async with self._client() as client:
                resp = await self._post(client, prompt, system, temperature)
                _raise_for_status(resp, self.config.name)
                data = resp.json()
        except httpx.HTTPError as exc:
            logger.warning("%s request failed: %s", self.config.name, type(exc).__name__)
            self._mark_unhealthy()
            raise ExternalServiceUnavailable() from None
        except json.JSONDecodeError:
            logger.warning("%s returned invalid JSON", self.config.name)
            raise ExternalServiceUnavailable() from None
        text = self._extract(data) if isinstance(data, dict) else None
        if not isinstance(text, str):
            raise ExternalServiceUnavailable("language model returned no text")
        return text

    def _requires_key(self) -> bool:
        return True

    def _mark_unhealthy(self) -> None:
        self._healthy = False
        self._healthy_at = time.time()

    @abstractmethod
    async def _post(self, client: httpx.AsyncClient, prompt: str, system: str | None, temperature: float) -> httpx.Response:
        """Issue the backend-specific generation request."""

    @abstractmethod
    def _extract(self, data: dict) -> str | None:
        """Pull the generated text out of the backend's JSON response."""

    async def is_available(self) -> bool:
        """Health check with TTL cache."""
        now = time.time()
        if self._healthy is not None and (now - self._healthy_at) < HEALTH_CACHE_TTL:
            return self._healthy
        self._healthy = await self._check_health()
        self._healthy_at = now
        return self._healthy

    @abstractmethod
    async def _check_health(self) -> bool:
        """Actual health check, implemented by subclasses."""


class CohereProvider(LLMProvider):
    async def _post(self, client, prompt, system, temperature):
        body = {
            "model": self.config.model,
            "message": prompt,
            "temperature": temperature,
        }
        if system:
            body["preamble"] = system
        return await client.post(f"{self.config.base_url}/v1/chat", headers=self._headers(), json=body)

    def _extract(self, data):
        return data.get("text")

    async def _check_health(self) -> bool:
        try:
            async with self._client(timeout=5.0) as client:
                resp = await client.get(f"{self.config.base_url}/v1/models", headers=self._headers())
                return resp.status_code == 200
        except httpx.HTTPError:
            return False


class OpenAICompatibleProvider(LLMProvider):
    async def _post(self, client, prompt, system, temperature):
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return await client.post(
            f"{self.config.base_url}/v1/chat/completions",
            headers=self._headers(),
            json={
                "model": self.config.model,
                "messages": messages,
                "temperature": temperature,
            },
        )

    def _extract(self, data):
        try:
            return data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            return None

    async def _check_health(self) -> bool:
        try:
            async with self._client(timeout=5.0) as client:
                resp = await client.get(f"{self.config.base_url}/v1/models", headers=self._headers())
                return resp.status_code == 200
        except httpx.HTTPError:
            return False


class OllamaProvider(LLMProvider):
    def _requires_key(self) -> bool:
        return False

    async def _post(self, client, prompt, system, temperature):
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return await client.post(
            f"{self.config.base_url}/api/chat",
            json={
                "model": self.config.model,
                "messages": messages,
                "stream": False,
                "options": {"temperature": temperature},
            },
        )

    def _extract(self, data):
        message = data.get("message")
        return message.get("content") if isinstance(message, dict) else None

    async def _check_health(self) -> bool:
        try:
            async with self._client(timeout=5.0) as client:
                resp = await client.get(f"{self.config.base_url}/api/tags")
                return resp.status_code == 200
        except httpx.HTTPError:
            return False


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_providers: dict[str, LLMProvider] = {}
_default_provider: str | None = None


def _resolve_env(value: str) -> str:
    """Replace ${ENV_VAR} with os.environ value."""
    def replacer(m):
        return os.environ.get(m.group(1), "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _provider_class(name: str, pconf: dict) -> type[LLMProvider]:
    kind = pconf.get("type", "").lower()
    base_url = pconf.get("baseUrl", "")
    if kind == "cohere" or (not kind and "cohere" in (name.lower() + base_url)):
        return CohereProvider
    if kind == "ollama" or (not kind and ("ollama" in name.lower() or "/api" in base_url)):
        return OllamaProvider
    return OpenAICompatibleProvider


def load_providers(config_path: str) -> None:
    """Load providers from config.json."""
    global _default_provider
    if not os.path.exists(config_path):
        logger.warning("Provider config not found: %s", config_path)
        return
    with open(config_path) as f:
        data = json.load(f)

    agent_defaults = data.get("agents", {}).get("defaults", {})
    default_model = agent_defaults.get("model", "")
    _default_provider = agent_defaults.get("provider")

    for name, pconf in data.get("providers", {}).items():
        config = ProviderConfig(
            name=name,
            base_url=pconf.get("baseUrl", "").rstrip("/"),
            api_key=_resolve_env(pconf.get("apiKey", "")),
            model=pconf.get("model", default_model),
            timeout=pconf.get("timeout", 60.0),
            temperature=pconf.get("temperature", 0.3),
        )
        _providers[name] = _provider_class(name, pconf)(config)

    logger.info("Loaded %d providers (default=%s)", len(_providers), _default_provider)


def register_provider(provider: LLMProvider, default: bool = False) -> None:
    global _default_provider
    _providers[provider.config.name] = provider
    if default:
        _default_provider = provider.config.name


def clear_providers() -> None:
    global _default_provider
    _providers.clear()
    _default_provider = None


def get_provider(name: str | None = None) -> LLMProvider | None:
    """Get a provider by name, or the default."""
    target = name or _default_provider
    if target and target in _providers:
        return _providers[target]
    # Fallback: return first available
    if _providers:
        return next(iter(_providers.values()))
    return None


def all_providers() -> dict[str, LLMProvider]:
    return dict(_providers)
