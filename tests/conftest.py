import pytest

from notegate import providers
from notegate.providers import LLMProvider, ProviderConfig


class ScriptedProvider(LLMProvider):
    """Stands in for the language model: records prompts, replies from a script."""

    def __init__(self, reply="", error=None, name="scripted", healthy=True):
        super().__init__(ProviderConfig(
            name=name, base_url="http://llm.test", api_key="test-key", model="scripted-1",
        ))
        self.reply = reply
        self.error = error
        self.healthy = healthy
        self.prompts: list[tuple[str, str | None]] = []

    async def generate(self, prompt, system=None, temperature=None):
        self.prompts.append((prompt, system))
        if self.error is not None:
            raise self.error
        return self.reply(prompt, system) if callable(self.reply) else self.reply

    async def _post(self, client, prompt, system, temperature):
        raise NotImplementedError

    def _extract(self, data):
        return None

    async def _check_health(self):
        return self.healthy


@pytest.fixture
def scripted():
    return ScriptedProvider


@pytest.fixture(autouse=True)
def _reset_providers():
    providers.clear_providers()
    yield
    providers.clear_providers()
