import asyncio

import pytest

from notegate import corrections, phi
from notegate.errors import ExternalServiceAuthError, ExternalServiceUnavailable, MalformedInput

TRANSCRIPT = "Dr. Jane Smith started metaprole twenty five mig for a fib, call (555) 123-4567."


def fix_terms(prompt, system):
    text = prompt.split("\n\n", 1)[1]
    return (
        text.replace("metaprole", "metoprolol")
        .replace("twenty five mig", "25 mg")
        .replace("a fib", "atrial fibrillation")
    )


def test_terms_corrected_and_phi_restored(scripted):
    provider = scripted(reply=fix_terms)
    result = asyncio.run(corrections.correct_terms(provider, TRANSCRIPT))

    prompt, system = provider.prompts[0]
    assert "Jane" not in prompt
    assert "555" not in prompt
    assert system == corrections.FULL_PROMPT
    assert result.corrected is True
    assert result.corrected_transcript == (
        "Dr. Jane Smith started metoprolol 25 mg for atrial fibrillation, call (555) 123-4567."
    )
    assert result.phi_categories == {phi.NAME: 1, phi.PHONE: 1}
    assert result.phi_tokens_count == 2


def test_streaming_uses_short_prompt(scripted):
    provider = scripted(reply=fix_terms)
    asyncio.run(corrections.correct_terms(provider, TRANSCRIPT, streaming=True))
    assert provider.prompts[0][1] == corrections.STREAMING_PROMPT


def test_empty_reply_keeps_dictation(scripted):
    provider = scripted(reply="   ")
    result = asyncio.run(corrections.correct_terms(provider, TRANSCRIPT))
    assert result.corrected_transcript == TRANSCRIPT


def test_unavailable_model_returns_transcript_unchanged(scripted):
    provider = scripted(error=ExternalServiceUnavailable(status_code=503))
    result = asyncio.run(corrections.correct_terms(provider, TRANSCRIPT))
    assert result.corrected is False
    assert result.corrected_transcript == TRANSCRIPT


def test_auth_failure_propagates(scripted):
    provider = scripted(error=ExternalServiceAuthError(status_code=401))
    with pytest.raises(ExternalServiceAuthError):
        asyncio.run(corrections.correct_terms(provider, TRANSCRIPT))


@pytest.mark.parametrize("transcript", ["", None, 12])
def test_transcript_required(scripted, transcript):
    provider = scripted(reply="x")
    with pytest.raises(MalformedInput):
        asyncio.run(corrections.correct_terms(provider, transcript))
    assert provider.prompts == []


def test_missing_api_key_returns_transcript_unchanged(scripted):
    provider = scripted(reply=fix_terms)
    provider.config.api_key = ""
    result = asyncio.run(corrections.correct_terms(provider, TRANSCRIPT))
    assert result.corrected is False
    assert result.corrected_transcript == TRANSCRIPT
    assert provider.prompts == []
