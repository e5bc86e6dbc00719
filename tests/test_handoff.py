import asyncio
from datetime import date

import pytest

from notegate import handoff, phi
from notegate.errors import ExternalServiceRateLimited, MalformedInput

NOTES = [
    {
        "patient_id": "p1",
        "chief_complaint": "Shortness of breath",
        "assessment": "CHF exacerbation, discussed with Dr. Adams",
        "plan": "IV furosemide, daily weights",
    },
    {
        "patient_id": "p2",
        "generated_note": "Community-acquired pneumonia. " * 40,
    },
]

PATIENTS = [
    {"id": "p1", "name": "John Doe", "room": "12B", "mrn": "A123456", "dob": "1956-03-15"},
    {"id": "p2", "name": "Mary Major", "allergies": ["penicillin", "sulfa"]},
]


def echo(prompt, system):
    return prompt


@pytest.mark.parametrize("dob, expected", [
    ("1956-03-15", "70-year-old"),
    ("03/15/1956", "70-year-old"),
    ("1956-12-01T00:00:00Z", "69-year-old"),
    ("not a date", "Unknown age"),
    (None, "Unknown age"),
    ("2030-01-01", "Unknown age"),
    (19560315, "Unknown age"),
    (["1956-03-15"], "Unknown age"),
])
def test_calculate_age(dob, expected):
    assert handoff.calculate_age(dob, today=date(2026, 10, 17)) == expected


def test_each_patient_gets_distinct_placeholders(scripted):
    provider = scripted(reply=echo)
    result = asyncio.run(handoff.generate_handoff(provider, NOTES, PATIENTS))

    assert len(provider.prompts) == 1
    prompt, system = provider.prompts[0]
    for fragment in ("John Doe", "12B", "A123456", "Mary Major", "Dr. Adams"):
        assert fragment not in prompt
    assert "• Name: [NAME_0]" in prompt
    assert "• Room: [ROOM_0]" in prompt
    assert "• MRN: [MRN_0]" in prompt
    assert "• Name: [NAME_1]" in prompt
    assert "• Room: Unknown" in prompt
    assert "• MRN: N/A" in prompt
    # The assessment is repeated as history, so the consultant is tokenized twice
    assert "discussed with [NAME_2]" in prompt
    assert "discussed with [NAME_3]" in prompt

    assert "John Doe" in result.handoff
    assert "Mary Major" in result.handoff
    assert "discussed with Dr. Adams" in result.handoff
    assert result.patient_count == 2
    assert result.phi_categories == {phi.NAME: 4, phi.ROOM: 1, phi.MRN: 1}
    assert result.missing_tokens == 0


def test_patient_block_defaults():
    redactor = phi.PHIRedactor()
    block = handoff.build_patient_block(2, {"generated_note": "x" * 900}, None, redactor)
    assert "PATIENT 3" in block
    assert "• Name: Patient 3" in block
    assert "NKDA (No Known Drug Allergies)" in block
    assert "Unknown age" in block
    assert "x" * handoff.ASSESSMENT_FALLBACK_CHARS in block
    assert "x" * (handoff.ASSESSMENT_FALLBACK_CHARS + 1) not in block
    assert redactor.tokens == []


def test_allergies_listed(scripted):
    provider = scripted(reply=echo)
    asyncio.run(handoff.generate_handoff(provider, NOTES, PATIENTS))
    assert "• Allergies: penicillin, sulfa" in provider.prompts[0][0]


@pytest.mark.parametrize("notes", [[], None, "note text", [{"ok": 1}, "bad"]])
def test_notes_required(scripted, notes):
    provider = scripted(reply=echo)
    with pytest.raises(MalformedInput):
        asyncio.run(handoff.generate_handoff(provider, notes))
    assert provider.prompts == []


def test_rate_limit_propagates(scripted):
    provider = scripted(error=ExternalServiceRateLimited(status_code=429))
    with pytest.raises(ExternalServiceRateLimited):
        asyncio.run(handoff.generate_handoff(provider, NOTES, PATIENTS))


def test_literal_placeholder_in_note_is_preserved(scripted):
    provider = scripted(reply=echo)
    notes = [{"patient_id": "p1", "assessment": "Template [NAME_0] left in note"}]
    result = asyncio.run(handoff.generate_handoff(provider, notes, [{"id": "p1", "name": "John Doe"}]))
    assert "• Name: [NAME_1]" in provider.prompts[0][0]
    assert "Template [NAME_0] left in note" in result.handoff
    assert "• Name: John Doe" in result.handoff
