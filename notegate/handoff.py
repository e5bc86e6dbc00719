"""Shift handoff generation across several patients in one model call."""

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime

from notegate import phi
from notegate.errors import MalformedInput
from notegate.providers import LLMProvider

logger = logging.getLogger("notegate.handoff")

TEMPERATURE = 0.2
ASSESSMENT_FALLBACK_CHARS = 500

SECTIONS = [
    "Patient Identification",
    "Diagnosis",
    "Patient Overview",
    "Critical Issues",
    "Pending Tasks",
    "Urgent Matters",
]

SYSTEM_PROMPT = """You are an expert medical provider creating a structured SHIFT HANDOFF SUMMARY document.

Your handoff document serves critical functions:
1. Patient safety tool - ensures no critical information is lost
2. Communication bridge between shifts
3. Risk-alert system for incoming provider
4. Task management reference

Format your response as a professional medical handoff document with clear sections.
Be concise but thorough. Focus on actionable information.
Preserve all placeholder tokens such as [NAME_0] or [ROOM_1] exactly as provided."""

USER_PROMPT = """Generate a comprehensive SHIFT HANDOFF SUMMARY for the incoming provider.

PATIENT DATA:
{summaries}

Create a handoff document with these EXACT sections for EACH patient:

1. **SHIFT HANDOFF SUMMARY** (Header)
   - Date/time of handoff
   - Number of patients being handed off

2. **For each patient, include:**

   **PATIENT IDENTIFICATION**
   - Patient Name
   - Room Number
   - MRN (if available)

   **DIAGNOSIS**
   - Primary diagnosis/chief complaint
   - Indicate if acute, chronic, or exacerbation

   **PATIENT OVERVIEW**
   - Age and relevant demographics
   - Presenting symptoms (be specific)
   - Relevant medical history
   - Current medications if known
   - Allergies

   **CRITICAL ISSUES / CONCERNS**
   - List specific clinical concerns that could worsen
   - Flag any red flags or warning signs
   - Note any unstable conditions

   **PENDING TASKS / FOLLOW-UPS**
   - Labs or studies pending
   - Consultations needed
   - Treatments to monitor
   - Documentation to complete

   **URGENT MATTERS REQUIRING IMMEDIATE ATTENTION**
   - Actions that cannot wait
   - Time-sensitive decisions
   - Critical monitoring needs

3. **SUMMARY** (at the end)
   - Total patients
   - Number requiring urgent attention
   - Key priorities for the incoming shift

Use bullet points for clarity. Be specific and actionable."""

RULE = "═" * 59

PATIENT_BLOCK = """
{rule}
PATIENT {number}
{rule}

PATIENT IDENTIFICATION
• Name: {name}
• Room: {room}
• MRN: {mrn}

DIAGNOSIS
• {diagnosis}

PATIENT OVERVIEW
• Demographics: {age} patient
• Chief Complaint: {complaint}
• History/Presentation: {history}
• Allergies: {allergies}

CLINICAL ASSESSMENT
{assessment}

CURRENT PLAN
{plan}
"""


@dataclass
class HandoffResult:
    handoff: str
    patient_count: int
    phi_categories: dict[str, int] = field(default_factory=dict)
    missing_tokens: int = 0


def calculate_age(dob: str | None, today: date | None = None) -> str:
    if not isinstance(dob, str) or not dob:
        return "Unknown age"
    birth = None
    for fmt in ("%Y-%m-%d", "%m/%d/%Y", "%m-%d-%Y"):
        try:
            birth = datetime.strptime(dob.strip()[:10], fmt).date()
            break
        except ValueError:
            continue
    if birth is None:
        return "Unknown age"
    today = today or date.today()
    age = today.year - birth.year - ((today.month, today.day) < (birth.month, birth.day))
    if age < 0:
        return "Unknown age"
    return f"{age}-year-old"


def _text(value) -> str:
    return value if isinstance(value, str) else ""


def build_patient_block(index: int, note: dict, patient: dict | None, redactor: phi.PHIRedactor) -> str:
    """One patient's section of the prompt, with chart identifiers already tokenized."""
    patient = patient or {}
    name = patient.get("name")
    room = patient.get("room")
    mrn = patient.get("mrn")
    allergies = patient.get("allergies") or []
    if not isinstance(allergies, list):
        allergies = [allergies]

    assessment = _text(note.get("assessment")) or _text(note.get("generated_note"))[:ASSESSMENT_FALLBACK_CHARS]
    complaint = _text(note.get("chief_complaint"))
    hpi = _text(note.get("hpi"))
    diagnosis = _text(patient.get("diagnosis")) or complaint or "Not specified"

    return PATIENT_BLOCK.format(
        rule=RULE,
        number=index + 1,
        name=redactor.tokenize(phi.NAME, str(name)) if name else f"Patient {index + 1}",
        room=redactor.tokenize(phi.ROOM, str(room)) if room else "Unknown",
        mrn=redactor.tokenize(phi.MRN, str(mrn)) if mrn else "N/A",
        diagnosis=diagnosis,
        age=calculate_age(patient.get("dob")),
        complaint=complaint or diagnosis,
        history=hpi or assessment or "See chart for full history",
        allergies=", ".join(str(a) for a in allergies) if allergies else "NKDA (No Known Drug Allergies)",
        assessment=assessment or "Assessment pending - see latest note",
        plan=_text(note.get("plan")) or "Continue current management - see orders",
    )


async def generate_handoff(provider: LLMProvider, notes: list[dict], patients: list[dict] | None = None) -> HandoffResult:
    if not isinstance(notes, list) or not notes:
        raise MalformedInput("notes are required")
    if not all(isinstance(note, dict) for note in notes):
        raise MalformedInput("each note must be an object")

    by_id = {p.get("id"): p for p in patients or [] if isinstance(p, dict)}
    redactor = phi.PHIRedactor()
    # Chart fields are tokenized before the blocks are scanned
    redactor.reserve(json.dumps([notes, patients], default=str))
    blocks = [
        build_patient_block(i, note, by_id.get(note.get("patient_id")), redactor)
        for i, note in enumerate(notes)
    ]

    final = await phi.process_batch_with_phi_protection(
        blocks,
        lambda summaries: provider.generate(
            USER_PROMPT.format(summaries=summaries), system=SYSTEM_PROMPT, temperature=TEMPERATURE
        ),
        joiner="\n",
        redactor=redactor,
    )
    logger.info("Handoff generated for %d patients", len(notes))
    return HandoffResult(
        handoff=final.strip(),
        patient_count=len(notes),
        phi_categories=redactor.category_counts(),
        missing_tokens=len(redactor.missing),
    )
