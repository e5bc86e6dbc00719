"""Clinical note and radiology report generation with billing extraction."""

import json
import logging
import re
from dataclasses import dataclass, field

from notegate import phi
from notegate.billing import validate_billing
from notegate.errors import ExternalServiceUnavailable, MalformedInput
from notegate.providers import LLMProvider

logger = logging.getLogger("notegate.notes")

MAX_TRANSCRIPT_LENGTH = 50000
MIN_TRANSCRIPT_LENGTH = 20
TEMPERATURE = 0.3

# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

CLINICAL_TEMPLATES = {
    "hp": "H&P Note in SOAP Format",
    "consult": "Consultation Note in SOAP Format",
    "progress": "Progress Note in SOAP Format",
}

SECTION_TEMPLATES = {
    "subjective": """## SUBJECTIVE
- Chief Complaint (CC)
- History of Present Illness (HPI)
- Review of Systems (ROS)
- Past Medical History (PMH)
- Medications
- Allergies
- Social/Family History (if relevant)""",
    "objective": """## OBJECTIVE
- Vital Signs
- Physical Examination findings
- Laboratory/Imaging results (if available)""",
    "assessment": """## ASSESSMENT
- Primary diagnosis with ICD-10 codes
- Differential diagnoses
- Problem list""",
    "plan": """## PLAN
- Treatment plan
- Medications (with dosage)
- Follow-up instructions
- Patient education
- Referrals (if any)""",
    "patientEducation": """## PATIENT EDUCATION
- Instructions given to patient
- Warning signs to watch for
- Lifestyle modifications""",
    "followUp": """## FOLLOW-UP
- Next appointment
- When to return for evaluation
- Pending tests/results""",
}

DEFAULT_SECTION_ORDER = ["subjective", "objective", "assessment", "plan"]

RADIOLOGY_TEMPLATES = {
    "xray": "X-Ray Report with: Clinical Indication, Comparison, Technique, Findings, Impression",
    "ct": "CT Report with: Clinical Indication, Comparison, Technique, Findings by Region/Organ System, Impression",
    "mri": "MRI Report with: Clinical Indication, Comparison, Technique/Sequences, Findings by Region, Impression",
    "ultrasound": "Ultrasound Report with: Clinical Indication, Comparison, Technique, Findings, Impression",
    "mammography": "Mammography Report with: Clinical Indication, Comparison, Breast Composition, Findings, BI-RADS Category, Management Recommendation",
    "fluoroscopy": "Fluoroscopy Report with: Clinical Indication, Comparison, Technique, Findings, Impression",
}

RADIOLOGY_CPT_GUIDANCE = {
    "xray": "Use CPT codes 71045-71048 for chest, 73000-73140 for upper extremity, 73500-73660 for lower extremity, 72020-72120 for spine",
    "ct": "Use CPT codes 70450-70498 for head, 71250-71275 for chest, 72125-72133 for spine, 74150-74178 for abdomen/pelvis. Add +26 modifier for professional component",
    "mri": "Use CPT codes 70551-70559 for brain, 70540-70543 for orbit/face/neck, 72141-72158 for spine, 73218-73223 for extremities. Add +26 modifier for professional component",
    "ultrasound": "Use CPT codes 76700-76705 for abdomen, 76770-76775 for retroperitoneum, 76801-76828 for OB, 76830-76857 for pelvic",
    "mammography": "Use CPT codes 77065-77067 for mammography. Include BI-RADS category (0-6) in structured_category field",
    "fluoroscopy": "Use CPT codes 76000-76001 for fluoroscopy guidance, 74230 for swallowing function, 74240-74250 for upper GI",
}

RADIOLOGY_MODALITIES = tuple(RADIOLOGY_TEMPLATES)

RADIOLOGY_SYSTEM_PROMPT = """You are an expert radiologist generating a structured radiology report AND extracting billing codes from the dictation.

CRITICAL RULES:
1. Preserve all placeholder tokens exactly as written (e.g., [NAME_0], [MRN_0])
2. Use standard radiology terminology and structured reporting format
3. Extract accurate CPT codes for the imaging study
4. Include ICD-10 codes based on findings and clinical indication
5. For mammography, ALWAYS include BI-RADS category (0-6) in the structured_category field
6. For other modalities, include relevant structured categories if applicable (LI-RADS for liver, TI-RADS for thyroid, etc.)

CPT Code Guidance: {cpt_guidance}

OUTPUT FORMAT (respond with valid JSON only):
{{
  "note": "The complete radiology report text",
  "billing": {{
    "icd10": [{{"code": "X00.0", "description": "Finding"}}],
    "cpt": [{{"code": "71046", "description": "Chest X-ray 2 views"}}],
    "modifiers": ["-26"],
    "rvu": 0.75
  }},
  "structured_category": "BI-RADS 2"
}}"""

CLINICAL_SYSTEM_PROMPT = """You are an expert medical documentation specialist. Generate a clinical note AND extract billing codes from the transcript.

CRITICAL RULES:
1. Preserve all placeholder tokens exactly as written (e.g., [NAME_0], [MRN_0], [DOB_0])
2. Use standard medical terminology and proper documentation format
3. Extract accurate ICD-10 and CPT codes based on documented conditions/procedures
4. Determine MDM complexity and E/M level based on documentation
5. Follow the section structure provided below
{soap_structure}

OUTPUT FORMAT (respond with valid JSON only):
{{
  "note": "## SECTION_NAME\\n...\\n\\n## NEXT_SECTION\\n...",
  "billing": {{
    "icd10": [{{"code": "X00.0", "description": "Condition"}}],
    "cpt": [{{"code": "99214", "description": "Office visit"}}],
    "mdmComplexity": "Low|Moderate|High",
    "emLevel": "99211|99212|99213|99214|99215",
    "rvu": 1.92
  }}
}}"""

USER_PROMPT = """Generate a {template} from this {source}.{context}

{source_title}:
{transcript}"""


@dataclass
class NoteResult:
    note: str
    billing: dict
    structured_category: str | None
    is_radiology: bool
    phi_categories: dict[str, int] = field(default_factory=dict)
    missing_tokens: int = 0
    billing_validation: dict = field(default_factory=dict)


def sanitize_transcript(transcript) -> str:
    if transcript is None:
        return ""
    if not isinstance(transcript, str):
        raise MalformedInput("transcript must be a string")
    return transcript.strip()[:MAX_TRANSCRIPT_LENGTH]


def build_soap_structure(prefs: dict | None) -> str:
    """Section headers for a clinical note, honouring enabled sections and their order."""
    if not prefs or not prefs.get("sections") or not prefs.get("sectionOrder"):
        sections = [SECTION_TEMPLATES[key] for key in DEFAULT_SECTION_ORDER]
        return (
            "\nGenerate the note in SOAP format with these exact section headers:\n\n"
            + "\n\n".join(sections)
            + '\n\nUse "##" for section headers exactly as shown above.'
        )

    enabled = prefs["sections"]
    sections = [
        SECTION_TEMPLATES[key]
        for key in prefs["sectionOrder"]
        if enabled.get(key) and key in SECTION_TEMPLATES
    ]
    if not sections:
        sections = [SECTION_TEMPLATES["assessment"], SECTION_TEMPLATES["plan"]]
    return (
        "\nGenerate the note with these exact section headers (in this order):\n\n"
        + "\n\n".join(sections)
        + '\n\nUse "##" for section headers exactly as shown above.'
    )


def _radiology_context(ctx: dict, redactor: phi.PHIRedactor) -> str:
    lines = []
    for key, label in (
        ("bodyPart", "Body Part"),
        ("indication", "Clinical Indication"),
        ("comparison", "Comparison"),
        ("technique", "Technique"),
    ):
        if ctx.get(key):
            lines.append(f"{label}: {redactor.deidentify(str(ctx[key]))}")
    if ctx.get("contrast") is not None:
        lines.append(f"Contrast: {'Yes' if ctx['contrast'] else 'No'}")
    return "\nStudy Context:\n" + "\n".join(lines) if lines else ""


def _patient_context(info: dict, redactor: phi.PHIRedactor) -> str:
    """Chart fields become placeholders from the request's redactor."""
    lines = []
    for key, label, category in (
        ("name", "Patient", phi.NAME),
        ("mrn", "MRN", phi.MRN),
        ("dob", "DOB", phi.DOB),
        ("room", "Room", phi.ROOM),
    ):
        if info.get(key):
            lines.append(f"{label}: {redactor.tokenize(category, str(info[key]))}")
    if info.get("diagnosis"):
        lines.append(f"Diagnosis: {redactor.deidentify(str(info['diagnosis']))}")
    allergies = info.get("allergies") or []
    if not isinstance(allergies, list):
        allergies = [allergies]
    if allergies:
        lines.append(f"Allergies: {redactor.deidentify(', '.join(str(a) for a in allergies))}")
    return "\nPatient Context:\n" + "\n".join(lines) if lines else ""


def parse_model_json(content: str) -> dict:
    """Extract the first JSON object from the model's reply."""
    match = re.search(r"\{.*\}", content, re.S)
    if not match:
        logger.error("Model reply contained no JSON object")
        raise ExternalServiceUnavailable("could not parse language model output")
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        logger.error("Model reply contained malformed JSON")
        raise ExternalServiceUnavailable("could not parse language model output") from None
    if not isinstance(parsed, dict):
        raise ExternalServiceUnavailable("could not parse language model output")
    return parsed


def _list_or_empty(value) -> list:
    return value if isinstance(value, list) else []


def _number_or(value, default: float) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    return default


def normalize_billing(billing, is_radiology: bool) -> dict:
    billing = billing if isinstance(billing, dict) else {}
    if is_radiology:
        modifiers = billing.get("modifiers")
        return {
            "icd10": _list_or_empty(billing.get("icd10")),
            "cpt": _list_or_empty(billing.get("cpt")),
            "modifiers": modifiers if isinstance(modifiers, list) else ["-26"],
            "rvu": _number_or(billing.get("rvu"), 0.75),
        }
    return {
        "icd10": _list_or_empty(billing.get("icd10")),
        "cpt": _list_or_empty(billing.get("cpt")),
        "mdmComplexity": billing.get("mdmComplexity") or "Moderate",
        "emLevel": billing.get("emLevel") or "99214",
        "rvu": _number_or(billing.get("rvu"), 1.92),
    }


async def generate_note(
    provider: LLMProvider,
    transcript,
    note_type: str = "progress",
    patient_info: dict | None = None,
    radiology_context: dict | None = None,
    note_preferences: dict | None = None,
) -> NoteResult:
    transcript = sanitize_transcript(transcript)
    if len(transcript) < MIN_TRANSCRIPT_LENGTH:
        raise MalformedInput("transcript too short")

    note_type = note_type or "progress"
    is_radiology = note_type in RADIOLOGY_MODALITIES

    redactor = phi.PHIRedactor()
    # Context fields are redacted after the transcript; reserve them up front
    redactor.reserve(json.dumps([patient_info, radiology_context], default=str))
    cleaned = redactor.deidentify(transcript)

    context = ""
    if is_radiology and radiology_context:
        context = _radiology_context(radiology_context, redactor)
    elif not is_radiology and patient_info:
        context = _patient_context(patient_info, redactor)

    if is_radiology:
        template = RADIOLOGY_TEMPLATES[note_type]
        system = RADIOLOGY_SYSTEM_PROMPT.format(cpt_guidance=RADIOLOGY_CPT_GUIDANCE[note_type])
    else:
        template = CLINICAL_TEMPLATES.get(note_type, CLINICAL_TEMPLATES["progress"])
        system = CLINICAL_SYSTEM_PROMPT.format(soap_structure=build_soap_structure(note_preferences))

    def build_prompt(text: str) -> str:
        return USER_PROMPT.format(
            template=template,
            source="dictation" if is_radiology else "transcript",
            source_title="Dictation" if is_radiology else "Transcript",
            context=context,
            transcript=text,
        )

    logger.info(
        "Generating %s (%s) with %s",
        "radiology report" if is_radiology else "clinical note",
        note_type,
        redactor.category_counts() or "no PHI",
    )
    content = await phi.call_transform(
        lambda text: provider.generate(build_prompt(text), system=system, temperature=TEMPERATURE),
        cleaned,
    )
    parsed = parse_model_json(content)

    note_text = parsed.get("note")
    final_note = redactor.restore(note_text if isinstance(note_text, str) else "")
    category = parsed.get("structured_category")
    billing = normalize_billing(parsed.get("billing"), is_radiology)

    return NoteResult(
        note=final_note.strip(),
        billing=billing,
        structured_category=category if isinstance(category, str) and category else None,
        is_radiology=is_radiology,
        phi_categories=redactor.category_counts(),
        missing_tokens=len(redactor.missing),
        billing_validation=validate_billing(billing),
    )
