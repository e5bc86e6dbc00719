"""Medical terminology correction for dictated transcripts."""

import logging
from dataclasses import dataclass

from notegate import phi
from notegate.errors import ExternalServiceUnavailable, MalformedInput
from notegate.providers import LLMProvider

logger = logging.getLogger("notegate.corrections")

TEMPERATURE = 0.1

STREAMING_PROMPT = """You are a fast medical transcription corrector. Fix ONLY obvious medical term errors.

RULES (for speed):
1. Fix drug name misspellings: metaprole→metoprolol, lipator→atorvastatin
2. Fix condition names: new monya→pneumonia, a fib→atrial fibrillation
3. Fix dosage formats: twenty five mig→25 mg
4. PRESERVE everything else exactly - don't reorganize or expand
5. Keep bracketed placeholders like [NAME_0] unchanged

Return ONLY the corrected text, nothing else."""

FULL_PROMPT = """You are a medical transcription specialist. Your task is to correct medical terminology in transcribed clinical notes.

INSTRUCTIONS:
1. Fix misspelled drug names (e.g., "metaprole" → "metoprolol", "lipator" → "atorvastatin")
2. Correct medical conditions (e.g., "new monya" → "pneumonia", "my card ee all" → "myocardial")
3. Fix anatomical terms (e.g., "fee mur" → "femur")
4. Correct procedure names and abbreviations
5. Fix dosage formats (e.g., "twenty five mig" → "25 mg")
6. Preserve the natural speech structure - don't reorganize the content
7. Keep non-medical words unchanged
8. Maintain punctuation and sentence structure
9. IMPORTANT: Preserve any bracketed placeholders like [NAME_0], [DOB_1], etc. exactly as they appear

Common corrections:
- Metoprolol, Lisinopril, Atorvastatin, Omeprazole, Amlodipine
- Pneumonia, Hypertension, Diabetes mellitus, Hyperlipidemia
- Myocardial infarction, Cerebrovascular accident, COPD
- BID (twice daily), TID (three times daily), QD (once daily)
- mg, mcg, mL, units

Return ONLY the corrected transcript without any explanations or preamble."""


@dataclass
class CorrectionResult:
    corrected_transcript: str
    corrected: bool
    phi_categories: dict[str, int]
    missing_tokens: int = 0

    @property
    def phi_tokens_count(self) -> int:
        return sum(self.phi_categories.values())


async def correct_terms(provider: LLMProvider, transcript, streaming: bool = False) -> CorrectionResult:
    """Correct medical terms in a dictated transcript.

    Correction is best effort: a provider with no API key or an unavailable
    model leaves the transcript as dictated (``corrected=False``). A rate
    limit or rejected credentials still raise, so the caller sees them.
    """
    if not isinstance(transcript, str) or not transcript:
        raise MalformedInput("no transcript provided")
    if not provider.configured:
        logger.error("%s has no API key; returning transcript unchanged", provider.config.name)
        return CorrectionResult(transcript, False, {})

    system = STREAMING_PROMPT if streaming else FULL_PROMPT
    redactor = phi.PHIRedactor()

    async def transform(cleaned: str) -> str:
        corrected = await provider.generate(
            f"Correct the medical terminology in this transcript:\n\n{cleaned}",
            system=system,
            temperature=TEMPERATURE,
        )
        return corrected.strip() or cleaned

    try:
        final = await phi.process_with_phi_protection(transcript, transform, redactor=redactor)
    except ExternalServiceUnavailable:
        logger.warning("Term correction skipped; returning transcript unchanged")
        return CorrectionResult(transcript, False, redactor.category_counts())

    return CorrectionResult(final, True, redactor.category_counts(), len(redactor.missing))
