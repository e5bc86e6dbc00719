"""NoteGate: FastAPI app that fronts language-model generation with PHI protection."""

import logging
import os
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from notegate import audit, billing, corrections, handoff, notes, providers
from notegate.errors import (
    ExternalServiceAuthError,
    ExternalServiceRateLimited,
    MalformedInput,
    NoteGateError,
)

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
logger = logging.getLogger("notegate")

AUDIT_DB = os.environ.get("AUDIT_DB", "/data/audit/notegate.db")
SCHEMA_PATH = os.environ.get("SCHEMA_PATH", audit.SCHEMA_PATH)
CONFIG_PATH = os.environ.get("CONFIG_PATH", "/app/config/config.json")

GENERIC_FAILURE = "generation failed, please retry"


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    audit_dir = os.path.dirname(AUDIT_DB)
    if audit_dir:
        os.makedirs(audit_dir, exist_ok=True)
    await audit.init_db(AUDIT_DB, SCHEMA_PATH)
    providers.load_providers(CONFIG_PATH)
    logger.info("NoteGate started")
    yield
    # Shutdown
    await audit.close_db()
    logger.info("NoteGate stopped")


app = FastAPI(title="NoteGate", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class RequestContext(BaseModel):
    user_id: str | None = None
    tenant_id: str = "default"


class NoteRequest(RequestContext):
    transcript: str
    note_type: str = "progress"
    patient_info: dict | None = None
    radiology_context: dict | None = None
    note_preferences: dict | None = None


class NoteResponse(BaseModel):
    success: bool = True
    note: str
    billing: dict
    structured_category: str | None = None
    is_radiology: bool
    billing_validation: dict
    phi_protected: bool = True


class HandoffRequest(RequestContext):
    notes: list[dict]
    patients: list[dict] = []


class HandoffResponse(BaseModel):
    success: bool = True
    handoff: str
    phi_protected: bool = True
    format: str = "structured"
    sections: list[str]


class BillingValidationRequest(BaseModel):
    icd10: list = []
    cpt: list = []
    modifiers: list = []


class CorrectionRequest(RequestContext):
    transcript: str
    streaming: bool = False


class CorrectionResponse(BaseModel):
    success: bool = True
    corrected_transcript: str
    corrected: bool = True
    phi_protected: bool = True
    phi_tokens_count: int


# ---------------------------------------------------------------------------
# Error mapping. Bodies are fixed strings, never request text
# ---------------------------------------------------------------------------

def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    # The default body echoes the offending input back
    return _error(400, "malformed request")


@app.exception_handler(NoteGateError)
async def gateway_error(request: Request, exc: NoteGateError):
    if isinstance(exc, MalformedInput):
        return _error(400, str(exc))
    if isinstance(exc, ExternalServiceRateLimited):
        return _error(429, "rate limit exceeded, please try again later")
    if isinstance(exc, ExternalServiceAuthError):
        logger.error("Language model credentials rejected or missing")
    return _error(502, GENERIC_FAILURE)


async def _audited(action: str, request: RequestContext, call):
    """Run a generation against the default provider and record the outcome."""
    provider = providers.get_provider()
    if provider is None:
        raise ExternalServiceAuthError("no language model provider configured")
    t0 = time.time()
    entry = {
        "tenant_id": request.tenant_id,
        "user_id": request.user_id,
        "action": action,
        "params": request.model_dump(),
        "provider": provider.config.name,
        "model": provider.config.model,
    }
    try:
        result = await call(provider)
    except NoteGateError as exc:
        await audit.log_generation(
            outcome=type(exc).__name__, latency_ms=int((time.time() - t0) * 1000), **entry
        )
        raise
    await audit.log_generation(
        outcome="success",
        phi_categories=result.phi_categories,
        missing_tokens=result.missing_tokens,
        latency_ms=int((time.time() - t0) * 1000),
        **entry,
    )
    return result


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
async def health():
    """Health check: checks each configured language-model provider."""
    statuses = {}
    for name, provider in providers.all_providers().items():
        statuses[name] = "ok" if await provider.is_available() else "unavailable"
    all_ok = bool(statuses) and all(s == "ok" for s in statuses.values())
    return {
        "status": "ok" if all_ok else "degraded",
        "service": "notegate",
        "providers": statuses,
    }


@app.post("/notes/generate", response_model=NoteResponse)
async def generate_note(request: NoteRequest):
    """Generate a clinical note or radiology report with billing codes."""
    result = await _audited(
        "generate_note",
        request,
        lambda provider: notes.generate_note(
            provider,
            request.transcript,
            note_type=request.note_type,
            patient_info=request.patient_info,
            radiology_context=request.radiology_context,
            note_preferences=request.note_preferences,
        ),
    )
    return NoteResponse(
        note=result.note,
        billing=result.billing,
        structured_category=result.structured_category,
        is_radiology=result.is_radiology,
        billing_validation=result.billing_validation,
    )


@app.post("/handoffs/generate", response_model=HandoffResponse)
async def generate_handoff(request: HandoffRequest):
    """Generate a structured shift handoff across the given patients' notes."""
    result = await _audited(
        "generate_handoff",
        request,
        lambda provider: handoff.generate_handoff(provider, request.notes, request.patients),
    )
    return HandoffResponse(handoff=result.handoff, sections=handoff.SECTIONS)


@app.post("/transcripts/correct", response_model=CorrectionResponse)
async def correct_transcript(request: CorrectionRequest):
    """Fix medical terminology in a dictated transcript."""
    result = await _audited(
        "correct_terms",
        request,
        lambda provider: corrections.correct_terms(provider, request.transcript, request.streaming),
    )
    return CorrectionResponse(
        corrected_transcript=result.corrected_transcript,
        corrected=result.corrected,
        phi_tokens_count=result.phi_tokens_count,
    )


@app.post("/billing/validate")
async def validate_billing(request: BillingValidationRequest):
    """Format, bundling and consistency checks for a set of billing codes."""
    return {"success": True, **billing.validate_billing(request.model_dump())}


@app.get("/audit")
async def recent_audit(tenant_id: str = "default", limit: int = 50):
    """Recent generation outcomes with PHI category counts."""
    return {"entries": await audit.recent_generations(tenant_id, min(max(limit, 1), 500))}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "3000")))
