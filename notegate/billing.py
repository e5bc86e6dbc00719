"""Format and consistency checks for ICD-10 / CPT codes returned by the model."""

import logging
import re
from dataclasses import asdict, dataclass, field

logger = logging.getLogger("notegate.billing")

ICD10_PATTERN = re.compile(r"^[A-TV-Z]\d{2}(\.\d{1,4})?$", re.I)
CPT_PATTERN = re.compile(r"^\d{5}$")
MODIFIER_PATTERN = re.compile(r"^(-?\d{2}|[A-Z]{2}|\d[A-Z]|[A-Z]\d)$")

ICD10_PREFIXES = {
    "E": "Endocrine, nutritional and metabolic diseases",
    "I": "Circulatory system diseases",
    "J": "Respiratory system diseases",
    "K": "Digestive system diseases",
    "M": "Musculoskeletal diseases",
    "N": "Genitourinary system diseases",
    "R": "Symptoms and signs",
    "Z": "Factors influencing health status",
    "S": "Injuries",
    "T": "Injuries, poisoning",
    "C": "Neoplasms",
    "D": "Blood diseases / Neoplasms",
    "F": "Mental disorders",
    "G": "Nervous system diseases",
    "H": "Eye and ear diseases",
    "L": "Skin diseases",
    "O": "Pregnancy complications",
    "P": "Perinatal conditions",
    "Q": "Congenital malformations",
}

# (low, high, category); first match wins
CPT_RANGES = [
    (99201, 99499, "Evaluation and Management"),
    (100, 1999, "Anesthesia"),
    (10004, 69990, "Surgery"),
    (70010, 79999, "Radiology"),
    (80047, 89398, "Pathology and Laboratory"),
    (90281, 99199, "Medicine"),
]

RADIOLOGY_RANGE = (70010, 79999)
MDM_LEVELS = (99213, 99215)
HIGH_LEVEL_EM = {"99214", "99215", "99223", "99233"}

BUNDLING_RULES = [
    ("99214", {"99211", "99212", "99213"}, "Lower E/M codes bundle into higher levels"),
    ("99215", {"99211", "99212", "99213", "99214"}, "Lower E/M codes bundle into higher levels"),
    ("71046", {"71045"}, "Single view chest X-ray bundles into 2-view"),
]


@dataclass
class CodeCheck:
    code: str
    code_type: str
    valid: bool = True
    format_valid: bool = False
    category: str | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)


def _code(entry) -> str:
    """Codes arrive as {"code": ...} objects, but bare strings and numbers are accepted."""
    if isinstance(entry, dict):
        entry = entry.get("code")
    return "" if entry is None else str(entry).strip().upper()


def _as_list(value) -> list:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _in_range(code: str, bounds: tuple[int, int]) -> bool:
    return code.isdigit() and bounds[0] <= int(code) <= bounds[1]


def validate_icd10(code: str) -> CodeCheck:
    check = CodeCheck(code=code, code_type="icd10")
    check.format_valid = bool(ICD10_PATTERN.match(code))
    if not check.format_valid:
        check.valid = False
        check.errors.append(f"Invalid ICD-10 format: {code}. Expected format: A00.0 or A00.00")
        return check

    check.category = ICD10_PREFIXES.get(code[0])
    if check.category is None:
        check.warnings.append(f"Uncommon ICD-10 prefix: {code[0]}")

    _, _, subcode = code.partition(".")
    if len(subcode) < 2:
        check.warnings.append("Consider using more specific ICD-10 code for better documentation")
    if code.startswith("R"):
        check.warnings.append("Symptom codes (R-codes) may require more specific diagnosis if available")
    if code.startswith("Z"):
        check.warnings.append("Z-codes may need supporting diagnosis for medical necessity")
    return check


def validate_cpt(code: str) -> CodeCheck:
    check = CodeCheck(code=code, code_type="cpt")
    check.format_valid = bool(CPT_PATTERN.match(code))
    if not check.format_valid:
        check.valid = False
        check.errors.append(f"Invalid CPT format: {code}. Expected 5-digit code")
        return check

    number = int(code)
    for low, high, category in CPT_RANGES:
        if low <= number <= high:
            check.category = category
            break

    if code.endswith("99"):
        check.warnings.append("Unlisted procedure code - requires detailed documentation")
    if _in_range(code, MDM_LEVELS):
        check.warnings.append(f"{code} requires MDM documentation to support level")
    if _in_range(code, RADIOLOGY_RANGE):
        check.suggestions.append("Consider adding modifier -26 for professional component if applicable")
    return check


def bundling_warnings(cpt_codes: list[str]) -> list[str]:
    warnings = []
    for primary, bundled, message in BUNDLING_RULES:
        if primary in cpt_codes:
            found = [c for c in cpt_codes if c in bundled]
            if found:
                warnings.append(f"Bundling issue: {', '.join(found)} may bundle into {primary}. {message}")

    seen, duplicates = set(), []
    for code in cpt_codes:
        if code in seen and code not in duplicates:
            duplicates.append(code)
        seen.add(code)
    if duplicates:
        warnings.append(f"Duplicate CPT codes detected: {', '.join(duplicates)}")
    return warnings


def consistency_warnings(icd10_codes: list[str], cpt_codes: list[str]) -> list[str]:
    """Diagnosis/procedure pairings that payers commonly question."""
    warnings = []
    if not icd10_codes and any(_in_range(c, RADIOLOGY_RANGE) for c in cpt_codes):
        warnings.append("Radiology procedures require supporting diagnosis codes")
    if (
        icd10_codes
        and any(c in HIGH_LEVEL_EM for c in cpt_codes)
        and all(c.startswith("R") for c in icd10_codes)
    ):
        warnings.append("High-level E/M with only symptom codes may be questioned - consider specific diagnoses")
    return warnings


def modifier_warnings(modifiers: list) -> list[str]:
    return [
        f"Invalid modifier format: {m}"
        for m in modifiers
        if not MODIFIER_PATTERN.match(str(m).replace("-", "", 1))
    ]


def validate_billing(billing: dict) -> dict:
    """Check every code in a billing block and summarize the findings.

    ``billing`` holds ``icd10`` and ``cpt`` lists and optional ``modifiers``.
    Nothing here raises for bad codes; problems are reported in the result.
    """
    icd10_codes = [_code(e) for e in _as_list(billing.get("icd10"))]
    cpt_codes = [_code(e) for e in _as_list(billing.get("cpt"))]
    modifiers = _as_list(billing.get("modifiers"))

    checks = [validate_icd10(c) for c in icd10_codes] + [validate_cpt(c) for c in cpt_codes]
    bundling = bundling_warnings(cpt_codes)
    consistency = consistency_warnings(icd10_codes, cpt_codes)

    summary = {
        "total_codes": len(checks),
        "valid_codes": sum(1 for c in checks if c.valid),
        "errors": any(c.errors for c in checks),
        "warnings": any(c.warnings for c in checks) or bool(bundling or consistency),
    }
    logger.info(
        "Validated %d ICD-10 and %d CPT codes (%d invalid)",
        len(icd10_codes), len(cpt_codes), summary["total_codes"] - summary["valid_codes"],
    )
    return {
        "valid": all(c.valid for c in checks),
        "icd10": [asdict(c) for c in checks if c.code_type == "icd10"],
        "cpt": [asdict(c) for c in checks if c.code_type == "cpt"],
        "bundling_warnings": bundling,
        "consistency_warnings": consistency,
        "modifier_warnings": modifier_warnings(modifiers),
        "summary": summary,
    }
