"""PHI de-identification and re-identification around language-model calls.

Text goes out with every PHI span swapped for a ``[CATEGORY_N]`` placeholder
and comes back with the placeholders swapped for the original spans. The
placeholder table never leaves the request that built it.
"""

import logging
import re
from collections import Counter
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field

from notegate.errors import ExternalServiceError, ExternalServiceUnavailable, MalformedInput

logger = logging.getLogger("notegate.phi")

NAME = "NAME"
MRN = "MRN"
DOB = "DOB"
SSN = "SSN"
PHONE = "PHONE"
EMAIL = "EMAIL"
ADDRESS = "ADDRESS"
ROOM = "ROOM"

CATEGORIES = (NAME, MRN, DOB, SSN, PHONE, EMAIL, ADDRESS, ROOM)

# Catalog for call sites where street addresses cannot occur
NO_ADDRESS = (NAME, MRN, DOB, SSN, PHONE, EMAIL, ROOM)


@dataclass(frozen=True)
class PHIPattern:
    category: str
    regex: re.Pattern
    # Which group holds the PHI; 0 redacts the whole match and keeps nothing
    group: int = 0


@dataclass(frozen=True)
class PHIToken:
    placeholder: str
    original: str
    category: str


@dataclass
class DeidentificationResult:
    cleaned_text: str
    tokens: list[PHIToken] = field(default_factory=list)


# Applied in this order on every call. Labelled patterns (MRN, DOB, ROOM)
# redact only the identifier so the label survives as context for the model.
PATTERNS: tuple[PHIPattern, ...] = (
    PHIPattern(NAME, re.compile(
        r"\b(?:Mr|Mrs|Ms|Dr|Prof)\.\s+[A-Z][a-z]+(?:\s+[A-Z][a-z]+)?"
    )),
    PHIPattern(MRN, re.compile(
        r"\b(?:MRN|Medical\s+Record(?:\s+(?:Number|No\.?))?|Patient\s+ID)[:\s#]*"
        r"((?=[A-Z0-9-]*\d)[A-Z0-9-]+)",
        re.I,
    ), 1),
    PHIPattern(DOB, re.compile(
        r"\b(?:DOB|Date\s+of\s+Birth|Born(?:\s+on)?)[:\s]*"
        r"(\d{1,2}[/-]\d{1,2}[/-]\d{2,4})\b",
        re.I,
    ), 1),
    PHIPattern(DOB, re.compile(
        r"\b(\d{1,2}[/-]\d{1,2}[/-]\d{2,4})\s*(?:years?[\s-]*old|y\.?o\.?(?![a-z]))",
        re.I,
    ), 1),
    PHIPattern(SSN, re.compile(r"\b\d{3}-?\d{2}-?\d{4}\b")),
    PHIPattern(PHONE, re.compile(
        r"(?<![\w+(.@])(?:\+?1[-.\s]?)?(?:\(\d{3}\)|\d{3})[-.\s]?\d{3}[-.\s]?\d{4}\b"
    )),
    PHIPattern(EMAIL, re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")),
    PHIPattern(ADDRESS, re.compile(
        r"\b\d{1,6}\s+[A-Za-z]+\s+"
        r"(?:Street|St|Avenue|Ave|Road|Rd|Boulevard|Blvd|Drive|Lane|Ln|Way|Court|Ct)\b",
        re.I,
    )),
    PHIPattern(ROOM, re.compile(
        r"\b(?:Room|Rm|Bed)\b\.?[:\s#]*((?=[A-Z0-9-]*\d)[A-Z0-9-]+)",
        re.I,
    ), 1),
)


def _check_text(text) -> str:
    if not isinstance(text, str):
        raise MalformedInput()
    return text


def _patterns_for(categories: Iterable[str] | None) -> list[PHIPattern]:
    if categories is None:
        return list(PATTERNS)
    wanted = set(categories)
    unknown = wanted.difference(CATEGORIES)
    if unknown:
        raise ValueError(f"unknown PHI categories: {sorted(unknown)}")
    return [p for p in PATTERNS if p.category in wanted]


class PHIRedactor:
    """Request-scoped de-identifier.

    Holds the per-category counters and the token list for one request.
    Calling :meth:`deidentify` several times (one call per document of a
    batched request) keeps counting, so every placeholder issued by one
    redactor is unique. Build a new redactor per request; never share one.
    """

    def __init__(self, categories: Iterable[str] | None = None):
        self.patterns = _patterns_for(categories)
        self.tokens: list[PHIToken] = []
        self.missing: list[str] = []
        self._counters: dict[str, int] = {}
        self._reserved: list[str] = []

    def reserve(self, *texts: str) -> None:
        """Never issue a placeholder that already appears literally in ``texts``."""
        self._reserved.extend(_check_text(t) for t in texts)

    def _issue(self, category: str, original: str) -> str:
        n = self._counters.get(category, 0)
        while True:
            placeholder = f"[{category}_{n}]"
            n += 1
            if not any(placeholder in t for t in self._reserved):
                break
        self._counters[category] = n
        self.tokens.append(PHIToken(placeholder, original, category))
        return placeholder

    def tokenize(self, category: str, value: str) -> str:
        """Issue a placeholder for a structured field such as a chart name or MRN."""
        if category not in CATEGORIES:
            raise ValueError(f"unknown PHI category: {category}")
        value = _check_text(value)
        self.reserve(value)
        return self._issue(category, value)

    def deidentify(self, text: str) -> str:
        """Return ``text`` with every PHI span replaced; tokens accumulate on ``self.tokens``."""
        text = _check_text(text)
        if not text:
            return text
        self.reserve(text)
        # A placeholder can expose a neighbour to an earlier pattern (a `]`
        # where a word character used to be), so repeat until a pass is clean.
        # Placeholders never match, so every pass shrinks the unredacted text.
        while True:
            issued = len(self.tokens)
            for pattern in self.patterns:
                text = pattern.regex.sub(lambda m, p=pattern: self._replace(m, p), text)
            if len(self.tokens) == issued:
                return text

    def _replace(self, match: re.Match, pattern: PHIPattern) -> str:
        start, end = match.span(pattern.group)
        placeholder = self._issue(pattern.category, match.group(pattern.group))
        whole = match.group(0)
        offset = match.start()
        return whole[: start - offset] + placeholder + whole[end - offset:]

    def restore(self, transformed: str) -> str:
        """Re-identify a transform output, recording placeholders it dropped."""
        self.missing = missing_placeholders(_check_text(transformed), self.tokens)
        if self.missing:
            logger.warning("%d of %d placeholders missing from model output", len(self.missing), len(self.tokens))
        return reidentify(transformed, self.tokens)

    def category_counts(self) -> dict[str, int]:
        return category_counts(self.tokens)


def deidentify(text: str, categories: Iterable[str] | None = None) -> DeidentificationResult:
    """De-identify one text with fresh counters."""
    redactor = PHIRedactor(categories)
    cleaned = redactor.deidentify(text)
    return DeidentificationResult(cleaned, redactor.tokens)


def reidentify(text: str, tokens: Iterable[PHIToken]) -> str:
    """Put original spans back by literal placeholder replacement.

    Placeholders the transform dropped or mangled are skipped without error,
    so their PHI is simply absent from the result.
    """
    result = _check_text(text)
    for token in tokens:
        result = result.replace(token.placeholder, token.original)
    return result


def missing_placeholders(text: str, tokens: Iterable[PHIToken]) -> list[str]:
    return [t.placeholder for t in tokens if t.placeholder not in text]


def category_counts(tokens: Iterable[PHIToken]) -> dict[str, int]:
    return dict(Counter(t.category for t in tokens))


def scan(text: str, categories: Iterable[str] | None = None) -> list[str]:
    """Categories of every PHI match still present in ``text``."""
    text = _check_text(text)
    return [p.category for p in _patterns_for(categories) for _ in p.regex.finditer(text)]


Transform = Callable[[str], Awaitable[str]]


async def call_transform(transform: Transform, cleaned_text: str) -> str:
    """Await the external transform, converting any failure to a PHI-free error."""
    try:
        result = await transform(cleaned_text)
    except ExternalServiceError:
        raise
    except Exception as exc:
        # Exception text may quote the prompt; report the type only
        logger.warning("Transform failed: %s", type(exc).__name__)
        raise ExternalServiceUnavailable() from None
    if not isinstance(result, str):
        raise ExternalServiceUnavailable("language model returned no text")
    return result


async def process_with_phi_protection(
    raw_text: str,
    transform: Transform,
    categories: Iterable[str] | None = None,
    redactor: PHIRedactor | None = None,
) -> str:
    """De-identify, transform, re-identify. Returns only the final text.

    Pass ``redactor`` to read its token counts afterwards; ``categories`` is
    then taken from the redactor.
    """
    redactor = redactor or PHIRedactor(categories)
    cleaned = redactor.deidentify(raw_text)
    logger.info("De-identified %s", redactor.category_counts() or "no PHI")
    transformed = await call_transform(transform, cleaned)
    return redactor.restore(transformed)


async def process_batch_with_phi_protection(
    documents: list[str],
    transform: Transform,
    joiner: str = "\n\n",
    categories: Iterable[str] | None = None,
    redactor: PHIRedactor | None = None,
) -> str:
    """Like :func:`process_with_phi_protection` for several documents sent in one call."""
    if not isinstance(documents, list):
        raise MalformedInput("documents must be a list of strings")
    redactor = redactor or PHIRedactor(categories)
    redactor.reserve(*documents)
    cleaned = joiner.join(redactor.deidentify(doc) for doc in documents)
    logger.info("De-identified %d documents: %s", len(documents), redactor.category_counts() or "no PHI")
    transformed = await call_transform(transform, cleaned)
    return redactor.restore(transformed)
