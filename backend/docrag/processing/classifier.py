"""
Single-Pass Type Classification & Chip Extraction
══════════════════════════════════════════════════

One call to a ReasoningService picks the best-fitting document type from the
available templates AND extracts that type's chip values.

    cleaned text ──► truncate (15 000 chars) ──► prompt(templates) ──► service
                                                                         │
    ClassificationResult ◄── validate ◄── parse JSON (fence-tolerant) ◄──┘

Degradation ladder (ingestion never fails because of classification)
─────────────────────────────────────────────────────────────────────
  valid JSON        type checked against templates (unknown → "misc"),
                    chips restricted to the chosen template's fields,
                    confidence clamped to [0, 1] (non-numeric → 0.5)
  unparsable JSON   sniff a quoted type name in the raw text → confidence 0.3,
                    otherwise "misc" at 0.1
  service failure   "misc", confidence 0, placeholder chips

Cancellation is checked before the service call and is never swallowed.
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field

from docrag.core.cancellation import CancellationToken, checkpoint
from docrag.core.config import settings
from docrag.llm.base import ReasoningService
from docrag.processing.templates import (
    FALLBACK_TYPE,
    DocumentTemplate,
    StaticTemplateProvider,
    TemplateProvider,
    with_fallback,
)

logger = logging.getLogger(__name__)

TRUNCATION_NOTICE = "\n\n[... document continues ...]"

DEFAULT_CONFIDENCE       = 0.5
SNIFFED_CONFIDENCE       = 0.3
PARSE_FALLBACK_CONFIDENCE = 0.1

_FENCE_OPEN_RE  = re.compile(r"^```(?:json)?\s*\n?", re.I)
_FENCE_CLOSE_RE = re.compile(r"\n?```\s*$")


@dataclass
class ClassificationResult:
    """
    Attributes:
        file_type:  Template type_name (always one of the offered templates).
        confidence: Advisory only, in [0, 1]; never gates later stages.
        chips:      Exactly the chosen template's fields, "" when not found.
        reasoning:  Model explanation, or why a fallback was used.
        degraded:   True when the result came from a fallback path.
    """
    file_type:  str
    confidence: float
    chips:      dict[str, str] = field(default_factory=dict)
    reasoning:  str | None     = None
    degraded:   bool           = False
    elapsed_ms: float          = 0.0


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

def truncate_for_classification(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_NOTICE


def build_classification_prompt(text: str, templates: list[DocumentTemplate]) -> str:
    type_blocks = []
    for template in templates:
        block = f'TYPE: "{template.type_name}"\n  Fields to extract: {", ".join(template.chip_fields)}'
        if template.extraction_prompt:
            block += f"\n  Hint: {template.extraction_prompt}"
        type_blocks.append(block)
    types_description = "\n\n".join(type_blocks)

    return f"""You are a document classifier and metadata extractor. Analyze the document below and:

1. Determine which document type it matches best
2. Extract the metadata fields for that type

AVAILABLE DOCUMENT TYPES:

{types_description}

INSTRUCTIONS:

1. Read the document carefully
2. Choose the BEST matching type (if none fit well, use "{FALLBACK_TYPE}")
3. Extract values for ALL fields of that type
4. If a field's value cannot be found, use empty string ""
5. For dates, use the format found in the document (don't normalize)
6. For addresses, include full address as written

Respond in this EXACT JSON format (no markdown, no code blocks, just raw JSON):

{{
  "file_type": "the_chosen_type",
  "confidence": 0.95,
  "reasoning": "Brief explanation of why this type was chosen",
  "chips": {{
    "field_name_1": "extracted value",
    "field_name_2": "extracted value"
  }}
}}

DOCUMENT TO ANALYZE:

{text}

Respond with JSON only:"""


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _strip_code_fence(raw: str) -> str:
    text = raw.strip()
    text = _FENCE_OPEN_RE.sub("", text)
    text = _FENCE_CLOSE_RE.sub("", text)
    return text.strip()


def _clamp_confidence(value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_CONFIDENCE
    return min(1.0, max(0.0, float(value)))


def _chip_value(value: object) -> str:
    if value is None:
        return ""
    return value.strip() if isinstance(value, str) else str(value)


def parse_classification_response(raw: str, templates: list[DocumentTemplate]) -> ClassificationResult:
    """Turn model output into a validated result; never raises."""
    by_name = {t.type_name: t for t in templates}

    try:
        parsed = json.loads(_strip_code_fence(raw))
        if not isinstance(parsed, dict):
            raise ValueError(f"expected a JSON object, got {type(parsed).__name__}")
    except ValueError as exc:
        logger.warning("Classifier | unparsable response (%s): %.200s", exc, raw)
        return _sniff_type(raw, templates)

    file_type = parsed.get("file_type")
    if file_type not in by_name:
        logger.info("Classifier | unknown type %r, using %s", file_type, FALLBACK_TYPE)
        file_type = FALLBACK_TYPE
    template = by_name[file_type]

    raw_chips = parsed.get("chips")
    raw_chips = raw_chips if isinstance(raw_chips, dict) else {}
    chips = {name: _chip_value(raw_chips.get(name)) for name in template.chip_fields}

    reasoning = parsed.get("reasoning")
    return ClassificationResult(
        file_type=file_type,
        confidence=_clamp_confidence(parsed.get("confidence")),
        chips=chips,
        reasoning=str(reasoning) if reasoning else None,
    )


def _sniff_type(raw: str, templates: list[DocumentTemplate]) -> ClassificationResult:
    lowered = raw.lower()
    for template in templates:
        name = template.type_name.lower()
        if f'"{name}"' in lowered or f'type": "{name}' in lowered:
            return ClassificationResult(
                file_type=template.type_name,
                confidence=SNIFFED_CONFIDENCE,
                chips=template.empty_chips(),
                reasoning="parse failure: partial extraction, type sniffed from raw response",
                degraded=True,
            )

    fallback = next(t for t in templates if t.type_name == FALLBACK_TYPE)
    return ClassificationResult(
        file_type=FALLBACK_TYPE,
        confidence=PARSE_FALLBACK_CONFIDENCE,
        chips=fallback.empty_chips(),
        reasoning="parse failure: could not parse response",
        degraded=True,
    )


def service_failure_result(error: BaseException, templates: list[DocumentTemplate]) -> ClassificationResult:
    fallback = next(t for t in templates if t.type_name == FALLBACK_TYPE)
    chips = fallback.empty_chips()
    if "document_title" in chips:
        chips["document_title"] = "Unknown Document"
    if "summary" in chips:
        chips["summary"] = "Classification failed - document stored as miscellaneous."
    return ClassificationResult(
        file_type=FALLBACK_TYPE,
        confidence=0.0,
        chips=chips,
        reasoning=f"Classification failed: {error}",
        degraded=True,
    )


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------

class DocumentClassifier:

    def __init__(
        self,
        service:           ReasoningService,
        template_provider: TemplateProvider | None = None,
        max_chars:         int | None = None,
    ) -> None:
        self._service   = service
        self._provider  = template_provider or StaticTemplateProvider()
        self._max_chars = max_chars or settings.classification_max_chars

    async def classify(
        self,
        text:         str,
        templates:    list[DocumentTemplate] | None = None,
        cancellation: CancellationToken | None = None,
    ) -> ClassificationResult:
        t0 = time.monotonic()
        available = with_fallback(templates if templates is not None else await self._provider.get_templates())

        prompt = build_classification_prompt(
            truncate_for_classification(text, self._max_chars), available,
        )

        await checkpoint(cancellation, "Classification cancelled")

        try:
            raw = await self._service.complete(prompt)
        except Exception as exc:
            logger.error(
                "Classifier | service=%s failed, falling back to %s: %s",
                self._service.provider_name, FALLBACK_TYPE, exc,
            )
            result = service_failure_result(exc, available)
        else:
            result = parse_classification_response(raw, available)

        result.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Classifier | type=%s confidence=%.2f chips=%d degraded=%s elapsed_ms=%.0f",
            result.file_type, result.confidence,
            sum(1 for v in result.chips.values() if v), result.degraded, result.elapsed_ms,
        )
        return result
