"""
LeafScan Backend — Model Output Parser
========================================

What:  Recovers a DiagnosisResult from free-form model text.
How:   Two phases, each with its own failure kind:

    raw text ──extract_candidate()──▶ RawCandidate ──validate_candidate()──▶ DiagnosisResult
               FormatError                            SchemaError

    Phase 1 takes the span from the first "{" to the last "}" and parses it
    as JSON. Models often wrap the object in prose or markdown fences despite
    being told not to; slicing on the outermost braces absorbs that.

    Why two error types: a FormatError means the model ignored the output
    format, a SchemaError means it followed the format with bad values. Both
    are a 502 for the client; the log line says which one happened.

    Phase 2 validates every field. Nothing from phase 1 is used until the
    whole object passes; there are no partial results.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict

from pydantic import ValidationError as PydanticValidationError

from leafscan.exceptions import FormatError, SchemaError
from leafscan.schemas.diagnosis import DiagnosisResult

logger = logging.getLogger(__name__)

# Raw model text is logged truncated
_LOG_PREVIEW_CHARS = 200


@dataclass(frozen=True)
class RawCandidate:
    """Parsed but unvalidated JSON object found in the model text."""

    span: str
    data: Dict[str, Any]


def extract_candidate(raw_text: str) -> RawCandidate:
    """
    Locate and parse the JSON object embedded in `raw_text`.

    Raises:
        FormatError: no "{" or no "}" after it, or the span is not valid JSON
    """
    start = raw_text.find("{")
    end = raw_text.rfind("}")
    if start == -1 or end == -1 or end < start:
        logger.warning("No JSON object in model output: %r", raw_text[:_LOG_PREVIEW_CHARS])
        raise FormatError(context={"reason": "missing_braces", "length": len(raw_text)})

    span = raw_text[start:end + 1]
    try:
        data = json.loads(span)
    except json.JSONDecodeError as e:
        logger.warning("Model output JSON did not parse: %s", e)
        raise FormatError(
            message="Model output JSON could not be parsed",
            context={"reason": "invalid_json", "error": str(e)},
        )

    # A brace-delimited span that parses is always an object; checked anyway
    if not isinstance(data, dict):
        raise FormatError(context={"reason": "not_an_object"})

    return RawCandidate(span=span, data=data)


def validate_candidate(candidate: RawCandidate) -> DiagnosisResult:
    """
    Validate a parsed candidate against the DiagnosisResult schema.

    Raises:
        SchemaError: naming the first offending field
    """
    try:
        return DiagnosisResult.model_validate(candidate.data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or "<root>"
        reason = first.get("msg", "invalid value")
        logger.warning(
            "Model output failed schema validation (%d errors), first: %s: %s",
            e.error_count(),
            field,
            reason,
        )
        raise SchemaError(field=field, reason=reason, context={"error_count": e.error_count()})


def extract_diagnosis(raw_text: str) -> DiagnosisResult:
    """Both phases: raw model text to a validated DiagnosisResult."""
    return validate_candidate(extract_candidate(raw_text))
