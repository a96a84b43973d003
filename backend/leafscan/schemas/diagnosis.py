"""
LeafScan Backend — Pydantic Request/Response Schemas
======================================================

What:  Pydantic models defining the API contract and the diagnosis result.
How:   DiagnosisResult doubles as the validator for model output: the result
       parser feeds it untrusted dicts and maps any ValidationError to
       SchemaError. Response wrappers are serialized by FastAPI.
Who:   Result parser, policy filter, analyze route, health route.

Strictness:
    Model output is untrusted, so DiagnosisResult never coerces. "0.8" is not
    a confidence, True is not a confidence, "moderate" is not a severity.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ══════════════════════════════════════════════════════════════════════════
# Diagnosis Result
# ══════════════════════════════════════════════════════════════════════════


class Severity(str, Enum):
    """Closed severity scale. Values are what the model is instructed to emit."""

    LOW = "Leve"
    MODERATE = "Moderada"
    SEVERE = "Severa"


class DiagnosisResult(BaseModel):
    """
    What:  A validated plant diagnosis.
    Who:   Created only by services.result_parser.validate_candidate().
    When:  After the model response has been parsed; immutable afterwards
           (the policy filter substitutes `treatment` via model_copy).

    Unknown keys in the model output are ignored rather than rejected; the
    response only ever carries these five fields.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    disease: str = Field(strict=True, min_length=1, description="Detected condition")
    confidence: float = Field(
        strict=True, ge=0.0, le=1.0, description="Model confidence in [0, 1]"
    )
    description: str = Field(strict=True, min_length=1, description="What the condition looks like")
    treatment: str = Field(strict=True, min_length=1, description="Organic remedial action")
    severity: Severity = Field(description="Leve, Moderada or Severa")

    @field_validator("disease", "description", "treatment")
    @classmethod
    def reject_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v

    @field_validator("severity", mode="before")
    @classmethod
    def require_severity_string(cls, v: Any) -> Any:
        # Enum lookup would otherwise accept a Severity instance only by value;
        # anything that is not a string is rejected outright.
        if isinstance(v, Severity):
            return v
        if not isinstance(v, str):
            raise ValueError("must be a string")
        return v


# ══════════════════════════════════════════════════════════════════════════
# Request Models
# ══════════════════════════════════════════════════════════════════════════


class AnalyzeJSONRequest(BaseModel):
    """
    What:  JSON body variant of POST /analyze.
    How:   `image` is either a data URI (data:image/jpeg;base64,...) or bare
           base64. Decoding happens in ImageService.decode_base64_image().
    """

    image: str = Field(strict=True, description="Data URI or bare base64 image")


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


class RateLimitedResponse(BaseModel):
    """
    What:  Soft throttling response, returned with HTTP 200.
    Why 200: throttling is a normal outcome the UI displays as a notice;
             clients branch on `rateLimited` instead of on a status code.
    """

    model_config = ConfigDict(populate_by_name=True)

    rate_limited: bool = Field(default=True, alias="rateLimited")
    message: str = Field(description="Advisory text shown to the user")


class ErrorResponse(BaseModel):
    """
    What:  Standardized error response format for all API errors.

    Fields:
        error: Machine-readable error code (e.g., "invalid_image")
        message: Human-readable, generic description
        request_id: Correlation ID for tracing this error in server logs
    """

    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    """Health check response: service status plus configuration state."""

    status: str = Field(description="Overall service status: healthy, degraded")
    version: str = Field(description="Application version")
    gemini: str = Field(
        description="Gemini status: configured, not_configured, or with ?deep=true available, unavailable"
    )
    tracked_clients: int = Field(description="Client keys currently held by the usage tracker")
    uptime_seconds: float = Field(description="Seconds since service started")
