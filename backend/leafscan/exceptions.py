"""
LeafScan Backend — Custom Exception Hierarchy
===============================================

What:  Application-specific exceptions, one per failure kind of the
       diagnosis pipeline.
How:   Each exception carries a user-safe message and an optional context
       dict. Global exception handlers (registered in main.py) are the single
       place that maps an exception type to an HTTP status.
Who:   Raised by services and the analyze route; caught by global handlers.

Exception Hierarchy:
    LeafScanError (base)
    ├── ConfigurationError          → 500 Internal Server Error
    ├── InputError                  → 400 Bad Request
    │   ├── PayloadTooLargeError    → 413 Payload Too Large
    │   └── DecodeError             → 400 Bad Request
    ├── UnsupportedMediaTypeError   → 415 Unsupported Media Type
    ├── DownstreamError             → 502 Bad Gateway
    │   └── InferenceTimeoutError   → 502 Bad Gateway
    ├── FormatError                 → 502 Bad Gateway
    │   └── SchemaError             → 502 Bad Gateway
    └── InternalServiceError        → 500 Internal Server Error

Rate limiting has no exception: a throttled client gets a normal 200
response carrying `rateLimited: true` (see services/usage_tracker.py).

`message` may be returned to the client. `context` is logged server-side and
never serialized into a response.
"""

from typing import Any, Dict, Optional


def _format_size(num_bytes: int) -> str:
    """Human-readable byte count for client messages: "1.5MB", "512KB"."""
    if num_bytes >= 1024 * 1024:
        return f"{num_bytes / (1024 * 1024):.1f}MB"
    return f"{max(1, round(num_bytes / 1024))}KB"


class LeafScanError(Exception):
    """
    Base exception for all LeafScan application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (logged but NOT returned to client)
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ConfigurationError(LeafScanError):
    """
    Raised when the service cannot run a request because it is misconfigured.

    When:    GEMINI_API_KEY missing.
    HTTP:    500 Internal Server Error

    Fatal to the request only. The process keeps serving (health checks
    report the problem) so the fix is a redeploy, not a crash loop.
    """

    def __init__(
        self,
        message: str = "The diagnosis service is not configured",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class InputError(LeafScanError):
    """
    Raised when the submitted image payload is missing or malformed.

    When:    No `image` field, non-string JSON value, invalid base64, empty file.
    HTTP:    400 Bad Request
    """

    def __init__(
        self,
        message: str = "Invalid image payload",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class PayloadTooLargeError(InputError):
    """
    Raised when the image exceeds the byte ceiling.

    Checked on the declared Content-Length (before the body is read) and on
    the decoded byte length (before Pillow touches the data).
    HTTP:    413 Payload Too Large
    """

    def __init__(
        self,
        max_bytes: int,
        actual_bytes: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        limit = _format_size(max_bytes)
        ctx = context or {}
        ctx["max_bytes"] = max_bytes
        if actual_bytes is not None:
            ctx["actual_bytes"] = actual_bytes
        super().__init__(
            message=f"La imagen supera el tamaño máximo de {limit}.",
            field="image",
            context=ctx,
        )
        self.max_bytes = max_bytes
        self.actual_bytes = actual_bytes


class DecodeError(InputError):
    """
    Raised when the payload bytes are not a decodable raster image.

    HTTP:    400 Bad Request
    """

    def __init__(
        self,
        message: str = "El archivo no es una imagen válida.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, field="image", context=context)


class UnsupportedMediaTypeError(LeafScanError):
    """
    Raised when the request Content-Type is neither multipart/form-data nor
    application/json.

    HTTP:    415 Unsupported Media Type
    """

    def __init__(
        self,
        content_type: str = "",
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["content_type"] = content_type
        super().__init__(
            message="Content-Type no soportado. Use multipart/form-data o application/json.",
            context=ctx,
        )
        self.content_type = content_type


class DownstreamError(LeafScanError):
    """
    Raised when the external inference call fails.

    What:    Gemini returned an error, an empty/blocked response, or the
             connection failed.
    HTTP:    502 Bad Gateway
    """

    def __init__(
        self,
        message: str = "El servicio de análisis no está disponible en este momento.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class InferenceTimeoutError(DownstreamError):
    """
    Raised when a single inference attempt exceeds the configured timeout.

    HTTP:    502 Bad Gateway
    """

    def __init__(
        self,
        timeout: float,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["timeout"] = timeout
        super().__init__(
            message="El servicio de análisis tardó demasiado en responder.",
            context=ctx,
        )
        self.timeout = timeout


class FormatError(LeafScanError):
    """
    Raised when the model output contains no parseable JSON object.

    When:    No `{` / `}` in the text, or the enclosed span is not valid JSON.
    HTTP:    502 Bad Gateway
    """

    def __init__(
        self,
        message: str = "Model output did not contain a JSON object",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class SchemaError(FormatError):
    """
    Raised when a JSON object was found but violates the diagnosis schema.

    Attributes:
        field: Name of the first offending field (e.g. "confidence").
    HTTP:    502 Bad Gateway
    """

    def __init__(
        self,
        field: str,
        reason: str = "invalid value",
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["field"] = field
        ctx["reason"] = reason
        super().__init__(
            message=f"Model output field '{field}' is invalid: {reason}",
            context=ctx,
        )
        self.field = field
        self.reason = reason


class InternalServiceError(LeafScanError):
    """
    Wraps an unexpected exception raised inside the pipeline.

    The original exception is logged with its traceback; the client only
    sees a generic message.
    HTTP:    500 Internal Server Error
    """

    def __init__(
        self,
        message: str = "Error interno al analizar la imagen.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)
