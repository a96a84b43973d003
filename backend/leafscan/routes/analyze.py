"""
LeafScan Backend — Analyze Route Handler
==========================================

What:  Handles POST /analyze, the single diagnosis endpoint.
How:   Checks configuration, gates on the usage tracker, negotiates the
       payload shape, then hands the image to DiagnosisService.
Who:   Called by the frontend analyzer component.

Request Flow:
    1. GEMINI_API_KEY present?           no  → 500 (ConfigurationError)
    2. Usage tracker admits client?      no  → 200 {"rateLimited": true, ...}
    3. Content-Type
         multipart/form-data             → `image` file field
         application/json                → {"image": "<data URI | base64>"}
         anything else                   → 415
    4. Declared Content-Length too big?      → 413
       Body passes the same ceiling while
       it is being received?                 → 413 (chunked uploads)
    5. DiagnosisService.diagnose()       → 200 DiagnosisResult, or 400/413/502

Errors are raised, never returned; the handlers in main.py render them.
"""

import json
import logging
from typing import AsyncGenerator, List, Optional, Tuple

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.datastructures import UploadFile
from starlette.formparsers import MultiPartParser

from leafscan.exceptions import (
    InputError,
    InternalServiceError,
    LeafScanError,
    PayloadTooLargeError,
    UnsupportedMediaTypeError,
)
from leafscan.schemas.diagnosis import (
    AnalyzeJSONRequest,
    DiagnosisResult,
    ErrorResponse,
    RateLimitedResponse,
)
from leafscan.services.diagnosis_service import DiagnosisService
from leafscan.services.image_service import ImageAsset, decode_base64_image

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Diagnosis"])

MULTIPART = "multipart/form-data"
JSON = "application/json"


def get_diagnosis_service(request: Request) -> DiagnosisService:
    """Dependency: the service instance create_app() stored on app.state."""
    return request.app.state.diagnosis_service


def client_key_for(request: Request, trust_forwarded_for: bool = False) -> str:
    """
    Rate-limit bucket for the request.

    X-Forwarded-For is only honored when the deployment says a trusted proxy
    sets it; otherwise any client could pick its own bucket.
    """
    if trust_forwarded_for:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            first_hop = forwarded_for.split(",")[0].strip()
            if first_hop:
                return first_hop
    return request.client.host if request.client else "unknown"


def _media_type(request: Request) -> str:
    return request.headers.get("content-type", "").split(";", 1)[0].strip().lower()


def _declared_length(request: Request) -> Optional[int]:
    raw = request.headers.get("content-length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        raise InputError(message="Content-Length inválido.", context={"content_length": raw})


async def _read_body(request: Request, max_request_bytes: int) -> bytes:
    """
    Read the request body, stopping as soon as it passes `max_request_bytes`.

    Why:   Content-Length is optional (chunked uploads) and only advisory.
           Counting the bytes actually received is what bounds memory.
    """
    chunks: List[bytes] = []
    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if received > max_request_bytes:
            raise PayloadTooLargeError(
                max_bytes=max_request_bytes,
                actual_bytes=received,
                context={"source": "stream"},
            )
        chunks.append(chunk)
    return b"".join(chunks)


async def _single_chunk(body: bytes) -> AsyncGenerator[bytes, None]:
    yield body


async def _read_multipart(request: Request, body: bytes) -> Tuple[ImageAsset, Optional[int]]:
    try:
        parser = MultiPartParser(request.headers, _single_chunk(body), max_files=1, max_fields=16)
        form = await parser.parse()
    except Exception as e:
        raise InputError(
            message="Formulario multipart inválido.",
            context={"error_type": type(e).__name__, "error": str(e)},
        )

    try:
        upload = form.get("image")
        if not isinstance(upload, UploadFile):
            raise InputError(message="No se recibió archivo de imagen.", field="image")
        data = await upload.read()
        asset = ImageAsset(
            data=data,
            media_type=(upload.content_type or "application/octet-stream").lower(),
        )
        logger.info(
            "Received multipart image: filename=%s, size=%d bytes",
            upload.filename or "unknown",
            len(data),
        )
        return asset, upload.size
    finally:
        await form.close()


async def _read_json(body: bytes) -> Tuple[ImageAsset, Optional[int]]:
    try:
        data = json.loads(body)
    except ValueError as e:
        raise InputError(message="Cuerpo JSON inválido.", context={"error": str(e)})

    try:
        payload = AnalyzeJSONRequest.model_validate(data)
    except PydanticValidationError as e:
        raise InputError(
            message="Imagen Base64 inválida.",
            field="image",
            context={"error_count": e.error_count()},
        )

    asset = decode_base64_image(payload.image)
    logger.info("Received base64 image: %d bytes decoded", asset.size)
    return asset, None


async def read_image_payload(
    request: Request, max_request_bytes: int
) -> Tuple[ImageAsset, Optional[int]]:
    """
    Content-type negotiation: extract the image from either accepted shape.

    Returns:
        (asset, content_length) where content_length is the upload's declared
        size when the transport provides one.

    Raises:
        UnsupportedMediaTypeError, PayloadTooLargeError, InputError
    """
    media_type = _media_type(request)
    if media_type not in (MULTIPART, JSON):
        raise UnsupportedMediaTypeError(content_type=media_type)

    declared = _declared_length(request)
    if declared is not None and declared > max_request_bytes:
        raise PayloadTooLargeError(
            max_bytes=max_request_bytes,
            actual_bytes=declared,
            context={"source": "request"},
        )

    body = await _read_body(request, max_request_bytes)
    if media_type == MULTIPART:
        return await _read_multipart(request, body)
    return await _read_json(body)


@router.post(
    "/analyze",
    response_model=DiagnosisResult,
    responses={
        200: {
            "description": "Diagnosis, or a soft rate-limit notice",
            "model": DiagnosisResult,
        },
        400: {"description": "Missing, malformed or undecodable image", "model": ErrorResponse},
        413: {"description": "Image too large", "model": ErrorResponse},
        415: {"description": "Unsupported Content-Type", "model": ErrorResponse},
        500: {"description": "Configuration or internal error", "model": ErrorResponse},
        502: {"description": "Model produced no valid diagnosis", "model": ErrorResponse},
    },
    summary="Diagnose a plant photograph",
    description=(
        "Upload a plant photo as multipart/form-data (`image` field) or as JSON "
        "`{\"image\": \"<data URI or base64>\"}` and receive a structured diagnosis "
        "with an organic-only treatment. Throttled clients receive HTTP 200 with "
        "`{\"rateLimited\": true, \"message\": ...}`."
    ),
)
async def analyze_plant(
    request: Request,
    service: DiagnosisService = Depends(get_diagnosis_service),
):
    service.ensure_configured()

    client_key = client_key_for(request, service.settings.trust_forwarded_for)
    decision = service.check_usage(client_key)
    if not decision.allowed:
        body = RateLimitedResponse(message=decision.message or "")
        return JSONResponse(
            status_code=200,
            content=body.model_dump(by_alias=True),
            headers={"Retry-After": str(decision.retry_after)},
        )

    try:
        asset, content_length = await read_image_payload(
            request, service.settings.max_request_bytes
        )
        return await service.diagnose(asset, content_length)
    except LeafScanError:
        raise
    except Exception as e:
        logger.error("Unexpected error in analyze pipeline: %s", str(e), exc_info=True)
        raise InternalServiceError(context={"error_type": type(e).__name__})
