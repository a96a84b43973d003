"""
LeafScan Backend — FastAPI Application Factory
================================================

What:  Creates and configures the FastAPI application instance.
How:   Factory pattern: create_app() wires settings, the usage tracker, the
       inference client and the diagnosis service, then registers
       middleware, exception handlers and routes.
Who:   Called by uvicorn (uvicorn leafscan.main:app) and by tests with
       their own settings and fakes.

Application Architecture:
    ┌───────────────────────────────────────────────────────┐
    │                     FastAPI App                       │
    │                                                       │
    │  Middleware Chain:                                    │
    │  ┌──────────┐ ┌──────────┐ ┌──────┐ ┌──────┐         │
    │  │ Req ID   │→│ Logging  │→│ GZip │→│ CORS │         │
    │  └──────────┘ └──────────┘ └──────┘ └──────┘         │
    │                                                       │
    │  Routes:                                              │
    │  ┌────────────────┐ ┌──────────────┐                  │
    │  │ POST /analyze  │ │ GET /health  │                  │
    │  └────────────────┘ └──────────────┘                  │
    │                                                       │
    │  Exception Handlers (the only error→status mapping):  │
    │  Input→400 │ TooLarge→413 │ Media→415 │ Config→500    │
    │  Downstream/Format/Schema→502 │ anything else→500     │
    └───────────────────────────────────────────────────────┘
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from leafscan import __version__
from leafscan.config import Settings, settings as default_settings
from leafscan.exceptions import (
    ConfigurationError,
    DownstreamError,
    FormatError,
    InputError,
    InternalServiceError,
    LeafScanError,
    PayloadTooLargeError,
    UnsupportedMediaTypeError,
)
from leafscan.middleware.logging import RequestLoggingMiddleware
from leafscan.middleware.request_id import RequestIDLogFilter, RequestIDMiddleware, request_id_var
from leafscan.routes import analyze, health
from leafscan.services.diagnosis_service import DiagnosisService
from leafscan.services.gemini_service import GeminiService
from leafscan.services.image_service import ImageService
from leafscan.services.llm_base import InferenceClient
from leafscan.services.policy import PolicyFilter
from leafscan.services.usage_tracker import Clock, UsageTracker

logger = logging.getLogger(__name__)

# Shown for every 502; which stage failed is in the server log only
INFERENCE_FAILED_MESSAGE = (
    "No se pudo obtener un diagnóstico de la imagen. Intenta de nuevo con otra foto."
)
CONFIGURATION_ERROR_MESSAGE = "El servicio no está configurado correctamente."
INTERNAL_ERROR_MESSAGE = "Error interno al analizar la imagen."


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging(level: str = "INFO") -> None:
    """
    Configure logging for the entire application.

    Format: %(asctime)s [%(levelname)s] %(name)s [%(request_id)s] %(message)s
    """
    handler = logging.StreamHandler(sys.stdout)  # Docker captures stdout
    handler.addFilter(RequestIDLogFilter())

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s [%(request_id)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[handler],
        force=True,
    )

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def _error_response(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "message": message,
            "request_id": request_id_var.get(""),
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map exception types to HTTP status codes and response bodies.

    Handler hierarchy (Starlette resolves by MRO, most specific first):
        PayloadTooLargeError       → 413
        InputError (+DecodeError)  → 400
        UnsupportedMediaTypeError  → 415
        ConfigurationError         → 500
        DownstreamError            → 502
        FormatError (+SchemaError) → 502
        LeafScanError (base)       → 500
        Exception (fallback)       → 500

    Upstream failures share one generic message. Details (context, stack
    traces) are logged, never returned.
    """

    @app.exception_handler(PayloadTooLargeError)
    async def handle_payload_too_large(request: Request, exc: PayloadTooLargeError):
        logger.warning("Payload too large: %s | Context: %s", exc.message, exc.context)
        return _error_response(413, "payload_too_large", exc.message)

    @app.exception_handler(InputError)
    async def handle_input_error(request: Request, exc: InputError):
        """Client sent a bad image; the message tells them what to fix."""
        logger.warning("Invalid image payload: %s | Context: %s", exc.message, exc.context)
        return _error_response(400, "invalid_image", exc.message)

    @app.exception_handler(UnsupportedMediaTypeError)
    async def handle_unsupported_media_type(request: Request, exc: UnsupportedMediaTypeError):
        logger.warning("Unsupported Content-Type: %r", exc.content_type)
        return _error_response(415, "unsupported_media_type", exc.message)

    @app.exception_handler(ConfigurationError)
    async def handle_configuration_error(request: Request, exc: ConfigurationError):
        logger.error("Configuration error: %s | Context: %s", exc.message, exc.context)
        return _error_response(500, "configuration_error", CONFIGURATION_ERROR_MESSAGE)

    @app.exception_handler(DownstreamError)
    async def handle_downstream_error(request: Request, exc: DownstreamError):
        logger.error("Inference failed: %s | Context: %s", exc.message, exc.context)
        return _error_response(502, "inference_failed", INFERENCE_FAILED_MESSAGE)

    @app.exception_handler(FormatError)
    async def handle_format_error(request: Request, exc: FormatError):
        logger.error("Unusable model output: %s | Context: %s", exc.message, exc.context)
        return _error_response(502, "inference_failed", INFERENCE_FAILED_MESSAGE)

    @app.exception_handler(LeafScanError)
    async def handle_leafscan_error(request: Request, exc: LeafScanError):
        level = logging.ERROR if isinstance(exc, InternalServiceError) else logging.WARNING
        logger.log(level, "Unhandled application error: %s | Context: %s", exc.message, exc.context)
        return _error_response(500, "internal_server_error", INTERNAL_ERROR_MESSAGE)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        """Catch-all for truly unexpected errors; stack trace logged server-side only."""
        logger.error("Unexpected error: %s", str(exc), exc_info=True)
        return _error_response(500, "internal_server_error", INTERNAL_ERROR_MESSAGE)


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(
    settings: Optional[Settings] = None,
    inference_client: Optional[InferenceClient] = None,
    usage_tracker: Optional[UsageTracker] = None,
    clock: Optional[Clock] = None,
    policy_filter: Optional[PolicyFilter] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings:         Configuration; defaults to the environment-loaded settings
        inference_client: Defaults to GeminiService built from settings
        usage_tracker:    Defaults to a tracker sized from settings
        clock:            Time source for the default tracker
        policy_filter:    Defaults to the built-in organic-only policy

    Returns: Fully configured FastAPI instance ready to receive requests.
    """
    cfg = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        setup_logging(cfg.log_level)
        logger.info("=" * 60)
        logger.info("LeafScan Backend %s starting up...", __version__)
        try:
            cfg.validate_required_for_production()
        except ValueError as e:
            # Keep serving: /health reports it and /analyze answers 500
            logger.error("Configuration error: %s", str(e))
        logger.info(
            "Usage limit: %d requests / %ds per client; max image %d bytes",
            cfg.rate_limit_requests,
            cfg.rate_limit_window,
            cfg.max_input_bytes,
        )
        logger.info("Server ready at http://%s:%d", cfg.backend_host, cfg.backend_port)
        logger.info("=" * 60)

        yield

        logger.info("LeafScan Backend shutting down...")

    app = FastAPI(
        title="LeafScan API",
        description=(
            "Plant disease diagnosis from a single photograph using Google Gemini. "
            "Treatments are restricted to organic methods."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    tracker = usage_tracker or UsageTracker(
        max_requests=cfg.rate_limit_requests,
        window_seconds=cfg.rate_limit_window,
        clock=clock,
        sweep_interval=cfg.rate_limit_sweep_interval,
    )
    app.state.diagnosis_service = DiagnosisService(
        settings=cfg,
        usage_tracker=tracker,
        image_service=ImageService(
            max_input_bytes=cfg.max_input_bytes,
            max_dimension=cfg.image_max_dimension,
            jpeg_quality=cfg.jpeg_quality,
            max_pixels=cfg.image_max_pixels,
        ),
        inference_client=inference_client or GeminiService.from_settings(cfg),
        policy_filter=policy_filter,
    )

    # ── Register Middleware ───────────────────────────────────────────────
    # Last added = first to execute: RequestID → Logging → GZip → CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    app.include_router(analyze.router)
    app.include_router(health.router)

    return app


# uvicorn expects `leafscan.main:app` to be importable
app = create_app()
