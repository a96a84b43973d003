"""
LeafScan Backend — Application Configuration
==============================================

What:  Centralized configuration management using Pydantic Settings.
How:   Pydantic Settings reads from environment variables (or .env file),
       validates types/ranges, and provides a default `settings` object.
Who:   Passed explicitly into create_app() and from there into every service.
When:  Loaded once at process start; never mutated afterwards.

Services never read the environment themselves. The application factory hands
them the Settings instance it was built with, so tests construct their own
Settings (or pass keyword overrides) without touching os.environ.
"""

from pydantic_settings import BaseSettings
from pydantic import Field, field_validator, model_validator
from typing import List


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings have defaults suitable for development. Production
    deployments MUST provide GEMINI_API_KEY.
    """

    # ── Google Gemini ─────────────────────────────────────────────────────
    # Required at request time; a missing key yields HTTP 500 per request.
    gemini_api_key: str = Field(
        default="",
        description="Google Gemini API key for plant image diagnosis"
    )
    gemini_model: str = Field(default="gemini-2.5-flash")
    gemini_temperature: float = Field(default=0.2, ge=0.0, le=2.0)

    # Upper bound on a single inference attempt, in seconds
    inference_timeout: float = Field(default=60.0, gt=0, le=300)

    # ── Retry Configuration ───────────────────────────────────────────────
    # One attempt means no retry. Raise it only if the provider is flaky.
    retry_max_attempts: int = Field(default=1, ge=1, le=10)
    retry_min_wait: int = Field(default=2, ge=1, le=30)
    retry_max_wait: int = Field(default=10, ge=1, le=120)

    # ── Image Limits ──────────────────────────────────────────────────────
    # Decoded image bytes. 1.5MB = 1.5 * 1024 * 1024
    max_input_bytes: int = Field(default=1_572_864, ge=1024, le=52_428_800)

    # Both output dimensions are fitted inside this box
    image_max_dimension: int = Field(default=1024, ge=64, le=4096)
    jpeg_quality: int = Field(default=80, ge=10, le=95)
    # Decoded source width*height; larger images are rejected before decoding
    image_max_pixels: int = Field(default=50_000_000, ge=1_000_000)

    # ── Rate Limiting ─────────────────────────────────────────────────────
    # Fixed window: N requests per client per W seconds
    rate_limit_requests: int = Field(default=2, ge=1, le=10000)
    rate_limit_window: int = Field(default=60, ge=1, le=86400)  # seconds
    # Expired records are swept once every this many checks
    rate_limit_sweep_interval: int = Field(default=256, ge=1)
    # Use the first X-Forwarded-For hop as client key (only behind a trusted proxy)
    trust_forwarded_for: bool = Field(default=False)

    # ── CORS ──────────────────────────────────────────────────────────────
    cors_origins: str = Field(default="http://localhost:3000")

    @property
    def cors_origins_list(self) -> List[str]:
        """Splits comma-separated CORS origins into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def max_request_bytes(self) -> int:
        """
        Ceiling for a declared Content-Length.

        Base64 inflates by 4/3; the extra 64KB covers the JSON or multipart
        envelope. Requests declaring more than this are rejected before the
        body is read.
        """
        return (self.max_input_bytes * 4) // 3 + 65_536

    @property
    def gemini_configured(self) -> bool:
        return bool(self.gemini_api_key) and self.gemini_api_key != "your_gemini_api_key_here"

    # ── Server ────────────────────────────────────────────────────────────
    backend_host: str = Field(default="0.0.0.0")
    backend_port: int = Field(default=8000, ge=1024, le=65535)

    # Valid: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensures log level is a valid Python logging level name."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"Invalid log_level '{v}'. Must be one of: {valid_levels}")
        return upper

    @model_validator(mode="after")
    def validate_retry_window(self) -> "Settings":
        if self.retry_min_wait > self.retry_max_wait:
            raise ValueError("retry_min_wait must not exceed retry_max_wait")
        return self

    # ── Pydantic Settings Config ──────────────────────────────────────────
    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,  # GEMINI_API_KEY and gemini_api_key both work
        "extra": "ignore",
    }

    def validate_required_for_production(self) -> None:
        """
        What:  Validates that critical settings are configured.
        When:  Called during app startup (lifespan).
        How:   Checks each required field and raises ValueError with guidance.
        """
        errors = []
        if not self.gemini_configured:
            errors.append(
                "GEMINI_API_KEY is not set. "
                "Get a key at https://aistudio.google.com/app/apikey"
            )
        if errors:
            raise ValueError(
                "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
            )


# Default instance used by the module-level app in main.py
settings = Settings()
