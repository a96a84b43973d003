"""
LeafScan Backend — Test Configuration (conftest.py)
=====================================================

What:  Shared pytest fixtures for the entire test suite.
How:   pytest auto-discovers conftest.py and makes fixtures available to all tests.

Fixture Hierarchy (all function-scoped):
    ├── clock: FakeClock driving the usage tracker
    ├── fake_llm: FakeInferenceClient returning canned model text
    ├── test_settings: Settings with a dummy credential, no .env file
    ├── app: create_app() wired with the three fixtures above
    ├── test_client: HTTPX AsyncClient for API endpoint testing
    └── jpeg_bytes / make_jpeg: Pillow-generated images
"""

import io
import json
import os
from typing import Any, Dict, List, Optional

# Override settings for testing BEFORE any app imports
os.environ["GEMINI_API_KEY"] = "test-key-not-real"
os.environ["LOG_LEVEL"] = "WARNING"

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from PIL import Image

from leafscan.config import Settings
from leafscan.main import create_app
from leafscan.services.llm_base import InferenceClient
from leafscan.services.prompts import PromptPayload


VALID_DIAGNOSIS: Dict[str, Any] = {
    "disease": "Roya de la hoja",
    "confidence": 0.87,
    "description": "Pústulas anaranjadas en el envés de las hojas.",
    "treatment": "Retirar las hojas afectadas y aplicar extracto de cola de caballo.",
    "severity": "Moderada",
}


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeInferenceClient(InferenceClient):
    """
    Returns queued responses in order (the last one repeats).
    An Exception instance in the queue is raised instead of returned.
    """

    def __init__(self, responses: Optional[List[Any]] = None, healthy: bool = True):
        self.responses = list(responses or [json.dumps(VALID_DIAGNOSIS)])
        self.prompts: List[PromptPayload] = []
        self.healthy = healthy
        self.health_checks = 0

    async def generate(self, prompt: PromptPayload) -> str:
        self.prompts.append(prompt)
        index = min(len(self.prompts), len(self.responses)) - 1
        response = self.responses[index]
        if isinstance(response, BaseException):
            raise response
        return response

    async def health_check(self) -> bool:
        self.health_checks += 1
        return self.healthy

    @property
    def call_count(self) -> int:
        return len(self.prompts)


def make_jpeg(
    width: int,
    height: int,
    orientation: Optional[int] = None,
    noise: bool = False,
    quality: int = 90,
) -> bytes:
    """Encode a synthetic RGB image as JPEG, optionally with an EXIF Orientation tag."""
    if noise:
        image = Image.effect_noise((width, height), 64).convert("RGB")
    else:
        image = Image.linear_gradient("L").resize((width, height)).convert("RGB")
    out = io.BytesIO()
    if orientation is not None:
        exif = Image.Exif()
        exif[0x0112] = orientation
        image.save(out, format="JPEG", quality=quality, exif=exif)
    else:
        image.save(out, format="JPEG", quality=quality)
    return out.getvalue()


def make_app(
    settings: Settings,
    llm: InferenceClient,
    clock: FakeClock,
):
    return create_app(settings=settings, inference_client=llm, clock=clock)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_llm():
    return FakeInferenceClient()


@pytest.fixture
def test_settings():
    return Settings(gemini_api_key="test-key-not-real", log_level="WARNING", _env_file=None)


@pytest.fixture
def app(test_settings, fake_llm, clock):
    return make_app(test_settings, fake_llm, clock)


@pytest_asyncio.fixture
async def test_client(app):
    """
    HTTPX AsyncClient routed directly into the app via ASGITransport.

    Usage:
        async def test_health(test_client):
            response = await test_client.get("/health")
            assert response.status_code == 200
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def jpeg_bytes():
    """A small upright JPEG that decodes cleanly."""
    return make_jpeg(640, 480)
