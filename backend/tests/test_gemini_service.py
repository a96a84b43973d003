"""
LeafScan Backend — Gemini Service Unit Tests (Mocked)
=======================================================

What:  Tests for GeminiService with mocked Google Generative AI SDK.
Why:   Tests should not make real API calls (costs money, requires network).
How:   Patches the genai module and model to simulate success/failure.

What we test:
    ✅ Successful call returns the stripped response text
    ✅ Prompt text and inline JPEG are passed as content parts
    ✅ Timeouts, SDK errors, blocked and empty answers map to DownstreamError
    ✅ Default policy makes exactly one attempt
    ✅ A retrying policy recovers from transient errors, never from blocked answers
    ❌ Real API calls (use integration tests for that)
"""

import asyncio
import warnings

import pytest
from unittest.mock import patch, MagicMock, AsyncMock, PropertyMock
from google.api_core import exceptions as google_exceptions

from leafscan.exceptions import DownstreamError, InferenceTimeoutError
from leafscan.services.gemini_service import GeminiService, RetryPolicy
from leafscan.services.image_service import NormalizedImage
from leafscan.services.prompts import DIAGNOSIS_PROMPT, build_prompt


PROMPT = build_prompt(NormalizedImage(data=b"\xff\xd8jpeg-bytes", width=10, height=10))


def _response(text: str) -> MagicMock:
    response = MagicMock()
    response.text = text
    return response


def _service(mock_genai, generate: AsyncMock, **kwargs) -> GeminiService:
    mock_model = MagicMock()
    mock_model.generate_content_async = generate
    mock_genai.GenerativeModel.return_value = mock_model
    return GeminiService(api_key="test-key", **kwargs)


class TestGeminiServiceMocked:
    """Tests for GeminiService with mocked Gemini API."""

    @pytest.mark.asyncio
    async def test_generate_success(self):
        """Successful API call should return the response text, stripped."""
        with patch('leafscan.services.gemini_service.genai') as mock_genai:
            generate = AsyncMock(return_value=_response('  {"disease": "Roya"}\n'))
            service = _service(mock_genai, generate)

            result = await service.generate(PROMPT)

            assert result == '{"disease": "Roya"}'
            mock_genai.configure.assert_called_once_with(api_key="test-key")

    @pytest.mark.asyncio
    async def test_sends_prompt_and_inline_image(self):
        with patch('leafscan.services.gemini_service.genai') as mock_genai:
            generate = AsyncMock(return_value=_response("{}"))
            service = _service(mock_genai, generate, timeout=12)

            await service.generate(PROMPT)

            args, kwargs = generate.call_args
            text, image_part = args[0]
            assert text == DIAGNOSIS_PROMPT
            assert image_part == {"mime_type": "image/jpeg", "data": b"\xff\xd8jpeg-bytes"}
            assert kwargs["request_options"] == {"timeout": 12}

    @pytest.mark.asyncio
    async def test_temperature_is_passed_to_model(self):
        with patch('leafscan.services.gemini_service.genai') as mock_genai:
            _service(mock_genai, AsyncMock(), model_name="gemini-test", temperature=0.5)
            mock_genai.GenerativeModel.assert_called_once_with(
                "gemini-test", generation_config={"temperature": 0.5}
            )

    @pytest.mark.asyncio
    async def test_no_api_key_skips_configure(self):
        with patch('leafscan.services.gemini_service.genai') as mock_genai:
            GeminiService(api_key="")
            mock_genai.configure.assert_not_called()

    @pytest.mark.asyncio
    async def test_timeout_raises_inference_timeout(self):
        async def slow(*args, **kwargs):
            await asyncio.sleep(1)

        with patch('leafscan.services.gemini_service.genai') as mock_genai:
            service = _service(mock_genai, AsyncMock(side_effect=slow), timeout=0.01)

            with pytest.raises(InferenceTimeoutError) as exc_info:
                await service.generate(PROMPT)
            assert exc_info.value.timeout == 0.01

    @pytest.mark.asyncio
    async def test_sdk_error_raises_downstream_error(self):
        with patch('leafscan.services.gemini_service.genai') as mock_genai:
            generate = AsyncMock(side_effect=google_exceptions.PermissionDenied("bad key"))
            service = _service(mock_genai, generate)

            with pytest.raises(DownstreamError) as exc_info:
                await service.generate(PROMPT)
            assert exc_info.value.context["error_type"] == "PermissionDenied"
            assert "bad key" not in exc_info.value.message

    @pytest.mark.asyncio
    async def test_blocked_response_raises_downstream_error(self):
        """response.text raises ValueError when the candidate was blocked."""
        with patch('leafscan.services.gemini_service.genai') as mock_genai:
            response = MagicMock()
            type(response).text = PropertyMock(side_effect=ValueError("blocked"))
            service = _service(mock_genai, AsyncMock(return_value=response))

            with pytest.raises(DownstreamError) as exc_info:
                await service.generate(PROMPT)
            assert exc_info.value.context["reason"] == "blocked"

    @pytest.mark.asyncio
    async def test_empty_response_raises_downstream_error(self):
        with patch('leafscan.services.gemini_service.genai') as mock_genai:
            service = _service(mock_genai, AsyncMock(return_value=_response("   ")))

            with pytest.raises(DownstreamError) as exc_info:
                await service.generate(PROMPT)
            assert exc_info.value.context["reason"] == "empty"

    @pytest.mark.asyncio
    async def test_health_check_returns_bool(self):
        """Health check should return True/False without raising."""
        with patch('leafscan.services.gemini_service.genai') as mock_genai:
            mock_genai.list_models.return_value = [MagicMock()]

            service = GeminiService(api_key="test-key")
            result = await service.health_check()
            assert isinstance(result, bool)

    @pytest.mark.asyncio
    async def test_health_check_failure_returns_false(self):
        with patch('leafscan.services.gemini_service.genai') as mock_genai:
            mock_genai.list_models.side_effect = ConnectionError("offline")

            service = GeminiService(api_key="test-key")
            assert await service.health_check() is False


class TestRetryPolicy:

    @pytest.mark.asyncio
    async def test_default_policy_makes_one_attempt(self):
        with patch('leafscan.services.gemini_service.genai') as mock_genai:
            generate = AsyncMock(side_effect=google_exceptions.ServiceUnavailable("busy"))
            service = _service(mock_genai, generate)

            with pytest.raises(DownstreamError):
                await service.generate(PROMPT)
            assert generate.await_count == 1

    @pytest.mark.asyncio
    async def test_retries_transient_errors_then_succeeds(self):
        with patch('leafscan.services.gemini_service.genai') as mock_genai:
            generate = AsyncMock(side_effect=[
                google_exceptions.ServiceUnavailable("busy"),
                google_exceptions.ServiceUnavailable("busy"),
                _response("{}"),
            ])
            policy = RetryPolicy(max_attempts=3, min_wait=0, max_wait=0, jitter=0)
            service = _service(mock_genai, generate, retry_policy=policy)

            assert await service.generate(PROMPT) == "{}"
            assert generate.await_count == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        with patch('leafscan.services.gemini_service.genai') as mock_genai:
            generate = AsyncMock(side_effect=google_exceptions.ServiceUnavailable("busy"))
            policy = RetryPolicy(max_attempts=2, min_wait=0, max_wait=0, jitter=0)
            service = _service(mock_genai, generate, retry_policy=policy)

            with pytest.raises(DownstreamError):
                await service.generate(PROMPT)
            assert generate.await_count == 2

    @pytest.mark.asyncio
    async def test_blocked_response_is_not_retried(self):
        with patch('leafscan.services.gemini_service.genai') as mock_genai:
            response = MagicMock()
            type(response).text = PropertyMock(side_effect=ValueError("blocked"))
            generate = AsyncMock(return_value=response)
            policy = RetryPolicy(max_attempts=3, min_wait=0, max_wait=0, jitter=0)
            service = _service(mock_genai, generate, retry_policy=policy)

            with pytest.raises(DownstreamError):
                await service.generate(PROMPT)
            assert generate.await_count == 1

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_from_settings(self, test_settings):
        policy = RetryPolicy.from_settings(test_settings)
        assert policy.max_attempts == test_settings.retry_max_attempts == 1

    def test_build_emits_no_deprecation_warning(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            RetryPolicy(max_attempts=3, min_wait=2, max_wait=10).build()

    def test_backoff_is_capped(self):
        wait = RetryPolicy(max_attempts=5, min_wait=2, max_wait=10, jitter=0).build().wait
        state = MagicMock()
        waits = []
        for attempt in range(1, 5):
            state.attempt_number = attempt
            waits.append(wait(state))
        assert waits == [2, 4, 8, 10]
