"""
LeafScan Backend — Google Gemini Inference Client
===================================================

What:  Concrete InferenceClient using the Google Gemini vision API.
How:   Sends the diagnosis prompt plus inline JPEG bytes to Gemini, bounds
       each attempt with a timeout, and wraps every failure in
       DownstreamError / InferenceTimeoutError.
Who:   Instantiated once by create_app(); called by DiagnosisService.
When:  After image normalization, before result extraction.

Why inline bytes instead of genai.upload_file():
    The normalized JPEG is at most a few hundred KB, well under the inline
    request limit. Inline data skips a second round trip and leaves no
    uploaded file to clean up.

Retry:
    Retrying is a RetryPolicy (tenacity) handed to the constructor. The
    default policy makes a single attempt: a failed diagnosis costs the
    client one unit of their usage quota and they resubmit. Deployments that
    want retries raise RETRY_MAX_ATTEMPTS; tests pass their own policy.
"""

import asyncio
import logging
import time
import uuid
from typing import Optional, Tuple, Type

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from leafscan.config import Settings
from leafscan.exceptions import DownstreamError, InferenceTimeoutError
from leafscan.services.llm_base import InferenceClient
from leafscan.services.prompts import PromptPayload

logger = logging.getLogger(__name__)

# Errors worth another attempt when the policy allows more than one
TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (
    asyncio.TimeoutError,
    ConnectionError,
    google_exceptions.ServiceUnavailable,
    google_exceptions.ResourceExhausted,
    google_exceptions.DeadlineExceeded,
    google_exceptions.InternalServerError,
)


# ══════════════════════════════════════════════════════════════════════════
# Retry Policy
# ══════════════════════════════════════════════════════════════════════════

class RetryPolicy:
    """
    Swappable retry strategy for the inference call.

    Args:
        max_attempts: Total attempts including the first (1 = no retry)
        min_wait:     Initial backoff in seconds
        max_wait:     Backoff ceiling in seconds
        jitter:       Upper bound of the random delay added to each backoff
        retry_on:     Exception types that trigger another attempt
    """

    def __init__(
        self,
        max_attempts: int = 1,
        min_wait: float = 2,
        max_wait: float = 10,
        jitter: float = 1,
        retry_on: Tuple[Type[BaseException], ...] = TRANSIENT_ERRORS,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.min_wait = min_wait
        self.max_wait = max_wait
        self.jitter = jitter
        self.retry_on = retry_on

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            min_wait=settings.retry_min_wait,
            max_wait=settings.retry_max_wait,
        )

    def build(self) -> AsyncRetrying:
        """Fresh tenacity controller; one per call."""
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait(),
            retry=retry_if_exception_type(self.retry_on),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def _wait(self):
        # attempt 1 → min_wait, attempt 2 → 2*min_wait, ... capped at max_wait, plus 0-jitter s
        backoff = wait_exponential(multiplier=self.min_wait, min=self.min_wait, max=self.max_wait)
        if self.jitter > 0:
            return backoff + wait_random(0, self.jitter)
        return backoff


NO_RETRY = RetryPolicy(max_attempts=1)


# ══════════════════════════════════════════════════════════════════════════
# Gemini Service
# ══════════════════════════════════════════════════════════════════════════

class GeminiService(InferenceClient):
    """
    Google Gemini implementation of InferenceClient.

    Error Handling Chain:
        attempt times out       → asyncio.TimeoutError → (retry?) → InferenceTimeoutError
        SDK/transport error     → (retry if transient) → DownstreamError
        blocked / empty answer  → DownstreamError, never retried
    """

    def __init__(
        self,
        api_key: str,
        model_name: str = "gemini-2.5-flash",
        timeout: float = 60.0,
        temperature: float = 0.2,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        # The SDK keeps auth in module-level state
        if api_key:
            genai.configure(api_key=api_key)

        self.model_name = model_name
        self.timeout = timeout
        self.retry_policy = retry_policy or NO_RETRY
        self.model = genai.GenerativeModel(
            model_name,
            generation_config={"temperature": temperature},
        )

        logger.info(
            "GeminiService initialized with model=%s, timeout=%.0fs, max_attempts=%d",
            model_name,
            timeout,
            self.retry_policy.max_attempts,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "GeminiService":
        return cls(
            api_key=settings.gemini_api_key if settings.gemini_configured else "",
            model_name=settings.gemini_model,
            timeout=settings.inference_timeout,
            temperature=settings.gemini_temperature,
            retry_policy=RetryPolicy.from_settings(settings),
        )

    async def generate(self, prompt: PromptPayload) -> str:
        """
        Run the diagnosis prompt against Gemini.

        Returns:
            Raw response text (stripped). Never empty.

        Raises:
            InferenceTimeoutError: the last attempt timed out
            DownstreamError: any other provider failure
        """
        call_id = str(uuid.uuid4())[:8]
        logger.info(
            "[%s] Starting Gemini diagnosis (%dx%d, %d bytes)",
            call_id,
            prompt.image.width,
            prompt.image.height,
            prompt.image.size,
        )

        text = ""
        try:
            async for attempt in self.retry_policy.build():
                with attempt:
                    text = await self._call_once(prompt, call_id)
        except DownstreamError:
            raise
        except asyncio.TimeoutError:
            logger.error("[%s] Gemini call timed out after %.0fs", call_id, self.timeout)
            raise InferenceTimeoutError(timeout=self.timeout, context={"call_id": call_id})
        except Exception as e:
            logger.error(
                "[%s] Gemini call failed: %s: %s",
                call_id,
                type(e).__name__,
                str(e),
            )
            raise DownstreamError(
                context={"call_id": call_id, "error_type": type(e).__name__},
            )

        return text

    async def _call_once(self, prompt: PromptPayload, call_id: str) -> str:
        start_time = time.perf_counter()
        response = await asyncio.wait_for(
            self.model.generate_content_async(
                prompt.contents(),
                request_options={"timeout": self.timeout},
            ),
            timeout=self.timeout,
        )
        duration_ms = (time.perf_counter() - start_time) * 1000

        try:
            # .text raises ValueError when the candidate was blocked or empty
            text = (response.text or "").strip()
        except ValueError as e:
            logger.warning("[%s] Gemini returned no usable text: %s", call_id, e)
            raise DownstreamError(context={"call_id": call_id, "reason": "blocked"})

        if not text:
            raise DownstreamError(context={"call_id": call_id, "reason": "empty"})

        logger.info(
            "[%s] Gemini diagnosis completed in %.0fms, %d chars",
            call_id,
            duration_ms,
            len(text),
        )
        return text

    async def health_check(self) -> bool:
        """
        Check if Gemini API is reachable.

        How:     Lists available models (no token cost).
        Returns: True if reachable and authenticated, False otherwise.
        """
        try:
            models = await asyncio.wait_for(
                asyncio.to_thread(lambda: list(genai.list_models())),
                timeout=self.timeout,
            )
            target = f"models/{self.model_name}"
            if target not in [m.name for m in models]:
                logger.warning("Configured model %s not found in available models", target)
            return True
        except Exception as e:
            logger.warning("Gemini health check failed: %s", str(e))
            return False
