"""
LeafScan Backend — Diagnosis Service (Pipeline Orchestrator)
==============================================================

What:  Sequences the diagnosis pipeline for one request.
Why:   Keeps the route free of business logic; tests drive the whole
       pipeline here with a fake inference client and no HTTP.
How:   Composes UsageTracker, ImageService, the prompt builder, an
       InferenceClient, the result parser and PolicyFilter. All collaborators
       are constructor arguments; nothing is reached globally.
Who:   Called by the POST /analyze route handler.

Orchestration Flow:
    ┌────────────┐   ┌──────────┐   ┌───────────┐   ┌─────────┐   ┌─────────┐   ┌────────┐
    │ Usage gate │──▶│ Size +   │──▶│ Normalize │──▶│ Gemini  │──▶│ Extract │──▶│ Policy │
    │ (tracker)  │   │ decode   │   │ (Pillow)  │   │ (infer) │   │ + valid.│   │ filter │
    └────────────┘   └──────────┘   └───────────┘   └─────────┘   └─────────┘   └────────┘

    Each stage fails fast with a typed LeafScanError; the exception handlers
    in main.py map the type to a status code. The usage counter is spent at
    the gate and is not refunded when a later stage fails.
"""

import asyncio
import logging
from typing import Optional

from leafscan.config import Settings
from leafscan.exceptions import ConfigurationError
from leafscan.schemas.diagnosis import DiagnosisResult
from leafscan.services.image_service import ImageAsset, ImageService
from leafscan.services.llm_base import InferenceClient
from leafscan.services.policy import PolicyFilter
from leafscan.services.prompts import build_prompt
from leafscan.services.result_parser import extract_diagnosis
from leafscan.services.usage_tracker import UsageDecision, UsageTracker

logger = logging.getLogger(__name__)


class DiagnosisService:
    """
    Business logic for POST /analyze, independent of HTTP.

    Args:
        settings:         Configuration (credential presence, limits)
        usage_tracker:    Per-client gate, shared for the app's lifetime
        image_service:    Size validation and normalization
        inference_client: External model
        policy_filter:    Treatment content policy
    """

    def __init__(
        self,
        settings: Settings,
        usage_tracker: UsageTracker,
        image_service: ImageService,
        inference_client: InferenceClient,
        policy_filter: Optional[PolicyFilter] = None,
    ):
        self.settings = settings
        self.usage_tracker = usage_tracker
        self.image_service = image_service
        self.inference_client = inference_client
        self.policy_filter = policy_filter or PolicyFilter()

    def ensure_configured(self) -> None:
        """
        Raises:
            ConfigurationError: the Gemini credential is missing
        """
        if not self.settings.gemini_configured:
            logger.error("Rejecting diagnosis request: GEMINI_API_KEY is not configured")
            raise ConfigurationError(context={"missing": "GEMINI_API_KEY"})

    def check_usage(self, client_key: str) -> UsageDecision:
        return self.usage_tracker.check(client_key)

    async def diagnose(
        self,
        asset: ImageAsset,
        content_length: Optional[int] = None,
    ) -> DiagnosisResult:
        """
        Run an admitted request from raw image to filtered result.

        Raises:
            InputError / PayloadTooLargeError / DecodeError: bad image
            DownstreamError / InferenceTimeoutError: inference failed
            FormatError / SchemaError: unusable model output
        """
        self.image_service.validate_size(asset.data, content_length)

        normalized = await asyncio.to_thread(self.image_service.normalize, asset)

        prompt = build_prompt(normalized)
        raw_text = await self.inference_client.generate(prompt)

        result = extract_diagnosis(raw_text)
        result = self.policy_filter.enforce(result)

        logger.info(
            "Diagnosis: disease=%s severity=%s confidence=%.2f",
            result.disease,
            result.severity.value,
            result.confidence,
        )
        return result
