"""
LeafScan Backend — Abstract Inference Client Interface
========================================================

What:  Abstract base class for the external vision model.
How:   Concrete implementations inherit from InferenceClient and implement
       generate() and health_check().
Who:   Called by DiagnosisService once per admitted request.

Implementations:
    - GeminiService: Google Gemini (services/gemini_service.py)
    - Test doubles in tests/conftest.py return canned text without network
"""

from abc import ABC, abstractmethod

from leafscan.services.prompts import PromptPayload


class InferenceClient(ABC):
    """
    Contract:
        - generate() returns the raw model text, unparsed and untrusted
        - every attempt is bounded by a timeout
        - all provider errors are wrapped in DownstreamError
          (InferenceTimeoutError for timeouts)
    """

    @abstractmethod
    async def generate(self, prompt: PromptPayload) -> str:
        """
        Send the prompt and image to the model and return its text.

        Raises:
            DownstreamError: provider failure, empty or blocked response
            InferenceTimeoutError: an attempt exceeded the timeout
        """
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Lightweight reachability check. Never raises."""
        ...
