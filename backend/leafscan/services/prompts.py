"""
LeafScan Backend — Diagnosis Prompt
=====================================

What:  The fixed instruction sent to the vision model with every image.
How:   build_prompt() pairs the instruction with the normalized image; pure,
       no I/O.

The instruction asks for Spanish output, a bare JSON object and organic-only
treatments. None of that is trusted: result_parser tolerates prose around
the JSON and policy.PolicyFilter enforces the organic rule on whatever
comes back.
"""

from dataclasses import dataclass
from typing import Any, Dict, List

from leafscan.services.image_service import NormalizedImage

DIAGNOSIS_PROMPT = """Analiza la planta de la imagen.

Responde SIEMPRE en español.
Devuelve SOLO un JSON con este formato:

{
  "disease": string,
  "confidence": number entre 0 y 1,
  "description": string,
  "treatment": string,
  "severity": "Leve" | "Moderada" | "Severa"
}

REGLAS:
- Tratamientos exclusivamente orgánicos
- No mencionar químicos ni marcas comerciales
- No agregar texto fuera del JSON
"""


@dataclass(frozen=True)
class PromptPayload:
    """Instruction text plus the single image it refers to."""

    text: str
    image: NormalizedImage

    def contents(self) -> List[Any]:
        """Content parts in the shape google-generativeai accepts."""
        image_part: Dict[str, Any] = {
            "mime_type": self.image.media_type,
            "data": self.image.data,
        }
        return [self.text, image_part]


def build_prompt(image: NormalizedImage) -> PromptPayload:
    return PromptPayload(text=DIAGNOSIS_PROMPT, image=image)
