"""
LeafScan Backend — Treatment Content Policy
=============================================

What:  Guarantees the emitted treatment never recommends chemical or
       synthetic products, whatever the model wrote.
How:   Case-insensitive substring scan of `treatment` against a fixed set of
       forbidden terms. Any hit replaces the whole field with one
       pre-approved organic text. No partial redaction: a sentence with the
       product name cut out can still read as an instruction to use it.
Who:   DiagnosisService, as the last step before responding.

The prompt also asks for organic treatments; this filter is what makes it
true.
"""

import logging
from dataclasses import dataclass
from typing import FrozenSet, List

from leafscan.schemas.diagnosis import DiagnosisResult

logger = logging.getLogger(__name__)

# Lower-case stems. Substring match, so "fungicida" also catches "fungicidas".
FORBIDDEN_TERMS: FrozenSet[str] = frozenset({
    # Spanish
    "fungicida",
    "insecticida",
    "pesticida",
    "plaguicida",
    "herbicida",
    "acaricida",
    "nematicida",
    "químic",
    "quimic",
    "sintétic",
    "sintetic",
    "glifosato",
    "clorpirifos",
    "mancozeb",
    "carbendazim",
    "imidacloprid",
    "cipermetrina",
    "abono npk",
    "fertilizante sintético",
    # English, for when the model ignores the language rule
    "fungicide",
    "insecticide",
    "pesticide",
    "herbicide",
    "chemical",
    "synthetic",
    "glyphosate",
})

FALLBACK_TREATMENT = (
    "Retira y destruye las hojas afectadas, mejora la ventilación entre plantas "
    "y evita mojar el follaje al regar. Puedes aplicar un preparado orgánico "
    "como extracto de neem, purín de ortiga o infusión de cola de caballo cada "
    "7 días. Si los síntomas persisten, consulta con un técnico agrícola."
)


@dataclass(frozen=True)
class PolicyConfig:
    """Process-wide, read-only policy."""

    forbidden_terms: FrozenSet[str] = FORBIDDEN_TERMS
    fallback_treatment: str = FALLBACK_TREATMENT

    def __post_init__(self):
        # Terms are matched against lower-cased text
        object.__setattr__(
            self, "forbidden_terms", frozenset(t.lower() for t in self.forbidden_terms if t)
        )


DEFAULT_POLICY = PolicyConfig()


class PolicyFilter:
    """Applies a PolicyConfig to diagnosis results."""

    def __init__(self, config: PolicyConfig = DEFAULT_POLICY):
        self.config = config

    def find_violations(self, text: str) -> List[str]:
        """Forbidden terms present in `text`, sorted."""
        lowered = text.lower()
        return sorted(term for term in self.config.forbidden_terms if term in lowered)

    def enforce(self, result: DiagnosisResult) -> DiagnosisResult:
        """
        Return `result` unchanged, or a copy whose treatment is the fallback.
        """
        violations = self.find_violations(result.treatment)
        if not violations:
            return result

        logger.warning(
            "Treatment for '%s' replaced by organic fallback; matched terms: %s",
            result.disease,
            ", ".join(violations),
        )
        return result.model_copy(update={"treatment": self.config.fallback_treatment})
