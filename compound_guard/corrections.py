"""
Deterministic corrections applied between verification attempts.

The default corrector routes on keywords in the previous attempt's issues:
  "dose"                    -> dose per kg × 0.90   (floor 0.01 mg/kg)
  "inventory" / "shortage"  -> dispense volume × 0.85 (floor 15 mL)
  "incompatib"              -> strength × 0.95      (floor 1 mg/mL)

Triggers compose. Corrections only ever contract a value, never expand it.
The orchestrator only depends on the Corrector interface, so a structured
issue-code router can replace the keyword one without touching the graph.
"""

from abc import ABC, abstractmethod
from typing import Sequence

from .state import WorkingPrescription
from .utils import round_half_up

DOSE_FACTOR = 0.9
DOSE_FLOOR_MG_PER_KG = 0.01
VOLUME_FACTOR = 0.85
VOLUME_FLOOR_ML = 15.0
STRENGTH_FACTOR = 0.95
STRENGTH_FLOOR_MG_PER_ML = 1.0


class Corrector(ABC):

    @abstractmethod
    def apply(self, prescription: WorkingPrescription, issues: Sequence[str]) -> WorkingPrescription:
        """Return the prescription for the next attempt (the input when nothing applies)."""


class KeywordCorrector(Corrector):

    def apply(self, prescription: WorkingPrescription, issues: Sequence[str]) -> WorkingPrescription:
        joined = " ".join(issues).lower()
        updates = {}

        if "dose" in joined:
            updates["dose_mg_per_kg"] = _contract(
                prescription.dose_mg_per_kg, DOSE_FACTOR, DOSE_FLOOR_MG_PER_KG, 4
            )

        if "inventory" in joined or "shortage" in joined:
            updates["dispense_volume_ml"] = _contract(
                prescription.dispense_volume_ml, VOLUME_FACTOR, VOLUME_FLOOR_ML, 2
            )

        if "incompatib" in joined:
            updates["strength_mg_per_ml"] = _contract(
                prescription.strength_mg_per_ml, STRENGTH_FACTOR, STRENGTH_FLOOR_MG_PER_ML, 3
            )

        if not updates:
            return prescription
        return prescription.model_copy(update=updates)


def _contract(value: float, factor: float, floor: float, digits: int) -> float:
    # A value already under the floor is left alone rather than raised to it.
    if value <= floor:
        return value
    return round_half_up(max(value * factor, floor), digits)


def apply_deterministic_corrections(
    prescription: WorkingPrescription,
    issues: Sequence[str],
) -> WorkingPrescription:
    """Shorthand for KeywordCorrector().apply(...)."""
    return KeywordCorrector().apply(prescription, issues)
