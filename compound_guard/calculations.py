"""
Deterministic compounding calculations.

- Alligation (mixing two strengths to reach a target strength)
- Dilution (C1V1 = C2V2, solve for the missing variable)
- Weight-based dosing
- Beyond-use date (BUD) assignment
- Full calculation report for one verification attempt

No I/O. Every function is pure and rounds half-up at the precision noted.
"""

import logging
from datetime import date
from typing import Dict, List, Literal, Optional, Sequence

from .state import (
    BudRule,
    CalculationIngredient,
    CalculationReport,
    Ingredient,
    WorkingPrescription,
)
from .utils import add_days, round_half_up

logger = logging.getLogger(__name__)

MG_PER_G = 1000
MAX_BUD_DAYS = 180
AQUEOUS_BUD_DAYS = 14
NON_AQUEOUS_BUD_DAYS = 90
OVERFILL_MULTIPLIER = 1.03

# Clamps applied before any arithmetic
MIN_WEIGHT_KG = 1.0
MIN_CONCENTRATION_MG_PER_ML = 1.0
MIN_VOLUME_ML = 30.0
MIN_DOSE_MG_PER_KG = 0.001


def alligation(
    high_conc: float,
    low_conc: float,
    desired_conc: float,
    total_qty: float,
) -> Dict[str, float]:
    """
    Split `total_qty` between a high and a low strength stock.

    Parts of high = desired - low, parts of low = high - desired.
    Requires low < desired < high.
    """
    if high_conc <= low_conc:
        raise ValueError("High concentration must be greater than low concentration.")
    if desired_conc <= low_conc or desired_conc >= high_conc:
        raise ValueError("Desired concentration must fall between low and high concentrations.")
    if total_qty < 0:
        raise ValueError("Total quantity must not be negative.")

    parts_high = desired_conc - low_conc
    parts_low = high_conc - desired_conc
    total_parts = parts_high + parts_low

    return {
        "high_concentration_quantity": round_half_up(parts_high / total_parts * total_qty, 4),
        "low_concentration_quantity": round_half_up(parts_low / total_parts * total_qty, 4),
    }


def dilution(
    c1: Optional[float] = None,
    v1: Optional[float] = None,
    c2: Optional[float] = None,
    v2: Optional[float] = None,
) -> float:
    """Solve C1V1 = C2V2 for whichever single variable was left as None."""
    provided = [value for value in (c1, v1, c2, v2) if value is not None]
    if len(provided) != 3:
        raise ValueError("Provide exactly 3 values for C1V1=C2V2.")

    try:
        if c1 is None:
            solved = c2 * v2 / v1
        elif v1 is None:
            solved = c2 * v2 / c1
        elif c2 is None:
            solved = c1 * v1 / v2
        else:
            solved = c1 * v1 / c2
    except ZeroDivisionError:
        raise ValueError("Cannot solve C1V1=C2V2 with a zero divisor.") from None

    return round_half_up(solved, 6)


def dose_by_weight(mg_per_kg: float, weight_kg: float, frequency_per_day: float) -> Dict[str, float]:
    """
    Weight-based dosing.

    single = mg/kg × kg, daily = single × doses/day, both at 4 places.
    """
    single_dose_mg = round_half_up(mg_per_kg * weight_kg, 4)
    daily_dose_mg = round_half_up(single_dose_mg * frequency_per_day, 4)
    return {"single_dose_mg": single_dose_mg, "daily_dose_mg": daily_dose_mg}


def assign_bud(
    category: Literal["aqueous", "non_aqueous"],
    has_stability_data: bool,
    stability_days: Optional[int] = None,
) -> int:
    """
    Assign beyond-use days.

    Stability data wins but is capped at 180 days; otherwise aqueous
    preparations get 14 days and non-aqueous 90. This is a ceiling, not a
    recommendation.
    """
    if has_stability_data and stability_days:
        return min(int(stability_days), MAX_BUD_DAYS)
    return AQUEOUS_BUD_DAYS if category == "aqueous" else NON_AQUEOUS_BUD_DAYS


def assign_bud_for_rule(rule: BudRule) -> int:
    return assign_bud(rule.category, rule.has_stability_data, rule.stability_days)


def get_api_ingredient(ingredients: Sequence[Ingredient]) -> Optional[Ingredient]:
    """Return the first API ingredient, or the first ingredient when none is tagged."""
    for ingredient in ingredients:
        if ingredient.role == "api":
            return ingredient
    return ingredients[0] if ingredients else None


def _required_amounts(
    ingredients: Sequence[Ingredient],
    total_api_mg: float,
    volume_ml: float,
) -> List[CalculationIngredient]:
    api = get_api_ingredient(ingredients)
    results = []
    for ingredient in ingredients:
        if api is not None and ingredient.name == api.name:
            with_overfill = total_api_mg * OVERFILL_MULTIPLIER
            if ingredient.unit == "g":
                results.append(CalculationIngredient(
                    name=ingredient.name,
                    required_amount=round_half_up(with_overfill / MG_PER_G, 4),
                    unit="g",
                ))
            else:
                results.append(CalculationIngredient(
                    name=ingredient.name,
                    required_amount=round_half_up(with_overfill, 3),
                    unit="mg",
                ))
        elif ingredient.role == "vehicle":
            results.append(CalculationIngredient(
                name=ingredient.name,
                required_amount=round_half_up(volume_ml, 3),
                unit="mL",
            ))
        else:
            results.append(CalculationIngredient(
                name=ingredient.name,
                required_amount=round_half_up(max(ingredient.quantity, 0.0), 3),
                unit=ingredient.unit,
            ))
    return results


def build_report(
    prescription: WorkingPrescription,
    patient_weight_kg: float,
    bud_rule: BudRule,
    ingredients: Sequence[Ingredient],
    pharmacist_feedback: Optional[str] = None,
    run_date: Optional[date] = None,
) -> CalculationReport:
    """
    Assemble the full calculation report for one attempt.

    Degenerate inputs are clamped (weight >= 1 kg, strength >= 1 mg/mL,
    volume >= 30 mL). Total API = strength × volume with a 3% overfill,
    converted to grams when the API is stocked in grams.
    """
    run_date = run_date or date.today()

    weight_kg = max(patient_weight_kg or 0.0, MIN_WEIGHT_KG)
    concentration = max(prescription.strength_mg_per_ml or 0.0, MIN_CONCENTRATION_MG_PER_ML)
    volume_ml = max(prescription.dispense_volume_ml or 0.0, MIN_VOLUME_ML)
    frequency = max(prescription.frequency_per_day or 1, 1)

    dose = dose_by_weight(
        mg_per_kg=max(prescription.dose_mg_per_kg or 0.0, MIN_DOSE_MG_PER_KG),
        weight_kg=weight_kg,
        frequency_per_day=frequency,
    )

    bud_days = assign_bud_for_rule(bud_rule)
    bud_date = add_days(run_date, bud_days)

    total_api_mg = round_half_up(concentration * volume_ml, 4)
    required = _required_amounts(ingredients, total_api_mg, volume_ml)

    api = get_api_ingredient(ingredients)
    api_line = next((item for item in required if api is not None and item.name == api.name), None)
    api_amount = f"{api_line.required_amount:g} {api_line.unit}" if api_line else "0 mg"

    single_dose_volume_ml = round_half_up(dose["single_dose_mg"] / concentration, 4)

    steps = (
        f"Prepare a calibrated vessel for {prescription.medication_name}.",
        f"Weigh/measure active ingredient to {api_amount}.",
        f"Levigate active ingredient and gradually qs with vehicle to {round_half_up(volume_ml, 2):g} mL.",
        "Homogenize for 90 seconds and perform visual particulate inspection.",
        f"Dispense with storage instructions. Assigned BUD: {bud_date.isoformat()}.",
    )

    notes = [
        f"Single dose: {dose['single_dose_mg']:g} mg ({single_dose_volume_ml:g} mL at {concentration:g} mg/mL).",
        f"Daily dose: {dose['daily_dose_mg']:g} mg across {frequency:g} doses.",
    ]
    if pharmacist_feedback and pharmacist_feedback.strip():
        notes.append(f"Pharmacist context considered: {pharmacist_feedback.strip()}")

    logger.debug(
        f"Report built for {prescription.medication_name}: single={dose['single_dose_mg']} mg, "
        f"daily={dose['daily_dose_mg']} mg, BUD={bud_days}d"
    )

    return CalculationReport(
        single_dose_mg=dose["single_dose_mg"],
        daily_dose_mg=dose["daily_dose_mg"],
        final_concentration_mg_per_ml=round_half_up(concentration, 4),
        final_volume_ml=round_half_up(volume_ml, 3),
        bud_days=bud_days,
        bud_date=bud_date,
        ingredients=tuple(required),
        steps=steps,
        notes=tuple(notes),
    )
