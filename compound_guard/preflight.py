"""
Preflight gate.

Structural checks that run before any calculation or external call.
Failures come back as blocking-issue strings on a PreflightSummary;
nothing here raises.

The pre-compounding allergy screen blocks only on whole-word collisions
("omeprazole" against an Omeprazole API). Fragments such as "prazole" are
left to the per-attempt allergy_crosscheck hard check, which FAILs them, so
the job still iterates and escalates to needs_review with a full report
instead of stopping before any calculation.
"""

import re
from typing import Dict, List, Optional

from .state import CheckResult, Formula, JobContext, PreflightSummary
from .utils import has_text, is_positive_number, normalize_token

MIN_INSTRUCTION_LENGTH = 20


def _check(passed: bool, pass_detail: str, fail_detail: str) -> CheckResult:
    return CheckResult(status="PASS" if passed else "FAIL", detail=pass_detail if passed else fail_detail)


def run_intake_preflight(context: JobContext) -> PreflightSummary:
    """Patient identity, weight, prescription completeness and allergy documentation."""
    patient = context.patient
    rx = context.prescription
    blocking: List[str] = []
    warnings: List[str] = []

    has_identity = has_text(patient.id) and has_text(patient.full_name)
    has_weight = is_positive_number(patient.weight_kg)
    has_prescription_core = (
        has_text(rx.medication_name)
        and has_text(rx.route)
        and all(
            is_positive_number(value)
            for value in (rx.dose_mg_per_kg, rx.frequency_per_day, rx.strength_mg_per_ml, rx.dispense_volume_ml)
        )
    )
    allergies_documented = patient.allergies is not None

    if not has_identity:
        blocking.append("Patient identity fields are incomplete.")
    if not has_weight:
        blocking.append("Patient weight is missing or invalid.")
    if not has_prescription_core:
        blocking.append("Prescription fields required for deterministic calculations are incomplete.")
    if not allergies_documented:
        blocking.append("Patient allergy documentation is missing.")
    elif not patient.allergies:
        warnings.append("No allergies listed. Confirm this is intentionally documented as NKDA.")

    checks: Dict[str, CheckResult] = {
        "patient_identity": _check(
            has_identity, "Patient identity fields are present.", "Patient identity fields are incomplete."
        ),
        "patient_weight": _check(
            has_weight,
            f"Patient weight captured ({patient.weight_kg:g} kg)." if has_weight else "",
            "Patient weight is missing or invalid.",
        ),
        "prescription_completeness": _check(
            has_prescription_core,
            "Prescription fields required for calculations are present.",
            "Prescription fields required for deterministic calculations are incomplete.",
        ),
        "allergy_documentation": _check(
            allergies_documented, "Allergy documentation is present.", "Patient allergy documentation is missing."
        ),
    }
    return PreflightSummary(stage="intake", checks=checks, blocking_issues=blocking, warnings=warnings)


def _has_consistent_dose_bounds(formula: Formula) -> bool:
    profile = formula.safety_profile
    low, high, daily = profile.min_single_dose_mg, profile.max_single_dose_mg, profile.max_daily_dose_mg
    if low is None or high is None or daily is None:
        return False
    return low >= 0 and high > 0 and daily > 0 and low <= high <= daily


def _whole_word_matches(allergies: List[str], ingredient_names: List[str]) -> List[str]:
    """Allergies that appear as a whole word (or phrase) in an ingredient name."""
    matches = []
    for allergy in allergies:
        token = normalize_token(allergy)
        if not token:
            continue
        pattern = re.compile(rf"(?<![a-z0-9]){re.escape(token)}(?![a-z0-9])")
        if any(pattern.search(name) for name in ingredient_names):
            matches.append(allergy)
    return matches


def run_pre_compounding_preflight(
    context: JobContext,
    formula: Formula,
    pharmacist_feedback: Optional[str] = None,
) -> PreflightSummary:
    """
    Recipe structure, instructions, dose bounds, recipe/allergy collisions
    and formula provenance.

    A generated formula without pharmacist context passes with a warning;
    the default generated version is used as-is.
    """
    blocking: List[str] = []
    warnings: List[str] = []

    has_api = any(item.role == "api" for item in formula.ingredients)
    has_vehicle = any(item.role == "vehicle" for item in formula.ingredients)
    has_instructions = len((formula.instructions or "").strip()) >= MIN_INSTRUCTION_LENGTH
    has_dose_bounds = _has_consistent_dose_bounds(formula)

    ingredient_names = [normalize_token(item.name) for item in formula.ingredients]
    allergy_matches = _whole_word_matches(context.patient.allergies or [], ingredient_names)

    if not (has_api and has_vehicle):
        blocking.append("Formula recipe is incomplete (API and vehicle are both required).")
    if not has_instructions:
        blocking.append("Formula compounding instructions are missing or too brief.")
    if not has_dose_bounds:
        blocking.append("Formula safety limits are incomplete or inconsistent.")
    if allergy_matches:
        blocking.append(f"Formula recipe conflicts with documented allergies: {', '.join(allergy_matches)}.")

    is_generated = formula.source == "generated"
    has_context = has_text(pharmacist_feedback)
    if not is_generated:
        provenance_detail = "Vetted formula source selected."
    elif has_context:
        provenance_detail = "Generated formula acknowledged with pharmacist context."
        warnings.append("Generated formula detected. Pharmacist context will be applied to this run.")
    else:
        provenance_detail = "Generated formula accepted without pharmacist context."
        warnings.append(
            "Generated formula detected without pharmacist context; the default generated version will be used."
        )

    checks: Dict[str, CheckResult] = {
        "recipe_structure": _check(
            has_api and has_vehicle,
            "Formula contains API and vehicle components.",
            "Formula recipe is incomplete (API and vehicle are both required).",
        ),
        "instructions_completeness": _check(
            has_instructions,
            "Compounding instructions are sufficiently detailed.",
            "Formula compounding instructions are missing or too brief.",
        ),
        "safety_limit_completeness": _check(
            has_dose_bounds,
            "Formula safety limits are present and internally consistent.",
            "Formula safety limits are incomplete or inconsistent.",
        ),
        "recipe_allergy_screen": _check(
            not allergy_matches,
            "No direct recipe-allergy conflict found.",
            f"Recipe conflicts with allergies: {', '.join(allergy_matches)}.",
        ),
        "recipe_provenance": CheckResult(status="PASS", detail=provenance_detail),
    }
    return PreflightSummary(stage="pre_compounding", checks=checks, blocking_issues=blocking, warnings=warnings)
