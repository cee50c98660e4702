"""Hard safety checks for Compound-Guard verification attempts."""

import logging
import math
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence, Tuple

from ..config import get_settings
from ..state import (
    HARD_CHECK_ORDER,
    CalculationReport,
    CheckResult,
    DoseRangeConstraints,
    ExternalClinicalSafetySnapshot,
    FormulaSafetyProfile,
    HardCheckSummary,
    InventoryLot,
)
from ..utils import dedupe, format_number, normalize_token, normalize_whitespace, round_half_up, word_tokens
from .clinical_label_tools import build_missing_snapshot, extract_dose_constraints_from_label_text

logger = logging.getLogger(__name__)

MG_PER_G = 1000
MAX_BUD_DAYS = 180
DEFAULT_MIN_SINGLE_DOSE_MG = 0.0
DEFAULT_MAX_SINGLE_DOSE_MG = 1000.0
DEFAULT_MAX_DAILY_DOSE_MG = 4000.0
FALLBACK_LOW_STOCK_MULTIPLIER = 1.25
MIN_PREPARATION_STEPS = 4

# Allergy class -> ingredient / label terms that share the sensitivity
CROSS_SENSITIVITY = {
    "sulfa": ["sulfonamide", "sulfamethoxazole", "sulfadiazine", "sulfacetamide", "sulfisoxazole"],
    "penicillin": [
        "penicillin", "amoxicillin", "ampicillin", "dicloxacillin", "nafcillin",
        "cephalexin", "cefazolin", "ceftriaxone",
    ],
    "cephalosporin": ["cephalexin", "cefazolin", "cefuroxime", "ceftriaxone"],
    "aspirin": ["acetylsalicylic", "salicylate", "ibuprofen", "naproxen", "ketorolac"],
    "nsaid": ["ibuprofen", "naproxen", "ketorolac", "diclofenac", "indomethacin"],
    "peanut": ["peanut", "arachis"],
    "soy": ["soy", "lecithin"],
    "egg": ["egg", "ovalbumin"],
    "lactose": ["lactose"],
}

# Dosage-form words that would otherwise match every label
MEDICATION_STOPWORDS = {
    "and", "with", "for", "tablet", "tablets", "capsule", "capsules", "oral",
    "solution", "suspension", "extended", "release", "delayed", "injectable",
    "powder", "mg", "ml",
}


def _check(status: str, detail: str) -> CheckResult:
    return CheckResult(status=status, detail=detail)


def _fmt(value: float) -> str:
    return f"{value:g}"


# ============================================================
# Local checks
# ============================================================

def check_dose_range(report: CalculationReport, profile: FormulaSafetyProfile) -> CheckResult:
    min_single = profile.min_single_dose_mg if profile.min_single_dose_mg is not None else DEFAULT_MIN_SINGLE_DOSE_MG
    max_single = profile.max_single_dose_mg if profile.max_single_dose_mg is not None else DEFAULT_MAX_SINGLE_DOSE_MG
    max_daily = profile.max_daily_dose_mg if profile.max_daily_dose_mg is not None else DEFAULT_MAX_DAILY_DOSE_MG

    within = min_single <= report.single_dose_mg <= max_single and report.daily_dose_mg <= max_daily
    if within:
        return _check("PASS", f"Dose within configured bounds ({_fmt(min_single)}-{_fmt(max_single)} mg single dose).")
    return _check(
        "FAIL",
        f"Dose out of bounds: single {_fmt(report.single_dose_mg)} mg "
        f"(range {_fmt(min_single)}-{_fmt(max_single)}), "
        f"daily {_fmt(report.daily_dose_mg)} mg (max {_fmt(max_daily)}).",
    )


def check_allergy_crossmatch(allergies: Sequence[str], ingredient_names: Sequence[str]) -> CheckResult:
    """FAIL when any allergy token is a case-insensitive substring of an ingredient name."""
    names = [normalize_token(name) for name in ingredient_names]
    matches = [
        allergy for allergy in allergies
        if normalize_token(allergy) and any(normalize_token(allergy) in name for name in names)
    ]
    if matches:
        return _check("FAIL", f"Potential allergy crossmatch detected: {', '.join(matches)}.")
    return _check("PASS", "No patient allergy conflict detected against ingredients.")


def check_units_consistency(report: CalculationReport) -> CheckResult:
    invalid = [
        item for item in report.ingredients
        if not math.isfinite(item.required_amount) or item.required_amount <= 0
    ]
    if invalid:
        return _check("FAIL", "Unit consistency failed: at least one ingredient quantity is invalid.")
    return _check("PASS", "All ingredient quantities are finite and positive.")


def check_bud_validity(report: CalculationReport) -> CheckResult:
    if report.bud_days <= 0 or report.bud_days > MAX_BUD_DAYS:
        return _check("FAIL", f"Assigned BUD {report.bud_days} days is outside supported bounds (1-{MAX_BUD_DAYS}).")
    return _check("PASS", f"BUD {report.bud_days} days assigned through deterministic rules.")


def resolve_low_stock_multiplier(
    profile: FormulaSafetyProfile,
    ingredient_name: str,
    global_multiplier: Optional[float] = None,
) -> float:
    """
    Resolve the low-stock warning multiplier for one ingredient.

    Per-ingredient override, then the formula's multiplier, then the global
    setting. Anything non-finite or <= 1 falls back to 1.25.
    """
    target = normalize_token(ingredient_name)
    by_ingredient = next(
        (value for key, value in profile.low_stock_warning_multiplier_by_ingredient.items()
         if normalize_token(key) == target),
        None,
    )

    configured = by_ingredient
    if configured is None:
        configured = profile.low_stock_warning_multiplier
    if configured is None:
        configured = global_multiplier if global_multiplier is not None else get_settings().low_stock_warning_multiplier

    try:
        configured = float(configured)
    except (TypeError, ValueError):
        return FALLBACK_LOW_STOCK_MULTIPLIER
    if not math.isfinite(configured) or configured <= 1:
        return FALLBACK_LOW_STOCK_MULTIPLIER
    return configured


def _to_mg(quantity: float, unit: str) -> float:
    return quantity * MG_PER_G if unit == "g" else quantity


def check_inventory_availability(
    report: CalculationReport,
    inventory_lots: Sequence[InventoryLot],
    profile: FormulaSafetyProfile,
    global_multiplier: Optional[float] = None,
) -> Tuple[CheckResult, Optional[str]]:
    """
    Compare summed lot stock against each requirement.

    mL requirements are met only by mL lots; mass requirements compare in mg.

    Returns:
        (check, low-stock warning or None)
    """
    requirements: "OrderedDict[str, Tuple[str, float, str]]" = OrderedDict()
    for item in report.ingredients:
        requirements[normalize_token(item.name)] = (item.name, item.required_amount, item.unit)

    shortages = 0
    low_stock: List[str] = []
    for key, (display_name, quantity, unit) in requirements.items():
        lots = [lot for lot in inventory_lots if normalize_token(lot.ingredient_name) == key]
        if not lots:
            shortages += 1
            continue

        multiplier = resolve_low_stock_multiplier(profile, display_name, global_multiplier)

        if unit == "mL":
            available = sum(lot.available_quantity for lot in lots if lot.unit == "mL")
            required = quantity
        else:
            available = sum(_to_mg(lot.available_quantity, lot.unit) for lot in lots if lot.unit in ("mg", "g"))
            required = _to_mg(quantity, unit)

        # g -> mg conversion leaves float noise; compare at 6 places.
        available = round_half_up(available, 6)
        required = round_half_up(required, 6)

        if available < required:
            shortages += 1
        elif available < required * multiplier:
            low_stock.append(display_name)

    warning = None
    if low_stock:
        warning = f"Inventory is low for {', '.join(dedupe(low_stock))}; replenish soon."

    if shortages:
        return _check("FAIL", f"Inventory shortage on {shortages} required ingredient(s)."), warning
    return _check("PASS", "Inventory can satisfy calculated requirements."), warning


def check_lot_expiry(report: CalculationReport, inventory_lots: Sequence[InventoryLot]) -> CheckResult:
    expiring = 0
    for item in report.ingredients:
        key = normalize_token(item.name)
        expiries = [
            lot.expires_on for lot in inventory_lots
            if normalize_token(lot.ingredient_name) == key and lot.expires_on is not None
        ]
        if expiries and min(expiries) < report.bud_date:
            expiring += 1

    if expiring:
        return _check("FAIL", f"Lot expiry occurs before BUD for {expiring} ingredient(s).")
    return _check("PASS", "All lots are valid through assigned BUD.")


def check_incompatibilities(profile: FormulaSafetyProfile, ingredient_names: Sequence[str]) -> CheckResult:
    """Incompatible pairs present together, or any contraindicated ingredient present."""
    names = [normalize_token(name) for name in ingredient_names]

    def present(term: str) -> bool:
        token = normalize_token(term)
        return bool(token) and any(token in name for name in names)

    pairs = [
        pair for pair in profile.incompatibilities
        if len(pair) >= 2 and present(str(pair[0])) and present(str(pair[1]))
    ]
    contraindicated = [term for term in profile.contraindicated_ingredients if present(term)]

    problems = []
    if pairs:
        problems.append("Known incompatibility detected in ingredient combination.")
    if contraindicated:
        problems.append(f"Contraindicated ingredient present in formula: {', '.join(contraindicated)}.")

    if problems:
        return _check("FAIL", " ".join(problems))
    return _check("PASS", "No known incompatibility pair or contraindicated ingredient matched.")


# ============================================================
# External label checks
# ============================================================

def build_medication_aliases(name: str) -> List[str]:
    """Full normalized name plus its distinctive (>= 4 char, non-dosage-form) tokens."""
    normalized = normalize_token(name)
    if not normalized:
        return []
    tokens = [token for token in word_tokens(normalized) if len(token) >= 4 and token not in MEDICATION_STOPWORDS]
    return dedupe([normalized, *tokens])


def build_cross_sensitivity_tokens(allergy: str) -> List[str]:
    normalized = normalize_token(allergy)
    if not normalized:
        return []
    tokens = [normalized, *CROSS_SENSITIVITY.get(normalized, [])]
    return dedupe(token for token in tokens if len(token) >= 3)


def _lookup_failed(detail: str, fail_closed: bool) -> CheckResult:
    return _check("FAIL" if fail_closed else "WARN", detail)


def check_drug_interactions(
    snapshot: ExternalClinicalSafetySnapshot,
    current_medications: Sequence[str],
    fail_closed: bool,
) -> CheckResult:
    if not current_medications:
        return _check("PASS", "No concurrent medications on record for DDI screening.")

    if snapshot.status == "error":
        return _lookup_failed("External DDI label lookup failed.", fail_closed)

    interaction_text = normalize_token(snapshot.interactions_text)
    if not interaction_text:
        return _check("WARN", "No interaction text available from external references.")

    matched = dedupe(
        medication for medication in current_medications
        if any(alias in interaction_text for alias in build_medication_aliases(medication))
    )
    if matched:
        return _check("FAIL", f"External interaction section references concurrent medication(s): {', '.join(matched)}.")
    return _check("PASS", "No concurrent medication terms were detected in external interaction sections.")


def check_external_dose_range(
    snapshot: ExternalClinicalSafetySnapshot,
    report: CalculationReport,
    patient_weight_kg: float,
    fail_closed: bool,
) -> Tuple[CheckResult, DoseRangeConstraints]:
    if snapshot.status == "error":
        return _lookup_failed("External dose-range lookup failed.", fail_closed), DoseRangeConstraints()

    dose_text = normalize_whitespace(f"{snapshot.dose_text} {snapshot.pediatric_text}")
    if not dose_text:
        return _check("WARN", "No dosage text available in external labels."), DoseRangeConstraints()

    constraints = extract_dose_constraints_from_label_text(dose_text)
    if constraints.empty:
        return (
            _check("WARN", "No deterministic numeric max dose constraints were extracted from external labels."),
            constraints,
        )

    violations = []
    if constraints.max_single_dose_mg is not None and report.single_dose_mg > constraints.max_single_dose_mg:
        violations.append(
            f"single dose {format_number(report.single_dose_mg)} mg > "
            f"max {format_number(constraints.max_single_dose_mg)} mg"
        )
    if constraints.max_daily_dose_mg is not None and report.daily_dose_mg > constraints.max_daily_dose_mg:
        violations.append(
            f"daily dose {format_number(report.daily_dose_mg)} mg > "
            f"max {format_number(constraints.max_daily_dose_mg)} mg/day"
        )
    if constraints.max_daily_dose_mg_per_kg is not None and patient_weight_kg > 0:
        per_kg = report.daily_dose_mg / patient_weight_kg
        if per_kg > constraints.max_daily_dose_mg_per_kg:
            violations.append(
                f"daily dose {format_number(per_kg)} mg/kg/day > "
                f"max {format_number(constraints.max_daily_dose_mg_per_kg)} mg/kg/day"
            )

    if violations:
        return _check("FAIL", f"External dose-range violation: {'; '.join(violations)}."), constraints

    limits = []
    if constraints.max_single_dose_mg is not None:
        limits.append(f"max single {format_number(constraints.max_single_dose_mg)} mg")
    if constraints.max_daily_dose_mg is not None:
        limits.append(f"max daily {format_number(constraints.max_daily_dose_mg)} mg/day")
    if constraints.max_daily_dose_mg_per_kg is not None:
        limits.append(f"max daily {format_number(constraints.max_daily_dose_mg_per_kg)} mg/kg/day")
    return _check("PASS", f"External dose checks passed against extracted limits: {', '.join(limits)}."), constraints


def check_allergy_cross_sensitivity(
    snapshot: ExternalClinicalSafetySnapshot,
    medication_name: str,
    ingredient_names: Sequence[str],
    allergies: Sequence[str],
    fail_closed: bool,
) -> CheckResult:
    if not allergies:
        return _check("PASS", "No patient allergies recorded for cross-sensitivity screening.")

    if snapshot.status == "error":
        return _lookup_failed("External allergy cross-sensitivity lookup failed.", fail_closed)

    corpus = normalize_token(
        " ".join([medication_name, *ingredient_names, snapshot.contraindications_text, snapshot.warnings_text])
    )
    matches = dedupe(
        f"{allergy} -> {token}"
        for allergy in allergies
        for token in build_cross_sensitivity_tokens(allergy)
        if token in corpus
    )
    if matches:
        return _check("FAIL", f"Potential cross-sensitivity detected from external label data: {', '.join(matches)}.")
    return _check("PASS", "No external cross-sensitivity term match detected.")


def evaluate_external_clinical_checks(
    snapshot: ExternalClinicalSafetySnapshot,
    report: CalculationReport,
    medication_name: str,
    ingredient_names: Sequence[str],
    allergies: Sequence[str],
    current_medications: Sequence[str],
    patient_weight_kg: float,
    fail_closed: Optional[bool] = None,
) -> Dict[str, object]:
    """
    Run the three label-driven checks against one clinical snapshot.

    Returns:
        Dict with checks (name -> CheckResult), constraints, blocking_issues, warnings.
        Snapshot extraction warnings are blocking under fail-closed, advisory otherwise.
    """
    if fail_closed is None:
        fail_closed = get_settings().fail_closed_external_checks

    dose_check, constraints = check_external_dose_range(snapshot, report, patient_weight_kg, fail_closed)
    checks = {
        "drug_interactions": check_drug_interactions(snapshot, current_medications, fail_closed),
        "external_dose_range": dose_check,
        "allergy_cross_sensitivity": check_allergy_cross_sensitivity(
            snapshot, medication_name, ingredient_names, allergies, fail_closed
        ),
    }

    extraction = [warning for warning in snapshot.extraction_warnings if warning.strip()]
    blocking = [check.detail for check in checks.values() if check.status == "FAIL"]
    warnings = [check.detail for check in checks.values() if check.status == "WARN"]
    if fail_closed:
        blocking.extend(extraction)
    else:
        warnings.extend(extraction)

    return {
        "checks": checks,
        "constraints": constraints,
        "blocking_issues": blocking,
        "warnings": warnings,
    }


# ============================================================
# Full evaluator
# ============================================================

def run_hard_checks(
    report: CalculationReport,
    medication_name: str,
    ingredient_names: Sequence[str],
    allergies: Sequence[str],
    safety_profile: FormulaSafetyProfile,
    inventory_lots: Sequence[InventoryLot],
    patient_weight_kg: float = 0.0,
    current_medications: Sequence[str] = (),
    clinical_snapshot: Optional[ExternalClinicalSafetySnapshot] = None,
    fail_closed: Optional[bool] = None,
    low_stock_warning_multiplier: Optional[float] = None,
) -> HardCheckSummary:
    """
    Evaluate the full hard check set for one calculation attempt.

    Args:
        report: Calculation report of this attempt
        medication_name: Prescribed medication
        ingredient_names: Formula ingredient names
        allergies: Patient allergy tokens
        safety_profile: Formula safety profile (dose bounds, incompatibilities, low-stock multipliers)
        inventory_lots: Lots on hand for the formula's ingredients
        patient_weight_kg: Used for the external mg/kg/day ceiling
        current_medications: Concurrent medications for DDI screening
        clinical_snapshot: Label snapshot fetched once per run (missing when None)
        fail_closed: Treat external lookup failures as blocking (defaults to settings)
        low_stock_warning_multiplier: Global low-stock multiplier (defaults to settings)

    Returns:
        HardCheckSummary whose blocking issues are the FAIL details in check order,
        plus snapshot extraction warnings under fail-closed
    """
    if fail_closed is None:
        fail_closed = get_settings().fail_closed_external_checks
    snapshot = clinical_snapshot or build_missing_snapshot(medication_name)
    allergies = [allergy for allergy in allergies if allergy and allergy.strip()]

    inventory_check, low_stock_warning = check_inventory_availability(
        report, inventory_lots, safety_profile, low_stock_warning_multiplier
    )
    external = evaluate_external_clinical_checks(
        snapshot=snapshot,
        report=report,
        medication_name=medication_name,
        ingredient_names=ingredient_names,
        allergies=allergies,
        current_medications=current_medications,
        patient_weight_kg=patient_weight_kg,
        fail_closed=fail_closed,
    )

    checks = {
        "dose_range": check_dose_range(report, safety_profile),
        "allergy_crosscheck": check_allergy_crossmatch(allergies, ingredient_names),
        "units_consistency": check_units_consistency(report),
        "bud_validity": check_bud_validity(report),
        "inventory_availability": inventory_check,
        "lot_expiry": check_lot_expiry(report, inventory_lots),
        "incompatibilities": check_incompatibilities(safety_profile, ingredient_names),
        **external["checks"],
    }
    ordered = {name: checks[name] for name in HARD_CHECK_ORDER}

    local_names = HARD_CHECK_ORDER[:7]
    blocking = [ordered[name].detail for name in local_names if ordered[name].status == "FAIL"]
    warnings = [ordered[name].detail for name in local_names if ordered[name].status == "WARN"]
    if low_stock_warning:
        warnings.append(low_stock_warning)
    if len(report.steps) < MIN_PREPARATION_STEPS:
        warnings.append("Preparation instructions are sparse; verify compounding technique details.")

    blocking.extend(external["blocking_issues"])
    warnings.extend(external["warnings"])

    summary = HardCheckSummary(checks=ordered, blocking_issues=blocking, warnings=warnings)
    failed = [name for name, check in ordered.items() if check.status == "FAIL"]
    if failed:
        logger.info(f"Hard checks for {medication_name}: FAIL on {', '.join(failed)}")
    else:
        logger.info(f"Hard checks for {medication_name}: no blocking issues ({len(warnings)} warning(s))")
    return summary
