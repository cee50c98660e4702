"""Unit tests for the hard safety check evaluator (local and label-driven checks)."""
from datetime import date

import pytest

from compound_guard.state import (
    CalculationIngredient,
    CalculationReport,
    ExternalClinicalSafetySnapshot,
    FormulaSafetyProfile,
    InventoryLot,
)
from compound_guard.tools.clinical_label_tools import (
    build_error_snapshot,
    build_missing_snapshot,
    extract_dose_constraints_from_label_text,
)
from compound_guard.tools.safety_tools import (
    check_inventory_availability,
    evaluate_external_clinical_checks,
    resolve_low_stock_multiplier,
    run_hard_checks,
)


def make_report(**overrides) -> CalculationReport:
    values = dict(
        single_dose_mg=10,
        daily_dose_mg=20,
        final_concentration_mg_per_ml=2,
        final_volume_ml=100,
        bud_days=14,
        bud_date=date(2026, 3, 10),
        ingredients=(
            CalculationIngredient(name="Omeprazole", required_amount=0.2, unit="g"),
            CalculationIngredient(name="Vehicle", required_amount=100, unit="mL"),
        ),
        steps=("a", "b", "c", "d", "e"),
        notes=(),
    )
    values.update(overrides)
    return CalculationReport(**values)


SAFETY = FormulaSafetyProfile(
    min_single_dose_mg=2,
    max_single_dose_mg=30,
    max_daily_dose_mg=90,
    incompatibilities=[["omeprazole", "ethanol"]],
)

INGREDIENTS = ["Omeprazole", "Vehicle"]


def lot(name, quantity, unit, expires_on=date(2026, 12, 31), number="LOT-1"):
    return InventoryLot(
        ingredient_name=name, available_quantity=quantity, unit=unit, expires_on=expires_on, lot_number=number
    )


FULL_STOCK = [lot("Omeprazole", 1, "g"), lot("Vehicle", 500, "mL", number="LOT-2")]


def hard_checks(report=None, allergies=(), lots=FULL_STOCK, safety=SAFETY, ingredients=INGREDIENTS, **kwargs):
    return run_hard_checks(
        report=report or make_report(),
        medication_name="Omeprazole",
        ingredient_names=ingredients,
        allergies=list(allergies),
        safety_profile=safety,
        inventory_lots=lots,
        fail_closed=kwargs.pop("fail_closed", True),
        low_stock_warning_multiplier=1.25,
        **kwargs,
    )


class TestLocalHardChecks:

    def test_all_checks_pass(self):
        summary = hard_checks()
        assert summary.blocking_issues == []
        assert summary.checks["dose_range"].status == "PASS"
        assert summary.checks["inventory_availability"].status == "PASS"

    def test_checks_follow_fixed_order(self):
        summary = hard_checks()
        assert list(summary.checks) == [
            "dose_range",
            "allergy_crosscheck",
            "units_consistency",
            "bud_validity",
            "inventory_availability",
            "lot_expiry",
            "incompatibilities",
            "drug_interactions",
            "external_dose_range",
            "allergy_cross_sensitivity",
        ]

    def test_dose_above_max_fails(self):
        summary = hard_checks(report=make_report(single_dose_mg=100, daily_dose_mg=300))
        assert summary.checks["dose_range"].status == "FAIL"
        assert "Dose out of bounds" in " ".join(summary.blocking_issues)
        assert summary.blocking_issues[0].startswith("Dose out of bounds")

    def test_allergy_substring_fails(self):
        summary = hard_checks(allergies=["omep"])
        assert summary.checks["allergy_crosscheck"].status == "FAIL"
        assert "Potential allergy crossmatch detected: omep." in summary.blocking_issues

    def test_inventory_shortage_fails(self):
        summary = hard_checks(lots=[lot("Omeprazole", 0.01, "g")])
        assert summary.checks["inventory_availability"].status == "FAIL"

    def test_inventory_near_threshold_warns(self):
        summary = hard_checks(lots=[lot("Omeprazole", 0.24, "g"), lot("Vehicle", 105, "mL", number="LOT-2")])
        assert summary.checks["inventory_availability"].status == "PASS"
        assert "Inventory is low" in " ".join(summary.warnings)

    def test_lot_expiring_before_bud_fails(self):
        summary = hard_checks(lots=[lot("Omeprazole", 1, "g", expires_on=date(2026, 2, 1))])
        assert summary.checks["lot_expiry"].status == "FAIL"

    def test_incompatible_pair_fails(self):
        summary = hard_checks(ingredients=["Omeprazole", "Vehicle", "Ethanol"])
        assert summary.checks["incompatibilities"].status == "FAIL"
        assert "Known incompatibility" in summary.checks["incompatibilities"].detail

    def test_contraindicated_ingredient_fails(self):
        safety = SAFETY.model_copy(update={"contraindicated_ingredients": ["vehicle"]})
        summary = hard_checks(safety=safety)
        assert summary.checks["incompatibilities"].status == "FAIL"
        assert "Contraindicated ingredient present in formula: vehicle." in summary.checks["incompatibilities"].detail

    def test_bud_outside_bounds_fails(self):
        summary = hard_checks(report=make_report(bud_days=200))
        assert summary.checks["bud_validity"].status == "FAIL"

    def test_nonpositive_quantity_fails_units(self):
        report = make_report(ingredients=(CalculationIngredient(name="Omeprazole", required_amount=0, unit="g"),))
        summary = hard_checks(report=report)
        assert summary.checks["units_consistency"].status == "FAIL"

    def test_sparse_steps_warn(self):
        summary = hard_checks(report=make_report(steps=("a", "b")))
        assert "Preparation instructions are sparse; verify compounding technique details." in summary.warnings


class TestInventoryBoundaries:

    REPORT = make_report(ingredients=(CalculationIngredient(name="Omeprazole", required_amount=200, unit="mg"),))

    def test_exact_stock_in_other_unit_passes(self):
        check, _ = check_inventory_availability(self.REPORT, [lot("Omeprazole", 0.2, "g")], SAFETY, 1.25)
        assert check.status == "PASS"

    def test_one_unit_under_fails(self):
        check, _ = check_inventory_availability(self.REPORT, [lot("Omeprazole", 199, "mg")], SAFETY, 1.25)
        assert check.status == "FAIL"

    def test_between_one_and_multiplier_warns(self):
        check, warning = check_inventory_availability(self.REPORT, [lot("Omeprazole", 240, "mg")], SAFETY, 1.25)
        assert check.status == "PASS"
        assert warning == "Inventory is low for Omeprazole; replenish soon."

    def test_above_multiplier_is_quiet(self):
        check, warning = check_inventory_availability(self.REPORT, [lot("Omeprazole", 260, "mg")], SAFETY, 1.25)
        assert check.status == "PASS"
        assert warning is None

    def test_volume_requirement_ignores_mass_lots(self):
        report = make_report(ingredients=(CalculationIngredient(name="Vehicle", required_amount=100, unit="mL"),))
        check, _ = check_inventory_availability(report, [lot("Vehicle", 500, "g")], SAFETY, 1.25)
        assert check.status == "FAIL"


class TestLowStockMultiplier:

    def test_per_ingredient_override_wins(self):
        profile = FormulaSafetyProfile(
            low_stock_warning_multiplier=1.5,
            low_stock_warning_multiplier_by_ingredient={"omeprazole": 2.0},
        )
        assert resolve_low_stock_multiplier(profile, "Omeprazole", 1.1) == 2.0

    def test_formula_multiplier_then_global(self):
        assert resolve_low_stock_multiplier(FormulaSafetyProfile(low_stock_warning_multiplier=1.5), "X", 1.1) == 1.5
        assert resolve_low_stock_multiplier(FormulaSafetyProfile(), "X", 1.1) == 1.1

    @pytest.mark.parametrize("configured", [1.0, 0.5, float("nan"), float("inf")])
    def test_invalid_multiplier_falls_back(self, configured):
        profile = FormulaSafetyProfile(low_stock_warning_multiplier=configured)
        assert resolve_low_stock_multiplier(profile, "X", 1.3) == 1.25


def external_checks(snapshot, report=None, allergies=(), current_medications=(), fail_closed=True,
                    medication_name="Omeprazole", ingredients=INGREDIENTS, weight=25):
    return evaluate_external_clinical_checks(
        snapshot=snapshot,
        report=report or make_report(),
        medication_name=medication_name,
        ingredient_names=ingredients,
        allergies=list(allergies),
        current_medications=list(current_medications),
        patient_weight_kg=weight,
        fail_closed=fail_closed,
    )


def ok_snapshot(name="Omeprazole", **texts) -> ExternalClinicalSafetySnapshot:
    return ExternalClinicalSafetySnapshot(medication_name=name, status="ok", **texts)


class TestLabelDoseExtraction:

    def test_extracts_all_ceilings(self):
        constraints = extract_dose_constraints_from_label_text(
            "Maximum 20 mg/dose. Do not exceed 40 mg/day. Up to 2 mg/kg/day."
        )
        assert constraints.max_single_dose_mg == 20
        assert constraints.max_daily_dose_mg == 40
        assert constraints.max_daily_dose_mg_per_kg == 2

    def test_range_takes_upper_bound(self):
        constraints = extract_dose_constraints_from_label_text("Usual dose 20-40 mg/kg/day in divided doses.")
        assert constraints.max_daily_dose_mg_per_kg == 40

    def test_no_numbers_is_empty(self):
        assert extract_dose_constraints_from_label_text("Take as directed.").empty


class TestExternalClinicalChecks:

    def test_interaction_section_mentions_concurrent_medication(self):
        snapshot = ok_snapshot(interactions_text="Clinically relevant interactions include warfarin and clopidogrel.")
        summary = external_checks(snapshot, current_medications=["Warfarin"])
        assert summary["checks"]["drug_interactions"].status == "FAIL"
        assert "warfarin" in " ".join(summary["blocking_issues"]).lower()

    def test_external_dose_range_exceeded(self):
        snapshot = ok_snapshot(dose_text="Do not exceed 15 mg/dose. Maximum 30 mg/day.")
        summary = external_checks(snapshot, report=make_report(single_dose_mg=16, daily_dose_mg=32), weight=20)
        assert summary["checks"]["external_dose_range"].status == "FAIL"
        assert "dose-range violation" in " ".join(summary["blocking_issues"])

    def test_external_dose_within_limits_passes(self):
        snapshot = ok_snapshot(dose_text="Do not exceed 15 mg/dose. Maximum 30 mg/day.")
        summary = external_checks(snapshot)
        assert summary["checks"]["external_dose_range"].status == "PASS"
        assert summary["constraints"].max_single_dose_mg == 15

    def test_sulfa_cross_sensitivity(self):
        snapshot = ok_snapshot(
            "Sulfamethoxazole",
            contraindications_text="Contraindicated in patients with sulfonamide hypersensitivity.",
        )
        summary = external_checks(
            snapshot,
            allergies=["sulfa"],
            medication_name="Sulfamethoxazole Compound",
            ingredients=["Sulfamethoxazole", "Vehicle"],
        )
        assert summary["checks"]["allergy_cross_sensitivity"].status == "FAIL"
        assert "cross-sensitivity" in " ".join(summary["blocking_issues"])

    @pytest.mark.parametrize("fail_closed,expected", [(True, "FAIL"), (False, "WARN")])
    def test_external_error_follows_fail_closed(self, fail_closed, expected):
        snapshot = build_error_snapshot("Baclofen")
        summary = external_checks(
            snapshot,
            allergies=["penicillin"],
            current_medications=["Amoxicillin"],
            medication_name="Baclofen",
            ingredients=["Baclofen", "Vehicle"],
            fail_closed=fail_closed,
        )
        for name in ("drug_interactions", "external_dose_range", "allergy_cross_sensitivity"):
            assert summary["checks"][name].status == expected

    def test_extraction_warnings_advisory_when_fail_open(self):
        snapshot = build_missing_snapshot("Baclofen", ["openFDA returned no clinical label records for Baclofen."])
        summary = external_checks(snapshot, medication_name="Baclofen", fail_closed=False)
        assert summary["blocking_issues"] == []
        assert "openFDA returned no clinical label records" in " ".join(summary["warnings"])

    def test_extraction_warnings_blocking_when_fail_closed(self):
        snapshot = build_missing_snapshot("Baclofen", ["openFDA returned no clinical label records for Baclofen."])
        summary = external_checks(snapshot, medication_name="Baclofen", fail_closed=True)
        assert "openFDA returned no clinical label records" in " ".join(summary["blocking_issues"])

    def test_external_blocking_issues_follow_local_ones(self):
        snapshot = ok_snapshot(dose_text="Do not exceed 5 mg/dose.")
        summary = hard_checks(report=make_report(single_dose_mg=100, daily_dose_mg=300), clinical_snapshot=snapshot)
        assert summary.blocking_issues[0].startswith("Dose out of bounds")
        assert summary.blocking_issues[-1].startswith("External dose-range violation")
