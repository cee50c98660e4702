"""Unit tests for the deterministic calculation engine."""
from datetime import date

import pytest

from compound_guard.calculations import (
    alligation,
    assign_bud,
    build_report,
    dilution,
    dose_by_weight,
)
from compound_guard.state import BudRule, Ingredient, WorkingPrescription

PRESCRIPTION = WorkingPrescription(
    medication_name="Omeprazole",
    route="PO",
    dose_mg_per_kg=1,
    frequency_per_day=2,
    strength_mg_per_ml=2,
    dispense_volume_ml=100,
)

INGREDIENTS = [
    Ingredient(name="Omeprazole", role="api", quantity=0.5, unit="g", concentration_mg_per_ml=2),
    Ingredient(name="Vehicle", role="vehicle", quantity=0, unit="mL"),
]


class TestAlligation:

    def test_splits_total_quantity(self):
        result = alligation(20, 5, 10, 100)
        assert result["high_concentration_quantity"] == pytest.approx(33.3333, abs=1e-4)
        assert result["low_concentration_quantity"] == pytest.approx(66.6667, abs=1e-4)

    @pytest.mark.parametrize("high,low,desired,total", [(20, 5, 10, 100), (50, 10, 11, 237), (3, 1, 2.5, 1)])
    def test_parts_sum_to_total(self, high, low, desired, total):
        result = alligation(high, low, desired, total)
        assert result["high_concentration_quantity"] >= 0
        assert result["low_concentration_quantity"] >= 0
        assert result["high_concentration_quantity"] + result["low_concentration_quantity"] == pytest.approx(total, abs=1e-3)

    def test_desired_outside_range_raises(self):
        with pytest.raises(ValueError):
            alligation(20, 5, 25, 100)

    def test_inverted_concentrations_raise(self):
        with pytest.raises(ValueError):
            alligation(5, 20, 10, 100)


class TestDilution:

    def test_solves_missing_volume(self):
        assert dilution(c1=20, c2=5, v2=100) == 25

    def test_solves_missing_concentration(self):
        assert dilution(c1=10, v1=30, v2=60) == 5

    def test_recovered_value_balances_equation(self):
        c2 = dilution(c1=7, v1=13, v2=41)
        assert 7 * 13 == pytest.approx(c2 * 41, abs=1e-4)

    def test_two_values_raise(self):
        with pytest.raises(ValueError):
            dilution(c1=20, v1=10)

    def test_four_values_raise(self):
        with pytest.raises(ValueError):
            dilution(c1=20, v1=10, c2=5, v2=40)


class TestDoseByWeight:

    def test_weight_based_doses(self):
        dose = dose_by_weight(1.5, 20, 2)
        assert dose["single_dose_mg"] == 30
        assert dose["daily_dose_mg"] == 60

    def test_daily_is_single_times_frequency(self):
        dose = dose_by_weight(0.333, 17.3, 3)
        assert dose["daily_dose_mg"] == pytest.approx(dose["single_dose_mg"] * 3, abs=1e-4)


class TestAssignBud:

    def test_aqueous_default(self):
        assert assign_bud("aqueous", False) == 14

    def test_non_aqueous_default(self):
        assert assign_bud("non_aqueous", False) == 90

    def test_stability_data_is_capped(self):
        assert assign_bud("aqueous", True, 365) == 180

    def test_stability_data_within_cap(self):
        assert assign_bud("aqueous", True, 30) == 30


class TestBuildReport:

    def test_reference_scenario(self):
        report = build_report(
            PRESCRIPTION, 25, BudRule(category="aqueous"), INGREDIENTS, run_date=date(2026, 3, 1)
        )
        assert report.single_dose_mg == 25
        assert report.daily_dose_mg == 50
        assert report.final_volume_ml == 100
        assert report.bud_days == 14
        assert report.bud_date == date(2026, 3, 15)
        assert report.ingredients[0].required_amount == pytest.approx(0.206, abs=1e-3)
        assert report.ingredients[0].unit == "g"
        assert report.ingredients[1].required_amount == 100
        assert report.ingredients[1].unit == "mL"
        assert len(report.steps) >= 5

    def test_degenerate_inputs_are_clamped(self):
        degenerate = PRESCRIPTION.model_copy(update={"strength_mg_per_ml": 0, "dispense_volume_ml": 5})
        report = build_report(degenerate, 0, BudRule(), INGREDIENTS, run_date=date(2026, 3, 1))
        assert report.final_volume_ml == 30
        assert report.final_concentration_mg_per_ml == 1
        assert report.single_dose_mg == 1

    def test_pharmacist_feedback_is_noted(self):
        report = build_report(
            PRESCRIPTION, 25, BudRule(), INGREDIENTS,
            pharmacist_feedback="Use lower osmolality vehicle.", run_date=date(2026, 3, 1),
        )
        assert any("Use lower osmolality vehicle." in note for note in report.notes)
