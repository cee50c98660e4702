"""Tests for the keyword corrector applied between attempts."""
import pytest

from compound_guard.corrections import KeywordCorrector, apply_deterministic_corrections
from compound_guard.state import WorkingPrescription

BASE = WorkingPrescription(
    medication_name="Omeprazole",
    route="PO",
    dose_mg_per_kg=1,
    frequency_per_day=2,
    strength_mg_per_ml=2,
    dispense_volume_ml=100,
)


class TestKeywordCorrector:

    def test_dose_issue_contracts_dose(self):
        corrected = KeywordCorrector().apply(BASE, ["Dose out of bounds: single 25 mg."])
        assert corrected.dose_mg_per_kg == pytest.approx(0.9)
        assert corrected.dispense_volume_ml == 100
        assert corrected.strength_mg_per_ml == 2

    def test_inventory_issue_contracts_volume(self):
        corrected = KeywordCorrector().apply(BASE, ["Inventory shortage on 1 required ingredient(s)."])
        assert corrected.dispense_volume_ml == pytest.approx(85)

    def test_incompatibility_issue_contracts_strength(self):
        corrected = KeywordCorrector().apply(BASE, ["Known incompatibility detected in ingredient combination."])
        assert corrected.strength_mg_per_ml == pytest.approx(1.9)

    def test_triggers_compose(self):
        corrected = KeywordCorrector().apply(
            BASE, ["Dose out of bounds.", "Inventory shortage on 2 required ingredient(s).", "Known incompatibility."]
        )
        assert corrected.dose_mg_per_kg == pytest.approx(0.9)
        assert corrected.dispense_volume_ml == pytest.approx(85)
        assert corrected.strength_mg_per_ml == pytest.approx(1.9)

    def test_unrelated_issue_returns_same_prescription(self):
        corrected = KeywordCorrector().apply(BASE, ["Lot expiry occurs before BUD for 1 ingredient(s)."])
        assert corrected is BASE

    def test_input_is_not_mutated(self):
        KeywordCorrector().apply(BASE, ["dose"])
        assert BASE.dose_mg_per_kg == 1

    def test_floors_are_respected(self):
        small = BASE.model_copy(update={"dispense_volume_ml": 16, "strength_mg_per_ml": 1.02})
        corrected = KeywordCorrector().apply(small, ["inventory", "incompatible"])
        assert corrected.dispense_volume_ml == 15
        assert corrected.strength_mg_per_ml == 1

    def test_value_below_floor_is_not_raised(self):
        tiny = BASE.model_copy(update={"dispense_volume_ml": 10})
        corrected = KeywordCorrector().apply(tiny, ["shortage"])
        assert corrected.dispense_volume_ml == 10

    @pytest.mark.parametrize("rounds", [1, 2, 5, 20])
    def test_repeated_corrections_never_expand(self, rounds):
        current = BASE
        for _ in range(rounds):
            following = apply_deterministic_corrections(current, ["dose", "inventory", "incompatib"])
            assert following.dose_mg_per_kg <= current.dose_mg_per_kg
            assert following.dispense_volume_ml <= current.dispense_volume_ml
            assert following.strength_mg_per_ml <= current.strength_mg_per_ml
            current = following
