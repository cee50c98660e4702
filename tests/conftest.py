"""
Shared fixtures for all tests.

Every test gets its own SQLite file and explicit Settings; external HTTP is
replaced by FakeSession / canned snapshots, so nothing touches the network.
"""
import uuid
from datetime import date, timedelta

import pytest

from compound_guard.config import Settings
from compound_guard.db.sqlite_store import SQLiteCompoundingStore
from compound_guard.nodes import PipelineServices
from compound_guard.state import (
    BudRule,
    ExternalClinicalSafetySnapshot,
    Formula,
    FormulaSafetyProfile,
    Ingredient,
    MedicationCitation,
    MedicationReferenceSnapshot,
)

RUN_DATE = date(2026, 3, 1)


# ---------------------------------------------------------------------------
# HTTP fakes
# ---------------------------------------------------------------------------

class FakeResponse:
    def __init__(self, status_code=200, payload=None, url="https://example.test/", text=None):
        self.status_code = status_code
        self._payload = payload
        self.url = url
        self._text = text

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeSession:
    """
    Routes GET requests by URL substring to canned responses.

    routes: list of (substring, FakeResponse | Exception). The first matching
    route wins; unmatched URLs get a 404.
    """

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def get(self, url, params=None, timeout=None, headers=None):
        self.calls.append((url, params))
        for substring, response in self.routes:
            if substring in url:
                if isinstance(response, Exception):
                    raise response
                return response
        return FakeResponse(404, {"error": {"message": "No matches found!"}}, url=url)


# ---------------------------------------------------------------------------
# Settings / store
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path):
    return Settings(
        environment="test",
        db_path=tmp_path / "compound_guard.db",
        fail_closed_external_checks=True,
        low_stock_warning_multiplier=1.25,
        max_iterations=3,
        ai_backend="none",
        openai_api_key=None,
        openfda_api_key=None,
        signing_intent_ttl_minutes=10,
        require_signing_intent=True,
        pin_max_attempts=3,
        pin_lockout_minutes=15,
    )


@pytest.fixture
def store(settings):
    return SQLiteCompoundingStore(settings.db_path, settings=settings)


# ---------------------------------------------------------------------------
# Domain builders
# ---------------------------------------------------------------------------

def make_formula(**overrides) -> Formula:
    values = dict(
        id=str(uuid.uuid4()),
        source="company",
        name="Omeprazole 2 mg/mL Suspension",
        medication_name="Omeprazole",
        ingredients=[
            Ingredient(name="Omeprazole", role="api", quantity=1, unit="g", concentration_mg_per_ml=2),
            Ingredient(name="Ora-Blend", role="vehicle", quantity=100, unit="mL"),
        ],
        safety_profile=FormulaSafetyProfile(min_single_dose_mg=1, max_single_dose_mg=50, max_daily_dose_mg=150),
        bud_rule=BudRule(category="aqueous", has_stability_data=False),
        instructions="Triturate the API, gradually qs with vehicle, homogenize thoroughly, and dispense.",
        labeling_requirements="Shake well. Refrigerate.",
    )
    values.update(overrides)
    return Formula(**values)


def seed_job(
    store,
    allergies=(),
    weight_kg=25,
    formula=None,
    medication_name="Omeprazole",
    other_medications=(),
    stock=True,
):
    """Patient + prescription (1 mg/kg BID, 2 mg/mL, 100 mL) + company formula + stock + queued job."""
    patient_id = store.add_patient(
        first_name="Test",
        last_name="Patient",
        dob="2018-01-01",
        weight_kg=weight_kg,
        allergies=None if allergies is None else list(allergies),
    )
    for name in other_medications:
        store.add_prescription(patient_id, name, "PO", 1, 1, 1, 30)
    prescription_id = store.add_prescription(
        patient_id=patient_id,
        medication_name=medication_name,
        route="PO",
        dose_mg_per_kg=1,
        frequency_per_day=2,
        strength_mg_per_ml=2,
        dispense_volume_ml=100,
    )
    if formula is not False:
        store.insert_formula(formula or make_formula(medication_name=medication_name))
    if stock:
        # Approval draws lots against the real clock, so expiry is relative to today.
        expires_on = date.today() + timedelta(days=365)
        store.add_inventory_lot("Omeprazole", "OMP-1", 5, "g", expires_on=expires_on)
        store.add_inventory_lot("Ora-Blend", "ORA-1", 1000, "mL", expires_on=expires_on)
    job_id = store.add_job(prescription_id)
    return {"patient_id": patient_id, "prescription_id": prescription_id, "job_id": job_id}


# ---------------------------------------------------------------------------
# External snapshots
# ---------------------------------------------------------------------------

@pytest.fixture
def clinical_snapshot_ok():
    return ExternalClinicalSafetySnapshot(
        medication_name="Omeprazole",
        status="ok",
        source_url="https://api.fda.gov/drug/label.json",
        set_id="set-omeprazole",
        dose_text="Pediatric patients: 1 mg/kg twice daily. Do not exceed 40 mg/dose. Maximum 100 mg/day.",
        interactions_text="Avoid concomitant use with clopidogrel and rilpivirine.",
        contraindications_text="Known hypersensitivity to substituted benzimidazoles.",
        warnings_text="Acute tubulointerstitial nephritis has been observed.",
    )


@pytest.fixture
def reference_snapshot_ok():
    return MedicationReferenceSnapshot(
        medication_name="Omeprazole",
        rxnorm_status="ok",
        rxnorm_id="7646",
        rxnorm_name="omeprazole",
        openfda_status="ok",
        openfda_interaction_label_count=12,
        openfda_sample_set_id="set-omeprazole",
        openfda_ndc_status="ok",
        openfda_ndc_count=40,
        openfda_ndc_product_ndc="0000-0000",
        dailymed_status="ok",
        dailymed_set_id="spl-omeprazole",
        dailymed_title="OMEPRAZOLE capsule",
        citations=(
            MedicationCitation(source="rxnav", title="RxNav RxCUI 7646", url="https://rxnav.example/7646"),
        ),
    )


@pytest.fixture
def services(store, settings, clinical_snapshot_ok, reference_snapshot_ok):
    return PipelineServices(
        store=store,
        settings=settings,
        clinical_fetcher=lambda name: clinical_snapshot_ok,
        reference_fetcher=lambda name: reference_snapshot_ok,
    )
