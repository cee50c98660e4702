"""Tests for the SQLite store: guarded transitions, report versions, inventory and credentials."""
from datetime import date, timedelta

import pytest

from compound_guard.db.sqlite_store import SQLiteCompoundingStore
from compound_guard.exceptions import InventoryError, JobStateError, NotFoundError, SigningError
from tests.conftest import make_formula, seed_job

TODAY = date.today()


def verify(store, job_id):
    store.update_job_state(job_id, status="in_progress")
    store.update_job_state(job_id, status="verified")


def add_report(store, job_id, ingredients, version=1):
    return store.insert_calculation_report(
        job_id=job_id,
        version=version,
        context={},
        report={"ingredients": ingredients, "bud_date": "2026-03-15"},
        hard_checks={},
        ai_review={},
        overall_status="pass",
    )


class TestJobContext:

    def test_context_joins_job_prescription_and_patient(self, store):
        ids = seed_job(store, allergies=["sulfa"], other_medications=["Warfarin", "Cetirizine", "Warfarin"])
        context = store.get_job_context(ids["job_id"])
        assert context.job.status == "queued"
        assert context.prescription.medication_name == "Omeprazole"
        assert context.patient.full_name == "Test Patient"
        assert context.patient.allergies == ["sulfa"]
        assert sorted(context.patient.current_medications) == ["Cetirizine", "Warfarin"]

    def test_undocumented_allergies_stay_none(self, store):
        ids = seed_job(store, allergies=None)
        assert store.get_job_context(ids["job_id"]).patient.allergies is None

    def test_unknown_job_raises(self, store):
        with pytest.raises(NotFoundError):
            store.get_job_context("missing")


class TestFormulaLookup:

    def test_patient_formula_is_scoped_to_patient(self, store):
        ids = seed_job(store, formula=False)
        store.insert_formula(make_formula(source="patient", patient_id=ids["patient_id"], name="Patient blend"))
        assert store.find_formula("omeprazole", patient_id=ids["patient_id"]).name == "Patient blend"
        assert store.find_formula("Omeprazole", source="company") is None

    def test_formula_roundtrips_nested_profiles(self, store):
        formula = store.insert_formula(make_formula())
        loaded = store.get_formula(formula.id)
        assert loaded == formula


class TestUpdateJobState:

    def test_allowed_transition(self, store):
        job_id = seed_job(store)["job_id"]
        store.update_job_state(job_id, status="in_progress", iteration_count=0, last_error=None)
        assert store.get_job_context(job_id).job.status == "in_progress"

    def test_skipping_a_state_is_refused(self, store):
        job_id = seed_job(store)["job_id"]
        with pytest.raises(JobStateError):
            store.update_job_state(job_id, status="verified")

    def test_expected_status_mismatch_is_refused(self, store):
        job_id = seed_job(store)["job_id"]
        with pytest.raises(JobStateError):
            store.update_job_state(job_id, status="in_progress", expected_statuses=("verified",))
        assert store.get_job_context(job_id).job.status == "queued"

    @pytest.mark.parametrize("terminal", ["approved", "rejected"])
    def test_terminal_jobs_refuse_updates(self, store, terminal):
        job_id = seed_job(store)["job_id"]
        if terminal == "approved":
            verify(store, job_id)
        store.update_job_state(job_id, status=terminal)
        with pytest.raises(JobStateError):
            store.update_job_state(job_id, status="in_progress")
        with pytest.raises(JobStateError):
            store.update_job_state(job_id, last_error="late write")

    def test_field_only_update_keeps_status(self, store):
        job_id = seed_job(store)["job_id"]
        store.update_job_state(job_id, last_error="Check weight.")
        job = store.get_job_context(job_id).job
        assert job.status == "queued"
        assert job.last_error == "Check weight."


class TestCalculationReports:

    def test_versions_must_increase(self, store):
        job_id = seed_job(store)["job_id"]
        add_report(store, job_id, [], version=1)
        add_report(store, job_id, [], version=2)
        with pytest.raises(JobStateError):
            add_report(store, job_id, [], version=2)
        assert store.get_latest_report_version(job_id) == 2
        assert [r["version"] for r in store.list_reports(job_id)] == [1, 2]


class TestInventoryConsumption:

    def test_earliest_expiry_is_drawn_first(self, store):
        job_id = seed_job(store, stock=False)["job_id"]
        store.add_inventory_lot("Omeprazole", "LATE", 500, "mg", expires_on=TODAY + timedelta(days=60))
        store.add_inventory_lot("Omeprazole", "EARLY", 0.2, "g", expires_on=TODAY + timedelta(days=30))
        store.add_inventory_lot("Omeprazole", "EXPIRED", 10, "g", expires_on=TODAY - timedelta(days=1))
        add_report(store, job_id, [{"name": "Omeprazole", "required_amount": 0.3, "unit": "g"}])
        verify(store, job_id)

        lines = store.consume_inventory_for_job(job_id)

        assert [(line["lot_number"], line["quantity"], line["unit"]) for line in lines] == [
            ("EARLY", 0.2, "g"),
            ("LATE", 100, "mg"),
        ]
        remaining = {lot.lot_number: lot.available_quantity for lot in store.get_inventory_for_ingredients(["Omeprazole"])}
        assert remaining == {"EARLY": 0, "LATE": 400, "EXPIRED": 10}
        assert len(store.list_inventory_consumptions(job_id)) == 2

    def test_shortage_rolls_back_everything(self, store):
        job_id = seed_job(store)["job_id"]
        add_report(store, job_id, [
            {"name": "Ora-Blend", "required_amount": 100, "unit": "mL"},
            {"name": "Omeprazole", "required_amount": 50, "unit": "g"},
        ])
        verify(store, job_id)

        with pytest.raises(InventoryError) as excinfo:
            store.consume_inventory_for_job(job_id)

        assert excinfo.value.code == "INVENTORY_SHORTAGE"
        assert "Omeprazole" in excinfo.value.message
        remaining = {lot.lot_number: lot.available_quantity for lot in store.get_inventory_for_ingredients(["Omeprazole", "Ora-Blend"])}
        assert remaining == {"OMP-1": 5, "ORA-1": 1000}
        assert store.list_inventory_consumptions(job_id) == []

    def test_volume_requirement_ignores_mass_lots(self, store):
        job_id = seed_job(store, stock=False)["job_id"]
        store.add_inventory_lot("Ora-Blend", "ORA-G", 500, "g")
        add_report(store, job_id, [{"name": "Ora-Blend", "required_amount": 100, "unit": "mL"}])
        verify(store, job_id)
        with pytest.raises(InventoryError):
            store.consume_inventory_for_job(job_id)

    def test_no_report_raises(self, store):
        job_id = seed_job(store)["job_id"]
        verify(store, job_id)
        with pytest.raises(NotFoundError):
            store.consume_inventory_for_job(job_id)

    def test_unverified_job_draws_nothing(self, store):
        job_id = seed_job(store)["job_id"]
        add_report(store, job_id, [{"name": "Ora-Blend", "required_amount": 100, "unit": "mL"}])
        with pytest.raises(JobStateError):
            store.consume_inventory_for_job(job_id)
        assert store.list_inventory_consumptions(job_id) == []

    def test_stock_is_drawn_once_per_job(self, store):
        job_id = seed_job(store)["job_id"]
        add_report(store, job_id, [{"name": "Ora-Blend", "required_amount": 100, "unit": "mL"}])
        verify(store, job_id)
        store.consume_inventory_for_job(job_id)

        with pytest.raises(JobStateError):
            store.consume_inventory_for_job(job_id)

        assert len(store.list_inventory_consumptions(job_id)) == 1
        remaining = {lot.lot_number: lot.available_quantity for lot in store.get_inventory_for_ingredients(["Ora-Blend"])}
        assert remaining == {"ORA-1": 900}


class TestSignatureCredentials:

    def test_pin_not_set(self, store):
        assert store.verify_signature_pin("rph-1", "whatever1").reason == "pin_not_set"

    def test_correct_pin(self, store):
        store.set_signature_pin("rph-1", "correct-pin")
        assert store.verify_signature_pin("rph-1", "correct-pin").ok

    def test_repeated_failures_lock_the_pin(self, store):
        store.set_signature_pin("rph-1", "correct-pin")
        reasons = [store.verify_signature_pin("rph-1", "wrong-pin").reason for _ in range(3)]
        assert reasons == ["challenge_mismatch", "challenge_mismatch", "locked"]
        assert store.verify_signature_pin("rph-1", "correct-pin").reason == "locked"

    def test_success_resets_failure_count(self, store):
        store.set_signature_pin("rph-1", "correct-pin")
        store.verify_signature_pin("rph-1", "wrong-pin")
        store.verify_signature_pin("rph-1", "wrong-pin")
        assert store.verify_signature_pin("rph-1", "correct-pin").ok
        assert store.verify_signature_pin("rph-1", "wrong-pin").reason == "challenge_mismatch"

    def test_resetting_the_pin_clears_a_lock(self, store):
        store.set_signature_pin("rph-1", "correct-pin")
        for _ in range(3):
            store.verify_signature_pin("rph-1", "wrong-pin")
        store.set_signature_pin("rph-1", "another-pin")
        assert store.verify_signature_pin("rph-1", "another-pin").ok


class TestSigningIntents:

    @pytest.fixture
    def verified_job(self, store):
        job_id = seed_job(store)["job_id"]
        verify(store, job_id)
        store.set_signature_pin("rph-1", "correct-pin")
        return job_id

    def consume(self, store, job_id, intent, pin="correct-pin", user="rph-1", code=None, meaning=None):
        return store.consume_signing_intent(
            job_id, user, intent.intent_id, code or intent.challenge_code,
            meaning or intent.signature_meaning, pin,
        )

    def test_intent_requires_verified_job(self, store):
        job_id = seed_job(store)["job_id"]
        with pytest.raises(SigningError) as excinfo:
            store.issue_signing_intent(job_id, "rph-1", "verified_by", 10)
        assert excinfo.value.reason == "job_not_verified"

    def test_intent_is_consumed_once(self, store, verified_job):
        intent = store.issue_signing_intent(verified_job, "rph-1", "verified_by", 10)
        assert self.consume(store, verified_job, intent).ok
        assert self.consume(store, verified_job, intent).reason == "intent_already_used"

    def test_expired_intent_is_refused(self, store, verified_job):
        intent = store.issue_signing_intent(verified_job, "rph-1", "verified_by", 0)
        assert self.consume(store, verified_job, intent).reason == "intent_expired"

    def test_wrong_code_is_refused(self, store, verified_job):
        intent = store.issue_signing_intent(verified_job, "rph-1", "verified_by", 10)
        wrong = "000000" if intent.challenge_code != "000000" else "111111"
        assert self.consume(store, verified_job, intent, code=wrong).reason == "challenge_mismatch"

    def test_wrong_meaning_is_refused(self, store, verified_job):
        intent = store.issue_signing_intent(verified_job, "rph-1", "verified_by", 10)
        assert self.consume(store, verified_job, intent, meaning="compounded_by").reason == "challenge_mismatch"

    def test_other_user_cannot_consume(self, store, verified_job):
        store.set_signature_pin("rph-2", "correct-pin")
        intent = store.issue_signing_intent(verified_job, "rph-1", "verified_by", 10)
        assert self.consume(store, verified_job, intent, user="rph-2").reason == "challenge_mismatch"

    def test_wrong_pin_leaves_intent_usable(self, store, verified_job):
        intent = store.issue_signing_intent(verified_job, "rph-1", "verified_by", 10)
        assert self.consume(store, verified_job, intent, pin="wrong-pin").reason == "challenge_mismatch"
        assert self.consume(store, verified_job, intent).ok

    def test_job_leaving_verified_blocks_consumption(self, store, verified_job):
        intent = store.issue_signing_intent(verified_job, "rph-1", "verified_by", 10)
        store.update_job_state(verified_job, status="needs_review")
        assert self.consume(store, verified_job, intent).reason == "job_not_verified"

    def test_refused_approval_keeps_pin_failures_only(self, store, verified_job):
        report_id = add_report(store, verified_job, [{"name": "Ora-Blend", "required_amount": 100, "unit": "mL"}])
        intent = store.issue_signing_intent(verified_job, "rph-1", "verified_by", 10)
        signing = dict(
            user_id="rph-1",
            intent_id=intent.intent_id,
            challenge_code=intent.challenge_code,
            signature_meaning="verified_by",
            pin="wrong-pin",
        )

        def build_output(consumption):
            raise AssertionError("no output is built for a refused signature")

        reasons = []
        for _ in range(3):
            with pytest.raises(SigningError) as excinfo:
                store.approve_and_consume(verified_job, report_id, build_output, signing=signing)
            reasons.append(excinfo.value.reason)

        assert reasons == ["challenge_mismatch", "challenge_mismatch", "locked"]
        assert store.list_inventory_consumptions(verified_job) == []
        assert store.get_job_context(verified_job).job.status == "verified"


def test_store_initializes_schema_at_path(tmp_path, settings):
    path = tmp_path / "nested" / "store.db"
    store = SQLiteCompoundingStore(path, settings=settings)
    assert store.db_path == path
    assert path.exists()
