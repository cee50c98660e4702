"""Tests for the openFDA clinical label snapshot fetch (no network)."""
import requests

from compound_guard.tools.clinical_label_tools import (
    MAX_TEXT_LENGTH,
    extract_label_value,
    fetch_clinical_safety_snapshot,
)
from tests.conftest import FakeResponse, FakeSession

LABEL = {
    "set_id": "set-123",
    "dosage_and_administration": ["Maximum 20 mg/dose.", "Do not exceed 40 mg/day."],
    "pediatric_use": ["Up to 2 mg/kg/day."],
    "drug_interactions": ["Avoid   clopidogrel."],
    "contraindications": ["Hypersensitivity."],
    "warnings_and_cautions": ["Monitor magnesium."],
}


class TestExtractLabelValue:

    def test_joins_and_normalizes_paragraphs(self):
        assert extract_label_value(["Avoid   clopidogrel.", "Monitor\nINR."]) == "Avoid clopidogrel. Monitor INR."

    def test_non_list_is_empty(self):
        assert extract_label_value("text") == ""
        assert extract_label_value(None) == ""

    def test_long_sections_are_capped(self):
        assert len(extract_label_value(["x" * (MAX_TEXT_LENGTH + 50)])) == MAX_TEXT_LENGTH


class TestFetchClinicalSafetySnapshot:

    def test_ok_label_is_normalized(self, settings):
        session = FakeSession([("drug/label.json", FakeResponse(200, {"results": [LABEL]}))])
        snapshot = fetch_clinical_safety_snapshot("Omeprazole", settings=settings, session=session)

        assert snapshot.status == "ok"
        assert snapshot.set_id == "set-123"
        assert snapshot.interactions_text == "Avoid clopidogrel."
        assert snapshot.warnings_text == "Monitor magnesium."
        assert "Maximum 20 mg/dose." in snapshot.dose_text
        url, params = session.calls[0]
        assert params["search"] == 'openfda.generic_name:"Omeprazole"'
        assert params["limit"] == 1

    def test_api_key_is_forwarded(self, settings):
        keyed = settings.model_copy(update={"openfda_api_key": "secret"})
        session = FakeSession([("drug/label.json", FakeResponse(200, {"results": [LABEL]}))])
        fetch_clinical_safety_snapshot("Omeprazole", settings=keyed, session=session)
        assert session.calls[0][1]["api_key"] == "secret"

    def test_transport_error_is_error_status(self, settings):
        session = FakeSession([("drug/label.json", requests.exceptions.ConnectionError("refused"))])
        snapshot = fetch_clinical_safety_snapshot("Omeprazole", settings=settings, session=session)
        assert snapshot.status == "error"
        assert snapshot.extraction_warnings == ("openFDA clinical label lookup failed or timed out.",)

    def test_timeout_is_error_status(self, settings):
        session = FakeSession([("drug/label.json", requests.exceptions.Timeout())])
        snapshot = fetch_clinical_safety_snapshot("Omeprazole", settings=settings, session=session)
        assert snapshot.status == "error"

    def test_server_error_is_error_status(self, settings):
        session = FakeSession([("drug/label.json", FakeResponse(500, {}))])
        assert fetch_clinical_safety_snapshot("Omeprazole", settings=settings, session=session).status == "error"

    def test_not_found_is_missing(self, settings):
        snapshot = fetch_clinical_safety_snapshot("Unobtainium", settings=settings, session=FakeSession([]))
        assert snapshot.status == "missing"
        assert snapshot.extraction_warnings == ("openFDA clinical label lookup returned: No matches found!",)

    def test_empty_results_is_missing(self, settings):
        session = FakeSession([("drug/label.json", FakeResponse(200, {"results": []}))])
        snapshot = fetch_clinical_safety_snapshot("Omeprazole", settings=settings, session=session)
        assert snapshot.status == "missing"
        assert "no clinical label records" in snapshot.extraction_warnings[0]

    def test_blank_name_skips_lookup(self, settings):
        session = FakeSession([])
        snapshot = fetch_clinical_safety_snapshot("   ", settings=settings, session=session)
        assert snapshot.status == "missing"
        assert session.calls == []
