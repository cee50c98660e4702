"""Tests for inventory CSV import and demo seeding."""
from datetime import date

import pytest

from compound_guard.db.import_data import import_inventory_csv, seed_demo_data
from compound_guard.graph import run_pipeline
from compound_guard.nodes import PipelineServices
from tests.conftest import RUN_DATE


class TestImportInventoryCsv:

    def test_valid_rows_are_imported(self, store, tmp_path):
        csv_path = tmp_path / "inventory.csv"
        csv_path.write_text(
            "Ingredient_Name,Lot_Number,Available_Quantity,Unit,Expires_On,NDC\n"
            "Omeprazole,OMP-9,2.5,g,2027-01-31,0000-1111\n"
            "Ora-Blend,ORA-9,500,ML,,\n"
            "Mystery,MYS-1,10,oz,,\n"
            "Baclofen,,10,mg,,\n"
            "Baclofen,BAC-1,-5,mg,,\n"
        )

        assert import_inventory_csv(csv_path, store) == 2

        lots = {lot.lot_number: lot for lot in store.get_inventory_for_ingredients(["Omeprazole", "Ora-Blend"])}
        assert lots["OMP-9"].available_quantity == 2.5
        assert lots["OMP-9"].expires_on == date(2027, 1, 31)
        assert lots["ORA-9"].unit == "mL"
        assert lots["ORA-9"].expires_on is None

    def test_reimport_updates_existing_lot(self, store, tmp_path):
        csv_path = tmp_path / "inventory.csv"
        csv_path.write_text("ingredient_name,lot_number,available_quantity,unit\nOmeprazole,OMP-9,2,g\n")
        import_inventory_csv(csv_path, store)
        csv_path.write_text("ingredient_name,lot_number,available_quantity,unit\nOmeprazole,OMP-9,3,g\n")
        import_inventory_csv(csv_path, store)

        lots = store.get_inventory_for_ingredients(["Omeprazole"])
        assert [(lot.lot_number, lot.available_quantity) for lot in lots] == [("OMP-9", 3)]

    def test_missing_columns_raise(self, store, tmp_path):
        csv_path = tmp_path / "inventory.csv"
        csv_path.write_text("ingredient_name,quantity\nOmeprazole,2\n")
        with pytest.raises(ValueError, match="lot_number"):
            import_inventory_csv(csv_path, store)


class TestSeedDemoData:

    def test_demo_job_verifies(self, store, settings, clinical_snapshot_ok, reference_snapshot_ok):
        seeded = seed_demo_data(store)
        services = PipelineServices(
            store=store,
            settings=settings,
            clinical_fetcher=lambda name: clinical_snapshot_ok,
            reference_fetcher=lambda name: reference_snapshot_ok,
        )

        outcome = run_pipeline(seeded["job_id"], services=services, run_date=RUN_DATE)

        assert outcome.status == "verified"
        context = store.get_job_context(seeded["job_id"])
        assert context.job.priority == 1
        assert context.patient.current_medications == ["Cetirizine"]
        assert store.get_latest_report(seeded["job_id"])["report"]["bud_days"] == 30
