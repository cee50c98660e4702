"""Inventory CSV import and demo seed data for the SQLite store."""

import logging
import uuid
from datetime import date, timedelta
from pathlib import Path
from typing import Dict, Optional, Union

import pandas as pd

from ..state import BudRule, Formula, FormulaSafetyProfile, Ingredient
from ..utils import parse_iso_date
from .sqlite_store import SQLiteCompoundingStore

logger = logging.getLogger(__name__)

INVENTORY_COLUMNS = ("ingredient_name", "lot_number", "available_quantity", "unit")
VALID_UNITS = {"mg": "mg", "g": "g", "ml": "mL"}


def safe_float(value) -> Optional[float]:
    """Convert value to float; return None if the value is NaN or non-numeric."""
    if pd.isna(value):
        return None
    try:
        return float(value)
    except (ValueError, TypeError):
        return None


def safe_str(value) -> str:
    """Convert value to string; return empty string for None or NaN."""
    if value is None or pd.isna(value):
        return ''
    return str(value).strip()


def import_inventory_csv(csv_path: Union[str, Path], store: SQLiteCompoundingStore) -> int:
    """
    Import inventory lots from a CSV file.

    Required columns: ingredient_name, lot_number, available_quantity, unit.
    Optional columns: expires_on (ISO date), ndc. Rows with a missing name or
    lot, a negative or non-numeric quantity, or an unknown unit are skipped.
    An existing (ingredient, lot) pair is updated in place.
    """
    df = pd.read_csv(csv_path)
    df.columns = [str(column).strip().lower() for column in df.columns]
    missing = [column for column in INVENTORY_COLUMNS if column not in df.columns]
    if missing:
        raise ValueError(f"Inventory CSV is missing required column(s): {', '.join(missing)}")

    imported = 0
    for index, row in df.iterrows():
        name = safe_str(row["ingredient_name"])
        lot_number = safe_str(row["lot_number"])
        quantity = safe_float(row["available_quantity"])
        unit = VALID_UNITS.get(safe_str(row["unit"]).lower())

        if not name or not lot_number or quantity is None or quantity < 0 or unit is None:
            logger.warning(f"Skipping inventory row {index + 2}: incomplete or invalid values")
            continue

        store.add_inventory_lot(
            ingredient_name=name,
            lot_number=lot_number,
            available_quantity=quantity,
            unit=unit,
            expires_on=parse_iso_date(safe_str(row.get("expires_on"))),
            ndc=safe_str(row.get("ndc")) or None,
        )
        imported += 1

    logger.info(f"Imported {imported} inventory lot(s) from {csv_path}")
    return imported


def seed_demo_data(store: SQLiteCompoundingStore, today: Optional[date] = None) -> Dict[str, str]:
    """
    Seed one verifiable demo job: an omeprazole oral suspension for a 25 kg
    patient with a company formula and enough stock on hand.
    """
    today = today or date.today()

    patient_id = store.add_patient(
        first_name="Demo",
        last_name="Patient",
        dob="2018-01-01",
        weight_kg=25,
        allergies=[],
    )
    store.add_prescription(
        patient_id=patient_id,
        medication_name="Cetirizine",
        route="PO",
        dose_mg_per_kg=0.25,
        frequency_per_day=1,
        strength_mg_per_ml=1,
        dispense_volume_ml=60,
        indication="Seasonal allergies",
    )
    prescription_id = store.add_prescription(
        patient_id=patient_id,
        medication_name="Omeprazole",
        route="PO",
        dose_mg_per_kg=1,
        frequency_per_day=2,
        strength_mg_per_ml=2,
        dispense_volume_ml=100,
        indication="GERD",
    )

    formula = store.insert_formula(Formula(
        id=str(uuid.uuid4()),
        source="company",
        name="Omeprazole 2 mg/mL Oral Suspension",
        medication_name="Omeprazole",
        ingredients=[
            Ingredient(name="Omeprazole", role="api", quantity=0.2, unit="g", concentration_mg_per_ml=2),
            Ingredient(name="Sodium Bicarbonate 8.4%", role="vehicle", quantity=100, unit="mL"),
        ],
        safety_profile=FormulaSafetyProfile(
            min_single_dose_mg=5,
            max_single_dose_mg=40,
            max_daily_dose_mg=80,
        ),
        bud_rule=BudRule(category="aqueous", has_stability_data=True, stability_days=30),
        instructions=(
            "Empty capsules into mortar, triturate to fine powder, wet with vehicle "
            "and qs to final volume while stirring."
        ),
        equipment=["Class A balance", "Mortar and pestle", "Graduated cylinder"],
        quality_control=["Appearance check", "Final volume check", "pH check", "Label check"],
        container_closure="Amber plastic bottle with child-resistant cap.",
        labeling_requirements="Refrigerate. Shake well before use.",
        bud_rationale="Refrigerated stability data supports 30 days.",
        references=[{"source": "company", "detail": "House master formulation record"}],
    ))

    store.add_inventory_lot("Omeprazole", "OMP-001", 5, "g", expires_on=today + timedelta(days=365))
    store.add_inventory_lot(
        "Sodium Bicarbonate 8.4%", "SB-014", 1000, "mL", expires_on=today + timedelta(days=180)
    )

    job_id = store.add_job(prescription_id, priority=1)
    logger.info(f"Seeded demo job {job_id} (formula {formula.id})")
    return {"patient_id": patient_id, "prescription_id": prescription_id, "formula_id": formula.id, "job_id": job_id}
