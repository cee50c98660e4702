"""
Formula resolution.

Priority cascade for the formula used to verify a job:
    1. patient-specific formula for this medication
    2. company (house) formula for this medication
    3. generated fallback template, persisted before first use
"""

import logging
import uuid

from .db.store import CompoundingStore
from .state import BudRule, Formula, FormulaSafetyProfile, Ingredient, JobContext

logger = logging.getLogger(__name__)

GENERATED_VEHICLE = "Ora-Blend"
GENERATED_MIN_SINGLE_DOSE_MG = 0.5
GENERATED_MAX_SINGLE_DOSE_MG = 50.0
GENERATED_MAX_DAILY_DOSE_MG = 150.0


def build_generated_formula(context: JobContext) -> Formula:
    """Fallback master formulation for a medication with no vetted recipe."""
    rx = context.prescription
    medication = rx.medication_name.strip()
    return Formula(
        id=str(uuid.uuid4()),
        source="generated",
        name=f"{medication} Auto-Generated Formula",
        medication_name=medication,
        patient_id=None,
        ingredients=[
            Ingredient(
                name=medication,
                role="api",
                quantity=1,
                unit="g",
                concentration_mg_per_ml=rx.strength_mg_per_ml,
            ),
            Ingredient(name=GENERATED_VEHICLE, role="vehicle", quantity=0, unit="mL"),
        ],
        safety_profile=FormulaSafetyProfile(
            min_single_dose_mg=GENERATED_MIN_SINGLE_DOSE_MG,
            max_single_dose_mg=GENERATED_MAX_SINGLE_DOSE_MG,
            max_daily_dose_mg=GENERATED_MAX_DAILY_DOSE_MG,
        ),
        bud_rule=BudRule(category="aqueous", has_stability_data=False),
        instructions="Generated formula pending pharmacist validation. Triturate API and qs with vehicle.",
        equipment=["Class A balance", "Mortar and pestle", "Graduated cylinder"],
        quality_control=["Appearance check", "Final volume check", "Label check"],
        container_closure="Amber bottle with child-resistant cap.",
        labeling_requirements="Shake well before use. Store as directed on final label.",
        bud_rationale="Generated formula defaults to USP <795> aqueous baseline pending pharmacist validation.",
        references=[{"source": "system", "detail": "Auto-generated fallback MFR template"}],
    )


def resolve_formula(store: CompoundingStore, context: JobContext) -> Formula:
    medication = context.prescription.medication_name.strip()

    formula = store.find_formula(medication, patient_id=context.patient.id)
    if formula is not None:
        logger.info(f"Using patient-specific formula {formula.id} for {medication}")
        return formula

    formula = store.find_formula(medication, source="company")
    if formula is not None:
        logger.info(f"Using company formula {formula.id} for {medication}")
        return formula

    logger.warning(f"No formula on file for {medication}; generating fallback template")
    return store.insert_formula(build_generated_formula(context))
