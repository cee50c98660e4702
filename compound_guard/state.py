from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Literal, NotRequired, Optional, Tuple, TypedDict

from pydantic import BaseModel, ConfigDict, Field

JobStatus = Literal["queued", "in_progress", "needs_review", "verified", "approved", "rejected"]
FormulaSource = Literal["patient", "company", "generated"]
CheckStatus = Literal["PASS", "FAIL", "WARN"]
ReviewVerdict = Literal["PASS", "FAIL", "NEEDS_REVIEW"]
ReferenceStatus = Literal["ok", "missing", "error"]
IngredientUnit = Literal["mg", "g", "mL"]
IngredientRole = Literal["api", "vehicle", "excipient"]
AttemptStatus = Literal["pass", "fail", "needs_review"]
SignatureMeaning = Literal["compounded_by", "verified_by", "reviewed_and_approved"]

# Allowed job status transitions. approved and rejected are terminal.
JOB_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "queued": ("in_progress", "needs_review", "rejected"),
    "in_progress": ("verified", "needs_review", "rejected"),
    "needs_review": ("in_progress", "rejected"),
    "verified": ("in_progress", "needs_review", "approved", "rejected"),
    "approved": (),
    "rejected": (),
}

TERMINAL_STATUSES = ("approved", "rejected")

# Fixed evaluation order of the hard check set.
HARD_CHECK_ORDER: Tuple[str, ...] = (
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
)


# ------------------------------------------------------------------
# Formula
# ------------------------------------------------------------------

class Ingredient(BaseModel):
    name: str
    role: IngredientRole
    quantity: float = 0.0
    unit: IngredientUnit = "mg"
    concentration_mg_per_ml: Optional[float] = None
    ndc: Optional[str] = None


class BudRule(BaseModel):
    category: Literal["aqueous", "non_aqueous"] = "aqueous"
    has_stability_data: bool = False
    stability_days: Optional[int] = None


class FormulaSafetyProfile(BaseModel):
    min_single_dose_mg: Optional[float] = None
    max_single_dose_mg: Optional[float] = None
    max_daily_dose_mg: Optional[float] = None
    contraindicated_ingredients: List[str] = Field(default_factory=list)
    incompatibilities: List[List[str]] = Field(default_factory=list)
    low_stock_warning_multiplier: Optional[float] = None
    low_stock_warning_multiplier_by_ingredient: Dict[str, float] = Field(default_factory=dict)


class Formula(BaseModel):
    """A resolved master formulation record."""

    id: str
    source: FormulaSource
    name: str
    medication_name: str
    patient_id: Optional[str] = None
    ingredients: List[Ingredient] = Field(default_factory=list)
    safety_profile: FormulaSafetyProfile = Field(default_factory=FormulaSafetyProfile)
    bud_rule: BudRule = Field(default_factory=BudRule)
    instructions: str = ""
    equipment: List[str] = Field(default_factory=list)
    quality_control: List[str] = Field(default_factory=list)
    container_closure: Optional[str] = None
    labeling_requirements: Optional[str] = None
    bud_rationale: Optional[str] = None
    references: List[Dict[str, Any]] = Field(default_factory=list)


# ------------------------------------------------------------------
# Job context
# ------------------------------------------------------------------

class WorkingPrescription(BaseModel):
    """The prescription under verification; only corrections produce new versions."""

    model_config = ConfigDict(frozen=True)

    medication_name: str
    route: str
    dose_mg_per_kg: float
    frequency_per_day: float
    strength_mg_per_ml: float
    dispense_volume_ml: float


class Prescription(BaseModel):
    id: str
    patient_id: str
    medication_name: str = ""
    route: str = ""
    dose_mg_per_kg: float = 0.0
    frequency_per_day: float = 0.0
    strength_mg_per_ml: float = 0.0
    dispense_volume_ml: float = 0.0
    indication: Optional[str] = None
    notes: Optional[str] = None
    due_at: Optional[str] = None

    def to_working(self) -> WorkingPrescription:
        return WorkingPrescription(
            medication_name=self.medication_name,
            route=self.route,
            dose_mg_per_kg=self.dose_mg_per_kg,
            frequency_per_day=self.frequency_per_day,
            strength_mg_per_ml=self.strength_mg_per_ml,
            dispense_volume_ml=self.dispense_volume_ml,
        )


class Patient(BaseModel):
    id: str
    full_name: str = ""
    dob: Optional[str] = None
    weight_kg: float = 0.0
    # None means allergy documentation is missing; [] means NKDA.
    allergies: Optional[List[str]] = None
    current_medications: List[str] = Field(default_factory=list)
    notes: Optional[str] = None


class JobRecord(BaseModel):
    id: str
    status: JobStatus = "queued"
    iteration_count: int = 0
    priority: int = 2
    last_error: Optional[str] = None
    pharmacist_feedback: Optional[str] = None
    formula_id: Optional[str] = None


class JobContext(BaseModel):
    job: JobRecord
    prescription: Prescription
    patient: Patient


class InventoryLot(BaseModel):
    ingredient_name: str
    available_quantity: float
    unit: str
    expires_on: Optional[date] = None
    lot_number: str = ""


# ------------------------------------------------------------------
# Calculation + checks
# ------------------------------------------------------------------

class CalculationIngredient(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    required_amount: float
    unit: IngredientUnit


class CalculationReport(BaseModel):
    """Immutable output of one calculation attempt."""

    model_config = ConfigDict(frozen=True)

    single_dose_mg: float
    daily_dose_mg: float
    final_concentration_mg_per_ml: float
    final_volume_ml: float
    bud_days: int
    bud_date: date
    ingredients: Tuple[CalculationIngredient, ...]
    steps: Tuple[str, ...]
    notes: Tuple[str, ...]


class CheckResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: CheckStatus
    detail: str


class HardCheckSummary(BaseModel):
    checks: Dict[str, CheckResult]
    blocking_issues: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return bool(self.blocking_issues)


class PreflightSummary(BaseModel):
    stage: Literal["intake", "pre_compounding"]
    checks: Dict[str, CheckResult]
    blocking_issues: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.blocking_issues


class DoseRangeConstraints(BaseModel):
    max_single_dose_mg: Optional[float] = None
    max_daily_dose_mg: Optional[float] = None
    max_daily_dose_mg_per_kg: Optional[float] = None

    @property
    def empty(self) -> bool:
        return (
            self.max_single_dose_mg is None
            and self.max_daily_dose_mg is None
            and self.max_daily_dose_mg_per_kg is None
        )


# ------------------------------------------------------------------
# External data
# ------------------------------------------------------------------

class ExternalClinicalSafetySnapshot(BaseModel):
    """Normalized label sections for one medication, fetched once per run."""

    model_config = ConfigDict(frozen=True)

    medication_name: str
    status: ReferenceStatus
    source_url: Optional[str] = None
    set_id: Optional[str] = None
    dose_text: str = ""
    pediatric_text: str = ""
    interactions_text: str = ""
    contraindications_text: str = ""
    warnings_text: str = ""
    extraction_warnings: Tuple[str, ...] = ()


class MedicationCitation(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: Literal["rxnav", "openfda", "dailymed"]
    title: str
    url: str
    detail: Optional[str] = None


class MedicationReferenceSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    medication_name: str
    rxnorm_status: ReferenceStatus = "missing"
    rxnorm_id: Optional[str] = None
    rxnorm_name: Optional[str] = None
    openfda_status: ReferenceStatus = "missing"
    openfda_interaction_label_count: int = 0
    openfda_sample_set_id: Optional[str] = None
    openfda_ndc_status: ReferenceStatus = "missing"
    openfda_ndc_count: int = 0
    openfda_ndc_product_ndc: Optional[str] = None
    dailymed_status: ReferenceStatus = "missing"
    dailymed_set_id: Optional[str] = None
    dailymed_title: Optional[str] = None
    dailymed_published_date: Optional[str] = None
    citations: Tuple[MedicationCitation, ...] = ()
    warnings: Tuple[str, ...] = ()

    def statuses(self) -> Dict[str, ReferenceStatus]:
        return {
            "rxnorm": self.rxnorm_status,
            "openfda_interactions": self.openfda_status,
            "openfda_ndc": self.openfda_ndc_status,
            "dailymed": self.dailymed_status,
        }


class AiReviewResult(BaseModel):
    clinical_reasonableness: CheckResult
    preparation_completeness: CheckResult
    citation_quality: CheckResult
    overall: ReviewVerdict
    source: Literal["model", "fallback", "skipped"] = "fallback"
    citations: List[MedicationCitation] = Field(default_factory=list)
    external_warnings: List[str] = Field(default_factory=list)


# ------------------------------------------------------------------
# Pipeline
# ------------------------------------------------------------------

class Attempt(BaseModel):
    """One immutable iteration of the verification loop."""

    model_config = ConfigDict(frozen=True)

    number: int
    version: int
    prescription: WorkingPrescription
    report: CalculationReport
    hard_checks: HardCheckSummary
    ai_review: AiReviewResult
    blocking_issues: Tuple[str, ...]
    warnings: Tuple[str, ...]
    overall_status: AttemptStatus


class PipelineOutcome(BaseModel):
    job_id: str
    status: JobStatus
    attempts: int
    blocking_issues: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


# ------------------------------------------------------------------
# Sign-off
# ------------------------------------------------------------------

class SigningIntent(BaseModel):
    model_config = ConfigDict(frozen=True)

    intent_id: str
    job_id: str
    challenge_code: str
    signature_meaning: SignatureMeaning
    issued_at: datetime
    expires_at: datetime
    consumed_at: Optional[datetime] = None


class RpcResult(BaseModel):
    """Result of a store-side credential operation."""

    ok: bool
    reason: Optional[
        Literal[
            "pin_not_set",
            "locked",
            "intent_expired",
            "intent_already_used",
            "challenge_mismatch",
            "job_not_verified",
        ]
    ] = None


class FinalOutput(BaseModel):
    id: str
    job_id: str
    approved_by: str
    approved_at: datetime
    signer_name: str
    signer_email: str
    signature_meaning: SignatureMeaning
    signature_statement: str
    signature_hash: str
    final_report: Dict[str, Any]
    label_payload: Dict[str, Any]


class VerificationState(TypedDict, total=False):
    """
    LangGraph state for one verification run.

    Nodes read from and write back to this object; attempts accumulate as
    immutable records so each iteration can be inspected in isolation.
    """

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------
    job_id: str
    context: JobContext
    pharmacist_feedback: NotRequired[Optional[str]]
    run_date: date

    # ------------------------------------------------------------------
    # Gate + formula
    # ------------------------------------------------------------------
    preflight: NotRequired[Optional[PreflightSummary]]
    formula: NotRequired[Optional[Formula]]
    preflight_warnings: NotRequired[List[str]]

    # ------------------------------------------------------------------
    # External snapshots (fetched once per run)
    # ------------------------------------------------------------------
    clinical_snapshot: NotRequired[Optional[ExternalClinicalSafetySnapshot]]
    reference_snapshot: NotRequired[Optional[MedicationReferenceSnapshot]]
    inventory_lots: NotRequired[List[InventoryLot]]

    # ------------------------------------------------------------------
    # Iteration loop
    # ------------------------------------------------------------------
    max_attempts: int
    base_version: int
    working_prescription: NotRequired[WorkingPrescription]
    current_report: NotRequired[Optional[CalculationReport]]
    current_hard_checks: NotRequired[Optional[HardCheckSummary]]
    current_ai_review: NotRequired[Optional[AiReviewResult]]
    attempts: NotRequired[List[Attempt]]

    # ------------------------------------------------------------------
    # Outcome
    # ------------------------------------------------------------------
    final_status: NotRequired[Optional[JobStatus]]
    blocking_issues: NotRequired[List[str]]
    warnings: NotRequired[List[str]]


__all__ = [
    "JOB_TRANSITIONS",
    "TERMINAL_STATUSES",
    "HARD_CHECK_ORDER",
    "Ingredient",
    "BudRule",
    "FormulaSafetyProfile",
    "Formula",
    "WorkingPrescription",
    "Prescription",
    "Patient",
    "JobRecord",
    "JobContext",
    "InventoryLot",
    "CalculationIngredient",
    "CalculationReport",
    "CheckResult",
    "HardCheckSummary",
    "PreflightSummary",
    "DoseRangeConstraints",
    "ExternalClinicalSafetySnapshot",
    "MedicationCitation",
    "MedicationReferenceSnapshot",
    "AiReviewResult",
    "Attempt",
    "PipelineOutcome",
    "SigningIntent",
    "RpcResult",
    "FinalOutput",
    "VerificationState",
]
