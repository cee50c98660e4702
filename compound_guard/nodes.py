"""
Node functions for the verification pipeline.

Gate:
    intake_preflight → resolve_formula → compounding_preflight
Run:
    start_run → calculate → hard_checks → ai_review → record_attempt → [correct →] ... → finalize

Every node takes the graph state plus the injected PipelineServices and
returns the updated state. Persistence only happens in start_run,
record_attempt, finalize and preflight_failed.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import requests

from .ai_review import Reasoner, run_ai_review
from .calculations import build_report
from .config import Settings, get_settings
from .corrections import Corrector, KeywordCorrector
from .db.store import CompoundingStore
from .exceptions import JobStateError
from .formulas import resolve_formula
from .preflight import run_intake_preflight, run_pre_compounding_preflight
from .state import (
    Attempt,
    ExternalClinicalSafetySnapshot,
    MedicationReferenceSnapshot,
    VerificationState,
)
from .tools.clinical_label_tools import build_error_snapshot, fetch_clinical_safety_snapshot
from .tools.reference_tools import fetch_medication_reference_snapshot
from .tools.safety_tools import run_hard_checks

logger = logging.getLogger(__name__)

ClinicalFetcher = Callable[[str], ExternalClinicalSafetySnapshot]
ReferenceFetcher = Callable[[str], MedicationReferenceSnapshot]

CLAIMABLE_STATUSES = ("queued", "needs_review", "verified")


@dataclass
class PipelineServices:
    """Collaborators of one pipeline run. Anything left as None falls back to the configured default."""

    store: CompoundingStore
    settings: Settings = field(default_factory=get_settings)
    corrector: Corrector = field(default_factory=KeywordCorrector)
    clinical_fetcher: Optional[ClinicalFetcher] = None
    reference_fetcher: Optional[ReferenceFetcher] = None
    reasoner: Optional[Reasoner] = None
    fail_closed: Optional[bool] = None

    def __post_init__(self):
        if self.fail_closed is None:
            self.fail_closed = self.settings.fail_closed_external_checks

    def fetch_clinical_snapshot(self, medication_name: str, session: requests.Session) -> ExternalClinicalSafetySnapshot:
        if self.clinical_fetcher is not None:
            return self.clinical_fetcher(medication_name)
        return fetch_clinical_safety_snapshot(medication_name, settings=self.settings, session=session)

    def fetch_reference_snapshot(self, medication_name: str, session: requests.Session) -> MedicationReferenceSnapshot:
        if self.reference_fetcher is not None:
            return self.reference_fetcher(medication_name)
        return fetch_medication_reference_snapshot(medication_name, settings=self.settings, session=session)


@dataclass
class RunClaim:
    """Set once this run has moved the job to in_progress; only a held claim may be released."""

    held: bool = False


# ============================================================
# Gate
# ============================================================

def run_intake_preflight_node(state: VerificationState, services: PipelineServices) -> VerificationState:
    logger.info(f"Running intake preflight for job {state['job_id']}...")
    summary = run_intake_preflight(state["context"])
    state["preflight"] = summary
    state["preflight_warnings"] = list(summary.warnings)
    return state


def run_resolve_formula(state: VerificationState, services: PipelineServices) -> VerificationState:
    formula = resolve_formula(services.store, state["context"])
    state["formula"] = formula
    logger.info(f"Resolved {formula.source} formula '{formula.name}'")
    return state


def run_compounding_preflight(state: VerificationState, services: PipelineServices) -> VerificationState:
    logger.info("Running pre-compounding preflight...")
    summary = run_pre_compounding_preflight(
        state["context"], state["formula"], state.get("pharmacist_feedback")
    )
    state["preflight"] = summary
    state["preflight_warnings"] = [*state.get("preflight_warnings", []), *summary.warnings]
    return state


def run_preflight_failed(state: VerificationState, services: PipelineServices) -> VerificationState:
    """Record a structural failure; the job lands in needs_review without entering in_progress."""
    summary = state["preflight"]
    job_id = state["job_id"]
    formula = state.get("formula")
    logger.warning(f"Preflight ({summary.stage}) failed for job {job_id}: {summary.blocking_issues}")

    # Never lands on a job another run holds in_progress.
    services.store.update_job_state(
        job_id,
        status="needs_review",
        expected_statuses=CLAIMABLE_STATUSES,
        last_error=summary.blocking_issues[0],
        **({"formula_id": formula.id} if formula else {}),
    )
    services.store.write_audit_event(job_id, "preflight_failed", {
        "stage": summary.stage,
        "formulaId": formula.id if formula else None,
        "blockingIssues": summary.blocking_issues,
        "warnings": summary.warnings,
        "checks": {name: check.model_dump() for name, check in summary.checks.items()},
    })

    state["final_status"] = "needs_review"
    state["blocking_issues"] = list(summary.blocking_issues)
    state["warnings"] = list(state.get("preflight_warnings", []))
    return state


# ============================================================
# Run setup
# ============================================================

def run_start(
    state: VerificationState, services: PipelineServices, claim: Optional[RunClaim] = None
) -> VerificationState:
    """Claim the job, log the run and fetch everything the loop reads exactly once."""
    job_id = state["job_id"]
    context = state["context"]
    formula = state["formula"]
    feedback = state.get("pharmacist_feedback")
    store = services.store

    try:
        store.update_job_state(
            job_id,
            status="in_progress",
            expected_statuses=CLAIMABLE_STATUSES,
            formula_id=formula.id,
            last_error=None,
            pharmacist_feedback=feedback if feedback else context.job.pharmacist_feedback,
        )
    except JobStateError as e:
        current = (e.detail or {}).get("current_status")
        logger.warning(f"Job {job_id} could not be claimed (now {current})")
        raise JobStateError(
            f"Job {job_id} is {current}; a new pipeline run is not allowed.",
            code="PIPELINE_ALREADY_RUNNING" if current == "in_progress" else None,
            detail=e.detail,
        ) from e
    if claim is not None:
        claim.held = True
    store.write_audit_event(job_id, "pipeline_started", {
        "formulaId": formula.id,
        "formulaSource": formula.source,
        "pharmacistFeedback": feedback,
    })
    if feedback:
        store.insert_pharmacist_feedback(job_id, "request_changes", feedback)

    medication = context.prescription.medication_name
    with requests.Session() as session:
        try:
            clinical = services.fetch_clinical_snapshot(medication, session)
        except Exception as e:
            logger.error(f"Clinical snapshot fetch raised: {e}", exc_info=True)
            clinical = build_error_snapshot(medication, ["Clinical safety lookup failed unexpectedly."])
        try:
            references = services.fetch_reference_snapshot(medication, session)
        except Exception as e:
            logger.error(f"Reference snapshot fetch raised: {e}", exc_info=True)
            references = MedicationReferenceSnapshot(
                medication_name=medication,
                rxnorm_status="error",
                openfda_status="error",
                openfda_ndc_status="error",
                dailymed_status="error",
                warnings=("Reference lookup failed unexpectedly.",),
            )

    max_attempts = services.settings.max_iterations
    degraded = [name for name, status in references.statuses().items() if status != "ok"]
    if clinical.status != "ok":
        degraded.insert(0, "clinical_label")
    if degraded and services.fail_closed:
        logger.warning(f"External lookups degraded ({', '.join(degraded)}); fail-closed caps run to 1 attempt")
        max_attempts = 1

    state["clinical_snapshot"] = clinical
    state["reference_snapshot"] = references
    state["inventory_lots"] = store.get_inventory_for_ingredients([item.name for item in formula.ingredients])
    state["max_attempts"] = max_attempts
    state["base_version"] = store.get_latest_report_version(job_id)
    state["working_prescription"] = context.prescription.to_working()
    state["attempts"] = []
    return state


# ============================================================
# Iteration loop
# ============================================================

def run_calculate(state: VerificationState, services: PipelineServices) -> VerificationState:
    attempt_number = len(state.get("attempts", [])) + 1
    logger.info(f"Attempt {attempt_number}/{state['max_attempts']}: calculating report...")
    formula = state["formula"]
    state["current_report"] = build_report(
        prescription=state["working_prescription"],
        patient_weight_kg=state["context"].patient.weight_kg,
        bud_rule=formula.bud_rule,
        ingredients=formula.ingredients,
        pharmacist_feedback=state.get("pharmacist_feedback"),
        run_date=state["run_date"],
    )
    return state


def run_hard_checks_node(state: VerificationState, services: PipelineServices) -> VerificationState:
    context = state["context"]
    formula = state["formula"]
    state["current_hard_checks"] = run_hard_checks(
        report=state["current_report"],
        medication_name=state["working_prescription"].medication_name,
        ingredient_names=[item.name for item in formula.ingredients],
        allergies=context.patient.allergies or [],
        safety_profile=formula.safety_profile,
        inventory_lots=state.get("inventory_lots", []),
        patient_weight_kg=context.patient.weight_kg,
        current_medications=context.patient.current_medications,
        clinical_snapshot=state.get("clinical_snapshot"),
        fail_closed=services.fail_closed,
        low_stock_warning_multiplier=services.settings.low_stock_warning_multiplier,
    )
    return state


def run_ai_review_node(state: VerificationState, services: PipelineServices) -> VerificationState:
    prescription = state["working_prescription"]
    state["current_ai_review"] = run_ai_review(
        medication_name=prescription.medication_name,
        route=prescription.route,
        report=state["current_report"],
        hard_checks=state["current_hard_checks"],
        reference_snapshot=state["reference_snapshot"],
        reasoner=services.reasoner,
        settings=services.settings,
    )
    return state


def run_record_attempt(state: VerificationState, services: PipelineServices) -> VerificationState:
    """Fold hard checks and AI review into one immutable Attempt and persist it as a new report version."""
    job_id = state["job_id"]
    context = state["context"]
    formula = state["formula"]
    report = state["current_report"]
    hard_checks = state["current_hard_checks"]
    review = state["current_ai_review"]
    number = len(state.get("attempts", [])) + 1

    blocking: List[str] = list(hard_checks.blocking_issues)
    if review.overall == "FAIL" and review.source != "skipped":
        blocking.append(f"AI review failed: {review.clinical_reasonableness.detail}")

    warnings: List[str] = list(hard_checks.warnings)
    if review.overall == "NEEDS_REVIEW":
        warnings.append(f"AI review requires attention: {review.preparation_completeness.detail}")

    if blocking:
        overall = "fail"
    elif review.overall == "NEEDS_REVIEW":
        overall = "needs_review"
    else:
        overall = "pass"

    version = state["base_version"] + number
    services.store.insert_calculation_report(
        job_id=job_id,
        version=version,
        context={
            "jobId": job_id,
            "attempt": number,
            "formulaId": formula.id,
            "formulaSource": formula.source,
            "medicationName": context.prescription.medication_name,
            "patientId": context.patient.id,
        },
        report=report.model_dump(mode="json"),
        hard_checks=hard_checks.model_dump(mode="json"),
        ai_review=review.model_dump(mode="json"),
        overall_status=overall,
        is_final=overall == "pass",
    )
    services.store.write_audit_event(job_id, "iteration_completed", {
        "attempt": number,
        "overallStatus": overall,
        "blockingIssueCount": len(blocking),
        "warningCount": len(warnings),
    })

    attempt = Attempt(
        number=number,
        version=version,
        prescription=state["working_prescription"],
        report=report,
        hard_checks=hard_checks,
        ai_review=review,
        blocking_issues=tuple(blocking),
        warnings=tuple(warnings),
        overall_status=overall,
    )
    state["attempts"] = [*state.get("attempts", []), attempt]
    logger.info(f"Attempt {number} recorded as v{version}: {overall} ({len(blocking)} blocking, {len(warnings)} warnings)")
    return state


def run_correct(state: VerificationState, services: PipelineServices) -> VerificationState:
    last = state["attempts"][-1]
    issues = last.blocking_issues or last.warnings
    corrected = services.corrector.apply(state["working_prescription"], issues)
    if corrected == state["working_prescription"]:
        logger.info("No deterministic correction applies; retrying unchanged")
    else:
        logger.info(f"Applied deterministic corrections: {corrected.model_dump()}")
    state["working_prescription"] = corrected
    return state


def run_finalize(state: VerificationState, services: PipelineServices) -> VerificationState:
    job_id = state["job_id"]
    attempts = state["attempts"]
    last = attempts[-1]
    final_status = "verified" if last.overall_status == "pass" else "needs_review"
    blocking = list(last.blocking_issues)
    warnings = [*state.get("preflight_warnings", []), *last.warnings]
    first_issue = (blocking or list(last.warnings) or [None])[0]

    services.store.update_job_state(
        job_id,
        status=final_status,
        expected_statuses=("in_progress",),
        iteration_count=len(attempts),
        formula_id=state["formula"].id,
        last_error=first_issue,
    )
    services.store.write_audit_event(
        job_id,
        "verified" if final_status == "verified" else "escalated_to_pharmacist",
        {"attempts": len(attempts), "blockingIssues": blocking, "warnings": warnings},
    )

    if final_status == "verified":
        logger.info(f"Job {job_id} verified on attempt {len(attempts)}")
    else:
        logger.warning(f"Job {job_id} escalated to pharmacist after {len(attempts)} attempt(s): {first_issue}")

    state["final_status"] = final_status
    state["blocking_issues"] = blocking
    state["warnings"] = warnings
    return state
