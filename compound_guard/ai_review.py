"""
AI review of one calculation attempt.

The reasoner only judges clinical coherence and preparation completeness.
Its output is treated as untrusted: it is parsed, normalized into the
PASS/WARN/FAIL vocabulary and clamped so it can never turn a hard FAIL into
a PASS. Citation quality is always derived from the reference snapshot.
"""

import json
import logging
from typing import Any, Callable, Dict, Optional

from .config import Settings, get_settings
from .loader import is_reasoner_configured, run_inference
from .prompts import AI_REVIEW_PROMPT, AI_REVIEW_SYSTEM
from .state import (
    AiReviewResult,
    CalculationReport,
    CheckResult,
    HardCheckSummary,
    MedicationReferenceSnapshot,
)
from .utils import safe_json_parse

logger = logging.getLogger(__name__)

MIN_COMPLETE_STEPS = 5

Reasoner = Callable[[str, str], str]


def build_citation_quality(snapshot: MedicationReferenceSnapshot) -> CheckResult:
    """PASS only when all four reference lookups resolved; WARN otherwise."""
    has_rxnorm = snapshot.rxnorm_status == "ok" and bool(snapshot.rxnorm_id)
    has_openfda = snapshot.openfda_status == "ok" and snapshot.openfda_interaction_label_count > 0
    has_ndc = snapshot.openfda_ndc_status == "ok" and snapshot.openfda_ndc_count > 0
    has_dailymed = snapshot.dailymed_status == "ok" and bool(snapshot.dailymed_set_id)

    summary = [
        f"RxNav normalized to {snapshot.rxnorm_name or snapshot.medication_name} (RxCUI {snapshot.rxnorm_id})."
        if has_rxnorm else "RxNav did not return an RxCUI match.",
    ]
    if has_openfda:
        summary.append(
            f"openFDA returned {snapshot.openfda_interaction_label_count} label(s) with drug interaction sections."
        )
    elif snapshot.openfda_status == "error":
        summary.append("openFDA interaction lookup failed.")
    else:
        summary.append("openFDA returned no matching interaction label records.")

    if has_ndc:
        summary.append(f"openFDA NDC directory returned {snapshot.openfda_ndc_count} result(s).")
    elif snapshot.openfda_ndc_status == "error":
        summary.append("openFDA NDC directory lookup failed.")
    else:
        summary.append("openFDA NDC directory returned no matching records.")

    if has_dailymed:
        summary.append(f"DailyMed resolved SPL {snapshot.dailymed_set_id}.")
    elif snapshot.dailymed_status == "error":
        summary.append("DailyMed lookup failed.")
    else:
        summary.append("DailyMed returned no SPL match.")

    if snapshot.warnings:
        summary.append(f"Notes: {' '.join(snapshot.warnings)}")

    status = "PASS" if has_rxnorm and has_openfda and has_ndc and has_dailymed else "WARN"
    return CheckResult(status=status, detail=" ".join(summary))


def _attach_references(
    clinical: CheckResult,
    preparation: CheckResult,
    overall: str,
    source: str,
    snapshot: MedicationReferenceSnapshot,
) -> AiReviewResult:
    return AiReviewResult(
        clinical_reasonableness=clinical,
        preparation_completeness=preparation,
        citation_quality=build_citation_quality(snapshot),
        overall=overall,
        source=source,
        citations=list(snapshot.citations),
        external_warnings=list(snapshot.warnings),
    )


def skipped_review(snapshot: MedicationReferenceSnapshot) -> AiReviewResult:
    """Placeholder used when hard checks already block the attempt."""
    return _attach_references(
        CheckResult(status="FAIL", detail="Hard safety checks failed, clinical reasonableness cannot pass."),
        CheckResult(status="WARN", detail="AI review skipped because hard safety checks already failed."),
        "FAIL",
        "skipped",
        snapshot,
    )


def fallback_review(
    report: CalculationReport,
    hard_checks: HardCheckSummary,
    snapshot: MedicationReferenceSnapshot,
) -> AiReviewResult:
    """Deterministic review used when no reasoner is configured or its output is unusable."""
    blocked = hard_checks.blocked
    sparse = len(report.steps) < MIN_COMPLETE_STEPS

    clinical = CheckResult(
        status="FAIL" if blocked else "PASS",
        detail=(
            "Hard safety checks failed, clinical reasonableness cannot pass."
            if blocked
            else "Dose, concentration, and route appear clinically coherent for deterministic validation."
        ),
    )
    preparation = CheckResult(
        status="WARN" if sparse else "PASS",
        detail=(
            "Preparation steps are minimal. Add order-of-addition and QC checkpoints."
            if sparse
            else "Preparation instructions include core compounding sequence and QC step."
        ),
    )
    overall = "FAIL" if blocked else "NEEDS_REVIEW" if sparse else "PASS"
    return _attach_references(clinical, preparation, overall, "fallback", snapshot)


def _normalize_status(value: Any) -> str:
    status = str(value or "WARN").strip().upper()
    if status == "FAIL":
        return "FAIL"
    if status in ("WARN", "NEEDS_REVIEW"):
        return "WARN"
    if status == "PASS":
        return "PASS"
    return "WARN"


def _read_check(payload: Dict[str, Any], camel: str, snake: str, missing_detail: str) -> CheckResult:
    raw = payload.get(camel, payload.get(snake))
    if not isinstance(raw, dict):
        raw = {}
    detail = raw.get("detail")
    return CheckResult(
        status=_normalize_status(raw.get("status")),
        detail=str(detail).strip() if detail and str(detail).strip() else missing_detail,
    )


def parse_model_review(
    payload: Dict[str, Any],
    hard_checks: HardCheckSummary,
    snapshot: MedicationReferenceSnapshot,
) -> AiReviewResult:
    """Normalize a parsed model verdict; the result never reads better than the evidence."""
    clinical = _read_check(
        payload, "clinicalReasonableness", "clinical_reasonableness",
        "LLM review returned no detail for clinical reasonableness.",
    )
    preparation = _read_check(
        payload, "preparationCompleteness", "preparation_completeness",
        "LLM review returned no detail for preparation completeness.",
    )

    overall_raw = str(payload.get("overall") or "NEEDS_REVIEW").strip().upper()
    overall = overall_raw if overall_raw in ("PASS", "FAIL") else "NEEDS_REVIEW"

    if hard_checks.blocked or clinical.status == "FAIL" or preparation.status == "FAIL":
        overall = "FAIL"
    elif overall == "PASS" and (clinical.status == "WARN" or preparation.status == "WARN"):
        overall = "NEEDS_REVIEW"

    return _attach_references(clinical, preparation, overall, "model", snapshot)


def _build_user_prompt(
    medication_name: str,
    route: str,
    report: CalculationReport,
    hard_checks: HardCheckSummary,
    snapshot: MedicationReferenceSnapshot,
) -> str:
    references = snapshot.model_dump(
        mode="json",
        include={
            "rxnorm_status", "rxnorm_id", "rxnorm_name",
            "openfda_status", "openfda_interaction_label_count",
            "openfda_ndc_status", "openfda_ndc_count", "openfda_ndc_product_ndc",
            "dailymed_status", "dailymed_set_id", "citations", "warnings",
        },
    )
    return AI_REVIEW_PROMPT.format(
        medication_name=medication_name,
        route=route,
        report=json.dumps(report.model_dump(mode="json"), indent=2),
        hard_checks=json.dumps(
            {name: check.model_dump() for name, check in hard_checks.checks.items()}, indent=2
        ),
        references=json.dumps(references, indent=2),
    )


def run_ai_review(
    medication_name: str,
    route: str,
    report: CalculationReport,
    hard_checks: HardCheckSummary,
    reference_snapshot: MedicationReferenceSnapshot,
    reasoner: Optional[Reasoner] = None,
    settings: Optional[Settings] = None,
) -> AiReviewResult:
    """
    Review one attempt.

    Blocked attempts are never sent to the reasoner. Without a configured
    reasoner, or on any call / parse failure, the deterministic fallback
    is returned.

    Args:
        reasoner: Optional (system_prompt, user_prompt) -> text callable;
                  defaults to the configured backend in loader.py
    """
    if hard_checks.blocked:
        logger.info(f"AI review skipped for {medication_name}: hard checks already blocking")
        return skipped_review(reference_snapshot)

    settings = settings or get_settings()
    if reasoner is None:
        if not is_reasoner_configured(settings):
            logger.info("AI review backend not configured, using deterministic fallback")
            return fallback_review(report, hard_checks, reference_snapshot)
        reasoner = lambda system, user: run_inference(system, user, settings=settings)  # noqa: E731

    user_prompt = _build_user_prompt(medication_name, route, report, hard_checks, reference_snapshot)
    try:
        raw = reasoner(AI_REVIEW_SYSTEM, user_prompt)
    except Exception as e:
        logger.warning(f"AI review call failed, using deterministic fallback: {e}")
        return fallback_review(report, hard_checks, reference_snapshot)

    payload = safe_json_parse(raw)
    if payload is None:
        logger.warning("AI review returned unparseable output, using deterministic fallback")
        return fallback_review(report, hard_checks, reference_snapshot)

    review = parse_model_review(payload, hard_checks, reference_snapshot)
    logger.info(f"AI review for {medication_name}: overall={review.overall}")
    return review
