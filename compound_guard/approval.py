"""
Pharmacist sign-off: signing intents, signature PINs, approval and rejection.

Approval is the only path to the terminal `approved` status. In the strict
variant (COMPOUND_REQUIRE_SIGNING_INTENT=true) it needs an issued, unexpired,
unused signing intent plus the signer's PIN, verified together by the store.
"""

import logging
import uuid
from typing import Any, Dict, Optional

from .config import Settings, get_settings
from .db.store import CompoundingStore
from .exceptions import ApprovalError, NotFoundError, SigningError
from .signing import (
    build_signature_statement,
    compute_signature_hash,
    is_valid_email,
    normalize_signature_meaning,
    validate_new_pin,
)
from .state import FinalOutput, SigningIntent
from .utils import has_text, utc_now

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_TEXT = "Refrigerate. Shake well."

SIGNING_FAILURE_MESSAGES = {
    "pin_not_set": "No signature PIN is set for this signer.",
    "locked": "Signature PIN is temporarily locked after repeated failures.",
    "intent_expired": "Signing challenge has expired; request a new one.",
    "intent_already_used": "Signing challenge was already used.",
    "challenge_mismatch": "Signing challenge or PIN did not match.",
    "job_not_verified": "Only verified jobs can be signed.",
}


def _raise_for_refusal(reason: Optional[str]) -> None:
    message = SIGNING_FAILURE_MESSAGES.get(reason or "", "Signature verification failed.")
    raise SigningError(message, reason=reason)


def issue_signing_intent(
    store: CompoundingStore,
    job_id: str,
    user_id: str,
    signature_meaning: str,
    ttl_minutes: Optional[int] = None,
    settings: Optional[Settings] = None,
) -> SigningIntent:
    """Issue a one-time challenge for signing a verified job."""
    settings = settings or get_settings()
    meaning = normalize_signature_meaning(signature_meaning)
    intent = store.issue_signing_intent(
        job_id, user_id, meaning, ttl_minutes or settings.signing_intent_ttl_minutes
    )
    store.write_audit_event(job_id, "signing_intent_issued", {
        "intentId": intent.intent_id,
        "userId": user_id,
        "signatureMeaning": meaning,
        "expiresAt": intent.expires_at.isoformat(),
    })
    logger.info(f"Signing intent {intent.intent_id} issued for job {job_id}")
    return intent


def set_signature_pin(store: CompoundingStore, user_id: str, pin: str, confirm_pin: str) -> None:
    validate_new_pin(pin, confirm_pin)
    store.set_signature_pin(user_id, pin)
    logger.info(f"Signature PIN updated for user {user_id}")


def _build_label_payload(context, report: Dict[str, Any], storage: Optional[str], approved_at: str) -> Dict[str, Any]:
    return {
        "patient": context.patient.full_name,
        "medication": context.prescription.medication_name,
        "route": context.prescription.route,
        "concentrationMgPerMl": report.get("final_concentration_mg_per_ml", 0),
        "quantityMl": report.get("final_volume_ml", 0),
        "beyondUseDate": report.get("bud_date", ""),
        "storage": storage if has_text(storage) else DEFAULT_STORAGE_TEXT,
        "approvedAt": approved_at,
    }


def approve_job(
    store: CompoundingStore,
    job_id: str,
    approver_id: str,
    signer_name: str,
    signer_email: str,
    signature_meaning: str,
    signature_attestation: bool,
    note: Optional[str] = None,
    signing_intent_id: Optional[str] = None,
    signing_challenge_code: Optional[str] = None,
    signature_pin: Optional[str] = None,
    settings: Optional[Settings] = None,
    require_signing_intent: Optional[bool] = None,
) -> FinalOutput:
    """
    Approve a verified job and lock its final output.

    Preconditions are checked before anything is written. The store then
    re-checks the job inside one transaction that consumes the signing
    intent, draws inventory, stores the signed final report and label,
    marks the latest report final and moves the job to approved. A stale
    or concurrent approval changes nothing.

    Raises:
        ApprovalError: job not verified, attestation missing, bad signer identity or meaning
        SigningError: intent/challenge/PIN refused by the store
        JobStateError: the job left verified or was approved concurrently
        InventoryError: stock no longer covers the latest report
    """
    settings = settings or get_settings()
    if require_signing_intent is None:
        require_signing_intent = settings.require_signing_intent

    context = store.get_job_context(job_id)
    if context.job.status != "verified":
        raise ApprovalError(
            "Only verified jobs can be approved.",
            code="JOB_NOT_VERIFIED",
            detail={"status": context.job.status},
        )
    if not signature_attestation:
        raise ApprovalError("Electronic signature attestation is required.")
    signer_name = (signer_name or "").strip()
    signer_email = (signer_email or "").strip()
    if not signer_name:
        raise ApprovalError("Signer name is required.")
    if not is_valid_email(signer_email):
        raise ApprovalError("A valid signer email is required.")
    meaning = normalize_signature_meaning(signature_meaning)

    signing = None
    if require_signing_intent:
        if not (has_text(signing_intent_id) and has_text(signing_challenge_code) and has_text(signature_pin)):
            raise SigningError(
                "Signing intent, challenge code and signature PIN are required.",
                reason="challenge_mismatch",
            )
        signing = {
            "user_id": approver_id,
            "intent_id": signing_intent_id.strip(),
            "challenge_code": signing_challenge_code.strip(),
            "signature_meaning": meaning,
            "pin": signature_pin,
        }
    elif has_text(signature_pin):
        result = store.verify_signature_pin(approver_id, signature_pin)
        if not result.ok:
            _raise_for_refusal(result.reason)

    latest = store.get_latest_report(job_id)
    if latest is None:
        raise NotFoundError("No report found for approval.")
    formula = store.get_formula(context.job.formula_id) if context.job.formula_id else None
    report = latest["report"]
    pharmacist_note = note.strip() if has_text(note) else None

    def build_output(consumption) -> FinalOutput:
        approved_at = utc_now()
        signature_hash = compute_signature_hash(job_id, approver_id, signer_name, signer_email, meaning, approved_at)
        statement = build_signature_statement(signer_name, signer_email, meaning, approved_at)
        return FinalOutput(
            id=str(uuid.uuid4()),
            job_id=job_id,
            approved_by=approver_id,
            approved_at=approved_at,
            signer_name=signer_name,
            signer_email=signer_email,
            signature_meaning=meaning,
            signature_statement=statement,
            signature_hash=signature_hash,
            final_report={
                "approvedBy": approver_id,
                "approvedAt": approved_at.isoformat(),
                "signature": {
                    "signerName": signer_name,
                    "signerEmail": signer_email,
                    "signatureMeaning": meaning,
                    "signatureStatement": statement,
                    "signatureHash": signature_hash,
                },
                "context": context.model_dump(mode="json"),
                "reportVersion": latest["version"],
                "report": report,
                "formula": formula.model_dump(mode="json") if formula else None,
                "inventoryConsumption": consumption,
                "pharmacistNote": pharmacist_note,
            },
            label_payload=_build_label_payload(
                context, report, formula.labeling_requirements if formula else None, approved_at.isoformat()
            ),
        )

    try:
        output = store.approve_and_consume(job_id, latest["id"], build_output, signing=signing)
    except SigningError as e:
        logger.warning(f"Signing refused for job {job_id}: {e.reason}")
        _raise_for_refusal(e.reason)

    store.insert_pharmacist_feedback(
        job_id, "approve", pharmacist_note or "Approved by pharmacist."
    )
    store.write_audit_event(job_id, "approved", {
        "approvedBy": approver_id,
        "signatureMeaning": meaning,
        "signatureHash": output.signature_hash,
        "note": note,
        "timestamp": output.approved_at.isoformat(),
    })
    logger.info(f"Job {job_id} approved by {approver_id} ({meaning})")
    return output


def reject_job(store: CompoundingStore, job_id: str, feedback: str) -> None:
    """Reject a non-terminal job. Terminal, no inventory is consumed."""
    feedback = (feedback or "").strip()
    if not feedback:
        raise ApprovalError("Rejection feedback is required.")

    store.update_job_state(
        job_id,
        status="rejected",
        last_error=feedback,
        pharmacist_feedback=feedback,
    )
    store.insert_pharmacist_feedback(job_id, "reject", feedback)
    store.write_audit_event(job_id, "rejected", {"feedback": feedback, "timestamp": utc_now().isoformat()})
    logger.info(f"Job {job_id} rejected")
