"""
Electronic signature primitives for job approval.

A signing intent is a one-time, job-scoped challenge with its own small
state machine, separate from job status:

    issued --consume--> consumed
    issued --ttl------> expired

An intent can only be consumed for the job and signature meaning it was
issued for, and only together with the signer's PIN.
"""

import hashlib
import hmac
import json
import re
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Dict, Literal, Optional, Tuple

from .exceptions import ApprovalError, SigningError
from .state import SignatureMeaning, SigningIntent
from .utils import utc_now

IntentState = Literal["issued", "consumed", "expired"]

SIGNATURE_MEANINGS: Dict[str, str] = {
    "compounded_by": "Compounded by",
    "verified_by": "Verified by",
    "reviewed_and_approved": "Reviewed and approved by",
}

MIN_PIN_LENGTH = 8
PIN_HASH_ITERATIONS = 200_000
CHALLENGE_CODE_DIGITS = 6

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_signature_meaning(value: Optional[str]) -> SignatureMeaning:
    """Map user input onto the closed meaning set; unknown meanings are refused."""
    key = re.sub(r"[\s\-]+", "_", (value or "").strip().lower())
    if key not in SIGNATURE_MEANINGS:
        raise ApprovalError(
            f"Unknown signature meaning: {value!r}.",
            detail={"allowed": sorted(SIGNATURE_MEANINGS)},
        )
    return key  # type: ignore[return-value]


def is_valid_email(value: Optional[str]) -> bool:
    return bool(value and _EMAIL_RE.match(value.strip()))


# --- Signing intents ---

def generate_challenge_code() -> str:
    return f"{secrets.randbelow(10 ** CHALLENGE_CODE_DIGITS):0{CHALLENGE_CODE_DIGITS}d}"


def new_signing_intent(
    job_id: str,
    signature_meaning: SignatureMeaning,
    ttl_minutes: int,
    now: Optional[datetime] = None,
) -> SigningIntent:
    issued_at = now or utc_now()
    return SigningIntent(
        intent_id=str(uuid.uuid4()),
        job_id=job_id,
        challenge_code=generate_challenge_code(),
        signature_meaning=signature_meaning,
        issued_at=issued_at,
        expires_at=issued_at + timedelta(minutes=ttl_minutes),
    )


def intent_state(intent: SigningIntent, now: Optional[datetime] = None) -> IntentState:
    if intent.consumed_at is not None:
        return "consumed"
    if (now or utc_now()) >= intent.expires_at:
        return "expired"
    return "issued"


def check_intent(
    intent: SigningIntent,
    job_id: str,
    challenge_code: str,
    signature_meaning: str,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """Return the refusal reason for consuming this intent, or None when it may be consumed."""
    state = intent_state(intent, now)
    if state == "consumed":
        return "intent_already_used"
    if state == "expired":
        return "intent_expired"
    if (
        intent.job_id != job_id
        or intent.signature_meaning != signature_meaning
        or not hmac.compare_digest(intent.challenge_code, (challenge_code or "").strip())
    ):
        return "challenge_mismatch"
    return None


# --- PIN hashing ---

def validate_new_pin(pin: str, confirm_pin: str) -> None:
    if len(pin or "") < MIN_PIN_LENGTH:
        raise SigningError(f"Signature PIN must be at least {MIN_PIN_LENGTH} characters.")
    if pin != confirm_pin:
        raise SigningError("Signature PIN confirmation does not match.")


def hash_pin(pin: str, salt: Optional[str] = None) -> Tuple[str, str]:
    """PBKDF2-SHA256 hash of a PIN. Returns (hash_hex, salt_hex)."""
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", pin.encode("utf-8"), bytes.fromhex(salt), PIN_HASH_ITERATIONS)
    return digest.hex(), salt


def verify_pin(pin: str, pin_hash: str, salt: str) -> bool:
    candidate, _ = hash_pin(pin or "", salt)
    return hmac.compare_digest(candidate, pin_hash)


# --- Signature ---

def compute_signature_hash(
    job_id: str,
    approver_id: str,
    signer_name: str,
    signer_email: str,
    signature_meaning: str,
    timestamp: datetime,
) -> str:
    """SHA-256 over the canonical JSON of the signature fields."""
    payload = {
        "jobId": job_id,
        "approverId": approver_id,
        "signerName": signer_name,
        "signerEmail": signer_email,
        "signatureMeaning": signature_meaning,
        "timestamp": timestamp.isoformat(),
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def build_signature_statement(
    signer_name: str,
    signer_email: str,
    signature_meaning: str,
    timestamp: datetime,
) -> str:
    label = SIGNATURE_MEANINGS.get(signature_meaning, signature_meaning)
    return (
        f"{label} {signer_name} <{signer_email}> on {timestamp.isoformat()}. "
        "The signer attests that this electronic signature is the legally binding "
        "equivalent of a handwritten signature."
    )
