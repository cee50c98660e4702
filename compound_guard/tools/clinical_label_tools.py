"""Clinical label lookup and dose-limit extraction for Compound-Guard verification."""

import logging
import re
from typing import List, Optional

import requests

from ..config import Settings, get_settings
from ..state import DoseRangeConstraints, ExternalClinicalSafetySnapshot
from ..utils import normalize_token, normalize_whitespace
from .http_lookup import LookupFailed, LookupMissing, fetch_json

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 24000

_NUMBER = r"(\d+(?:\.\d+)?)"
_CEILING = r"(?:maximum|max|not to exceed|do not exceed|up to)"

# Each pattern captures a single value, or (lower, upper) for ranges.
SINGLE_DOSE_PATTERNS = [
    re.compile(rf"{_CEILING}\s+{_NUMBER}\s*mg\s*/\s*dose"),
    re.compile(rf"(?:single dose(?: of)?|per dose(?: of)?).{{0,24}}?{_NUMBER}\s*mg"),
]
DAILY_DOSE_PATTERNS = [
    re.compile(rf"{_CEILING}\s+{_NUMBER}\s*mg\s*/\s*day"),
]
DAILY_PER_KG_PATTERNS = [
    re.compile(rf"{_CEILING}\s+{_NUMBER}\s*mg\s*/\s*kg\s*/\s*day"),
    re.compile(rf"{_NUMBER}\s*(?:to|-|–)\s*{_NUMBER}\s*mg\s*/\s*kg\s*/\s*day"),
]


# --- Text helpers ---

def truncate_for_storage(value: str) -> str:
    return value[:MAX_TEXT_LENGTH]


def extract_label_value(value) -> str:
    """Join an openFDA label section (a list of paragraphs) into one capped string."""
    if not isinstance(value, list) or not value:
        return ""
    return truncate_for_storage(normalize_whitespace(" ".join(str(item) for item in value)))


def _parse_positive(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        parsed = float(value.replace(",", ""))
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def _collect(text: str, patterns: List[re.Pattern]) -> List[float]:
    values = []
    for pattern in patterns:
        for match in pattern.finditer(text):
            groups = match.groups()
            upper = _parse_positive(groups[1]) if len(groups) > 1 else None
            value = upper if upper is not None else _parse_positive(groups[0])
            if value is not None:
                values.append(value)
    return values


def extract_dose_constraints_from_label_text(text: str) -> DoseRangeConstraints:
    """
    Pull numeric dose ceilings out of free label text.

    Single and daily mg ceilings take the minimum across matches (most
    conservative). mg/kg/day ceilings take the maximum, because range forms
    such as "20-40 mg/kg/day" already describe an upper tolerance.
    """
    normalized = normalize_token(text)

    single = _collect(normalized, SINGLE_DOSE_PATTERNS)
    daily = _collect(normalized, DAILY_DOSE_PATTERNS)
    per_kg = _collect(normalized, DAILY_PER_KG_PATTERNS)

    return DoseRangeConstraints(
        max_single_dose_mg=min(single) if single else None,
        max_daily_dose_mg=min(daily) if daily else None,
        max_daily_dose_mg_per_kg=max(per_kg) if per_kg else None,
    )


# --- Snapshot fetch ---

def build_missing_snapshot(
    medication_name: str,
    warnings: Optional[List[str]] = None,
    source_url: Optional[str] = None,
) -> ExternalClinicalSafetySnapshot:
    return ExternalClinicalSafetySnapshot(
        medication_name=medication_name,
        status="missing",
        source_url=source_url,
        extraction_warnings=tuple(warnings or ()),
    )


def build_error_snapshot(
    medication_name: str,
    warnings: Optional[List[str]] = None,
    source_url: Optional[str] = None,
) -> ExternalClinicalSafetySnapshot:
    return ExternalClinicalSafetySnapshot(
        medication_name=medication_name,
        status="error",
        source_url=source_url,
        extraction_warnings=tuple(warnings or ()),
    )


def _quote_term(value: str) -> str:
    return value.replace('"', '\\"')


def fetch_clinical_safety_snapshot(
    medication_name: str,
    settings: Optional[Settings] = None,
    session: Optional[requests.Session] = None,
) -> ExternalClinicalSafetySnapshot:
    """
    Fetch the first openFDA label for a generic name and normalize its clinical sections.

    Returns status "error" on transport failure or timeout, "missing" when no
    label matches, "ok" otherwise. Never raises for network problems.
    """
    settings = settings or get_settings()
    name = normalize_whitespace(medication_name)
    if not name:
        return build_missing_snapshot(
            medication_name,
            ["Medication name is empty; external clinical safety lookup skipped."],
        )

    url = f"{settings.openfda_base_url.rstrip('/')}/drug/label.json"
    params = {"search": f'openfda.generic_name:"{_quote_term(name)}"', "limit": 1}
    if settings.openfda_api_key:
        params["api_key"] = settings.openfda_api_key

    logger.info(f"Fetching clinical label snapshot for {name}")
    result = fetch_json(url, params=params, timeout=settings.external_timeout_seconds, session=session)

    if isinstance(result, LookupFailed):
        return build_error_snapshot(
            name,
            ["openFDA clinical label lookup failed or timed out."],
            source_url=result.url,
        )

    if isinstance(result, LookupMissing):
        return build_missing_snapshot(
            name,
            [f"openFDA clinical label lookup returned: {result.reason}"],
            source_url=result.url,
        )

    payload = result.data
    labels = payload.get("results") or []
    if payload.get("error") or not labels:
        message = (payload.get("error") or {}).get("message")
        return build_missing_snapshot(
            name,
            [
                f"openFDA clinical label lookup returned: {message}"
                if message
                else f'openFDA returned no clinical label records for "{name}".'
            ],
            source_url=result.url,
        )

    label = labels[0] if isinstance(labels[0], dict) else {}
    snapshot = ExternalClinicalSafetySnapshot(
        medication_name=name,
        status="ok",
        source_url=result.url,
        set_id=label.get("set_id"),
        dose_text=extract_label_value(label.get("dosage_and_administration")),
        pediatric_text=extract_label_value(label.get("pediatric_use")),
        interactions_text=extract_label_value(label.get("drug_interactions")),
        contraindications_text=extract_label_value(label.get("contraindications")),
        warnings_text=extract_label_value(
            label.get("warnings_and_cautions") or label.get("warnings")
        ),
    )
    logger.info(f"Clinical label snapshot for {name}: set_id={snapshot.set_id}")
    return snapshot
