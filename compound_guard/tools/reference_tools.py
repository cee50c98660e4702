"""Medication reference lookups (RxNav, openFDA labels, openFDA NDC, DailyMed) for AI review citations."""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from ..config import Settings, get_settings
from ..state import MedicationCitation, MedicationReferenceSnapshot
from ..utils import normalize_whitespace
from .http_lookup import LookupFailed, LookupMissing, fetch_json

logger = logging.getLogger(__name__)

DAILYMED_PUBLIC_URL = "https://dailymed.nlm.nih.gov/dailymed/drugInfo.cfm"


def _quote_term(value: str) -> str:
    return value.replace('"', '\\"')


def _openfda_params(search: str, settings: Settings) -> Dict[str, Any]:
    params: Dict[str, Any] = {"search": search, "limit": 1}
    if settings.openfda_api_key:
        params["api_key"] = settings.openfda_api_key
    return params


def _total(payload: Dict[str, Any]) -> int:
    try:
        return int(((payload.get("meta") or {}).get("results") or {}).get("total") or 0)
    except (TypeError, ValueError):
        return 0


def _first(items: Any) -> Dict[str, Any]:
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return {}


def fetch_rxnorm_reference(
    medication_name: str,
    settings: Settings,
    session: Optional[requests.Session] = None,
) -> Dict[str, Any]:
    """
    Normalize a medication name to an RxCUI and preferred name.

    Returns:
        Dict with status, rxnorm_id, rxnorm_name, citation and warnings
    """
    base_url = settings.rxnav_base_url.rstrip("/")
    timeout = settings.external_timeout_seconds

    lookup = fetch_json(f"{base_url}/rxcui.json", params={"name": medication_name}, timeout=timeout, session=session)
    if isinstance(lookup, LookupFailed):
        return {"status": "error", "rxnorm_id": None, "rxnorm_name": None, "citation": None,
                "warnings": ["RxNav lookup failed or timed out."]}

    ids = [] if isinstance(lookup, LookupMissing) else ((lookup.data.get("idGroup") or {}).get("rxnormId") or [])
    if not ids:
        return {"status": "missing", "rxnorm_id": None, "rxnorm_name": None, "citation": None,
                "warnings": [f'RxNav could not normalize "{medication_name}" to an RxCUI.']}

    rxnorm_id = str(ids[0])
    properties_url = f"{base_url}/rxcui/{quote(rxnorm_id)}/properties.json"
    properties = fetch_json(properties_url, timeout=timeout, session=session)
    rxnorm_name = medication_name
    if not isinstance(properties, (LookupFailed, LookupMissing)):
        rxnorm_name = (properties.data.get("properties") or {}).get("name") or medication_name

    return {
        "status": "ok",
        "rxnorm_id": rxnorm_id,
        "rxnorm_name": rxnorm_name,
        "citation": MedicationCitation(
            source="rxnav",
            title=f"RxNav RxCUI {rxnorm_id}",
            url=properties_url,
            detail=f"Normalized name: {rxnorm_name}.",
        ),
        "warnings": [],
    }


def fetch_openfda_interaction_reference(
    medication_name: str,
    settings: Settings,
    session: Optional[requests.Session] = None,
) -> Dict[str, Any]:
    """Count openFDA labels for the medication that carry a drug_interactions section."""
    url = f"{settings.openfda_base_url.rstrip('/')}/drug/label.json"
    params = _openfda_params(
        f'openfda.generic_name:"{_quote_term(medication_name)}" AND _exists_:drug_interactions',
        settings,
    )
    result = fetch_json(url, params=params, timeout=settings.external_timeout_seconds, session=session)

    empty = {"interaction_label_count": 0, "sample_set_id": None, "citation": None}
    if isinstance(result, LookupFailed):
        return {**empty, "status": "error", "warnings": ["openFDA lookup failed or timed out."]}
    if isinstance(result, LookupMissing):
        return {**empty, "status": "missing", "warnings": [f"openFDA lookup returned: {result.reason}"]}

    count = _total(result.data)
    if count <= 0:
        return {**empty, "status": "missing",
                "warnings": [f'openFDA found no interaction labels for "{medication_name}".']}

    set_id = _first(result.data.get("results")).get("set_id")
    return {
        "status": "ok",
        "interaction_label_count": count,
        "sample_set_id": set_id,
        "citation": MedicationCitation(
            source="openfda",
            title=f"openFDA interaction labels ({count})",
            url=result.url,
            detail=f"Sample set_id: {set_id}." if set_id else None,
        ),
        "warnings": [],
    }


def fetch_openfda_ndc_reference(
    medication_name: str,
    settings: Settings,
    session: Optional[requests.Session] = None,
) -> Dict[str, Any]:
    """Look the medication up in the openFDA NDC directory."""
    url = f"{settings.openfda_base_url.rstrip('/')}/drug/ndc.json"
    params = _openfda_params(f'generic_name:"{_quote_term(medication_name)}"', settings)
    result = fetch_json(url, params=params, timeout=settings.external_timeout_seconds, session=session)

    empty = {"ndc_count": 0, "product_ndc": None, "citation": None}
    if isinstance(result, LookupFailed):
        return {**empty, "status": "error", "warnings": ["openFDA NDC lookup failed or timed out."]}
    if isinstance(result, LookupMissing):
        return {**empty, "status": "missing", "warnings": [f"openFDA NDC lookup returned: {result.reason}"]}

    count = _total(result.data)
    if count <= 0:
        return {**empty, "status": "missing",
                "warnings": [f'openFDA NDC found no records for "{medication_name}".']}

    product_ndc = _first(result.data.get("results")).get("product_ndc")
    return {
        "status": "ok",
        "ndc_count": count,
        "product_ndc": product_ndc,
        "citation": MedicationCitation(
            source="openfda",
            title=f"openFDA NDC directory match ({count})",
            url=result.url,
            detail=f"Sample product_ndc: {product_ndc}." if product_ndc else None,
        ),
        "warnings": [],
    }


def fetch_dailymed_reference(
    medication_name: str,
    settings: Settings,
    session: Optional[requests.Session] = None,
) -> Dict[str, Any]:
    """Find the first DailyMed structured product label for the medication."""
    url = f"{settings.dailymed_base_url.rstrip('/')}/spls.json"
    result = fetch_json(
        url,
        params={"drug_name": medication_name, "pagesize": 1},
        timeout=settings.external_timeout_seconds,
        session=session,
    )

    empty = {"set_id": None, "title": None, "published_date": None, "citation": None}
    if isinstance(result, LookupFailed):
        return {**empty, "status": "error", "warnings": ["DailyMed lookup failed or timed out."]}

    item = {} if isinstance(result, LookupMissing) else _first(result.data.get("data"))
    set_id = item.get("setid")
    if not set_id:
        return {**empty, "status": "missing",
                "warnings": [f'DailyMed found no SPL record for "{medication_name}".']}

    title = item.get("title")
    published_date = item.get("published_date")
    return {
        "status": "ok",
        "set_id": set_id,
        "title": title,
        "published_date": published_date,
        "citation": MedicationCitation(
            source="dailymed",
            title=title or f"DailyMed SPL {set_id}",
            url=f"{DAILYMED_PUBLIC_URL}?setid={quote(set_id)}",
            detail=f"Published: {published_date}." if published_date else None,
        ),
        "warnings": [],
    }


def fetch_medication_reference_snapshot(
    medication_name: str,
    settings: Optional[Settings] = None,
    session: Optional[requests.Session] = None,
) -> MedicationReferenceSnapshot:
    """
    Build the reference snapshot for one medication.

    RxNav runs first; its preferred name (when found) drives the openFDA
    label, openFDA NDC and DailyMed lookups, which run concurrently.

    Args:
        medication_name: Medication name as written on the prescription
        settings: Optional settings override
        session: Optional requests session (shared connection pool)

    Returns:
        MedicationReferenceSnapshot with per-source statuses, citations and warnings
    """
    settings = settings or get_settings()
    name = normalize_whitespace(medication_name)
    if not name:
        return MedicationReferenceSnapshot(
            medication_name=medication_name,
            warnings=("Medication name is empty; external reference lookup skipped.",),
        )

    logger.info(f"Fetching reference snapshot for {name}")
    rxnorm = fetch_rxnorm_reference(name, settings, session)
    lookup_name = rxnorm["rxnorm_name"] or name

    with ThreadPoolExecutor(max_workers=3) as pool:
        openfda_future = pool.submit(fetch_openfda_interaction_reference, lookup_name, settings, session)
        ndc_future = pool.submit(fetch_openfda_ndc_reference, lookup_name, settings, session)
        dailymed_future = pool.submit(fetch_dailymed_reference, lookup_name, settings, session)
        openfda = openfda_future.result()
        ndc = ndc_future.result()
        dailymed = dailymed_future.result()

    lookups = [rxnorm, openfda, ndc, dailymed]
    citations = tuple(item["citation"] for item in lookups if item["citation"] is not None)
    warnings: List[str] = [warning for item in lookups for warning in item["warnings"]]

    snapshot = MedicationReferenceSnapshot(
        medication_name=name,
        rxnorm_status=rxnorm["status"],
        rxnorm_id=rxnorm["rxnorm_id"],
        rxnorm_name=rxnorm["rxnorm_name"],
        openfda_status=openfda["status"],
        openfda_interaction_label_count=openfda["interaction_label_count"],
        openfda_sample_set_id=openfda["sample_set_id"],
        openfda_ndc_status=ndc["status"],
        openfda_ndc_count=ndc["ndc_count"],
        openfda_ndc_product_ndc=ndc["product_ndc"],
        dailymed_status=dailymed["status"],
        dailymed_set_id=dailymed["set_id"],
        dailymed_title=dailymed["title"],
        dailymed_published_date=dailymed["published_date"],
        citations=citations,
        warnings=tuple(warnings),
    )

    if warnings:
        logger.warning(f"Reference snapshot for {name} has {len(warnings)} warning(s): {warnings}")
    return snapshot
