"""
JSON lookups against external clinical data sources.

Every lookup returns one of three tagged results so callers can never read
"no data" as "no problem":

    LookupOk(data)         2xx with a JSON object body
    LookupMissing(reason)  the source answered but has no matching record
    LookupFailed(detail)   transport error, timeout, non-JSON or other HTTP error
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

import requests

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class LookupOk:
    data: Dict[str, Any] = field(default_factory=dict)
    url: str = ""


@dataclass(frozen=True)
class LookupMissing:
    reason: str
    url: str = ""


@dataclass(frozen=True)
class LookupFailed:
    detail: str
    url: str = ""


LookupResult = Union[LookupOk, LookupMissing, LookupFailed]


def _api_error_message(response: requests.Response) -> Optional[str]:
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        return payload["error"].get("message")
    return None


def fetch_json(
    url: str,
    params: Optional[Dict[str, Any]] = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    session: Optional[requests.Session] = None,
) -> LookupResult:
    """GET a JSON document and classify the outcome."""
    getter = session.get if session is not None else requests.get
    try:
        response = getter(url, params=params, timeout=timeout, headers={"Accept": "application/json"})
    except requests.exceptions.Timeout:
        logger.warning(f"Lookup timed out after {timeout}s: {url}")
        return LookupFailed(detail=f"timed out after {timeout}s", url=url)
    except requests.exceptions.RequestException as e:
        logger.warning(f"Lookup failed for {url}: {e}")
        return LookupFailed(detail=str(e), url=url)

    resolved_url = getattr(response, "url", None) or url

    if response.status_code == 404:
        message = _api_error_message(response)
        return LookupMissing(reason=message or "no matching records", url=resolved_url)

    if not response.ok:
        logger.warning(f"Lookup returned HTTP {response.status_code}: {resolved_url}")
        return LookupFailed(detail=f"HTTP {response.status_code}", url=resolved_url)

    try:
        payload = response.json()
    except ValueError:
        return LookupFailed(detail="response was not JSON", url=resolved_url)

    if not isinstance(payload, dict):
        return LookupFailed(detail="unexpected JSON payload", url=resolved_url)

    return LookupOk(data=payload, url=resolved_url)
