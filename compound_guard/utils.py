"""
Shared helpers for numeric rounding, text normalization and parsing.

- Round-half-up at a fixed precision (never banker's rounding)
- Whitespace / token normalization used by every text-matching check
- JSON extraction from model output
"""

import json
import math
import re
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Optional


# --- Numeric ---

def round_half_up(value: float, digits: int = 3) -> float:
    """
    Round to `digits` decimal places, ties away from zero.

    Goes through the shortest repr of the float so 2.675 rounds to 2.68,
    matching what a pharmacist would compute by hand.
    """
    if not math.isfinite(value):
        return value
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def is_positive_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value) and value > 0


def format_number(value: float) -> str:
    """Render integers without a decimal point and everything else at 2 places."""
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.2f}"


# --- Dates ---

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def add_days(start: date, days: int) -> date:
    return start + timedelta(days=days)


def parse_iso_date(value: Any) -> Optional[date]:
    """Parse YYYY-MM-DD (or a full ISO timestamp); return None when invalid."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


# --- Text normalization ---

def normalize_whitespace(value: str) -> str:
    return re.sub(r"\s+", " ", value or "").strip()


def normalize_token(value: str) -> str:
    return normalize_whitespace(value).lower()


def has_text(value: Optional[str]) -> bool:
    return bool(value and value.strip())


def dedupe(values: Iterable[str]) -> List[str]:
    """Drop duplicates, keeping first-seen order."""
    return list(dict.fromkeys(values))


def word_tokens(value: str) -> List[str]:
    return [token for token in re.split(r"[^a-z0-9]+", normalize_token(value)) if token]


# --- JSON parsing ---

def safe_json_parse(text: str) -> Optional[Dict[str, Any]]:
    """
    Extract and parse the first JSON object from a string.

    Handles model output that may wrap JSON in markdown code fences.
    Returns None if no valid JSON object is found.
    """
    if not text:
        return None

    try:
        parsed = json.loads(text)
        return parsed if isinstance(parsed, dict) else None
    except json.JSONDecodeError:
        pass

    for pattern in [r"```json\s*\n?(.*?)\n?```", r"```\s*\n?(.*?)\n?```", r"\{[\s\S]*\}"]:
        match = re.search(pattern, text, re.DOTALL)
        if match:
            try:
                json_str = match.group(1) if match.lastindex else match.group(0)
                parsed = json.loads(json_str)
            except (json.JSONDecodeError, IndexError):
                continue
            if isinstance(parsed, dict):
                return parsed

    return None
