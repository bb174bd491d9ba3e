"""Normalization functions for monitoring plan ingestion.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime

TRUE_TOKENS = frozenset({"yes", "true", "1", "y", "t"})
FALSE_TOKENS = frozenset({"no", "false", "0", "n", "f", ""})

_VISIT_DATE_FORMATS = (
    "%d-%m-%Y",
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%Y/%m/%d",
    "%d %b %Y",
    "%d %B %Y",
)

_DATE_SHAPED_RE = re.compile(
    r"^\d{1,4}[-/.]\d{1,2}[-/.]\d{1,4}$"
    r"|^\d{1,2}\s+[A-Za-z]{3,9}\s+\d{2,4}$"
    r"|^[A-Za-z]{3,9}[-\s]\d{2,4}$"
)
_SITE_CODE_SHAPE_RE = re.compile(r"^[A-Za-z]{2}-[A-Za-z0-9]{2,4}-[A-Za-z0-9]{2,6}-\d{3,5}$")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = str(value).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


def _fold(value: str) -> str:
    v = unicodedata.normalize("NFKD", value)
    return "".join(c for c in v if not unicodedata.combining(c)).lower()


# ---------------------------------------------------------------------------
# Rule 3: normalize_header
# ---------------------------------------------------------------------------

def normalize_header(value: str | None) -> str:
    """Lowercase and strip every non-alphanumeric character.

    'Activity at Site:' → 'activityatsite'.  Never returns None so that it can
    be used directly as a dict key.
    """
    v = trim(value)
    if v is None:
        return ""
    return re.sub(r"[^a-z0-9]+", "", _fold(v))


# ---------------------------------------------------------------------------
# Rule 4: normalize_name  (site name / state / locality matching)
# ---------------------------------------------------------------------------

def normalize_name(value: str | None) -> str | None:
    """Lowercase, remove punctuation except spaces, collapse spaces.

    Used for registry matching on site name, state and locality.
    """
    v = trim(value)
    if v is None:
        return None
    v = _fold(v)
    v = re.sub(r"[^a-z0-9\s]", "", v)
    v = re.sub(r"\s+", " ", v).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 5: normalize_code  (site code matching)
# ---------------------------------------------------------------------------

def normalize_code(value: str | None) -> str | None:
    """Case-insensitive, punctuation-stripped site code.

    'WD-KUL-ADAR-0001' and 'wd kul adar 0001' both → 'wdkuladar0001'.
    """
    v = trim(value)
    if v is None:
        return None
    v = re.sub(r"[^a-z0-9]+", "", _fold(v))
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 6: code_prefix  (site code generation)
# ---------------------------------------------------------------------------

def code_prefix(value: str | None, length: int, fallback: str = "X") -> str:
    """Uppercase alphanumeric prefix of *value*, padded with *fallback*."""
    v = trim(value)
    letters = re.sub(r"[^A-Za-z0-9]+", "", _fold(v)).upper() if v else ""
    return (letters + fallback * length)[:length]


# ---------------------------------------------------------------------------
# Rule 7: parse_bool
# ---------------------------------------------------------------------------

def parse_bool(value: str | None) -> bool | None:
    """Coerce yes/no style cells.

    {yes,true,1,y,t} → True, {no,false,0,n,f,""} → False, anything else → None
    so the caller can flag it.
    """
    v = (trim(value) or "").lower()
    if v in TRUE_TOKENS:
        return True
    if v in FALSE_TOKENS:
        return False
    return None


# ---------------------------------------------------------------------------
# Rule 8: parse_visit_date
# ---------------------------------------------------------------------------

def parse_visit_date(value: str | None) -> date | None:
    """Parse a visit date in any of the accepted layouts, or None."""
    v = normalize_space(value)
    if v is None:
        return None
    # Spreadsheet exports sometimes carry a midnight time component.
    v = re.sub(r"[T ]00:00(:00)?(\.0+)?$", "", v)
    for fmt in _VISIT_DATE_FORMATS:
        try:
            return datetime.strptime(v, fmt).date()
        except ValueError:
            continue
    return None


# ---------------------------------------------------------------------------
# Shape heuristics (used by the backfill pass)
# ---------------------------------------------------------------------------

def looks_like_date(value: str | None) -> bool:
    v = normalize_space(value)
    if v is None:
        return False
    return bool(_DATE_SHAPED_RE.match(v)) or parse_visit_date(v) is not None


def looks_like_site_code(value: str | None) -> bool:
    v = trim(value)
    return bool(v and _SITE_CODE_SHAPE_RE.match(v))


def looks_like_place_name(value: str | None) -> bool:
    """True for short alphabetic text such as a locality name."""
    v = normalize_space(value)
    if v is None or len(v) > 60 or looks_like_date(v):
        return False
    if not re.search(r"[A-Za-z]", v):
        return False
    return bool(re.fullmatch(r"[A-Za-z][A-Za-z\s'\-\.()]*", v))
