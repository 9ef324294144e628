"""Normalization helpers for scraped camp listings.

All string functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Any

# Case-insensitive substring match: any of these inside a value marks it missing.
PLACEHOLDER_TOKENS = ("<UNKNOWN>", "UNKNOWN", "TBD", "N/A", "null", "undefined")

_WEEK_SUFFIX_RE = re.compile(r"\s*[-–:]\s*Week\s+\d+\s*$", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
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


# ---------------------------------------------------------------------------
# Rule 3: slug_name  (organization and camp slugs)
# ---------------------------------------------------------------------------

def slug_name(value: str | None) -> str | None:
    """Lowercase alnum with '-' separators."""
    v = trim(value)
    if v is None:
        return None
    v = unicodedata.normalize("NFKD", v)
    v = "".join(c for c in v if not unicodedata.combining(c))
    v = v.lower()
    v = re.sub(r"[^a-z0-9]+", "-", v)
    v = v.strip("-")
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 4: normalize_name  (dedupe keys and similarity)
# ---------------------------------------------------------------------------

def normalize_name(value: str | None) -> str | None:
    """Lowercase, drop punctuation, collapse spaces."""
    v = trim(value)
    if v is None:
        return None
    v = unicodedata.normalize("NFKD", v)
    v = "".join(c for c in v if not unicodedata.combining(c))
    v = v.lower()
    v = re.sub(r"[^\w\s]", "", v)
    v = re.sub(r"\s+", " ", v).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Placeholders and week suffixes
# ---------------------------------------------------------------------------

def is_placeholder(value: Any) -> bool:
    """True when a string value carries a known 'we don't know' token."""
    if not isinstance(value, str):
        return False
    upper = value.upper()
    return any(token.upper() in upper for token in PLACEHOLDER_TOKENS)


def strip_week_suffix(name: str) -> str:
    """'Art Camp - Week 3' -> 'Art Camp'."""
    return _WEEK_SUFFIX_RE.sub("", name).strip()


# ---------------------------------------------------------------------------
# Loose numeric coercion for untrusted JSON
# ---------------------------------------------------------------------------

def coerce_number(value: Any) -> int | float | None:
    """Return int/float for numeric-looking input, else None.

    Non-integral floats are kept as floats so the validator can reject them
    rather than having them silently truncated here.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else value
    if isinstance(value, str):
        v = value.strip()
        if re.fullmatch(r"-?\d+", v):
            return int(v)
        if re.fullmatch(r"-?\d+\.\d+", v):
            f = float(v)
            return int(f) if f.is_integer() else f
    return None


def coerce_int(value: Any) -> int | None:
    """Like coerce_number but only integral values survive."""
    n = coerce_number(value)
    return n if isinstance(n, int) else None
