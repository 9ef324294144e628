"""camp_etl.validation

Session validation, the completeness-driven status state machine, and
source quality scoring.

Completeness is computed from field presence only. Errors are advisory:
they travel with the result for triage and review but never turn a
present field into a missing one.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from typing import Iterable
from urllib.parse import urlparse

from camp_etl.models import (
    REQUIRED_FIELDS,
    FieldState,
    NormalizedSession,
    ScrapedSession,
    ValidationError,
    ValidationResult,
)
from camp_etl.normalize import is_placeholder
from camp_etl.parsers import is_explicitly_free

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MAX_SESSION_DAYS = 21
REVIEW_MIN_SCORE = 50
ACTIVE_SCORE = 100
HIGH_QUALITY_MIN = 80
MEDIUM_QUALITY_MIN = 50

VALID_STATUSES = ("active", "draft", "pending_review")

GENERIC_LOCATIONS = frozenset({
    "main location", "tbd", "unknown", "n/a", "online", "various",
})

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_ADDRESS_CONTENT_RE = re.compile(r"\d+\s+[A-Za-z]")

# Raw-text parse misses are reported once per raw field, on the first
# required field that draws from it.
_PARSE_MISS_MESSAGES = {
    "startDate": "Could not parse start date from raw text",
    "dropOffTime": "Could not parse drop-off time from raw text",
    "ageRequirements": "Could not parse age/grade from raw text",
    "price": "Could not parse price from raw text",
}


# ---------------------------------------------------------------------------
# Field checks
# ---------------------------------------------------------------------------

def parse_iso_date(value: str | None) -> date | None:
    """Strict YYYY-MM-DD that must also be a real calendar date."""
    if not isinstance(value, str) or not _ISO_DATE_RE.match(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def is_valid_url(value: str) -> bool:
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def is_valid_hour(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= 23


def check_location(location: str) -> list[ValidationError]:
    """Flag generic placeholders, address-less short strings and venue lists."""
    errors: list[ValidationError] = []
    is_generic = location.strip().lower() in GENERIC_LOCATIONS
    has_address = bool(_ADDRESS_CONTENT_RE.search(location))
    if is_generic or (not has_address and len(location) < 20):
        errors.append(ValidationError(
            "location",
            "Location appears incomplete or generic - should include street address",
            location,
        ))
    commas = location.count(",")
    if commas >= 3 and len(location) > 100:
        errors.append(ValidationError(
            "location",
            f"Location appears to be a list of {commas + 1} venues - should be a single location",
            location[:100] + "...",
        ))
    return errors


# ---------------------------------------------------------------------------
# validate_session
# ---------------------------------------------------------------------------

def normalize_session(session: ScrapedSession) -> NormalizedSession:
    def hour(value: object) -> int | None:
        return value if is_valid_hour(value) else None

    def minute(value: object) -> int:
        if isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= 59:
            return value
        return 0

    location = session.location
    if location is None and session.address is not None:
        location = session.address.street

    return NormalizedSession(
        name=session.name,
        start_date=parse_iso_date(session.start_date),
        end_date=parse_iso_date(session.end_date),
        drop_off_hour=hour(session.drop_off_hour),
        drop_off_minute=minute(session.drop_off_minute),
        pick_up_hour=hour(session.pick_up_hour),
        pick_up_minute=minute(session.pick_up_minute),
        location=location,
        min_age=session.min_age,
        max_age=session.max_age,
        min_grade=session.min_grade,
        max_grade=session.max_grade,
        price_in_cents=session.price_in_cents,
        registration_url=(
            session.registration_url
            if session.registration_url and is_valid_url(session.registration_url)
            else None
        ),
    )


def validate_session(
    session: ScrapedSession,
    max_session_days: int = MAX_SESSION_DAYS,
) -> ValidationResult:
    """Check required fields, flag suspicious values, score completeness."""
    states = session.field_states()
    missing = [name for name, state in states.items() if state is not FieldState.PRESENT]
    errors: list[ValidationError] = []

    # Parse misses
    for name, message in _PARSE_MISS_MESSAGES.items():
        if states[name] is FieldState.UNPARSED:
            raw_attr = REQUIRED_FIELDS[name][1]
            raw = getattr(session, raw_attr) if raw_attr else None
            if raw:
                errors.append(ValidationError(name, message, raw))

    # Dates
    start = end = None
    for name, value in (("startDate", session.start_date), ("endDate", session.end_date)):
        if states[name] is not FieldState.PRESENT:
            continue
        parsed = parse_iso_date(value)
        if parsed is None:
            errors.append(ValidationError(name, "Invalid date format (expected YYYY-MM-DD)", value))
        elif name == "startDate":
            start = parsed
        else:
            end = parsed

    if start is not None and end is not None and not session.is_flexible:
        days = (end - start).days
        if days > max_session_days:
            errors.append(ValidationError(
                "dateRange",
                f"Session spans {days} days - likely a program overview, "
                f"not an individual camp session (max {max_session_days} days)",
                f"{session.start_date} to {session.end_date}",
            ))

    # Registration URL
    if session.registration_url and not is_valid_url(session.registration_url):
        errors.append(ValidationError(
            "registrationUrl",
            "Registration URL is not a valid HTTP/HTTPS URL",
            session.registration_url,
        ))

    # Hours
    for name, value in (("dropOffTime", session.drop_off_hour), ("pickUpTime", session.pick_up_hour)):
        if value is not None and not is_valid_hour(value):
            errors.append(ValidationError(name, "Invalid hour (expected 0-23)", str(value)))

    # Location content
    if session.location:
        errors.extend(check_location(session.location))

    required = len(REQUIRED_FIELDS)
    score = round(100 * (required - len(missing)) / required)

    return ValidationResult(
        is_complete=not missing and not errors,
        completeness_score=score,
        missing_fields=missing,
        errors=errors,
        normalized=normalize_session(session),
        field_states=states,
    )


# ---------------------------------------------------------------------------
# Status state machine
# ---------------------------------------------------------------------------

def determine_session_status(
    completeness_score: int,
    price_in_cents: int | None = None,
    price_raw: str | None = None,
    review_min_score: int = REVIEW_MIN_SCORE,
    active_score: int = ACTIVE_SCORE,
    overlong_span: bool = False,
) -> str:
    """Map one incoming session to active, draft or pending_review.

    A zero price without an explicit 'free' in the raw text stays draft:
    it is more often a failed price extraction than a free camp. So does a
    fixed-date session longer than the maximum span (``overlong_span``),
    which is usually a program overview.
    """
    if completeness_score < review_min_score:
        return "pending_review"
    if price_in_cents == 0 and not is_explicitly_free(price_raw):
        return "draft"
    if overlong_span:
        return "draft"
    if completeness_score >= active_score:
        return "active"
    return "draft"


# ---------------------------------------------------------------------------
# Source quality
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SourceQuality:
    score: int
    tier: str


def quality_tier(
    score: float,
    high_min: int = HIGH_QUALITY_MIN,
    medium_min: int = MEDIUM_QUALITY_MIN,
) -> str:
    if score >= high_min:
        return "high"
    if score >= medium_min:
        return "medium"
    return "low"


def calculate_source_quality(
    scores: Iterable[int | None],
    high_min: int = HIGH_QUALITY_MIN,
    medium_min: int = MEDIUM_QUALITY_MIN,
) -> SourceQuality:
    """Mean completeness (missing scores count as 0) bucketed into a tier."""
    values = [s or 0 for s in scores]
    if not values:
        return SourceQuality(0, "low")
    avg = sum(values) / len(values)
    return SourceQuality(round(avg), quality_tier(avg, high_min, medium_min))
