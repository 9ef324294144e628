"""camp_etl.parsers

Best-effort extraction of dates, times, prices and age/grade ranges from the
free-text fields scrapers capture. Every parser returns a value or None for
"could not parse"; none of them raise on malformed input.
"""

from __future__ import annotations

import dataclasses
import re
from dataclasses import dataclass
from datetime import date

from camp_etl.models import ScrapedSession

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_MONTHS = {
    "january": 1, "february": 2, "march": 3, "april": 4, "may": 5, "june": 6,
    "july": 7, "august": 8, "september": 9, "october": 10, "november": 11,
    "december": 12,
}

DEFAULT_SEASONS: dict[str, tuple[str, str]] = {
    "spring": ("03-01", "05-31"),
    "summer": ("06-01", "08-31"),
    "fall": ("09-01", "11-30"),
    "winter": ("12-01", "02-28"),
}

# Age ranges above this are assumed for "N and up" style listings.
OPEN_ENDED_MAX_AGE = 18

_SAME_MONTH_RANGE_RE = re.compile(
    r"([A-Za-z]+)\.?\s+(\d{1,2})\s*[-–]\s*(\d{1,2}),?\s*(\d{4})"
)
_NUMERIC_RANGE_RE = re.compile(
    r"(\d{1,2})/(\d{1,2})/(\d{4})\s*[-–]\s*(\d{1,2})/(\d{1,2})/(\d{4})"
)
_CROSS_MONTH_RANGE_RE = re.compile(
    r"([A-Za-z]+)\.?\s+(\d{1,2})(?:,?\s*(\d{4}))?\s*[-–]\s*"
    r"([A-Za-z]+)\.?\s+(\d{1,2}),?\s*(\d{4})"
)
_SEASON_RE = re.compile(r"\b(spring|summer|fall|autumn|winter)\s+(\d{4})\b", re.IGNORECASE)

_TIME_RANGE_RE = re.compile(
    r"(\d{1,2})(?::(\d{2}))?\s*(am|pm)?\s*[-–]\s*(\d{1,2})(?::(\d{2}))?\s*(am|pm)?",
    re.IGNORECASE,
)

_FREE_RE = re.compile(r"\bfree\b", re.IGNORECASE)
_ZERO_DOLLARS_RE = re.compile(r"\$0(?:\.0{1,2})?(?![\d,.])")
_PRICE_RE = re.compile(r"\$?(\d[\d,]*)(?:\.(\d{2}))?")

_GRADE_TOKEN = r"(pre-?k|k|\d{1,2})(?:st|nd|rd|th)?"
_GRADE_KEYWORD_RE = re.compile(
    rf"\bgrades?\s*{_GRADE_TOKEN}\s*(?:[-–]|to|through)\s*{_GRADE_TOKEN}\b",
    re.IGNORECASE,
)
_GRADE_ORDINAL_RE = re.compile(
    r"\b(\d{1,2})(?:st|nd|rd|th)\s*(?:[-–]|to|through)\s*(\d{1,2})(?:st|nd|rd|th)\b",
    re.IGNORECASE,
)
_GRADE_K_RE = re.compile(
    rf"\b(pre-?k|k)\s*(?:[-–]|to|through)\s*{_GRADE_TOKEN}\b",
    re.IGNORECASE,
)
_GRADE_SINGLE_RE = re.compile(rf"\bgrade\s+{_GRADE_TOKEN}\b", re.IGNORECASE)
_AGE_RANGE_RE = re.compile(r"(?:ages?\s*)?\b(\d{1,2})\s*(?:[-–]|to)\s*(\d{1,2})\b", re.IGNORECASE)
_AGE_OPEN_RE = re.compile(
    r"(?:ages?\s*)?\b(\d{1,2})\s*(?:\+|and\s+up|and\s+older|&\s*up)",
    re.IGNORECASE,
)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    @property
    def days(self) -> int:
        return (self.end - self.start).days


@dataclass(frozen=True)
class TimeRange:
    drop_off_hour: int
    drop_off_minute: int
    pick_up_hour: int
    pick_up_minute: int


@dataclass(frozen=True)
class AgeGradeRange:
    min_age: int | None = None
    max_age: int | None = None
    min_grade: int | None = None
    max_grade: int | None = None


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

def _month_number(token: str) -> int | None:
    t = token.lower().rstrip(".")
    if t in _MONTHS:
        return _MONTHS[t]
    if t == "sept":
        return 9
    if len(t) >= 3:
        for name, number in _MONTHS.items():
            if name.startswith(t):
                return number
    return None


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _range(start: date | None, end: date | None) -> DateRange | None:
    if start is None or end is None or end < start:
        return None
    return DateRange(start, end)


def parse_date_range(text: str | None) -> DateRange | None:
    """'June 10-14, 2025' or '06/10/2025 - 06/14/2025' -> DateRange."""
    if not text:
        return None
    m = _SAME_MONTH_RANGE_RE.search(text)
    if m:
        month = _month_number(m.group(1))
        if month is not None:
            year = int(m.group(4))
            return _range(
                _safe_date(year, month, int(m.group(2))),
                _safe_date(year, month, int(m.group(3))),
            )
    m = _NUMERIC_RANGE_RE.search(text)
    if m:
        return _range(
            _safe_date(int(m.group(3)), int(m.group(1)), int(m.group(2))),
            _safe_date(int(m.group(6)), int(m.group(4)), int(m.group(5))),
        )
    return None


def _season_range(
    season: str, year: int, seasons: dict[str, tuple[str, str]]
) -> DateRange | None:
    key = "fall" if season == "autumn" else season
    window = seasons.get(key)
    if window is None:
        return None
    start_md, end_md = window
    sm, sd = (int(p) for p in start_md.split("-"))
    em, ed = (int(p) for p in end_md.split("-"))
    start = _safe_date(year, sm, sd)
    end_year = year + 1 if (em, ed) < (sm, sd) else year
    return _range(start, _safe_date(end_year, em, ed))


def parse_flexible_range(
    text: str | None,
    seasons: dict[str, tuple[str, str]] | None = None,
) -> DateRange | None:
    """Resolve open-ended phrasings the strict parser rejects.

    Handles cross-month ranges ('June 15 - August 28, 2026') and season
    names ('Summer 2026'), the latter via the regional season windows.
    """
    if not text:
        return None
    m = _CROSS_MONTH_RANGE_RE.search(text)
    if m:
        start_month = _month_number(m.group(1))
        end_month = _month_number(m.group(4))
        if start_month is not None and end_month is not None:
            end_year = int(m.group(6))
            start_year = int(m.group(3)) if m.group(3) else end_year
            return _range(
                _safe_date(start_year, start_month, int(m.group(2))),
                _safe_date(end_year, end_month, int(m.group(5))),
            )
    m = _SEASON_RE.search(text)
    if m:
        return _season_range(m.group(1).lower(), int(m.group(2)), seasons or DEFAULT_SEASONS)
    return None


# ---------------------------------------------------------------------------
# Times
# ---------------------------------------------------------------------------

def _to_24h(hour: int, period: str | None) -> int:
    if period == "pm" and hour != 12:
        return hour + 12
    if period == "am" and hour == 12:
        return 0
    return hour


def parse_time_range(text: str | None) -> TimeRange | None:
    """'9am-3pm' -> TimeRange(9, 0, 15, 0).

    Without a period marker, a pick-up hour under 6 is assumed to be
    afternoon ('9-3' -> 9:00 to 15:00). This is a guess, not a rule.
    """
    if not text:
        return None
    m = _TIME_RANGE_RE.search(text)
    if not m:
        return None
    start_period = m.group(3).lower() if m.group(3) else None
    end_period = m.group(6).lower() if m.group(6) else None
    start_hour = _to_24h(int(m.group(1)), start_period)
    end_hour = _to_24h(int(m.group(4)), end_period)
    if end_period is None and end_hour < 6:
        end_hour += 12
    return TimeRange(
        drop_off_hour=start_hour,
        drop_off_minute=int(m.group(2)) if m.group(2) else 0,
        pick_up_hour=end_hour,
        pick_up_minute=int(m.group(5)) if m.group(5) else 0,
    )


# ---------------------------------------------------------------------------
# Prices
# ---------------------------------------------------------------------------

def is_explicitly_free(price_raw: str | None) -> bool:
    return bool(price_raw and _FREE_RE.search(price_raw))


def parse_price(text: str | None) -> int | None:
    """'$1,250.50' -> 125050 cents. 'Free' / '$0' -> 0. Unparseable -> None."""
    if not text:
        return None
    if _FREE_RE.search(text) or _ZERO_DOLLARS_RE.search(text):
        return 0
    m = _PRICE_RE.search(text)
    if not m:
        return None
    dollars = int(m.group(1).replace(",", ""))
    cents = int(m.group(2)) if m.group(2) else 0
    return dollars * 100 + cents


# ---------------------------------------------------------------------------
# Ages and grades
# ---------------------------------------------------------------------------

def _grade_value(token: str) -> int:
    t = token.lower().replace("-", "")
    if t == "prek":
        return -1
    if t == "k":
        return 0
    return int(t)


def parse_age_grade(text: str | None) -> AgeGradeRange | None:
    """Extract grade and/or age ranges.

    Grade ranges need a 'grade' keyword, ordinal suffixes or a K/Pre-K
    token, so 'Ages 6-10' is never read as grades. K is 0, Pre-K is -1.
    'N+' / 'N and up' ages cap at 18.
    """
    if not text:
        return None
    min_grade = max_grade = None
    remaining = text
    for pattern in (_GRADE_KEYWORD_RE, _GRADE_K_RE, _GRADE_ORDINAL_RE):
        m = pattern.search(remaining)
        if m:
            min_grade, max_grade = _grade_value(m.group(1)), _grade_value(m.group(2))
            remaining = remaining[:m.start()] + " " + remaining[m.end():]
            break
    else:
        m = _GRADE_SINGLE_RE.search(remaining)
        if m:
            min_grade = max_grade = _grade_value(m.group(1))
            remaining = remaining[:m.start()] + " " + remaining[m.end():]

    min_age = max_age = None
    m = _AGE_RANGE_RE.search(remaining)
    if m:
        min_age, max_age = int(m.group(1)), int(m.group(2))
    else:
        m = _AGE_OPEN_RE.search(remaining)
        if m:
            min_age, max_age = int(m.group(1)), OPEN_ENDED_MAX_AGE

    if min_grade is None and min_age is None:
        return None
    return AgeGradeRange(min_age, max_age, min_grade, max_grade)


# ---------------------------------------------------------------------------
# Session enrichment
# ---------------------------------------------------------------------------

def enrich_session(
    session: ScrapedSession,
    seasons: dict[str, tuple[str, str]] | None = None,
) -> ScrapedSession:
    """Fill structured fields the scraper left empty from its raw text.

    Values the scraper supplied are never overwritten. A date phrase only
    the flexible parser understands yields dates plus is_flexible=True.
    """
    updates: dict[str, object] = {}

    if session.start_date is None and session.end_date is None and session.date_raw:
        strict = parse_date_range(session.date_raw)
        if strict is not None:
            updates["start_date"] = strict.start.isoformat()
            updates["end_date"] = strict.end.isoformat()
        else:
            flexible = parse_flexible_range(session.date_raw, seasons)
            if flexible is not None:
                updates["start_date"] = flexible.start.isoformat()
                updates["end_date"] = flexible.end.isoformat()
                updates["is_flexible"] = True

    if session.drop_off_hour is None and session.pick_up_hour is None and session.time_raw:
        times = parse_time_range(session.time_raw)
        if times is not None:
            updates["drop_off_hour"] = times.drop_off_hour
            updates["drop_off_minute"] = times.drop_off_minute
            updates["pick_up_hour"] = times.pick_up_hour
            updates["pick_up_minute"] = times.pick_up_minute

    if session.price_in_cents is None and session.price_raw:
        price = parse_price(session.price_raw)
        if price is not None:
            updates["price_in_cents"] = price

    no_ages = all(
        v is None for v in (
            session.min_age, session.max_age, session.min_grade, session.max_grade,
        )
    )
    if no_ages and session.age_grade_raw:
        ages = parse_age_grade(session.age_grade_raw)
        if ages is not None:
            updates.update(dataclasses.asdict(ages))

    return dataclasses.replace(session, **updates) if updates else session
