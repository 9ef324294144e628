"""camp_etl.flexible_dates

Season-long listings ("Summer 2026") are split into concrete
Monday-Friday weekly sessions so each one can be validated, priced and
deduplicated like any other session.
"""

from __future__ import annotations

import dataclasses
from datetime import date, timedelta
from typing import Iterable

from camp_etl.models import ScrapedSession
from camp_etl.validation import MAX_SESSION_DAYS, parse_iso_date


def weekly_spans(start: date, end: date) -> list[tuple[date, date]]:
    """Monday-Friday weeks fully inside [start, end]."""
    monday = start + timedelta(days=(7 - start.weekday()) % 7)
    weeks: list[tuple[date, date]] = []
    while monday + timedelta(days=4) <= end:
        weeks.append((monday, monday + timedelta(days=4)))
        monday += timedelta(days=7)
    return weeks


def expand_flexible_session(
    session: ScrapedSession,
    max_session_days: int = MAX_SESSION_DAYS,
) -> list[ScrapedSession]:
    """Return the session itself, or one session per week of its span.

    Only sessions flagged is_flexible with a resolvable span longer than
    max_session_days are expanded. Each week keeps the original date_raw.
    """
    if not session.is_flexible:
        return [session]
    start = parse_iso_date(session.start_date)
    end = parse_iso_date(session.end_date)
    if start is None or end is None or (end - start).days <= max_session_days:
        return [session]

    base_name = session.name or "Session"
    expanded = []
    for n, (week_start, week_end) in enumerate(weekly_spans(start, end), start=1):
        expanded.append(dataclasses.replace(
            session,
            name=f"{base_name} - Week {n}",
            start_date=week_start.isoformat(),
            end_date=week_end.isoformat(),
            is_flexible=False,
        ))
    return expanded or [session]


def expand_sessions(
    sessions: Iterable[ScrapedSession],
    max_session_days: int = MAX_SESSION_DAYS,
) -> list[ScrapedSession]:
    out: list[ScrapedSession] = []
    for session in sessions:
        out.extend(expand_flexible_session(session, max_session_days))
    return out
