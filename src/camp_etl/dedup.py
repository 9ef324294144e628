"""camp_etl.dedup

Match incoming sessions against the catalog and decide what, if anything,
to refresh on a match.

A match is an existing session of the same organization and start date
(from the same source, or from no recorded source) whose name is more
than 80% similar. On a match nothing new is created, and only two
things may change:
  - price, when the incoming price is positive and the stored one is
    missing or zero;
  - spots left / capacity, whenever the payload reports a spots-left
    figure that differs from what is stored.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime

import psycopg
from rapidfuzz.distance import Levenshtein

from camp_etl.models import ScrapedSession
from camp_etl.normalize import normalize_name

NAME_SIMILARITY_THRESHOLD = 0.8


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------

def name_similarity(a: str | None, b: str | None) -> float:
    """1 - edit distance / longer length, case-insensitive. Two empties are 1.0."""
    return Levenshtein.normalized_similarity((a or "").lower(), (b or "").lower())


def generate_dedupe_key(source_id: str, name: str | None, start_date: date | str) -> str:
    start = start_date.isoformat() if isinstance(start_date, date) else start_date
    return f"{source_id}:{normalize_name(name) or ''}:{start}"


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------

@dataclass
class ExistingSession:
    id: str
    name: str
    source_id: str | None
    price_in_cents: int | None
    capacity: int
    enrolled_count: int
    spots_left: int | None


def find_existing_session(
    conn: psycopg.Connection,
    source_id: str,
    organization_id: str,
    name: str | None,
    start_date: date,
    threshold: float = NAME_SIMILARITY_THRESHOLD,
) -> ExistingSession | None:
    rows = conn.execute(
        """
        SELECT id, name, source_id, price_in_cents, capacity,
               enrolled_count, spots_left
        FROM session
        WHERE organization_id = %s
          AND start_date = %s
          AND (source_id = %s OR source_id IS NULL)
        ORDER BY created_at
        """,
        (organization_id, start_date, source_id),
    ).fetchall()
    for row in rows:
        if name_similarity(row[1], name) > threshold:
            return ExistingSession(
                id=str(row[0]),
                name=row[1],
                source_id=str(row[2]) if row[2] is not None else None,
                price_in_cents=row[3],
                capacity=row[4],
                enrolled_count=row[5],
                spots_left=row[6],
            )
    return None


# ---------------------------------------------------------------------------
# Refresh planning
# ---------------------------------------------------------------------------

@dataclass
class SessionRefresh:
    price_in_cents: int | None = None
    spots_left: int | None = None
    capacity: int | None = None
    source_id: str | None = None

    @property
    def is_empty(self) -> bool:
        return (
            self.price_in_cents is None
            and self.spots_left is None
            and self.capacity is None
            and self.source_id is None
        )


def plan_session_refresh(
    existing: ExistingSession,
    incoming: ScrapedSession,
    source_id: str,
) -> SessionRefresh:
    refresh = SessionRefresh()
    price = incoming.price_in_cents
    if price is not None and price > 0 and not existing.price_in_cents:
        refresh.price_in_cents = price
    spots = incoming.spots_left
    if spots is not None and spots >= 0 and spots != existing.spots_left:
        refresh.spots_left = spots
        refresh.capacity = existing.enrolled_count + spots
    if existing.source_id is None:
        refresh.source_id = source_id
    return refresh


def apply_session_refresh(
    conn: psycopg.Connection,
    session_id: str,
    refresh: SessionRefresh,
    scraped_at: datetime,
) -> None:
    """Write the planned changes and stamp last_scraped_at."""
    conn.execute(
        """
        UPDATE session
        SET price_in_cents  = COALESCE(%s, price_in_cents),
            spots_left      = COALESCE(%s, spots_left),
            capacity        = COALESCE(%s, capacity),
            source_id       = COALESCE(source_id, %s),
            last_scraped_at = %s,
            updated_at      = CASE WHEN %s THEN now() ELSE updated_at END
        WHERE id = %s
        """,
        (
            refresh.price_in_cents, refresh.spots_left, refresh.capacity,
            refresh.source_id, scraped_at, not refresh.is_empty, session_id,
        ),
    )
