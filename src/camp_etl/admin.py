"""camp_etl.admin

Read models and operator actions behind the scraper admin screens:
source lists by tab, per-source health detail, per-job session breakdown,
the pending-session review queue, recrawl and activation toggles.

Nothing here commits; the caller owns the transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import psycopg

from camp_etl.alerts import Alert, create_alert, recent_alerts_for_source
from camp_etl.health import REGENERATION_AFTER_FAILURES
from camp_etl.jobs import get_raw_data_for_job
from camp_etl.models import ScrapeResult
from camp_etl.sources import SOURCE_COLS, ScrapeSource, get_source, row_to_source
from camp_etl.validation import REVIEW_MIN_SCORE, validate_session

log = logging.getLogger(__name__)

SOURCE_TABS = ("all", "active", "failing", "nodata")
PENDING_STATUSES = ("pending_review", "manually_fixed", "imported", "discarded")

_TAB_FILTERS = {
    "all": "true",
    "active": "is_active AND consecutive_failures < %(regen)s",
    "failing": "consecutive_failures >= %(regen)s",
    "nodata": "is_active AND total_runs > 0 AND success_rate = 0",
}


# ---------------------------------------------------------------------------
# Source list
# ---------------------------------------------------------------------------

@dataclass
class SourceList:
    sources: list[ScrapeSource]
    counts: dict[str, int]
    has_more: bool


def list_sources_filtered(
    conn: psycopg.Connection,
    tab: str = "all",
    limit: int = 50,
) -> SourceList:
    if tab not in _TAB_FILTERS:
        raise ValueError(f"unknown tab {tab!r}; expected one of {list(SOURCE_TABS)}")
    params = {"regen": REGENERATION_AFTER_FAILURES, "limit": limit + 1}
    rows = conn.execute(
        f"""
        SELECT {SOURCE_COLS}
        FROM scrape_source
        WHERE {_TAB_FILTERS[tab]}
        ORDER BY name
        LIMIT %(limit)s
        """,
        params,
    ).fetchall()
    count_row = conn.execute(
        f"""
        SELECT
            count(*),
            count(*) FILTER (WHERE {_TAB_FILTERS['active']}),
            count(*) FILTER (WHERE {_TAB_FILTERS['failing']}),
            count(*) FILTER (WHERE {_TAB_FILTERS['nodata']})
        FROM scrape_source
        """,
        params,
    ).fetchone()
    return SourceList(
        sources=[row_to_source(r) for r in rows[:limit]],
        counts=dict(zip(SOURCE_TABS, count_row)),
        has_more=len(rows) > limit,
    )


# ---------------------------------------------------------------------------
# Health detail
# ---------------------------------------------------------------------------

@dataclass
class SourceHealthDetail:
    source: ScrapeSource
    total_jobs: int
    completed_jobs: int
    failed_jobs: int
    avg_sessions_found: float | None
    recent_success_rate: float | None
    hours_since_last_success: float | None
    recent_alerts: list[Alert] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source.id,
            "name": self.source.name,
            "url": self.source.url,
            "is_active": self.source.is_active,
            "data_quality_score": self.source.data_quality_score,
            "quality_tier": self.source.quality_tier,
            "health": self.source.health.to_dict(),
            "total_jobs": self.total_jobs,
            "completed_jobs": self.completed_jobs,
            "failed_jobs": self.failed_jobs,
            "avg_sessions_found": self.avg_sessions_found,
            "recent_success_rate": self.recent_success_rate,
            "hours_since_last_success": self.hours_since_last_success,
            "recent_alerts": [a.to_dict() for a in self.recent_alerts],
        }


def get_source_health_detail(
    conn: psycopg.Connection,
    source_id: str,
    now: datetime,
) -> SourceHealthDetail | None:
    source = get_source(conn, source_id)
    if source is None:
        return None
    total, completed, failed, avg_found = conn.execute(
        """
        SELECT
            count(*),
            count(*) FILTER (WHERE status = 'completed'),
            count(*) FILTER (WHERE status = 'failed'),
            avg(sessions_found) FILTER (WHERE status = 'completed')
        FROM scrape_job
        WHERE source_id = %s
        """,
        (source_id,),
    ).fetchone()
    recent = conn.execute(
        """
        SELECT status FROM scrape_job
        WHERE source_id = %s AND status IN ('completed', 'failed')
        ORDER BY completed_at DESC
        LIMIT 10
        """,
        (source_id,),
    ).fetchall()
    recent_rate = None
    if recent:
        recent_rate = sum(1 for (s,) in recent if s == "completed") / len(recent)
    since = None
    if source.health.last_success_at is not None:
        since = round((now - source.health.last_success_at).total_seconds() / 3600, 1)
    return SourceHealthDetail(
        source=source,
        total_jobs=total,
        completed_jobs=completed,
        failed_jobs=failed,
        avg_sessions_found=round(float(avg_found), 1) if avg_found is not None else None,
        recent_success_rate=recent_rate,
        hours_since_last_success=since,
        recent_alerts=recent_alerts_for_source(conn, source_id, limit=5),
    )


# ---------------------------------------------------------------------------
# Job breakdown
# ---------------------------------------------------------------------------

@dataclass
class SessionBreakdown:
    name: str | None
    completeness_score: int
    missing_fields: list[str]
    errors: list[dict[str, Any]]
    would_quarantine: bool


@dataclass
class JobBreakdown:
    job_id: str
    sessions: list[SessionBreakdown]
    total: int = 0
    complete: int = 0
    would_quarantine: int = 0
    with_errors: int = 0
    average_score: float = 0.0


def get_job_session_breakdown(
    conn: psycopg.Connection,
    job_id: str,
    max_session_days: int = 21,
    review_min_score: int = REVIEW_MIN_SCORE,
) -> JobBreakdown | None:
    """Re-validate each raw session of a job, as scraped."""
    raw = get_raw_data_for_job(conn, job_id)
    if raw is None:
        return None
    result = ScrapeResult.from_dict(raw.payload)
    breakdown = JobBreakdown(job_id=job_id, sessions=[])
    for session in result.sessions:
        v = validate_session(session, max_session_days)
        breakdown.sessions.append(SessionBreakdown(
            name=session.name,
            completeness_score=v.completeness_score,
            missing_fields=v.missing_fields,
            errors=v.errors_as_dicts(),
            would_quarantine=v.completeness_score < review_min_score,
        ))
    scores = [s.completeness_score for s in breakdown.sessions]
    breakdown.total = len(scores)
    breakdown.complete = sum(1 for s in breakdown.sessions if not s.missing_fields)
    breakdown.would_quarantine = sum(1 for s in breakdown.sessions if s.would_quarantine)
    breakdown.with_errors = sum(1 for s in breakdown.sessions if s.errors)
    breakdown.average_score = round(sum(scores) / len(scores), 1) if scores else 0.0
    return breakdown


# ---------------------------------------------------------------------------
# Pending review queue
# ---------------------------------------------------------------------------

@dataclass
class PendingSession:
    id: str
    job_id: str | None
    source_id: str
    partial_data: dict[str, Any]
    validation_errors: list[dict[str, Any]]
    completeness_score: int
    status: str
    reviewed_by: str | None
    reviewed_at: datetime | None
    created_at: datetime


def get_pending_sessions(
    conn: psycopg.Connection,
    source_id: str | None = None,
    status: str | None = "pending_review",
    limit: int = 100,
) -> list[PendingSession]:
    if status is not None and status not in PENDING_STATUSES:
        raise ValueError(f"unknown pending status {status!r}")
    rows = conn.execute(
        """
        SELECT id, job_id, source_id, partial_data, validation_errors,
               completeness_score, status, reviewed_by, reviewed_at, created_at
        FROM pending_session
        WHERE (%s::uuid IS NULL OR source_id = %s::uuid)
          AND (%s::text IS NULL OR status = %s::text)
        ORDER BY created_at DESC
        LIMIT %s
        """,
        (source_id, source_id, status, status, limit),
    ).fetchall()
    return [
        PendingSession(
            id=str(r[0]),
            job_id=str(r[1]) if r[1] is not None else None,
            source_id=str(r[2]),
            partial_data=r[3] or {},
            validation_errors=r[4] or [],
            completeness_score=r[5],
            status=r[6],
            reviewed_by=r[7],
            reviewed_at=r[8],
            created_at=r[9],
        )
        for r in rows
    ]


def update_pending_session_status(
    conn: psycopg.Connection,
    pending_id: str,
    status: str,
    reviewed_by: str,
    now: datetime,
) -> None:
    if status not in PENDING_STATUSES:
        raise ValueError(f"unknown pending status {status!r}")
    cur = conn.execute(
        """
        UPDATE pending_session
        SET status = %s, reviewed_by = %s, reviewed_at = %s
        WHERE id = %s
        """,
        (status, reviewed_by, now, pending_id),
    )
    if cur.rowcount == 0:
        raise LookupError(f"pending session {pending_id} not found")


# ---------------------------------------------------------------------------
# Operator actions
# ---------------------------------------------------------------------------

def request_recrawl(conn: psycopg.Connection, source_id: str, now: datetime) -> None:
    """Make the source due on the next scheduled sweep."""
    cur = conn.execute(
        "UPDATE scrape_source SET next_scheduled_scrape = %s WHERE id = %s",
        (now, source_id),
    )
    if cur.rowcount == 0:
        raise LookupError(f"scrape source {source_id} not found")
    log.info("recrawl requested for source %s", source_id)


def set_source_active(
    conn: psycopg.Connection,
    source_id: str,
    is_active: bool,
    now: datetime,
    changed_by: str = "admin",
) -> str | None:
    """Toggle a source. Disabling raises an info alert; returns its id."""
    source = get_source(conn, source_id, for_update=True)
    if source is None:
        raise LookupError(f"scrape source {source_id} not found")
    if source.is_active == is_active:
        return None
    conn.execute(
        "UPDATE scrape_source SET is_active = %s WHERE id = %s",
        (is_active, source_id),
    )
    if is_active:
        log.info("source %s re-enabled by %s", source_id, changed_by)
        return None
    return create_alert(
        conn, source_id, "scraper_disabled",
        f'Scraper "{source.name}" was manually disabled by {changed_by}.',
        "info", now,
    )
