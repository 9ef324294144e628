"""camp_etl.jobs

Scrape job lifecycle, raw payload storage, and retention cleanup.

Job states: pending -> running -> completed | failed. A pending job may
also fail directly. Raw payloads are stored verbatim and marked processed
exactly once, with either a resulting session id or an error.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import psycopg

log = logging.getLogger(__name__)

JOB_STATUSES = ("pending", "running", "completed", "failed")


class JobStateError(ValueError):
    """Raised on an invalid job lifecycle transition."""


@dataclass
class ScrapeJob:
    id: str
    source_id: str
    status: str
    sessions_found: int | None
    error_message: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


_JOB_COLS = (
    "id, source_id, status, sessions_found, error_message, "
    "created_at, started_at, completed_at"
)


def _row_to_job(row: tuple) -> ScrapeJob:
    return ScrapeJob(
        id=str(row[0]),
        source_id=str(row[1]),
        status=row[2],
        sessions_found=row[3],
        error_message=row[4],
        created_at=row[5],
        started_at=row[6],
        completed_at=row[7],
    )


def get_job(conn: psycopg.Connection, job_id: str) -> ScrapeJob | None:
    row = conn.execute(
        f"SELECT {_JOB_COLS} FROM scrape_job WHERE id = %s", (job_id,)
    ).fetchone()
    return _row_to_job(row) if row else None


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

def create_scrape_job(
    conn: psycopg.Connection,
    source_id: str,
    triggered_by: str = "scheduler",
    now: datetime | None = None,
) -> str:
    """Insert a pending job; refuses while another job for the source is open.

    Holds the source row lock until the caller commits, so a second sweep
    waits here and then sees the first job. At most one open job per source
    is also enforced by uq_scrape_job_open_source.
    """
    locked = conn.execute(
        "SELECT id FROM scrape_source WHERE id = %s FOR UPDATE", (source_id,)
    ).fetchone()
    if locked is None:
        raise JobStateError(f"source {source_id} not found")
    row = conn.execute(
        """
        SELECT id FROM scrape_job
        WHERE source_id = %s AND status IN ('pending', 'running')
        LIMIT 1
        """,
        (source_id,),
    ).fetchone()
    if row:
        raise JobStateError(f"source {source_id} already has open job {row[0]}")
    try:
        with conn.transaction():
            row = conn.execute(
                """
                INSERT INTO scrape_job (source_id, status, triggered_by, created_at)
                VALUES (%s, 'pending', %s, COALESCE(%s, now()))
                RETURNING id
                """,
                (source_id, triggered_by, now),
            ).fetchone()
    except psycopg.errors.UniqueViolation as exc:
        raise JobStateError(f"source {source_id} already has an open job") from exc
    return str(row[0])


def _transition(
    conn: psycopg.Connection,
    job_id: str,
    allowed_from: tuple[str, ...],
    sql: str,
    params: tuple,
) -> None:
    job = get_job(conn, job_id)
    if job is None:
        raise JobStateError(f"job {job_id} not found")
    if job.status not in allowed_from:
        raise JobStateError(
            f"job {job_id} is {job.status}; expected one of {list(allowed_from)}"
        )
    conn.execute(sql, params)


def start_scrape_job(conn: psycopg.Connection, job_id: str, now: datetime) -> None:
    _transition(
        conn, job_id, ("pending",),
        "UPDATE scrape_job SET status = 'running', started_at = %s WHERE id = %s",
        (now, job_id),
    )


def complete_scrape_job(
    conn: psycopg.Connection,
    job_id: str,
    sessions_found: int,
    now: datetime,
) -> None:
    _transition(
        conn, job_id, ("running",),
        """
        UPDATE scrape_job
        SET status = 'completed', sessions_found = %s, completed_at = %s
        WHERE id = %s
        """,
        (sessions_found, now, job_id),
    )


def fail_scrape_job(
    conn: psycopg.Connection,
    job_id: str,
    error: str,
    now: datetime,
) -> None:
    _transition(
        conn, job_id, ("pending", "running"),
        """
        UPDATE scrape_job
        SET status = 'failed', error_message = %s, completed_at = %s
        WHERE id = %s
        """,
        (error, now, job_id),
    )


def cleanup_stuck_jobs(
    conn: psycopg.Connection,
    now: datetime,
    timeout_minutes: int = 60,
) -> list[tuple[str, str]]:
    """Fail jobs that have been running longer than the timeout.

    Returns (job_id, source_id) pairs so the caller can record the failures.
    """
    rows = conn.execute(
        """
        UPDATE scrape_job
        SET status = 'failed',
            error_message = 'Job timed out while running',
            completed_at = %s
        WHERE status = 'running' AND started_at < %s
        RETURNING id, source_id
        """,
        (now, now - timedelta(minutes=timeout_minutes)),
    ).fetchall()
    for job_id, source_id in rows:
        log.warning("failed stuck job %s for source %s", job_id, source_id)
    return [(str(r[0]), str(r[1])) for r in rows]


# ---------------------------------------------------------------------------
# Raw data
# ---------------------------------------------------------------------------

def store_raw_data(
    conn: psycopg.Connection,
    job_id: str,
    source_id: str,
    payload: Any,
) -> str:
    row = conn.execute(
        """
        INSERT INTO scrape_raw_data (job_id, source_id, raw_json)
        VALUES (%s, %s, %s::jsonb)
        RETURNING id
        """,
        (job_id, source_id, json.dumps(payload)),
    ).fetchone()
    return str(row[0])


@dataclass
class RawData:
    id: str
    job_id: str
    source_id: str
    payload: Any
    processed_at: datetime | None


def get_raw_data_for_job(conn: psycopg.Connection, job_id: str) -> RawData | None:
    row = conn.execute(
        """
        SELECT id, job_id, source_id, raw_json, processed_at
        FROM scrape_raw_data
        WHERE job_id = %s
        ORDER BY created_at
        LIMIT 1
        """,
        (job_id,),
    ).fetchone()
    if row is None:
        return None
    payload = row[3]
    if isinstance(payload, str):
        payload = json.loads(payload)
    return RawData(str(row[0]), str(row[1]), str(row[2]), payload, row[4])


def mark_raw_data_processed(
    conn: psycopg.Connection,
    raw_data_id: str,
    now: datetime,
    resulting_session_id: str | None = None,
    processing_error: str | None = None,
) -> bool:
    """Mark processed once. Returns False if it was already processed."""
    if (resulting_session_id is None) == (processing_error is None):
        raise ValueError("exactly one of resulting_session_id or processing_error is required")
    cur = conn.execute(
        """
        UPDATE scrape_raw_data
        SET processed_at = %s,
            resulting_session_id = %s,
            processing_error = %s
        WHERE id = %s AND processed_at IS NULL
        """,
        (now, resulting_session_id, processing_error, raw_data_id),
    )
    return cur.rowcount == 1


# ---------------------------------------------------------------------------
# Retention cleanup
# ---------------------------------------------------------------------------

@dataclass
class CleanupCounters:
    jobs_deleted: int = 0
    raw_data_deleted: int = 0
    stuck_jobs_failed: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobs_deleted": self.jobs_deleted,
            "raw_data_deleted": self.raw_data_deleted,
            "stuck_jobs_failed": self.stuck_jobs_failed,
            "warnings": self.warnings[:50],
        }


def cleanup_old_scrape_data(
    conn: psycopg.Connection,
    now: datetime,
    retention_days: int = 30,
    batch_size: int = 50,
) -> CleanupCounters:
    """Delete up to batch_size completed and batch_size failed jobs past retention.

    Raw data rows go first; deleting the job first would orphan them.
    """
    ctrs = CleanupCounters()
    cutoff = now - timedelta(days=retention_days)
    job_ids: list[Any] = []
    for status in ("completed", "failed"):
        rows = conn.execute(
            """
            SELECT id FROM scrape_job
            WHERE status = %s AND completed_at < %s
            ORDER BY completed_at
            LIMIT %s
            """,
            (status, cutoff, batch_size),
        ).fetchall()
        job_ids.extend(r[0] for r in rows)
    if not job_ids:
        return ctrs
    cur = conn.execute(
        "DELETE FROM scrape_raw_data WHERE job_id = ANY(%s)", (job_ids,)
    )
    ctrs.raw_data_deleted = cur.rowcount
    cur = conn.execute("DELETE FROM scrape_job WHERE id = ANY(%s)", (job_ids,))
    ctrs.jobs_deleted = cur.rowcount
    log.info(
        "retention cleanup removed %d jobs and %d raw rows older than %s",
        ctrs.jobs_deleted, ctrs.raw_data_deleted, cutoff.isoformat(),
    )
    return ctrs
