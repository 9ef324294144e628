"""camp_etl.health

Source health tracking, the circuit breaker, and scheduling sweeps.

Every scrape attempt ends in exactly one call to record_scrape_outcome(),
which locks the source row, computes the new statistics with the pure
apply_scrape_outcome(), and writes them back in a single UPDATE. That
keeps success_rate == successes / total_runs even when several sources are
processed concurrently.

Policy:
  - success resets consecutive_failures and clears last_error and
    needs_regeneration;
  - failure sets needs_regeneration once consecutive_failures reaches 3;
  - the source is deactivated with one critical alert at 10;
  - the next scrape is always now + scrape_frequency_hours, whatever the
    outcome.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import psycopg

from camp_etl.alerts import create_alert
from camp_etl.sources import SOURCE_COLS, ScrapeSource, ScraperHealth, get_source, row_to_source

log = logging.getLogger(__name__)

REGENERATION_AFTER_FAILURES = 3
DISABLE_AFTER_FAILURES = 10
OPEN_REQUEST_STATUSES = ("pending", "in_progress", "testing")


# ---------------------------------------------------------------------------
# Pure health arithmetic
# ---------------------------------------------------------------------------

@dataclass
class HealthTransition:
    health: ScraperHealth
    regeneration_flagged: bool = False
    should_disable: bool = False


def apply_scrape_outcome(
    health: ScraperHealth,
    success: bool,
    now: datetime,
    error: str | None = None,
    regeneration_after: int = REGENERATION_AFTER_FAILURES,
    disable_after: int = DISABLE_AFTER_FAILURES,
) -> HealthTransition:
    """New health after one attempt. regeneration_flagged is True only on the
    attempt that first reaches the regeneration threshold."""
    prior_successes = round(health.success_rate * health.total_runs)
    total = health.total_runs + 1
    if success:
        new = dataclasses.replace(
            health,
            total_runs=total,
            success_rate=(prior_successes + 1) / total,
            consecutive_failures=0,
            last_success_at=now,
            last_error=None,
            needs_regeneration=False,
        )
        return HealthTransition(new)

    failures = health.consecutive_failures + 1
    new = dataclasses.replace(
        health,
        total_runs=total,
        success_rate=prior_successes / total,
        consecutive_failures=failures,
        last_failure_at=now,
        last_error=error,
        needs_regeneration=health.needs_regeneration or failures >= regeneration_after,
    )
    return HealthTransition(
        new,
        regeneration_flagged=failures == regeneration_after,
        should_disable=failures >= disable_after,
    )


def schedule_next_scrape(now: datetime, frequency_hours: int) -> datetime:
    return now + timedelta(hours=frequency_hours)


# ---------------------------------------------------------------------------
# Atomic update
# ---------------------------------------------------------------------------

@dataclass
class HealthUpdate:
    source_id: str
    health: ScraperHealth
    next_scheduled_scrape: datetime
    deactivated: bool = False
    alert_ids: list[str] = field(default_factory=list)


def record_scrape_outcome(
    conn: psycopg.Connection,
    source_id: str,
    success: bool,
    now: datetime,
    error: str | None = None,
    regeneration_after: int = REGENERATION_AFTER_FAILURES,
    disable_after: int = DISABLE_AFTER_FAILURES,
) -> HealthUpdate:
    """Apply one attempt's outcome to the source under a row lock."""
    with conn.transaction():
        source = get_source(conn, source_id, for_update=True)
        if source is None:
            raise LookupError(f"scrape source {source_id} not found")
        transition = apply_scrape_outcome(
            source.health, success, now, error, regeneration_after, disable_after,
        )
        h = transition.health
        deactivate = transition.should_disable and source.is_active
        next_run = schedule_next_scrape(now, source.scrape_frequency_hours)
        conn.execute(
            """
            UPDATE scrape_source
            SET last_success_at       = %s,
                last_failure_at       = %s,
                consecutive_failures  = %s,
                total_runs            = %s,
                success_rate          = %s,
                last_error            = %s,
                needs_regeneration    = %s,
                is_active             = is_active AND NOT %s,
                last_scraped_at       = %s,
                next_scheduled_scrape = %s
            WHERE id = %s
            """,
            (
                h.last_success_at, h.last_failure_at, h.consecutive_failures,
                h.total_runs, h.success_rate, h.last_error, h.needs_regeneration,
                deactivate, now, next_run, source_id,
            ),
        )
        update = HealthUpdate(source_id, h, next_run, deactivated=deactivate)
        if transition.regeneration_flagged:
            update.alert_ids.append(create_alert(
                conn, source_id, "scraper_needs_regeneration",
                f'Scraper "{source.name}" has failed {h.consecutive_failures} '
                f"times in a row and is flagged for regeneration. Last error: {error}",
                "warning", now,
            ))
        if deactivate:
            log.warning(
                "circuit breaker tripped for source %s after %d consecutive failures",
                source_id, h.consecutive_failures,
            )
            update.alert_ids.append(create_alert(
                conn, source_id, "scraper_disabled",
                f'Scraper "{source.name}" has been automatically disabled after '
                f"{h.consecutive_failures} consecutive failures.",
                "critical", now,
            ))
    return update


def reset_scraper_health(conn: psycopg.Connection, source_id: str) -> None:
    """Zero the health statistics (admin action)."""
    cur = conn.execute(
        """
        UPDATE scrape_source
        SET last_success_at      = NULL,
            last_failure_at      = NULL,
            consecutive_failures = 0,
            total_runs           = 0,
            success_rate         = 0,
            last_error           = NULL,
            needs_regeneration   = false
        WHERE id = %s
        """,
        (source_id,),
    )
    if cur.rowcount == 0:
        raise LookupError(f"scrape source {source_id} not found")


# ---------------------------------------------------------------------------
# Sweeps
# ---------------------------------------------------------------------------

def select_due_sources(
    conn: psycopg.Connection,
    now: datetime,
    limit: int = 5,
) -> list[ScrapeSource]:
    """Active sources whose next scrape has elapsed, never-scheduled first."""
    rows = conn.execute(
        f"""
        SELECT {SOURCE_COLS}
        FROM scrape_source
        WHERE is_active
          AND (next_scheduled_scrape IS NULL OR next_scheduled_scrape <= %s)
        ORDER BY next_scheduled_scrape ASC NULLS FIRST, created_at
        LIMIT %s
        """,
        (now, limit),
    ).fetchall()
    return [row_to_source(r) for r in rows]


@dataclass
class RegenerationCounters:
    sources_flagged: int = 0
    requests_created: int = 0
    requests_skipped_existing: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sources_flagged": self.sources_flagged,
            "requests_created": self.requests_created,
            "requests_skipped_existing": self.requests_skipped_existing,
            "warnings": self.warnings[:50],
        }


def create_regeneration_request(
    conn: psycopg.Connection,
    source: ScrapeSource,
) -> str | None:
    """Open a regeneration request unless one is already open for the source or URL."""
    row = conn.execute(
        """
        SELECT id FROM scraper_development_request
        WHERE (source_id = %s OR source_url = %s)
          AND status = ANY(%s)
        LIMIT 1
        """,
        (source.id, source.url, list(OPEN_REQUEST_STATUSES)),
    ).fetchone()
    if row:
        return None
    notes = (
        f"Auto-regeneration: {source.health.consecutive_failures} consecutive failures. "
        f"Last error: {source.health.last_error or 'unknown'}"
    )
    row = conn.execute(
        """
        INSERT INTO scraper_development_request
            (source_id, source_url, source_name, city_slug, requested_by, status, notes)
        VALUES (%s, %s, %s, %s, 'auto-regeneration', 'pending', %s)
        RETURNING id
        """,
        (source.id, source.url, source.name, source.city_slug, notes),
    ).fetchone()
    return str(row[0])


def run_regeneration_sweep(conn: psycopg.Connection) -> RegenerationCounters:
    ctrs = RegenerationCounters()
    rows = conn.execute(
        f"""
        SELECT {SOURCE_COLS}
        FROM scrape_source
        WHERE is_active AND needs_regeneration
        ORDER BY created_at
        """
    ).fetchall()
    for source in (row_to_source(r) for r in rows):
        ctrs.sources_flagged += 1
        if create_regeneration_request(conn, source) is None:
            ctrs.requests_skipped_existing += 1
        else:
            ctrs.requests_created += 1
            log.info("opened regeneration request for source %s", source.id)
    return ctrs
