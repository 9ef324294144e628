"""camp_etl.scheduler

Scheduled scrape sweep: fail stuck jobs, pick due sources, and run one
scrape job per source through a bounded worker pool.

Each source job uses its own connection. A job commits in two steps: the
pending -> running transition first, then the scrape outcome, raw payload,
import and health update together. If the import raises, that second
transaction is rolled back and the attempt is recorded as a failure.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

import psycopg

from camp_etl.config import PipelineConfig, RegionalProfile
from camp_etl.geocoding import Geocoder, RetryPolicy, as_pool
from camp_etl.health import record_scrape_outcome, select_due_sources
from camp_etl.import_pipeline import ImportResult, import_job
from camp_etl.jobs import (
    JobStateError,
    cleanup_stuck_jobs,
    complete_scrape_job,
    create_scrape_job,
    fail_scrape_job,
    start_scrape_job,
    store_raw_data,
)
from camp_etl.models import ScrapeResult
from camp_etl.sources import ScrapeSource

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Runners
# ---------------------------------------------------------------------------

class ScrapeRunner(Protocol):
    def run(self, source: ScrapeSource) -> dict[str, Any]:
        """Scrape one source and return the raw result object."""
        ...


class FileScrapeRunner:
    """Serve pre-captured scrape results from a directory.

    Looks for <source_id>.json, then <domain>.json.
    """

    def __init__(self, results_dir: Path) -> None:
        self._dir = Path(results_dir)

    def _path_for(self, source: ScrapeSource) -> Path:
        candidates = [self._dir / f"{source.id}.json"]
        if source.domain:
            candidates.append(self._dir / f"{source.domain}.json")
        for path in candidates:
            if path.exists():
                return path
        raise FileNotFoundError(
            f"no scrape result for source {source.id} in {self._dir}"
        )

    def run(self, source: ScrapeSource) -> dict[str, Any]:
        return json.loads(self._path_for(source).read_text(encoding="utf-8"))


# ---------------------------------------------------------------------------
# One source
# ---------------------------------------------------------------------------

@dataclass
class SourceJobOutcome:
    source_id: str
    job_id: str | None = None
    success: bool = False
    skipped: bool = False
    error: str | None = None
    import_result: ImportResult | None = None


def _record_failure(
    conn: psycopg.Connection,
    job_id: str,
    source_id: str,
    error: str,
    now: datetime,
    config: PipelineConfig,
) -> None:
    # The stuck-job sweep may already have failed the job; health still
    # records this attempt.
    try:
        fail_scrape_job(conn, job_id, error, now)
    except JobStateError as exc:
        log.warning("job %s not failed: %s", job_id, exc)
    record_scrape_outcome(
        conn, source_id, False, now, error,
        config.regeneration_after_failures, config.disable_after_failures,
    )
    conn.commit()


def run_source_job(
    dsn: str,
    source: ScrapeSource,
    runner: ScrapeRunner,
    config: PipelineConfig,
    profiles: dict[str, RegionalProfile],
    geocoder: Geocoder | None = None,
    now: datetime | None = None,
    triggered_by: str = "scheduler",
) -> SourceJobOutcome:
    """Scrape, store, import and record health for a single source."""
    now = now or datetime.now(timezone.utc)
    outcome = SourceJobOutcome(source_id=source.id)
    conn = psycopg.connect(dsn, autocommit=False)
    try:
        try:
            job_id = create_scrape_job(conn, source.id, triggered_by, now)
        except JobStateError as exc:
            conn.rollback()
            outcome.skipped = True
            outcome.error = str(exc)
            log.info("skipping source %s: %s", source.id, exc)
            return outcome
        start_scrape_job(conn, job_id, now)
        conn.commit()
        outcome.job_id = job_id

        try:
            payload = runner.run(source)
        except Exception as exc:
            log.warning("scrape of source %s raised: %s", source.id, exc)
            outcome.error = f"Scraper error: {exc}"
            _record_failure(conn, job_id, source.id, outcome.error, now, config)
            return outcome

        result = ScrapeResult.from_dict(payload)
        if not result.success:
            outcome.error = result.error or "Scraper reported failure"
            _record_failure(conn, job_id, source.id, outcome.error, now, config)
            return outcome

        try:
            store_raw_data(conn, job_id, source.id, payload)
            complete_scrape_job(conn, job_id, len(result.sessions), now)
            outcome.import_result = import_job(conn, job_id, config, profiles, geocoder, now)
            record_scrape_outcome(
                conn, source.id, True, now, None,
                config.regeneration_after_failures, config.disable_after_failures,
            )
            conn.commit()
        except Exception as exc:
            conn.rollback()
            log.exception("import of job %s failed", job_id)
            outcome.import_result = None
            outcome.error = f"Import error: {exc}"
            _record_failure(conn, job_id, source.id, outcome.error, now, config)
            return outcome

        outcome.success = True
        return outcome
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Sweep
# ---------------------------------------------------------------------------

@dataclass
class SweepCounters:
    stuck_jobs_failed: int = 0
    sources_due: int = 0
    jobs_succeeded: int = 0
    jobs_failed: int = 0
    jobs_skipped: int = 0
    import_failures: int = 0
    sessions_created: int = 0
    sessions_quarantined: int = 0
    db_errors: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stuck_jobs_failed": self.stuck_jobs_failed,
            "sources_due": self.sources_due,
            "jobs_succeeded": self.jobs_succeeded,
            "jobs_failed": self.jobs_failed,
            "jobs_skipped": self.jobs_skipped,
            "import_failures": self.import_failures,
            "sessions_created": self.sessions_created,
            "sessions_quarantined": self.sessions_quarantined,
            "db_errors": self.db_errors,
            "warnings": self.warnings[:50],
        }


def fail_stuck_jobs(
    conn: psycopg.Connection,
    now: datetime,
    config: PipelineConfig,
) -> int:
    stuck = cleanup_stuck_jobs(conn, now, config.stuck_job_minutes)
    for _job_id, source_id in stuck:
        record_scrape_outcome(
            conn, source_id, False, now, "Job timed out while running",
            config.regeneration_after_failures, config.disable_after_failures,
        )
    return len(stuck)


def run_scheduled_sweep(
    dsn: str,
    runner: ScrapeRunner,
    config: PipelineConfig,
    profiles: dict[str, RegionalProfile],
    geocoder: Geocoder | None = None,
    now: datetime | None = None,
) -> SweepCounters:
    now = now or datetime.now(timezone.utc)
    ctrs = SweepCounters()
    if geocoder is not None:
        # Shared by every source job; the concurrency cap is global.
        geocoder = as_pool(
            geocoder,
            config.geocode_max_workers,
            RetryPolicy(config.geocode_max_attempts, config.geocode_backoff_seconds),
        )

    conn = psycopg.connect(dsn, autocommit=False)
    try:
        ctrs.stuck_jobs_failed = fail_stuck_jobs(conn, now, config)
        due = select_due_sources(conn, now, config.scheduler_batch_size)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

    ctrs.sources_due = len(due)
    if not due:
        log.info("no sources due at %s", now.isoformat())
        return ctrs

    with ThreadPoolExecutor(max_workers=config.scheduler_max_workers) as executor:
        futures = {
            executor.submit(
                run_source_job, dsn, source, runner, config, profiles, geocoder, now,
            ): source
            for source in due
        }
        for future in as_completed(futures):
            source = futures[future]
            try:
                outcome = future.result()
            except psycopg.Error as exc:
                ctrs.db_errors += 1
                ctrs.warnings.append(f"source {source.id}: {exc}")
                log.error("source %s job aborted on DB error: %s", source.id, exc)
                continue
            except Exception as exc:
                ctrs.jobs_failed += 1
                ctrs.warnings.append(f"source {source.id}: {exc}")
                log.exception("source %s job aborted", source.id)
                continue
            if outcome.skipped:
                ctrs.jobs_skipped += 1
                ctrs.warnings.append(f"source {source.id}: {outcome.error}")
            elif not outcome.success:
                ctrs.jobs_failed += 1
                ctrs.warnings.append(f"source {source.id}: {outcome.error}")
            else:
                ctrs.jobs_succeeded += 1
                result = outcome.import_result
                if result is not None and not result.success:
                    ctrs.import_failures += 1
                    ctrs.warnings.extend(f"source {source.id}: {e}" for e in result.errors)
                elif result is not None:
                    ctrs.sessions_created += result.counters.sessions_created
                    ctrs.sessions_quarantined += result.counters.sessions_quarantined
    return ctrs
