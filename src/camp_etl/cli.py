"""camp_etl.cli

Unified CLI entrypoint for the camp scrape pipeline.

Modes (--mode):
  import_job          import one job's raw scrape payload
  import_source       import the latest completed job of a source
  run_scheduled       fail stuck jobs, then scrape and import due sources
  regeneration_sweep  open regeneration requests for flagged sources
  cleanup             fail stuck jobs and prune old jobs and raw data
  backfill_locations  geocode stored locations missing coordinates
  source_report       source list by tab, or one source's health detail
  pending_review      list the quarantine queue or set a record's status
  reset_health        zero a source's health statistics
  recrawl             make a source due on the next sweep

Usage:
    camp-etl --mode import_job --db-dsn "$DB_DSN" --job-id <uuid>
    camp-etl --mode run_scheduled --db-dsn "$DB_DSN" --results-dir artifacts/scrapes
    camp-etl --mode source_report --db-dsn "$DB_DSN" --tab failing
"""

from __future__ import annotations

import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import click
import psycopg

from camp_etl.config import (
    ConfigValidationError,
    PipelineConfig,
    load_pipeline_config,
    load_regional_profiles,
)
from camp_etl.geocoding import (
    API_KEY_ENV,
    GeocodePool,
    OpenCageGeocoder,
    RetryPolicy,
    backfill_location_coordinates,
)
from camp_etl.shared import build_counters_report, write_run_report

log = logging.getLogger(__name__)

MODES = [
    "import_job",
    "import_source",
    "run_scheduled",
    "regeneration_sweep",
    "cleanup",
    "backfill_locations",
    "source_report",
    "pending_review",
    "reset_health",
    "recrawl",
]

# A mode action returns (counters for the report, failed).
ModeAction = Callable[[psycopg.Connection], "tuple[dict[str, Any], bool]"]


def _require(value: Any, flag: str, mode: str, run_id: str) -> None:
    if not value:
        click.echo(f"[{run_id}] ERROR: {flag} is required for --mode {mode}", err=True)
        sys.exit(1)


def _run_in_transaction(
    db_dsn: str,
    run_id: str,
    dry_run: bool,
    action: ModeAction,
) -> tuple[dict[str, Any], bool]:
    """Run one mode on a fresh connection; commit unless dry-run or DB errors."""
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        counters, failed = action(conn)
        db_errors = counters.get("db_errors", 0)
        if dry_run or db_errors:
            conn.rollback()
            if dry_run:
                click.echo(f"[{run_id}] DRY RUN: rolled back.")
            else:
                click.echo(f"[{run_id}] {db_errors} DB errors: rolled back.", err=True)
                failed = True
        else:
            conn.commit()
            click.echo(f"[{run_id}] Committed.")
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
    return counters, failed


def _geocode_pool(config: PipelineConfig) -> GeocodePool:
    return GeocodePool(
        OpenCageGeocoder(),
        max_workers=config.geocode_max_workers,
        retry=RetryPolicy(
            max_attempts=config.geocode_max_attempts,
            base_delay=config.geocode_backoff_seconds,
        ),
    )


def _geocoder(config: PipelineConfig) -> GeocodePool | None:
    if not os.environ.get(API_KEY_ENV):
        log.warning("%s not set; new locations will not be geocoded", API_KEY_ENV)
        return None
    return _geocode_pool(config)


@click.command()
@click.option("--mode", required=True, type=click.Choice(MODES), help="Operation to run")
@click.option("--db-dsn", required=True, help="PostgreSQL DSN")
@click.option("--config", "config_path", default=None, type=click.Path(), help="Pipeline YAML (default: config/pipeline.yml)")
@click.option("--regions-dir", default=None, type=click.Path(), help="Directory of regional profile YAMLs")
@click.option("--job-id", default=None, help="[import_job] Scrape job id")
@click.option("--source-id", default=None, help="[import_source|source_report|pending_review|reset_health|recrawl] Scrape source id")
@click.option("--results-dir", default=None, type=click.Path(), help="[run_scheduled] Directory of captured scrape results")
@click.option("--tab", default="all", show_default=True, type=click.Choice(["all", "active", "failing", "nodata"]), help="[source_report] Source list tab")
@click.option("--limit", default=100, show_default=True, type=int, help="[backfill_locations|source_report|pending_review] Max rows")
@click.option("--pending-id", default=None, help="[pending_review] Pending session to update")
@click.option("--pending-status", default=None, type=click.Choice(["pending_review", "manually_fixed", "imported", "discarded"]), help="[pending_review] New status for --pending-id")
@click.option("--reviewed-by", default="operator", show_default=True, help="[pending_review] Reviewer recorded on the update")
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--log-level", default="INFO", show_default=True, type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]))
def main(
    mode: str,
    db_dsn: str,
    config_path: str | None,
    regions_dir: str | None,
    job_id: str | None,
    source_id: str | None,
    results_dir: str | None,
    tab: str,
    limit: int,
    pending_id: str | None,
    pending_status: str | None,
    reviewed_by: str,
    dry_run: bool,
    run_id: str | None,
    log_level: str,
) -> None:
    """Camp scrape pipeline CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()
    now = datetime.now(timezone.utc)
    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    try:
        config = load_pipeline_config(Path(config_path) if config_path else None)
        profiles = load_regional_profiles(Path(regions_dir) if regions_dir else None)
    except (ConfigValidationError, OSError) as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)

    parameters: dict[str, Any] = {"config_version": config.version}

    if mode == "run_scheduled":
        from camp_etl.scheduler import FileScrapeRunner, run_scheduled_sweep

        _require(results_dir, "--results-dir", mode, run_id)
        if dry_run:
            click.echo(f"[{run_id}] ERROR: run_scheduled commits per source; --dry-run is not supported", err=True)
            sys.exit(1)
        parameters["results_dir"] = results_dir
        sweep = run_scheduled_sweep(
            db_dsn, FileScrapeRunner(Path(results_dir)), config, profiles, _geocoder(config), now,
        )
        counters, failed = sweep.to_dict(), sweep.db_errors > 0
    else:
        action = _build_action(
            mode, run_id, config, profiles, now,
            job_id=job_id, source_id=source_id, tab=tab, limit=limit,
            pending_id=pending_id, pending_status=pending_status,
            reviewed_by=reviewed_by,
        )
        parameters.update({k: v for k, v in (("job_id", job_id), ("source_id", source_id)) if v})
        counters, failed = _run_in_transaction(db_dsn, run_id, dry_run, action)

    click.echo(build_counters_report(f"{mode} report", counters, dry_run=dry_run))
    report_path = write_run_report(run_id, started_at, mode, dry_run, parameters, counters)
    click.echo(f"[{run_id}] Run report: {report_path}")
    if failed:
        sys.exit(1)


def _build_action(
    mode: str,
    run_id: str,
    config: PipelineConfig,
    profiles: dict,
    now: datetime,
    *,
    job_id: str | None,
    source_id: str | None,
    tab: str,
    limit: int,
    pending_id: str | None,
    pending_status: str | None,
    reviewed_by: str,
) -> ModeAction:
    if mode == "import_job":
        from camp_etl.import_pipeline import import_job

        _require(job_id, "--job-id", mode, run_id)

        def action(conn):
            result = import_job(conn, job_id, config, profiles, _geocoder(config), now)
            return result.to_dict(), not result.success
        return action

    if mode == "import_source":
        from camp_etl.import_pipeline import import_latest_for_source

        _require(source_id, "--source-id", mode, run_id)

        def action(conn):
            result = import_latest_for_source(conn, source_id, config, profiles, _geocoder(config), now)
            return result.to_dict(), not result.success
        return action

    if mode == "regeneration_sweep":
        from camp_etl.health import run_regeneration_sweep

        def action(conn):
            return run_regeneration_sweep(conn).to_dict(), False
        return action

    if mode == "cleanup":
        from camp_etl.jobs import cleanup_old_scrape_data
        from camp_etl.scheduler import fail_stuck_jobs

        def action(conn):
            stuck = fail_stuck_jobs(conn, now, config)
            ctrs = cleanup_old_scrape_data(
                conn, now, config.retention_days, config.cleanup_batch_size,
            )
            ctrs.stuck_jobs_failed = stuck
            return ctrs.to_dict(), False
        return action

    if mode == "backfill_locations":
        def action(conn):
            ctrs = backfill_location_coordinates(conn, _geocode_pool(config), limit)
            return ctrs.to_dict(), False
        return action

    if mode == "source_report":
        from camp_etl.admin import get_source_health_detail, list_sources_filtered

        def action(conn):
            if source_id:
                detail = get_source_health_detail(conn, source_id, now)
                if detail is None:
                    return {"errors": [f"source {source_id} not found"]}, True
                return detail.to_dict(), False
            listing = list_sources_filtered(conn, tab, limit)
            return {
                "tab": tab,
                **{f"count_{k}": v for k, v in listing.counts.items()},
                "has_more": listing.has_more,
                "sources": [
                    f"{s.id} {s.name} active={s.is_active} "
                    f"failures={s.health.consecutive_failures} "
                    f"quality={s.data_quality_score} ({s.quality_tier})"
                    for s in listing.sources
                ],
            }, False
        return action

    if mode == "pending_review":
        from camp_etl.admin import get_pending_sessions, update_pending_session_status

        def action(conn):
            if pending_id:
                if not pending_status:
                    return {"errors": ["--pending-status is required with --pending-id"]}, True
                update_pending_session_status(conn, pending_id, pending_status, reviewed_by, now)
                return {"pending_id": pending_id, "status": pending_status}, False
            pending = get_pending_sessions(conn, source_id, "pending_review", limit)
            return {
                "pending_sessions": len(pending),
                "queue": [
                    f"{p.id} score={p.completeness_score} "
                    f"name={p.partial_data.get('name')!r} errors={len(p.validation_errors)}"
                    for p in pending
                ],
            }, False
        return action

    if mode == "reset_health":
        from camp_etl.health import reset_scraper_health

        _require(source_id, "--source-id", mode, run_id)

        def action(conn):
            reset_scraper_health(conn, source_id)
            return {"source_id": source_id, "health_reset": True}, False
        return action

    if mode == "recrawl":
        from camp_etl.admin import request_recrawl

        _require(source_id, "--source-id", mode, run_id)

        def action(conn):
            request_recrawl(conn, source_id, now)
            return {"source_id": source_id, "next_scheduled_scrape": now.isoformat()}, False
        return action

    raise click.UsageError(f"unsupported mode {mode!r}")


if __name__ == "__main__":
    main()
