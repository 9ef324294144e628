"""Integration tests for camp_etl.scheduler.

The scheduler opens its own connections from the dsn, so each test commits
its setup rows before calling it.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import psycopg
import pytest

from camp_etl import scheduler
from camp_etl.config import PipelineConfig, load_regional_profiles
from camp_etl.jobs import JobStateError, cleanup_stuck_jobs, create_scrape_job, start_scrape_job
from camp_etl.scheduler import (
    FileScrapeRunner,
    fail_stuck_jobs,
    run_scheduled_sweep,
    run_source_job,
)
from camp_etl.sources import create_source, get_source

NOW = datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc)
CONFIG = PipelineConfig()
PROFILES = load_regional_profiles()

GOOD_RESULT = {
    "success": True,
    "sessions": [{
        "name": "Soccer Skills",
        "dateRaw": "July 7-11, 2025",
        "timeRaw": "9am-12pm",
        "priceRaw": "$175",
        "ageGradeRaw": "Ages 5-9",
        "location": "4000 SE Division St, Portland, OR 97202",
    }],
}


class FakeRunner:
    """Maps source name to a result dict or an exception."""

    def __init__(self, outcomes):
        self.outcomes = outcomes
        self.calls = []

    def run(self, source):
        self.calls.append(source.name)
        outcome = self.outcomes[source.name]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _committed_source(conn, name="Division Soccer", **kwargs):
    sid = create_source(conn, name, f"https://{name.lower().replace(' ', '-')}.example", **kwargs)
    conn.commit()
    return sid


def _job_row(conn, job_id):
    return conn.execute(
        "SELECT status, error_message, sessions_found FROM scrape_job WHERE id = %s", (job_id,)
    ).fetchone()


# ---------------------------------------------------------------------------
# run_source_job
# ---------------------------------------------------------------------------

class TestRunSourceJob:
    def test_success_imports_and_records_health(self, db_conn):
        conn, dsn = db_conn
        sid = _committed_source(conn)
        runner = FakeRunner({"Division Soccer": GOOD_RESULT})

        outcome = run_source_job(dsn, get_source(conn, sid), runner, CONFIG, PROFILES, now=NOW)

        assert outcome.success is True
        assert outcome.import_result.counters.sessions_created == 1
        assert _job_row(conn, outcome.job_id) == ("completed", None, 1)
        source = get_source(conn, sid)
        assert source.health.total_runs == 1
        assert source.health.success_rate == 1.0
        assert source.next_scheduled_scrape == NOW + timedelta(hours=24)
        assert conn.execute("SELECT count(*) FROM session").fetchone()[0] == 1

    def test_runner_exception_is_failure(self, db_conn):
        conn, dsn = db_conn
        sid = _committed_source(conn)
        runner = FakeRunner({"Division Soccer": TimeoutError("page load timed out")})

        outcome = run_source_job(dsn, get_source(conn, sid), runner, CONFIG, PROFILES, now=NOW)

        assert outcome.success is False
        assert outcome.error == "Scraper error: page load timed out"
        status, error, _ = _job_row(conn, outcome.job_id)
        assert (status, error) == ("failed", "Scraper error: page load timed out")
        health = get_source(conn, sid).health
        assert (health.total_runs, health.consecutive_failures) == (1, 1)
        assert health.last_error == "Scraper error: page load timed out"

    def test_reported_failure_uses_result_error(self, db_conn):
        conn, dsn = db_conn
        sid = _committed_source(conn)
        runner = FakeRunner({"Division Soccer": {"success": False, "error": "403 Forbidden"}})
        outcome = run_source_job(dsn, get_source(conn, sid), runner, CONFIG, PROFILES, now=NOW)
        assert outcome.error == "403 Forbidden"
        assert get_source(conn, sid).health.consecutive_failures == 1
        assert conn.execute("SELECT count(*) FROM scrape_raw_data").fetchone()[0] == 0

    def test_open_job_skips_source(self, db_conn):
        conn, dsn = db_conn
        sid = _committed_source(conn)
        job_id = create_scrape_job(conn, sid, "manual", NOW)
        start_scrape_job(conn, job_id, NOW)
        conn.commit()
        runner = FakeRunner({"Division Soccer": GOOD_RESULT})

        outcome = run_source_job(dsn, get_source(conn, sid), runner, CONFIG, PROFILES, now=NOW)

        assert outcome.skipped is True
        assert runner.calls == []
        assert get_source(conn, sid).health.total_runs == 0

    def test_fatal_import_does_not_count_as_failure(self, db_conn):
        conn, dsn = db_conn
        sid = _committed_source(conn, city_slug="atlantis")
        runner = FakeRunner({"Division Soccer": GOOD_RESULT})

        outcome = run_source_job(dsn, get_source(conn, sid), runner, CONFIG, PROFILES, now=NOW)

        assert outcome.success is True
        assert outcome.import_result.success is False
        health = get_source(conn, sid).health
        assert (health.total_runs, health.consecutive_failures) == (1, 0)


class TestFileScrapeRunner:
    def test_by_id_then_domain(self, db_conn, tmp_path):
        conn, _ = db_conn
        by_id = get_source(conn, create_source(conn, "A", "https://a.example/camps"))
        by_domain = get_source(conn, create_source(conn, "B", "https://b.example/camps"))
        (tmp_path / f"{by_id.id}.json").write_text(json.dumps({"success": True, "sessions": []}))
        (tmp_path / "b.example.json").write_text(json.dumps(GOOD_RESULT))
        runner = FileScrapeRunner(tmp_path)
        assert runner.run(by_id)["sessions"] == []
        assert runner.run(by_domain) == GOOD_RESULT

    def test_missing_file(self, db_conn, tmp_path):
        conn, _ = db_conn
        source = get_source(conn, create_source(conn, "C", "https://c.example"))
        with pytest.raises(FileNotFoundError):
            FileScrapeRunner(tmp_path).run(source)


# ---------------------------------------------------------------------------
# Sweep
# ---------------------------------------------------------------------------

class TestFailStuckJobs:
    def test_records_health_failure(self, db_conn):
        conn, _ = db_conn
        sid = create_source(conn, "Stuck", "https://stuck.example")
        job_id = create_scrape_job(conn, sid, "scheduler", NOW)
        start_scrape_job(conn, job_id, NOW - timedelta(hours=2))
        assert fail_stuck_jobs(conn, NOW, CONFIG) == 1
        health = get_source(conn, sid).health
        assert health.last_error == "Job timed out while running"
        assert health.consecutive_failures == 1


class TestRunScheduledSweep:
    def test_runs_due_sources(self, db_conn):
        conn, dsn = db_conn
        good = _committed_source(conn, "Good Camp")
        bad = _committed_source(conn, "Bad Camp")
        _committed_source(conn, "Paused Camp", is_active=False)
        runner = FakeRunner({
            "Good Camp": GOOD_RESULT,
            "Bad Camp": RuntimeError("selector not found"),
        })

        ctrs = run_scheduled_sweep(dsn, runner, CONFIG, PROFILES, now=NOW)

        assert ctrs.sources_due == 2
        assert (ctrs.jobs_succeeded, ctrs.jobs_failed) == (1, 1)
        assert ctrs.sessions_created == 1
        assert sorted(runner.calls) == ["Bad Camp", "Good Camp"]
        assert any("selector not found" in w for w in ctrs.warnings)
        assert get_source(conn, good).health.success_rate == 1.0
        assert get_source(conn, bad).health.consecutive_failures == 1

    def test_not_due_again_until_next_window(self, db_conn):
        conn, dsn = db_conn
        _committed_source(conn, "Good Camp")
        runner = FakeRunner({"Good Camp": GOOD_RESULT})
        run_scheduled_sweep(dsn, runner, CONFIG, PROFILES, now=NOW)
        again = run_scheduled_sweep(dsn, runner, CONFIG, PROFILES, now=NOW + timedelta(hours=1))
        assert again.sources_due == 0
        assert runner.calls == ["Good Camp"]

    def test_stuck_jobs_failed_first(self, db_conn):
        conn, dsn = db_conn
        sid = _committed_source(conn, "Good Camp")
        job_id = create_scrape_job(conn, sid, "scheduler", NOW)
        start_scrape_job(conn, job_id, NOW - timedelta(hours=3))
        conn.commit()
        runner = FakeRunner({"Good Camp": GOOD_RESULT})

        ctrs = run_scheduled_sweep(dsn, runner, CONFIG, PROFILES, now=NOW)

        assert ctrs.stuck_jobs_failed == 1
        # The timeout failure scheduled the next run a day out.
        assert ctrs.sources_due == 0
        assert _job_row(conn, job_id)[0] == "failed"


# ---------------------------------------------------------------------------
# Jobs failed underneath a running scrape
# ---------------------------------------------------------------------------

class TimedOutMidScrapeRunner:
    """Lets the stuck-job cleanup fail the job while the scrape is running."""

    def __init__(self, dsn, result):
        self.dsn = dsn
        self.result = result

    def run(self, source):
        with psycopg.connect(self.dsn) as other:
            cleanup_stuck_jobs(other, NOW + timedelta(hours=2), timeout_minutes=60)
        return self.result


class TestJobFailedDuringScrape:
    def test_outcome_is_failure_not_exception(self, db_conn):
        conn, dsn = db_conn
        sid = _committed_source(conn)
        runner = TimedOutMidScrapeRunner(dsn, GOOD_RESULT)

        outcome = run_source_job(dsn, get_source(conn, sid), runner, CONFIG, PROFILES, now=NOW)

        assert outcome.success is False
        assert outcome.error.startswith("Import error: job")
        assert _job_row(conn, outcome.job_id)[:2] == ("failed", "Job timed out while running")
        assert get_source(conn, sid).health.consecutive_failures == 1
        assert conn.execute("SELECT count(*) FROM scrape_raw_data").fetchone()[0] == 0

    def test_sweep_counts_it_as_failed(self, db_conn):
        conn, dsn = db_conn
        sid = _committed_source(conn, "Good Camp")

        ctrs = run_scheduled_sweep(
            dsn, TimedOutMidScrapeRunner(dsn, GOOD_RESULT), CONFIG, PROFILES, now=NOW,
        )

        assert (ctrs.jobs_succeeded, ctrs.jobs_failed) == (0, 1)
        assert get_source(conn, sid).health.total_runs == 1

    def test_unexpected_job_error_counted_as_failure(self, db_conn, monkeypatch):
        conn, dsn = db_conn
        _committed_source(conn, "Good Camp")
        _committed_source(conn, "Bad Camp")
        real = scheduler.run_source_job

        def flaky(dsn, source, *args):
            if source.name == "Bad Camp":
                raise JobStateError("job j1 is failed; expected one of ['pending', 'running']")
            return real(dsn, source, *args)

        monkeypatch.setattr(scheduler, "run_source_job", flaky)
        runner = FakeRunner({"Good Camp": GOOD_RESULT})

        ctrs = run_scheduled_sweep(dsn, runner, CONFIG, PROFILES, now=NOW)

        assert (ctrs.jobs_succeeded, ctrs.jobs_failed, ctrs.db_errors) == (1, 1, 0)
        assert any("job j1 is failed" in w for w in ctrs.warnings)
