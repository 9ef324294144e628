"""Unit tests for the pure health arithmetic in camp_etl.health."""

from datetime import datetime, timedelta, timezone

import pytest

from camp_etl.health import apply_scrape_outcome, schedule_next_scrape
from camp_etl.sources import ScraperHealth

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def _run(health, outcomes):
    for ok in outcomes:
        health = apply_scrape_outcome(health, ok, NOW, None if ok else "boom").health
    return health


class TestApplyScrapeOutcome:
    def test_first_success(self):
        t = apply_scrape_outcome(ScraperHealth(), True, NOW)
        h = t.health
        assert (h.total_runs, h.success_rate, h.consecutive_failures) == (1, 1.0, 0)
        assert h.last_success_at == NOW
        assert not t.regeneration_flagged and not t.should_disable

    def test_failure_records_error(self):
        h = apply_scrape_outcome(ScraperHealth(), False, NOW, "HTTP 500").health
        assert h.consecutive_failures == 1
        assert h.last_error == "HTTP 500"
        assert h.last_failure_at == NOW
        assert h.success_rate == 0.0

    def test_success_rate_tracks_history(self):
        h = _run(ScraperHealth(), [True, False, True, True])
        assert h.total_runs == 4
        assert h.success_rate == pytest.approx(0.75)

    def test_success_rate_stable_over_long_history(self):
        outcomes = [True, True, False] * 40
        h = _run(ScraperHealth(), outcomes)
        assert h.total_runs == 120
        assert round(h.success_rate * h.total_runs) == 80

    def test_success_resets_failures_and_regeneration(self):
        h = _run(ScraperHealth(), [False, False, False])
        assert h.needs_regeneration is True
        h = apply_scrape_outcome(h, True, NOW).health
        assert h.consecutive_failures == 0
        assert h.last_error is None
        assert h.needs_regeneration is False

    def test_regeneration_flagged_once_at_threshold(self):
        h = _run(ScraperHealth(), [False, False])
        t3 = apply_scrape_outcome(h, False, NOW, "e")
        assert t3.regeneration_flagged is True
        assert t3.health.needs_regeneration is True
        t4 = apply_scrape_outcome(t3.health, False, NOW, "e")
        assert t4.regeneration_flagged is False
        assert t4.health.needs_regeneration is True

    def test_disable_at_ten(self):
        h = _run(ScraperHealth(), [False] * 9)
        assert apply_scrape_outcome(h, False, NOW, "e").should_disable is True

    def test_not_disabled_at_nine(self):
        h = _run(ScraperHealth(), [False] * 8)
        assert apply_scrape_outcome(h, False, NOW, "e").should_disable is False

    def test_custom_thresholds(self):
        t = apply_scrape_outcome(ScraperHealth(), False, NOW, "e", regeneration_after=1, disable_after=1)
        assert t.regeneration_flagged and t.should_disable


class TestScheduleNextScrape:
    def test_adds_frequency(self):
        assert schedule_next_scrape(NOW, 24) == NOW + timedelta(hours=24)
