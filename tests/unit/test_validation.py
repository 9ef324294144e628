"""Unit tests for camp_etl.validation: validator, status machine, source quality."""

from datetime import date

import pytest

from camp_etl.models import FieldState, ScrapedSession, StructuredAddress
from camp_etl.validation import (
    SourceQuality,
    calculate_source_quality,
    check_location,
    determine_session_status,
    is_valid_url,
    parse_iso_date,
    quality_tier,
    validate_session,
)


def _complete(**overrides) -> ScrapedSession:
    fields = dict(
        name="Art Camp",
        start_date="2025-06-10",
        end_date="2025-06-14",
        drop_off_hour=9,
        pick_up_hour=15,
        location="123 Main St, Portland, OR 97201",
        min_age=5,
        max_age=12,
        price_in_cents=25000,
        registration_url="https://example.org/register",
    )
    fields.update(overrides)
    return ScrapedSession(**fields)


def _errors_for(result, field):
    return [e for e in result.errors if e.field == field]


# ---------------------------------------------------------------------------
# Completeness
# ---------------------------------------------------------------------------

class TestCompleteness:
    def test_complete_session_scores_100(self):
        r = validate_session(_complete())
        assert r.completeness_score == 100
        assert r.missing_fields == []
        assert r.errors == []
        assert r.is_complete is True

    def test_one_missing_field_scores_86(self):
        r = validate_session(_complete(price_in_cents=None))
        assert r.completeness_score == 86
        assert r.missing_fields == ["price"]

    def test_empty_session_scores_0(self):
        r = validate_session(ScrapedSession())
        assert r.completeness_score == 0
        assert len(r.missing_fields) == 7
        assert r.is_complete is False

    def test_any_age_or_grade_bound_counts(self):
        r = validate_session(_complete(min_age=None, max_age=None, max_grade=5))
        assert "ageRequirements" not in r.missing_fields

    def test_structured_address_counts_as_location(self):
        r = validate_session(_complete(
            location=None, address=StructuredAddress(street="123 Main St"),
        ))
        assert "location" not in r.missing_fields

    def test_placeholder_counts_as_missing(self):
        r = validate_session(_complete(start_date="TBD"))
        assert r.field_states["startDate"] is FieldState.UNPARSED
        assert "startDate" in r.missing_fields

    def test_raw_text_without_value_is_unparsed(self):
        r = validate_session(_complete(price_in_cents=None, price_raw="Contact us"))
        assert r.field_states["price"] is FieldState.UNPARSED
        errs = _errors_for(r, "price")
        assert errs and errs[0].attempted_value == "Contact us"

    def test_no_raw_text_is_absent(self):
        r = validate_session(_complete(price_in_cents=None))
        assert r.field_states["price"] is FieldState.ABSENT
        assert _errors_for(r, "price") == []

    def test_errors_do_not_reduce_score(self):
        r = validate_session(_complete(registration_url="javascript:alert(1)"))
        assert r.completeness_score == 100
        assert r.is_complete is False


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

class TestDateChecks:
    def test_span_of_21_days_ok(self):
        r = validate_session(_complete(start_date="2025-06-01", end_date="2025-06-22"))
        assert _errors_for(r, "dateRange") == []

    def test_span_over_21_days_flagged(self):
        r = validate_session(_complete(start_date="2025-06-01", end_date="2025-06-23"))
        errs = _errors_for(r, "dateRange")
        assert len(errs) == 1
        assert "likely a program overview" in errs[0].error

    def test_flexible_session_skips_span_check(self):
        r = validate_session(_complete(
            start_date="2026-06-01", end_date="2026-08-31", is_flexible=True,
        ))
        assert _errors_for(r, "dateRange") == []

    def test_configurable_span(self):
        r = validate_session(_complete(), max_session_days=3)
        assert _errors_for(r, "dateRange")

    def test_invalid_date_format(self):
        r = validate_session(_complete(start_date="06/10/2025"))
        errs = _errors_for(r, "startDate")
        assert errs and "Invalid date format" in errs[0].error
        assert _errors_for(r, "dateRange") == []

    def test_impossible_calendar_date(self):
        r = validate_session(_complete(end_date="2025-02-30"))
        assert _errors_for(r, "endDate")

    def test_parse_iso_date(self):
        assert parse_iso_date("2025-06-10") == date(2025, 6, 10)
        assert parse_iso_date("2025-6-10") is None
        assert parse_iso_date(None) is None


# ---------------------------------------------------------------------------
# URL and hours
# ---------------------------------------------------------------------------

class TestUrlAndHours:
    def test_javascript_url_rejected(self):
        r = validate_session(_complete(registration_url="javascript:void(0)"))
        assert _errors_for(r, "registrationUrl")
        assert r.normalized.registration_url is None

    @pytest.mark.parametrize("url", ["https://a.org/x", "http://a.org"])
    def test_http_urls_ok(self, url):
        assert is_valid_url(url) is True

    def test_relative_url_rejected(self):
        assert is_valid_url("/register") is False

    @pytest.mark.parametrize("hour", [0, 23])
    def test_boundary_hours_ok(self, hour):
        r = validate_session(_complete(drop_off_hour=hour))
        assert _errors_for(r, "dropOffTime") == []

    @pytest.mark.parametrize("hour", [24, -1, 9.5])
    def test_bad_hours_flagged(self, hour):
        r = validate_session(_complete(pick_up_hour=hour))
        assert _errors_for(r, "pickUpTime")
        assert r.normalized.pick_up_hour is None

    def test_minutes_default_to_zero(self):
        r = validate_session(_complete())
        assert r.normalized.drop_off_minute == 0
        assert r.normalized.pick_up_minute == 0


# ---------------------------------------------------------------------------
# Location
# ---------------------------------------------------------------------------

class TestLocationChecks:
    def test_short_location_incomplete(self):
        errs = check_location("Gym")
        assert len(errs) == 1
        assert "incomplete" in errs[0].error

    @pytest.mark.parametrize("loc", ["TBD", "Online", "Main Location"])
    def test_generic_locations(self, loc):
        errs = check_location(loc)
        assert errs and "generic" in errs[0].error

    def test_street_address_ok(self):
        assert check_location("123 Main St") == []

    def test_long_name_without_number_ok(self):
        assert check_location("Mount Tabor Park Amphitheater") == []

    def test_venue_list(self):
        loc = (
            "Laurelhurst Park Community Center, Grant Park Community Center, "
            "Woodstock Park Community Center, Sellwood Park Community Center"
        )
        errs = check_location(loc)
        assert any("list of 4" in e.error for e in errs)

    def test_placeholder_location_still_flagged(self):
        r = validate_session(_complete(location="TBD"))
        assert "location" in r.missing_fields
        assert any("generic" in e.error for e in _errors_for(r, "location"))


# ---------------------------------------------------------------------------
# Status state machine
# ---------------------------------------------------------------------------

class TestDetermineSessionStatus:
    @pytest.mark.parametrize("price", [None, 0, 25000])
    def test_below_threshold_always_pending(self, price):
        assert determine_session_status(49, price, "Free") == "pending_review"

    def test_complete_paid_session_active(self):
        assert determine_session_status(100, 25000, "$250") == "active"

    def test_partial_session_draft(self):
        assert determine_session_status(86, 25000, "$250") == "draft"

    def test_zero_price_without_free_is_draft(self):
        assert determine_session_status(100, 0, "$0") == "draft"
        assert determine_session_status(100, 0, None) == "draft"

    def test_explicitly_free_is_active(self):
        assert determine_session_status(100, 0, "Free!") == "active"

    def test_threshold_boundary(self):
        assert determine_session_status(50, 25000, None) == "draft"

    def test_custom_thresholds(self):
        assert determine_session_status(60, 100, None, review_min_score=70) == "pending_review"

    def test_overlong_span_never_active(self):
        assert determine_session_status(100, 25000, "$250", overlong_span=True) == "draft"
        assert determine_session_status(10, 25000, "$250", overlong_span=True) == "pending_review"

    def test_summer_long_complete_session_is_draft(self):
        r = validate_session(_complete(start_date="2025-06-01", end_date="2025-08-31"))
        assert r.completeness_score == 100
        overlong = bool(_errors_for(r, "dateRange"))
        assert determine_session_status(r.completeness_score, 25000, "$250", overlong_span=overlong) == "draft"


# ---------------------------------------------------------------------------
# Source quality
# ---------------------------------------------------------------------------

class TestSourceQuality:
    def test_mean_rounded(self):
        assert calculate_source_quality([100, 86, 71]) == SourceQuality(86, "high")

    def test_missing_scores_count_as_zero(self):
        assert calculate_source_quality([100, None]) == SourceQuality(50, "medium")

    def test_empty(self):
        assert calculate_source_quality([]) == SourceQuality(0, "low")

    @pytest.mark.parametrize("score,tier", [(80, "high"), (79, "medium"), (50, "medium"), (49, "low")])
    def test_tiers(self, score, tier):
        assert quality_tier(score) == tier
