"""Unit tests for camp_etl.normalize."""

import pytest

from camp_etl.normalize import (
    coerce_int,
    coerce_number,
    is_placeholder,
    normalize_name,
    normalize_space,
    slug_name,
    strip_week_suffix,
    trim,
)


# ---------------------------------------------------------------------------
# trim / normalize_space
# ---------------------------------------------------------------------------

class TestTrim:
    def test_strips_whitespace(self):
        assert trim("  hello  ") == "hello"

    def test_empty_string_returns_none(self):
        assert trim("") is None

    def test_whitespace_only_returns_none(self):
        assert trim("   ") is None

    def test_none_returns_none(self):
        assert trim(None) is None


class TestNormalizeSpace:
    def test_collapses_internal_spaces(self):
        assert normalize_space("Art   Camp\tWeek") == "Art Camp Week"

    def test_none(self):
        assert normalize_space(None) is None


# ---------------------------------------------------------------------------
# slug_name / normalize_name
# ---------------------------------------------------------------------------

class TestSlugName:
    def test_basic(self):
        assert slug_name("Portland Parks & Recreation") == "portland-parks-recreation"

    def test_accents_stripped(self):
        assert slug_name("Café Camp") == "cafe-camp"

    def test_punctuation_only_returns_none(self):
        assert slug_name("!!!") is None


class TestNormalizeName:
    def test_lowercases_and_drops_punctuation(self):
        assert normalize_name("Art Camp: Painting!") == "art camp painting"

    def test_collapses_spaces(self):
        assert normalize_name("  Art    Camp ") == "art camp"

    def test_none(self):
        assert normalize_name(None) is None


# ---------------------------------------------------------------------------
# Placeholders and week suffixes
# ---------------------------------------------------------------------------

class TestIsPlaceholder:
    @pytest.mark.parametrize("value", ["TBD", "<UNKNOWN>", "n/a", "Location TBD", "null"])
    def test_placeholder_tokens(self, value):
        assert is_placeholder(value) is True

    def test_real_value(self):
        assert is_placeholder("123 Main St") is False

    def test_non_string(self):
        assert is_placeholder(25000) is False
        assert is_placeholder(None) is False


class TestStripWeekSuffix:
    def test_dash_suffix(self):
        assert strip_week_suffix("Art Camp - Week 3") == "Art Camp"

    def test_colon_suffix(self):
        assert strip_week_suffix("Art Camp: Week 12") == "Art Camp"

    def test_no_suffix(self):
        assert strip_week_suffix("Art Camp") == "Art Camp"

    def test_week_in_middle_untouched(self):
        assert strip_week_suffix("Week of Wonders") == "Week of Wonders"


# ---------------------------------------------------------------------------
# Numeric coercion
# ---------------------------------------------------------------------------

class TestCoerceNumber:
    def test_int(self):
        assert coerce_number(9) == 9

    def test_integral_float_becomes_int(self):
        assert coerce_number(9.0) == 9
        assert isinstance(coerce_number(9.0), int)

    def test_fractional_float_kept(self):
        assert coerce_number(9.5) == 9.5

    def test_numeric_string(self):
        assert coerce_number(" 15 ") == 15

    def test_bool_rejected(self):
        assert coerce_number(True) is None

    def test_garbage(self):
        assert coerce_number("nine") is None


class TestCoerceInt:
    def test_fraction_dropped(self):
        assert coerce_int(9.5) is None

    def test_string(self):
        assert coerce_int("25000") == 25000
