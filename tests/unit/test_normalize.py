"""Unit tests for mmp_etl.normalize."""

import pytest
from datetime import date

from mmp_etl.normalize import (
    code_prefix,
    looks_like_date,
    looks_like_place_name,
    looks_like_site_code,
    normalize_code,
    normalize_header,
    normalize_name,
    normalize_space,
    parse_bool,
    parse_visit_date,
    trim,
)


# ---------------------------------------------------------------------------
# trim
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


# ---------------------------------------------------------------------------
# normalize_space
# ---------------------------------------------------------------------------

class TestNormalizeSpace:
    def test_collapses_internal_spaces(self):
        assert normalize_space("El   Geneina") == "El Geneina"

    def test_collapses_tabs(self):
        assert normalize_space("West\t\tDarfur") == "West Darfur"

    def test_none(self):
        assert normalize_space(None) is None


# ---------------------------------------------------------------------------
# normalize_header
# ---------------------------------------------------------------------------

class TestNormalizeHeader:
    @pytest.mark.parametrize("header", [
        "Activity at Site",
        "activity_at_site",
        "ACTIVITY AT SITE:",
        "  Activity-at-Site ",
    ])
    def test_spellings_collapse_to_one_key(self, header):
        assert normalize_header(header) == "activityatsite"

    def test_none_is_empty_string(self):
        assert normalize_header(None) == ""

    def test_accents_folded(self):
        assert normalize_header("Localité") == "localite"


# ---------------------------------------------------------------------------
# normalize_name / normalize_code
# ---------------------------------------------------------------------------

class TestNormalizeName:
    def test_lowercases_and_strips_punctuation(self):
        assert normalize_name("Adar Market, (Kulbus)") == "adar market kulbus"

    def test_collapses_spaces(self):
        assert normalize_name("  West   Darfur ") == "west darfur"

    def test_punctuation_only_is_none(self):
        assert normalize_name("--") is None

    def test_none(self):
        assert normalize_name(None) is None


class TestNormalizeCode:
    def test_case_and_punctuation_insensitive(self):
        assert normalize_code("WD-KUL-ADAR-0001") == normalize_code("wd kul adar 0001")

    def test_value(self):
        assert normalize_code("WD-KUL-ADAR-0001") == "wdkuladar0001"

    def test_empty(self):
        assert normalize_code(" - ") is None


class TestCodePrefix:
    def test_uppercases_and_truncates(self):
        assert code_prefix("Kulbus", 3) == "KUL"

    def test_pads_short_values(self):
        assert code_prefix("Um", 4) == "UMXX"

    def test_none_is_all_fallback(self):
        assert code_prefix(None, 2) == "XX"

    def test_skips_punctuation(self):
        assert code_prefix("El-Geneina", 4) == "ELGE"


# ---------------------------------------------------------------------------
# parse_bool
# ---------------------------------------------------------------------------

class TestParseBool:
    @pytest.mark.parametrize("value", ["yes", "YES", "true", "1", "y", "T"])
    def test_true_tokens(self, value):
        assert parse_bool(value) is True

    @pytest.mark.parametrize("value", ["no", "False", "0", "n", "f", "", None, "  "])
    def test_false_tokens(self, value):
        assert parse_bool(value) is False

    def test_unknown_is_none(self):
        assert parse_bool("maybe") is None


# ---------------------------------------------------------------------------
# parse_visit_date
# ---------------------------------------------------------------------------

class TestParseVisitDate:
    @pytest.mark.parametrize("value", [
        "15-06-2025",
        "2025-06-15",
        "15/06/2025",
        "2025/06/15",
        "15 Jun 2025",
        "15 June 2025",
        "2025-06-15 00:00:00",
    ])
    def test_accepted_layouts(self, value):
        assert parse_visit_date(value) == date(2025, 6, 15)

    def test_invalid(self):
        assert parse_visit_date("next week") is None

    def test_impossible_date(self):
        assert parse_visit_date("31-02-2025") is None

    def test_none(self):
        assert parse_visit_date(None) is None


# ---------------------------------------------------------------------------
# Shape heuristics
# ---------------------------------------------------------------------------

class TestShapes:
    def test_date_shaped_header(self):
        assert looks_like_date("01/06/2025")
        assert looks_like_date("Jun-2025")
        assert not looks_like_date("Locality")

    def test_site_code_shape(self):
        assert looks_like_site_code("WD-KUL-ADAR-0001")
        assert not looks_like_site_code("Adar Market")
        assert not looks_like_site_code(None)

    def test_place_name(self):
        assert looks_like_place_name("Kulbus")
        assert looks_like_place_name("El Geneina")
        assert not looks_like_place_name("2025-06-01")
        assert not looks_like_place_name("1234")
        assert not looks_like_place_name(None)
