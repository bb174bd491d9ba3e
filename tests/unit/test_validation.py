"""Unit tests for mmp_etl.validation."""

from __future__ import annotations

import csv
import io

import pytest

from mmp_etl.parse_plan_file import parse_plan_bytes
from mmp_etl.plan_schema import load_plan_schema
from mmp_etl.shared import Issue, ValidationError, error, warning
from mmp_etl.validation import (
    BLOCKING_CATEGORIES,
    ValidationReport,
    classify,
    format_category_name,
    validate,
)


@pytest.fixture(scope="module")
def schema():
    return load_plan_schema()


def _csv(rows: list[list[str]]) -> bytes:
    buf = io.StringIO()
    csv.writer(buf, lineterminator="\n").writerows(rows)
    return buf.getvalue().encode("utf-8")


HEADER = [
    "Site Code", "Site Name", "State", "Locality", "Hub Office", "CP Name",
    "Visit Date", "Main Activity", "Activity at Site",
]


def _row(code="WD-KUL-ADAR-0001", name="Adar Market", state="West Darfur",
         locality="Kulbus", hub="El Fasher Hub", cp="WR", visit="15-06-2025",
         main="GFA", site_activity="Distribution") -> list[str]:
    return [code, name, state, locality, hub, cp, visit, main, site_activity]


def _run(schema, rows, hub=None):
    return validate(parse_plan_bytes(_csv([HEADER] + rows), schema), schema, hub)


def _cats(issues: list[Issue]) -> list[str]:
    return [i.category for i in issues]


# ---------------------------------------------------------------------------
# classify
# ---------------------------------------------------------------------------

class TestClassify:
    def test_blocking_category_forced_to_error(self):
        assert classify(warning("missing_site_identity", "x")).severity == "error"

    def test_advisory_category_forced_to_warning(self):
        assert classify(error("duplicate_site_code", "x")).severity == "warning"

    def test_unchanged_issue_returned_as_is(self):
        issue = error("parse_error", "x")
        assert classify(issue) is issue

    def test_blocking_set(self):
        assert BLOCKING_CATEGORIES == {
            "parse_error", "file_structure", "file_too_large",
            "missing_headers", "invalid_date_format", "missing_site_identity",
        }


# ---------------------------------------------------------------------------
# validate
# ---------------------------------------------------------------------------

class TestValidate:
    def test_clean_file(self, schema):
        report = _run(schema, [_row()])
        assert report.is_valid
        assert report.errors == []
        assert report.warnings == []

    def test_missing_identity_blocks(self, schema):
        report = _run(schema, [_row(code="", name="")])
        assert not report.is_valid
        assert _cats(report.errors) == ["missing_site_identity"]
        assert report.errors[0].row == 2

    def test_code_without_name_is_warning(self, schema):
        report = _run(schema, [_row(name="")])
        assert report.is_valid
        assert "missing_field" in _cats(report.warnings)

    def test_missing_hub_state_locality(self, schema):
        report = _run(schema, [_row(state="", locality="", hub="")])
        missing = [i.column for i in report.warnings if i.category == "missing_field"]
        assert missing == ["Hub Office", "State", "Locality"]

    def test_incomplete_activity(self, schema):
        report = _run(schema, [_row(site_activity="")])
        assert _cats(report.warnings) == ["incomplete_activity"]

    def test_invalid_date_blocks(self, schema):
        report = _run(schema, [_row(visit="32-13-2025")])
        assert _cats(report.errors) == ["invalid_date_format"]

    def test_duplicate_site_code_is_allowed(self, schema):
        report = _run(schema, [_row(), _row()])
        assert report.is_valid
        dupes = [i for i in report.warnings if i.category == "duplicate_site_code"]
        assert len(dupes) == 1
        assert dupes[0].row == 3
        assert "row 2" in dupes[0].message

    def test_duplicate_code_ignores_case_and_punctuation(self, schema):
        report = _run(schema, [_row(), _row(code="wd kul adar 0001")])
        assert "duplicate_site_code" in _cats(report.warnings)

    def test_missing_identity_columns(self, schema):
        data = _csv([["State", "Locality"], ["West Darfur", "Kulbus"]])
        report = validate(parse_plan_bytes(data, schema), schema)
        assert "missing_headers" in _cats(report.errors)
        assert "missing_site_identity" in _cats(report.errors)

    def test_missing_recommended_columns_single_warning(self, schema):
        data = _csv([["Site Code"], ["WD-KUL-ADAR-0001"]])
        report = validate(parse_plan_bytes(data, schema), schema)
        recommended = [i for i in report.warnings if i.category == "missing_recommended_columns"]
        assert len(recommended) == 1
        assert "Hub Office" in recommended[0].message

    def test_hub_mismatch_is_advisory(self, schema):
        report = _run(schema, [_row()], hub="Kosti Hub")
        assert report.is_valid
        assert "hub_mismatch" in _cats(report.warnings)

    def test_matching_hub(self, schema):
        report = _run(schema, [_row()], hub="El Fasher Hub")
        assert "hub_mismatch" not in _cats(report.warnings)

    def test_file_failure_skips_row_checks(self, schema):
        report = validate(parse_plan_bytes(b"\x00\x01", schema), schema)
        assert _cats(report.issues) == ["parse_error"]

    def test_header_only_file(self, schema):
        report = validate(parse_plan_bytes(_csv([HEADER]), schema), schema)
        assert _cats(report.errors) == ["file_structure"]


# ---------------------------------------------------------------------------
# Report rendering
# ---------------------------------------------------------------------------

class TestReport:
    def test_to_csv_has_every_issue(self, schema):
        report = _run(schema, [_row(code="", name=""), _row(site_activity="")])
        rows = list(csv.DictReader(io.StringIO(report.to_csv())))
        assert len(rows) == len(report.issues)
        assert list(rows[0].keys()) == ["type", "row", "column", "category", "message"]
        assert rows[0]["type"] == "error"
        assert rows[0]["row"] == "2"

    def test_summary_counts_by_category(self):
        report = ValidationReport(
            errors=[error("invalid_date_format", "a", 2)],
            warnings=[
                warning("missing_field", "b", 2),
                warning("missing_field", "c", 3),
                warning("incomplete_activity", "d", 3),
            ],
        )
        summary = report.summary()
        assert "1 error(s) and 3 warning(s)" in summary
        lines = summary.splitlines()
        assert lines.index("  - Missing required fields: 2") < lines.index("  - Incomplete activity info: 1")

    def test_summary_clean(self):
        assert "No issues" in ValidationReport().summary()

    def test_headline(self):
        assert ValidationReport().headline() == "Validation: Successful"
        assert ValidationReport(errors=[error("parse_error", "x")]).headline() == "Validation: 1 errors found"

    def test_warning_lines(self):
        report = ValidationReport(warnings=[warning("duplicate_site_code", "x")])
        assert report.warning_lines() == ["Repeated site codes: 1"]

    def test_raise_for_errors(self):
        ValidationReport(warnings=[warning("missing_field", "x")]).raise_for_errors()
        blocker = error("missing_site_identity", "no identity", 4)
        with pytest.raises(ValidationError, match="1 errors found") as excinfo:
            ValidationReport(errors=[blocker]).raise_for_errors()
        assert excinfo.value.issues == [blocker]


def test_format_category_name_fallback():
    assert format_category_name("some_new_thing") == "Some New Thing"
