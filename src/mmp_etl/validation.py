"""mmp_etl.validation

Validation gate between parsing and persistence.

Splits issues into blocking errors (nothing is persisted) and advisory
warnings (surfaced on the result), adds schema- and batch-level checks the
row parser cannot make on its own, and renders the full issue list as a
delimited `type,row,column,category,message` report.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field

from mmp_etl.normalize import normalize_code, normalize_name
from mmp_etl.parse_plan_file import ParseResult
from mmp_etl.plan_schema import PlanSchema
from mmp_etl.shared import (
    SEVERITY_ERROR,
    SEVERITY_WARNING,
    Issue,
    SiteEntry,
    ValidationError,
    error,
    issues_to_csv,
    warning,
)

BLOCKING_CATEGORIES = frozenset({
    "parse_error",
    "file_structure",
    "file_too_large",
    "missing_headers",
    "invalid_date_format",
    "missing_site_identity",
})

CATEGORY_LABELS = {
    "missing_headers": "Missing required headers",
    "missing_recommended_columns": "Missing recommended columns",
    "missing_field": "Missing required fields",
    "missing_site_identity": "Rows without site code or site name",
    "invalid_date_format": "Invalid date format",
    "missing_date": "Missing dates",
    "invalid_boolean": "Invalid yes/no values",
    "duplicate_site_code": "Repeated site codes",
    "hub_mismatch": "Hub office mismatches",
    "incomplete_activity": "Incomplete activity info",
    "backfilled_field": "Fields filled from other columns",
    "unmatched_sites": "New sites registered",
    "file_structure": "File structure issues",
    "file_too_large": "File too large",
    "parse_error": "File parsing issues",
}

FIELD_LABELS = {
    "site_code": "Site Code",
    "site_name": "Site Name",
    "state": "State",
    "locality": "Locality",
    "hub_office": "Hub Office",
    "cp_name": "CP Name",
    "main_activity": "Main Activity",
    "site_activity": "Activity at Site",
    "visit_date": "Visit Date",
}


def classify(issue: Issue) -> Issue:
    """Force severity from the category table so callers cannot downgrade a blocker."""
    severity = SEVERITY_ERROR if issue.category in BLOCKING_CATEGORIES else SEVERITY_WARNING
    if severity == issue.severity:
        return issue
    return Issue(severity, issue.category, issue.message, issue.row, issue.column)


def format_category_name(category: str) -> str:
    return CATEGORY_LABELS.get(category, category.replace("_", " ").title())


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

@dataclass
class ValidationReport:
    errors: list[Issue] = field(default_factory=list)
    warnings: list[Issue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def issues(self) -> list[Issue]:
        return self.errors + self.warnings

    def summary(self) -> str:
        """Counts per category, most frequent first."""
        if not self.errors and not self.warnings:
            return "Validation completed successfully. No issues found."
        parts = [
            f"Validation completed with {len(self.errors)} error(s) "
            f"and {len(self.warnings)} warning(s)"
        ]
        for title, issues in (("Critical issues:", self.errors), ("Warnings:", self.warnings)):
            if not issues:
                continue
            parts.append(title)
            for category, count in Counter(i.category for i in issues).most_common():
                parts.append(f"  - {format_category_name(category)}: {count}")
        return "\n".join(parts)

    def warning_lines(self) -> list[str]:
        return [
            f"{format_category_name(category)}: {count}"
            for category, count in Counter(i.category for i in self.warnings).most_common()
        ]

    def headline(self) -> str:
        if self.errors:
            return f"Validation: {len(self.errors)} errors found"
        if self.warnings:
            return f"Validation: {len(self.warnings)} warnings found"
        return "Validation: Successful"

    def to_csv(self) -> str:
        return issues_to_csv(self.issues)

    def raise_for_errors(self) -> None:
        if self.errors:
            raise ValidationError(self.headline(), self.errors)


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------

def _schema_issues(parsed: ParseResult, schema: PlanSchema) -> list[Issue]:
    if not parsed.headers:
        return []
    issues: list[Issue] = []
    if not any(f in parsed.column_map for f in schema.identity_fields):
        labels = " or ".join(FIELD_LABELS.get(f, f) for f in schema.identity_fields)
        issues.append(error(
            "missing_headers", f"Missing required headers: need a {labels} column",
        ))
    missing = [
        FIELD_LABELS.get(f, f)
        for f in schema.recommended_fields
        if f not in parsed.column_map
    ]
    if missing:
        issues.append(warning(
            "missing_recommended_columns",
            f"Missing recommended columns: {', '.join(missing)}",
        ))
    return issues


def _row_issues(entry: SiteEntry, parsed: ParseResult) -> list[Issue]:
    row = entry.row_number
    issues: list[Issue] = []
    if not entry.site_code and not entry.site_name:
        issues.append(error(
            "missing_site_identity", "Row has neither a site code nor a site name", row,
            parsed.mapped_header("site_name") or parsed.mapped_header("site_code"),
        ))
    for name in ("hub_office", "state", "locality", "site_name"):
        if not getattr(entry, name) and (name != "site_name" or entry.site_code):
            issues.append(warning(
                "missing_field", f"Missing {FIELD_LABELS[name]}", row,
                parsed.mapped_header(name) or FIELD_LABELS[name],
            ))
    if not entry.main_activity or not entry.site_activity:
        issues.append(warning(
            "incomplete_activity", "Incomplete activity/tool information", row,
        ))
    return issues


def _batch_issues(entries: list[SiteEntry], parsed: ParseResult, hub: str | None) -> list[Issue]:
    issues: list[Issue] = []
    first_row: dict[str, int] = {}
    for entry in entries:
        code = normalize_code(entry.site_code)
        if not code:
            continue
        if code in first_row:
            issues.append(warning(
                "duplicate_site_code",
                f"Site code {entry.site_code} also appears on row {first_row[code]}; "
                "rows will be linked to the same registry site",
                entry.row_number, parsed.mapped_header("site_code"),
            ))
        else:
            first_row[code] = entry.row_number

    hub_norm = normalize_name(hub)
    if hub_norm:
        short = hub_norm.removesuffix(" hub office").removesuffix(" hub")
        for office in parsed.hub_offices:
            office_norm = normalize_name(office) or ""
            if not (short in office_norm or office_norm in hub_norm):
                issues.append(warning(
                    "hub_mismatch",
                    f"Hub Office '{office}' does not belong to selected hub '{hub}'",
                    None, parsed.mapped_header("hub_office"),
                ))
    return issues


def validate(parsed: ParseResult, schema: PlanSchema, hub: str | None = None) -> ValidationReport:
    """Classify parser issues and add schema, row and batch checks."""
    issues: list[Issue] = list(parsed.issues)
    file_failed = any(i.category in ("parse_error", "file_too_large") for i in issues)
    if not file_failed:
        issues.extend(_schema_issues(parsed, schema))
        for entry in parsed.entries:
            issues.extend(_row_issues(entry, parsed))
        issues.extend(_batch_issues(parsed.entries, parsed, hub))

    report = ValidationReport()
    for issue in issues:
        issue = classify(issue)
        if issue.is_blocking:
            report.errors.append(issue)
        else:
            report.warnings.append(issue)
    return report
