"""mmp_etl.shared

Shared records, exceptions and run bookkeeping used by every stage of the
monitoring plan pipeline.  Includes SiteEntry / RegistrySite / plan records,
the error taxonomy, IssueWriter, RunCounters and run-report support.
"""

from __future__ import annotations

import csv
import io
import json
from dataclasses import dataclass, field, fields
from datetime import date, datetime
from pathlib import Path
from typing import Any

from mmp_etl.normalize import normalize_code, normalize_name

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SEVERITY_ERROR = "error"
SEVERITY_WARNING = "warning"

ISSUE_REPORT_HEADERS = ["type", "row", "column", "category", "message"]

# Canonical SiteEntry fields, in output order.
TEXT_FIELDS = (
    "site_code",
    "site_name",
    "state",
    "locality",
    "hub_office",
    "cp_name",
    "visit_type",
    "main_activity",
    "site_activity",
    "monitoring_by",
    "survey_tool",
    "comments",
)
BOOL_FIELDS = ("use_market_diversion", "use_warehouse_monitoring")
DATE_FIELDS = ("visit_date",)
CANONICAL_FIELDS = TEXT_FIELDS + DATE_FIELDS + BOOL_FIELDS


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class MmpIngestError(Exception):
    """Base class for pipeline failures that end an upload."""


class ValidationError(MmpIngestError):
    """Blocking validation issues were found; nothing was persisted."""

    def __init__(self, message: str, issues: list["Issue"]) -> None:
        super().__init__(message)
        self.issues = issues


class StorageError(MmpIngestError):
    """Object store put/remove failure, tagged with the stage it happened in."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage


class PersistenceError(MmpIngestError):
    """Insert/update failure against the relational store."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage


class DuplicateUploadError(MmpIngestError):
    """Business-rule rejection of a repeated upload."""


class UploadCancelledError(MmpIngestError):
    """The caller cancelled the upload between entry batches."""


# ---------------------------------------------------------------------------
# Issues
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Issue:
    """One validation finding.  severity='error' blocks the upload."""

    severity: str
    category: str
    message: str
    row: int | None = None
    column: str | None = None

    @property
    def is_blocking(self) -> bool:
        return self.severity == SEVERITY_ERROR

    def as_row(self) -> dict[str, str]:
        return {
            "type": self.severity,
            "row": "" if self.row is None else str(self.row),
            "column": self.column or "",
            "category": self.category,
            "message": self.message,
        }


def error(category: str, message: str, row: int | None = None, column: str | None = None) -> Issue:
    return Issue(SEVERITY_ERROR, category, message, row, column)


def warning(category: str, message: str, row: int | None = None, column: str | None = None) -> Issue:
    return Issue(SEVERITY_WARNING, category, message, row, column)


def issues_to_csv(issues: list[Issue]) -> str:
    """Render issues as a delimited `type,row,column,category,message` report."""
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=ISSUE_REPORT_HEADERS, lineterminator="\n")
    writer.writeheader()
    for issue in issues:
        writer.writerow(issue.as_row())
    return buf.getvalue()


class IssueWriter:
    """Lazy-open CSV writer for validation issues."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None

    def write(self, issue: Issue) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            self._writer = csv.DictWriter(self._fh, fieldnames=ISSUE_REPORT_HEADERS)
            self._writer.writeheader()
        self._writer.writerow(issue.as_row())
        self._fh.flush()

    def write_all(self, issues: list[Issue]) -> None:
        for issue in issues:
            self.write(issue)

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SiteEntry:
    """One normalized monitoring plan row.

    Canonical columns are typed attributes; anything the header map did not
    recognize is kept verbatim in additional_data.
    """

    row_number: int
    site_code: str | None = None
    site_name: str | None = None
    state: str | None = None
    locality: str | None = None
    hub_office: str | None = None
    cp_name: str | None = None
    visit_type: str | None = None
    visit_date: date | None = None
    main_activity: str | None = None
    site_activity: str | None = None
    monitoring_by: str | None = None
    survey_tool: str | None = None
    use_market_diversion: bool = False
    use_warehouse_monitoring: bool = False
    comments: str | None = None
    additional_data: dict[str, str] = field(default_factory=dict, hash=False, compare=True)

    def identity_key(self) -> str:
        return "|".join([
            normalize_code(self.site_code) or "",
            normalize_name(self.site_name) or "",
            normalize_name(self.state) or "",
            normalize_name(self.locality) or "",
        ])

    def canonical_values(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in CANONICAL_FIELDS}


@dataclass
class RegistrySite:
    id: str
    site_code: str
    site_name: str
    state_name: str | None = None
    locality_name: str | None = None
    hub_name: str | None = None
    activity_type: str = "TPM"
    status: str = "registered"
    mmp_count: int = 0
    gps_latitude: float | None = None
    gps_longitude: float | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "RegistrySite":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in row.items() if k in known}
        values["id"] = str(values["id"])
        return cls(**values)


@dataclass(frozen=True)
class MatchResult:
    registry_site_id: str
    is_new: bool
    tier: str
    confidence: float
    occurrences: int
    final_count: int


@dataclass
class MonitoringPlanRecord:
    id: str
    mmp_id: str
    name: str
    status: str
    entries: int
    processed_entries: int
    file_path: str
    file_url: str | None
    original_filename: str
    project_id: str | None = None
    month: str | None = None
    hub: str | None = None
    uploaded_by: str | None = None
    uploaded_by_name: str | None = None
    uploaded_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "MonitoringPlanRecord":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in row.items() if k in known}
        values["id"] = str(values["id"])
        return cls(**values)


@dataclass
class PersistedEntry:
    """A stored site entry as reloaded from the database."""

    id: str
    registry_site_id: str
    match_tier: str | None
    entry: SiteEntry
    match_confidence: float | None = None


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    rows_read: int = 0
    rows_skipped_empty: int = 0
    entries_parsed: int = 0
    blocking_issues: int = 0
    advisory_issues: int = 0
    registry_sites_created: int = 0
    registry_sites_linked: int = 0
    entries_inserted: int = 0
    batches_written: int = 0
    cleanup_errors: int = 0
    notifications_failed: int = 0
    plans_swept: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str | None],
    counters: RunCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
