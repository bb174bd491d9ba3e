"""mmp_etl.parse_plan_file

Schema-tolerant parser for monitoring plan files.

Turns a raw delimited file into SiteEntry records plus a list of issues:
  1. Decode (UTF-8 with BOM tolerance, latin-1 fallback) and pick the
     delimiter from the header line.
  2. Map headers to canonical fields through the schema synonym table.
     The first synonym present wins; a mapped field is never overwritten
     and a source column feeds at most one field.
  3. Coerce typed fields (visit_date, yes/no flags); keep every unmapped,
     non-empty cell verbatim in additional_data.
  4. Backfill still-empty canonical fields from leftover columns whose
     values look like the missing field.  Advisory only.

File-level failures return a single blocking issue and no entries.
"""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from mmp_etl.normalize import (
    looks_like_date,
    looks_like_place_name,
    looks_like_site_code,
    normalize_header,
    normalize_space,
    parse_bool,
    parse_visit_date,
    trim,
)
from mmp_etl.plan_schema import PlanSchema
from mmp_etl.shared import (
    BOOL_FIELDS,
    DATE_FIELDS,
    TEXT_FIELDS,
    Issue,
    SiteEntry,
    error,
    warning,
)

log = logging.getLogger(__name__)

CANDIDATE_DELIMITERS = (",", ";", "\t", "|")
HEADER_ROW_NUMBER = 1


# ---------------------------------------------------------------------------
# Result container
# ---------------------------------------------------------------------------

@dataclass
class ParseResult:
    entries: list[SiteEntry] = field(default_factory=list)
    issues: list[Issue] = field(default_factory=list)
    headers: list[str] = field(default_factory=list)
    # canonical field -> source column index
    column_map: dict[str, int] = field(default_factory=dict)
    rows_read: int = 0
    rows_skipped_empty: int = 0

    @property
    def has_blocking_issues(self) -> bool:
        return any(i.is_blocking for i in self.issues)

    @property
    def hub_offices(self) -> list[str]:
        seen: list[str] = []
        for entry in self.entries:
            if entry.hub_office and entry.hub_office not in seen:
                seen.append(entry.hub_office)
        return seen

    def mapped_header(self, canonical: str) -> str | None:
        idx = self.column_map.get(canonical)
        return self.headers[idx] if idx is not None else None


def _file_failure(category: str, message: str) -> ParseResult:
    return ParseResult(issues=[error(category, message)])


# ---------------------------------------------------------------------------
# Decoding helpers
# ---------------------------------------------------------------------------

def _decode(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        log.info("File is not valid UTF-8; decoding as latin-1")
        return data.decode("latin-1")


def detect_delimiter(text: str) -> str:
    """Pick the candidate delimiter that occurs most often in the header line."""
    first_line = text.split("\n", 1)[0]
    counts = {d: first_line.count(d) for d in CANDIDATE_DELIMITERS}
    best = max(CANDIDATE_DELIMITERS, key=lambda d: counts[d])
    return best if counts[best] > 0 else ","


# ---------------------------------------------------------------------------
# Header mapping
# ---------------------------------------------------------------------------

def build_column_map(headers: list[str], schema: PlanSchema) -> dict[str, int]:
    """Map canonical fields to source column indexes via the synonym table."""
    index: dict[str, int] = {}
    for idx, header in enumerate(headers):
        key = normalize_header(header)
        if key and key not in index:
            index[key] = idx

    mapping: dict[str, int] = {}
    consumed: set[int] = set()
    for canonical, spellings in schema.synonyms.items():
        if canonical in mapping:
            continue
        for spelling in spellings:
            idx = index.get(spelling)
            if idx is not None and idx not in consumed:
                mapping[canonical] = idx
                consumed.add(idx)
                break
    return mapping


def _additional_key(headers: list[str], idx: int, taken: dict[str, str]) -> str:
    header = trim(headers[idx]) if idx < len(headers) else None
    key = header or f"column_{idx + 1}"
    if key in taken:
        key = f"{key} ({idx + 1})"
    return key


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------

def _row_to_entry(
    cells: list[str],
    row_number: int,
    headers: list[str],
    column_map: dict[str, int],
    schema: PlanSchema,
) -> tuple[SiteEntry, list[Issue]]:
    issues: list[Issue] = []
    values: dict[str, Any] = {}

    def cell(idx: int) -> str | None:
        return trim(cells[idx]) if idx < len(cells) else None

    for name in TEXT_FIELDS:
        idx = column_map.get(name)
        if idx is not None:
            values[name] = normalize_space(cell(idx))

    for name in DATE_FIELDS:
        idx = column_map.get(name)
        if idx is None:
            continue
        raw = cell(idx)
        if raw is None:
            issues.append(warning(
                "missing_date", "No visit date provided", row_number, headers[idx],
            ))
            continue
        parsed = parse_visit_date(raw)
        if parsed is None:
            issues.append(error(
                "invalid_date_format",
                f"Visit date '{raw}' must be DD-MM-YYYY or YYYY-MM-DD",
                row_number, headers[idx],
            ))
        values[name] = parsed

    for name in BOOL_FIELDS:
        idx = column_map.get(name)
        if idx is None:
            continue
        raw = cell(idx)
        flag = parse_bool(raw)
        if flag is None:
            issues.append(warning(
                "invalid_boolean",
                f"Value '{raw}' is not yes/no; treated as no",
                row_number, headers[idx],
            ))
            flag = False
        values[name] = flag

    mapped = set(column_map.values())
    additional: dict[str, str] = {}
    for idx, raw in enumerate(cells):
        if idx in mapped:
            continue
        v = trim(raw)
        if v is None:
            continue
        additional[_additional_key(headers, idx, additional)] = v

    entry = SiteEntry(row_number=row_number, additional_data=additional, **values)
    entry, backfill_issues = backfill_entry(entry, schema)
    return entry, issues + backfill_issues


# ---------------------------------------------------------------------------
# Heuristic backfill
# ---------------------------------------------------------------------------

def backfill_entry(entry: SiteEntry, schema: PlanSchema) -> tuple[SiteEntry, list[Issue]]:
    """Fill still-empty canonical fields from leftover columns.

    Only empty fields are touched, so an explicit header mapping always wins.
    The source cells stay in additional_data.
    """
    fills: dict[str, Any] = {}
    issues: list[Issue] = []

    def note(name: str, column: str, value: str) -> None:
        issues.append(warning(
            "backfilled_field",
            f"Filled {name} with '{value}' from column '{column}'",
            entry.row_number, column,
        ))

    leftovers = list(entry.additional_data.items())

    if not entry.state:
        # Period columns first ("Month" holding a state name), then anything else.
        ordered = sorted(
            leftovers,
            key=lambda kv: normalize_header(kv[0]) not in schema.period_headers,
        )
        for column, value in ordered:
            state = schema.canonical_state(value)
            if state:
                fills["state"] = state
                note("state", column, state)
                break

    if not entry.locality:
        for column, value in leftovers:
            if (
                looks_like_date(column)
                and looks_like_place_name(value)
                and schema.canonical_state(value) is None
            ):
                fills["locality"] = normalize_space(value)
                note("locality", column, value)
                break

    if not entry.site_code:
        for column, value in leftovers:
            if looks_like_site_code(value):
                fills["site_code"] = value
                note("site_code", column, value)
                break

    if not entry.hub_office:
        hub = schema.hub_for_state(fills.get("state") or entry.state)
        if hub:
            fills["hub_office"] = hub
            issues.append(warning(
                "backfilled_field",
                f"Filled hub_office with '{hub}' from state",
                entry.row_number, None,
            ))

    if not fills:
        return entry, []
    return replace(entry, **fills), issues


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------

def parse_plan_bytes(data: bytes, schema: PlanSchema) -> ParseResult:
    """Parse raw file bytes into SiteEntry records and issues."""
    if len(data) > schema.max_file_bytes:
        return _file_failure(
            "file_too_large",
            f"File is {len(data)} bytes; the limit is {schema.max_file_bytes} bytes",
        )
    if b"\x00" in data:
        return _file_failure("parse_error", "File does not look like delimited text")

    text = _decode(data)
    if not text.strip():
        return _file_failure("file_structure", "File is empty or contains only headers")

    delimiter = detect_delimiter(text)
    try:
        rows = list(csv.reader(io.StringIO(text, newline=""), delimiter=delimiter))
    except csv.Error as exc:
        return _file_failure("parse_error", f"Failed to parse file: {exc}")

    headers = [h.strip() for h in rows[0]] if rows else []
    if not any(headers):
        return _file_failure("file_structure", "File has no header row")

    column_map = build_column_map(headers, schema)
    result = ParseResult(headers=headers, column_map=column_map)

    for offset, cells in enumerate(rows[1:]):
        row_number = HEADER_ROW_NUMBER + 1 + offset
        if not any(trim(c) for c in cells):
            result.rows_skipped_empty += 1
            continue
        result.rows_read += 1
        entry, issues = _row_to_entry(cells, row_number, headers, column_map, schema)
        result.entries.append(entry)
        result.issues.extend(issues)

    if not result.entries:
        result.issues.insert(0, error("file_structure", "File is empty or contains only headers"))

    log.debug(
        "parsed %d entries (%d blank rows skipped, delimiter=%r)",
        len(result.entries), result.rows_skipped_empty, delimiter,
    )
    return result


def parse_plan_file(path: Path, schema: PlanSchema) -> ParseResult:
    """Read *path* and parse it.  An unreadable file is a blocking parse error."""
    try:
        data = path.read_bytes()
    except OSError as exc:
        return _file_failure("parse_error", f"Cannot read file {path}: {exc}")
    return parse_plan_bytes(data, schema)
