"""mmp_etl.persist_plan

Batch persistence coordinator for one monitoring plan upload.

Sequence (persist_monitoring_plan):
  a. put the source bytes in the object store
  b. duplicate-upload check
  c. reconcile entries against the site registry
  d. insert the plan row with status 'pending'
  e. insert site entries in fixed-size batches, checking for cancellation
     between batches
  f. set processed_entries and flip the plan to 'active'
  g. commit, then reload the plan and its entries

Steps b-f share one transaction with a statement timeout.  Any failure rolls
it back (registry, plan and entries are left untouched), removes the stored
object, and, once a plan row has been issued, deletes that row by file_path
in a fresh transaction for connections that autocommitted.  A failure at (a)
aborts before anything is written.

sweep_pending_plans() removes plans left in 'pending' past a timeout.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import psycopg
from psycopg import errors as pg_errors

from mmp_etl.notify import UploaderContext
from mmp_etl.object_store import ObjectStore, build_object_path, content_type_for
from mmp_etl.plan_schema import PlanSchema
from mmp_etl.progress import MonotonicProgress, batch_percent
from mmp_etl.registry_match import (
    ReconciliationPlan,
    apply_reconciliation,
    fetch_registry,
    plan_reconciliation,
)
from mmp_etl.shared import (
    CANONICAL_FIELDS,
    DuplicateUploadError,
    MatchResult,
    MmpIngestError,
    MonitoringPlanRecord,
    PersistedEntry,
    PersistenceError,
    RunCounters,
    SiteEntry,
    StorageError,
    UploadCancelledError,
)

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_ENTRY_BATCH_SIZE = 50
DEFAULT_STATEMENT_TIMEOUT_MS = 30_000
DUPLICATE_WINDOW = timedelta(minutes=10)
DEFAULT_PENDING_MAX_AGE = timedelta(hours=1)

STATUS_PENDING = "pending"
STATUS_ACTIVE = "active"

_PLAN_COLS = (
    "id, mmp_id, name, status, entries, processed_entries, file_path, file_url, "
    "original_filename, project_id, month, hub, uploaded_by, uploaded_by_name, uploaded_at"
)
_ENTRY_COLS = ("row_number",) + CANONICAL_FIELDS


# ---------------------------------------------------------------------------
# Inputs / outputs
# ---------------------------------------------------------------------------

@dataclass
class PlanMetadata:
    display_name: str | None = None
    hub: str | None = None
    month: str | None = None
    project_id: str | None = None


@dataclass
class PersistOutcome:
    plan: MonitoringPlanRecord
    entries: list[PersistedEntry]
    matches: dict[str, MatchResult]
    reconciliation: ReconciliationPlan
    warnings: list[str] = field(default_factory=list)


def plan_name_for(filename: str, metadata: PlanMetadata) -> str:
    if metadata.display_name and metadata.display_name.strip():
        return metadata.display_name.strip()
    stem, dot, _ext = filename.rpartition(".")
    return stem if dot and stem else filename


def generate_mmp_id() -> str:
    return f"MMP-{str(int(time.time() * 1000))[5:]}"


# ---------------------------------------------------------------------------
# Duplicate-upload rules
# ---------------------------------------------------------------------------

def check_duplicate_upload(
    conn: psycopg.Connection,
    filename: str,
    metadata: PlanMetadata,
    window: timedelta = DUPLICATE_WINDOW,
) -> list[str]:
    """Raise DuplicateUploadError for a repeated upload; return advisory warnings.

    Filenames are compared case-insensitively ("Plan.csv" repeats "plan.csv").

    With project and month:
      - an active plan with the same original filename -> reject
      - active plans with other filenames -> warn, allow
    Otherwise the same filename uploaded within *window* -> reject.
    """
    if metadata.project_id and metadata.month:
        rows = conn.execute(
            """
            SELECT mmp_id, original_filename
            FROM mmp_files
            WHERE project_id = %s AND month = %s AND status = 'active'
            ORDER BY uploaded_at
            """,
            (metadata.project_id, metadata.month),
        ).fetchall()
        for mmp_id, original in rows:
            if (original or "").lower() == filename.lower():
                raise DuplicateUploadError(
                    f"'{filename}' is already the active plan {mmp_id} for project "
                    f"{metadata.project_id}, month {metadata.month}"
                )
        if rows:
            return [
                f"{len(rows)} active plan(s) already exist for project "
                f"{metadata.project_id}, month {metadata.month}"
            ]
        return []

    row = conn.execute(
        """
        SELECT mmp_id
        FROM mmp_files
        WHERE lower(original_filename) = lower(%s)
          AND status IN ('pending', 'active')
          AND uploaded_at >= now() - make_interval(secs => %s)
        LIMIT 1
        """,
        (filename, window.total_seconds()),
    ).fetchone()
    if row is not None:
        minutes = int(window.total_seconds() // 60)
        raise DuplicateUploadError(
            f"'{filename}' was already uploaded as {row[0]} in the last {minutes} minutes"
        )
    return []


# ---------------------------------------------------------------------------
# Row writers
# ---------------------------------------------------------------------------

def _set_statement_timeout(conn: psycopg.Connection, timeout_ms: int) -> None:
    # transaction-local, like SET LOCAL
    conn.execute("SELECT set_config('statement_timeout', %s, true)", (str(timeout_ms),))


def insert_plan(
    conn: psycopg.Connection,
    name: str,
    entry_count: int,
    object_path: str,
    file_url: str,
    filename: str,
    metadata: PlanMetadata,
    uploader: UploaderContext,
) -> str:
    row = conn.execute(
        """
        INSERT INTO mmp_files
          (mmp_id, name, status, entries, processed_entries,
           file_path, file_url, original_filename,
           project_id, month, hub, uploaded_by, uploaded_by_name)
        VALUES (%s, %s, %s, %s, 0, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (generate_mmp_id(), name, STATUS_PENDING, entry_count,
         object_path, file_url, filename,
         metadata.project_id, metadata.month, metadata.hub,
         uploader.id, uploader.display_name),
    ).fetchone()
    return str(row[0])


def insert_entry_batch(
    conn: psycopg.Connection,
    plan_id: str,
    entries: list[SiteEntry],
    matches: dict[str, MatchResult],
) -> int:
    """Insert one batch of entries; every entry must have a resolved registry site."""
    n_cols = len(_ENTRY_COLS) + 5
    placeholders = ", ".join(
        ["(" + ", ".join(["%s"] * (n_cols - 1)) + ", %s::jsonb)"] * len(entries)
    )
    params: list[Any] = []
    for entry in entries:
        match = matches.get(entry.identity_key())
        if match is None:
            raise PersistenceError(
                "entries", f"row {entry.row_number} has no resolved registry site"
            )
        params.append(plan_id)
        params.append(match.registry_site_id)
        params.append(match.tier)
        params.append(match.confidence)
        params.extend(getattr(entry, col) for col in _ENTRY_COLS)
        params.append(json.dumps(entry.additional_data))
    conn.execute(
        f"""
        INSERT INTO mmp_site_entries
          (mmp_file_id, registry_site_id, match_tier, match_confidence,
           {", ".join(_ENTRY_COLS)}, additional_data)
        VALUES {placeholders}
        """,
        params,
    )
    return len(entries)


def activate_plan(conn: psycopg.Connection, plan_id: str, processed: int) -> None:
    conn.execute(
        """
        UPDATE mmp_files
        SET processed_entries = %s,
            status            = %s,
            updated_at        = now()
        WHERE id = %s
        """,
        (processed, STATUS_ACTIVE, plan_id),
    )


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------

def load_plan(conn: psycopg.Connection, plan_id: str) -> MonitoringPlanRecord | None:
    row = conn.execute(
        f"SELECT {_PLAN_COLS} FROM mmp_files WHERE id = %s", (plan_id,)
    ).fetchone()
    if row is None:
        return None
    col_names = [c.strip() for c in _PLAN_COLS.split(",")]
    return MonitoringPlanRecord.from_row(dict(zip(col_names, row)))


def load_plan_entries(conn: psycopg.Connection, plan_id: str) -> list[PersistedEntry]:
    """Reload a plan's entries in file order."""
    cols = ("id", "registry_site_id", "match_tier", "match_confidence") + _ENTRY_COLS + ("additional_data",)
    rows = conn.execute(
        f"SELECT {', '.join(cols)} FROM mmp_site_entries WHERE mmp_file_id = %s ORDER BY row_number",
        (plan_id,),
    ).fetchall()
    out: list[PersistedEntry] = []
    for raw in rows:
        row = dict(zip(cols, raw))
        entry = SiteEntry(
            additional_data=dict(row["additional_data"] or {}),
            **{col: row[col] for col in _ENTRY_COLS},
        )
        confidence = row["match_confidence"]
        out.append(PersistedEntry(
            id=str(row["id"]),
            registry_site_id=str(row["registry_site_id"]),
            match_tier=row["match_tier"],
            entry=entry,
            match_confidence=float(confidence) if confidence is not None else None,
        ))
    return out


# ---------------------------------------------------------------------------
# Compensation
# ---------------------------------------------------------------------------

def _record_cleanup_error(counters: RunCounters | None, message: str) -> None:
    log.error(message)
    if counters is not None:
        counters.cleanup_errors += 1
        counters.warnings.append(message)


def _compensate(
    conn: psycopg.Connection,
    store: ObjectStore,
    object_path: str,
    plan_issued: bool,
    counters: RunCounters | None,
) -> None:
    """Best-effort undo after rollback; never raises."""
    if plan_issued:
        try:
            conn.execute("DELETE FROM mmp_files WHERE file_path = %s", (object_path,))
            conn.commit()
        except Exception as exc:
            conn.rollback()
            _record_cleanup_error(counters, f"plan cleanup for {object_path} failed: {exc}")
    try:
        store.remove(object_path)
    except Exception as exc:
        _record_cleanup_error(counters, f"object cleanup for {object_path} failed: {exc}")


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

def persist_monitoring_plan(
    conn: psycopg.Connection,
    store: ObjectStore,
    data: bytes,
    filename: str,
    entries: list[SiteEntry],
    schema: PlanSchema,
    uploader: UploaderContext,
    metadata: PlanMetadata | None = None,
    progress: MonotonicProgress | None = None,
    cancel_event: threading.Event | None = None,
    batch_size: int = DEFAULT_ENTRY_BATCH_SIZE,
    statement_timeout_ms: int = DEFAULT_STATEMENT_TIMEOUT_MS,
    object_prefix: str | None = None,
    duplicate_window: timedelta = DUPLICATE_WINDOW,
    counters: RunCounters | None = None,
) -> PersistOutcome:
    """Store the source file and persist the reconciled plan atomically.

    The connection must not be in autocommit mode for the registry changes
    to roll back with the plan.

    Raises:
        StorageError: The source object could not be stored.
        DuplicateUploadError: The upload repeats an existing plan.
        UploadCancelledError: cancel_event was set between batches.
        PersistenceError: Any database failure, tagged with its stage.
    """
    if batch_size <= 0:
        raise ValueError("batch_size must be > 0")
    metadata = metadata or PlanMetadata()
    progress = progress or MonotonicProgress()
    counters = counters if counters is not None else RunCounters()

    # (a) source object
    progress.stage("uploading")
    object_path = build_object_path(object_prefix, filename)
    try:
        file_url = store.put(object_path, data, content_type_for(object_path))
    except Exception as exc:
        raise StorageError("upload", str(exc)) from exc
    log.info("stored %s as %s", filename, object_path)

    stage = "duplicate_check"
    plan_id: str | None = None
    try:
        _set_statement_timeout(conn, statement_timeout_ms)

        # (b)
        warnings = check_duplicate_upload(conn, filename, metadata, duplicate_window)

        # (c)
        stage = "reconcile"
        progress.stage("reconciling")
        reconciliation = plan_reconciliation(entries, fetch_registry(conn), schema)
        matches = apply_reconciliation(conn, reconciliation, uploader.id, batch_size)
        counters.registry_sites_created += sum(1 for s in reconciliation.new_sites if s.inserted)
        counters.registry_sites_linked += reconciliation.linked_count

        # (d)
        stage = "plan_insert"
        plan_id = insert_plan(
            conn, plan_name_for(filename, metadata), len(entries),
            object_path, file_url, filename, metadata, uploader,
        )

        # (e)
        stage = "entries"
        progress.stage("saving")
        batch_count = (len(entries) + batch_size - 1) // batch_size
        processed = 0
        for batch_no in range(batch_count):
            if cancel_event is not None and cancel_event.is_set():
                raise UploadCancelledError(
                    f"upload cancelled after {batch_no} of {batch_count} batches"
                )
            chunk = entries[batch_no * batch_size:(batch_no + 1) * batch_size]
            processed += insert_entry_batch(conn, plan_id, chunk, matches)
            counters.batches_written += 1
            progress(batch_percent(batch_no + 1, batch_count), 100, "saving")

        # (f)
        stage = "finalize"
        progress.stage("finalizing")
        activate_plan(conn, plan_id, processed)

        # (g)
        conn.commit()
    except Exception as exc:
        conn.rollback()
        log.warning("upload of %s failed at %s: %s", filename, stage, exc)
        _compensate(conn, store, object_path, plan_id is not None, counters)
        if isinstance(exc, MmpIngestError):
            raise
        if isinstance(exc, pg_errors.QueryCanceled):
            raise PersistenceError(stage, f"statement timed out: {exc}") from exc
        raise PersistenceError(stage, str(exc)) from exc

    counters.entries_inserted += processed
    plan = load_plan(conn, plan_id)
    stored = load_plan_entries(conn, plan_id)
    conn.commit()
    if plan is None:
        raise PersistenceError("hydrate", f"plan {plan_id} not found after commit")
    return PersistOutcome(
        plan=plan,
        entries=stored,
        matches=matches,
        reconciliation=reconciliation,
        warnings=warnings,
    )


# ---------------------------------------------------------------------------
# Pending-plan sweep
# ---------------------------------------------------------------------------

def sweep_pending_plans(
    conn: psycopg.Connection,
    store: ObjectStore,
    older_than: timedelta = DEFAULT_PENDING_MAX_AGE,
    counters: RunCounters | None = None,
) -> int:
    """Delete plans stuck in 'pending' longer than *older_than*, with their entries and objects."""
    rows = conn.execute(
        """
        DELETE FROM mmp_files
        WHERE status = 'pending'
          AND uploaded_at < now() - make_interval(secs => %s)
        RETURNING mmp_id, file_path
        """,
        (older_than.total_seconds(),),
    ).fetchall()
    conn.commit()
    for mmp_id, file_path in rows:
        log.info("swept pending plan %s (%s)", mmp_id, file_path)
        try:
            store.remove(file_path)
        except Exception as exc:
            _record_cleanup_error(counters, f"object cleanup for {file_path} failed: {exc}")
    if counters is not None:
        counters.plans_swept += len(rows)
    return len(rows)
