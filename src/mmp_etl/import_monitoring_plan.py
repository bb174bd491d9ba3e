"""mmp_etl.import_monitoring_plan

Pipeline entry point and CLI for monitoring plan ingestion.

Modes (--mode):
  upload         parse, validate, reconcile and persist one plan file (default)
  sweep_pending  delete plans left in 'pending' past --pending-max-age-minutes

Usage (upload):
    python -m mmp_etl.import_monitoring_plan \\
        --mode upload \\
        --db-dsn "$DB_DSN" \\
        --file-path "plans/MMP_West_Darfur_June.csv" \\
        --hub "El Fasher Hub" \\
        --month "2025-06" \\
        --project-id "3f2c..." \\
        --uploader-id "8a1d..." \\
        --gcs-bucket mmp-files --gcs-prefix uploads

Usage (sweep_pending):
    python -m mmp_etl.import_monitoring_plan \\
        --mode sweep_pending \\
        --db-dsn "$DB_DSN" \\
        --storage-local-dir ./artifacts/objects
"""

from __future__ import annotations

import logging
import os
import sys
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

import click
import psycopg

from mmp_etl.notify import (
    EVENT_PLAN_UPLOADED,
    LoggingNotificationSink,
    NotificationSink,
    UploaderContext,
    WebhookNotificationSink,
    notify_safely,
    resolve_uploader,
)
from mmp_etl.object_store import (
    DEFAULT_BUCKET_PREFIX,
    GcsObjectStore,
    LocalObjectStore,
    NullObjectStore,
    ObjectStore,
)
from mmp_etl.parse_plan_file import parse_plan_bytes
from mmp_etl.persist_plan import (
    DEFAULT_ENTRY_BATCH_SIZE,
    DEFAULT_STATEMENT_TIMEOUT_MS,
    PlanMetadata,
    persist_monitoring_plan,
    sweep_pending_plans,
)
from mmp_etl.plan_schema import PlanSchema, PlanSchemaValidationError, load_plan_schema
from mmp_etl.progress import EchoProgress, MonotonicProgress, ProgressReporter
from mmp_etl.registry_match import fetch_registry, plan_reconciliation
from mmp_etl.shared import (
    DuplicateUploadError,
    Issue,
    IssueWriter,
    MmpIngestError,
    MonitoringPlanRecord,
    PersistedEntry,
    RunCounters,
    StorageError,
    UploadCancelledError,
    ValidationError,
    write_run_report,
)
from mmp_etl.validation import ValidationReport, validate

log = logging.getLogger(__name__)

DB_DSN_ENV = "MMP_DB_DSN"


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class UploadResult:
    success: bool
    plan: MonitoringPlanRecord | None = None
    entries: list[PersistedEntry] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error: str | None = None
    # type,row,column,category,message; set only when validation blocked the upload
    issues_report: str | None = None
    issues: list[Issue] = field(default_factory=list)
    counters: RunCounters = field(default_factory=RunCounters)


def _validation_failure_message(report: ValidationReport) -> str:
    first = report.errors[0]
    where = f"row {first.row}: " if first.row is not None else ""
    more = len(report.errors) - 1
    suffix = f" (and {more} more)" if more else ""
    return f"{report.headline()}. {where}{first.message}{suffix}"


def _uploaded_payload(result: UploadResult, uploader: UploaderContext, created: int, linked: int) -> dict:
    plan = result.plan
    return {
        "plan_id": plan.id,
        "mmp_id": plan.mmp_id,
        "name": plan.name,
        "entries": plan.entries,
        "project_id": plan.project_id,
        "month": plan.month,
        "hub": plan.hub,
        "uploaded_by": uploader.id,
        "uploaded_by_name": uploader.display_name,
        "new_sites": created,
        "linked_sites": linked,
    }


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def upload_monitoring_plan(
    conn: psycopg.Connection,
    store: ObjectStore,
    data: bytes,
    filename: str,
    uploader: UploaderContext,
    metadata: PlanMetadata | None = None,
    schema: PlanSchema | None = None,
    progress: ProgressReporter | None = None,
    notifier: NotificationSink | None = None,
    cancel_event: threading.Event | None = None,
    batch_size: int = DEFAULT_ENTRY_BATCH_SIZE,
    counters: RunCounters | None = None,
    object_prefix: str | None = DEFAULT_BUCKET_PREFIX,
    statement_timeout_ms: int = DEFAULT_STATEMENT_TIMEOUT_MS,
    dry_run: bool = False,
) -> UploadResult:
    """Run parse -> validate -> persist for one plan file.

    Expected failures (validation, duplicates, storage, database, cancel) come
    back as UploadResult(success=False) with one descriptive message.  A dry
    run stops after planning the reconciliation and writes nothing.
    """
    metadata = metadata or PlanMetadata()
    schema = schema or load_plan_schema()
    counters = counters if counters is not None else RunCounters()
    tracker = MonotonicProgress(progress)

    tracker.stage("parsing")
    parsed = parse_plan_bytes(data, schema)
    counters.rows_read += parsed.rows_read
    counters.rows_skipped_empty += parsed.rows_skipped_empty
    counters.entries_parsed += len(parsed.entries)

    tracker.stage("validating")
    report = validate(parsed, schema, metadata.hub)
    counters.blocking_issues += len(report.errors)
    counters.advisory_issues += len(report.warnings)
    try:
        report.raise_for_errors()
    except ValidationError:
        log.info("validation blocked %s: %d errors", filename, len(report.errors))
        return UploadResult(
            success=False,
            error=_validation_failure_message(report),
            issues_report=report.to_csv(),
            issues=report.issues,
            warnings=report.warning_lines(),
            counters=counters,
        )

    warnings = report.warning_lines()
    issues = list(report.warnings)

    if dry_run:
        tracker.stage("reconciling")
        try:
            reconciliation = plan_reconciliation(parsed.entries, fetch_registry(conn), schema)
        finally:
            conn.rollback()
        warnings.append(reconciliation.summary_message())
        tracker.stage("done")
        return UploadResult(
            success=True,
            warnings=warnings,
            issues=issues + reconciliation.issues(),
            counters=counters,
        )

    try:
        outcome = persist_monitoring_plan(
            conn, store, data, filename, parsed.entries, schema, uploader,
            metadata=metadata,
            progress=tracker,
            cancel_event=cancel_event,
            batch_size=batch_size,
            statement_timeout_ms=statement_timeout_ms,
            object_prefix=object_prefix,
            counters=counters,
        )
    except DuplicateUploadError as exc:
        return UploadResult(success=False, error=f"Duplicate upload: {exc}", warnings=warnings, counters=counters)
    except UploadCancelledError as exc:
        return UploadResult(success=False, error=f"Upload cancelled: {exc}", warnings=warnings, counters=counters)
    except StorageError as exc:
        return UploadResult(success=False, error=f"Failed to store file ({exc})", warnings=warnings, counters=counters)
    except MmpIngestError as exc:
        return UploadResult(success=False, error=f"Failed to save monitoring plan ({exc})", warnings=warnings, counters=counters)

    warnings.extend(outcome.warnings)
    warnings.append(outcome.reconciliation.summary_message())
    tracker.stage("done")

    result = UploadResult(
        success=True,
        plan=outcome.plan,
        entries=outcome.entries,
        warnings=warnings,
        issues=issues + outcome.reconciliation.issues(),
        counters=counters,
    )
    notify_safely(
        notifier,
        EVENT_PLAN_UPLOADED,
        _uploaded_payload(
            result, uploader,
            counters.registry_sites_created, outcome.reconciliation.linked_count,
        ),
        counters,
    )
    return result


# ---------------------------------------------------------------------------
# CLI helpers
# ---------------------------------------------------------------------------

def _build_store(
    run_id: str,
    gcs_bucket: str | None,
    storage_local_dir: str | None,
    dry_run: bool,
) -> ObjectStore:
    if dry_run:
        return NullObjectStore()
    if storage_local_dir:
        return LocalObjectStore(base_dir=Path(storage_local_dir))
    if gcs_bucket:
        return GcsObjectStore(bucket_name=gcs_bucket)
    click.echo(
        f"[{run_id}] ERROR: no object store configured; "
        "provide --gcs-bucket or --storage-local-dir.",
        err=True,
    )
    sys.exit(1)


def _run_upload(
    run_id: str,
    conn: psycopg.Connection,
    store: ObjectStore,
    schema: PlanSchema,
    counters: RunCounters,
    file_path: str,
    uploader_id: str | None,
    metadata: PlanMetadata,
    issues_path: str,
    webhook_url: str | None,
    object_prefix: str,
    batch_size: int,
    dry_run: bool,
) -> bool:
    path = Path(file_path)
    try:
        data = path.read_bytes()
    except OSError as exc:
        click.echo(f"[{run_id}] FATAL: cannot read {file_path}: {exc}", err=True)
        return False

    if uploader_id:
        uploader = resolve_uploader(conn, uploader_id)
    else:
        uploader = UploaderContext(id="cli", display_name=os.environ.get("USER", "cli"))
    notifier: NotificationSink = (
        WebhookNotificationSink(url=webhook_url) if webhook_url else LoggingNotificationSink()
    )

    result = upload_monitoring_plan(
        conn, store, data, path.name, uploader,
        metadata=metadata,
        schema=schema,
        progress=EchoProgress(run_id),
        notifier=notifier,
        batch_size=batch_size,
        counters=counters,
        object_prefix=object_prefix,
        dry_run=dry_run,
    )

    if result.issues:
        writer = IssueWriter(Path(issues_path))
        try:
            writer.write_all(result.issues)
        finally:
            writer.close()
        click.echo(f"[{run_id}] {len(result.issues)} issue(s) written to {issues_path}")

    for line in result.warnings:
        click.echo(f"[{run_id}] WARNING: {line}")
    if not result.success:
        click.echo(f"[{run_id}] FAILED: {result.error}", err=True)
        return False
    if result.plan is not None:
        click.echo(
            f"[{run_id}] Plan {result.plan.mmp_id} ({result.plan.name}) saved "
            f"with {len(result.entries)} entries; status={result.plan.status}"
        )
    else:
        click.echo(f"[{run_id}] [dry-run] {counters.entries_parsed} entries validated; nothing written.")
    return True


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="upload",
    type=click.Choice(["upload", "sweep_pending"]),
    show_default=True,
    help="Pipeline mode",
)
@click.option("--db-dsn", default=None, help=f"PostgreSQL DSN (falls back to ${DB_DSN_ENV})")
# upload flags
@click.option("--file-path", default=None, type=click.Path(), help="[upload] Monitoring plan CSV")
@click.option("--display-name", default=None, help="[upload] Plan name; defaults to the file name")
@click.option("--hub", default=None, help="[upload] Hub office the plan belongs to")
@click.option("--month", default=None, help="[upload] Reporting month, e.g. 2025-06")
@click.option("--project-id", default=None, help="[upload] Owning project id")
@click.option("--uploader-id", default=None, help="[upload] profiles.id of the uploader")
@click.option("--batch-size", default=DEFAULT_ENTRY_BATCH_SIZE, type=int, show_default=True, help="[upload] Entries per insert batch")
@click.option("--schema-file", default=None, type=click.Path(), help="[upload] Column schema YAML (default config/plan_schema.yml)")
@click.option(
    "--issues-path",
    default="./artifacts/issues/mmp_issues.csv",
    show_default=True,
    help="[upload] Where to write the validation issue report",
)
@click.option("--webhook-url", default=None, help="[upload] POST an mmp.uploaded notification here")
# storage flags
@click.option("--gcs-bucket", default=None, help="GCS bucket for source files")
@click.option("--gcs-prefix", default=DEFAULT_BUCKET_PREFIX, show_default=True, help="Object prefix inside the bucket")
@click.option("--storage-local-dir", default=None, type=click.Path(), help="Store objects in a local dir instead of GCS (for testing)")
# sweep flags
@click.option("--pending-max-age-minutes", default=60, type=int, show_default=True, help="[sweep_pending] Age after which a pending plan is removed")
# shared flags
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--verbose", is_flag=True, default=False, help="Debug logging")
def main(
    mode: str,
    db_dsn: str | None,
    file_path: str | None,
    display_name: str | None,
    hub: str | None,
    month: str | None,
    project_id: str | None,
    uploader_id: str | None,
    batch_size: int,
    schema_file: str | None,
    issues_path: str,
    webhook_url: str | None,
    gcs_bucket: str | None,
    gcs_prefix: str,
    storage_local_dir: str | None,
    pending_max_age_minutes: int,
    dry_run: bool,
    run_id: str | None,
    verbose: bool,
) -> None:
    """Monitoring plan ingestion CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()
    counters = RunCounters()

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    db_dsn = db_dsn or os.environ.get(DB_DSN_ENV)
    if not db_dsn:
        click.echo(f"[{run_id}] FATAL: --db-dsn or ${DB_DSN_ENV} is required", err=True)
        sys.exit(1)
    if batch_size <= 0:
        click.echo(f"[{run_id}] FATAL: --batch-size must be > 0", err=True)
        sys.exit(1)

    store = _build_store(run_id, gcs_bucket, storage_local_dir, dry_run)
    conn = psycopg.connect(db_dsn, autocommit=False)
    ok = True
    try:
        if mode == "upload":
            if not file_path:
                click.echo(f"[{run_id}] FATAL: upload mode requires: --file-path", err=True)
                sys.exit(1)
            try:
                schema = load_plan_schema(Path(schema_file) if schema_file else None)
            except (PlanSchemaValidationError, FileNotFoundError) as exc:
                click.echo(f"[{run_id}] FATAL: schema file: {exc}", err=True)
                sys.exit(1)
            click.echo(f"[{run_id}] Schema {schema.version} (sha256 {schema.yaml_hash[:12]})")
            ok = _run_upload(
                run_id, conn, store, schema, counters,
                file_path=file_path,
                uploader_id=uploader_id,
                metadata=PlanMetadata(
                    display_name=display_name, hub=hub, month=month, project_id=project_id,
                ),
                issues_path=issues_path,
                webhook_url=webhook_url,
                object_prefix=gcs_prefix,
                batch_size=batch_size,
                dry_run=dry_run,
            )
        elif mode == "sweep_pending":
            if dry_run:
                click.echo(f"[{run_id}] [dry-run] sweep_pending skipped.")
            else:
                swept = sweep_pending_plans(
                    conn, store, timedelta(minutes=pending_max_age_minutes), counters,
                )
                click.echo(f"[{run_id}] Swept {swept} pending plan(s)")
    finally:
        conn.close()

    report_path = write_run_report(
        run_id, started_at, mode, dry_run,
        {"file_path": file_path, "schema_file": schema_file},
        counters,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if not ok or counters.cleanup_errors > 0:
        sys.exit(1)


if __name__ == "__main__":
    main()
