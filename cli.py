#!/usr/bin/env python3
"""CLI interface for ledger reconciliation and legacy migration backfills."""

import functools
import importlib.util
import logging
import os
import platform
import sys
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Annotated, Any

import typer
from dotenv import load_dotenv
from pydantic import ValidationError as SettingsError
from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from recon import batch
from recon.backfill import (
    assign_counterparties_by_identity,
    backfill_counterparties,
    import_payment_events,
    sync_rows,
)
from recon.config import Settings, load_settings, normalize_database_url
from recon.demo import DEMO_AS_OF, create_demo_engine, load_demo_fixtures, run_demo
from recon.legacy_dump import PAYMENT_TABLE, load_legacy_payments
from recon.models import Direction
from recon.outcomes import OperationReport, Outcome
from recon.reports.render import render_batch_report, report_to_json
from recon.store import LedgerStore

app = typer.Typer(
    name="recon",
    help="Ledger reconciliation: recompute balances, backfill legacy data",
    no_args_is_help=True,
)


def _mark_success() -> str:
    """Return success indicator (emoji or plain text based on RECON_PLAIN env var)."""
    return "" if os.getenv("RECON_PLAIN") == "1" else "✅"


def _mark_error() -> str:
    """Return error indicator (emoji or plain text based on RECON_PLAIN env var)."""
    return "" if os.getenv("RECON_PLAIN") == "1" else "❌"


@app.callback()
def _load_env() -> None:
    # Skip dotenv loading in tests/CI for hermetic environments
    if os.getenv("RECON_SKIP_DOTENV") != "1":
        load_dotenv(override=False)  # Never override already-set env in CI/tests
    logging.basicConfig(
        level=_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _settings() -> Settings:
    try:
        return load_settings()
    except (ValueError, SettingsError) as e:
        typer.echo(f"{_mark_error()} Invalid configuration: {e}", err=True)
        raise typer.Exit(2) from None


def _require_url(value: str | None, name: str = "DATABASE_URL") -> str:
    if not value:
        typer.echo(
            f"Error: {name} not set. Please set it via environment or .env file.",
            err=True,
        )
        raise typer.Exit(2)
    return value


def _open_store(settings: Settings) -> LedgerStore:
    return LedgerStore.from_url(_require_url(settings.database_url))


def _parse_date(value: str) -> date:
    """Parse date string in YYYY-MM-DD format."""
    try:
        return date.fromisoformat(value)
    except ValueError:
        typer.echo(
            f"{_mark_error()} Invalid date format: {value}. Use YYYY-MM-DD", err=True
        )
        raise typer.Exit(2) from None


def _audit(
    store: LedgerStore,
    event_type: str,
    row_counts: dict[str, Any],
    started_at: str,
    *,
    success: bool,
) -> None:
    # Do not fail the command if event logging fails
    try:
        store.record_event(
            event_type, row_counts, started_at=started_at, success=success
        )
    except Exception as log_error:  # noqa: BLE001
        typer.echo(f"WARNING: ETL event logging failed: {log_error}", err=True)


def _mode(dry_run: bool) -> str:  # noqa: FBT001
    return "DRY RUN" if dry_run else "APPLIED"


def _echo_operation(report: OperationReport) -> None:
    typer.echo(
        f"{report.operation} [{_mode(report.dry_run)}]: "
        f"{report.ok_count} ok, {report.skipped_count} skipped, "
        f"{report.failed_count} failed"
    )
    for item in report.items:
        if item.error:
            typer.echo(f"  {_mark_error()} {item.item_id}: {item.error}", err=True)
        elif item.reason:
            typer.echo(f"  - {item.item_id}: skipped ({item.reason})")
    if report.dry_run:
        typer.echo("Nothing was written. Re-run with --apply to commit.")


def _echo_batch(report: batch.BatchReport) -> None:
    typer.echo(
        f"Reconciled {report.processed_count} entries "
        f"[{'APPLIED' if report.committed else 'DRY RUN'}]: "
        f"{report.updated_count} updated, {report.unchanged_count} unchanged, "
        f"{report.error_count} errors"
    )
    typer.echo(
        f"Totals: owed {report.total_owed:.2f}, paid {report.total_paid:.2f}, "
        f"remaining {report.total_remaining:.2f}"
    )
    for sample in report.samples:
        typer.echo(
            f"  {sample.entry_id}: {sample.previous_status} -> {sample.new_status}, "
            f"paid {sample.previous_paid:.2f} -> {sample.new_paid:.2f}"
        )
    if report.overpaid:
        typer.echo(f"Overpaid entries: {', '.join(report.overpaid)}")
    for failure in report.errors:
        typer.echo(f"  {_mark_error()} {failure.entry_id}: {failure.error}", err=True)


def _finish_operation(report: OperationReport) -> None:
    if report.success:
        typer.echo(f"{_mark_success()} {report.operation} completed")
        return
    typer.echo(
        f"{_mark_error()} {report.operation}: {report.failed_count} item(s) failed",
        err=True,
    )
    raise typer.Exit(1)


@app.command("init-db")
def init_db() -> None:
    """Initialize database schema from recon/schema.sql."""
    store = _open_store(_settings())
    try:
        store.create_schema()
        typer.echo(f"{_mark_success()} Database schema initialized successfully")
    except SQLAlchemyError as e:
        typer.echo(f"{_mark_error()} Database error: {e}", err=True)
        raise typer.Exit(1) from e


def _run_batch(
    store: LedgerStore,
    settings: Settings,
    *,
    direction: Direction | None,
    as_of: date | None,
    apply: bool,
    due_before: date | None = None,
    sample_size: int | None = None,
    workers: int | None = None,
) -> batch.BatchReport:
    entries = store.fetch_entries(direction=direction, due_before=due_before)
    events = store.fetch_events_by_entry()
    return batch.run(
        entries,
        events,
        commit=store.commit if apply else None,
        now=as_of,
        sample_size=sample_size if sample_size is not None else settings.sample_size,
        max_workers=workers if workers is not None else settings.max_workers,
    )


@app.command("reconcile")
def reconcile(
    direction: Annotated[
        Direction | None,
        typer.Option("--direction", help="Only RECEIVABLE or PAYABLE entries"),
    ] = None,
    as_of: Annotated[
        str | None,
        typer.Option("--as-of", help="Reference date for overdue (YYYY-MM-DD)"),
    ] = None,
    due_before: Annotated[
        str | None,
        typer.Option("--due-before", help="Only entries due before (YYYY-MM-DD)"),
    ] = None,
    out: Annotated[
        str | None, typer.Option("--out", help="Write the JSON report to this file")
    ] = None,
    apply: Annotated[
        bool, typer.Option("--apply", help="Commit changed entries (default: dry run)")
    ] = False,
    sample_size: Annotated[
        int | None,
        typer.Option("--sample-size", min=0, help="Changed entries kept as samples"),
    ] = None,
    workers: Annotated[
        int | None,
        typer.Option("--workers", min=1, help="Threads used for recomputation"),
    ] = None,
) -> None:
    """Recompute paid, remaining and status for every ledger entry."""
    settings = _settings()
    reference = _parse_date(as_of) if as_of else None
    due_cutoff = _parse_date(due_before) if due_before else None
    store = _open_store(settings)

    started_at = datetime.now(UTC).isoformat()
    report = None
    try:
        report = _run_batch(
            store,
            settings,
            direction=direction,
            as_of=reference,
            apply=apply,
            due_before=due_cutoff,
            sample_size=sample_size,
            workers=workers,
        )
    except SQLAlchemyError as e:
        typer.echo(f"{_mark_error()} Error during reconciliation: {e}", err=True)
        raise typer.Exit(1) from e
    finally:
        # Always record the run (success or failure) for audit trail
        counts = (
            {
                "processed": report.processed_count,
                "updated": report.updated_count,
                "errors": report.error_count,
                "committed": report.committed,
            }
            if report is not None
            else {"error": "Exception during reconciliation"}
        )
        _audit(
            store,
            "reconcile",
            counts,
            started_at,
            success=report is not None and report.success,
        )

    _echo_batch(report)
    if out:
        out_path = Path(out)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(report_to_json(report), encoding="utf-8")
        typer.echo(f"Results written to {out}")

    if not report.success:
        typer.echo(f"{_mark_error()} Reconciliation finished with errors", err=True)
        raise typer.Exit(1)
    typer.echo(f"{_mark_success()} Reconciliation passed")


@app.command("import-payments")
def import_payments(
    dump: Annotated[
        Path,
        typer.Option("--dump", exists=True, dir_okay=False, help="Legacy SQL dump"),
    ],
    table: Annotated[
        str, typer.Option("--table", help="Legacy payment table in the dump")
    ] = PAYMENT_TABLE,
    apply: Annotated[
        bool, typer.Option("--apply", help="Create events (default: dry run)")
    ] = False,
) -> None:
    """Import legacy payments from a SQL dump as payment events (idempotent)."""
    store = _open_store(_settings())

    legacy = load_legacy_payments(dump.read_text(encoding="utf-8"), table)
    typer.echo(
        f"Found {len(legacy.records) + len(legacy.rejected)} legacy payment(s) "
        f"in `{table}` ({len(legacy.rejected)} unreadable)"
    )

    started_at = datetime.now(UTC).isoformat()
    report = import_payment_events(
        legacy.records, store, rejected=legacy.rejected, dry_run=not apply
    )
    _audit(
        store,
        "import_payments",
        {
            "created": report.ok_count,
            "skipped": report.skipped_count,
            "failed": report.failed_count,
            "dry_run": report.dry_run,
        },
        started_at,
        success=report.success,
    )
    _echo_operation(report)
    _finish_operation(report)


@app.command("backfill-counterparties")
def backfill_counterparties_cmd(
    apply: Annotated[
        bool, typer.Option("--apply", help="Assign counterparties (default: dry run)")
    ] = False,
) -> None:
    """Copy each project's counterparty onto its entries that have none."""
    store = _open_store(_settings())

    started_at = datetime.now(UTC).isoformat()
    report = backfill_counterparties(
        store.fetch_entries(missing_counterparty=True),
        store.parent_counterparties(),
        store.assign_counterparty,
        dry_run=not apply,
    )
    _audit(
        store,
        "backfill_counterparties",
        {"assigned": report.ok_count, "skipped": report.skipped_count},
        started_at,
        success=report.success,
    )
    _echo_operation(report)
    _finish_operation(report)


@app.command("resolve-counterparties")
def resolve_counterparties(
    direction: Annotated[
        Direction | None,
        typer.Option("--direction", help="Only RECEIVABLE or PAYABLE entries"),
    ] = None,
    apply: Annotated[
        bool, typer.Option("--apply", help="Assign counterparties (default: dry run)")
    ] = False,
) -> None:
    """Match legacy tax ID / name hints to known clients and suppliers."""
    store = _open_store(_settings())

    started_at = datetime.now(UTC).isoformat()
    report = assign_counterparties_by_identity(
        store.fetch_entries(direction=direction, missing_counterparty=True),
        store.fetch_candidates_by_kind(),
        store.assign_counterparty,
        dry_run=not apply,
    )
    _audit(
        store,
        "resolve_counterparties",
        {"assigned": report.ok_count, "unresolved": report.skipped_count},
        started_at,
        success=report.success,
    )
    _echo_operation(report)
    _finish_operation(report)


@app.command("sync-rows")
def sync_rows_cmd(
    tables: Annotated[
        list[str], typer.Option("--table", help="Table to copy (repeatable)")
    ],
    exclude: Annotated[
        list[str] | None, typer.Option("--exclude", help="Table to leave out")
    ] = None,
    apply: Annotated[
        bool, typer.Option("--apply", help="Write rows (default: dry run)")
    ] = False,
    yes: Annotated[
        bool, typer.Option("--yes", help="Skip the confirmation prompt")
    ] = False,
) -> None:
    """Copy rows from SOURCE_DATABASE_URL into DATABASE_URL by primary key."""
    settings = _settings()
    source = LedgerStore.from_url(
        _require_url(settings.source_database_url, "SOURCE_DATABASE_URL")
    )
    destination = _open_store(settings)

    selected = [t for t in tables if t not in set(exclude or [])]
    if not selected:
        typer.echo("Nothing to sync: every table was excluded.", err=True)
        raise typer.Exit(2)

    if apply and not yes:
        typer.confirm(
            f"Overwrite rows of {', '.join(selected)} in the destination database?",
            abort=True,
        )

    failed = 0
    for table in selected:
        started_at = datetime.now(UTC).isoformat()
        try:
            rows = source.fetch_rows(table)
            existing = destination.fetch_keys(table)
        except SQLAlchemyError as e:
            typer.echo(f"{_mark_error()} {table}: {e}", err=True)
            failed += 1
            continue

        report = sync_rows(
            table,
            rows,
            existing,
            functools.partial(destination.apply_change, table),
            dry_run=not apply,
        )
        failed += report.failed_count
        _audit(
            destination,
            "sync_rows",
            {
                "table": table,
                "inserted": report.inserted,
                "updated": report.updated,
                "failed": report.failed_count,
                "dry_run": report.dry_run,
            },
            started_at,
            success=report.success,
        )
        typer.echo(
            f"{table} [{_mode(report.dry_run)}]: {report.inserted} inserted, "
            f"{report.updated} updated, {report.failed_count} failed"
        )
        for item in report.with_outcome(Outcome.FAILED):
            typer.echo(f"  {_mark_error()} {item.item_id}: {item.error}", err=True)

    if failed:
        typer.echo(f"{_mark_error()} Sync finished with {failed} failure(s)", err=True)
        raise typer.Exit(1)
    typer.echo(f"{_mark_success()} Sync completed")


def _validate_report_formats(formats: str) -> list[str]:
    """Validate and parse report formats."""
    requested_formats = [f.strip().lower() for f in formats.split(",")]
    if not all(f in ["html", "json"] for f in requested_formats):
        typer.echo(
            f"{_mark_error()} Invalid format. Use: html,json or html or json", err=True
        )
        raise typer.Exit(2)
    return requested_formats


@app.command("report")
def report(
    direction: Annotated[
        Direction | None,
        typer.Option("--direction", help="Only RECEIVABLE or PAYABLE entries"),
    ] = None,
    as_of: Annotated[
        str | None,
        typer.Option("--as-of", help="Reference date for overdue (YYYY-MM-DD)"),
    ] = None,
    due_before: Annotated[
        str | None,
        typer.Option("--due-before", help="Only entries due before (YYYY-MM-DD)"),
    ] = None,
    formats: Annotated[
        str,
        typer.Option("--formats", help="Comma-separated formats (html,json)"),
    ] = "html,json",
    out: Annotated[str, typer.Option("--out", help="Output directory")] = "./build",
) -> None:
    """Render a dry-run reconciliation as HTML and/or JSON."""
    settings = _settings()
    requested_formats = _validate_report_formats(formats)
    reference = _parse_date(as_of) if as_of else None
    due_cutoff = _parse_date(due_before) if due_before else None
    store = _open_store(settings)

    try:
        batch_report = _run_batch(
            store,
            settings,
            direction=direction,
            as_of=reference,
            apply=False,
            due_before=due_cutoff,
        )
    except SQLAlchemyError as e:
        typer.echo(f"{_mark_error()} Error generating reports: {e}", err=True)
        raise typer.Exit(1) from e

    out_path = Path(out)
    out_path.mkdir(parents=True, exist_ok=True)
    label = (reference or datetime.now(UTC).date()).isoformat()

    if "html" in requested_formats:
        html_path = out_path / f"recon_{label}.html"
        html_path.write_text(
            render_batch_report(batch_report, as_of=label), encoding="utf-8"
        )
        typer.echo(f"{_mark_success()} Generated: {html_path}")
    if "json" in requested_formats:
        json_path = out_path / f"recon_{label}.json"
        json_path.write_text(report_to_json(batch_report), encoding="utf-8")
        typer.echo(f"{_mark_success()} Generated: {json_path}")

    typer.echo(f"Reports generated in {out_path}")


@app.command("demo")
def demo(
    out: Annotated[
        str, typer.Option("--out", help="Output directory for demo artifacts")
    ] = "./build",
) -> None:
    """Run the offline demo (SQLite + fixtures) end to end."""
    typer.echo("🚀 Starting offline demo (SQLite + fixtures)...")
    try:
        engine = create_demo_engine()
        with engine.begin() as conn:
            load_demo_fixtures(conn)
        typer.echo(f"{_mark_success()} Demo database initialized with fixtures")

        result = run_demo(LedgerStore(engine))
    except Exception as e:
        typer.echo(f"{_mark_error()} Demo failed: {e}", err=True)
        raise typer.Exit(1) from e

    for step in (result.imported, result.backfilled, result.resolved):
        typer.echo(
            f"{step.operation}: {step.ok_count} ok, {step.skipped_count} skipped, "
            f"{step.failed_count} failed"
        )
    _echo_batch(result.reconciled)

    out_path = Path(out)
    out_path.mkdir(parents=True, exist_ok=True)
    recon_file = out_path / "demo_recon.json"
    recon_file.write_text(report_to_json(result.reconciled), encoding="utf-8")
    html_file = out_path / "demo_recon.html"
    html_file.write_text(
        render_batch_report(
            result.reconciled, title="Demo reconciliation", as_of=DEMO_AS_OF.isoformat()
        ),
        encoding="utf-8",
    )
    typer.echo(f"{_mark_success()} Reconciliation: {recon_file}")
    typer.echo(f"{_mark_success()} Report: {html_file}")

    if not result.reconciled.success:
        typer.echo(f"{_mark_error()} Reconciliation: FAILED", err=True)
        raise typer.Exit(1)
    typer.echo(f"\n{_mark_success()} Demo completed successfully using SQLite (offline)")


def _check_dependency(module_name: str) -> bool:
    """Check if a module is available without importing it."""
    return importlib.util.find_spec(module_name) is not None


def _check_python_version() -> bool:
    """Check Python version requirement."""
    py_version = sys.version_info
    version_str = f"{py_version.major}.{py_version.minor}.{py_version.micro}"
    typer.echo(f"Python version: {version_str}")
    if py_version < (3, 11):
        typer.echo(f"{_mark_error()} Python 3.11+ required, found {version_str}")
        return False
    typer.echo(f"{_mark_success()} Python version OK")
    return True


def _check_database(name: str = "DATABASE_URL") -> bool:
    """Check database connection if configured."""
    database_url = os.getenv(name)
    if not database_url:
        typer.echo(f"i  {name} not set (OK for offline demo)")
        return True

    typer.echo(f"{name}: {database_url[:20]}...")
    try:
        engine = create_engine(normalize_database_url(database_url))
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:  # noqa: BLE001
        typer.echo(f"{_mark_error()} Database connection failed: {e}")
        return False
    else:
        typer.echo(f"{_mark_success()} Database connection OK")
        return True


def _check_dependencies() -> bool:
    """Check Python package dependencies."""
    modules = ("jinja2", "pydantic", "sqlalchemy", "yaml")
    missing = [m for m in modules if not _check_dependency(m)]
    if missing:
        typer.echo(f"{_mark_error()} Missing core dependencies: {', '.join(missing)}")
        return False
    typer.echo(f"{_mark_success()} Core dependencies available")

    if _check_dependency("psycopg"):
        typer.echo(f"{_mark_success()} psycopg available (PostgreSQL support)")
    else:
        typer.echo("i  psycopg not available (SQLite only)")
    return True


@app.command("doctor")
def doctor() -> None:
    """Run preflight checks for system dependencies and configuration."""
    typer.echo("🔍 Running system preflight checks...\n")
    typer.echo(f"Platform: {platform.system()} {platform.release()}")

    checks = [
        _check_python_version(),
        _check_database("DATABASE_URL"),
        _check_database("SOURCE_DATABASE_URL"),
        _check_dependencies(),
    ]

    typer.echo()
    if all(checks):
        typer.echo(f"{_mark_success()} All checks passed! System ready for recon")
        typer.echo("\nRecommended next steps:")
        typer.echo("  recon demo              # Offline quick start")
        typer.echo("  recon init-db           # Create the schema")
        typer.echo("  recon reconcile         # Dry run, then --apply")
    else:
        typer.echo(f"{_mark_error()} Some checks failed. See errors above.")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
