"""Offline demo: in-memory SQLite loaded with fixtures, run end to end."""

from __future__ import annotations

import json
import logging
from datetime import date
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel
from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from recon import batch
from recon.backfill import (
    assign_counterparties_by_identity,
    backfill_counterparties,
    import_payment_events,
)
from recon.legacy_dump import load_legacy_payments
from recon.outcomes import OperationReport  # noqa: TC001
from recon.store import LedgerStore

if TYPE_CHECKING:
    from sqlalchemy import Connection
    from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

FIXTURES_DIR = Path(__file__).parent.parent / "fixtures" / "demo"
DEMO_AS_OF = date(2024, 3, 15)

# Insert order follows foreign keys
_FIXTURE_TABLES = (
    ("counterparties.json", "counterparties"),
    ("projects.json", "projects"),
    ("ledger_entries.json", "ledger_entries"),
    ("payment_events.json", "payment_events"),
)


def create_demo_engine() -> Engine:
    """Create an in-memory SQLite engine with the ledger schema applied.

    A single shared connection keeps the in-memory database alive across
    checkouts and threads.
    """
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    with engine.begin() as conn:
        conn.execute(text("PRAGMA foreign_keys = ON"))
    LedgerStore(engine).create_schema()
    return engine


def load_demo_fixtures(conn: Connection, fixtures_dir: Path = FIXTURES_DIR) -> None:
    """Load demo fixture rows into an initialized database."""
    for filename, table in _FIXTURE_TABLES:
        fixture_file = fixtures_dir / filename
        if not fixture_file.exists():
            continue
        rows = json.loads(fixture_file.read_text(encoding="utf-8"))
        for row in rows:
            columns = ", ".join(row)
            params = ", ".join(f":{column}" for column in row)
            conn.execute(
                text(f"INSERT INTO {table} ({columns}) VALUES ({params})"),  # noqa: S608
                row,
            )


def load_demo_dump(fixtures_dir: Path = FIXTURES_DIR) -> str:
    return (fixtures_dir / "legacy_backup.sql").read_text(encoding="utf-8")


class DemoRun(BaseModel):
    imported: OperationReport
    backfilled: OperationReport
    resolved: OperationReport
    reconciled: batch.BatchReport


def run_demo(store: LedgerStore, *, as_of: date = DEMO_AS_OF) -> DemoRun:
    """Run the whole migration and reconciliation flow against `store`.

    Steps: import legacy payments, propagate counterparties from projects,
    resolve the rest by legacy identity, then reconcile and commit.
    """
    legacy = load_legacy_payments(load_demo_dump())
    imported = import_payment_events(legacy.records, store, rejected=legacy.rejected)

    backfilled = backfill_counterparties(
        store.fetch_entries(missing_counterparty=True),
        store.parent_counterparties(),
        store.assign_counterparty,
    )

    resolved = assign_counterparties_by_identity(
        store.fetch_entries(missing_counterparty=True),
        store.fetch_candidates_by_kind(),
        store.assign_counterparty,
    )

    reconciled = batch.run(
        store.fetch_entries(),
        store.fetch_events_by_entry(),
        commit=store.commit,
        now=as_of,
    )
    logger.info("Demo finished: %d entries reconciled", reconciled.processed_count)
    return DemoRun(
        imported=imported,
        backfilled=backfilled,
        resolved=resolved,
        reconciled=reconciled,
    )
