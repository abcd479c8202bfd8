"""SQL storage collaborator: reads entries and events, commits results.

One transaction per write so a rejected commit never affects other entries.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from sqlalchemy import (
    MetaData,
    Table,
    bindparam,
    create_engine,
    insert,
    select,
    text,
    update,
)
from sqlalchemy.exc import SQLAlchemyError

from recon.amounts import ZERO, quantize_cents, to_decimal
from recon.backfill import Insert
from recon.config import normalize_database_url
from recon.errors import CommitFailure
from recon.models import (
    CounterpartyCandidate,
    CounterpartyKind,
    Direction,
    LedgerEntry,
    PaymentEvent,
    PaymentMethod,
    Status,
)

if TYPE_CHECKING:
    from collections.abc import Collection

    from sqlalchemy.engine import Engine, Row

    from recon.backfill import RowChange
    from recon.models import ReconciliationResult

# Exact decimal text and ISO dates for SQLite (no float rounding)
sqlite3.register_adapter(Decimal, str)
sqlite3.register_adapter(date, date.isoformat)
sqlite3.register_adapter(datetime, datetime.isoformat)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"

_ENTRY_COLUMNS = """
    id, direction, concept, counterparty_id, parent_id, owed, paid, remaining,
    due_date, status, legacy_id, legacy_tax_id, legacy_name
"""

# Never copied over an existing destination row
_SYNC_PROTECTED_COLUMNS = frozenset({"created_at"})


def _as_date(value: Any) -> date | None:  # noqa: ANN401
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _db_error(error: SQLAlchemyError) -> str:
    return str(getattr(error, "orig", None) or error)


def _row_to_entry(row: Row[Any]) -> LedgerEntry:
    return LedgerEntry(
        id=str(row.id),
        direction=Direction(row.direction),
        concept=row.concept or "",
        counterparty_id=row.counterparty_id,
        parent_id=row.parent_id,
        owed=to_decimal(row.owed),
        paid=to_decimal(row.paid) if row.paid is not None else ZERO,
        remaining=to_decimal(row.remaining) if row.remaining is not None else None,
        due_date=_as_date(row.due_date),
        status=Status(row.status),
        legacy_id=row.legacy_id,
        legacy_tax_id=row.legacy_tax_id,
        legacy_name=row.legacy_name,
    )


def _row_to_event(row: Row[Any]) -> PaymentEvent:
    return PaymentEvent(
        id=str(row.id),
        entry_id=str(row.entry_id),
        amount=to_decimal(row.amount),
        paid_on=_as_date(row.paid_on),
        method=PaymentMethod(row.method),
        legacy_id=row.legacy_id,
        notes=row.notes,
    )


class LedgerStore:
    """Ledger entries, payment events and counterparties in a SQL database."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._tables: dict[str, Table] = {}

    @classmethod
    def from_url(cls, database_url: str) -> LedgerStore:
        return cls(create_engine(normalize_database_url(database_url)))

    def create_schema(self) -> None:
        """Apply schema.sql statement by statement (idempotent)."""
        statements = [
            s.strip() for s in SCHEMA_PATH.read_text(encoding="utf-8").split(";")
        ]
        with self.engine.begin() as conn:
            for statement in statements:
                if statement:
                    conn.execute(text(statement))

    # Reads

    def fetch_entries(
        self,
        *,
        direction: Direction | None = None,
        due_before: date | None = None,
        missing_counterparty: bool = False,
    ) -> list[LedgerEntry]:
        """Fetch ledger entries in id order, optionally filtered."""
        clauses = []
        params: dict[str, Any] = {}
        if direction is not None:
            clauses.append("direction = :direction")
            params["direction"] = direction.value
        if due_before is not None:
            clauses.append("due_date < :due_before")
            params["due_before"] = due_before
        if missing_counterparty:
            clauses.append("counterparty_id IS NULL")

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        query = text(
            f"SELECT {_ENTRY_COLUMNS} FROM ledger_entries {where} ORDER BY id"  # noqa: S608
        )

        with self.engine.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_entry(row) for row in rows]

    def fetch_events_by_entry(
        self, entry_ids: Collection[str] | None = None
    ) -> dict[str, list[PaymentEvent]]:
        """Group payment events by owning entry, in payment-date order."""
        base = """
            SELECT id, entry_id, amount, paid_on, method, legacy_id, notes
            FROM payment_events
        """
        if entry_ids is None:
            query = text(f"{base} ORDER BY entry_id, paid_on, id")
            params: dict[str, Any] = {}
        else:
            if not entry_ids:
                return {}
            query = text(
                f"{base} WHERE entry_id IN :ids ORDER BY entry_id, paid_on, id"
            ).bindparams(bindparam("ids", expanding=True))
            params = {"ids": list(entry_ids)}

        grouped: dict[str, list[PaymentEvent]] = {}
        with self.engine.connect() as conn:
            for row in conn.execute(query, params):
                event = _row_to_event(row)
                grouped.setdefault(event.entry_id, []).append(event)
        return grouped

    def fetch_candidates(self, kind: CounterpartyKind) -> list[CounterpartyCandidate]:
        """Counterparties of one kind, oldest first (the resolver tie-break order)."""
        query = text("""
            SELECT id, name, tax_id
            FROM counterparties
            WHERE kind = :kind
            ORDER BY created_at, id
        """)
        with self.engine.connect() as conn:
            rows = conn.execute(query, {"kind": kind.value}).fetchall()
        return [
            CounterpartyCandidate(id=str(r.id), name=r.name, tax_id=r.tax_id)
            for r in rows
        ]

    def fetch_candidates_by_kind(
        self,
    ) -> dict[CounterpartyKind, list[CounterpartyCandidate]]:
        return {kind: self.fetch_candidates(kind) for kind in CounterpartyKind}

    def parent_counterparties(self) -> dict[str, str | None]:
        """Project id to the counterparty it is billed to."""
        with self.engine.connect() as conn:
            rows = conn.execute(text("SELECT id, counterparty_id FROM projects"))
            return {str(r.id): r.counterparty_id for r in rows}

    def map_legacy_entry(self, legacy_ref: str) -> str | None:
        with self.engine.connect() as conn:
            result = conn.execute(
                text("SELECT id FROM ledger_entries WHERE legacy_id = :ref"),
                {"ref": legacy_ref},
            ).scalar()
        return str(result) if result is not None else None

    def legacy_payment_exists(self, entry_id: str, legacy_id: str) -> bool:
        with self.engine.connect() as conn:
            existing = conn.execute(
                text(
                    "SELECT 1 FROM payment_events "
                    "WHERE entry_id = :entry_id AND legacy_id = :legacy_id"
                ),
                {"entry_id": entry_id, "legacy_id": legacy_id},
            ).fetchone()
        return existing is not None

    # Writes

    def commit(self, result: ReconciliationResult) -> None:
        """Persist paid/remaining/status for one entry atomically.

        Raises:
            CommitFailure: If the entry is gone or the database rejects the write
        """
        try:
            with self.engine.begin() as conn:
                updated = conn.execute(
                    text("""
                        UPDATE ledger_entries
                        SET paid = :paid, remaining = :remaining, status = :status,
                            updated_at = CURRENT_TIMESTAMP
                        WHERE id = :id
                    """),
                    {
                        "id": result.entry_id,
                        "paid": quantize_cents(result.new_paid),
                        "remaining": quantize_cents(result.new_remaining),
                        "status": result.new_status.value,
                    },
                )
                if updated.rowcount == 0:
                    raise CommitFailure(result.entry_id, "entry not found")  # noqa: TRY301
        except SQLAlchemyError as e:
            raise CommitFailure(result.entry_id, _db_error(e)) from e

    def create_payment_event(self, event: PaymentEvent) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text("""
                    INSERT INTO payment_events
                    (id, entry_id, amount, paid_on, method, legacy_id, notes)
                    VALUES (:id, :entry_id, :amount, :paid_on, :method,
                            :legacy_id, :notes)
                """),
                {
                    "id": event.id,
                    "entry_id": event.entry_id,
                    "amount": quantize_cents(event.amount),
                    "paid_on": event.paid_on,
                    "method": event.method.value,
                    "legacy_id": event.legacy_id,
                    "notes": event.notes,
                },
            )

    def assign_counterparty(self, entry_id: str, counterparty_id: str) -> None:
        """Set the counterparty of an entry that has none yet.

        Raises:
            CommitFailure: If the entry is missing or already assigned
        """
        try:
            with self.engine.begin() as conn:
                updated = conn.execute(
                    text("""
                        UPDATE ledger_entries
                        SET counterparty_id = :counterparty_id,
                            updated_at = CURRENT_TIMESTAMP
                        WHERE id = :id AND counterparty_id IS NULL
                    """),
                    {"id": entry_id, "counterparty_id": counterparty_id},
                )
                if updated.rowcount == 0:
                    raise CommitFailure(entry_id, "entry missing or already assigned")  # noqa: TRY301
        except SQLAlchemyError as e:
            raise CommitFailure(entry_id, _db_error(e)) from e

    def record_event(
        self,
        event_type: str,
        row_counts: dict[str, Any],
        *,
        started_at: str,
        finished_at: str | None = None,
        success: bool,
    ) -> None:
        """Record an audit row in etl_events."""
        with self.engine.begin() as conn:
            conn.execute(
                text("""
                    INSERT INTO etl_events (
                        id, event_type, row_counts, started_at, finished_at, success
                    )
                    VALUES (
                        :id, :event_type, :row_counts, :started_at,
                        :finished_at, :success
                    )
                """),
                {
                    "id": str(uuid4()),
                    "event_type": event_type,
                    "row_counts": json.dumps(row_counts, default=str, sort_keys=True),
                    "started_at": started_at,
                    "finished_at": finished_at or datetime.now(UTC).isoformat(),
                    "success": success,
                },
            )

    # Row sync

    def table(self, name: str) -> Table:
        if name not in self._tables:
            self._tables[name] = Table(name, MetaData(), autoload_with=self.engine)
        return self._tables[name]

    def fetch_rows(self, table_name: str) -> list[dict[str, Any]]:
        tbl = self.table(table_name)
        with self.engine.connect() as conn:
            return [dict(row._mapping) for row in conn.execute(select(tbl))]

    def fetch_keys(self, table_name: str, key: str = "id") -> set[Any]:
        tbl = self.table(table_name)
        with self.engine.connect() as conn:
            return set(conn.execute(select(tbl.c[key])).scalars())

    def apply_change(self, table_name: str, change: RowChange, key: str = "id") -> None:
        """Apply one typed insert or update in its own transaction."""
        tbl = self.table(table_name)
        with self.engine.begin() as conn:
            if isinstance(change, Insert):
                conn.execute(insert(tbl).values(**change.row))
            else:
                values = {
                    column: value
                    for column, value in change.row.items()
                    if column != key and column not in _SYNC_PROTECTED_COLUMNS
                }
                conn.execute(
                    update(tbl).where(tbl.c[key] == change.row_id).values(**values)
                )
