"""Tests for the SQL storage collaborator (SQLite)."""

from __future__ import annotations

import json
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import Engine, text

from recon.backfill import Insert, Update
from recon.engine import recompute
from recon.errors import CommitFailure
from recon.models import CounterpartyKind, Direction, PaymentEvent, Status
from recon.store import LedgerStore
from tests.utils.db_helper import (
    seed_counterparty,
    seed_entry,
    seed_event,
    seed_project,
)


def test_create_schema_is_idempotent(store: LedgerStore) -> None:
    store.create_schema()
    store.create_schema()


def test_fetch_entries_converts_types(engine: Engine, store: LedgerStore) -> None:
    with engine.begin() as conn:
        seed_entry(
            conn,
            "e1",
            owed="1234.56",
            paid="100.10",
            remaining="1134.46",
            status="PARTIAL",
            due_date="2024-02-29",
        )

    (entry,) = store.fetch_entries()
    assert entry.owed == Decimal("1234.56")
    assert entry.paid == Decimal("100.10")
    assert entry.remaining == Decimal("1134.46")
    assert entry.status is Status.PARTIAL
    assert entry.due_date == date(2024, 2, 29)
    assert entry.direction is Direction.RECEIVABLE


def test_fetch_entries_filters(engine: Engine, store: LedgerStore) -> None:
    with engine.begin() as conn:
        seed_counterparty(conn, "cp")
        seed_entry(conn, "ar-1", due_date="2024-01-01", counterparty_id="cp")
        seed_entry(conn, "ar-2", due_date="2024-06-01")
        seed_entry(conn, "ap-1", direction="PAYABLE", due_date="2024-01-01")

    def ids(**filters: object) -> list[str]:
        return [e.id for e in store.fetch_entries(**filters)]  # type: ignore[arg-type]

    assert ids() == ["ap-1", "ar-1", "ar-2"]
    assert ids(direction=Direction.RECEIVABLE) == ["ar-1", "ar-2"]
    assert ids(due_before=date(2024, 3, 1)) == ["ap-1", "ar-1"]
    assert ids(missing_counterparty=True) == ["ap-1", "ar-2"]


def test_fetch_events_grouped_by_entry(engine: Engine, store: LedgerStore) -> None:
    with engine.begin() as conn:
        seed_entry(conn, "e1")
        seed_entry(conn, "e2")
        seed_event(conn, "e1", "100.00", paid_on="2024-02-01")
        seed_event(conn, "e1", "50.25", paid_on="2024-01-01")
        seed_event(conn, "e2", "10.00")

    grouped = store.fetch_events_by_entry()
    assert [e.amount for e in grouped["e1"]] == [Decimal("50.25"), Decimal("100.00")]
    assert list(store.fetch_events_by_entry(["e2"])) == ["e2"]
    assert store.fetch_events_by_entry([]) == {}


def test_commit_persists_quantized_result(engine: Engine, store: LedgerStore) -> None:
    with engine.begin() as conn:
        seed_entry(conn, "e1", owed="100.00", due_date="2024-01-01")
        seed_event(conn, "e1", "33.333")

    (entry,) = store.fetch_entries()
    result = recompute(entry, store.fetch_events_by_entry()["e1"], now=date(2024, 3, 1))
    store.commit(result)

    (stored,) = store.fetch_entries()
    assert stored.paid == Decimal("33.33")
    assert stored.remaining == Decimal("66.67")
    assert stored.status is Status.OVERDUE

    again = recompute(stored, store.fetch_events_by_entry()["e1"], now=date(2024, 3, 1))
    assert not again.changed


def test_commit_missing_entry_raises(store: LedgerStore, engine: Engine) -> None:
    with engine.begin() as conn:
        seed_entry(conn, "e1")
    (entry,) = store.fetch_entries()
    result = recompute(entry.model_copy(update={"id": "ghost"}), [], now=date(2024, 1, 1))

    with pytest.raises(CommitFailure, match="ghost"):
        store.commit(result)


def test_candidates_in_creation_order(engine: Engine, store: LedgerStore) -> None:
    with engine.begin() as conn:
        seed_counterparty(conn, "b", name="Beta", created_at="2024-01-02 00:00:00")
        seed_counterparty(conn, "a", name="Alpha", created_at="2024-01-03 00:00:00")
        seed_counterparty(conn, "s", kind="supplier", tax_id="SUP010101AA1")

    clients = store.fetch_candidates(CounterpartyKind.CLIENT)
    assert [c.id for c in clients] == ["b", "a"]
    by_kind = store.fetch_candidates_by_kind()
    assert [c.tax_id for c in by_kind[CounterpartyKind.SUPPLIER]] == ["SUP010101AA1"]


def test_legacy_mapping_and_payment_creation(engine: Engine, store: LedgerStore) -> None:
    with engine.begin() as conn:
        seed_entry(conn, "ar-1", legacy_id="101")

    assert store.map_legacy_entry("101") == "ar-1"
    assert store.map_legacy_entry("999") is None
    assert not store.legacy_payment_exists("ar-1", "42")

    store.create_payment_event(
        PaymentEvent(
            entry_id="ar-1",
            amount=Decimal("500"),
            paid_on=date(2024, 1, 20),
            legacy_id="42",
        )
    )

    assert store.legacy_payment_exists("ar-1", "42")
    (event,) = store.fetch_events_by_entry()["ar-1"]
    assert event.amount == Decimal("500")
    assert event.paid_on == date(2024, 1, 20)


def test_assign_counterparty_never_overwrites(engine: Engine, store: LedgerStore) -> None:
    with engine.begin() as conn:
        seed_counterparty(conn, "cp-1")
        seed_counterparty(conn, "cp-2")
        seed_project(conn, "p1", counterparty_id="cp-1")
        seed_entry(conn, "e1", parent_id="p1")

    assert store.parent_counterparties() == {"p1": "cp-1"}
    store.assign_counterparty("e1", "cp-1")
    with pytest.raises(CommitFailure, match="already assigned"):
        store.assign_counterparty("e1", "cp-2")
    assert store.fetch_entries()[0].counterparty_id == "cp-1"


def test_record_event_writes_audit_row(engine: Engine, store: LedgerStore) -> None:
    store.record_event(
        "reconcile",
        {"updated": 2, "errors": 0},
        started_at="2024-03-15T00:00:00+00:00",
        success=True,
    )
    with engine.connect() as conn:
        row = conn.execute(text("SELECT * FROM etl_events")).one()
    assert row.event_type == "reconcile"
    assert json.loads(row.row_counts) == {"errors": 0, "updated": 2}
    assert row.finished_at


def test_row_sync_insert_then_update(engine: Engine, store: LedgerStore) -> None:
    with engine.begin() as conn:
        seed_counterparty(conn, "cp-1", name="Old name")

    store.apply_change(
        "counterparties",
        Insert(row={"id": "cp-2", "kind": "supplier", "name": "New supplier"}),
    )
    store.apply_change(
        "counterparties",
        Update(row_id="cp-1", row={"id": "cp-1", "kind": "client", "name": "Renamed"}),
    )

    rows = {r["id"]: r for r in store.fetch_rows("counterparties")}
    assert rows["cp-1"]["name"] == "Renamed"
    assert rows["cp-2"]["kind"] == "supplier"
    assert store.fetch_keys("counterparties") == {"cp-1", "cp-2"}
