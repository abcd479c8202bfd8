"""End-to-end run over the demo fixtures (offline, SQLite)."""

from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import Engine, text

from recon.demo import create_demo_engine, load_demo_fixtures, run_demo
from recon.models import Status
from recon.outcomes import Outcome, SkipReason
from recon.store import LedgerStore


@pytest.fixture
def demo_engine() -> Engine:
    engine = create_demo_engine()
    with engine.begin() as conn:
        load_demo_fixtures(conn)
    return engine


def test_demo_flow(demo_engine: Engine) -> None:
    store = LedgerStore(demo_engine)
    result = run_demo(store)

    assert result.imported.ok_count == 3
    misses = result.imported.skipped_for(SkipReason.MAPPING_MISS)
    assert [i.item_id for i in misses] == ["4"]

    assert [i.item_id for i in result.backfilled.with_outcome(Outcome.OK)] == ["ar-002"]
    assert result.resolved.ok_count == 2
    unresolved = result.resolved.skipped_for(SkipReason.UNRESOLVED_IDENTITY)
    assert [i.item_id for i in unresolved] == ["ap-003"]

    report = result.reconciled
    assert report.success
    assert report.updated_count == 6
    assert report.total_owed == Decimal("37000")
    assert report.total_paid == Decimal("22500")
    assert report.total_remaining == Decimal("14500")
    assert report.by_status == {
        "CANCELLED": 1,
        "OVERDUE": 2,
        "PAID": 1,
        "PARTIAL": 1,
        "PENDING": 1,
    }

    statuses = {e.id: e.status for e in store.fetch_entries()}
    assert statuses["ar-001"] is Status.PARTIAL
    assert statuses["ar-002"] is Status.OVERDUE
    assert statuses["ap-001"] is Status.PAID
    assert statuses["ap-002"] is Status.CANCELLED

    counterparties = {e.id: e.counterparty_id for e in store.fetch_entries()}
    assert counterparties["ar-002"] == "cli-001"
    assert counterparties["ar-003"] == "cli-002"
    assert counterparties["ap-001"] == "sup-001"
    assert counterparties["ap-003"] is None


def test_demo_rerun_is_a_no_op(demo_engine: Engine) -> None:
    store = LedgerStore(demo_engine)
    run_demo(store)
    second = run_demo(store)

    assert second.imported.ok_count == 0
    assert len(second.imported.skipped_for(SkipReason.DUPLICATE)) == 3
    assert second.backfilled.ok_count == 0
    assert second.resolved.ok_count == 0
    assert second.reconciled.updated_count == 0
    assert second.reconciled.unchanged_count == 6

    with demo_engine.connect() as conn:
        count = conn.execute(text("SELECT COUNT(*) FROM payment_events")).scalar()
    assert count == 6
