"""Tests for the batch reconciliation runner."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from recon.batch import run
from recon.errors import CommitFailure
from recon.models import (
    Direction,
    LedgerEntry,
    PaymentEvent,
    ReconciliationResult,
    Status,
)
from tests.utils.ledger_helper import apply_result

TODAY = date(2024, 3, 15)


def _entry(id_: str, owed: str = "1000", **overrides: object) -> LedgerEntry:
    data: dict[str, object] = {
        "id": id_,
        "direction": Direction.RECEIVABLE,
        "owed": Decimal(owed),
    }
    data.update(overrides)
    return LedgerEntry.model_validate(data)


def _event(entry_id: str, amount: str) -> PaymentEvent:
    return PaymentEvent(entry_id=entry_id, amount=Decimal(amount), paid_on=TODAY)


@pytest.fixture
def ledger() -> tuple[list[LedgerEntry], dict[str, list[PaymentEvent]]]:
    entries = [
        _entry("a", "1000"),
        _entry("b", "500", direction=Direction.PAYABLE),
        _entry("c", "-10"),
        _entry("d", "200"),
    ]
    events = {
        "a": [_event("a", "400")],
        "b": [_event("b", "500")],
        "d": [_event("d", "300")],
    }
    return entries, events


def test_counts_and_totals(ledger) -> None:  # noqa: ANN001
    entries, events = ledger
    report = run(entries, events, now=TODAY)

    assert report.updated_count == 3
    assert report.unchanged_count == 0
    assert report.error_count == 1
    assert report.processed_count == 4
    assert report.total_owed == Decimal("1700")
    assert report.total_paid == Decimal("1200")
    assert report.total_remaining == Decimal("500")
    assert report.by_status == {"PAID": 2, "PARTIAL": 1}
    assert report.by_direction == {"PAYABLE": 1, "RECEIVABLE": 2}
    assert report.overpaid == ["d"]
    assert not report.committed
    assert not report.success


def test_structural_error_is_reported_not_raised(ledger) -> None:  # noqa: ANN001
    entries, events = ledger
    report = run(entries, events, now=TODAY)
    assert [e.entry_id for e in report.errors] == ["c"]
    assert "negative owed" in report.errors[0].error


def test_missing_events_mean_no_payments() -> None:
    report = run([_entry("x", due_date=date(2024, 1, 1))], {}, now=TODAY)
    assert report.samples[0].new_status is Status.OVERDUE
    assert report.samples[0].new_paid == Decimal("0")


def test_samples_are_bounded_and_in_input_order() -> None:
    entries = [_entry(f"e{i:02d}") for i in range(15)]
    report = run(entries, {}, now=TODAY, sample_size=3)
    assert report.updated_count == 15
    assert [s.entry_id for s in report.samples] == ["e00", "e01", "e02"]


def test_commit_receives_only_changed_results() -> None:
    settled = _entry(
        "settled", paid=Decimal("1000"), remaining=Decimal("0"), status=Status.PAID
    )
    fresh = _entry("fresh")
    committed: list[ReconciliationResult] = []

    report = run(
        [settled, fresh],
        {"settled": [_event("settled", "1000")]},
        commit=committed.append,
        now=TODAY,
    )

    assert [r.entry_id for r in committed] == ["fresh"]
    assert report.updated_count == 1
    assert report.unchanged_count == 1
    assert report.committed


def test_commit_failure_counts_as_error_and_batch_continues() -> None:
    def flaky_commit(result: ReconciliationResult) -> None:
        if result.entry_id == "b":
            raise CommitFailure("b", "deadlock detected")

    entries = [_entry("a"), _entry("b"), _entry("c")]
    report = run(entries, {}, commit=flaky_commit, now=TODAY)

    assert report.updated_count == 2
    assert report.error_count == 1
    assert report.errors[0].entry_id == "b"
    assert "deadlock detected" in report.errors[0].error
    # Failed entry contributes nothing to the totals
    assert report.total_owed == Decimal("2000")


def test_second_run_after_commit_is_unchanged() -> None:
    entries = {e.id: e for e in [_entry("a"), _entry("b", due_date=date(2024, 1, 1))]}
    events = {"a": [_event("a", "250")]}

    def commit(result: ReconciliationResult) -> None:
        entries[result.entry_id] = apply_result(entries[result.entry_id], result)

    first = run(list(entries.values()), events, commit=commit, now=TODAY)
    second = run(list(entries.values()), events, commit=commit, now=TODAY)

    assert first.updated_count == 2
    assert second.updated_count == 0
    assert second.unchanged_count == 2


def test_thread_pool_matches_sequential_run() -> None:
    entries = [_entry(f"e{i:03d}", owed=str(100 + i)) for i in range(50)]
    events = {f"e{i:03d}": [_event(f"e{i:03d}", str(i * 3))] for i in range(1, 50)}

    sequential = run(entries, events, now=TODAY, sample_size=50)
    pooled = run(entries, events, now=TODAY, sample_size=50, max_workers=4)

    assert pooled.model_dump() == sequential.model_dump()
