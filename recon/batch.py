"""Batch reconciliation over many ledger entries."""

from __future__ import annotations

import logging
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, computed_field

from recon.amounts import ZERO, add
from recon.engine import recompute, today_utc
from recon.models import ReconciliationResult  # noqa: TC001

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping, Sequence

    from recon.models import LedgerEntry, PaymentEvent

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_SIZE = 10


class EntryFailure(BaseModel):
    entry_id: str
    error: str


class BatchReport(BaseModel):
    """Summary of one reconciliation run."""

    updated_count: int = 0
    unchanged_count: int = 0
    error_count: int = 0
    samples: list[ReconciliationResult] = Field(default_factory=list)
    errors: list[EntryFailure] = Field(default_factory=list)
    total_owed: Decimal = ZERO
    total_paid: Decimal = ZERO
    total_remaining: Decimal = ZERO
    by_status: dict[str, int] = Field(default_factory=dict)
    by_direction: dict[str, int] = Field(default_factory=dict)
    overpaid: list[str] = Field(default_factory=list)
    committed: bool = False

    @computed_field  # type: ignore[prop-decorator]
    @property
    def processed_count(self) -> int:
        return self.updated_count + self.unchanged_count + self.error_count

    @property
    def success(self) -> bool:
        return self.error_count == 0


class _ReportBuilder:
    def __init__(self, sample_size: int, *, committed: bool) -> None:
        self.sample_size = sample_size
        self.report = BatchReport(committed=committed)
        self._statuses: Counter[str] = Counter()
        self._directions: Counter[str] = Counter()

    def fail(self, entry_id: str, error: Exception) -> None:
        logger.warning("Reconciliation failed for entry %s: %s", entry_id, error)
        self.report.error_count += 1
        self.report.errors.append(EntryFailure(entry_id=entry_id, error=str(error)))

    def record(self, result: ReconciliationResult) -> None:
        report = self.report
        if result.changed:
            report.updated_count += 1
            if len(report.samples) < self.sample_size:
                report.samples.append(result)
        else:
            report.unchanged_count += 1

        report.total_owed = add(report.total_owed, result.owed)
        report.total_paid = add(report.total_paid, result.new_paid)
        report.total_remaining = add(report.total_remaining, result.new_remaining)
        self._statuses[result.new_status.value] += 1
        self._directions[result.direction.value] += 1
        if result.overpaid:
            report.overpaid.append(result.entry_id)

    def build(self) -> BatchReport:
        self.report.by_status = dict(sorted(self._statuses.items()))
        self.report.by_direction = dict(sorted(self._directions.items()))
        return self.report


def run(
    entries: Iterable[LedgerEntry],
    events_by_entry: Mapping[str, Sequence[PaymentEvent]],
    *,
    commit: Callable[[ReconciliationResult], None] | None = None,
    now: date | datetime | None = None,
    sample_size: int = DEFAULT_SAMPLE_SIZE,
    max_workers: int = 1,
) -> BatchReport:
    """Reconcile every entry and fold the outcomes into a report.

    Nothing raised for a single entry escapes: invalid data and commit
    failures are counted as errors and the batch moves on. Recomputation
    may run on a thread pool; commits happen here, in input order.

    Args:
        entries: Ledger entries to reconcile
        events_by_entry: Payment events keyed by entry id (missing = none)
        commit: Write collaborator for changed results; None for a dry run
        now: Reference date for overdue checks (defaults to today, UTC)
        sample_size: Maximum number of changed results kept as samples
        max_workers: Thread pool size for recomputation

    Returns:
        Batch report with counts, samples, failures and totals
    """
    as_of = now if now is not None else today_utc()
    builder = _ReportBuilder(sample_size, committed=commit is not None)

    def _reconcile(entry: LedgerEntry) -> ReconciliationResult | Exception:
        try:
            return recompute(entry, events_by_entry.get(entry.id, ()), now=as_of)
        except Exception as e:  # noqa: BLE001
            return e

    entry_list = list(entries)
    if max_workers > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            outcomes = list(pool.map(_reconcile, entry_list))
    else:
        outcomes = [_reconcile(entry) for entry in entry_list]

    for entry, outcome in zip(entry_list, outcomes, strict=True):
        if isinstance(outcome, Exception):
            builder.fail(entry.id, outcome)
            continue

        if outcome.changed and commit is not None:
            try:
                commit(outcome)
            except Exception as e:  # noqa: BLE001
                builder.fail(entry.id, e)
                continue

        builder.record(outcome)

    report = builder.build()
    logger.info(
        "Reconciled %d entries: %d updated, %d unchanged, %d errors",
        report.processed_count,
        report.updated_count,
        report.unchanged_count,
        report.error_count,
    )
    return report
