"""Idempotent migration tasks: counterparty backfill, payment import, row sync.

Every operation is safe to re-run to completion. Items are isolated: one
failing row is recorded in the report and the rest of the batch proceeds.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict

from recon.errors import ValidationError
from recon.identity import ExternalRef, Resolved, resolve
from recon.models import PaymentEvent
from recon.outcomes import ItemResult, OperationReport, SkipReason, SyncReport

if TYPE_CHECKING:
    from collections.abc import Callable, Collection, Iterable, Mapping, Sequence

    from recon.models import (
        CounterpartyCandidate,
        CounterpartyKind,
        LedgerEntry,
        LegacyPaymentRecord,
    )

logger = logging.getLogger(__name__)


class PaymentImportStore(Protocol):
    """Storage capabilities the payment-event import relies on."""

    def map_legacy_entry(self, legacy_ref: str) -> str | None: ...

    def legacy_payment_exists(self, entry_id: str, legacy_id: str) -> bool: ...

    def create_payment_event(self, event: PaymentEvent) -> None: ...


def _safe_call(
    report: OperationReport, item_id: str, fn: Callable[[], ItemResult]
) -> None:
    try:
        report.add(fn())
    except Exception as e:  # noqa: BLE001
        logger.warning("%s failed for %s: %s", report.operation, item_id, e)
        report.add(ItemResult.failed(item_id, str(e)))


def backfill_counterparties(
    entries: Iterable[LedgerEntry],
    parent_counterparties: Mapping[str, str | None],
    assign: Callable[[str, str], None],
    *,
    dry_run: bool = False,
) -> OperationReport:
    """Copy the parent record's counterparty onto entries that lack one.

    Pure propagation: entries whose parent has no counterparty are reported
    for manual handling, never guessed.

    Args:
        entries: Ledger entries (those with a counterparty are ignored)
        parent_counterparties: Parent record id to its counterparty id
        assign: Write collaborator taking (entry_id, counterparty_id)
        dry_run: Report intended assignments without writing

    Returns:
        Operation report (ok = assigned, skipped = no_parent_counterparty)
    """
    report = OperationReport(operation="backfill_counterparties", dry_run=dry_run)

    for entry in entries:
        if entry.counterparty_id is not None:
            continue

        def _one(entry: LedgerEntry = entry) -> ItemResult:
            counterparty_id = (
                parent_counterparties.get(entry.parent_id) if entry.parent_id else None
            )
            if not counterparty_id:
                return ItemResult.skipped(
                    entry.id,
                    SkipReason.NO_PARENT_COUNTERPARTY,
                    parent_id=entry.parent_id,
                )
            if not dry_run:
                assign(entry.id, counterparty_id)
            return ItemResult.ok(
                entry.id, counterparty_id=counterparty_id, parent_id=entry.parent_id
            )

        _safe_call(report, entry.id, _one)

    return report


def assign_counterparties_by_identity(
    entries: Iterable[LedgerEntry],
    candidates_by_kind: Mapping[CounterpartyKind, Sequence[CounterpartyCandidate]],
    assign: Callable[[str, str], None],
    *,
    dry_run: bool = False,
) -> OperationReport:
    """Resolve legacy tax-ID/name hints to counterparties and assign them.

    Receivables resolve against clients, payables against suppliers.

    Returns:
        Operation report (ok = assigned, skipped = unresolved_identity)
    """
    report = OperationReport(operation="assign_counterparties", dry_run=dry_run)

    for entry in entries:
        if entry.counterparty_id is not None:
            continue

        def _one(entry: LedgerEntry = entry) -> ItemResult:
            ref = ExternalRef(tax_id=entry.legacy_tax_id, name=entry.legacy_name)
            candidates = candidates_by_kind.get(entry.direction.counterparty_kind, ())
            resolution = resolve(ref, candidates)
            if not isinstance(resolution, Resolved):
                return ItemResult.skipped(
                    entry.id,
                    SkipReason.UNRESOLVED_IDENTITY,
                    tax_id=entry.legacy_tax_id,
                    name=entry.legacy_name,
                    resolver_reason=resolution.reason,
                )
            if not dry_run:
                assign(entry.id, resolution.candidate_id)
            return ItemResult.ok(
                entry.id,
                counterparty_id=resolution.candidate_id,
                matched_by=resolution.matched_by.value,
            )

        _safe_call(report, entry.id, _one)

    return report


def import_payment_events(
    records: Iterable[LegacyPaymentRecord],
    store: PaymentImportStore,
    *,
    rejected: Iterable[ItemResult] = (),
    dry_run: bool = False,
) -> OperationReport:
    """Create payment events for legacy payments not imported yet.

    For each record: map the legacy entry reference (skip on miss), skip if
    the legacy payment id already exists under that entry, otherwise create
    the event. Re-running over the same records creates nothing new.

    Args:
        records: Legacy payment records
        store: Mapping, existence check and creation collaborator
        rejected: Rows already rejected while reading, reported as failed
        dry_run: Map and dedup only, report intended creations

    Returns:
        Operation report keyed by legacy payment id
    """
    report = OperationReport(operation="import_payment_events", dry_run=dry_run)
    for item in rejected:
        report.add(item)
    seen: set[tuple[str, str]] = set()

    for record in records:

        def _one(record: LegacyPaymentRecord = record) -> ItemResult:
            entry_id = store.map_legacy_entry(record.legacy_entry_ref)
            if entry_id is None:
                return ItemResult.skipped(
                    record.legacy_id,
                    SkipReason.MAPPING_MISS,
                    legacy_entry_ref=record.legacy_entry_ref,
                )

            key = (entry_id, record.legacy_id)
            if key in seen or store.legacy_payment_exists(entry_id, record.legacy_id):
                return ItemResult.skipped(
                    record.legacy_id, SkipReason.DUPLICATE, entry_id=entry_id
                )

            event = PaymentEvent(
                entry_id=entry_id,
                amount=record.amount,
                paid_on=record.paid_on,
                method=record.method,
                legacy_id=record.legacy_id,
                notes=record.notes,
            )
            if dry_run:
                logger.debug(
                    "Would create payment %s (%s) for entry %s",
                    record.legacy_id,
                    record.amount,
                    entry_id,
                )
            else:
                store.create_payment_event(event)
            seen.add(key)
            return ItemResult.ok(
                record.legacy_id,
                entry_id=entry_id,
                event_id=event.id,
                amount=str(record.amount),
            )

        _safe_call(report, record.legacy_id, _one)

    logger.info(
        "Payment import: %d created, %d skipped, %d failed (dry_run=%s)",
        report.ok_count,
        report.skipped_count,
        report.failed_count,
        dry_run,
    )
    return report


class Insert(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["insert"] = "insert"
    row: dict[str, Any]


class Update(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["update"] = "update"
    row_id: Any
    row: dict[str, Any]


RowChange = Insert | Update


def plan_sync(
    source_rows: Iterable[Mapping[str, Any]],
    destination_ids: Collection[Any],
    *,
    key: str = "id",
) -> list[RowChange]:
    """Classify source rows as inserts or updates, inserts first.

    Raises:
        ValidationError: If a row lacks the key column
    """
    inserts: list[RowChange] = []
    updates: list[RowChange] = []
    for row in source_rows:
        if row.get(key) is None:
            msg = f"Row without '{key}' cannot be synced"
            raise ValidationError(msg)
        if row[key] in destination_ids:
            updates.append(Update(row_id=row[key], row=dict(row)))
        else:
            inserts.append(Insert(row=dict(row)))
    return inserts + updates


def sync_rows(
    table: str,
    source_rows: Iterable[Mapping[str, Any]],
    destination_ids: Collection[Any],
    apply: Callable[[RowChange], None],
    *,
    key: str = "id",
    dry_run: bool = False,
) -> SyncReport:
    """Copy rows from a source to a destination by key presence.

    Rows whose key exists at the destination are overwritten; there is no
    other dedup. Meant for supervised operator runs, not schedules.

    Args:
        table: Table name, for the report
        source_rows: Rows read from the source environment
        destination_ids: Key values already present at the destination
        apply: Write collaborator for one typed change
        key: Key column name
        dry_run: Classify only

    Returns:
        Sync report with inserted/updated/failed counts
    """
    report = SyncReport(operation="sync_rows", table=table, dry_run=dry_run)

    valid_rows = []
    for position, row in enumerate(source_rows):
        if row.get(key) is None:
            report.add(ItemResult.failed(f"#{position}", f"Row without '{key}'"))
        else:
            valid_rows.append(row)

    for change in plan_sync(valid_rows, destination_ids, key=key):
        item_id = str(change.row[key])

        def _one(change: RowChange = change, item_id: str = item_id) -> ItemResult:
            if not dry_run:
                apply(change)
            return ItemResult.ok(item_id, action=change.kind)

        _safe_call(report, item_id, _one)

    logger.info(
        "Sync %s: %d inserted, %d updated, %d errors",
        table,
        report.inserted,
        report.updated,
        report.failed_count,
    )
    return report
