"""Recompute paid, remaining and status for one ledger entry."""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import TYPE_CHECKING

from recon.amounts import ZERO, approx_equal, subtract, total
from recon.errors import ValidationError
from recon.models import ReconciliationResult
from recon.status import derive_status

if TYPE_CHECKING:
    from collections.abc import Iterable

    from recon.models import LedgerEntry, PaymentEvent


def today_utc() -> date:
    return datetime.now(UTC).date()


def validate_entry(entry: LedgerEntry, events: Iterable[PaymentEvent]) -> None:
    """Reject structurally invalid entry/event data.

    Raises:
        ValidationError: If owed is negative, the stored paid amount is
            negative, or an event belongs to another entry
    """
    if entry.owed < ZERO:
        msg = f"Entry {entry.id} has negative owed amount: {entry.owed}"
        raise ValidationError(msg)
    if entry.paid < ZERO:
        msg = f"Entry {entry.id} has negative paid amount: {entry.paid}"
        raise ValidationError(msg)
    for event in events:
        if event.entry_id != entry.id:
            msg = (
                f"Payment event {event.id} belongs to entry {event.entry_id}, "
                f"not {entry.id}"
            )
            raise ValidationError(msg)


def recompute(
    entry: LedgerEntry,
    events: Iterable[PaymentEvent],
    *,
    now: date | datetime | None = None,
) -> ReconciliationResult:
    """Derive the entry's paid/remaining/status from its payment events.

    Pure: the caller decides whether to commit the result. Recomputing from
    the same events always yields the same result, and committing it a
    second time is a no-op.

    Args:
        entry: Ledger entry as currently stored
        events: All payment events recorded against the entry
        now: Reference date for the overdue check (defaults to today, UTC)

    Returns:
        Reconciliation result, flagged changed when anything differs

    Raises:
        ValidationError: If the entry or its events are malformed
    """
    event_list = list(events)
    validate_entry(entry, event_list)

    total_paid = total(event.amount for event in event_list)
    remaining = subtract(entry.owed, total_paid)
    new_status = derive_status(
        entry.owed,
        total_paid,
        entry.due_date,
        now if now is not None else today_utc(),
        entry.status,
    )

    changed = (
        not approx_equal(entry.paid, total_paid)
        or entry.remaining is None
        or not approx_equal(entry.remaining, remaining)
        or new_status != entry.status
    )

    return ReconciliationResult(
        entry_id=entry.id,
        direction=entry.direction,
        owed=entry.owed,
        previous_status=entry.status,
        new_status=new_status,
        previous_paid=entry.paid,
        new_paid=total_paid,
        previous_remaining=entry.remaining,
        new_remaining=remaining,
        event_count=len(event_list),
        changed=changed,
    )
