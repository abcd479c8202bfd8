"""Lifecycle status derivation for ledger entries."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal  # noqa: TC003

from recon.amounts import EPSILON, ZERO, is_zero, subtract
from recon.errors import ValidationError
from recon.models import Status


def derive_status(
    owed: Decimal,
    paid: Decimal,
    due_date: date | None,
    now: date | datetime,
    current_status: Status,
) -> Status:
    """Map amounts and due date to the entry's lifecycle status.

    Rules, in order:
        1. CANCELLED is terminal.
        2. Nothing paid (within one cent) -> PENDING.
        3. Owed minus paid within one cent -> PAID (overpayment included).
        4. Otherwise PARTIAL.
        5. Anything not PAID past its due date -> OVERDUE.

    Args:
        owed: Total amount owed, must not be negative
        paid: Sum of payment events
        due_date: Optional due date
        now: Reference date for the overdue check
        current_status: Status currently stored on the entry

    Returns:
        Derived status

    Raises:
        ValidationError: If owed is negative
    """
    if current_status is Status.CANCELLED:
        return Status.CANCELLED

    if owed < ZERO:
        msg = f"Owed amount cannot be negative: {owed}"
        raise ValidationError(msg)

    if is_zero(paid):
        candidate = Status.PENDING
    elif subtract(owed, paid) <= EPSILON:
        candidate = Status.PAID
    else:
        candidate = Status.PARTIAL

    today = now.date() if isinstance(now, datetime) else now
    if candidate is not Status.PAID and due_date is not None and due_date < today:
        return Status.OVERDUE
    return candidate
