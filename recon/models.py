"""Domain records shared by the engine, the backfill coordinator and storage."""

from __future__ import annotations

from datetime import date  # noqa: TC003
from decimal import Decimal
from enum import StrEnum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from recon.amounts import EPSILON

__all__ = [
    "CounterpartyCandidate",
    "CounterpartyKind",
    "Direction",
    "LedgerEntry",
    "LegacyPaymentRecord",
    "PaymentEvent",
    "PaymentMethod",
    "ReconciliationResult",
    "Status",
]


class CounterpartyKind(StrEnum):
    CLIENT = "client"
    SUPPLIER = "supplier"


class Direction(StrEnum):
    RECEIVABLE = "RECEIVABLE"
    PAYABLE = "PAYABLE"

    @property
    def counterparty_kind(self) -> CounterpartyKind:
        """Receivables are owed by clients, payables to suppliers."""
        if self is Direction.RECEIVABLE:
            return CounterpartyKind.CLIENT
        return CounterpartyKind.SUPPLIER


class Status(StrEnum):
    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


class PaymentMethod(StrEnum):
    TRANSFER = "TRANSFER"
    CASH = "CASH"
    CHECK = "CHECK"
    CARD = "CARD"
    OTHER = "OTHER"

    @classmethod
    def _missing_(cls, value: object) -> PaymentMethod:
        # Free-text methods from older rows
        if isinstance(value, str):
            for member in cls:
                if member.value == value.strip().upper():
                    return member
        return cls.OTHER


class LedgerEntry(BaseModel):
    """One obligation: a receivable owed by a client or a payable to a supplier.

    Amounts are not validated here; rows coming out of storage may be
    malformed and the batch runner reports them instead of failing to load.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    direction: Direction
    owed: Decimal
    paid: Decimal = Decimal("0")
    remaining: Decimal | None = None
    status: Status = Status.PENDING
    due_date: date | None = None
    counterparty_id: str | None = None
    parent_id: str | None = None
    concept: str = ""
    legacy_id: str | None = None
    legacy_tax_id: str | None = None
    legacy_name: str | None = None


class PaymentEvent(BaseModel):
    """One atomic payment applied to exactly one ledger entry."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    entry_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    paid_on: date
    method: PaymentMethod = PaymentMethod.TRANSFER
    legacy_id: str | None = None
    notes: str | None = None


class CounterpartyCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    tax_id: str | None = None


class LegacyPaymentRecord(BaseModel):
    """A payment row as found in the legacy system, before mapping."""

    legacy_id: str
    legacy_entry_ref: str
    amount: Decimal
    paid_on: date
    method: PaymentMethod = PaymentMethod.TRANSFER
    notes: str | None = None


class ReconciliationResult(BaseModel):
    """Outcome of recomputing one entry. Never persisted by the engine."""

    model_config = ConfigDict(frozen=True)

    entry_id: str
    direction: Direction
    owed: Decimal
    previous_status: Status
    new_status: Status
    previous_paid: Decimal
    new_paid: Decimal
    previous_remaining: Decimal | None
    new_remaining: Decimal
    event_count: int = 0
    changed: bool

    @property
    def overpaid(self) -> bool:
        return self.new_remaining < -EPSILON
