"""
Domain DTOs -- immutable value objects crossing the kernel boundary.

Responsibility:
    Defines the frozen dataclasses that flow into the ledger engines
    (StockMovementSpec, JournalSpec) and out of engines and selectors
    (StockMovementRecord, StockBalanceRecord, JournalRecord, ...).  ORM
    models never leave a session; callers only ever see these.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    MUST NOT import from db/engine, models/, services/, or outer layers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from erp_kernel.db.types import ZERO

# ---------------------------------------------------------------------------
# Engine inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StockMovementSpec:
    """
    A movement to append to the stock ledger.

    Exactly one of qty_in / qty_out must be > 0.  unit_cost is used for
    inbound movements only; outbound movements are costed by the engine at
    the key's current average.
    """

    item_id: UUID
    location_id: UUID
    transaction_date: date
    source_type: str
    qty_in: Decimal = ZERO
    qty_out: Decimal = ZERO
    unit_cost: Decimal = ZERO
    source_document_id: UUID | None = None
    source_document_no: str | None = None
    remarks: str | None = None
    batch_no: str | None = None
    expiry_date: date | None = None
    serial_numbers: tuple[str, ...] = ()


@dataclass(frozen=True)
class JournalLineSpec:
    """One proposed debit or credit; exactly one side > 0."""

    account_id: UUID
    debit: Decimal = ZERO
    credit: Decimal = ZERO
    effect: str = "default"
    memo: str | None = None


@dataclass(frozen=True)
class JournalSpec:
    """A proposed journal; posted atomically or not at all."""

    journal_date: date
    description: str
    lines: tuple[JournalLineSpec, ...]
    source_document_type: str | None = None
    source_document_id: UUID | None = None
    source_document_no: str | None = None

    @property
    def total_debit(self) -> Decimal:
        return sum((line.debit for line in self.lines), ZERO)

    @property
    def total_credit(self) -> Decimal:
        return sum((line.credit for line in self.lines), ZERO)

    def effects(self) -> dict[str, tuple[Decimal, Decimal]]:
        """(debit, credit) totals per effect, in first-seen order."""
        totals: dict[str, tuple[Decimal, Decimal]] = {}
        for line in self.lines:
            debit, credit = totals.get(line.effect, (ZERO, ZERO))
            totals[line.effect] = (debit + line.debit, credit + line.credit)
        return totals


# ---------------------------------------------------------------------------
# Engine / selector outputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StockMovementRecord:
    """A stock ledger entry as seen by callers."""

    entry_id: UUID
    seq: int
    item_id: UUID
    location_id: UUID
    transaction_date: date
    source_type: str
    source_document_id: UUID | None
    source_document_no: str | None
    qty_in: Decimal
    qty_out: Decimal
    unit_cost: Decimal
    total_cost: Decimal
    remarks: str | None
    batch_no: str | None
    expiry_date: date | None
    serial_numbers: tuple[str, ...]
    negative_balance: bool
    created_at: datetime
    # Running quantity of the key after this entry (movement listings only).
    balance_qty: Decimal | None = None


@dataclass(frozen=True)
class StockBalanceRecord:
    """Balance snapshot of one (item, location) key."""

    item_id: UUID
    location_id: UUID
    balance_qty: Decimal
    avg_cost: Decimal
    stock_value: Decimal
    last_seq: int | None = None
    last_transaction_date: date | None = None


@dataclass(frozen=True)
class StockMovementResult:
    """What StockLedgerService.append_movement returns."""

    entry: StockMovementRecord
    balance: StockBalanceRecord


@dataclass(frozen=True)
class BatchBalanceRecord:
    """Remaining quantity of one batch at a key."""

    batch_no: str
    expiry_date: date | None
    quantity: Decimal
    first_received: date


@dataclass(frozen=True)
class BalanceDrift:
    """A snapshot that disagrees with a full replay of its ledger."""

    key: tuple[str, ...]
    snapshot: tuple[Decimal, ...]
    replayed: tuple[Decimal, ...]


@dataclass(frozen=True)
class JournalLineRecord:
    """A posted journal line."""

    line_id: UUID
    line_seq: int
    account_id: UUID
    account_code: str
    debit: Decimal
    credit: Decimal
    effect: str
    memo: str | None


@dataclass(frozen=True)
class JournalRecord:
    """A posted journal with its lines."""

    journal_id: UUID
    journal_no: str
    seq: int
    journal_date: date
    description: str
    source_document_type: str | None
    source_document_id: UUID | None
    source_document_no: str | None
    created_at: datetime
    lines: tuple[JournalLineRecord, ...]

    @property
    def total_debit(self) -> Decimal:
        return sum((line.debit for line in self.lines), ZERO)

    @property
    def total_credit(self) -> Decimal:
        return sum((line.credit for line in self.lines), ZERO)

    @property
    def is_balanced(self) -> bool:
        return self.total_debit == self.total_credit

    def lines_for(self, effect: str) -> tuple[JournalLineRecord, ...]:
        return tuple(line for line in self.lines if line.effect == effect)


@dataclass(frozen=True)
class AccountBalanceRecord:
    """Cumulative raw totals for one account."""

    account_id: UUID
    account_code: str
    account_name: str
    account_type: str
    total_debit: Decimal
    total_credit: Decimal
    opening_balance: Decimal = ZERO

    @property
    def net_debit(self) -> Decimal:
        return self.total_debit - self.total_credit


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DocumentLineRecord:
    line_no: int
    item_id: UUID
    location_id: UUID | None
    quantity: Decimal
    unit_cost: Decimal | None
    unit_price: Decimal | None
    direction: str | None
    batch_no: str | None
    expiry_date: date | None
    serial_numbers: tuple[str, ...]


@dataclass(frozen=True)
class DocumentRecord:
    document_id: UUID
    document_no: str
    document_type: str
    document_date: date
    status: str
    counterparty: str | None
    payment_type: str | None
    location_id: UUID | None
    remarks: str | None
    confirmed_at: datetime | None
    journal_id: UUID | None
    lines: tuple[DocumentLineRecord, ...] = ()


@dataclass(frozen=True)
class TrackingIssue:
    """
    One tracking problem on one document line.

    ``reason`` is one of: serial_count_mismatch, duplicate_serials,
    fractional_serial_quantity, missing_batch, serials_not_in_stock.
    """

    line_no: int
    item_id: UUID
    item_sku: str
    reason: str
    message: str
    expected_count: int | None = None
    actual_count: int | None = None
    serials: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "line_no": self.line_no,
            "item_id": str(self.item_id),
            "item_sku": self.item_sku,
            "reason": self.reason,
            "message": self.message,
            "expected_count": self.expected_count,
            "actual_count": self.actual_count,
            "serials": list(self.serials),
        }
