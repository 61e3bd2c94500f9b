"""
Module: erp_kernel.models.stock_ledger
Responsibility: ORM persistence for the stock ledger -- the append-only
    movement log per (item, location) and its derived balance snapshot.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - StockLedgerEntry is immutable from creation (ORM listener).
    - Exactly one of qty_in / qty_out is non-zero; both >= 0 (check
      constraints back up the engine's validation).
    - seq is globally unique and monotonic, so (transaction_date, seq) is a
      stable, creation-ordered replay order.
    - StockBalance is unique per (item_id, location_id) and is only written
      by StockLedgerService.append_movement.

Failure modes:
    - IntegrityError on a concurrently inserted StockBalance row (mapped to
      ConcurrencyConflictError by the engine).
    - ImmutabilityViolationError on UPDATE/DELETE of an entry.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from erp_kernel.db.base import Base, UUIDString


class StockSourceType(str, Enum):
    """Kind of business event behind a stock movement."""

    PURCHASE = "PURCHASE"
    SALES = "SALES"
    PRODUCTION_IN = "PRODUCTION_IN"
    PRODUCTION_OUT = "PRODUCTION_OUT"
    ADJUSTMENT_IN = "ADJUSTMENT_IN"
    ADJUSTMENT_OUT = "ADJUSTMENT_OUT"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"

    @property
    def is_inbound(self) -> bool:
        return self in INBOUND_SOURCE_TYPES


INBOUND_SOURCE_TYPES = frozenset(
    {
        StockSourceType.PURCHASE,
        StockSourceType.PRODUCTION_IN,
        StockSourceType.ADJUSTMENT_IN,
        StockSourceType.TRANSFER_IN,
    }
)


class StockLedgerEntry(Base):
    """
    One immutable stock movement.

    Contract:
        Created once by StockLedgerService, never updated or deleted.
        Corrections are new reversing movements.

    Guarantees:
        - total_cost == round_money(quantity * unit_cost).
        - For outward movements unit_cost is the running average at the
          time of the movement (the COGS basis).
        - negative_balance records that the movement left the key below
          zero under the allow policy.
    """

    __tablename__ = "stock_ledger_entries"

    __table_args__ = (
        UniqueConstraint("seq", name="uq_stock_entry_seq"),
        Index("idx_stock_entry_key", "item_id", "location_id", "transaction_date", "seq"),
        Index("idx_stock_entry_source", "source_document_id"),
        CheckConstraint(
            "(qty_in_sign = 1 AND qty_out_sign = 0) OR (qty_in_sign = 0 AND qty_out_sign = 1)",
            name="ck_stock_entry_one_direction",
        ),
    )

    seq: Mapped[int] = mapped_column(nullable=False)

    item_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("items.id"),
        nullable=False,
    )

    location_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("locations.id"),
        nullable=False,
    )

    transaction_date: Mapped[date] = mapped_column(nullable=False)

    source_type: Mapped[StockSourceType] = mapped_column(String(20), nullable=False)

    source_document_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    source_document_no: Mapped[str | None] = mapped_column(String(50), nullable=True)

    qty_in: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    qty_out: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    # Direction flags mirror qty_in/qty_out > 0 so the check constraint does
    # not depend on decimal comparison in SQL (text storage on SQLite).
    qty_in_sign: Mapped[int] = mapped_column(nullable=False)

    qty_out_sign: Mapped[int] = mapped_column(nullable=False)

    unit_cost: Mapped[Decimal] = mapped_column(nullable=False)

    total_cost: Mapped[Decimal] = mapped_column(nullable=False)

    remarks: Mapped[str | None] = mapped_column(String(500), nullable=True)

    batch_no: Mapped[str | None] = mapped_column(String(100), nullable=True)

    expiry_date: Mapped[date | None] = mapped_column(nullable=True)

    serial_numbers: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)

    negative_balance: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return (
            f"<StockLedgerEntry #{self.seq} {self.source_type} "
            f"in={self.qty_in} out={self.qty_out} @ {self.unit_cost}>"
        )

    @property
    def is_inbound(self) -> bool:
        return StockSourceType(self.source_type).is_inbound

    @property
    def quantity(self) -> Decimal:
        return self.qty_in if self.qty_in > 0 else self.qty_out


class StockBalance(Base):
    """
    Derived running balance for one (item, location) key.

    Contract:
        Only StockLedgerService writes this row, under the key's lock and a
        row lock.  Its values always equal a replay of the key's entries.

    Guarantees:
        - stock_value == round_money(balance_qty * avg_cost).
        - avg_cost is retained (not reset) when balance_qty reaches zero.
        - last_seq is the seq of the last applied entry.
    """

    __tablename__ = "stock_balances"

    __table_args__ = (
        UniqueConstraint("item_id", "location_id", name="uq_stock_balance_key"),
        Index("idx_stock_balance_location", "location_id"),
    )

    item_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("items.id"),
        nullable=False,
    )

    location_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("locations.id"),
        nullable=False,
    )

    balance_qty: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    avg_cost: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    stock_value: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    last_seq: Mapped[int | None] = mapped_column(nullable=True)

    last_transaction_date: Mapped[date | None] = mapped_column(nullable=True)

    updated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return (
            f"<StockBalance item={self.item_id} location={self.location_id} "
            f"qty={self.balance_qty} avg={self.avg_cost}>"
        )
