"""
Module: erp_kernel.models.document
Responsibility: ORM persistence for posting documents (goods receipts, sales
    invoices, stock adjustments, production issues and outputs, sales and
    purchase returns) and their lines, including the tracking metadata
    entered while in DRAFT.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - status moves DRAFT -> CONFIRMED only (terminal).  Once CONFIRMED, the
      header and its lines are immutable (ORM listeners).
    - document_no is unique, allocated per document type.
    - journal_id is set exactly when the document is confirmed.

Failure modes:
    - DocumentStateError when an edit targets a confirmed document
      (DocumentService).
    - ImmutabilityViolationError if a confirmed row is flushed with changes.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from erp_kernel.db.base import Base, TrackedBase, UUIDString


class DocumentType(str, Enum):
    """Business documents that post to both ledgers."""

    GRN = "GRN"
    SALES_INVOICE = "SALES_INVOICE"
    STOCK_ADJUSTMENT = "STOCK_ADJUSTMENT"
    PRODUCTION_ISSUE = "PRODUCTION_ISSUE"
    PRODUCTION_OUTPUT = "PRODUCTION_OUTPUT"
    SALES_RETURN = "SALES_RETURN"
    PURCHASE_RETURN = "PURCHASE_RETURN"


class DocumentStatus(str, Enum):
    """Lifecycle status.  Transitions are one-way: DRAFT -> CONFIRMED."""

    DRAFT = "DRAFT"
    CONFIRMED = "CONFIRMED"


class PaymentType(str, Enum):
    """Settlement side of a receipt, invoice or return."""

    CASH = "CASH"
    CREDIT = "CREDIT"


class LineDirection(str, Enum):
    """Direction of a stock adjustment line."""

    IN = "IN"
    OUT = "OUT"


class Document(TrackedBase):
    """
    Header of a posting document.

    Contract:
        Mutable while DRAFT.  DocumentService flips it to CONFIRMED in the
        same transaction that posts its stock movements and journal.

    Guarantees:
        - confirmed_at and journal_id are None while DRAFT and set on
          confirmation.
    """

    __tablename__ = "documents"

    __table_args__ = (
        UniqueConstraint("document_no", name="uq_document_no"),
        Index("idx_document_type_status", "document_type", "status"),
        Index("idx_document_date", "document_date"),
    )

    document_no: Mapped[str] = mapped_column(String(30), nullable=False)

    document_type: Mapped[DocumentType] = mapped_column(String(30), nullable=False)

    document_date: Mapped[date] = mapped_column(nullable=False)

    status: Mapped[DocumentStatus] = mapped_column(
        String(20),
        nullable=False,
        default=DocumentStatus.DRAFT,
    )

    # Supplier or customer display name; not needed for ledger correctness.
    counterparty: Mapped[str | None] = mapped_column(String(255), nullable=True)

    payment_type: Mapped[PaymentType | None] = mapped_column(String(10), nullable=True)

    location_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("locations.id"),
        nullable=True,
    )

    remarks: Mapped[str | None] = mapped_column(String(500), nullable=True)

    confirmed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    journal_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("journals.id"),
        nullable=True,
    )

    lines: Mapped[list["DocumentLine"]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="DocumentLine.line_no",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Document {self.document_no} {self.status}>"

    @property
    def is_confirmed(self) -> bool:
        return self.status == DocumentStatus.CONFIRMED


class DocumentLine(Base):
    """
    One line of a posting document.

    unit_cost is used by receipts, production output and (optionally)
    inbound adjustments; unit_price by sales invoices; direction by stock
    adjustments.  batch_no / expiry_date / serial_numbers carry the
    tracking metadata the item's tracking mode demands.
    """

    __tablename__ = "document_lines"

    __table_args__ = (
        UniqueConstraint("document_id", "line_no", name="uq_document_line_no"),
        Index("idx_document_line_item", "item_id"),
    )

    document_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("documents.id"),
        nullable=False,
    )

    line_no: Mapped[int] = mapped_column(Integer, nullable=False)

    item_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("items.id"),
        nullable=False,
    )

    location_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("locations.id"),
        nullable=True,
    )

    quantity: Mapped[Decimal] = mapped_column(nullable=False)

    unit_cost: Mapped[Decimal | None] = mapped_column(nullable=True)

    unit_price: Mapped[Decimal | None] = mapped_column(nullable=True)

    direction: Mapped[LineDirection | None] = mapped_column(String(3), nullable=True)

    batch_no: Mapped[str | None] = mapped_column(String(100), nullable=True)

    expiry_date: Mapped[date | None] = mapped_column(nullable=True)

    serial_numbers: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)

    document: Mapped["Document"] = relationship(back_populates="lines")

    def __repr__(self) -> str:
        return f"<DocumentLine {self.line_no} item={self.item_id} qty={self.quantity}>"
