"""
Module: erp_kernel.models.journal
Responsibility: ORM persistence for journals, journal lines and the derived
    per-account balance snapshot -- the general ledger.
Architecture position: Kernel > Models.  May import from db/ only.
    MUST NOT import from services/, selectors/, domain/, or outer layers.

Invariants enforced:
    - journal_no and seq are unique (allocated from a locked counter row).
    - sum(debit) == sum(credit) per journal and per effect (checked by
      GeneralLedgerService before anything is written; is_balanced is the
      read-side convenience).
    - Journals and lines are immutable from creation (ORM listeners).
    - AccountBalance is unique per account and only written by
      GeneralLedgerService.post.

Failure modes:
    - UnbalancedJournalError if debits != credits at posting time.
    - ImmutabilityViolationError on UPDATE/DELETE of a journal or line.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from erp_kernel.db.base import Base, UUIDString

if TYPE_CHECKING:
    from erp_kernel.models.account import Account


class Journal(Base):
    """
    A balanced double-entry journal.

    Contract:
        Written once by GeneralLedgerService with all of its lines.  Never
        edited; corrections are reversing journals.

    Guarantees:
        - total_debit == total_credit.
        - lines are ordered by line_seq.
    """

    __tablename__ = "journals"

    __table_args__ = (
        UniqueConstraint("journal_no", name="uq_journal_no"),
        UniqueConstraint("seq", name="uq_journal_seq"),
        Index("idx_journal_date", "journal_date"),
        Index("idx_journal_source", "source_document_id"),
    )

    seq: Mapped[int] = mapped_column(nullable=False)

    journal_no: Mapped[str] = mapped_column(String(30), nullable=False)

    journal_date: Mapped[date] = mapped_column(nullable=False)

    description: Mapped[str] = mapped_column(String(500), nullable=False, default="")

    source_document_type: Mapped[str | None] = mapped_column(String(30), nullable=True)

    source_document_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    source_document_no: Mapped[str | None] = mapped_column(String(50), nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False)

    lines: Mapped[list["JournalLine"]] = relationship(
        back_populates="journal",
        cascade="all",
        order_by="JournalLine.line_seq",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Journal {self.journal_no}>"

    @property
    def total_debit(self) -> Decimal:
        return sum((line.debit for line in self.lines), Decimal("0"))

    @property
    def total_credit(self) -> Decimal:
        return sum((line.credit for line in self.lines), Decimal("0"))

    @property
    def is_balanced(self) -> bool:
        return self.total_debit == self.total_credit


class JournalLine(Base):
    """
    One debit or credit against an account.

    Exactly one of debit/credit is > 0.  ``effect`` names the balanced half
    of the journal the line belongs to (e.g. ``sale`` and ``cogs`` on a
    sales invoice).
    """

    __tablename__ = "journal_lines"

    __table_args__ = (
        Index("idx_journal_line_journal", "journal_id"),
        Index("idx_journal_line_account", "account_id"),
    )

    journal_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("journals.id"),
        nullable=False,
    )

    account_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("accounts.id"),
        nullable=False,
    )

    debit: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    credit: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    effect: Mapped[str] = mapped_column(String(30), nullable=False)

    memo: Mapped[str | None] = mapped_column(String(500), nullable=True)

    line_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    journal: Mapped["Journal"] = relationship(back_populates="lines")

    account: Mapped["Account"] = relationship(lazy="joined")

    def __repr__(self) -> str:
        side = f"Dr {self.debit}" if self.debit > 0 else f"Cr {self.credit}"
        return f"<JournalLine {self.effect} {side}>"


class AccountBalance(Base):
    """
    Derived cumulative debit/credit totals for one account.

    The sign convention (debit-normal vs credit-normal) belongs to the
    reporting layer; this row only accumulates raw totals.
    """

    __tablename__ = "account_balances"

    __table_args__ = (UniqueConstraint("account_id", name="uq_account_balance_account"),)

    account_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("accounts.id"),
        nullable=False,
    )

    total_debit: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    total_credit: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    last_journal_seq: Mapped[int | None] = mapped_column(nullable=True)

    updated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<AccountBalance {self.account_id} Dr={self.total_debit} Cr={self.total_credit}>"
