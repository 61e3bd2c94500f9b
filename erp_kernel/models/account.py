"""
Module: erp_kernel.models.account
Responsibility: ORM persistence for the Chart of Accounts -- the target of
    every journal line.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - code is globally unique (uq_account_code).
    - code and account_type are immutable once referenced by a journal line
      (ORM listener in db/immutability.py).
    - Leading digit of the code encodes the type (1 asset, 2 liability,
      3 equity, 4 income, 5 expense); validated by AccountDirectory at
      creation when the policy asks for it.

Failure modes:
    - NotFoundError when a posting references a non-existent account.
    - InactiveReferenceError when a posting targets an inactive account.
"""

from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from erp_kernel.db.base import TrackedBase, UUIDString


class AccountType(str, Enum):
    """Types of accounts in the chart of accounts."""

    ASSET = "asset"
    LIABILITY = "liability"
    EQUITY = "equity"
    INCOME = "income"
    EXPENSE = "expense"

    @property
    def is_debit_normal(self) -> bool:
        return self in (AccountType.ASSET, AccountType.EXPENSE)

    @classmethod
    def for_code(cls, code: str) -> "AccountType | None":
        """Type encoded by the leading digit of an account code, if any."""
        if not code:
            return None
        return _TYPE_BY_LEADING_DIGIT.get(code[0])


_TYPE_BY_LEADING_DIGIT = {
    "1": AccountType.ASSET,
    "2": AccountType.LIABILITY,
    "3": AccountType.EQUITY,
    "4": AccountType.INCOME,
    "5": AccountType.EXPENSE,
}


class Account(TrackedBase):
    """
    Chart of Accounts entry.

    Contract:
        Account.code is globally unique.  Once an account is referenced by
        a JournalLine, its code and account_type MUST NOT change.

    Guarantees:
        - code is unique and non-null.
        - account_type is one of ASSET, LIABILITY, EQUITY, INCOME, EXPENSE.

    Non-goals:
        - Balances are not stored here; see AccountBalance.
    """

    __tablename__ = "accounts"

    __table_args__ = (
        UniqueConstraint("code", name="uq_account_code"),
        Index("idx_account_type", "account_type"),
        Index("idx_account_active", "is_active"),
    )

    code: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    account_type: Mapped[AccountType] = mapped_column(
        String(20),
        nullable=False,
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    # Carried for the reporting layer; the ledger engine never adds it in.
    opening_balance: Mapped[Decimal] = mapped_column(
        nullable=False,
        default=Decimal("0"),
    )

    parent_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("accounts.id"),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Account {self.code}: {self.name}>"

    @property
    def type(self) -> AccountType:
        return AccountType(self.account_type)

    @property
    def is_debit_normal(self) -> bool:
        return self.type.is_debit_normal
