"""
AccountDirectory -- chart of accounts maintenance.

Responsibility:
    Creates, renames, activates and deactivates accounts, and seeds a chart
    from configuration.  Enforces the code/type convention (leading digit
    1-5 encodes asset, liability, equity, income, expense) when asked to.

Architecture position:
    Kernel > Services.  Flushes only; the caller owns the transaction.

Invariants enforced:
    - Account codes are unique and numeric.
    - Code and type are frozen once a journal line references the account.
      The check here gives a clean error before flush; the ORM listener in
      db/immutability.py is the backstop.

Failure modes:
    - DuplicateCodeError, AccountCodeTypeMismatchError, ValidationError.
    - ImmutabilityViolationError on a structural change to a used account.
    - NotFoundError / InactiveReferenceError from require().
"""

from collections.abc import Iterable
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from erp_kernel.db.immutability import account_has_journal_lines
from erp_kernel.db.types import to_decimal
from erp_kernel.domain.clock import Clock
from erp_kernel.exceptions import (
    AccountCodeTypeMismatchError,
    DuplicateCodeError,
    ImmutabilityViolationError,
    InactiveReferenceError,
    NotFoundError,
    ValidationError,
)
from erp_kernel.logging_config import get_logger
from erp_kernel.models.account import Account, AccountType
from erp_kernel.services.base import BaseService

logger = get_logger("services.account_directory")


class AccountDirectory(BaseService[Account]):
    """
    Write access to the chart of accounts.

    Contract:
        ``validate_codes`` switches the leading-digit check on or off; it
        mirrors the posting policy flag of the same name.

    Non-goals:
        - Balances.  Those are derived by GeneralLedgerService.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        validate_codes: bool = True,
    ):
        super().__init__(session, clock)
        self.validate_codes = validate_codes

    def create_account(
        self,
        code: str,
        name: str,
        account_type: AccountType | str,
        opening_balance: Decimal | str | int = Decimal("0"),
        parent_id: UUID | None = None,
    ) -> Account:
        code = (code or "").strip()
        if not code.isdigit():
            raise ValidationError(
                f"Account code must be numeric: {code!r}", field="code", value=code
            )
        try:
            acct_type = AccountType(account_type)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown account type {account_type!r}",
                field="account_type",
                value=account_type,
            ) from exc
        self._check_code_type(code, acct_type)

        if self.get_by_code(code) is not None:
            raise DuplicateCodeError("Account", code)
        if parent_id is not None:
            self.require(parent_id)

        account = Account(
            code=code,
            name=name,
            account_type=acct_type,
            opening_balance=to_decimal(opening_balance, "opening_balance"),
            parent_id=parent_id,
            is_active=True,
        )
        self.session.add(account)
        self.session.flush()
        logger.info(
            "account_created",
            extra={"account_code": code, "account_type": acct_type.value},
        )
        return account

    def seed_chart(self, entries: Iterable) -> list[Account]:
        """
        Create every chart entry whose code is not present yet.

        ``entries`` are objects with ``code``, ``name`` and ``account_type``
        attributes (erp_config.ChartAccountDef).  Existing codes are left
        untouched, so seeding twice is harmless.
        """
        created = []
        for entry in entries:
            if self.get_by_code(entry.code) is not None:
                continue
            created.append(
                self.create_account(entry.code, entry.name, entry.account_type)
            )
        logger.info("chart_seeded", extra={"accounts_created": len(created)})
        return created

    def get_by_code(self, code: str) -> Account | None:
        return self.session.execute(
            select(Account).where(Account.code == code)
        ).scalar_one_or_none()

    def require(self, account_id: UUID, active: bool = False) -> Account:
        account = self.session.get(Account, account_id)
        if account is None:
            raise NotFoundError("Account", str(account_id))
        if active and not account.is_active:
            raise InactiveReferenceError("Account", str(account_id))
        return account

    def rename(self, account_id: UUID, name: str) -> Account:
        account = self.require(account_id)
        account.name = name
        self.session.flush()
        return account

    def activate(self, account_id: UUID) -> Account:
        return self._set_active(account_id, True)

    def deactivate(self, account_id: UUID) -> Account:
        """Stop new postings to the account; history and balances stay."""
        return self._set_active(account_id, False)

    def _set_active(self, account_id: UUID, is_active: bool) -> Account:
        account = self.require(account_id)
        account.is_active = is_active
        self.session.flush()
        logger.info(
            "account_activation_changed",
            extra={"account_code": account.code, "is_active": is_active},
        )
        return account

    def change_type(self, account_id: UUID, account_type: AccountType | str) -> Account:
        account = self.require(account_id)
        acct_type = AccountType(account_type)
        if acct_type == account.type:
            return account
        if account_has_journal_lines(self.session.connection(), account.id):
            raise ImmutabilityViolationError(
                entity_type="Account",
                entity_id=str(account.id),
                reason="account type cannot change once journal lines reference it",
            )
        self._check_code_type(account.code, acct_type)
        account.account_type = acct_type
        self.session.flush()
        return account

    def _check_code_type(self, code: str, acct_type: AccountType) -> None:
        if not self.validate_codes:
            return
        expected = AccountType.for_code(code)
        if expected != acct_type:
            raise AccountCodeTypeMismatchError(
                account_code=code,
                account_type=acct_type.value,
                expected_type=expected.value if expected else None,
            )
