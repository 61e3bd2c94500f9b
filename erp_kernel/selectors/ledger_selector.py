"""
Module: erp_kernel.selectors.ledger_selector
Responsibility: Read-only general ledger queries -- account balances,
    journal listings, trial balance totals and the replay check that
    recomputes every AccountBalance from posted journal lines.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Journals are listed in seq order.
    - trial_balance_totals() has equal sides whenever every posted journal
      balanced (double entry).

Failure modes:
    - NotFoundError from get_account_balance() / get_journal() on unknown ids.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from erp_kernel.db.types import ZERO
from erp_kernel.domain.dtos import AccountBalanceRecord, BalanceDrift, JournalRecord
from erp_kernel.exceptions import NotFoundError
from erp_kernel.models.account import Account, AccountType
from erp_kernel.models.journal import AccountBalance, Journal, JournalLine
from erp_kernel.selectors.base import BaseSelector
from erp_kernel.services.general_ledger import journal_to_record


@dataclass(frozen=True)
class JournalFilter:
    date_from: date | None = None
    date_to: date | None = None
    account_id: UUID | None = None
    source_document_id: UUID | None = None


class LedgerSelector(BaseSelector[JournalLine]):
    """
    Selector for general ledger queries.

    Contract:
        Balances come from the AccountBalance snapshot; replay methods derive
        the same figures from JournalLine rows so the two can be compared.

    Guarantees:
        - Every account appears in get_all_account_balances(), with zero
          totals when it has never been posted to.
    """

    def _record(self, account: Account, balance: AccountBalance | None) -> AccountBalanceRecord:
        return AccountBalanceRecord(
            account_id=account.id,
            account_code=account.code,
            account_name=account.name,
            account_type=AccountType(account.account_type).value,
            total_debit=balance.total_debit if balance else ZERO,
            total_credit=balance.total_credit if balance else ZERO,
            opening_balance=account.opening_balance,
        )

    def get_account_balance(self, account_id: UUID) -> AccountBalanceRecord:
        account = self.session.get(Account, account_id)
        if account is None:
            raise NotFoundError("Account", str(account_id))
        balance = self.session.execute(
            select(AccountBalance).where(AccountBalance.account_id == account_id)
        ).scalar_one_or_none()
        return self._record(account, balance)

    def get_all_account_balances(self) -> list[AccountBalanceRecord]:
        rows = self.session.execute(
            select(Account, AccountBalance)
            .outerjoin(AccountBalance, AccountBalance.account_id == Account.id)
            .order_by(Account.code)
        ).all()
        return [self._record(account, balance) for account, balance in rows]

    def get_journal(self, journal_id: UUID) -> JournalRecord:
        journal = self.session.get(Journal, journal_id)
        if journal is None:
            raise NotFoundError("Journal", str(journal_id))
        return journal_to_record(journal)

    def get_journals(self, journal_filter: JournalFilter | None = None) -> list[JournalRecord]:
        f = journal_filter or JournalFilter()
        stmt = select(Journal)
        if f.date_from is not None:
            stmt = stmt.where(Journal.journal_date >= f.date_from)
        if f.date_to is not None:
            stmt = stmt.where(Journal.journal_date <= f.date_to)
        if f.source_document_id is not None:
            stmt = stmt.where(Journal.source_document_id == f.source_document_id)
        if f.account_id is not None:
            stmt = stmt.where(
                Journal.id.in_(
                    select(JournalLine.journal_id).where(
                        JournalLine.account_id == f.account_id
                    )
                )
            )
        stmt = stmt.order_by(Journal.seq)
        return [journal_to_record(j) for j in self.session.execute(stmt).scalars()]

    # ------------------------------------------------------------------
    # Replay and totals
    # ------------------------------------------------------------------

    def replay_account_balances(self) -> dict[UUID, tuple[Decimal, Decimal]]:
        """(total_debit, total_credit) per account, summed from journal lines."""
        totals: dict[UUID, tuple[Decimal, Decimal]] = {}
        rows = self.session.execute(
            select(JournalLine.account_id, JournalLine.debit, JournalLine.credit)
        ).all()
        for account_id, debit, credit in rows:
            dr, cr = totals.get(account_id, (ZERO, ZERO))
            totals[account_id] = (dr + debit, cr + credit)
        return totals

    def verify_account_balances(self) -> list[BalanceDrift]:
        replayed = self.replay_account_balances()
        snapshots = {
            b.account_id: (b.total_debit, b.total_credit)
            for b in self.session.execute(select(AccountBalance)).scalars()
        }
        drifts = []
        for account_id in sorted(set(replayed) | set(snapshots), key=str):
            snapshot = snapshots.get(account_id, (ZERO, ZERO))
            expected = replayed.get(account_id, (ZERO, ZERO))
            if snapshot != expected:
                drifts.append(
                    BalanceDrift(key=(str(account_id),), snapshot=snapshot, replayed=expected)
                )
        return drifts

    def trial_balance_totals(self) -> tuple[Decimal, Decimal]:
        """Raw sum of debits and credits across every account balance."""
        total_debit = ZERO
        total_credit = ZERO
        for balance in self.session.execute(select(AccountBalance)).scalars():
            total_debit += balance.total_debit
            total_credit += balance.total_credit
        return total_debit, total_credit
