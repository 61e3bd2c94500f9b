"""
Append-only ledger rows.

Verifies:
- Stock ledger entries cannot be updated or deleted
- Journals and journal lines cannot be updated or deleted
- An account's code is frozen once journal lines reference it
- Unchanged rows flush without tripping the guards
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from erp_kernel.domain.dtos import JournalLineSpec, JournalSpec, StockMovementSpec
from erp_kernel.exceptions import ImmutabilityViolationError
from erp_kernel.models.account import Account
from erp_kernel.models.journal import Journal, JournalLine
from erp_kernel.models.stock_ledger import StockLedgerEntry, StockSourceType
from erp_kernel.services.general_ledger import GeneralLedgerService
from erp_kernel.services.stock_ledger import StockLedgerService


@pytest.fixture
def stock_entry(session, clock, catalog):
    StockLedgerService(session, clock).append_movement(
        StockMovementSpec(
            item_id=catalog.widget,
            location_id=catalog.main,
            transaction_date=date(2024, 3, 1),
            source_type=StockSourceType.PURCHASE,
            qty_in=Decimal("5"),
            unit_cost=Decimal("2"),
        )
    )
    return session.execute(select(StockLedgerEntry)).scalar_one()


@pytest.fixture
def posted_journal(session, clock, catalog):
    GeneralLedgerService(session, clock).post(
        JournalSpec(
            journal_date=date(2024, 3, 1),
            description="opening cash",
            lines=(
                JournalLineSpec(account_id=catalog.account("1001"), debit=Decimal("50.00")),
                JournalLineSpec(account_id=catalog.account("3001"), credit=Decimal("50.00")),
            ),
        )
    )
    return session.execute(select(Journal)).scalar_one()


class TestStockEntries:
    def test_update_blocked(self, session, stock_entry):
        stock_entry.qty_in = Decimal("6")
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_delete_blocked(self, session, stock_entry):
        session.delete(stock_entry)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_unchanged_flush_is_fine(self, session, stock_entry):
        stock_entry.qty_in = Decimal("5")
        session.flush()


class TestJournals:
    def test_journal_update_blocked(self, session, posted_journal):
        posted_journal.description = "rewritten"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_journal_line_update_blocked(self, session, posted_journal):
        line = session.execute(select(JournalLine).limit(1)).scalar_one()
        line.debit = Decimal("49.00")
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_journal_line_delete_blocked(self, session, posted_journal):
        line = session.execute(select(JournalLine).limit(1)).scalar_one()
        session.delete(line)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestAccounts:
    def test_code_frozen_after_posting(self, session, posted_journal, catalog):
        account = session.get(Account, catalog.account("1001"))
        account.code = "1009"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_code_change_allowed_before_posting(self, session, catalog):
        account = session.get(Account, catalog.account("1003"))
        account.code = "1004"
        session.flush()
        assert account.code == "1004"

    def test_name_change_allowed_after_posting(self, session, posted_journal, catalog):
        account = session.get(Account, catalog.account("1001"))
        account.name = "Cash Drawer"
        session.flush()
