"""
Pytest fixtures for the ERP posting kernel test suite.

Provides:
- A file-based SQLite database per test (tables created, immutability
  listeners registered)
- The default posting configuration and a deterministic clock
- A seeded catalog: chart of accounts, item categories, items of every
  tracking mode, and two locations
- DocumentService plus small helpers that create and confirm documents

Sessions:
    SQLite transactions begin with BEGIN IMMEDIATE, so an open session
    holds the database write lock.  Tests that go through DocumentService
    read back with short-lived sessions (``with session_factory() as s``)
    and never keep one open across a confirm().
"""

import json
import logging
from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from io import StringIO
from uuid import UUID

import pytest
from sqlalchemy import func, select

from erp_config import get_active_config
from erp_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
    session_scope,
)
from erp_kernel.db.immutability import register_immutability_listeners
from erp_kernel.domain.clock import DeterministicClock
from erp_kernel.domain.costing import NegativeStockPolicy
from erp_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from erp_kernel.models.document import DocumentType, LineDirection
from erp_kernel.models.inventory import TrackingMode
from erp_kernel.models.journal import Journal
from erp_kernel.models.stock_ledger import StockLedgerEntry
from erp_kernel.selectors.ledger_selector import JournalFilter, LedgerSelector
from erp_kernel.selectors.stock_selector import MovementFilter, StockSelector
from erp_kernel.services.account_directory import AccountDirectory
from erp_kernel.services.inventory_directory import InventoryDirectory
from erp_services.document_lifecycle import DocumentLineInput, DocumentService

DOC_DATE = date(2024, 3, 1)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture erp_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, documents):
            documents.confirm(doc_id)
            logs = captured_logs()
            assert any(r["message"] == "document_confirmed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("erp_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def engine(tmp_path):
    eng = init_engine_from_url(f"sqlite:///{tmp_path / 'erp_test.db'}")
    create_tables()
    register_immutability_listeners()
    yield eng
    reset_engine()


@pytest.fixture
def session_factory(engine):
    return get_session_factory()


@pytest.fixture
def clock():
    return DeterministicClock()


@pytest.fixture
def config():
    return get_active_config()


@pytest.fixture
def block_config(config):
    """Default configuration with negative stock blocked."""
    return replace(
        config,
        policy=replace(config.policy, negative_stock=NegativeStockPolicy.BLOCK),
    )


# =============================================================================
# Seeded catalog
# =============================================================================


@dataclass(frozen=True)
class Catalog:
    accounts: dict[str, UUID]  # by code
    raw_category: UUID
    fg_category: UUID
    widget: UUID  # tracking NONE, raw category
    gadget: UUID  # tracking NONE, finished goods category
    batch_item: UUID
    serial_item: UUID
    main: UUID
    backup: UUID

    def account(self, code: str) -> UUID:
        return self.accounts[code]


@pytest.fixture
def catalog(session_factory, config, clock) -> Catalog:
    with session_scope(session_factory) as session:
        accounts = AccountDirectory(session, clock).seed_chart(config.chart)
        codes = {a.code: a.id for a in accounts}

        directory = InventoryDirectory(session, clock)
        raw = directory.create_category("RAW", "Raw Materials")
        fg = directory.create_category(
            "FG",
            "Finished Goods",
            inventory_account_id=codes["1320"],
            cogs_account_id=codes["5000"],
        )
        widget = directory.create_item(
            "WID-001", "Widget", cost_price="8.00", selling_price="20.00", category_id=raw.id
        )
        gadget = directory.create_item(
            "GAD-001", "Gadget", cost_price="30.00", selling_price="55.00", category_id=fg.id
        )
        batch_item = directory.create_item(
            "BAT-001", "Batched Resin", tracking_mode=TrackingMode.BATCH,
            cost_price="4.00", selling_price="9.00", category_id=raw.id,
        )
        serial_item = directory.create_item(
            "SER-001", "Serialized Motor", tracking_mode=TrackingMode.SERIAL,
            cost_price="100.00", selling_price="180.00", category_id=fg.id,
        )
        main = directory.create_location("MAIN", "Main Warehouse")
        backup = directory.create_location("BACKUP", "Backup Store")

        return Catalog(
            accounts=codes,
            raw_category=raw.id,
            fg_category=fg.id,
            widget=widget.id,
            gadget=gadget.id,
            batch_item=batch_item.id,
            serial_item=serial_item.id,
            main=main.id,
            backup=backup.id,
        )


@pytest.fixture
def session(session_factory, catalog):
    """
    A session for kernel-level tests.  Rolled back at teardown; do not
    combine with DocumentService in the same test.
    """
    s = session_factory()
    yield s
    s.rollback()
    s.close()


# =============================================================================
# Documents
# =============================================================================


@pytest.fixture
def documents(session_factory, config, clock, catalog) -> DocumentService:
    return DocumentService(session_factory, config, clock)


@pytest.fixture
def receive(documents, catalog):
    """Create and confirm a GRN for one line; returns the ConfirmationResult."""

    def _receive(item_id, quantity, unit_cost, location_id=None, payment_type="CREDIT",
                 document_date=DOC_DATE, **line_fields):
        draft = documents.create_draft(
            DocumentType.GRN,
            document_date,
            location_id=location_id or catalog.main,
            payment_type=payment_type,
            counterparty="Acme Supplies",
            lines=[
                DocumentLineInput(
                    item_id=item_id,
                    quantity=Decimal(str(quantity)),
                    unit_cost=Decimal(str(unit_cost)),
                    **line_fields,
                )
            ],
        )
        return documents.confirm(draft.document_id)

    return _receive


@pytest.fixture
def sell(documents, catalog):
    """Create and confirm a sales invoice for one line."""

    def _sell(item_id, quantity, unit_price=None, location_id=None, payment_type="CASH",
              document_date=DOC_DATE, **line_fields):
        draft = documents.create_draft(
            DocumentType.SALES_INVOICE,
            document_date,
            location_id=location_id or catalog.main,
            payment_type=payment_type,
            counterparty="Walk-in Customer",
            lines=[
                DocumentLineInput(
                    item_id=item_id,
                    quantity=Decimal(str(quantity)),
                    unit_price=None if unit_price is None else Decimal(str(unit_price)),
                    **line_fields,
                )
            ],
        )
        return documents.confirm(draft.document_id)

    return _sell


@pytest.fixture
def adjust(documents, catalog):
    """Create and confirm a single-line stock adjustment."""

    def _adjust(item_id, quantity, direction, unit_cost=None, location_id=None,
                document_date=DOC_DATE):
        draft = documents.create_draft(
            DocumentType.STOCK_ADJUSTMENT,
            document_date,
            location_id=location_id or catalog.main,
            lines=[
                DocumentLineInput(
                    item_id=item_id,
                    quantity=Decimal(str(quantity)),
                    direction=LineDirection(direction),
                    unit_cost=None if unit_cost is None else Decimal(str(unit_cost)),
                )
            ],
        )
        return documents.confirm(draft.document_id)

    return _adjust


class LedgerReader:
    """Reads both ledgers through a fresh session per call."""

    def __init__(self, session_factory, catalog: Catalog):
        self._factory = session_factory
        self._catalog = catalog

    def _read(self, fn):
        with self._factory() as session:
            return fn(session)

    def stock(self, item_id, location_id=None):
        location_id = location_id or self._catalog.main
        return self._read(lambda s: StockSelector(s).get_balance(item_id, location_id))

    def account(self, code: str):
        account_id = self._catalog.account(code)
        return self._read(lambda s: LedgerSelector(s).get_account_balance(account_id))

    def net(self, code: str) -> Decimal:
        return self.account(code).net_debit

    def movements(self, **filter_fields):
        return self._read(
            lambda s: StockSelector(s).get_movements(MovementFilter(**filter_fields)).to_list()
        )

    def journals(self, **filter_fields):
        return self._read(lambda s: LedgerSelector(s).get_journals(JournalFilter(**filter_fields)))

    def serials(self, item_id, location_id=None):
        location_id = location_id or self._catalog.main
        return self._read(lambda s: StockSelector(s).get_available_serials(item_id, location_id))

    def batches(self, item_id, location_id=None):
        location_id = location_id or self._catalog.main
        return self._read(lambda s: StockSelector(s).get_batch_balances(item_id, location_id))

    def trial_balance(self):
        return self._read(lambda s: LedgerSelector(s).trial_balance_totals())

    def drifts(self):
        return self._read(
            lambda s: StockSelector(s).verify_balances() + LedgerSelector(s).verify_account_balances()
        )

    def counts(self) -> tuple[int, int]:
        """(stock ledger entries, journals)."""

        def _count(s):
            entries = s.execute(select(func.count()).select_from(StockLedgerEntry)).scalar_one()
            journals = s.execute(select(func.count()).select_from(Journal)).scalar_one()
            return entries, journals

        return self._read(_count)


@pytest.fixture
def ledgers(session_factory, catalog) -> LedgerReader:
    return LedgerReader(session_factory, catalog)
