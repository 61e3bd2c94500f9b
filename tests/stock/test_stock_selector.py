"""
StockSelector -- balances, movement listings, tracking availability, replay.

Verifies:
- Balance lookups and filtered listings
- Movement streams are ordered, filtered and restartable, with running
  quantities computed over full history
- Batch balances and available serials follow receipts and issues
- Replaying a key reproduces its snapshot; tampered snapshots are reported
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from erp_kernel.domain.dtos import StockMovementSpec
from erp_kernel.models.stock_ledger import StockBalance, StockSourceType
from erp_kernel.selectors.stock_selector import (
    MovementFilter,
    StockBalanceFilter,
    StockSelector,
)
from erp_kernel.services.stock_ledger import StockLedgerService


def move(ledger, catalog, on, qty_in="0", qty_out="0", cost="0", **kw):
    source = kw.pop(
        "source_type",
        StockSourceType.PURCHASE if Decimal(qty_in) > 0 else StockSourceType.SALES,
    )
    return ledger.append_movement(
        StockMovementSpec(
            item_id=kw.pop("item_id", catalog.widget),
            location_id=kw.pop("location_id", catalog.main),
            transaction_date=on,
            source_type=source,
            qty_in=Decimal(qty_in),
            qty_out=Decimal(qty_out),
            unit_cost=Decimal(cost),
            **kw,
        )
    )


@pytest.fixture
def ledger(session, clock):
    return StockLedgerService(session, clock)


@pytest.fixture
def selector(session):
    return StockSelector(session)


class TestBalances:
    def test_missing_key_returns_none(self, selector, catalog):
        assert selector.get_balance(catalog.widget, catalog.main) is None

    def test_get_balance(self, ledger, selector, catalog):
        move(ledger, catalog, date(2024, 3, 1), qty_in="100", cost="10")
        move(ledger, catalog, date(2024, 3, 1), qty_in="50", cost="16")

        balance = selector.get_balance(catalog.widget, catalog.main)
        assert balance.balance_qty == Decimal("150")
        assert balance.avg_cost == Decimal("12")
        assert balance.stock_value == Decimal("1800.00")

    def test_filtered_balances(self, ledger, selector, catalog):
        move(ledger, catalog, date(2024, 3, 1), qty_in="5", cost="1")
        move(ledger, catalog, date(2024, 3, 1), qty_in="1", cost="1", location_id=catalog.backup)
        move(ledger, catalog, date(2024, 3, 1), qty_in="9", cost="2", item_id=catalog.gadget)

        assert len(selector.get_balances()) == 3
        by_location = selector.get_balances(StockBalanceFilter(location_id=catalog.main))
        assert {b.item_id for b in by_location} == {catalog.widget, catalog.gadget}
        large = selector.get_balances(StockBalanceFilter(min_qty=Decimal("5")))
        assert {b.balance_qty for b in large} == {Decimal("5"), Decimal("9")}

    def test_total_stock_value(self, ledger, selector, catalog):
        move(ledger, catalog, date(2024, 3, 1), qty_in="10", cost="2.5")
        move(ledger, catalog, date(2024, 3, 1), qty_in="4", cost="10", location_id=catalog.backup)

        assert selector.get_total_stock_value() == Decimal("65.00")
        assert selector.get_total_stock_value(catalog.backup) == Decimal("40.00")


class TestMovements:
    @pytest.fixture
    def history(self, ledger, catalog):
        move(ledger, catalog, date(2024, 3, 1), qty_in="10", cost="1")
        move(ledger, catalog, date(2024, 3, 2), qty_out="3")
        move(ledger, catalog, date(2024, 3, 3), qty_in="5", cost="2", source_type=StockSourceType.ADJUSTMENT_IN)
        move(ledger, catalog, date(2024, 3, 4), qty_out="4")
        move(ledger, catalog, date(2024, 3, 2), qty_in="7", cost="1", location_id=catalog.backup)

    def test_ordered_by_date_then_sequence(self, selector, history):
        records = selector.get_movements().to_list()
        keys = [(r.transaction_date, r.seq) for r in records]
        assert keys == sorted(keys)
        assert len(records) == 5

    def test_running_balance_per_key(self, selector, catalog, history):
        records = selector.get_movements(MovementFilter(item_id=catalog.widget, location_id=catalog.main))
        assert [r.balance_qty for r in records] == [
            Decimal("10"), Decimal("7"), Decimal("12"), Decimal("8"),
        ]

    def test_date_from_keeps_full_history_balance(self, selector, catalog, history):
        records = selector.get_movements(
            MovementFilter(location_id=catalog.main, date_from=date(2024, 3, 3))
        ).to_list()
        assert [r.balance_qty for r in records] == [Decimal("12"), Decimal("8")]

    def test_date_to_and_source_type(self, selector, catalog, history):
        records = selector.get_movements(
            MovementFilter(source_type=StockSourceType.SALES, date_to=date(2024, 3, 3))
        ).to_list()
        assert len(records) == 1
        assert records[0].qty_out == Decimal("3")
        assert records[0].balance_qty == Decimal("7")

    def test_stream_is_restartable_and_sees_new_rows(self, ledger, selector, catalog, history):
        stream = selector.get_movements(MovementFilter(location_id=catalog.backup))
        assert len(list(stream)) == 1
        move(ledger, catalog, date(2024, 3, 9), qty_out="2", location_id=catalog.backup)
        assert [r.balance_qty for r in stream] == [Decimal("7"), Decimal("5")]


class TestTrackingAvailability:
    def test_batch_balances_sorted_by_expiry(self, ledger, selector, catalog):
        item = catalog.batch_item
        move(ledger, catalog, date(2024, 3, 1), qty_in="10", cost="4", item_id=item,
             batch_no="LATE", expiry_date=date(2025, 6, 1))
        move(ledger, catalog, date(2024, 3, 2), qty_in="5", cost="4", item_id=item,
             batch_no="SOON", expiry_date=date(2024, 12, 1))
        move(ledger, catalog, date(2024, 3, 3), qty_in="3", cost="4", item_id=item,
             batch_no="NOEXP")
        move(ledger, catalog, date(2024, 3, 4), qty_out="5", item_id=item, batch_no="SOON")
        move(ledger, catalog, date(2024, 3, 4), qty_out="4", item_id=item, batch_no="LATE")

        batches = selector.get_batch_balances(item, catalog.main)
        assert [(b.batch_no, b.quantity) for b in batches] == [
            ("LATE", Decimal("6")),
            ("NOEXP", Decimal("3")),
        ]
        assert batches[0].first_received == date(2024, 3, 1)

    def test_available_serials(self, ledger, selector, catalog):
        item = catalog.serial_item
        move(ledger, catalog, date(2024, 3, 1), qty_in="3", cost="100", item_id=item,
             serial_numbers=("S-3", "S-1", "S-2"))
        move(ledger, catalog, date(2024, 3, 2), qty_out="1", item_id=item,
             serial_numbers=("S-2",))

        assert selector.get_available_serials(item, catalog.main) == ("S-1", "S-3")
        assert selector.get_available_serials(item, catalog.backup) == ()


class TestReplay:
    def test_replay_matches_snapshot(self, ledger, selector, catalog):
        move(ledger, catalog, date(2024, 3, 1), qty_in="3", cost="1")
        move(ledger, catalog, date(2024, 3, 1), qty_in="3", cost="2")
        move(ledger, catalog, date(2024, 3, 2), qty_out="4")

        replayed = selector.replay_balance(catalog.widget, catalog.main)
        snapshot = selector.get_balance(catalog.widget, catalog.main)
        assert replayed == snapshot
        assert selector.verify_balances() == []

    def test_tampered_snapshot_is_reported(self, ledger, selector, catalog, session):
        move(ledger, catalog, date(2024, 3, 1), qty_in="3", cost="1")
        balance = session.execute(select(StockBalance)).scalar_one()
        balance.balance_qty = Decimal("4")
        session.flush()

        drifts = selector.verify_balances()
        assert len(drifts) == 1
        assert drifts[0].key == (str(catalog.widget), str(catalog.main))
        assert drifts[0].snapshot[0] == Decimal("4")
        assert drifts[0].replayed[0] == Decimal("3")
