"""
Module: erp_kernel.selectors.stock_selector
Responsibility: Read-only stock queries -- balance snapshots, movement
    listings with running balances, batch and serial availability, and the
    replay check that recomputes a balance from the ledger alone.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Movements are always ordered by (transaction_date, seq).
    - replay_balance() uses domain.costing.replay, the same arithmetic the
      engine applies on the write path.

Failure modes:
    - get_balance() returns None for a key that never moved.
    - verify_balances() returns an empty list when every snapshot matches.
"""

from collections.abc import Iterator
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from erp_kernel.db.types import ZERO, round_quantity
from erp_kernel.domain.costing import MovementFacts, replay
from erp_kernel.domain.dtos import (
    BalanceDrift,
    BatchBalanceRecord,
    StockBalanceRecord,
    StockMovementRecord,
)
from erp_kernel.models.stock_ledger import StockBalance, StockLedgerEntry
from erp_kernel.selectors.base import BaseSelector
from erp_kernel.services.stock_ledger import balance_to_record, entry_to_record


@dataclass(frozen=True)
class StockBalanceFilter:
    item_id: UUID | None = None
    location_id: UUID | None = None
    min_qty: Decimal | None = None


@dataclass(frozen=True)
class MovementFilter:
    item_id: UUID | None = None
    location_id: UUID | None = None
    source_type: str | None = None
    date_from: date | None = None
    date_to: date | None = None


class MovementStream:
    """
    Lazy, restartable movement listing.

    Each iteration runs the query again, so a stream obtained before new
    movements were appended sees them on its next pass.  balance_qty on each
    yielded record is the running quantity of that record's key, computed
    over the key's full history even when date_from or source_type narrow
    what is yielded.
    """

    _BATCH = 500

    def __init__(self, session: Session, movement_filter: MovementFilter):
        self._session = session
        self._filter = movement_filter

    def __iter__(self) -> Iterator[StockMovementRecord]:
        f = self._filter
        stmt = select(StockLedgerEntry)
        if f.item_id is not None:
            stmt = stmt.where(StockLedgerEntry.item_id == f.item_id)
        if f.location_id is not None:
            stmt = stmt.where(StockLedgerEntry.location_id == f.location_id)
        if f.date_to is not None:
            stmt = stmt.where(StockLedgerEntry.transaction_date <= f.date_to)
        stmt = stmt.order_by(
            StockLedgerEntry.transaction_date, StockLedgerEntry.seq
        ).execution_options(yield_per=self._BATCH)

        running: dict[tuple[UUID, UUID], Decimal] = {}
        for entry in self._session.execute(stmt).scalars():
            key = (entry.item_id, entry.location_id)
            qty = round_quantity(running.get(key, ZERO) + entry.qty_in - entry.qty_out)
            running[key] = qty
            if f.date_from is not None and entry.transaction_date < f.date_from:
                continue
            if f.source_type is not None and entry.source_type != f.source_type:
                continue
            yield entry_to_record(entry, balance_qty=qty)

    def to_list(self) -> list[StockMovementRecord]:
        return list(self)


class StockSelector(BaseSelector[StockLedgerEntry]):
    """
    Selector for stock balances and movements.

    Contract:
        Reads the StockBalance snapshot for current positions and the
        StockLedgerEntry log for history, replay and tracking availability.

    Guarantees:
        - All quantities and values are Decimal.
    """

    def get_balance(self, item_id: UUID, location_id: UUID) -> StockBalanceRecord | None:
        balance = self.session.execute(
            select(StockBalance).where(
                StockBalance.item_id == item_id,
                StockBalance.location_id == location_id,
            )
        ).scalar_one_or_none()
        return balance_to_record(balance) if balance is not None else None

    def get_balances(
        self, balance_filter: StockBalanceFilter | None = None
    ) -> list[StockBalanceRecord]:
        f = balance_filter or StockBalanceFilter()
        stmt = select(StockBalance)
        if f.item_id is not None:
            stmt = stmt.where(StockBalance.item_id == f.item_id)
        if f.location_id is not None:
            stmt = stmt.where(StockBalance.location_id == f.location_id)
        records = [
            balance_to_record(b)
            for b in self.session.execute(stmt).scalars()
            if f.min_qty is None or b.balance_qty >= f.min_qty
        ]
        return sorted(records, key=lambda r: (str(r.item_id), str(r.location_id)))

    def get_movements(self, movement_filter: MovementFilter | None = None) -> MovementStream:
        return MovementStream(self.session, movement_filter or MovementFilter())

    def get_total_stock_value(self, location_id: UUID | None = None) -> Decimal:
        stmt = select(StockBalance.stock_value)
        if location_id is not None:
            stmt = stmt.where(StockBalance.location_id == location_id)
        return sum(self.session.execute(stmt).scalars(), ZERO)

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    def _key_entries(self, item_id: UUID, location_id: UUID) -> list[StockLedgerEntry]:
        return list(
            self.session.execute(
                select(StockLedgerEntry)
                .where(
                    StockLedgerEntry.item_id == item_id,
                    StockLedgerEntry.location_id == location_id,
                )
                .order_by(StockLedgerEntry.transaction_date, StockLedgerEntry.seq)
            ).scalars()
        )

    def replay_balance(self, item_id: UUID, location_id: UUID) -> StockBalanceRecord:
        """Balance recomputed from the key's ledger entries alone."""
        entries = self._key_entries(item_id, location_id)
        state = replay(
            MovementFacts(qty_in=e.qty_in, qty_out=e.qty_out, unit_cost=e.unit_cost)
            for e in entries
        )
        return StockBalanceRecord(
            item_id=item_id,
            location_id=location_id,
            balance_qty=state.quantity,
            avg_cost=state.avg_cost,
            stock_value=state.stock_value,
            last_seq=entries[-1].seq if entries else None,
            last_transaction_date=entries[-1].transaction_date if entries else None,
        )

    def verify_balances(self) -> list[BalanceDrift]:
        """Keys whose snapshot differs from a replay of their entries."""
        drifts = []
        for balance in list(self.session.execute(select(StockBalance)).scalars()):
            replayed = self.replay_balance(balance.item_id, balance.location_id)
            snapshot = (balance.balance_qty, balance.avg_cost, balance.stock_value)
            expected = (replayed.balance_qty, replayed.avg_cost, replayed.stock_value)
            if snapshot != expected:
                drifts.append(
                    BalanceDrift(
                        key=(str(balance.item_id), str(balance.location_id)),
                        snapshot=snapshot,
                        replayed=expected,
                    )
                )
        return drifts

    # ------------------------------------------------------------------
    # Tracking availability
    # ------------------------------------------------------------------

    def get_batch_balances(self, item_id: UUID, location_id: UUID) -> list[BatchBalanceRecord]:
        """Batches with stock left, earliest expiry first, then oldest receipt."""
        quantities: dict[str, Decimal] = {}
        received: dict[str, date] = {}
        expiry: dict[str, date | None] = {}
        for entry in self._key_entries(item_id, location_id):
            if not entry.batch_no:
                continue
            batch = entry.batch_no
            quantities[batch] = quantities.get(batch, ZERO) + entry.qty_in - entry.qty_out
            if entry.qty_in > 0:
                received.setdefault(batch, entry.transaction_date)
                if expiry.get(batch) is None:
                    expiry[batch] = entry.expiry_date

        records = [
            BatchBalanceRecord(
                batch_no=batch,
                expiry_date=expiry.get(batch),
                quantity=qty,
                first_received=received[batch],
            )
            for batch, qty in quantities.items()
            if qty > 0 and batch in received
        ]
        return sorted(
            records,
            key=lambda r: (
                r.expiry_date is None,
                r.expiry_date or date.max,
                r.first_received,
                r.batch_no,
            ),
        )

    def get_available_serials(self, item_id: UUID, location_id: UUID) -> tuple[str, ...]:
        """Serial numbers received into the key and not issued since."""
        in_stock: dict[str, None] = {}
        for entry in self._key_entries(item_id, location_id):
            for serial in entry.serial_numbers or ():
                if entry.qty_in > 0:
                    in_stock[serial] = None
                else:
                    in_stock.pop(serial, None)
        return tuple(sorted(in_stock))

