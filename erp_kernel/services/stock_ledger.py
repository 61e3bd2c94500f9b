"""
StockLedgerService -- append-only stock ledger with weighted-average costing.

Responsibility:
    Appends one movement to the per-(item, location) stock ledger and
    replaces the key's StockBalance snapshot with the result of applying
    that movement.  Outward movements are costed at the running average;
    that cost is the COGS basis the posting orchestrator journals.

Architecture position:
    Kernel > Services -- imperative shell around domain/costing.py.
    Called by erp_services.posting_orchestrator.  Flushes only.

Invariants enforced:
    - Exactly one of qty_in / qty_out is positive; neither is negative;
      unit_cost is never negative.
    - The source type agrees with the direction of the movement.
    - The snapshot is always the replay of the key's entries in
      (transaction_date, seq) order.  A movement dated before the key's
      latest movement is costed at the state as of its date, and the later
      entries are replayed on top of it.  Stored costs of later outward
      entries are left as booked.
    - The balance row is read FOR UPDATE before it is recomputed.

Failure modes:
    - ValidationError / NotFoundError / InactiveReferenceError on bad input.
    - NegativeStockError under the block policy.
    - ConcurrencyConflictError when the balance row for a new key is
      created concurrently by another transaction.

Audit relevance:
    Entries are immutable (db/immutability.py).  Corrections are new
    movements in the opposite direction.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from erp_kernel.db.types import (
    QUANTITY_DECIMAL_PLACES,
    ZERO,
    has_precision,
    round_money,
    to_decimal,
)
from erp_kernel.domain.clock import Clock
from erp_kernel.domain.costing import (
    CostingState,
    MovementFacts,
    NegativeStockPolicy,
    apply_movement,
    replay,
)
from erp_kernel.domain.dtos import (
    StockBalanceRecord,
    StockMovementRecord,
    StockMovementResult,
    StockMovementSpec,
)
from erp_kernel.exceptions import (
    ConcurrencyConflictError,
    NegativeStockError,
    ValidationError,
)
from erp_kernel.logging_config import get_logger
from erp_kernel.models.stock_ledger import (
    StockBalance,
    StockLedgerEntry,
    StockSourceType,
)
from erp_kernel.services.base import BaseService
from erp_kernel.services.inventory_directory import InventoryDirectory
from erp_kernel.services.sequence_service import SequenceService

logger = get_logger("services.stock_ledger")


def entry_to_record(
    entry: StockLedgerEntry, balance_qty: Decimal | None = None
) -> StockMovementRecord:
    return StockMovementRecord(
        entry_id=entry.id,
        seq=entry.seq,
        item_id=entry.item_id,
        location_id=entry.location_id,
        transaction_date=entry.transaction_date,
        source_type=StockSourceType(entry.source_type).value,
        source_document_id=entry.source_document_id,
        source_document_no=entry.source_document_no,
        qty_in=entry.qty_in,
        qty_out=entry.qty_out,
        unit_cost=entry.unit_cost,
        total_cost=entry.total_cost,
        remarks=entry.remarks,
        batch_no=entry.batch_no,
        expiry_date=entry.expiry_date,
        serial_numbers=tuple(entry.serial_numbers or ()),
        negative_balance=entry.negative_balance,
        created_at=entry.created_at,
        balance_qty=balance_qty,
    )


def balance_to_record(balance: StockBalance) -> StockBalanceRecord:
    return StockBalanceRecord(
        item_id=balance.item_id,
        location_id=balance.location_id,
        balance_qty=balance.balance_qty,
        avg_cost=balance.avg_cost,
        stock_value=balance.stock_value,
        last_seq=balance.last_seq,
        last_transaction_date=balance.last_transaction_date,
    )


class StockLedgerService(BaseService[StockLedgerEntry]):
    """
    The stock ledger engine.

    Contract:
        ``append_movement`` validates, costs and appends one movement and
        returns the entry plus the key's new balance.  The caller must hold
        the key's lock (KeyLockManager) and owns the transaction.

    Guarantees:
        - Nothing is written when validation fails.
        - StockBalance equals replay(entries of the key) after every call.

    Non-goals:
        - Transfers as a single operation.  A transfer is a TRANSFER_OUT
          and a TRANSFER_IN appended by the caller.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        negative_stock: NegativeStockPolicy = NegativeStockPolicy.ALLOW,
        sequence_service: SequenceService | None = None,
    ):
        super().__init__(session, clock)
        self.negative_stock = NegativeStockPolicy(negative_stock)
        self._sequences = sequence_service or SequenceService(session)
        self._directory = InventoryDirectory(session, self.clock)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append_movement(self, movement: StockMovementSpec) -> StockMovementResult:
        qty_in, qty_out, unit_cost, source_type = self._validate(movement)
        facts = MovementFacts(qty_in=qty_in, qty_out=qty_out, unit_cost=unit_cost)

        balance = self._lock_balance(movement.item_id, movement.location_id)
        backdated = (
            balance.last_transaction_date is not None
            and movement.transaction_date < balance.last_transaction_date
        )
        if backdated:
            # cost at the key's state as of the movement date, then carry the
            # later entries forward from there
            earlier, later = self._split_entries(
                movement.item_id, movement.location_id, movement.transaction_date
            )
            state = replay(earlier)
            costed = apply_movement(state, facts)
            after = replay(later, start=costed.after)
        else:
            state = CostingState(quantity=balance.balance_qty, avg_cost=balance.avg_cost)
            costed = apply_movement(state, facts)
            after = costed.after
        went_negative = costed.went_negative or (qty_out > 0 and after.quantity < 0)

        if went_negative:
            if self.negative_stock == NegativeStockPolicy.BLOCK:
                raise NegativeStockError(
                    item_id=str(movement.item_id),
                    location_id=str(movement.location_id),
                    available=state.quantity if costed.went_negative else after.quantity + qty_out,
                    requested=qty_out,
                )
            logger.warning(
                "negative_stock_flagged",
                extra={
                    "item_id": str(movement.item_id),
                    "location_id": str(movement.location_id),
                    "balance_before": str(state.quantity),
                    "balance_after": str(after.quantity),
                    "source_document_no": movement.source_document_no,
                },
            )

        now = self.clock.now()
        entry = StockLedgerEntry(
            seq=self._sequences.next_value(SequenceService.STOCK_LEDGER_ENTRY),
            item_id=movement.item_id,
            location_id=movement.location_id,
            transaction_date=movement.transaction_date,
            source_type=source_type,
            source_document_id=movement.source_document_id,
            source_document_no=movement.source_document_no,
            qty_in=qty_in,
            qty_out=qty_out,
            qty_in_sign=1 if qty_in > 0 else 0,
            qty_out_sign=1 if qty_out > 0 else 0,
            unit_cost=costed.unit_cost,
            total_cost=costed.total_cost,
            remarks=movement.remarks,
            batch_no=movement.batch_no,
            expiry_date=movement.expiry_date,
            serial_numbers=list(movement.serial_numbers) or None,
            negative_balance=went_negative,
            created_at=now,
        )
        self.session.add(entry)

        balance.balance_qty = after.quantity
        balance.avg_cost = after.avg_cost
        balance.stock_value = after.stock_value
        balance.last_seq = entry.seq
        if not backdated:
            balance.last_transaction_date = movement.transaction_date
        balance.updated_at = now
        self.session.flush()

        if backdated:
            logger.info(
                "movement_backdated",
                extra={
                    "seq": entry.seq,
                    "item_id": str(movement.item_id),
                    "location_id": str(movement.location_id),
                    "transaction_date": movement.transaction_date.isoformat(),
                    "latest_transaction_date": balance.last_transaction_date.isoformat(),
                    "replayed_entries": len(later),
                },
            )

        logger.info(
            "movement_appended",
            extra={
                "seq": entry.seq,
                "item_id": str(movement.item_id),
                "location_id": str(movement.location_id),
                "source_type": source_type.value,
                "qty_in": str(qty_in),
                "qty_out": str(qty_out),
                "unit_cost": str(costed.unit_cost),
                "total_cost": str(costed.total_cost),
                "balance_qty": str(balance.balance_qty),
                "avg_cost": str(balance.avg_cost),
            },
        )
        return StockMovementResult(
            entry=entry_to_record(entry, costed.after.quantity),
            balance=balance_to_record(balance),
        )

    # ------------------------------------------------------------------
    # Reads used inside the write path
    # ------------------------------------------------------------------

    def preview_outbound_cost(
        self,
        item_id: UUID,
        location_id: UUID,
        quantity: Decimal,
        as_of: date | None = None,
    ) -> tuple[Decimal, Decimal]:
        """(unit_cost, total_cost) an outward movement dated ``as_of`` would get now."""
        avg = self.current_state(item_id, location_id, as_of).avg_cost
        return avg, round_money(quantity * avg)

    def current_state(
        self, item_id: UUID, location_id: UUID, as_of: date | None = None
    ) -> CostingState:
        """
        The key's running balance, or its balance as of the end of ``as_of``
        when later-dated movements exist.
        """
        balance = self.session.execute(
            select(StockBalance).where(
                StockBalance.item_id == item_id,
                StockBalance.location_id == location_id,
            )
        ).scalar_one_or_none()
        if balance is None:
            return CostingState()
        if (
            as_of is not None
            and balance.last_transaction_date is not None
            and as_of < balance.last_transaction_date
        ):
            earlier, _ = self._split_entries(item_id, location_id, as_of)
            return replay(earlier)
        return CostingState(quantity=balance.balance_qty, avg_cost=balance.avg_cost)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _validate(
        self, movement: StockMovementSpec
    ) -> tuple[Decimal, Decimal, Decimal, StockSourceType]:
        try:
            source_type = StockSourceType(movement.source_type)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown stock source type {movement.source_type!r}",
                field="source_type",
                value=movement.source_type,
            ) from exc

        try:
            qty_in = to_decimal(movement.qty_in, "qty_in")
            qty_out = to_decimal(movement.qty_out, "qty_out")
            unit_cost = to_decimal(movement.unit_cost, "unit_cost")
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        if qty_in < 0 or qty_out < 0:
            raise ValidationError("Movement quantities cannot be negative", field="qty")
        if (qty_in > 0) == (qty_out > 0):
            raise ValidationError(
                "Exactly one of qty_in / qty_out must be positive", field="qty"
            )
        for name, qty in (("qty_in", qty_in), ("qty_out", qty_out)):
            if not has_precision(qty, QUANTITY_DECIMAL_PLACES):
                raise ValidationError(
                    f"{name} has more than {QUANTITY_DECIMAL_PLACES} decimal places",
                    field=name,
                    value=qty,
                )
        if unit_cost < 0:
            raise ValidationError("Unit cost cannot be negative", field="unit_cost", value=unit_cost)
        if source_type.is_inbound != (qty_in > 0):
            raise ValidationError(
                f"Source type {source_type.value} does not match the movement direction",
                field="source_type",
                value=source_type.value,
            )

        self._directory.require_item(movement.item_id)
        self._directory.require_location(movement.location_id)
        return qty_in, qty_out, unit_cost, source_type

    def _split_entries(
        self, item_id: UUID, location_id: UUID, on: date
    ) -> tuple[list[MovementFacts], list[MovementFacts]]:
        """Key entries dated on or before ``on``, and those after it, in replay order."""
        entries = self.session.execute(
            select(StockLedgerEntry)
            .where(
                StockLedgerEntry.item_id == item_id,
                StockLedgerEntry.location_id == location_id,
            )
            .order_by(StockLedgerEntry.transaction_date, StockLedgerEntry.seq)
        ).scalars()
        earlier, later = [], []
        for e in entries:
            facts = MovementFacts(qty_in=e.qty_in, qty_out=e.qty_out, unit_cost=e.unit_cost)
            (earlier if e.transaction_date <= on else later).append(facts)
        return earlier, later

    def _lock_balance(self, item_id: UUID, location_id: UUID) -> StockBalance:
        stmt = (
            select(StockBalance)
            .where(
                StockBalance.item_id == item_id,
                StockBalance.location_id == location_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        balance = self.session.execute(stmt).scalar_one_or_none()
        if balance is not None:
            return balance

        savepoint = self.session.begin_nested()
        try:
            balance = StockBalance(
                item_id=item_id,
                location_id=location_id,
                balance_qty=ZERO,
                avg_cost=ZERO,
                stock_value=ZERO,
            )
            self.session.add(balance)
            self.session.flush()
            savepoint.commit()
        except IntegrityError as exc:
            savepoint.rollback()
            raise ConcurrencyConflictError(
                resource=f"stock:{item_id}:{location_id}",
                reason="balance row created concurrently",
            ) from exc
        return balance
