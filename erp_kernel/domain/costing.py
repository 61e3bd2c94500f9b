"""
erp_kernel.domain.costing -- Weighted-average costing arithmetic.

Responsibility:
    Pure functions that apply one stock movement to a running
    (quantity, average cost) state, and a replay that folds a movement
    sequence from an empty state.  The stock ledger engine and the
    replay/verification selectors both go through these functions, so the
    hot path and the audit path can never disagree.

Architecture position:
    Kernel > Domain -- pure calculation layer, zero I/O.
    May only import from erp_kernel.db.types (rounding helpers).

Invariants enforced:
    - Inbound:  new_qty = old_qty + qty_in;
                new_avg = (old_qty*old_avg + qty_in*unit_cost) / new_qty
                when new_qty > 0, else old_avg.
    - Outbound: new_qty = old_qty - qty_out; avg unchanged; the movement is
                costed at the current average (the COGS basis).
    - stock_value = round_money(quantity * avg_cost).
    - avg_cost is retained when quantity reaches zero or goes negative.

Failure modes:
    - ValueError on negative quantities or costs, or a movement with both
      or neither of qty_in / qty_out set.  Engines validate first and raise
      typed errors; reaching these means a programming error.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from erp_kernel.db.types import ZERO, round_cost, round_money, round_quantity


class NegativeStockPolicy(str, Enum):
    """What an outward movement below zero does."""

    ALLOW = "allow"  # keep the movement, flag it on the entry
    BLOCK = "block"  # reject with NegativeStockError


@dataclass(frozen=True, slots=True)
class CostingState:
    """Running balance of one (item, location) key."""

    quantity: Decimal = ZERO
    avg_cost: Decimal = ZERO

    @property
    def stock_value(self) -> Decimal:
        return round_money(self.quantity * self.avg_cost)


@dataclass(frozen=True, slots=True)
class CostedMovement:
    """Result of applying one movement: the new state plus the entry's cost."""

    before: CostingState
    after: CostingState
    unit_cost: Decimal
    total_cost: Decimal

    @property
    def went_negative(self) -> bool:
        return self.after.quantity < 0


@dataclass(frozen=True, slots=True)
class MovementFacts:
    """The parts of a stock ledger entry that drive costing."""

    qty_in: Decimal
    qty_out: Decimal
    unit_cost: Decimal = ZERO


def apply_inbound(state: CostingState, quantity: Decimal, unit_cost: Decimal) -> CostedMovement:
    """Receive ``quantity`` at ``unit_cost``."""
    if quantity <= 0:
        raise ValueError(f"Inbound quantity must be positive, got {quantity}")
    if unit_cost < 0:
        raise ValueError(f"Unit cost cannot be negative, got {unit_cost}")

    unit_cost = round_cost(unit_cost)
    new_qty = round_quantity(state.quantity + quantity)
    if new_qty > 0:
        new_avg = round_cost(
            (state.quantity * state.avg_cost + quantity * unit_cost) / new_qty
        )
    else:
        new_avg = state.avg_cost

    return CostedMovement(
        before=state,
        after=CostingState(quantity=new_qty, avg_cost=new_avg),
        unit_cost=unit_cost,
        total_cost=round_money(quantity * unit_cost),
    )


def apply_outbound(state: CostingState, quantity: Decimal) -> CostedMovement:
    """Issue ``quantity`` at the current average cost."""
    if quantity <= 0:
        raise ValueError(f"Outbound quantity must be positive, got {quantity}")

    return CostedMovement(
        before=state,
        after=CostingState(
            quantity=round_quantity(state.quantity - quantity),
            avg_cost=state.avg_cost,
        ),
        unit_cost=state.avg_cost,
        total_cost=round_money(quantity * state.avg_cost),
    )


def apply_movement(state: CostingState, movement: MovementFacts) -> CostedMovement:
    """Dispatch on direction; exactly one of qty_in / qty_out must be > 0."""
    if movement.qty_in < 0 or movement.qty_out < 0:
        raise ValueError("Movement quantities cannot be negative")
    if (movement.qty_in > 0) == (movement.qty_out > 0):
        raise ValueError("Exactly one of qty_in / qty_out must be positive")
    if movement.qty_in > 0:
        return apply_inbound(state, movement.qty_in, movement.unit_cost)
    return apply_outbound(state, movement.qty_out)


def replay(movements: Iterable[MovementFacts], start: CostingState | None = None) -> CostingState:
    """
    Fold movements, in (transaction_date, seq) order, into a balance.

    Stored outward unit costs are ignored: the replay re-derives them from
    the running average, which is what makes it a check on the snapshot.
    """
    state = start or CostingState()
    for movement in movements:
        state = apply_movement(state, movement).after
    return state
