"""Read-only query selectors over the stock and general ledgers."""

from erp_kernel.selectors.ledger_selector import JournalFilter, LedgerSelector
from erp_kernel.selectors.stock_selector import (
    MovementFilter,
    MovementStream,
    StockBalanceFilter,
    StockSelector,
)

__all__ = [
    "JournalFilter",
    "LedgerSelector",
    "MovementFilter",
    "MovementStream",
    "StockBalanceFilter",
    "StockSelector",
]
