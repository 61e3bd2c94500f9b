"""Domain models for the ERP posting kernel."""

from erp_kernel.models.account import Account, AccountType
from erp_kernel.models.document import (
    Document,
    DocumentLine,
    DocumentStatus,
    DocumentType,
    LineDirection,
    PaymentType,
)
from erp_kernel.models.inventory import Item, ItemCategory, Location, TrackingMode
from erp_kernel.models.journal import AccountBalance, Journal, JournalLine
from erp_kernel.models.stock_ledger import (
    INBOUND_SOURCE_TYPES,
    StockBalance,
    StockLedgerEntry,
    StockSourceType,
)

__all__ = [
    "Account",
    "AccountBalance",
    "AccountType",
    "Document",
    "DocumentLine",
    "DocumentStatus",
    "DocumentType",
    "INBOUND_SOURCE_TYPES",
    "Item",
    "ItemCategory",
    "Journal",
    "JournalLine",
    "LineDirection",
    "Location",
    "PaymentType",
    "StockBalance",
    "StockLedgerEntry",
    "StockSourceType",
    "TrackingMode",
]
