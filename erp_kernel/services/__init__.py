"""
Kernel services -- the write side of the two ledgers.

Every service takes a Session and flushes; none of them commits.
"""

from erp_kernel.services.account_directory import AccountDirectory
from erp_kernel.services.general_ledger import GeneralLedgerService
from erp_kernel.services.inventory_directory import InventoryDirectory
from erp_kernel.services.key_lock import KeyLockManager, account_key, stock_key
from erp_kernel.services.sequence_service import SequenceService
from erp_kernel.services.stock_ledger import StockLedgerService

__all__ = [
    "AccountDirectory",
    "GeneralLedgerService",
    "InventoryDirectory",
    "KeyLockManager",
    "SequenceService",
    "StockLedgerService",
    "account_key",
    "stock_key",
]
