"""
ERP Posting Kernel

The dual-ledger core of an inventory + accounting ERP:
- Weighted-average stock ledger per (item, location)
- Balanced double-entry general ledger
- Append-only history with incrementally maintained balance snapshots
- Replay from the ledgers alone for audit and verification
"""

__version__ = "0.1.0"
