"""
Typed Exception Hierarchy for the ERP Posting Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

A document confirmation can fail for very different reasons, and callers
react to each one differently:

  - Bad input (missing batch number, zero quantity)  -> fix and resubmit
  - Lock contention with another confirmation        -> retry once
  - An unbalanced journal                            -> a bug, investigate

Parsing message strings to tell these apart is fragile, so every error is a
TYPED exception with:
  1. A CODE class attribute (machine-readable, API-safe)
  2. Structured attributes (serials, items, totals) instead of prose only

Example:
    try:
        documents.confirm(document_id)
    except TrackingValidationError as e:
        return {"error": e.code, "issues": [i.to_dict() for i in e.issues]}
    except ConcurrencyConflictError:
        ...  # already retried once by the controller; surface to caller

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ErpKernelError (base)
    |
    +-- ValidationError
    |   +-- NegativeStockError
    |   +-- InactiveReferenceError
    |   +-- AccountCodeTypeMismatchError
    |   +-- DuplicateCodeError
    |   +-- DocumentStateError
    |   |   +-- DocumentAlreadyConfirmedError
    |   +-- TrackingValidationError
    |
    +-- UnbalancedJournalError
    +-- ConcurrencyConflictError
    +-- NotFoundError
    +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Code                        | When Raised
----------------------------|---------------------------------------------------
VALIDATION_ERROR            | Bad input shape or reference, before any write
NEGATIVE_STOCK              | Outward movement below zero under the block policy
INACTIVE_REFERENCE          | Item, location or account is deactivated
ACCOUNT_CODE_TYPE_MISMATCH  | Leading digit of the code disagrees with the type
DUPLICATE_CODE              | Code/sku already used by another row
DOCUMENT_STATE              | Editing a document that is no longer a draft
DOCUMENT_ALREADY_CONFIRMED  | Confirming the same document twice
TRACKING_VALIDATION         | Serial/batch requirements unmet
UNBALANCED_JOURNAL          | Debits != credits, overall or inside one effect
CONCURRENCY_CONFLICT        | Lock timeout, row contention, DB deadlock
NOT_FOUND                   | Missing item/location/account/document/journal
IMMUTABILITY_VIOLATION      | Update/delete of a posted ledger row

===============================================================================
DESIGN DECISIONS
===============================================================================

1. Every class inherits from ErpKernelError, not from ValueError, so domain
   failures can be caught as a group without catching programming errors.

2. ``code`` is a class attribute: static per type, readable without an
   instance.

3. ValidationError and TrackingValidationError leave nothing written and the
   document in DRAFT.  ConcurrencyConflictError is the only retryable error.

===============================================================================
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from erp_kernel.domain.dtos import TrackingIssue


class ErpKernelError(Exception):
    """
    Base exception for all ERP kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "ERP_KERNEL_ERROR"


# Validation


class ValidationError(ErpKernelError):
    """Bad input shape or reference; rejected before any write."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None, value: Any = None):
        self.field = field
        self.value = value
        super().__init__(message)


class NegativeStockError(ValidationError):
    """Outward movement would drive the balance below zero (block policy)."""

    code: str = "NEGATIVE_STOCK"

    def __init__(
        self,
        item_id: str,
        location_id: str,
        available: Decimal,
        requested: Decimal,
    ):
        self.item_id = item_id
        self.location_id = location_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for item {item_id} at location {location_id}: "
            f"available {available}, requested {requested}",
            field="qty_out",
            value=requested,
        )


class InactiveReferenceError(ValidationError):
    """A referenced item, location or account is deactivated."""

    code: str = "INACTIVE_REFERENCE"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} is inactive")


class AccountCodeTypeMismatchError(ValidationError):
    """Account code does not encode the declared account type."""

    code: str = "ACCOUNT_CODE_TYPE_MISMATCH"

    def __init__(self, account_code: str, account_type: str, expected_type: str | None):
        self.account_code = account_code
        self.account_type = account_type
        self.expected_type = expected_type
        super().__init__(
            f"Account code '{account_code}' encodes type {expected_type!r}, "
            f"not {account_type!r}"
        )


class DuplicateCodeError(ValidationError):
    """A unique business code is already taken."""

    code: str = "DUPLICATE_CODE"

    def __init__(self, entity_type: str, business_code: str):
        self.entity_type = entity_type
        self.business_code = business_code
        super().__init__(f"{entity_type} code already exists: {business_code}")


class DocumentStateError(ValidationError):
    """Operation not permitted in the document's current status."""

    code: str = "DOCUMENT_STATE"

    def __init__(self, document_id: str, status: str, operation: str):
        self.document_id = document_id
        self.status = status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} document {document_id} in status {status}"
        )


class DocumentAlreadyConfirmedError(DocumentStateError):
    """The document was confirmed earlier; confirming again is rejected."""

    code: str = "DOCUMENT_ALREADY_CONFIRMED"

    def __init__(self, document_id: str, document_no: str | None = None):
        self.document_no = document_no
        super().__init__(document_id, "confirmed", "confirm")


class TrackingValidationError(ValidationError):
    """
    Serial/batch requirements are not met on one or more document lines.

    Carries one TrackingIssue per offending line (duplicated serials,
    count mismatch, missing batch number) so the caller can fix input.
    """

    code: str = "TRACKING_VALIDATION"

    def __init__(self, document_id: str, issues: list[TrackingIssue]):
        self.document_id = document_id
        self.issues = tuple(issues)
        summary = "; ".join(issue.message for issue in self.issues)
        super().__init__(
            f"Tracking validation failed for document {document_id}: {summary}"
        )


# Ledger


class UnbalancedJournalError(ErpKernelError):
    """Journal debits and credits differ, overall or within an effect."""

    code: str = "UNBALANCED_JOURNAL"

    def __init__(
        self,
        total_debit: Decimal,
        total_credit: Decimal,
        effect: str | None = None,
        reason: str | None = None,
    ):
        self.total_debit = total_debit
        self.total_credit = total_credit
        self.effect = effect
        self.reason = reason
        scope = f" in effect '{effect}'" if effect else ""
        detail = reason or f"debits {total_debit} != credits {total_credit}"
        super().__init__(f"Unbalanced journal{scope}: {detail}")


# Concurrency


class ConcurrencyConflictError(ErpKernelError):
    """Lock or transaction contention; safe to retry the confirmation once."""

    code: str = "CONCURRENCY_CONFLICT"

    def __init__(self, resource: str, reason: str):
        self.resource = resource
        self.reason = reason
        super().__init__(f"Concurrency conflict on {resource}: {reason}")


# Lookup


class NotFoundError(ErpKernelError):
    """A referenced entity does not exist."""

    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


# Immutability


class ImmutabilityViolationError(ErpKernelError):
    """
    Attempted to modify or delete an immutable record.

    Stock ledger entries, journals and journal lines are immutable from
    creation; documents and their lines once confirmed; account code and
    type once referenced by a journal line.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify immutable {entity_type} {entity_id}: {reason}"
        )
