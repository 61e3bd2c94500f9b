"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

Both ledgers are append-only.  A stock movement or journal that has been
written is history: corrections are new reversing documents, never edits.
Likewise a confirmed document is the source record of the postings it
produced, so it cannot change underneath them.

SQLAlchemy fires mapper events before UPDATE/DELETE statements reach the
database.  The listeners registered here intercept those events and raise
ImmutabilityViolationError, which aborts the flush:

    session.flush()
         |
         v
    [before_update] --> _check_*_update() --> ImmutabilityViolationError
         |                                              ^
         v                                              |
    [before_delete] --> _check_*_delete() --------------+
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity              | When Immutable                        | Fields
--------------------|---------------------------------------|-----------------
StockLedgerEntry    | ALWAYS (from creation)                | all
Journal             | ALWAYS (from creation)                | all
JournalLine         | ALWAYS (from creation)                | all
Document            | After status = CONFIRMED              | all but updated_at
DocumentLine        | When parent document is CONFIRMED     | all
Account             | When referenced by any journal line   | code, account_type

===============================================================================
DESIGN DECISIONS
===============================================================================

1. updated_at may change on any row: it is row metadata, not ledger data.

2. "WAS CONFIRMED" NOT "IS CONFIRMED": the confirmation itself must be able
   to set status=CONFIRMED together with confirmed_at and journal_id.  The
   attribute history tells the two apart.

3. Model imports are inline to avoid circular imports (models import db).

===============================================================================
USAGE
===============================================================================

    from erp_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup

Tests that need to bypass the guards call unregister_immutability_listeners().
"""

from sqlalchemy import event, inspect, select
from sqlalchemy.orm.attributes import get_history

from erp_kernel.exceptions import ImmutabilityViolationError
from erp_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

# Structural fields that freeze once an account is referenced by a journal line
ACCOUNT_STRUCTURAL_FIELDS = ("code", "account_type")

_METADATA_FIELDS = frozenset({"updated_at"})


def _block(entity_type: str, target, operation: str, reason: str, **extra) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
            **extra,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _changed_fields(target) -> list[str]:
    return [
        attr.key
        for attr in inspect(target).attrs
        if attr.key not in _METADATA_FIELDS and attr.history.has_changes()
    ]


# -----------------------------------------------------------------------------
# Append-only ledger rows
# -----------------------------------------------------------------------------


def _check_stock_entry_update(mapper, connection, target):
    """Stock ledger entries never change after creation."""
    changed = _changed_fields(target)
    if not changed:
        return
    _block(
        "StockLedgerEntry",
        target,
        "UPDATE",
        "Stock ledger entries are append-only; post a reversing movement instead",
        fields=changed,
    )


def _check_stock_entry_delete(mapper, connection, target):
    _block(
        "StockLedgerEntry",
        target,
        "DELETE",
        "Stock ledger entries cannot be deleted",
    )


def _check_journal_update(mapper, connection, target):
    """Journals never change after creation."""
    changed = _changed_fields(target)
    if not changed:
        return
    _block(
        "Journal",
        target,
        "UPDATE",
        "Journals are immutable; post a reversing journal instead",
        fields=changed,
    )


def _check_journal_delete(mapper, connection, target):
    _block("Journal", target, "DELETE", "Journals cannot be deleted")


def _check_journal_line_update(mapper, connection, target):
    changed = _changed_fields(target)
    if not changed:
        return
    _block(
        "JournalLine",
        target,
        "UPDATE",
        "Journal lines cannot be modified",
        fields=changed,
    )


def _check_journal_line_delete(mapper, connection, target):
    _block("JournalLine", target, "DELETE", "Journal lines cannot be deleted")


# -----------------------------------------------------------------------------
# Documents
# -----------------------------------------------------------------------------


def _was_confirmed_before(target) -> bool:
    """
    True when the document was already CONFIRMED before this flush.

        1. status changing FROM confirmed -> anything: was confirmed
        2. status unchanged AND confirmed: was confirmed
        3. status changing TO confirmed: this IS the confirmation
    """
    from erp_kernel.models.document import DocumentStatus

    history = get_history(target, "status")
    if history.deleted:
        return history.deleted[0] == DocumentStatus.CONFIRMED
    if not history.added:
        return target.status == DocumentStatus.CONFIRMED
    return False


def _check_document_update(mapper, connection, target):
    """Block any change to a document that was already confirmed."""
    if not _was_confirmed_before(target):
        return

    changed = _changed_fields(target)
    if changed:
        _block(
            "Document",
            target,
            "UPDATE",
            f"Cannot modify field(s) {changed} on a confirmed document",
            fields=changed,
        )


def _check_document_delete(mapper, connection, target):
    from erp_kernel.models.document import DocumentStatus

    if _was_confirmed_before(target) or target.status == DocumentStatus.CONFIRMED:
        _block("Document", target, "DELETE", "Confirmed documents cannot be deleted")


def _parent_document_confirmed(connection, target) -> bool:
    from erp_kernel.models.document import Document, DocumentStatus

    status = connection.execute(
        select(Document.status).where(Document.id == target.document_id)
    ).scalar_one_or_none()
    return status == DocumentStatus.CONFIRMED


def _check_document_line_update(mapper, connection, target):
    if _parent_document_confirmed(connection, target):
        _block(
            "DocumentLine",
            target,
            "UPDATE",
            "Lines of a confirmed document cannot be modified",
            fields=_changed_fields(target),
        )


def _check_document_line_delete(mapper, connection, target):
    if _parent_document_confirmed(connection, target):
        _block(
            "DocumentLine",
            target,
            "DELETE",
            "Lines of a confirmed document cannot be deleted",
        )


# -----------------------------------------------------------------------------
# Accounts
# -----------------------------------------------------------------------------


def account_has_journal_lines(connection, account_id) -> bool:
    """True when any journal line references the account."""
    from erp_kernel.models.journal import JournalLine

    found = connection.execute(
        select(JournalLine.id).where(JournalLine.account_id == account_id).limit(1)
    ).first()
    return found is not None


def _check_account_structural_update(mapper, connection, target):
    """Code and type are frozen once the account carries ledger history."""
    changed = [
        name for name in ACCOUNT_STRUCTURAL_FIELDS
        if get_history(target, name).has_changes()
    ]
    if not changed:
        return

    if account_has_journal_lines(connection, target.id):
        _block(
            "Account",
            target,
            "UPDATE",
            f"Cannot modify structural field(s) {changed} on an account "
            "referenced by journal lines",
            fields=changed,
        )


# -----------------------------------------------------------------------------
# Registration
# -----------------------------------------------------------------------------


def _listeners():
    from erp_kernel.models.account import Account
    from erp_kernel.models.document import Document, DocumentLine
    from erp_kernel.models.journal import Journal, JournalLine
    from erp_kernel.models.stock_ledger import StockLedgerEntry

    return (
        (StockLedgerEntry, "before_update", _check_stock_entry_update),
        (StockLedgerEntry, "before_delete", _check_stock_entry_delete),
        (Journal, "before_update", _check_journal_update),
        (Journal, "before_delete", _check_journal_delete),
        (JournalLine, "before_update", _check_journal_line_update),
        (JournalLine, "before_delete", _check_journal_line_delete),
        (Document, "before_update", _check_document_update),
        (Document, "before_delete", _check_document_delete),
        (DocumentLine, "before_update", _check_document_line_update),
        (DocumentLine, "before_delete", _check_document_line_delete),
        (Account, "before_update", _check_account_structural_update),
    )


def register_immutability_listeners() -> None:
    """
    Register all immutability enforcement event listeners (idempotent).

    Call this after all models are imported but before any database
    operations begin.
    """
    for target, event_name, fn in _listeners():
        if not event.contains(target, event_name, fn):
            event.listen(target, event_name, fn)


def unregister_immutability_listeners() -> None:
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that intentionally violate immutability
    rules to verify detection.
    """
    for target, event_name, fn in _listeners():
        if event.contains(target, event_name, fn):
            event.remove(target, event_name, fn)
