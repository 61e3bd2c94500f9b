"""
DocumentService -- draft editing and confirmation of posting documents.

Responsibility:
    Owns the DRAFT -> CONFIRMED lifecycle and the transaction boundaries
    around it.  Drafts are freely edited; confirmation validates tracking,
    takes the per-key locks the posting needs, and posts both ledgers and
    the status flip in a single transaction.

Architecture position:
    Services -- the outermost write API.  The only component that opens
    sessions, commits and rolls back.

Invariants enforced:
    - A CONFIRMED document is never edited or confirmed again.
    - Confirmation is all-or-nothing: stock movements, balance updates,
      the journal and the status change commit together or not at all.
    - Keys are locked in one global sorted order before the write
      transaction opens, and held until it commits or rolls back.
    - Only ConcurrencyConflictError is retried, at most
      ``policy.confirmation_retries`` times, from re-validation onwards.

Failure modes:
    - NotFoundError, DocumentStateError, DocumentAlreadyConfirmedError.
    - TrackingValidationError before any lock is taken.
    - Any posting error; the document stays DRAFT.
    - ConcurrencyConflictError once retries are exhausted.

Confirmation flow:

    confirm(document_id)
      |-- header read:   document_no and type bound into LogContext
      |-- read session:  load, status check, tracking, planned keys; close
      |-- KeyLockManager.acquire(planned keys)
      |     `-- write transaction:
      |           reload, status check, tracking again,
      |           planned keys still covered by the held locks,
      |           PostingOrchestrator.post_document,
      |           status = CONFIRMED, confirmed_at, journal_id, commit
      `-- ConcurrencyConflictError -> retry from the read session
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from erp_config.schema import PostingConfig
from erp_kernel.db.engine import session_scope
from erp_kernel.db.types import QUANTITY_DECIMAL_PLACES, has_precision, to_decimal
from erp_kernel.domain.clock import Clock, SystemClock
from erp_kernel.domain.dtos import (
    DocumentLineRecord,
    DocumentRecord,
    JournalRecord,
    StockMovementRecord,
)
from erp_kernel.exceptions import (
    ConcurrencyConflictError,
    DocumentAlreadyConfirmedError,
    DocumentStateError,
    ErpKernelError,
    NotFoundError,
    ValidationError,
)
from erp_kernel.logging_config import LogContext, get_logger
from erp_kernel.models.document import (
    Document,
    DocumentLine,
    DocumentStatus,
    DocumentType,
    LineDirection,
    PaymentType,
)
from erp_kernel.services.inventory_directory import InventoryDirectory
from erp_kernel.services.key_lock import KeyLockManager
from erp_kernel.services.sequence_service import SequenceService
from erp_services.posting_orchestrator import PostingOrchestrator
from erp_services.tracking import TrackingValidator, clean_serials

logger = get_logger("services.document_lifecycle")

NUMBER_PREFIXES = {
    DocumentType.GRN: "GRN",
    DocumentType.SALES_INVOICE: "INV",
    DocumentType.STOCK_ADJUSTMENT: "ADJ",
    DocumentType.PRODUCTION_ISSUE: "PIS",
    DocumentType.PRODUCTION_OUTPUT: "POU",
    DocumentType.SALES_RETURN: "SR",
    DocumentType.PURCHASE_RETURN: "PR",
}

_SETTLED_TYPES = (
    DocumentType.GRN,
    DocumentType.SALES_INVOICE,
    DocumentType.SALES_RETURN,
    DocumentType.PURCHASE_RETURN,
)

_HEADER_FIELDS = frozenset(
    {"document_date", "counterparty", "payment_type", "location_id", "remarks"}
)

# Driver messages that mean "another transaction got there first"
_CONTENTION_MARKERS = ("locked", "deadlock", "busy", "could not serialize")


@dataclass(frozen=True)
class DocumentLineInput:
    """One line as entered on a draft."""

    item_id: UUID
    quantity: Decimal | str | int
    location_id: UUID | None = None
    unit_cost: Decimal | str | int | None = None
    unit_price: Decimal | str | int | None = None
    direction: LineDirection | str | None = None
    batch_no: str | None = None
    expiry_date: date | None = None
    serial_numbers: tuple[str, ...] = ()


@dataclass(frozen=True)
class DocumentFilter:
    document_type: DocumentType | str | None = None
    status: DocumentStatus | str | None = None
    date_from: date | None = None
    date_to: date | None = None


@dataclass(frozen=True)
class ConfirmationResult:
    document: DocumentRecord
    stock_entries: tuple[StockMovementRecord, ...]
    journal: JournalRecord
    attempts: int


def document_to_record(document: Document) -> DocumentRecord:
    return DocumentRecord(
        document_id=document.id,
        document_no=document.document_no,
        document_type=DocumentType(document.document_type).value,
        document_date=document.document_date,
        status=DocumentStatus(document.status).value,
        counterparty=document.counterparty,
        payment_type=PaymentType(document.payment_type).value if document.payment_type else None,
        location_id=document.location_id,
        remarks=document.remarks,
        confirmed_at=document.confirmed_at,
        journal_id=document.journal_id,
        lines=tuple(
            DocumentLineRecord(
                line_no=line.line_no,
                item_id=line.item_id,
                location_id=line.location_id,
                quantity=line.quantity,
                unit_cost=line.unit_cost,
                unit_price=line.unit_price,
                direction=LineDirection(line.direction).value if line.direction else None,
                batch_no=line.batch_no,
                expiry_date=line.expiry_date,
                serial_numbers=tuple(line.serial_numbers or ()),
            )
            for line in document.lines
        ),
    )


def _is_contention(exc: OperationalError) -> bool:
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in message for marker in _CONTENTION_MARKERS)


class DocumentService:
    """
    Document lifecycle controller.

    Contract:
        Every public method runs in its own transaction, created from
        ``session_factory``, and returns frozen records.

    Guarantees:
        - Two confirmations touching disjoint keys do not wait for each
          other's key locks.
        - A failed confirmation leaves no stock entry, journal or balance
          change behind.

    Non-goals:
        - Cancelling or reversing confirmed documents.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        config: PostingConfig,
        clock: Clock | None = None,
        lock_manager: KeyLockManager | None = None,
    ):
        self._session_factory = session_factory
        self.config = config
        self.clock = clock or SystemClock()
        self.lock_manager = lock_manager or KeyLockManager(
            timeout_seconds=config.policy.lock_timeout_seconds
        )

    # ------------------------------------------------------------------
    # Drafts
    # ------------------------------------------------------------------

    def create_draft(
        self,
        document_type: DocumentType | str,
        document_date: date,
        location_id: UUID | None = None,
        counterparty: str | None = None,
        payment_type: PaymentType | str | None = None,
        remarks: str | None = None,
        lines: tuple[DocumentLineInput, ...] | list[DocumentLineInput] = (),
    ) -> DocumentRecord:
        try:
            doc_type = DocumentType(document_type)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown document type {document_type!r}",
                field="document_type",
                value=document_type,
            ) from exc

        with session_scope(self._session_factory) as session:
            directory = InventoryDirectory(session, self.clock)
            if location_id is not None:
                directory.require_location(location_id)
            seq = SequenceService(session).next_value(f"document.{doc_type.value}")
            document = Document(
                document_no=f"{NUMBER_PREFIXES[doc_type]}-{seq:05d}",
                document_type=doc_type,
                document_date=document_date,
                status=DocumentStatus.DRAFT,
                counterparty=counterparty,
                payment_type=self._payment_type(doc_type, payment_type),
                location_id=location_id,
                remarks=remarks,
            )
            session.add(document)
            for line_no, line_input in enumerate(lines, start=1):
                document.lines.append(
                    DocumentLine(
                        line_no=line_no,
                        **self._line_values(directory, doc_type, line_input),
                    )
                )
            session.flush()
            record = document_to_record(document)

        logger.info(
            "document_draft_created",
            extra={
                "document_no": record.document_no,
                "document_type": record.document_type,
                "line_count": len(record.lines),
            },
        )
        return record

    def update_header(self, document_id: UUID, **changes) -> DocumentRecord:
        unknown = sorted(set(changes) - _HEADER_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update header field(s) {unknown}", field=unknown[0])

        with session_scope(self._session_factory) as session:
            document = self._load_draft(session, document_id, "update")
            doc_type = DocumentType(document.document_type)
            if "payment_type" in changes:
                changes["payment_type"] = self._payment_type(doc_type, changes["payment_type"])
            if changes.get("location_id") is not None:
                InventoryDirectory(session, self.clock).require_location(changes["location_id"])
            for name, value in changes.items():
                setattr(document, name, value)
            session.flush()
            return document_to_record(document)

    def add_line(self, document_id: UUID, line: DocumentLineInput) -> DocumentRecord:
        with session_scope(self._session_factory) as session:
            document = self._load_draft(session, document_id, "add a line to")
            values = self._line_values(
                InventoryDirectory(session, self.clock), document.document_type, line
            )
            next_no = max((ln.line_no for ln in document.lines), default=0) + 1
            document.lines.append(DocumentLine(line_no=next_no, **values))
            session.flush()
            return document_to_record(document)

    def update_line(self, document_id: UUID, line_no: int, line: DocumentLineInput) -> DocumentRecord:
        with session_scope(self._session_factory) as session:
            document = self._load_draft(session, document_id, "update a line of")
            target = self._line(document, line_no)
            values = self._line_values(
                InventoryDirectory(session, self.clock), document.document_type, line
            )
            for name, value in values.items():
                setattr(target, name, value)
            session.flush()
            return document_to_record(document)

    def remove_line(self, document_id: UUID, line_no: int) -> DocumentRecord:
        with session_scope(self._session_factory) as session:
            document = self._load_draft(session, document_id, "remove a line from")
            document.lines.remove(self._line(document, line_no))
            session.flush()
            return document_to_record(document)

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    def confirm(self, document_id: UUID, actor_id: str | None = None) -> ConfirmationResult:
        """
        Confirm a DRAFT document, posting it to both ledgers.

        Raises:
            NotFoundError: unknown document.
            DocumentAlreadyConfirmedError: already confirmed.
            TrackingValidationError: serial/batch requirements not met.
            ConcurrencyConflictError: contention persisted through the retry.
        """
        max_attempts = 1 + self.config.policy.confirmation_retries
        t0 = time.monotonic()
        attempt = 0
        with LogContext.bind(
            correlation_id=str(uuid4()),
            document_id=str(document_id),
            actor_id=actor_id,
        ):
            try:
                document_no, document_type = self._header(document_id)
            except NotFoundError as exc:
                self._log_failure(exc, t0, 1)
                raise

            with LogContext.bind(document_no=document_no, document_type=document_type):
                while True:
                    attempt += 1
                    try:
                        with LogContext.bind(attempt=str(attempt)):
                            result = self._confirm_once(document_id, attempt)
                    except ConcurrencyConflictError as exc:
                        if attempt < max_attempts:
                            logger.warning(
                                "confirmation_retry",
                                extra={
                                    "attempt": attempt,
                                    "resource": exc.resource,
                                    "reason": exc.reason,
                                },
                            )
                            continue
                        self._log_failure(exc, t0, attempt)
                        raise
                    except ErpKernelError as exc:
                        self._log_failure(exc, t0, attempt)
                        raise

                    logger.info(
                        "document_confirmed",
                        extra={
                            "journal_no": result.journal.journal_no,
                            "movement_count": len(result.stock_entries),
                            "attempts": attempt,
                            "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                        },
                    )
                    return result

    def _confirm_once(self, document_id: UUID, attempt: int) -> ConfirmationResult:
        # Read phase: nothing is locked yet, so close before waiting on keys.
        session = self._session_factory()
        try:
            document = self._load(session, document_id)
            self._check_confirmable(document)
            TrackingValidator(session).validate(document)
            keys = PostingOrchestrator(session, self.config, self.clock).planned_keys(document)
        finally:
            session.close()

        with self.lock_manager.acquire(keys) as held:
            try:
                with session_scope(self._session_factory) as session:
                    document = self._load(session, document_id)
                    self._check_confirmable(document)
                    TrackingValidator(session).validate(document)
                    orchestrator = PostingOrchestrator(session, self.config, self.clock)
                    uncovered = orchestrator.planned_keys(document) - set(held)
                    if uncovered:
                        raise ConcurrencyConflictError(
                            resource=document.document_no,
                            reason=f"document changed while locking; {len(uncovered)} key(s) not held",
                        )

                    outcome = orchestrator.post_document(document)
                    document.status = DocumentStatus.CONFIRMED
                    document.confirmed_at = self.clock.now()
                    document.journal_id = outcome.journal.journal_id
                    session.flush()
                    record = document_to_record(document)
            except IntegrityError as exc:
                raise ConcurrencyConflictError(
                    resource=str(document_id), reason=f"unique constraint race: {exc.orig}"
                ) from exc
            except OperationalError as exc:
                if _is_contention(exc):
                    raise ConcurrencyConflictError(
                        resource=str(document_id), reason=str(exc.orig)
                    ) from exc
                raise

        return ConfirmationResult(
            document=record,
            stock_entries=outcome.stock_entries,
            journal=outcome.journal,
            attempts=attempt,
        )

    def _log_failure(self, exc: ErpKernelError, t0: float, attempt: int) -> None:
        logger.warning(
            "confirmation_failed",
            extra={
                "error_code": exc.code,
                "error": str(exc),
                "attempts": attempt,
                "duration_ms": round((time.monotonic() - t0) * 1000, 2),
            },
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_by_id(self, document_id: UUID) -> DocumentRecord:
        with self._session_factory() as session:
            return document_to_record(self._load(session, document_id))

    def list(self, document_filter: DocumentFilter | None = None) -> list[DocumentRecord]:
        f = document_filter or DocumentFilter()
        stmt = select(Document)
        if f.document_type is not None:
            stmt = stmt.where(Document.document_type == DocumentType(f.document_type))
        if f.status is not None:
            stmt = stmt.where(Document.status == DocumentStatus(f.status))
        if f.date_from is not None:
            stmt = stmt.where(Document.document_date >= f.date_from)
        if f.date_to is not None:
            stmt = stmt.where(Document.document_date <= f.date_to)
        stmt = stmt.order_by(Document.document_date, Document.document_no)
        with self._session_factory() as session:
            return [document_to_record(d) for d in session.execute(stmt).scalars()]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _header(self, document_id: UUID) -> tuple[str, str]:
        """(document_no, document_type) for log context."""
        with self._session_factory() as session:
            row = session.execute(
                select(Document.document_no, Document.document_type).where(
                    Document.id == document_id
                )
            ).one_or_none()
        if row is None:
            raise NotFoundError("Document", str(document_id))
        return row.document_no, DocumentType(row.document_type).value

    @staticmethod
    def _load(session: Session, document_id: UUID) -> Document:
        document = session.get(Document, document_id)
        if document is None:
            raise NotFoundError("Document", str(document_id))
        return document

    def _load_draft(self, session: Session, document_id: UUID, operation: str) -> Document:
        document = self._load(session, document_id)
        if document.is_confirmed:
            raise DocumentStateError(str(document_id), DocumentStatus.CONFIRMED.value, operation)
        return document

    @staticmethod
    def _check_confirmable(document: Document) -> None:
        if document.is_confirmed:
            raise DocumentAlreadyConfirmedError(str(document.id), document.document_no)

    @staticmethod
    def _line(document: Document, line_no: int) -> DocumentLine:
        for line in document.lines:
            if line.line_no == line_no:
                return line
        raise NotFoundError("DocumentLine", f"{document.document_no}#{line_no}")

    @staticmethod
    def _payment_type(
        doc_type: DocumentType, payment_type: PaymentType | str | None
    ) -> PaymentType | None:
        if payment_type is None:
            return None
        if doc_type not in _SETTLED_TYPES:
            raise ValidationError(
                f"{doc_type.value} documents do not take a payment type",
                field="payment_type",
                value=payment_type,
            )
        try:
            return PaymentType(payment_type)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown payment type {payment_type!r}", field="payment_type", value=payment_type
            ) from exc

    @staticmethod
    def _line_values(
        directory: InventoryDirectory,
        doc_type: DocumentType | str,
        line: DocumentLineInput,
    ) -> dict:
        directory.require_item(line.item_id)
        if line.location_id is not None:
            directory.require_location(line.location_id)

        try:
            quantity = to_decimal(line.quantity, "quantity")
            unit_cost = to_decimal(line.unit_cost, "unit_cost") if line.unit_cost is not None else None
            unit_price = (
                to_decimal(line.unit_price, "unit_price") if line.unit_price is not None else None
            )
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        if quantity <= 0:
            raise ValidationError("Line quantity must be positive", field="quantity", value=quantity)
        if not has_precision(quantity, QUANTITY_DECIMAL_PLACES):
            raise ValidationError(
                f"Line quantity has more than {QUANTITY_DECIMAL_PLACES} decimal places",
                field="quantity",
                value=quantity,
            )
        for name, amount in (("unit_cost", unit_cost), ("unit_price", unit_price)):
            if amount is not None and amount < 0:
                raise ValidationError(f"{name} cannot be negative", field=name, value=amount)

        direction = None
        if DocumentType(doc_type) == DocumentType.STOCK_ADJUSTMENT:
            try:
                direction = LineDirection(line.direction)
            except ValueError as exc:
                raise ValidationError(
                    f"Adjustment lines need direction IN or OUT, got {line.direction!r}",
                    field="direction",
                    value=line.direction,
                ) from exc

        return {
            "item_id": line.item_id,
            "location_id": line.location_id,
            "quantity": quantity,
            "unit_cost": unit_cost,
            "unit_price": unit_price,
            "direction": direction,
            "batch_no": (line.batch_no or "").strip() or None,
            "expiry_date": line.expiry_date,
            "serial_numbers": clean_serials(line.serial_numbers) or None,
        }
