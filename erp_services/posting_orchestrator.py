"""
PostingOrchestrator -- turns a document into stock movements and one journal.

Responsibility:
    For a document being confirmed, appends one stock movement per line
    through StockLedgerService, captures each movement's cost, and posts
    one balanced journal through GeneralLedgerService.  Every write goes
    through the caller's session; nothing is committed here.

Architecture position:
    Services -- stateless orchestration over the kernel engines.
    Called by DocumentService.confirm() inside its write transaction.

Invariants enforced:
    - Stock effect first, journal last: outbound cost is read from the
      balance before the movement, and the journal uses the cost the stock
      ledger actually booked, so the two ledgers agree to the cent.
    - Exactly one journal per document, aggregated per (effect, account,
      side); every effect balances on its own.
    - A document that produces no ledger amounts is rejected.

Failure modes:
    - ValidationError for missing line data (location, cost, direction) or
      an all-zero journal.
    - Whatever the engines raise (NegativeStockError, UnbalancedJournalError,
      NotFoundError, ...).  The caller's rollback discards every movement
      already appended for the document.
    - ConcurrencyConflictError when the booked COGS differs from the cost
      captured just before the movement.

Document -> ledger mapping:

    Document            Stock movement      Journal (effect: Dr / Cr)
    ------------------  ------------------  ----------------------------------------
    GRN                 PURCHASE in         receipt: inventory / cash or AP
    SALES_INVOICE       SALES out           sale: cash or AR / revenue
                                            cogs: COGS / inventory
    STOCK_ADJUSTMENT    ADJUSTMENT_IN       adjustment: inventory / stock gain
                        ADJUSTMENT_OUT      adjustment: stock write-off / inventory
    PRODUCTION_ISSUE    PRODUCTION_OUT out  production_issue: WIP / inventory
    PRODUCTION_OUTPUT   PRODUCTION_IN in    production_output: inventory / WIP
    SALES_RETURN        ADJUSTMENT_IN       sales_return: sales returns / cash or AR
                                            return_cost: inventory / COGS
    PURCHASE_RETURN     ADJUSTMENT_OUT      purchase_return: cash or AP / inventory
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from erp_config.schema import AccountBindings, PostingConfig
from erp_kernel.db.types import ZERO, round_money
from erp_kernel.domain.clock import Clock
from erp_kernel.domain.dtos import (
    JournalLineSpec,
    JournalRecord,
    JournalSpec,
    StockMovementRecord,
    StockMovementSpec,
)
from erp_kernel.exceptions import ConcurrencyConflictError, NotFoundError, ValidationError
from erp_kernel.logging_config import get_logger
from erp_kernel.models.account import Account
from erp_kernel.models.document import (
    Document,
    DocumentLine,
    DocumentType,
    LineDirection,
    PaymentType,
)
from erp_kernel.models.inventory import Item
from erp_kernel.models.stock_ledger import StockSourceType
from erp_kernel.services.general_ledger import GeneralLedgerService
from erp_kernel.services.key_lock import account_key, stock_key
from erp_kernel.services.sequence_service import SequenceService
from erp_kernel.services.stock_ledger import StockLedgerService

logger = get_logger("services.posting_orchestrator")

_INBOUND_TYPES = frozenset(
    {DocumentType.GRN, DocumentType.PRODUCTION_OUTPUT, DocumentType.SALES_RETURN}
)
_OUTBOUND_TYPES = frozenset(
    {DocumentType.SALES_INVOICE, DocumentType.PRODUCTION_ISSUE, DocumentType.PURCHASE_RETURN}
)


@dataclass(frozen=True)
class PostingOutcome:
    document_id: UUID
    stock_entries: tuple[StockMovementRecord, ...]
    journal: JournalRecord


def line_direction(document_type: DocumentType | str, line: DocumentLine) -> LineDirection:
    """Stock direction of a document line."""
    doc_type = DocumentType(document_type)
    if doc_type in _INBOUND_TYPES:
        return LineDirection.IN
    if doc_type in _OUTBOUND_TYPES:
        return LineDirection.OUT
    if line.direction is None:
        raise ValidationError(
            f"Adjustment line {line.line_no} has no direction (IN/OUT)",
            field="direction",
        )
    return LineDirection(line.direction)


def line_location(line: DocumentLine, document: Document) -> UUID:
    location_id = line.location_id or document.location_id
    if location_id is None:
        raise ValidationError(
            f"Line {line.line_no} has no location and the document has no default",
            field="location_id",
        )
    return location_id


class AccountRoles:
    """
    Resolves posting roles to account ids.

    Role codes come from the configured bindings; an item's category may
    name its own inventory and COGS accounts.
    """

    def __init__(self, session: Session, bindings: AccountBindings):
        self._session = session
        self._bindings = bindings
        self._by_code: dict[str, UUID] = {}

    def role(self, name: str) -> UUID:
        code = self._bindings.codes()[name]
        if code not in self._by_code:
            account_id = self._session.execute(
                select(Account.id).where(Account.code == code)
            ).scalar_one_or_none()
            if account_id is None:
                raise NotFoundError("Account", code)
            self._by_code[code] = account_id
        return self._by_code[code]

    def inventory_for(self, item: Item) -> UUID:
        if item.category is not None and item.category.inventory_account_id is not None:
            return item.category.inventory_account_id
        return self.role("inventory")

    def cogs_for(self, item: Item) -> UUID:
        if item.category is not None and item.category.cogs_account_id is not None:
            return item.category.cogs_account_id
        return self.role("cogs")

    def settlement(self, document: Document, cash_role: str, credit_role: str) -> UUID:
        payment = PaymentType(document.payment_type or PaymentType.CREDIT)
        return self.role(cash_role if payment == PaymentType.CASH else credit_role)


class JournalBuilder:
    """Accumulates amounts per (effect, account, side) in first-seen order."""

    def __init__(self):
        self._amounts: dict[tuple[str, UUID, str], Decimal] = {}

    def debit(self, effect: str, account_id: UUID, amount: Decimal) -> None:
        self._add(effect, account_id, "debit", amount)

    def credit(self, effect: str, account_id: UUID, amount: Decimal) -> None:
        self._add(effect, account_id, "credit", amount)

    def _add(self, effect: str, account_id: UUID, side: str, amount: Decimal) -> None:
        if amount == 0:
            return
        key = (effect, account_id, side)
        self._amounts[key] = self._amounts.get(key, ZERO) + amount

    @property
    def is_empty(self) -> bool:
        return not self._amounts

    def build(self, document: Document, description: str) -> JournalSpec:
        lines = tuple(
            JournalLineSpec(
                account_id=account_id,
                debit=amount if side == "debit" else ZERO,
                credit=amount if side == "credit" else ZERO,
                effect=effect,
            )
            for (effect, account_id, side), amount in self._amounts.items()
        )
        return JournalSpec(
            journal_date=document.document_date,
            description=description,
            lines=lines,
            source_document_type=DocumentType(document.document_type).value,
            source_document_id=document.id,
            source_document_no=document.document_no,
        )


class PostingOrchestrator:
    """
    Posts documents to both ledgers.

    Contract:
        ``post_document(document)`` must run inside the caller's write
        transaction while the caller holds every key in
        ``planned_keys(document)``.

    Guarantees:
        - On success the stock movements and the journal are flushed in
          the caller's session; on failure the caller rolls back both.

    Non-goals:
        - Status changes.  DocumentService flips the document to CONFIRMED.
    """

    def __init__(self, session: Session, config: PostingConfig, clock: Clock | None = None):
        self.session = session
        self.config = config
        sequences = SequenceService(session)
        self.stock = StockLedgerService(
            session,
            clock,
            negative_stock=config.policy.negative_stock,
            sequence_service=sequences,
        )
        self.ledger = GeneralLedgerService(session, clock, sequence_service=sequences)
        self.roles = AccountRoles(session, config.bindings)
        self._dispatch = {
            DocumentType.GRN: self._post_receipt,
            DocumentType.SALES_INVOICE: self._post_sales_invoice,
            DocumentType.STOCK_ADJUSTMENT: self._post_adjustment,
            DocumentType.PRODUCTION_ISSUE: self._post_production_issue,
            DocumentType.PRODUCTION_OUTPUT: self._post_production_output,
            DocumentType.SALES_RETURN: self._post_sales_return,
            DocumentType.PURCHASE_RETURN: self._post_purchase_return,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def post_document(self, document: Document) -> PostingOutcome:
        if not document.lines:
            raise ValidationError(
                f"Document {document.document_no} has no lines", field="lines"
            )
        for line in document.lines:
            if line.quantity <= 0:
                raise ValidationError(
                    f"Line {line.line_no} quantity must be positive",
                    field="quantity",
                    value=line.quantity,
                )

        journal = JournalBuilder()
        entries = self._dispatch[DocumentType(document.document_type)](document, journal)
        if journal.is_empty:
            raise ValidationError(
                f"Document {document.document_no} produces no ledger amounts",
                field="lines",
            )

        record = self.ledger.post(
            journal.build(
                document,
                f"{DocumentType(document.document_type).value} {document.document_no}",
            )
        )
        logger.info(
            "document_posted",
            extra={
                "document_no": document.document_no,
                "movement_count": len(entries),
                "journal_no": record.journal_no,
            },
        )
        return PostingOutcome(
            document_id=document.id,
            stock_entries=tuple(entries),
            journal=record,
        )

    def planned_keys(self, document: Document) -> set[str]:
        """Every stock and account lock key posting ``document`` touches."""
        doc_type = DocumentType(document.document_type)
        keys: set[str] = set()
        accounts: set[UUID] = set()
        for line in document.lines:
            item = self._item(line)
            keys.add(stock_key(line.item_id, line_location(line, document)))
            accounts.add(self.roles.inventory_for(item))
            if doc_type in (DocumentType.SALES_INVOICE, DocumentType.SALES_RETURN):
                accounts.add(self.roles.cogs_for(item))
            elif doc_type == DocumentType.STOCK_ADJUSTMENT:
                if line_direction(doc_type, line) == LineDirection.IN:
                    accounts.add(self.roles.role("stock_gain"))
                else:
                    accounts.add(self.roles.role("stock_write_off"))

        if doc_type in (DocumentType.GRN, DocumentType.PURCHASE_RETURN):
            accounts.add(self.roles.settlement(document, "cash", "accounts_payable"))
        elif doc_type == DocumentType.SALES_INVOICE:
            accounts.add(self.roles.settlement(document, "cash", "accounts_receivable"))
            accounts.add(self.roles.role("sales_revenue"))
        elif doc_type == DocumentType.SALES_RETURN:
            accounts.add(self.roles.settlement(document, "cash", "accounts_receivable"))
            accounts.add(self.roles.role("sales_returns"))
        elif doc_type in (DocumentType.PRODUCTION_ISSUE, DocumentType.PRODUCTION_OUTPUT):
            accounts.add(self.roles.role("wip"))

        keys.update(account_key(account_id) for account_id in accounts)
        return keys

    # ------------------------------------------------------------------
    # Per-type posting
    # ------------------------------------------------------------------

    def _post_receipt(self, document: Document, journal: JournalBuilder) -> list[StockMovementRecord]:
        settlement = self.roles.settlement(document, "cash", "accounts_payable")
        entries = []
        for line in document.lines:
            item = self._item(line)
            entry = self._append(
                document, line, StockSourceType.PURCHASE,
                qty_in=line.quantity, unit_cost=self._required_cost(line),
            )
            journal.debit("receipt", self.roles.inventory_for(item), entry.total_cost)
            journal.credit("receipt", settlement, entry.total_cost)
            entries.append(entry)
        return entries

    def _post_sales_invoice(
        self, document: Document, journal: JournalBuilder
    ) -> list[StockMovementRecord]:
        settlement = self.roles.settlement(document, "cash", "accounts_receivable")
        revenue = self.roles.role("sales_revenue")
        entries = []
        for line in document.lines:
            item = self._item(line)
            location_id = line_location(line, document)
            _, expected_cogs = self.stock.preview_outbound_cost(
                line.item_id, location_id, line.quantity, as_of=document.document_date
            )
            entry = self._append(document, line, StockSourceType.SALES, qty_out=line.quantity)
            if entry.total_cost != expected_cogs:
                raise ConcurrencyConflictError(
                    resource=stock_key(line.item_id, location_id),
                    reason=(
                        f"average cost moved while posting line {line.line_no}: "
                        f"captured {expected_cogs}, booked {entry.total_cost}"
                    ),
                )

            price = line.unit_price if line.unit_price is not None else item.selling_price
            sale_amount = round_money(line.quantity * price)
            journal.debit("sale", settlement, sale_amount)
            journal.credit("sale", revenue, sale_amount)
            journal.debit("cogs", self.roles.cogs_for(item), entry.total_cost)
            journal.credit("cogs", self.roles.inventory_for(item), entry.total_cost)
            entries.append(entry)
        return entries

    def _post_adjustment(self, document: Document, journal: JournalBuilder) -> list[StockMovementRecord]:
        entries = []
        for line in document.lines:
            item = self._item(line)
            inventory = self.roles.inventory_for(item)
            if line_direction(document.document_type, line) == LineDirection.IN:
                entry = self._append(
                    document, line, StockSourceType.ADJUSTMENT_IN,
                    qty_in=line.quantity, unit_cost=self._inbound_adjustment_cost(document, line, item),
                )
                journal.debit("adjustment", inventory, entry.total_cost)
                journal.credit("adjustment", self.roles.role("stock_gain"), entry.total_cost)
            else:
                entry = self._append(
                    document, line, StockSourceType.ADJUSTMENT_OUT, qty_out=line.quantity
                )
                journal.debit("adjustment", self.roles.role("stock_write_off"), entry.total_cost)
                journal.credit("adjustment", inventory, entry.total_cost)
            entries.append(entry)
        return entries

    def _post_production_issue(
        self, document: Document, journal: JournalBuilder
    ) -> list[StockMovementRecord]:
        wip = self.roles.role("wip")
        entries = []
        for line in document.lines:
            item = self._item(line)
            entry = self._append(
                document, line, StockSourceType.PRODUCTION_OUT, qty_out=line.quantity
            )
            journal.debit("production_issue", wip, entry.total_cost)
            journal.credit("production_issue", self.roles.inventory_for(item), entry.total_cost)
            entries.append(entry)
        return entries

    def _post_production_output(
        self, document: Document, journal: JournalBuilder
    ) -> list[StockMovementRecord]:
        wip = self.roles.role("wip")
        entries = []
        for line in document.lines:
            item = self._item(line)
            cost = line.unit_cost if line.unit_cost is not None else item.cost_price
            entry = self._append(
                document, line, StockSourceType.PRODUCTION_IN,
                qty_in=line.quantity, unit_cost=cost,
            )
            journal.debit("production_output", self.roles.inventory_for(item), entry.total_cost)
            journal.credit("production_output", wip, entry.total_cost)
            entries.append(entry)
        return entries

    def _post_sales_return(
        self, document: Document, journal: JournalBuilder
    ) -> list[StockMovementRecord]:
        """Goods back in at the line cost; the customer is credited at the line price."""
        settlement = self.roles.settlement(document, "cash", "accounts_receivable")
        returns = self.roles.role("sales_returns")
        entries = []
        for line in document.lines:
            item = self._item(line)
            entry = self._append(
                document, line, StockSourceType.ADJUSTMENT_IN,
                qty_in=line.quantity, unit_cost=self._inbound_adjustment_cost(document, line, item),
            )

            price = line.unit_price if line.unit_price is not None else item.selling_price
            credit_amount = round_money(line.quantity * price)
            journal.debit("sales_return", returns, credit_amount)
            journal.credit("sales_return", settlement, credit_amount)
            journal.debit("return_cost", self.roles.inventory_for(item), entry.total_cost)
            journal.credit("return_cost", self.roles.cogs_for(item), entry.total_cost)
            entries.append(entry)
        return entries

    def _post_purchase_return(
        self, document: Document, journal: JournalBuilder
    ) -> list[StockMovementRecord]:
        # refunded at the booked average cost, not the original purchase price
        settlement = self.roles.settlement(document, "cash", "accounts_payable")
        entries = []
        for line in document.lines:
            item = self._item(line)
            entry = self._append(
                document, line, StockSourceType.ADJUSTMENT_OUT, qty_out=line.quantity
            )
            journal.debit("purchase_return", settlement, entry.total_cost)
            journal.credit("purchase_return", self.roles.inventory_for(item), entry.total_cost)
            entries.append(entry)
        return entries

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _append(
        self,
        document: Document,
        line: DocumentLine,
        source_type: StockSourceType,
        qty_in: Decimal = ZERO,
        qty_out: Decimal = ZERO,
        unit_cost: Decimal = ZERO,
    ) -> StockMovementRecord:
        result = self.stock.append_movement(
            StockMovementSpec(
                item_id=line.item_id,
                location_id=line_location(line, document),
                transaction_date=document.document_date,
                source_type=source_type,
                qty_in=qty_in,
                qty_out=qty_out,
                unit_cost=unit_cost,
                source_document_id=document.id,
                source_document_no=document.document_no,
                remarks=document.remarks,
                batch_no=line.batch_no,
                expiry_date=line.expiry_date,
                serial_numbers=tuple(line.serial_numbers or ()),
            )
        )
        return result.entry

    def _item(self, line: DocumentLine) -> Item:
        item = self.session.get(Item, line.item_id)
        if item is None:
            raise NotFoundError("Item", str(line.item_id))
        return item

    @staticmethod
    def _required_cost(line: DocumentLine) -> Decimal:
        if line.unit_cost is None:
            raise ValidationError(
                f"Line {line.line_no} needs a unit cost", field="unit_cost"
            )
        return line.unit_cost

    def _inbound_adjustment_cost(self, document: Document, line: DocumentLine, item: Item) -> Decimal:
        """Line cost, else the key's current average, else the item's cost price."""
        if line.unit_cost is not None:
            return line.unit_cost
        state = self.stock.current_state(
            line.item_id, line_location(line, document), as_of=document.document_date
        )
        if state.avg_cost > 0:
            return state.avg_cost
        return item.cost_price
