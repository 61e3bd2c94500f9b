"""
GeneralLedgerService -- append-only journal log with per-account balances.

Responsibility:
    Validates a proposed journal, writes it with all of its lines, and
    accumulates each line into the AccountBalance snapshot of its account.

Architecture position:
    Kernel > Services.  Called by erp_services.posting_orchestrator.
    Flushes only; the caller owns the transaction.

Invariants enforced:
    - At least one line; every line has exactly one of debit / credit
      positive and neither negative; amounts carry at most 2 decimals.
    - sum(debit) == sum(credit) exactly, overall and within every effect.
    - Every account exists and is active.
    - AccountBalance rows are locked FOR UPDATE in sorted account order.

Failure modes:
    - UnbalancedJournalError (logged at ERROR) for any balance or line-shape
      violation.  Nothing is written.
    - ValidationError for an amount with more than 2 decimal places.
    - NotFoundError / InactiveReferenceError for unknown or inactive
      accounts.
    - ConcurrencyConflictError when an AccountBalance row is created
      concurrently.

Audit relevance:
    Journals and lines are immutable from creation (db/immutability.py).
    The engine is sign-convention agnostic: it keeps raw debit and credit
    totals and leaves normal balances to reporting.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from erp_kernel.db.types import MONEY_DECIMAL_PLACES, ZERO, has_precision, to_decimal
from erp_kernel.domain.clock import Clock
from erp_kernel.domain.dtos import JournalLineRecord, JournalRecord, JournalSpec
from erp_kernel.exceptions import (
    ConcurrencyConflictError,
    UnbalancedJournalError,
    ValidationError,
)
from erp_kernel.logging_config import get_logger
from erp_kernel.models.journal import AccountBalance, Journal, JournalLine
from erp_kernel.services.account_directory import AccountDirectory
from erp_kernel.services.base import BaseService
from erp_kernel.services.sequence_service import SequenceService

logger = get_logger("services.general_ledger")

JOURNAL_NO_FORMAT = "JRNL-{seq:05d}"


def journal_to_record(journal: Journal) -> JournalRecord:
    return JournalRecord(
        journal_id=journal.id,
        journal_no=journal.journal_no,
        seq=journal.seq,
        journal_date=journal.journal_date,
        description=journal.description,
        source_document_type=journal.source_document_type,
        source_document_id=journal.source_document_id,
        source_document_no=journal.source_document_no,
        created_at=journal.created_at,
        lines=tuple(
            JournalLineRecord(
                line_id=line.id,
                line_seq=line.line_seq,
                account_id=line.account_id,
                account_code=line.account.code,
                debit=line.debit,
                credit=line.credit,
                effect=line.effect,
                memo=line.memo,
            )
            for line in journal.lines
        ),
    )


class GeneralLedgerService(BaseService[Journal]):
    """
    The general ledger engine.

    Contract:
        ``post(proposed)`` writes one balanced journal or raises before writing
        anything.  The caller must hold the account keys' locks and owns the
        transaction.

    Guarantees:
        - AccountBalance totals equal the sum of all posted lines per account.
        - Journal numbers are gap-free within committed transactions.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        sequence_service: SequenceService | None = None,
    ):
        super().__init__(session, clock)
        self._sequences = sequence_service or SequenceService(session)
        self._accounts = AccountDirectory(session, self.clock, validate_codes=False)

    def validate(self, proposed: JournalSpec) -> list[tuple[UUID, Decimal, Decimal]]:
        """
        Check shape and balance of a journal without writing.

        Returns the normalized (account_id, debit, credit) of each line.
        """
        if not proposed.lines:
            self._unbalanced(proposed, ZERO, ZERO, reason="journal has no lines")

        normalized = []
        effect_totals: dict[str, list[Decimal]] = {}
        for idx, line in enumerate(proposed.lines, start=1):
            try:
                debit = to_decimal(line.debit, "debit")
                credit = to_decimal(line.credit, "credit")
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            if debit < 0 or credit < 0:
                self._unbalanced(
                    proposed, debit, credit,
                    reason=f"line {idx} has a negative amount",
                )
            if (debit > 0) == (credit > 0):
                self._unbalanced(
                    proposed, debit, credit,
                    reason=f"line {idx} must have exactly one of debit/credit > 0",
                )
            for name, amount in (("debit", debit), ("credit", credit)):
                if not has_precision(amount, MONEY_DECIMAL_PLACES):
                    raise ValidationError(
                        f"Line {idx} {name} has more than {MONEY_DECIMAL_PLACES} "
                        "decimal places",
                        field=name,
                        value=amount,
                    )
            totals = effect_totals.setdefault(line.effect, [ZERO, ZERO])
            totals[0] += debit
            totals[1] += credit
            normalized.append((line.account_id, debit, credit))

        total_debit = sum((d for _, d, _ in normalized), ZERO)
        total_credit = sum((c for _, _, c in normalized), ZERO)
        if total_debit != total_credit:
            self._unbalanced(proposed, total_debit, total_credit)
        for effect, (debit, credit) in effect_totals.items():
            if debit != credit:
                self._unbalanced(proposed, debit, credit, effect=effect)

        for account_id in {account_id for account_id, _, _ in normalized}:
            self._accounts.require(account_id, active=True)
        return normalized

    def post(self, proposed: JournalSpec) -> JournalRecord:
        normalized = self.validate(proposed)

        seq = self._sequences.next_value(SequenceService.JOURNAL)
        now = self.clock.now()
        journal = Journal(
            seq=seq,
            journal_no=JOURNAL_NO_FORMAT.format(seq=seq),
            journal_date=proposed.journal_date,
            description=proposed.description,
            source_document_type=proposed.source_document_type,
            source_document_id=proposed.source_document_id,
            source_document_no=proposed.source_document_no,
            created_at=now,
            lines=[
                JournalLine(
                    account_id=account_id,
                    debit=debit,
                    credit=credit,
                    effect=line.effect,
                    memo=line.memo,
                    line_seq=idx,
                )
                for idx, ((account_id, debit, credit), line) in enumerate(
                    zip(normalized, proposed.lines), start=1
                )
            ],
        )
        self.session.add(journal)
        self.session.flush()

        per_account: dict[UUID, list[Decimal]] = {}
        for account_id, debit, credit in normalized:
            totals = per_account.setdefault(account_id, [ZERO, ZERO])
            totals[0] += debit
            totals[1] += credit
        for account_id in sorted(per_account, key=str):
            debit, credit = per_account[account_id]
            balance = self._lock_balance(account_id)
            balance.total_debit += debit
            balance.total_credit += credit
            balance.last_journal_seq = seq
            balance.updated_at = now
        self.session.flush()

        record = journal_to_record(journal)
        logger.info(
            "journal_posted",
            extra={
                "journal_no": record.journal_no,
                "line_count": len(record.lines),
                "total_debit": str(record.total_debit),
                "total_credit": str(record.total_credit),
                "source_document_no": proposed.source_document_no,
            },
        )
        return record

    def _unbalanced(
        self,
        proposed: JournalSpec,
        debit: Decimal,
        credit: Decimal,
        effect: str | None = None,
        reason: str | None = None,
    ) -> None:
        logger.error(
            "unbalanced_journal",
            extra={
                "total_debit": str(debit),
                "total_credit": str(credit),
                "effect": effect,
                "reason": reason,
                "source_document_no": proposed.source_document_no,
            },
        )
        raise UnbalancedJournalError(
            total_debit=debit, total_credit=credit, effect=effect, reason=reason
        )

    def _lock_balance(self, account_id: UUID) -> AccountBalance:
        stmt = (
            select(AccountBalance)
            .where(AccountBalance.account_id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        balance = self.session.execute(stmt).scalar_one_or_none()
        if balance is not None:
            return balance

        savepoint = self.session.begin_nested()
        try:
            balance = AccountBalance(
                account_id=account_id, total_debit=ZERO, total_credit=ZERO
            )
            self.session.add(balance)
            self.session.flush()
            savepoint.commit()
        except IntegrityError as exc:
            savepoint.rollback()
            raise ConcurrencyConflictError(
                resource=f"account:{account_id}",
                reason="balance row created concurrently",
            ) from exc
        return balance

