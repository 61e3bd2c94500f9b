"""
Document confirmation.

Verifies:
- Confirmation flips DRAFT to CONFIRMED with timestamp and journal link
- A second confirmation is rejected without touching either ledger
- Structured log events carry the document context, number and type
- Failures log and leave the document in DRAFT
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from erp_kernel.exceptions import DocumentAlreadyConfirmedError, NotFoundError, ValidationError
from erp_kernel.logging_config import LogContext
from erp_kernel.models.document import DocumentStatus, DocumentType
from erp_services.document_lifecycle import DocumentLineInput
from erp_services.serialization import to_json_dict

D = date(2024, 3, 1)


@pytest.fixture
def grn(documents, catalog):
    return documents.create_draft(
        DocumentType.GRN,
        D,
        location_id=catalog.main,
        payment_type="CREDIT",
        lines=[DocumentLineInput(item_id=catalog.widget, quantity="10", unit_cost="2")],
    )


class TestConfirm:
    def test_status_timestamp_and_journal(self, documents, grn, clock):
        result = documents.confirm(grn.document_id, actor_id="clerk-7")

        record = documents.get_by_id(grn.document_id)
        assert record.status == DocumentStatus.CONFIRMED.value
        assert record.journal_id == result.journal.journal_id
        assert record.confirmed_at is not None
        assert result.attempts == 1
        assert result.journal.source_document_id == grn.document_id
        assert result.journal.source_document_type == "GRN"

    def test_timestamps_survive_reload(self, documents, grn, clock, ledgers):
        result = documents.confirm(grn.document_id)

        record = documents.get_by_id(grn.document_id)
        assert record.confirmed_at == result.document.confirmed_at == clock.now()
        assert record.confirmed_at.tzinfo is not None
        assert to_json_dict(record)["confirmed_at"] == to_json_dict(result.document)["confirmed_at"]
        assert to_json_dict(record)["confirmed_at"].endswith("+00:00")

        [journal] = ledgers.journals()
        assert journal.created_at == result.journal.created_at
        assert journal.created_at.tzinfo is not None
        [entry] = ledgers.movements()
        assert entry.created_at.tzinfo is not None

    def test_double_confirm_rejected(self, documents, grn, ledgers):
        documents.confirm(grn.document_id)
        before = ledgers.counts()

        with pytest.raises(DocumentAlreadyConfirmedError) as exc_info:
            documents.confirm(grn.document_id)

        assert exc_info.value.document_no == grn.document_no
        assert ledgers.counts() == before == (1, 1)
        assert ledgers.stock(grn.lines[0].item_id).balance_qty == Decimal("10")

    def test_unknown_document(self, documents):
        with pytest.raises(NotFoundError):
            documents.confirm(uuid4())

    def test_confirm_uses_current_header(self, documents, grn, catalog, ledgers):
        documents.update_header(grn.document_id, payment_type="CASH", location_id=catalog.backup)
        documents.confirm(grn.document_id)

        assert ledgers.net("1001") == Decimal("-20.00")
        assert ledgers.stock(catalog.widget, catalog.backup).balance_qty == Decimal("10")


class TestLogging:
    def test_confirmation_logs(self, captured_logs, documents, grn):
        documents.confirm(grn.document_id, actor_id="clerk-7")
        logs = captured_logs()

        confirmed = [r for r in logs if r["message"] == "document_confirmed"]
        assert len(confirmed) == 1
        event = confirmed[0]
        assert event["document_no"] == grn.document_no
        assert event["document_id"] == str(grn.document_id)
        assert event["actor_id"] == "clerk-7"
        assert event["attempts"] == 1
        assert "correlation_id" in event
        assert "duration_ms" in event

        # every event of the confirmation shares the correlation id
        correlated = {r["correlation_id"] for r in logs if "correlation_id" in r}
        assert correlated == {event["correlation_id"]}
        messages = [r["message"] for r in logs]
        assert "movement_appended" in messages
        assert "journal_posted" in messages
        assert "document_posted" in messages

    def test_engine_events_carry_document_number_and_type(self, captured_logs, documents, grn):
        documents.confirm(grn.document_id)
        logs = captured_logs()

        for message in ("movement_appended", "journal_posted", "document_confirmed"):
            [event] = [r for r in logs if r["message"] == message]
            assert event["document_no"] == grn.document_no
            assert event["document_type"] == "GRN"

    def test_failure_is_logged(self, documents, catalog, captured_logs):
        draft = documents.create_draft(
            DocumentType.GRN,
            D,
            location_id=catalog.main,
            lines=[DocumentLineInput(item_id=catalog.widget, quantity="1")],
        )
        with pytest.raises(ValidationError):
            documents.confirm(draft.document_id)

        failures = [r for r in captured_logs() if r["message"] == "confirmation_failed"]
        assert len(failures) == 1
        assert failures[0]["error_code"] == "VALIDATION_ERROR"
        assert failures[0]["document_no"] == draft.document_no
        assert any(r["message"] == "transaction_rolled_back" for r in captured_logs())
        assert documents.get_by_id(draft.document_id).status == DocumentStatus.DRAFT.value

    def test_context_cleared_after_confirm(self, documents, grn):
        documents.confirm(grn.document_id)
        assert LogContext.get_all() == {}
