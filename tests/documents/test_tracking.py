"""
Serial and batch tracking at confirmation.

Verifies:
- BATCH items need a batch number
- SERIAL items need a whole quantity and one distinct serial per unit
- Serials may not repeat within a line or across lines of the same item
- Outbound serials must be in stock at the line's location
- Every problem is reported at once and nothing is posted
- Valid tracked documents update batch balances and serial availability
"""

from datetime import date
from decimal import Decimal

import pytest

from erp_kernel.exceptions import TrackingValidationError
from erp_kernel.models.document import DocumentStatus, DocumentType
from erp_services.document_lifecycle import DocumentLineInput

D = date(2024, 3, 1)


def confirm_fails(documents, document_type, lines, **header):
    draft = documents.create_draft(document_type, D, lines=lines, **header)
    with pytest.raises(TrackingValidationError) as exc_info:
        documents.confirm(draft.document_id)
    assert documents.get_by_id(draft.document_id).status == DocumentStatus.DRAFT.value
    return exc_info.value


def reasons(error):
    return sorted(issue.reason for issue in error.issues)


class TestBatch:
    def test_missing_batch(self, documents, catalog, ledgers):
        error = confirm_fails(
            documents,
            DocumentType.GRN,
            [DocumentLineInput(item_id=catalog.batch_item, quantity="5", unit_cost="4", batch_no="   ")],
            location_id=catalog.main,
        )
        assert reasons(error) == ["missing_batch"]
        assert error.issues[0].line_no == 1
        assert error.issues[0].item_sku == "BAT-001"
        assert ledgers.counts() == (0, 0)

    def test_batch_receipt_and_issue(self, receive, documents, catalog, ledgers):
        receive(catalog.batch_item, "10", "4", batch_no="B-1", expiry_date=date(2025, 1, 1))
        receive(catalog.batch_item, "5", "4", batch_no="B-2")
        draft = documents.create_draft(
            DocumentType.PRODUCTION_ISSUE,
            D,
            location_id=catalog.main,
            lines=[DocumentLineInput(item_id=catalog.batch_item, quantity="4", batch_no="B-1")],
        )
        documents.confirm(draft.document_id)

        assert [(b.batch_no, b.quantity) for b in ledgers.batches(catalog.batch_item)] == [
            ("B-1", Decimal("6")),
            ("B-2", Decimal("5")),
        ]


class TestSerial:
    def test_count_mismatch(self, documents, catalog):
        error = confirm_fails(
            documents,
            DocumentType.GRN,
            [DocumentLineInput(item_id=catalog.serial_item, quantity="3", unit_cost="100",
                               serial_numbers=("S-1", "S-2"))],
            location_id=catalog.main,
        )
        [issue] = error.issues
        assert issue.reason == "serial_count_mismatch"
        assert (issue.expected_count, issue.actual_count) == (3, 2)

    def test_fractional_quantity(self, documents, catalog):
        error = confirm_fails(
            documents,
            DocumentType.GRN,
            [DocumentLineInput(item_id=catalog.serial_item, quantity="1.5", unit_cost="100",
                               serial_numbers=("S-1",))],
            location_id=catalog.main,
        )
        assert reasons(error) == ["fractional_serial_quantity"]

    def test_duplicate_within_line(self, documents, catalog):
        error = confirm_fails(
            documents,
            DocumentType.GRN,
            [DocumentLineInput(item_id=catalog.serial_item, quantity="2", unit_cost="100",
                               serial_numbers=("S-1", "S-1"))],
            location_id=catalog.main,
        )
        assert reasons(error) == ["duplicate_serials"]
        assert error.issues[0].serials == ("S-1",)

    def test_duplicate_across_lines(self, documents, catalog):
        error = confirm_fails(
            documents,
            DocumentType.GRN,
            [
                DocumentLineInput(item_id=catalog.serial_item, quantity="2", unit_cost="100",
                                  serial_numbers=("S-1", "S-2")),
                DocumentLineInput(item_id=catalog.serial_item, quantity="1", unit_cost="100",
                                  serial_numbers=("S-2",)),
            ],
            location_id=catalog.main,
        )
        [issue] = error.issues
        assert issue.reason == "duplicate_serials"
        assert issue.serials == ("S-2",)
        assert issue.line_no == 1

    def test_outbound_serial_not_in_stock(self, receive, documents, catalog, ledgers):
        receive(catalog.serial_item, "2", "100", serial_numbers=("S-1", "S-2"))
        before = ledgers.counts()

        error = confirm_fails(
            documents,
            DocumentType.SALES_INVOICE,
            [DocumentLineInput(item_id=catalog.serial_item, quantity="2", serial_numbers=("S-2", "S-9"))],
            location_id=catalog.main,
        )
        [issue] = error.issues
        assert issue.reason == "serials_not_in_stock"
        assert issue.serials == ("S-9",)
        assert ledgers.counts() == before

    def test_serial_at_other_location_is_not_in_stock(self, receive, documents, catalog):
        receive(catalog.serial_item, "1", "100", serial_numbers=("S-1",))
        error = confirm_fails(
            documents,
            DocumentType.SALES_INVOICE,
            [DocumentLineInput(item_id=catalog.serial_item, quantity="1", serial_numbers=("S-1",))],
            location_id=catalog.backup,
        )
        assert reasons(error) == ["serials_not_in_stock"]

    def test_all_issues_reported_together(self, documents, catalog):
        error = confirm_fails(
            documents,
            DocumentType.GRN,
            [
                DocumentLineInput(item_id=catalog.batch_item, quantity="1", unit_cost="4"),
                DocumentLineInput(item_id=catalog.serial_item, quantity="2", unit_cost="100",
                                  serial_numbers=("S-1",)),
                DocumentLineInput(item_id=catalog.widget, quantity="1", unit_cost="1"),
            ],
            location_id=catalog.main,
        )
        assert reasons(error) == ["missing_batch", "serial_count_mismatch"]
        assert [issue.line_no for issue in error.issues] == [1, 2]
        assert "BAT-001" in str(error) and "SER-001" in str(error)

    def test_serials_follow_receipts_and_sales(self, receive, sell, catalog, ledgers):
        receive(catalog.serial_item, "3", "100", serial_numbers=("M-1", "M-2", "M-3"))
        result = sell(catalog.serial_item, "1", serial_numbers=("M-2",))

        assert result.stock_entries[0].serial_numbers == ("M-2",)
        assert ledgers.serials(catalog.serial_item) == ("M-1", "M-3")

    def test_serial_sold_twice_is_rejected(self, receive, sell, documents, catalog):
        receive(catalog.serial_item, "1", "100", serial_numbers=("M-1",))
        sell(catalog.serial_item, "1", serial_numbers=("M-1",))

        error = confirm_fails(
            documents,
            DocumentType.SALES_INVOICE,
            [DocumentLineInput(item_id=catalog.serial_item, quantity="1", serial_numbers=("M-1",))],
            location_id=catalog.main,
        )
        assert reasons(error) == ["serials_not_in_stock"]

    def test_untracked_items_need_nothing(self, receive, catalog):
        result = receive(catalog.widget, "1.25", "4")
        assert result.stock_entries[0].qty_in == Decimal("1.25")


class TestLogging:
    def test_failure_logged_with_issues(self, documents, catalog, captured_logs):
        confirm_fails(
            documents,
            DocumentType.GRN,
            [DocumentLineInput(item_id=catalog.batch_item, quantity="1", unit_cost="4")],
            location_id=catalog.main,
        )
        events = [r for r in captured_logs() if r["message"] == "tracking_validation_failed"]
        assert events
        assert events[0]["issues"][0]["reason"] == "missing_batch"
