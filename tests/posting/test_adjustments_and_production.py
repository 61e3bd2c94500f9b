"""
Stock adjustment and production posting.

Verifies:
- ADJUSTMENT_IN:  Dr inventory / Cr stock gain, at the line cost, else the
  current average, else the item's cost price
- ADJUSTMENT_OUT: Dr stock write-off / Cr inventory, at the average
- PRODUCTION_ISSUE:  Dr work in progress / Cr inventory, at the average
- PRODUCTION_OUTPUT: Dr inventory / Cr work in progress, at the line cost,
  else the item's cost price
"""

from datetime import date
from decimal import Decimal

import pytest

from erp_kernel.exceptions import ValidationError
from erp_kernel.models.document import DocumentType, LineDirection
from erp_services.document_lifecycle import DocumentLineInput

D = date(2024, 3, 1)


def lines_of(result):
    return [(ln.account_code, ln.debit, ln.credit) for ln in result.journal.lines]


class TestAdjustments:
    def test_inbound_with_cost(self, adjust, catalog, ledgers):
        result = adjust(catalog.widget, "5", "IN", unit_cost="3")

        assert result.stock_entries[0].source_type == "ADJUSTMENT_IN"
        assert lines_of(result) == [
            ("1300", Decimal("15.00"), Decimal("0")),
            ("4200", Decimal("0"), Decimal("15.00")),
        ]
        assert {ln.effect for ln in result.journal.lines} == {"adjustment"}

    def test_inbound_without_cost_uses_average(self, receive, adjust, catalog):
        receive(catalog.widget, "10", "6")
        result = adjust(catalog.widget, "2", "IN")
        assert result.stock_entries[0].unit_cost == Decimal("6")
        assert result.journal.total_debit == Decimal("12.00")

    def test_inbound_without_cost_or_stock_uses_cost_price(self, adjust, catalog, ledgers):
        result = adjust(catalog.widget, "2", "IN")
        assert result.stock_entries[0].unit_cost == Decimal("8")
        assert ledgers.stock(catalog.widget).avg_cost == Decimal("8")

    def test_outbound_writes_off_at_average(self, receive, adjust, catalog, ledgers):
        receive(catalog.widget, "100", "10")
        receive(catalog.widget, "50", "16")
        result = adjust(catalog.widget, "5", "OUT")

        assert result.stock_entries[0].source_type == "ADJUSTMENT_OUT"
        assert lines_of(result) == [
            ("5600", Decimal("60.00"), Decimal("0")),
            ("1300", Decimal("0"), Decimal("60.00")),
        ]
        assert ledgers.net("1300") == ledgers.stock(catalog.widget).stock_value

    def test_mixed_directions_in_one_document(self, receive, documents, catalog, ledgers):
        receive(catalog.widget, "10", "4")
        draft = documents.create_draft(
            DocumentType.STOCK_ADJUSTMENT,
            D,
            location_id=catalog.main,
            remarks="stock count",
            lines=[
                DocumentLineInput(item_id=catalog.widget, quantity="3", direction="OUT"),
                DocumentLineInput(item_id=catalog.gadget, quantity="1", direction=LineDirection.IN, unit_cost="25"),
            ],
        )
        result = documents.confirm(draft.document_id)

        assert [e.source_type for e in result.stock_entries] == ["ADJUSTMENT_OUT", "ADJUSTMENT_IN"]
        assert result.stock_entries[0].remarks == "stock count"
        assert result.journal.is_balanced
        assert ledgers.net("5600") == Decimal("12.00")
        assert ledgers.net("4200") == Decimal("-25.00")
        assert ledgers.net("1320") == Decimal("25.00")

    def test_direction_required(self, documents, catalog):
        with pytest.raises(ValidationError, match="direction"):
            documents.create_draft(
                DocumentType.STOCK_ADJUSTMENT,
                D,
                location_id=catalog.main,
                lines=[DocumentLineInput(item_id=catalog.widget, quantity="1")],
            )

    def test_direction_ignored_on_other_documents(self, documents, catalog):
        draft = documents.create_draft(
            DocumentType.GRN,
            D,
            location_id=catalog.main,
            lines=[DocumentLineInput(item_id=catalog.widget, quantity="1", unit_cost="1", direction="OUT")],
        )
        assert draft.lines[0].direction is None


class TestProduction:
    def test_issue_to_work_in_progress(self, receive, documents, catalog, ledgers):
        receive(catalog.widget, "100", "10")
        draft = documents.create_draft(
            DocumentType.PRODUCTION_ISSUE,
            D,
            location_id=catalog.main,
            lines=[DocumentLineInput(item_id=catalog.widget, quantity="10")],
        )
        result = documents.confirm(draft.document_id)

        assert result.stock_entries[0].source_type == "PRODUCTION_OUT"
        assert lines_of(result) == [
            ("1310", Decimal("100.00"), Decimal("0")),
            ("1300", Decimal("0"), Decimal("100.00")),
        ]
        assert ledgers.stock(catalog.widget).balance_qty == Decimal("90")

    def test_output_from_work_in_progress(self, receive, documents, catalog, ledgers):
        receive(catalog.widget, "100", "10")
        issue = documents.create_draft(
            DocumentType.PRODUCTION_ISSUE,
            D,
            location_id=catalog.main,
            lines=[DocumentLineInput(item_id=catalog.widget, quantity="10")],
        )
        documents.confirm(issue.document_id)

        output = documents.create_draft(
            DocumentType.PRODUCTION_OUTPUT,
            D,
            location_id=catalog.main,
            lines=[DocumentLineInput(item_id=catalog.gadget, quantity="5", unit_cost="20")],
        )
        result = documents.confirm(output.document_id)

        assert result.stock_entries[0].source_type == "PRODUCTION_IN"
        assert lines_of(result) == [
            ("1320", Decimal("100.00"), Decimal("0")),
            ("1310", Decimal("0"), Decimal("100.00")),
        ]
        assert ledgers.net("1310") == Decimal("0.00")
        assert ledgers.stock(catalog.gadget).avg_cost == Decimal("20")

    def test_output_defaults_to_cost_price(self, documents, catalog, ledgers):
        draft = documents.create_draft(
            DocumentType.PRODUCTION_OUTPUT,
            D,
            location_id=catalog.main,
            lines=[DocumentLineInput(item_id=catalog.gadget, quantity="2")],
        )
        result = documents.confirm(draft.document_id)
        assert result.stock_entries[0].unit_cost == Decimal("30")
        assert ledgers.net("1310") == Decimal("-60.00")

    def test_payment_type_refused(self, documents, catalog):
        with pytest.raises(ValidationError, match="payment type"):
            documents.create_draft(
                DocumentType.PRODUCTION_ISSUE, D, location_id=catalog.main, payment_type="CASH"
            )
