"""
JSON mirror of the in-process API.

Verifies:
- Decimals serialize as exact decimal strings and floats are refused
- Journal totals and account nets are published with the stored fields
- Draft payloads parse into create_draft arguments, rejecting floats,
  malformed UUIDs and dates, and unknown enum values
"""

import json
from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from erp_kernel.domain.dtos import AccountBalanceRecord, JournalLineRecord, JournalRecord
from erp_kernel.exceptions import ValidationError
from erp_kernel.models.document import DocumentType, LineDirection, PaymentType
from erp_services.serialization import (
    document_from_payload,
    dumps,
    line_from_payload,
    to_json_dict,
)


def journal(*amounts):
    lines = tuple(
        JournalLineRecord(
            line_id=uuid4(),
            line_seq=i,
            account_id=uuid4(),
            account_code=code,
            debit=Decimal(debit),
            credit=Decimal(credit),
            effect="sale",
            memo=None,
        )
        for i, (code, debit, credit) in enumerate(amounts, start=1)
    )
    return JournalRecord(
        journal_id=uuid4(),
        journal_no="JRNL-00001",
        seq=1,
        journal_date=date(2024, 3, 1),
        description="INV-00001",
        source_document_type="SALES_INVOICE",
        source_document_id=uuid4(),
        source_document_no="INV-00001",
        created_at=datetime(2024, 3, 1, 12, 30, tzinfo=timezone.utc),
        lines=lines,
    )


class TestToJson:
    def test_scalars(self):
        assert to_json_dict(Decimal("0.10")) == "0.10"
        assert to_json_dict(Decimal("1E+2")) == "100"
        assert to_json_dict(date(2024, 3, 1)) == "2024-03-01"
        assert type(to_json_dict(PaymentType.CASH)) is str
        assert to_json_dict(PaymentType.CASH) == "CASH"
        assert to_json_dict(None) is None

    def test_float_refused(self):
        with pytest.raises(TypeError, match="float"):
            to_json_dict({"amount": 0.1})

    def test_unknown_type_refused(self):
        with pytest.raises(TypeError, match="object"):
            to_json_dict(object())

    def test_journal_with_totals(self):
        record = journal(("1001", "110.00", "0"), ("4000", "0", "110.00"))
        data = to_json_dict(record)

        assert data["journal_no"] == "JRNL-00001"
        assert data["created_at"] == "2024-03-01T12:30:00+00:00"
        assert data["total_debit"] == "110.00"
        assert data["total_credit"] == "110.00"
        assert data["is_balanced"] is True
        assert [ln["account_code"] for ln in data["lines"]] == ["1001", "4000"]
        assert data["lines"][0]["debit"] == "110.00"

    def test_account_net(self):
        balance = AccountBalanceRecord(
            account_id=uuid4(),
            account_code="1300",
            account_name="Inventory - Raw Materials",
            account_type="asset",
            total_debit=Decimal("1800.00"),
            total_credit=Decimal("480.00"),
        )
        assert to_json_dict(balance)["net_debit"] == "1320.00"

    def test_dumps_sorted(self):
        text = dumps({"b": Decimal("2.50"), "a": [uuid4(), (1, 2)]})
        assert text.index('"a"') < text.index('"b"')
        assert json.loads(text)["b"] == "2.50"

    def test_confirmation_result(self, receive, catalog):
        result = receive(catalog.serial_item, "2", "100", serial_numbers=("S-1", "S-2"))
        data = json.loads(dumps(result))

        assert data["attempts"] == 1
        assert data["document"]["status"] == "CONFIRMED"
        assert data["stock_entries"][0]["serial_numbers"] == ["S-1", "S-2"]
        assert data["stock_entries"][0]["total_cost"] == "200.00"
        assert data["journal"]["is_balanced"] is True


class TestPayload:
    @pytest.fixture
    def payload(self):
        return {
            "document_type": "SALES_INVOICE",
            "document_date": "2024-03-01",
            "location_id": str(uuid4()),
            "payment_type": "CREDIT",
            "counterparty": "Acme",
            "lines": [
                {"item_id": str(uuid4()), "quantity": "2.5", "unit_price": "19.99"},
                {"item_id": str(uuid4()), "quantity": 3, "serial_numbers": ["A", "B", "C"]},
            ],
        }

    def test_document(self, payload):
        kwargs = document_from_payload(payload)

        assert kwargs["document_type"] is DocumentType.SALES_INVOICE
        assert kwargs["document_date"] == date(2024, 3, 1)
        assert kwargs["payment_type"] is PaymentType.CREDIT
        assert str(kwargs["location_id"]) == payload["location_id"]
        first, second = kwargs["lines"]
        assert first.quantity == Decimal("2.5")
        assert first.unit_price == Decimal("19.99")
        assert first.unit_cost is None
        assert second.quantity == Decimal("3")
        assert second.serial_numbers == ("A", "B", "C")

    def test_direction(self):
        line = line_from_payload({"item_id": str(uuid4()), "quantity": "1", "direction": "OUT"})
        assert line.direction is LineDirection.OUT

    @pytest.mark.parametrize(
        "field, value",
        [
            ("quantity", 1.5),
            ("quantity", "lots"),
            ("unit_price", 19.99),
            ("item_id", "not-a-uuid"),
            ("expiry_date", "01/03/2025"),
            ("direction", "SIDEWAYS"),
        ],
    )
    def test_bad_line_field(self, field, value):
        data = {"item_id": str(uuid4()), "quantity": "1", field: value}
        with pytest.raises(ValidationError) as exc_info:
            line_from_payload(data)
        assert exc_info.value.field == field

    @pytest.mark.parametrize("field", ["item_id", "quantity"])
    def test_required_line_field(self, field):
        data = {"item_id": str(uuid4()), "quantity": "1"}
        del data[field]
        with pytest.raises(ValidationError, match=f"{field} is required"):
            line_from_payload(data)

    def test_serials_must_be_strings(self):
        with pytest.raises(ValidationError, match="serial_numbers"):
            line_from_payload({"item_id": str(uuid4()), "quantity": "1", "serial_numbers": "S-1"})

    @pytest.mark.parametrize(
        "field, value, message",
        [
            ("document_type", None, "document_type is required"),
            ("document_type", "CREDIT_NOTE", "Unknown document_type"),
            ("document_date", None, "document_date is required"),
            ("document_date", "2024-13-01", "ISO date"),
            ("payment_type", "BARTER", "Unknown payment_type"),
        ],
    )
    def test_bad_header(self, payload, field, value, message):
        payload[field] = value
        with pytest.raises(ValidationError, match=message):
            document_from_payload(payload)

    def test_payload_to_confirmed_document(self, documents, catalog, ledgers):
        kwargs = document_from_payload(
            {
                "document_type": "GRN",
                "document_date": "2024-03-01",
                "location_id": str(catalog.main),
                "lines": [{"item_id": str(catalog.widget), "quantity": "4", "unit_cost": "2.50"}],
            }
        )
        draft = documents.create_draft(**kwargs)
        documents.confirm(draft.document_id)

        assert ledgers.stock(catalog.widget).stock_value == Decimal("10.00")
        assert ledgers.net("2001") == Decimal("-10.00")
