"""
JSON mirror of the in-process API.

Records become JSON-ready dicts: dates and datetimes as ISO-8601 strings,
Decimals as decimal strings (never floats), UUIDs as strings, enums by value.
Computed record properties (journal totals, net balances) are included.

``document_from_payload`` goes the other way for draft input and returns the
keyword arguments of ``DocumentService.create_draft``.  A float anywhere a
quantity or amount is expected is rejected: binary floats cannot carry money.
"""

from __future__ import annotations

import json
from dataclasses import fields, is_dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from erp_kernel.db.types import to_decimal
from erp_kernel.domain.dtos import AccountBalanceRecord, JournalRecord
from erp_kernel.exceptions import ValidationError
from erp_kernel.models.document import DocumentType, LineDirection, PaymentType
from erp_services.document_lifecycle import DocumentLineInput

# Read-only properties worth publishing alongside the stored fields
_COMPUTED = {
    JournalRecord: ("total_debit", "total_credit", "is_balanced"),
    AccountBalanceRecord: ("net_debit",),
}


def to_json_dict(value: Any) -> Any:
    """Convert a record (or a structure of records) to JSON-ready data."""
    if isinstance(value, Enum):
        return value.value
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        raise TypeError(f"float values are not serialized: {value!r}")
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        data = {f.name: to_json_dict(getattr(value, f.name)) for f in fields(value)}
        for name in _COMPUTED.get(type(value), ()):
            data[name] = to_json_dict(getattr(value, name))
        return data
    if isinstance(value, dict):
        return {str(to_json_dict(k)): to_json_dict(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_json_dict(v) for v in value]
    raise TypeError(f"Cannot serialize {type(value).__name__}")


def dumps(value: Any, **kwargs) -> str:
    return json.dumps(to_json_dict(value), sort_keys=True, **kwargs)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _decimal(data: dict, key: str, required: bool = False) -> Decimal | None:
    raw = data.get(key)
    if raw is None:
        if required:
            raise ValidationError(f"{key} is required", field=key)
        return None
    try:
        return to_decimal(raw, key)
    except ValueError as exc:
        raise ValidationError(str(exc), field=key, value=raw) from exc


def _uuid(data: dict, key: str, required: bool = False) -> UUID | None:
    raw = data.get(key)
    if raw is None:
        if required:
            raise ValidationError(f"{key} is required", field=key)
        return None
    try:
        return raw if isinstance(raw, UUID) else UUID(str(raw))
    except ValueError as exc:
        raise ValidationError(f"{key} is not a UUID: {raw!r}", field=key, value=raw) from exc


def _date(data: dict, key: str, required: bool = False) -> date | None:
    raw = data.get(key)
    if raw is None:
        if required:
            raise ValidationError(f"{key} is required", field=key)
        return None
    if isinstance(raw, date):
        return raw
    try:
        return date.fromisoformat(str(raw))
    except ValueError as exc:
        raise ValidationError(f"{key} is not an ISO date: {raw!r}", field=key, value=raw) from exc


def _enum(enum_type: type[Enum], data: dict, key: str) -> Any:
    raw = data.get(key)
    if raw is None:
        return None
    try:
        return enum_type(raw)
    except ValueError as exc:
        raise ValidationError(f"Unknown {key} {raw!r}", field=key, value=raw) from exc


def line_from_payload(data: dict[str, Any]) -> DocumentLineInput:
    serials = data.get("serial_numbers") or ()
    if isinstance(serials, str) or not all(isinstance(s, str) for s in serials):
        raise ValidationError("serial_numbers must be a list of strings", field="serial_numbers")
    return DocumentLineInput(
        item_id=_uuid(data, "item_id", required=True),
        quantity=_decimal(data, "quantity", required=True),
        location_id=_uuid(data, "location_id"),
        unit_cost=_decimal(data, "unit_cost"),
        unit_price=_decimal(data, "unit_price"),
        direction=_enum(LineDirection, data, "direction"),
        batch_no=data.get("batch_no"),
        expiry_date=_date(data, "expiry_date"),
        serial_numbers=tuple(serials),
    )


def document_from_payload(data: dict[str, Any]) -> dict[str, Any]:
    """Keyword arguments for DocumentService.create_draft from a JSON payload."""
    document_type = _enum(DocumentType, data, "document_type")
    if document_type is None:
        raise ValidationError("document_type is required", field="document_type")
    return {
        "document_type": document_type,
        "document_date": _date(data, "document_date", required=True),
        "location_id": _uuid(data, "location_id"),
        "counterparty": data.get("counterparty"),
        "payment_type": _enum(PaymentType, data, "payment_type"),
        "remarks": data.get("remarks"),
        "lines": tuple(line_from_payload(line) for line in data.get("lines") or ()),
    }
