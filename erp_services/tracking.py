"""
TrackingValidator -- serial and batch requirements of document lines.

Responsibility:
    Checks every line of a document against its item's tracking mode
    before confirmation and reports all problems at once:

        SERIAL  quantity is a whole number, one distinct serial per unit,
                and for outbound lines every serial is in stock at the
                line's location.
        BATCH   a non-empty batch number.
        NONE    nothing.

Architecture position:
    Services.  Read-only; used by DocumentService.confirm() before and
    again inside the write transaction.

Failure modes:
    - TrackingValidationError carrying one TrackingIssue per problem.
    - NotFoundError when a line references an unknown item.
"""

from collections import Counter
from uuid import UUID

from sqlalchemy.orm import Session

from erp_kernel.domain.dtos import TrackingIssue
from erp_kernel.exceptions import NotFoundError, TrackingValidationError
from erp_kernel.logging_config import get_logger
from erp_kernel.models.document import Document, DocumentLine, LineDirection
from erp_kernel.models.inventory import Item, TrackingMode
from erp_kernel.selectors.stock_selector import StockSelector
from erp_services.posting_orchestrator import line_direction, line_location

logger = get_logger("services.tracking")


def clean_serials(serials) -> list[str]:
    """Strip whitespace and drop blank entries, keeping order."""
    return [s.strip() for s in (serials or ()) if s and s.strip()]


class TrackingValidator:
    def __init__(self, session: Session):
        self.session = session
        self._stock = StockSelector(session)

    def validate(self, document: Document) -> None:
        issues = self.issues_for(document)
        if issues:
            logger.warning(
                "tracking_validation_failed",
                extra={
                    "document_no": document.document_no,
                    "issues": [issue.to_dict() for issue in issues],
                },
            )
            raise TrackingValidationError(str(document.id), issues)

    def issues_for(self, document: Document) -> list[TrackingIssue]:
        issues: list[TrackingIssue] = []
        # Serial -> line numbers, per item, across the whole document
        seen: dict[UUID, dict[str, list[int]]] = {}

        for line in document.lines:
            item = self.session.get(Item, line.item_id)
            if item is None:
                raise NotFoundError("Item", str(line.item_id))
            mode = TrackingMode(item.tracking_mode)
            if mode == TrackingMode.BATCH:
                if not (line.batch_no or "").strip():
                    issues.append(
                        TrackingIssue(
                            line_no=line.line_no,
                            item_id=item.id,
                            item_sku=item.sku,
                            reason="missing_batch",
                            message=f"line {line.line_no} ({item.sku}): batch number is required",
                        )
                    )
            elif mode == TrackingMode.SERIAL:
                issues.extend(self._serial_issues(document, line, item, seen))

        for item_id, serial_lines in seen.items():
            across = sorted(s for s, lines in serial_lines.items() if len(set(lines)) > 1)
            if across:
                item = self.session.get(Item, item_id)
                issues.append(
                    TrackingIssue(
                        line_no=min(min(serial_lines[s]) for s in across),
                        item_id=item_id,
                        item_sku=item.sku,
                        reason="duplicate_serials",
                        message=(
                            f"{item.sku}: serial(s) {', '.join(across)} appear on more "
                            "than one line"
                        ),
                        serials=tuple(across),
                    )
                )
        return issues

    def _serial_issues(
        self,
        document: Document,
        line: DocumentLine,
        item: Item,
        seen: dict[UUID, dict[str, list[int]]],
    ) -> list[TrackingIssue]:
        issues = []
        serials = clean_serials(line.serial_numbers)
        for serial in serials:
            seen.setdefault(item.id, {}).setdefault(serial, []).append(line.line_no)

        def issue(reason: str, message: str, **extra) -> TrackingIssue:
            return TrackingIssue(
                line_no=line.line_no,
                item_id=item.id,
                item_sku=item.sku,
                reason=reason,
                message=f"line {line.line_no} ({item.sku}): {message}",
                **extra,
            )

        if line.quantity != line.quantity.to_integral_value():
            issues.append(
                issue(
                    "fractional_serial_quantity",
                    f"serialized quantity must be a whole number, got {line.quantity}",
                )
            )
        elif len(serials) != int(line.quantity):
            issues.append(
                issue(
                    "serial_count_mismatch",
                    f"expected {int(line.quantity)} serial number(s), got {len(serials)}",
                    expected_count=int(line.quantity),
                    actual_count=len(serials),
                )
            )

        duplicated = sorted(s for s, n in Counter(serials).items() if n > 1)
        if duplicated:
            issues.append(
                issue(
                    "duplicate_serials",
                    f"duplicated serial number(s) {', '.join(duplicated)}",
                    serials=tuple(duplicated),
                )
            )

        if serials and line_direction(document.document_type, line) == LineDirection.OUT:
            available = set(
                self._stock.get_available_serials(item.id, line_location(line, document))
            )
            missing = sorted(set(serials) - available)
            if missing:
                issues.append(
                    issue(
                        "serials_not_in_stock",
                        f"serial number(s) {', '.join(missing)} are not in stock",
                        serials=tuple(missing),
                    )
                )
        return issues
