"""
InventoryDirectory -- items, item categories and locations.

Responsibility:
    Creates and looks up the reference rows the stock ledger keys on, and
    turns "missing" and "inactive" into typed errors so the engines can
    reject a movement before writing anything.

Architecture position:
    Kernel > Services.  Flushes only; the caller owns the transaction.

Failure modes:
    - NotFoundError for unknown ids.
    - InactiveReferenceError for deactivated items or locations.
    - DuplicateCodeError for a reused sku / code.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from erp_kernel.db.types import to_decimal
from erp_kernel.exceptions import (
    DuplicateCodeError,
    InactiveReferenceError,
    NotFoundError,
    ValidationError,
)
from erp_kernel.logging_config import get_logger
from erp_kernel.models.inventory import Item, ItemCategory, Location, TrackingMode
from erp_kernel.services.base import BaseService

logger = get_logger("services.inventory_directory")


class InventoryDirectory(BaseService[Item]):
    """Write and lookup access to items, categories and locations."""

    # -- categories ---------------------------------------------------------

    def create_category(
        self,
        code: str,
        name: str,
        inventory_account_id: UUID | None = None,
        cogs_account_id: UUID | None = None,
    ) -> ItemCategory:
        if self._exists(ItemCategory, ItemCategory.code, code):
            raise DuplicateCodeError("ItemCategory", code)
        category = ItemCategory(
            code=code,
            name=name,
            inventory_account_id=inventory_account_id,
            cogs_account_id=cogs_account_id,
        )
        self.session.add(category)
        self.session.flush()
        logger.info("item_category_created", extra={"category_code": code})
        return category

    def require_category(self, category_id: UUID) -> ItemCategory:
        category = self.session.get(ItemCategory, category_id)
        if category is None:
            raise NotFoundError("ItemCategory", str(category_id))
        return category

    # -- items --------------------------------------------------------------

    def create_item(
        self,
        sku: str,
        name: str,
        tracking_mode: TrackingMode | str = TrackingMode.NONE,
        cost_price: Decimal | str | int = Decimal("0"),
        selling_price: Decimal | str | int = Decimal("0"),
        category_id: UUID | None = None,
        unit: str = "pcs",
    ) -> Item:
        if self._exists(Item, Item.sku, sku):
            raise DuplicateCodeError("Item", sku)
        try:
            mode = TrackingMode(tracking_mode)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown tracking mode {tracking_mode!r}",
                field="tracking_mode",
                value=tracking_mode,
            ) from exc
        cost = to_decimal(cost_price, "cost_price")
        price = to_decimal(selling_price, "selling_price")
        if cost < 0 or price < 0:
            raise ValidationError("Item prices cannot be negative", field="cost_price")
        if category_id is not None:
            self.require_category(category_id)

        item = Item(
            sku=sku,
            name=name,
            unit=unit,
            tracking_mode=mode,
            cost_price=cost,
            selling_price=price,
            category_id=category_id,
            is_active=True,
        )
        self.session.add(item)
        self.session.flush()
        logger.info(
            "item_created",
            extra={"sku": sku, "tracking_mode": mode.value},
        )
        return item

    def require_item(self, item_id: UUID, active: bool = True) -> Item:
        item = self.session.get(Item, item_id)
        if item is None:
            raise NotFoundError("Item", str(item_id))
        if active and not item.is_active:
            raise InactiveReferenceError("Item", str(item_id))
        return item

    def set_item_active(self, item_id: UUID, is_active: bool) -> Item:
        item = self.require_item(item_id, active=False)
        item.is_active = is_active
        self.session.flush()
        return item

    # -- locations ----------------------------------------------------------

    def create_location(self, code: str, name: str) -> Location:
        if self._exists(Location, Location.code, code):
            raise DuplicateCodeError("Location", code)
        location = Location(code=code, name=name, is_active=True)
        self.session.add(location)
        self.session.flush()
        logger.info("location_created", extra={"location_code": code})
        return location

    def require_location(self, location_id: UUID, active: bool = True) -> Location:
        location = self.session.get(Location, location_id)
        if location is None:
            raise NotFoundError("Location", str(location_id))
        if active and not location.is_active:
            raise InactiveReferenceError("Location", str(location_id))
        return location

    def set_location_active(self, location_id: UUID, is_active: bool) -> Location:
        location = self.require_location(location_id, active=False)
        location.is_active = is_active
        self.session.flush()
        return location

    def _exists(self, model, column, value: str) -> bool:
        return self.session.execute(
            select(model.id).where(column == value)
        ).first() is not None
