"""
Module: erp_kernel.models.inventory
Responsibility: ORM persistence for the reference data the stock ledger keys
    on -- items, item categories and locations.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - sku / category code / location code are unique.
    - An item's tracking_mode decides what a document line must carry before
      confirmation (see erp_services.tracking).

Failure modes:
    - NotFoundError / InactiveReferenceError raised by InventoryDirectory when
      a movement references a missing or deactivated row.
"""

from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from erp_kernel.db.base import TrackedBase, UUIDString


class TrackingMode(str, Enum):
    """Per-item identification policy for document lines."""

    NONE = "none"
    BATCH = "batch"
    SERIAL = "serial"


class ItemCategory(TrackedBase):
    """
    Groups items and names the ledger accounts their stock posts to.

    Either account may be left empty; the configured default inventory /
    COGS binding is used in that case.
    """

    __tablename__ = "item_categories"

    __table_args__ = (UniqueConstraint("code", name="uq_item_category_code"),)

    code: Mapped[str] = mapped_column(String(50), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    inventory_account_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("accounts.id"),
        nullable=True,
    )

    cogs_account_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("accounts.id"),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<ItemCategory {self.code}>"


class Item(TrackedBase):
    """
    A stock-keeping unit.

    cost_price is the fallback cost basis for inbound adjustments and
    production output when a line carries no cost and the key has no
    average yet.  selling_price is the default invoice price.
    """

    __tablename__ = "items"

    __table_args__ = (UniqueConstraint("sku", name="uq_item_sku"),)

    sku: Mapped[str] = mapped_column(String(50), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    unit: Mapped[str] = mapped_column(String(20), nullable=False, default="pcs")

    tracking_mode: Mapped[TrackingMode] = mapped_column(
        String(10),
        nullable=False,
        default=TrackingMode.NONE,
    )

    cost_price: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    selling_price: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    category_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("item_categories.id"),
        nullable=True,
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    category: Mapped["ItemCategory | None"] = relationship(lazy="joined")

    def __repr__(self) -> str:
        return f"<Item {self.sku}>"

    @property
    def tracking(self) -> TrackingMode:
        return TrackingMode(self.tracking_mode)


class Location(TrackedBase):
    """A warehouse, store or bin that holds stock."""

    __tablename__ = "locations"

    __table_args__ = (UniqueConstraint("code", name="uq_location_code"),)

    code: Mapped[str] = mapped_column(String(50), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Location {self.code}>"
