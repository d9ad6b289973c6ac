"""
Module: billing_kernel.models.item
Responsibility: ORM persistence for catalogue items and their stock counters.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - available_stock == max(0, current_stock - reserved_stock) after every
      write.  The counters are mutated exclusively by InventoryLedger, which
      locks the row first.
    - current_stock and reserved_stock are never negative.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase, UUIDString
from billing_kernel.db.types import Quantity, Rate


class Item(TrackedBase):
    """
    A product or service that appears on document lines.

    Contract:
        tax_rate is the combined GST percentage (e.g. 18).  Services and
        other non-stocked items have tracks_inventory=False and are ignored
        by the inventory ledger.
    """

    __tablename__ = "items"

    __table_args__ = (
        UniqueConstraint("company_id", "item_code", name="uq_item_code"),
        Index("idx_item_company", "company_id"),
        CheckConstraint("current_stock >= 0", name="ck_item_current_stock"),
        CheckConstraint("reserved_stock >= 0", name="ck_item_reserved_stock"),
    )

    company_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("companies.id"),
        nullable=False,
    )

    item_code: Mapped[str] = mapped_column(String(50), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # HSN (goods) or SAC (services) code
    tax_code: Mapped[str | None] = mapped_column(String(20), nullable=True)

    tax_rate: Mapped[Rate] = mapped_column(
        Numeric(9, 4),
        nullable=False,
        default=Decimal("0"),
    )

    unit: Mapped[str | None] = mapped_column(String(20), nullable=True)

    selling_price: Mapped[Decimal | None] = mapped_column(nullable=True)

    purchase_price: Mapped[Decimal | None] = mapped_column(nullable=True)

    current_stock: Mapped[Quantity] = mapped_column(
        Numeric(20, 6),
        nullable=False,
        default=Decimal("0"),
    )

    reserved_stock: Mapped[Quantity] = mapped_column(
        Numeric(20, 6),
        nullable=False,
        default=Decimal("0"),
    )

    available_stock: Mapped[Quantity] = mapped_column(
        Numeric(20, 6),
        nullable=False,
        default=Decimal("0"),
    )

    tracks_inventory: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
    )

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Item {self.item_code}: {self.name}>"
