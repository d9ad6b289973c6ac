"""
Module: billing_kernel.models.inventory
Responsibility: ORM persistence for the append-only stock movement log.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Append-only.  UPDATE and DELETE raise ImmutabilityViolationError (see
      db/immutability.py).  A correction is a new movement whose
      reverses_movement_id points at the movement it undoes.
    - stock_after == stock_before + signed quantity, where in-movements are
      positive, out-movements negative and adjustments carry their own sign.
    - movement_sequence orders movements of the whole system by creation.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase, UUIDString
from billing_kernel.db.types import Quantity


class MovementType:
    IN = "in"
    OUT = "out"
    ADJUSTMENT = "adjustment"

    ALL = frozenset({IN, OUT, ADJUSTMENT})


class InventoryMovement(TrackedBase):
    """One change of an item's current stock."""

    __tablename__ = "inventory_movements"

    __table_args__ = (
        Index("idx_movement_item", "item_id", "movement_sequence"),
        Index("idx_movement_reference", "reference_type", "reference_id"),
    )

    company_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("companies.id"),
        nullable=False,
    )

    item_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("items.id"),
        nullable=False,
    )

    branch_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("branches.id"),
        nullable=True,
    )

    movement_sequence: Mapped[int] = mapped_column(nullable=False)

    movement_type: Mapped[str] = mapped_column(String(20), nullable=False)

    # Positive for in/out; signed for adjustments
    quantity: Mapped[Quantity] = mapped_column(Numeric(20, 6), nullable=False)

    rate: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    value: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    stock_before: Mapped[Quantity] = mapped_column(Numeric(20, 6), nullable=False)

    stock_after: Mapped[Quantity] = mapped_column(Numeric(20, 6), nullable=False)

    reference_type: Mapped[str | None] = mapped_column(String(30), nullable=True)

    reference_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    reference_number: Mapped[str | None] = mapped_column(String(50), nullable=True)

    movement_date: Mapped[date] = mapped_column(Date, nullable=False)

    reverses_movement_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("inventory_movements.id"),
        nullable=True,
    )

    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    @property
    def signed_quantity(self) -> Decimal:
        if self.movement_type == MovementType.OUT:
            return -self.quantity
        return self.quantity
