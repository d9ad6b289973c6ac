"""
Module: billing_kernel.selectors.inventory_selector
Responsibility: Read-only queries over item stock counters and the movement
    log.
Architecture position: Kernel > Selectors.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from billing_kernel.domain.dtos import ItemInfo
from billing_kernel.exceptions import ItemNotFoundError
from billing_kernel.models.inventory import InventoryMovement
from billing_kernel.models.item import Item
from billing_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class MovementLine:
    movement_id: UUID
    movement_sequence: int
    movement_type: str
    quantity: Decimal
    stock_before: Decimal
    stock_after: Decimal
    rate: Decimal
    value: Decimal
    reference_type: str | None
    reference_id: UUID | None
    reference_number: str | None
    movement_date: date
    reverses_movement_id: UUID | None


class InventorySelector(BaseSelector[InventoryMovement]):
    """Stock positions and movement history."""

    def item(self, item_id: UUID) -> ItemInfo:
        item = self.session.get(Item, item_id)
        if item is None:
            raise ItemNotFoundError(str(item_id))
        return ItemInfo.from_model(item)

    def movements_for_item(self, item_id: UUID) -> list[MovementLine]:
        rows = self.session.execute(
            select(InventoryMovement)
            .where(InventoryMovement.item_id == item_id)
            .order_by(InventoryMovement.movement_sequence)
        ).scalars()
        return [self._to_line(row) for row in rows]

    def movements_for_reference(self, reference_type: str, reference_id: UUID) -> list[MovementLine]:
        rows = self.session.execute(
            select(InventoryMovement)
            .where(
                InventoryMovement.reference_type == reference_type,
                InventoryMovement.reference_id == reference_id,
            )
            .order_by(InventoryMovement.movement_sequence)
        ).scalars()
        return [self._to_line(row) for row in rows]

    def replay_stock(self, item_id: UUID) -> Decimal:
        """Current stock rebuilt from the movement log."""
        rows = self.session.execute(
            select(InventoryMovement).where(InventoryMovement.item_id == item_id)
        ).scalars()
        return sum((row.signed_quantity for row in rows), Decimal("0"))

    @staticmethod
    def _to_line(row: InventoryMovement) -> MovementLine:
        return MovementLine(
            movement_id=row.id,
            movement_sequence=row.movement_sequence,
            movement_type=row.movement_type,
            quantity=row.quantity,
            stock_before=row.stock_before,
            stock_after=row.stock_after,
            rate=row.rate,
            value=row.value,
            reference_type=row.reference_type,
            reference_id=row.reference_id,
            reference_number=row.reference_number,
            movement_date=row.movement_date,
            reverses_movement_id=row.reverses_movement_id,
        )
