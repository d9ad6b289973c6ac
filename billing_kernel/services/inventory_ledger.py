"""
InventoryLedger -- stock counters and the append-only movement log.

Responsibility:
    The only writer of Item.current_stock, reserved_stock and
    available_stock.  Every change of current_stock is backed by an
    InventoryMovement row; reservations change counters only.

Architecture position:
    Kernel > Services -- imperative shell.  Called by DocumentComposer for
    document effects and by the engine facade for manual movements and
    adjustments.

Invariants enforced:
    - The item row is locked (SELECT ... FOR UPDATE) before every
      read-modify-write, so concurrent documents cannot both spend the same
      stock.
    - Outbound movements require available_stock >= quantity.  Fulfilment of
      a sales-order reservation may additionally use the reserved quantity.
    - Adjustments bypass the availability check but never drive
      current_stock below zero.
    - available_stock == max(0, current_stock - reserved_stock) after every
      mutation.
    - stock_after == stock_before + signed quantity on every movement.
    - Movements are never edited; reversal writes an opposite movement
      pointing at the original via reverses_movement_id.

Failure modes:
    - InsufficientStockError(item_id, available, requested).
    - InvalidStockAdjustmentError when an adjustment would go negative.
    - ItemNotFoundError for unknown items; ValidationError for untracked
      items or non-positive quantities.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.dtos import StockChange
from billing_kernel.exceptions import (
    InsufficientStockError,
    InvalidStockAdjustmentError,
    ItemNotFoundError,
    ValidationError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.inventory import InventoryMovement, MovementType
from billing_kernel.models.item import Item
from billing_kernel.services.base import BaseService
from billing_kernel.services.sequence_service import SequenceService

logger = get_logger("services.inventory")

ZERO = Decimal("0")


class AdjustmentMode:
    SET = "set"
    INCREASE = "increase"
    DECREASE = "decrease"

    ALL = frozenset({SET, INCREASE, DECREASE})


class InventoryLedger(BaseService[Item]):
    """
    Stock bookkeeping for tracked items.

    Contract:
        Every public method locks the item, validates, mutates counters,
        appends a movement where current_stock changes, flushes and returns
        a StockChange DTO.

    Non-goals:
        - Does not decide which documents move stock; the policy table and
          the composer do.
    """

    def __init__(self, session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._sequences = SequenceService(session)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_item(self, item_id: UUID, company_id: UUID | None = None) -> Item:
        item = self.session.execute(
            select(Item)
            .where(Item.id == item_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if item is None or (company_id is not None and item.company_id != company_id):
            raise ItemNotFoundError(str(item_id))
        if not item.tracks_inventory:
            raise ValidationError("item_id", f"item {item.item_code} does not track inventory")
        return item

    @staticmethod
    def _refresh_available(item: Item) -> None:
        item.available_stock = max(ZERO, item.current_stock - item.reserved_stock)

    @staticmethod
    def _positive(quantity: Decimal, field: str = "quantity") -> Decimal:
        if quantity <= ZERO:
            raise ValidationError(field, f"must be positive, got {quantity}")
        return quantity

    def _append(
        self,
        item: Item,
        movement_type: str,
        quantity: Decimal,
        stock_before: Decimal,
        *,
        branch_id: UUID | None,
        rate: Decimal,
        reference_type: str | None,
        reference_id: UUID | None,
        reference_number: str | None,
        movement_date: date | None,
        reverses_movement_id: UUID | None = None,
        notes: str | None = None,
    ) -> InventoryMovement:
        movement = InventoryMovement(
            company_id=item.company_id,
            item_id=item.id,
            branch_id=branch_id,
            movement_sequence=self._sequences.next_value(SequenceService.INVENTORY_MOVEMENT),
            movement_type=movement_type,
            quantity=quantity,
            rate=rate,
            value=abs(quantity) * rate,
            stock_before=stock_before,
            stock_after=item.current_stock,
            reference_type=reference_type,
            reference_id=reference_id,
            reference_number=reference_number,
            movement_date=movement_date or self._clock.today(),
            reverses_movement_id=reverses_movement_id,
            notes=notes,
        )
        self.session.add(movement)
        return movement

    def _change(
        self,
        item: Item,
        movement: InventoryMovement | None,
        movement_type: str,
        quantity: Decimal,
        stock_before: Decimal,
    ) -> StockChange:
        return StockChange(
            item_id=item.id,
            movement_id=movement.id if movement is not None else None,
            movement_type=movement_type,
            quantity=quantity,
            stock_before=stock_before,
            stock_after=item.current_stock,
            reserved_stock=item.reserved_stock,
            available_stock=item.available_stock,
        )

    def _log(self, event: str, change: StockChange, **extra) -> None:
        logger.info(
            event,
            extra={
                "item_id": str(change.item_id),
                "movement_type": change.movement_type,
                "quantity": change.quantity,
                "stock_before": change.stock_before,
                "stock_after": change.stock_after,
                "reserved_stock": change.reserved_stock,
                **extra,
            },
        )

    # ------------------------------------------------------------------
    # Movements
    # ------------------------------------------------------------------

    def record_movement(
        self,
        item_id: UUID,
        movement_type: str,
        quantity: Decimal,
        *,
        company_id: UUID | None = None,
        branch_id: UUID | None = None,
        rate: Decimal = ZERO,
        reference_type: str | None = None,
        reference_id: UUID | None = None,
        reference_number: str | None = None,
        movement_date: date | None = None,
        notes: str | None = None,
    ) -> StockChange:
        """
        Receive (``in``) or issue (``out``) stock.

        Raises:
            InsufficientStockError: ``out`` quantity exceeds available stock.
        """
        if movement_type not in (MovementType.IN, MovementType.OUT):
            raise ValidationError(
                "movement_type",
                f"must be 'in' or 'out', got {movement_type!r} (use adjust_stock for adjustments)",
            )
        self._positive(quantity)
        item = self._lock_item(item_id, company_id)
        stock_before = item.current_stock

        if movement_type == MovementType.OUT:
            if quantity > item.available_stock:
                raise InsufficientStockError(str(item.id), item.available_stock, quantity)
            item.current_stock = stock_before - quantity
        else:
            item.current_stock = stock_before + quantity
        self._refresh_available(item)

        movement = self._append(
            item,
            movement_type,
            quantity,
            stock_before,
            branch_id=branch_id,
            rate=rate,
            reference_type=reference_type,
            reference_id=reference_id,
            reference_number=reference_number,
            movement_date=movement_date,
            notes=notes,
        )
        self.session.flush()
        change = self._change(item, movement, movement_type, quantity, stock_before)
        self._log("stock_movement_recorded", change, reference_number=reference_number)
        return change

    def fulfil(
        self,
        item_id: UUID,
        quantity: Decimal,
        reserved_quantity: Decimal,
        *,
        company_id: UUID | None = None,
        branch_id: UUID | None = None,
        rate: Decimal = ZERO,
        reference_type: str | None = None,
        reference_id: UUID | None = None,
        reference_number: str | None = None,
        movement_date: date | None = None,
    ) -> StockChange:
        """
        Issue stock against an existing reservation.

        ``reserved_quantity`` (<= quantity) is taken out of reserved_stock
        and may be spent in addition to the available stock.
        """
        self._positive(quantity)
        if reserved_quantity < ZERO or reserved_quantity > quantity:
            raise ValidationError(
                "reserved_quantity", f"must be within 0..{quantity}, got {reserved_quantity}"
            )
        item = self._lock_item(item_id, company_id)
        consumed = min(reserved_quantity, item.reserved_stock)
        spendable = item.available_stock + consumed
        if quantity > spendable:
            raise InsufficientStockError(str(item.id), spendable, quantity)

        stock_before = item.current_stock
        item.reserved_stock = item.reserved_stock - consumed
        item.current_stock = stock_before - quantity
        self._refresh_available(item)

        movement = self._append(
            item,
            MovementType.OUT,
            quantity,
            stock_before,
            branch_id=branch_id,
            rate=rate,
            reference_type=reference_type,
            reference_id=reference_id,
            reference_number=reference_number,
            movement_date=movement_date,
            notes="fulfilled from reservation" if consumed else None,
        )
        self.session.flush()
        change = self._change(item, movement, MovementType.OUT, quantity, stock_before)
        self._log(
            "stock_reservation_fulfilled",
            change,
            reserved_consumed=consumed,
            reference_number=reference_number,
        )
        return change

    def adjust_stock(
        self,
        item_id: UUID,
        value: Decimal,
        mode: str = AdjustmentMode.SET,
        *,
        company_id: UUID | None = None,
        branch_id: UUID | None = None,
        rate: Decimal = ZERO,
        adjustment_date: date | None = None,
        notes: str | None = None,
        reference_type: str | None = "adjustment",
        reference_id: UUID | None = None,
        reference_number: str | None = None,
    ) -> StockChange:
        """
        Correct current stock (stock take, damage, opening balance).

        ``set`` replaces the stock, ``increase``/``decrease`` move it by
        ``value``.  The movement quantity is the signed difference.

        Raises:
            InvalidStockAdjustmentError: The result would be negative.
        """
        if mode not in AdjustmentMode.ALL:
            raise ValidationError("mode", f"must be one of {sorted(AdjustmentMode.ALL)}, got {mode!r}")
        if value < ZERO:
            raise ValidationError("value", f"must not be negative, got {value}")
        item = self._lock_item(item_id, company_id)
        stock_before = item.current_stock

        if mode == AdjustmentMode.SET:
            target = value
        elif mode == AdjustmentMode.INCREASE:
            target = stock_before + value
        else:
            target = stock_before - value
        if target < ZERO:
            raise InvalidStockAdjustmentError(
                str(item.id),
                stock_before,
                f"{mode} by {value} would leave {target}",
            )

        delta = target - stock_before
        item.current_stock = target
        self._refresh_available(item)
        movement = None
        if delta != ZERO:
            movement = self._append(
                item,
                MovementType.ADJUSTMENT,
                delta,
                stock_before,
                branch_id=branch_id,
                rate=rate,
                reference_type=reference_type,
                reference_id=reference_id,
                reference_number=reference_number,
                movement_date=adjustment_date,
                notes=notes,
            )
        self.session.flush()
        change = self._change(item, movement, MovementType.ADJUSTMENT, delta, stock_before)
        self._log("stock_adjusted", change, mode=mode)
        return change

    # ------------------------------------------------------------------
    # Reservations
    # ------------------------------------------------------------------

    def reserve(
        self,
        item_id: UUID,
        quantity: Decimal,
        *,
        company_id: UUID | None = None,
        reference_number: str | None = None,
    ) -> StockChange:
        """
        Earmark stock for a sales order without touching current_stock.

        Raises:
            InsufficientStockError: quantity exceeds available stock.
        """
        self._positive(quantity)
        item = self._lock_item(item_id, company_id)
        if quantity > item.available_stock:
            raise InsufficientStockError(str(item.id), item.available_stock, quantity)
        item.reserved_stock = item.reserved_stock + quantity
        self._refresh_available(item)
        self.session.flush()
        change = self._change(item, None, "reserve", quantity, item.current_stock)
        self._log("stock_reserved", change, reference_number=reference_number)
        return change

    def release(
        self,
        item_id: UUID,
        quantity: Decimal,
        *,
        company_id: UUID | None = None,
        reference_number: str | None = None,
    ) -> StockChange:
        """Give back reserved stock.  Never drives reserved_stock below zero."""
        self._positive(quantity)
        item = self._lock_item(item_id, company_id)
        released = min(quantity, item.reserved_stock)
        if released < quantity:
            logger.warning(
                "stock_release_exceeds_reservation",
                extra={
                    "item_id": str(item.id),
                    "requested": quantity,
                    "reserved_stock": item.reserved_stock,
                },
            )
        item.reserved_stock = item.reserved_stock - released
        self._refresh_available(item)
        self.session.flush()
        change = self._change(item, None, "release", released, item.current_stock)
        self._log("stock_released", change, reference_number=reference_number)
        return change

    # ------------------------------------------------------------------
    # Reversal
    # ------------------------------------------------------------------

    def reverse_movements_for_reference(
        self,
        reference_type: str,
        reference_id: UUID,
        movement_date: date | None = None,
        reason: str | None = None,
    ) -> list[StockChange]:
        """
        Post one opposite movement for every not-yet-reversed movement of a
        reference.  Idempotent: a second call finds nothing left to reverse.

        Reversing an inbound movement issues stock and therefore needs
        available stock like any outbound movement.
        """
        movements = self.session.execute(
            select(InventoryMovement)
            .where(
                InventoryMovement.reference_type == reference_type,
                InventoryMovement.reference_id == reference_id,
                InventoryMovement.reverses_movement_id.is_(None),
            )
            .order_by(InventoryMovement.movement_sequence)
        ).scalars().all()
        if not movements:
            return []

        already = set(
            self.session.execute(
                select(InventoryMovement.reverses_movement_id).where(
                    InventoryMovement.reverses_movement_id.in_([m.id for m in movements])
                )
            ).scalars()
        )

        # Lock items in a stable order.
        pending = sorted(
            (m for m in movements if m.id not in already),
            key=lambda m: (str(m.item_id), m.movement_sequence),
        )
        changes: list[StockChange] = []
        for original in pending:
            item = self._lock_item(original.item_id)
            stock_before = item.current_stock
            if original.movement_type == MovementType.ADJUSTMENT:
                movement_type = MovementType.ADJUSTMENT
                quantity = -original.quantity
                if stock_before + quantity < ZERO:
                    raise InvalidStockAdjustmentError(
                        str(item.id), stock_before, "reversal would leave negative stock"
                    )
                item.current_stock = stock_before + quantity
            elif original.movement_type == MovementType.IN:
                movement_type = MovementType.OUT
                quantity = original.quantity
                if quantity > item.available_stock:
                    raise InsufficientStockError(str(item.id), item.available_stock, quantity)
                item.current_stock = stock_before - quantity
            else:
                movement_type = MovementType.IN
                quantity = original.quantity
                item.current_stock = stock_before + quantity
            self._refresh_available(item)

            movement = self._append(
                item,
                movement_type,
                quantity,
                stock_before,
                branch_id=original.branch_id,
                rate=original.rate,
                reference_type=reference_type,
                reference_id=reference_id,
                reference_number=original.reference_number,
                movement_date=movement_date,
                reverses_movement_id=original.id,
                notes=reason or "reversal",
            )
            self.session.flush()
            change = self._change(item, movement, movement_type, quantity, stock_before)
            self._log(
                "stock_movement_reversed",
                change,
                reverses_movement_id=str(original.id),
                reference_number=original.reference_number,
            )
            changes.append(change)
        return changes
