"""
Stock bookkeeping: movements, reservations, adjustments and reversals.

Invariants checked throughout:
    available_stock = max(0, current_stock - reserved_stock)
    current_stock   = sum of signed movement quantities
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from billing_kernel.exceptions import (
    InsufficientStockError,
    InvalidStockAdjustmentError,
    ItemNotFoundError,
    ValidationError,
)
from billing_kernel.models.inventory import MovementType
from billing_kernel.selectors.inventory_selector import InventorySelector
from billing_kernel.services.inventory_ledger import AdjustmentMode, InventoryLedger


@pytest.fixture
def inventory(session, deterministic_clock):
    return InventoryLedger(session, deterministic_clock)


@pytest.fixture
def selector(session):
    return InventorySelector(session)


def _assert_consistent(selector, item_id):
    info = selector.item(item_id)
    assert info.available_stock == max(Decimal("0"), info.current_stock - info.reserved_stock)
    assert selector.replay_stock(item_id) == info.current_stock


class TestMovements:
    def test_inbound_movement(self, inventory, selector, widget, company):
        change = inventory.record_movement(
            widget.id, MovementType.IN, Decimal("10"), company_id=company.id, rate=Decimal("300")
        )

        assert change.stock_before == Decimal("100")
        assert change.stock_after == Decimal("110")
        assert change.available_stock == Decimal("110")
        movement = selector.movements_for_item(widget.id)[-1]
        assert movement.quantity == Decimal("10")
        assert movement.value == Decimal("3000")
        assert movement.movement_date == date(2024, 6, 1)
        _assert_consistent(selector, widget.id)

    def test_outbound_movement(self, inventory, selector, widget):
        change = inventory.record_movement(widget.id, MovementType.OUT, Decimal("30"))

        assert change.stock_after == Decimal("70")
        _assert_consistent(selector, widget.id)

    def test_outbound_beyond_available_is_rejected(self, inventory, widget):
        inventory.adjust_stock(widget.id, Decimal("50"))
        inventory.reserve(widget.id, Decimal("10"))

        with pytest.raises(InsufficientStockError) as exc_info:
            inventory.record_movement(widget.id, MovementType.OUT, Decimal("45"))
        assert exc_info.value.available == Decimal("40")
        assert exc_info.value.requested == Decimal("45")
        assert exc_info.value.code == "INSUFFICIENT_STOCK"

    def test_rejected_movement_changes_nothing(self, inventory, selector, widget):
        count = len(selector.movements_for_item(widget.id))

        with pytest.raises(InsufficientStockError):
            inventory.record_movement(widget.id, MovementType.OUT, Decimal("101"))

        assert selector.item(widget.id).current_stock == Decimal("100")
        assert len(selector.movements_for_item(widget.id)) == count

    @pytest.mark.parametrize("quantity", [Decimal("0"), Decimal("-5")])
    def test_quantity_must_be_positive(self, inventory, widget, quantity):
        with pytest.raises(ValidationError) as exc_info:
            inventory.record_movement(widget.id, MovementType.IN, quantity)
        assert exc_info.value.field == "quantity"

    def test_adjustment_type_is_not_a_movement(self, inventory, widget):
        with pytest.raises(ValidationError) as exc_info:
            inventory.record_movement(widget.id, MovementType.ADJUSTMENT, Decimal("1"))
        assert exc_info.value.field == "movement_type"

    def test_untracked_item_rejected(self, inventory, service_item):
        with pytest.raises(ValidationError) as exc_info:
            inventory.record_movement(service_item.id, MovementType.IN, Decimal("1"))
        assert exc_info.value.field == "item_id"

    def test_item_of_other_company_not_found(self, inventory, widget):
        with pytest.raises(ItemNotFoundError):
            inventory.record_movement(
                widget.id, MovementType.IN, Decimal("1"), company_id=uuid4()
            )

    def test_movement_is_logged(self, inventory, widget, captured_logs):
        inventory.record_movement(
            widget.id, MovementType.IN, Decimal("5"), reference_number="GRN-1"
        )

        records = [r for r in captured_logs() if r["message"] == "stock_movement_recorded"]
        assert records
        assert records[-1]["reference_number"] == "GRN-1"


class TestReservations:
    def test_reserve_reduces_available_only(self, inventory, selector, widget):
        change = inventory.reserve(widget.id, Decimal("30"))

        assert change.stock_after == Decimal("100")
        assert change.reserved_stock == Decimal("30")
        assert change.available_stock == Decimal("70")
        _assert_consistent(selector, widget.id)

    def test_reserve_beyond_available(self, inventory, widget):
        inventory.reserve(widget.id, Decimal("90"))

        with pytest.raises(InsufficientStockError) as exc_info:
            inventory.reserve(widget.id, Decimal("20"))
        assert exc_info.value.available == Decimal("10")

    def test_release(self, inventory, selector, widget):
        inventory.reserve(widget.id, Decimal("30"))

        change = inventory.release(widget.id, Decimal("10"))

        assert change.reserved_stock == Decimal("20")
        assert change.available_stock == Decimal("80")
        _assert_consistent(selector, widget.id)

    def test_release_never_goes_below_zero(self, inventory, widget, captured_logs):
        inventory.reserve(widget.id, Decimal("5"))

        change = inventory.release(widget.id, Decimal("8"))

        assert change.quantity == Decimal("5")
        assert change.reserved_stock == Decimal("0")
        assert any(
            r["message"] == "stock_release_exceeds_reservation" for r in captured_logs()
        )

    def test_fulfil_consumes_reservation(self, inventory, selector, widget):
        inventory.reserve(widget.id, Decimal("10"))

        change = inventory.fulfil(widget.id, Decimal("10"), Decimal("10"))

        assert change.stock_after == Decimal("90")
        assert change.reserved_stock == Decimal("0")
        assert change.available_stock == Decimal("90")
        _assert_consistent(selector, widget.id)

    def test_fulfil_may_spend_its_own_reservation(self, inventory, widget):
        inventory.adjust_stock(widget.id, Decimal("10"))
        inventory.reserve(widget.id, Decimal("10"))

        change = inventory.fulfil(widget.id, Decimal("10"), Decimal("10"))

        assert change.stock_after == Decimal("0")

    def test_fulfil_beyond_reservation_and_available(self, inventory, widget):
        inventory.adjust_stock(widget.id, Decimal("10"))
        inventory.reserve(widget.id, Decimal("6"))

        with pytest.raises(InsufficientStockError) as exc_info:
            inventory.fulfil(widget.id, Decimal("12"), Decimal("6"))
        assert exc_info.value.available == Decimal("10")

    def test_fulfil_reserved_quantity_bounds(self, inventory, widget):
        with pytest.raises(ValidationError) as exc_info:
            inventory.fulfil(widget.id, Decimal("5"), Decimal("6"))
        assert exc_info.value.field == "reserved_quantity"

    def test_available_never_negative_when_stock_drops_below_reservation(
        self, inventory, selector, widget
    ):
        inventory.reserve(widget.id, Decimal("60"))
        inventory.adjust_stock(widget.id, Decimal("40"))

        info = selector.item(widget.id)
        assert info.current_stock == Decimal("40")
        assert info.reserved_stock == Decimal("60")
        assert info.available_stock == Decimal("0")


class TestAdjustments:
    def test_set(self, inventory, selector, widget):
        change = inventory.adjust_stock(widget.id, Decimal("75"), AdjustmentMode.SET)

        assert change.quantity == Decimal("-25")
        assert change.stock_after == Decimal("75")
        assert selector.movements_for_item(widget.id)[-1].movement_type == MovementType.ADJUSTMENT
        _assert_consistent(selector, widget.id)

    def test_increase_and_decrease(self, inventory, selector, widget):
        inventory.adjust_stock(widget.id, Decimal("5"), AdjustmentMode.INCREASE)
        change = inventory.adjust_stock(widget.id, Decimal("15"), AdjustmentMode.DECREASE)

        assert change.stock_after == Decimal("90")
        _assert_consistent(selector, widget.id)

    def test_setting_same_value_writes_no_movement(self, inventory, selector, widget):
        count = len(selector.movements_for_item(widget.id))

        change = inventory.adjust_stock(widget.id, Decimal("100"))

        assert change.movement_id is None
        assert len(selector.movements_for_item(widget.id)) == count

    def test_decrease_below_zero_is_rejected(self, inventory, widget):
        with pytest.raises(InvalidStockAdjustmentError) as exc_info:
            inventory.adjust_stock(widget.id, Decimal("101"), AdjustmentMode.DECREASE)
        assert exc_info.value.current_stock == Decimal("100")

    def test_unknown_mode(self, inventory, widget):
        with pytest.raises(ValidationError) as exc_info:
            inventory.adjust_stock(widget.id, Decimal("1"), "double")
        assert exc_info.value.field == "mode"

    def test_negative_value(self, inventory, widget):
        with pytest.raises(ValidationError) as exc_info:
            inventory.adjust_stock(widget.id, Decimal("-1"))
        assert exc_info.value.field == "value"


class TestReversal:
    def test_reverses_every_movement_of_a_reference(self, inventory, selector, widget, gadget):
        reference = uuid4()
        for item, quantity in ((widget, "10"), (gadget, "4")):
            inventory.record_movement(
                item.id,
                MovementType.OUT,
                Decimal(quantity),
                reference_type="invoice",
                reference_id=reference,
            )

        changes = inventory.reverse_movements_for_reference("invoice", reference)

        assert len(changes) == 2
        assert selector.item(widget.id).current_stock == Decimal("100")
        assert selector.item(gadget.id).current_stock == Decimal("20")
        reversals = [
            m for m in selector.movements_for_reference("invoice", reference)
            if m.reverses_movement_id is not None
        ]
        assert {m.movement_type for m in reversals} == {MovementType.IN}
        _assert_consistent(selector, widget.id)

    def test_reversal_is_idempotent(self, inventory, selector, widget):
        reference = uuid4()
        inventory.record_movement(
            widget.id, MovementType.IN, Decimal("10"), reference_type="bill", reference_id=reference
        )
        inventory.reverse_movements_for_reference("bill", reference)

        assert inventory.reverse_movements_for_reference("bill", reference) == []
        assert selector.item(widget.id).current_stock == Decimal("100")

    def test_reversing_inbound_needs_available_stock(self, inventory, widget):
        reference = uuid4()
        inventory.record_movement(
            widget.id, MovementType.IN, Decimal("10"), reference_type="bill", reference_id=reference
        )
        inventory.record_movement(widget.id, MovementType.OUT, Decimal("105"))

        with pytest.raises(InsufficientStockError):
            inventory.reverse_movements_for_reference("bill", reference)

    def test_unknown_reference_reverses_nothing(self, inventory):
        assert inventory.reverse_movements_for_reference("invoice", uuid4()) == []
