"""Tests for per-type document policies and the policy table."""

from decimal import Decimal

import pytest

from billing_kernel.domain.document_policy import (
    DocumentKind,
    DocumentTypePolicy,
    InventoryEffect,
    LedgerSide,
    NumberingPolicy,
    PartyKind,
    PolicyTable,
)
from billing_kernel.exceptions import (
    InvalidStatusTransitionError,
    UnsupportedDocumentTypeError,
)


def _invoice(**overrides) -> DocumentTypePolicy:
    fields = dict(
        document_type="invoice",
        prefix="INV-",
        party_kind=PartyKind.CUSTOMER,
        inventory_effect=InventoryEffect.OUTBOUND,
        ledger_side=LedgerSide.DEBIT,
        initial_status="confirmed",
        selectable_statuses=frozenset({"draft"}),
        transitions={"draft": {"confirmed", "cancelled"}, "confirmed": {"cancelled"}},
        lock_when_paid=True,
        editable_statuses=frozenset({"draft"}),
        voiding_statuses=frozenset({"cancelled"}),
        tracks_payment=True,
    )
    fields.update(overrides)
    return DocumentTypePolicy(**fields)


class TestDocumentTypePolicy:
    def test_statuses_collected_from_transitions(self):
        policy = _invoice()

        assert policy.statuses == {"draft", "confirmed", "cancelled"}

    def test_initial_status_is_always_selectable(self):
        policy = _invoice(selectable_statuses=frozenset())

        assert policy.selectable_statuses == {"confirmed"}

    def test_transitions_are_read_only(self):
        policy = _invoice()

        with pytest.raises(TypeError):
            policy.transitions["confirmed"] = frozenset({"draft"})

    def test_allowed_transition(self):
        policy = _invoice()

        assert policy.can_transition("draft", "confirmed")
        policy.check_transition("confirmed", "cancelled")

    def test_disallowed_transition_raises(self):
        policy = _invoice()

        with pytest.raises(InvalidStatusTransitionError) as exc_info:
            policy.check_transition("cancelled", "confirmed")
        assert exc_info.value.from_status == "cancelled"
        assert exc_info.value.to_status == "confirmed"
        assert exc_info.value.code == "INVALID_STATUS_TRANSITION"

    def test_lock_reason_for_locked_status(self):
        policy = _invoice(locked_statuses=frozenset({"confirmed"}))

        assert "locked" in policy.lock_reason("confirmed", Decimal("0"))

    def test_lock_reason_when_paid(self):
        policy = _invoice()

        assert policy.lock_reason("confirmed", Decimal("0")) is None
        assert policy.lock_reason("confirmed", Decimal("10")) is not None

    def test_editable_statuses(self):
        policy = _invoice()

        assert policy.is_editable("draft")
        assert not policy.is_editable("confirmed")

    def test_unknown_status_in_locked_set_is_rejected(self):
        with pytest.raises(ValueError, match="locked_statuses"):
            _invoice(locked_statuses=frozenset({"archived"}))

    def test_payment_type_requires_target(self):
        with pytest.raises(ValueError, match="allocates_to"):
            DocumentTypePolicy(
                document_type="payment_received",
                prefix="PY-",
                party_kind=PartyKind.CUSTOMER,
                kind=DocumentKind.PAYMENT,
                initial_status="completed",
            )

    def test_note_type_requires_parent_types(self):
        with pytest.raises(ValueError, match="parent_types"):
            DocumentTypePolicy(
                document_type="credit_note",
                prefix="CN-",
                party_kind=PartyKind.CUSTOMER,
                kind=DocumentKind.NOTE,
                initial_status="pending",
            )

    def test_payment_types_carry_no_lines(self):
        payment = DocumentTypePolicy(
            document_type="payment_received",
            prefix="PY-",
            party_kind=PartyKind.CUSTOMER,
            kind=DocumentKind.PAYMENT,
            initial_status="completed",
            allocates_to="invoice",
        )

        assert not payment.has_lines
        assert _invoice().has_lines


class TestNumberingPolicy:
    def test_defaults(self):
        numbering = NumberingPolicy()

        assert numbering.padding == 4
        assert numbering.reset_policy == "yearly"
        assert numbering.fiscal_start_month == 4
        assert numbering.default_branch_prefix == "BR"

    @pytest.mark.parametrize(
        "overrides",
        [{"padding": 0}, {"reset_policy": "monthly"}, {"fiscal_start_month": 13}],
    )
    def test_invalid_settings(self, overrides):
        with pytest.raises(ValueError):
            NumberingPolicy(**overrides)


class TestPolicyTable:
    def test_lookup(self):
        table = PolicyTable([_invoice()])

        assert table.get("invoice").prefix == "INV-"
        assert "invoice" in table
        assert table.document_types == ("invoice",)
        assert len(table) == 1

    def test_unknown_type_raises_typed_error(self):
        table = PolicyTable([_invoice()])

        with pytest.raises(UnsupportedDocumentTypeError) as exc_info:
            table.get("proforma")
        assert exc_info.value.document_type == "proforma"

    def test_duplicate_type_rejected(self):
        with pytest.raises(ValueError, match="Duplicate"):
            PolicyTable([_invoice(), _invoice()])

    def test_unknown_parent_type_rejected(self):
        with pytest.raises(ValueError, match="unknown parent"):
            PolicyTable([_invoice(parent_types=frozenset({"sales_order"}))])

    def test_unknown_allocation_target_rejected(self):
        payment = DocumentTypePolicy(
            document_type="payment_received",
            prefix="PY-",
            party_kind=PartyKind.CUSTOMER,
            kind=DocumentKind.PAYMENT,
            initial_status="completed",
            allocates_to="invoice",
        )

        with pytest.raises(ValueError, match="allocation target"):
            PolicyTable([payment])

    def test_defaults_when_numbering_omitted(self):
        table = PolicyTable([_invoice()])

        assert table.numbering == NumberingPolicy()
        assert table.money_places == 2
