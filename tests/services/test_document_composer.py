"""
Document lifecycle through the engine: create, update, delete, list.

All amounts below follow from the seeded catalog:
    widget  450 selling / 300 purchase, 18% GST
    gadget 1000 selling / 700 purchase, 12% GST
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from billing_kernel.exceptions import (
    DocumentLockedError,
    DocumentNotFoundError,
    InsufficientStockError,
    InvalidParentDocumentError,
    InvalidStatusTransitionError,
    UnsupportedDocumentTypeError,
    ValidationError,
)
from billing_kernel.selectors.document_selector import DocumentFilter
from tests.conftest import build_payload


class TestCreateInvoice:
    def test_totals_stock_and_ledger(self, create_document, document_engine, widget, customer, stock_of):
        invoice = create_document("invoice", lines=[(widget, "2")])

        assert invoice.document_number == "HQ-INV-0001/24"
        assert invoice.status == "confirmed"
        assert invoice.payment_status == "unpaid"
        assert invoice.subtotal == Decimal("900.00")
        assert invoice.cgst_amount == Decimal("81.00")
        assert invoice.sgst_amount == Decimal("81.00")
        assert invoice.igst_amount == Decimal("0")
        assert invoice.total_amount == Decimal("1062.00")
        assert invoice.balance_amount == Decimal("1062.00")
        assert invoice.is_interstate is False
        assert stock_of(widget) == (Decimal("98"), Decimal("0"), Decimal("98"))
        assert document_engine.party_balance(customer.id) == Decimal("1062.00")

    def test_line_snapshot(self, create_document, widget):
        invoice = create_document("invoice", lines=[(widget, "2")])

        line = invoice.lines[0]
        assert line.line_number == 1
        assert line.item_code == "WID-1"
        assert line.tax_code == "8471"
        assert line.rate == Decimal("450")
        assert line.cgst_rate == Decimal("9")
        assert line.line_total == Decimal("1062")

    def test_interstate_customer_pays_igst(self, create_document, widget, interstate_customer):
        invoice = create_document("invoice", lines=[(widget, "2")], party=interstate_customer)

        assert invoice.is_interstate is True
        assert invoice.igst_amount == Decimal("162.00")
        assert invoice.cgst_amount == invoice.sgst_amount == Decimal("0")
        assert invoice.total_amount == Decimal("1062.00")

    def test_several_lines(self, create_document, widget, gadget, stock_of):
        invoice = create_document("invoice", lines=[(widget, "2"), (gadget, "1")])

        assert invoice.subtotal == Decimal("1900.00")
        assert invoice.tax_amount == Decimal("282.00")
        assert invoice.total_amount == Decimal("2182.00")
        assert stock_of(gadget)[0] == Decimal("19")

    def test_explicit_rate_and_document_discount(self, create_document, widget):
        invoice = create_document(
            "invoice", lines=[(widget, "2", "500")], discount_percentage="10"
        )

        # 1000 + 180 tax = 1180, less 10%
        assert invoice.discount_amount == Decimal("118.00")
        assert invoice.total_amount == Decimal("1062.00")

    def test_service_item_moves_no_stock(self, create_document, document_engine, widget, service_item):
        invoice = create_document("invoice", lines=[(widget, "1"), (service_item, "1")])

        assert invoice.total_amount == Decimal("1121.00")
        assert document_engine.stock.movements_for_reference("invoice", invoice.id)[0].item_id == widget.id
        assert len(document_engine.stock.movements_for_reference("invoice", invoice.id)) == 1

    def test_draft_status_may_be_chosen(self, create_document, widget):
        invoice = create_document("invoice", lines=[(widget, "1")], status="draft")

        assert invoice.status == "draft"

    def test_creation_is_logged(self, create_document, widget, captured_logs):
        invoice = create_document("invoice", lines=[(widget, "1")])

        created = [r for r in captured_logs() if r["message"] == "document_created"]
        assert created[-1]["document_number"] == invoice.document_number
        assert created[-1]["document_type"] == "invoice"

    def test_get_document_round_trip(self, create_document, document_engine, widget):
        invoice = create_document("invoice", lines=[(widget, "2")])

        assert document_engine.get_document(invoice.id) == invoice
        assert document_engine.get_document(str(invoice.id)).document_number == invoice.document_number


class TestCreateValidation:
    def test_lines_required(self, create_document):
        with pytest.raises(ValidationError) as exc_info:
            create_document("invoice")
        assert exc_info.value.field == "lines"

    def test_unknown_document_type(self, create_document, customer, widget):
        with pytest.raises(UnsupportedDocumentTypeError):
            create_document("proforma", lines=[(widget, "1")], party=customer)

    def test_party_of_wrong_kind(self, create_document, widget, vendor):
        with pytest.raises(ValidationError) as exc_info:
            create_document("invoice", lines=[(widget, "1")], party=vendor)
        assert exc_info.value.field == "party_id"

    def test_status_outside_selectable_set(self, create_document, widget):
        with pytest.raises(ValidationError) as exc_info:
            create_document("invoice", lines=[(widget, "1")], status="cancelled")
        assert exc_info.value.field == "status"

    def test_missing_default_price(self, create_document, service_item):
        with pytest.raises(ValidationError) as exc_info:
            create_document("bill", lines=[(service_item, "1")])
        assert exc_info.value.field == "lines[0].rate"

    def test_invalid_line_quantity_names_the_line(self, create_document, widget):
        with pytest.raises(ValidationError) as exc_info:
            create_document("invoice", lines=[(widget, "1"), (widget, "0")])
        assert exc_info.value.field == "lines[1].quantity"

    def test_malformed_mapping(self, document_engine, company, branch, customer, widget):
        payload = build_payload(company, branch, customer, [(widget, "lots")])

        with pytest.raises(ValidationError) as exc_info:
            document_engine.create_document("invoice", payload)
        assert exc_info.value.field == "lines[0].quantity"

    def test_parent_not_allowed_for_type(self, create_document, widget):
        order = create_document("sales_order", lines=[(widget, "1")])

        with pytest.raises(ValidationError) as exc_info:
            create_document("quotation", lines=[(widget, "1")], parent_document_id=str(order.id))
        assert exc_info.value.field == "parent_document_id"

    def test_parent_of_wrong_type(self, create_document, widget):
        order = create_document("purchase_order", lines=[(widget, "1")])

        with pytest.raises(InvalidParentDocumentError):
            create_document("invoice", lines=[(widget, "1")], parent_document_id=str(order.id))

    def test_parent_of_other_party(self, create_document, widget, interstate_customer):
        quotation = create_document("quotation", lines=[(widget, "1")])

        with pytest.raises(InvalidParentDocumentError):
            create_document(
                "sales_order",
                lines=[(widget, "1")],
                party=interstate_customer,
                parent_document_id=str(quotation.id),
            )

    def test_unknown_parent(self, create_document, widget):
        with pytest.raises(DocumentNotFoundError):
            create_document("invoice", lines=[(widget, "1")], parent_document_id=str(uuid4()))

    def test_insufficient_stock_leaves_nothing_behind(
        self, create_document, document_engine, company, branch, widget, customer, stock_of
    ):
        with pytest.raises(InsufficientStockError):
            create_document("invoice", lines=[(widget, "101")])

        assert stock_of(widget) == (Decimal("100"), Decimal("0"), Decimal("100"))
        assert document_engine.list_documents(company.id).total == 0
        assert document_engine.party_balance(customer.id) == Decimal("0")
        preview = document_engine.preview_document_number(company.id, branch.id, "invoice")
        assert preview.document_number == "HQ-INV-0001/24"


class TestStatusChanges:
    def test_allowed_transition(self, create_document, document_engine, widget, captured_logs):
        invoice = create_document("invoice", lines=[(widget, "1")], status="draft")

        updated = document_engine.update_document(invoice.id, {"status": "confirmed"})

        assert updated.status == "confirmed"
        changes = [r for r in captured_logs() if r["message"] == "document_status_changed"]
        assert changes[-1]["from_status"] == "draft"
        assert changes[-1]["to_status"] == "confirmed"

    def test_disallowed_transition(self, create_document, document_engine, widget):
        invoice = create_document("invoice", lines=[(widget, "1")])

        with pytest.raises(InvalidStatusTransitionError):
            document_engine.update_document(invoice.id, {"status": "draft"})
        assert document_engine.get_document(invoice.id).status == "confirmed"

    def test_cancelling_reverts_effects_but_keeps_document(
        self, create_document, document_engine, widget, customer, stock_of
    ):
        invoice = create_document("invoice", lines=[(widget, "2")])

        cancelled = document_engine.update_document(invoice.id, {"status": "cancelled"})

        assert cancelled.status == "cancelled"
        assert stock_of(widget)[0] == Decimal("100")
        assert document_engine.party_balance(customer.id) == Decimal("0")
        assert document_engine.ledger.replay(customer.id).consistent

    def test_cancelled_document_deletes_without_second_reversal(
        self, create_document, document_engine, widget, stock_of
    ):
        invoice = create_document("invoice", lines=[(widget, "2")])
        document_engine.update_document(invoice.id, {"status": "cancelled"})

        document_engine.delete_document(invoice.id)

        assert stock_of(widget)[0] == Decimal("100")

    def test_paid_invoice_cannot_be_cancelled(self, create_document, document_engine, widget):
        invoice = create_document("invoice", lines=[(widget, "2")])
        create_document(
            "payment_received",
            amount="100",
            allocations=[{"document_id": str(invoice.id), "amount": "100"}],
        )

        with pytest.raises(DocumentLockedError):
            document_engine.update_document(invoice.id, {"status": "cancelled"})

    def test_header_fields_update_in_any_status(self, create_document, document_engine, widget):
        invoice = create_document("invoice", lines=[(widget, "1")])

        updated = document_engine.update_document(
            invoice.id, {"notes": "deliver by noon", "due_date": "2024-07-01"}
        )

        assert updated.notes == "deliver by noon"
        assert updated.due_date == date(2024, 7, 1)


class TestLineReplacement:
    def test_draft_lines_are_replaced(
        self, create_document, document_engine, widget, customer, stock_of
    ):
        invoice = create_document("invoice", lines=[(widget, "2")], status="draft")

        updated = document_engine.update_document(
            invoice.id, {"lines": [{"item_id": str(widget.id), "quantity": "3"}]}
        )

        assert updated.total_amount == Decimal("1593.00")
        assert updated.balance_amount == Decimal("1593.00")
        assert len(updated.lines) == 1
        assert stock_of(widget)[0] == Decimal("97")
        assert document_engine.party_balance(customer.id) == Decimal("1593.00")
        assert document_engine.ledger.replay(customer.id).consistent

    def test_discount_only_patch_recomputes_totals(self, create_document, document_engine, widget, customer):
        invoice = create_document("invoice", lines=[(widget, "2")], status="draft")

        updated = document_engine.update_document(invoice.id, {"discount_percentage": "10"})

        assert updated.total_amount == Decimal("955.80")
        assert document_engine.party_balance(customer.id) == Decimal("955.80")

    def test_confirmed_lines_are_locked(self, create_document, document_engine, widget):
        invoice = create_document("invoice", lines=[(widget, "2")])

        with pytest.raises(DocumentLockedError):
            document_engine.update_document(
                invoice.id, {"lines": [{"item_id": str(widget.id), "quantity": "3"}]}
            )

    def test_failed_replacement_keeps_old_lines(
        self, create_document, document_engine, widget, customer, stock_of
    ):
        invoice = create_document("invoice", lines=[(widget, "2")], status="draft")

        with pytest.raises(InsufficientStockError):
            document_engine.update_document(
                invoice.id, {"lines": [{"item_id": str(widget.id), "quantity": "500"}]}
            )

        current = document_engine.get_document(invoice.id)
        assert current.total_amount == Decimal("1062.00")
        assert current.lines[0].quantity == Decimal("2")
        assert stock_of(widget)[0] == Decimal("98")
        assert document_engine.party_balance(customer.id) == Decimal("1062.00")

    def test_payment_documents_have_no_lines(self, create_document, document_engine, widget):
        payment = create_document("payment_received", amount="100")

        with pytest.raises(ValidationError):
            document_engine.update_document(
                payment.id, {"lines": [{"item_id": str(widget.id), "quantity": "1"}]}
            )


class TestDelete:
    def test_delete_restores_stock_and_balance(
        self, create_document, document_engine, widget, customer, stock_of, captured_logs
    ):
        invoice = create_document("invoice", lines=[(widget, "2")])

        snapshot = document_engine.delete_document(invoice.id)

        assert snapshot == invoice
        assert stock_of(widget) == (Decimal("100"), Decimal("0"), Decimal("100"))
        assert document_engine.party_balance(customer.id) == Decimal("0")
        with pytest.raises(DocumentNotFoundError):
            document_engine.get_document(invoice.id)
        assert any(r["message"] == "document_deleted" for r in captured_logs())

    def test_paid_invoice_cannot_be_deleted(self, create_document, document_engine, widget, captured_logs):
        invoice = create_document("invoice", lines=[(widget, "2")])
        create_document(
            "payment_received",
            amount="1062",
            allocations=[{"document_id": str(invoice.id), "amount": "1062"}],
        )

        with pytest.raises(DocumentLockedError) as exc_info:
            document_engine.delete_document(invoice.id)
        assert exc_info.value.code == "DOCUMENT_LOCKED"
        assert any(r["message"] == "document_delete_rejected" for r in captured_logs())

    def test_locked_status_cannot_be_deleted(self, create_document, document_engine, widget):
        bill = create_document("bill", lines=[(widget, "1")])
        document_engine.update_document(bill.id, {"status": "confirmed"})
        document_engine.update_document(bill.id, {"status": "approved"})

        with pytest.raises(DocumentLockedError):
            document_engine.delete_document(bill.id)

    def test_document_with_children_cannot_be_deleted(self, create_document, document_engine, widget):
        order = create_document("purchase_order", lines=[(widget, "5")])
        document_engine.update_document(order.id, {"status": "pending"})
        receipt = create_document(
            "goods_receipt", lines=[(widget, "5")], parent_document_id=str(order.id)
        )
        create_document("bill", lines=[(widget, "5")], parent_document_id=str(receipt.id))

        with pytest.raises(DocumentLockedError) as exc_info:
            document_engine.delete_document(receipt.id)
        assert "raised from it" in exc_info.value.reason

    def test_unknown_id(self, document_engine):
        with pytest.raises(DocumentNotFoundError):
            document_engine.delete_document(uuid4())
        with pytest.raises(ValidationError) as exc_info:
            document_engine.delete_document("not-an-id")
        assert exc_info.value.field == "document_id"


class TestListDocuments:
    @pytest.fixture
    def documents(self, create_document, widget):
        return [
            create_document("invoice", lines=[(widget, "1")], document_date="2024-05-01"),
            create_document("invoice", lines=[(widget, "2")], document_date="2024-05-20"),
            create_document("invoice", lines=[(widget, "3")], document_date="2024-06-01"),
            create_document("quotation", lines=[(widget, "1")], document_date="2024-05-10"),
        ]

    def test_filter_by_type(self, document_engine, company, documents):
        page = document_engine.list_documents(company.id, DocumentFilter(document_type="invoice"))

        assert page.total == 3
        assert [d.document_date for d in page.items] == [
            date(2024, 6, 1),
            date(2024, 5, 20),
            date(2024, 5, 1),
        ]

    def test_pagination(self, document_engine, company, documents):
        first = document_engine.list_documents(company.id, limit=3)
        second = document_engine.list_documents(company.id, limit=3, offset=3)

        assert first.total == 4
        assert first.has_more
        assert len(second.items) == 1
        assert not second.has_more

    def test_date_range_and_search(self, document_engine, company, documents):
        page = document_engine.list_documents(
            company.id,
            DocumentFilter(date_from=date(2024, 5, 5), date_to=date(2024, 5, 31)),
            sort_by="document_number",
            descending=False,
        )
        assert [d.document_number for d in page.items] == ["HQ-INV-0002/24", "HQ-QT-0001/24"]

        found = document_engine.list_documents(company.id, DocumentFilter(search="QT-0001"))
        assert found.total == 1

    def test_open_only_and_party(self, create_document, document_engine, company, customer, documents):
        settled = documents[0]
        create_document(
            "payment_received",
            amount=str(settled.total_amount),
            allocations=[{"document_id": str(settled.id), "amount": str(settled.total_amount)}],
        )

        page = document_engine.list_documents(
            company.id,
            DocumentFilter(document_type="invoice", open_only=True, party_id=customer.id),
        )

        assert page.total == 2
        assert settled.id not in {d.id for d in page.items}

    def test_filter_by_payment_status(self, document_engine, company, documents):
        page = document_engine.list_documents(company.id, DocumentFilter(payment_status="unpaid"))

        assert page.total == 3

    def test_other_company_sees_nothing(self, document_engine, documents):
        assert document_engine.list_documents(uuid4()).total == 0

    @pytest.mark.parametrize(
        "kwargs, field",
        [({"sort_by": "colour"}, "sort_by"), ({"limit": 0}, "limit"), ({"offset": -1}, "offset")],
    )
    def test_invalid_listing_arguments(self, document_engine, company, kwargs, field):
        with pytest.raises(ValidationError) as exc_info:
            document_engine.list_documents(company.id, **kwargs)
        assert exc_info.value.field == field


class TestFiscalRollover:
    def test_numbering_restarts_in_new_fiscal_year(self, create_document, deterministic_clock, widget):
        first = create_document("invoice", lines=[(widget, "1")])
        deterministic_clock.set_date(date(2025, 3, 31))
        last_of_year = create_document("invoice", lines=[(widget, "1")])
        deterministic_clock.set_date(date(2025, 4, 1))
        first_of_next = create_document("invoice", lines=[(widget, "1")])

        assert first.document_number == "HQ-INV-0001/24"
        assert last_of_year.document_number == "HQ-INV-0002/24"
        assert first_of_next.document_number == "HQ-INV-0001/25"
        assert first_of_next.document_date == date(2025, 4, 1)

    def test_backdated_document_is_numbered_in_the_current_year(
        self, create_document, deterministic_clock, widget
    ):
        deterministic_clock.set_date(date(2025, 4, 1))
        invoice = create_document("invoice", lines=[(widget, "1")], document_date="2025-03-31")

        assert invoice.document_date == date(2025, 3, 31)
        assert invoice.fiscal_year == "2025-2026"
        assert invoice.document_number == "HQ-INV-0001/25"
