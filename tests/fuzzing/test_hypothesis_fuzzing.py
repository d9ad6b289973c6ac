"""
Hypothesis-based fuzzing of the arithmetic and counter invariants.

Boundaries fuzzed here:
- GST lines: total == subtotal + tax - discount after one rounding,
  CGST == SGST intra-state, IGST only inter-state
- Inclusive prices: taxable + tax gives back the price
- Document numbers: fiscal year and padding for any date and counter
- Stock counters: arbitrary move/adjust/reserve sequences keep
  available == max(0, current - reserved) and replay to the stored value
- Party ledger: arbitrary invoice/payment sequences replay consistently

Database-backed properties run each example inside a savepoint that is
rolled back afterwards, so examples never see each other's rows.
"""

from contextlib import contextmanager
from datetime import date
from decimal import Decimal

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st
from hypothesis.strategies import composite

from billing_kernel.db.types import ZERO, round_money
from billing_kernel.domain.fiscal import fiscal_year_for, format_document_number
from billing_kernel.domain.tax import aggregate, compute_line_tax, split_inclusive_price
from billing_kernel.exceptions import (
    InsufficientStockError,
    InvalidStockAdjustmentError,
    ValidationError,
)

DB_SETTINGS = settings(
    max_examples=25,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow, HealthCheck.function_scoped_fixture],
)

quantities = st.decimals(min_value=Decimal("0.001"), max_value=Decimal("10000"), places=3)
rates = st.decimals(min_value=Decimal("0"), max_value=Decimal("100000"), places=2)
percentages = st.decimals(min_value=Decimal("0"), max_value=Decimal("100"), places=2)
tax_rates = st.sampled_from([Decimal(r) for r in ("0", "0.25", "3", "5", "12", "18", "28")])


@composite
def line_taxes(draw, interstate=None):
    if interstate is None:
        interstate = draw(st.booleans())
    return compute_line_tax(
        draw(quantities), draw(rates), draw(percentages), draw(tax_rates), interstate
    )


@contextmanager
def rolled_back(session):
    nested = session.begin_nested()
    try:
        yield
    finally:
        nested.rollback()


class TestTaxFuzzing:
    @given(lines=st.lists(line_taxes(), min_size=1, max_size=20), pct=percentages)
    @settings(max_examples=300)
    def test_total_identity(self, lines, pct):
        try:
            totals = aggregate(lines, discount_percentage=pct)
        except ValidationError as exc:
            # Rounded components can sum below a full percentage discount.
            assert exc.field == "discount_amount"
            return

        assert totals.total_amount == totals.subtotal + totals.tax_amount - totals.discount_amount
        assert totals.tax_amount == totals.cgst_amount + totals.sgst_amount + totals.igst_amount
        assert totals.total_amount >= ZERO

    @given(lines=st.lists(line_taxes(interstate=False), min_size=1, max_size=20))
    def test_intra_state_halves_match(self, lines):
        totals = aggregate(lines)

        assert totals.cgst_amount == totals.sgst_amount
        assert totals.igst_amount == ZERO

    @given(lines=st.lists(line_taxes(interstate=True), min_size=1, max_size=20))
    def test_inter_state_uses_igst_only(self, lines):
        totals = aggregate(lines)

        assert totals.cgst_amount == ZERO
        assert totals.sgst_amount == ZERO

    @given(lines=st.lists(line_taxes(), min_size=1, max_size=20))
    def test_rounding_happens_once(self, lines):
        totals = aggregate(lines)
        exact = sum((line.taxable_amount for line in lines), ZERO)

        assert totals.subtotal == round_money(exact)

    @given(line=line_taxes())
    def test_line_breakdown_adds_up(self, line):
        assert line.cgst + line.sgst + line.igst == line.tax_amount
        assert line.line_total == line.taxable_amount + line.tax_amount
        assert line.gross_amount - line.discount_amount == line.taxable_amount

    @given(lines=st.lists(line_taxes(), min_size=1, max_size=5), flat=rates)
    def test_flat_discount_never_exceeds_gross(self, lines, flat):
        try:
            totals = aggregate(lines, discount_amount=flat)
        except ValidationError as exc:
            assert exc.field == "discount_amount"
        else:
            assert totals.total_amount >= ZERO
            assert totals.discount_percentage == ZERO

    @given(
        price=st.decimals(min_value=Decimal("0.01"), max_value=Decimal("1000000"), places=2),
        tax_rate=tax_rates,
    )
    def test_inclusive_split_reconstructs_price(self, price, tax_rate):
        taxable, tax = split_inclusive_price(price, tax_rate)

        assert taxable + tax == price
        assert taxable <= price


class TestNumberingFuzzing:
    @given(
        day=st.dates(min_value=date(2000, 1, 1), max_value=date(2098, 12, 31)),
        number=st.integers(min_value=1, max_value=10**7),
        padding=st.integers(min_value=1, max_value=8),
    )
    def test_number_format(self, day, number, padding):
        fiscal_year = fiscal_year_for(day)
        rendered = format_document_number("HQ", "INV-", number, padding, fiscal_year)

        head, _, year = rendered.rpartition("/")
        assert head.startswith("HQ-INV-")
        assert int(head.removeprefix("HQ-INV-")) == number
        assert len(head.removeprefix("HQ-INV-")) == max(padding, len(str(number)))
        assert year == fiscal_year[2:4]

    @given(day=st.dates(min_value=date(2000, 1, 1), max_value=date(2098, 12, 31)))
    def test_fiscal_year_contains_day(self, day):
        start = int(fiscal_year_for(day)[:4])

        assert date(start, 4, 1) <= day < date(start + 1, 4, 1)


stock_operations = st.lists(
    st.one_of(
        st.tuples(st.sampled_from(["in", "out"]), st.integers(min_value=1, max_value=60)),
        st.tuples(
            st.sampled_from(["set", "increase", "decrease"]),
            st.integers(min_value=0, max_value=200),
        ),
        st.tuples(st.sampled_from(["reserve", "release"]), st.integers(min_value=1, max_value=60)),
    ),
    min_size=1,
    max_size=15,
)


class TestStockCounterFuzzing:
    @given(operations=stock_operations)
    @DB_SETTINGS
    def test_counters_stay_consistent(self, session, document_engine, company, widget, operations):
        inventory = document_engine.inventory
        with rolled_back(session):
            for operation, amount in operations:
                value = Decimal(amount)
                try:
                    if operation in ("in", "out"):
                        inventory.record_movement(
                            widget.id, operation, value,
                            company_id=company.id, movement_date=date(2024, 6, 1),
                        )
                    elif operation == "reserve":
                        inventory.reserve(widget.id, value, company_id=company.id)
                    elif operation == "release":
                        inventory.release(widget.id, value, company_id=company.id)
                    else:
                        inventory.adjust_stock(
                            widget.id, value, operation,
                            company_id=company.id, adjustment_date=date(2024, 6, 1),
                        )
                except (InsufficientStockError, InvalidStockAdjustmentError):
                    pass

                info = document_engine.stock.item(widget.id)
                assert info.current_stock >= ZERO
                assert info.reserved_stock >= ZERO
                assert info.available_stock == max(ZERO, info.current_stock - info.reserved_stock)
                assert document_engine.stock.replay_stock(widget.id) == info.current_stock


party_operations = st.lists(
    st.one_of(
        st.tuples(st.just("invoice"), st.integers(min_value=1, max_value=5)),
        st.tuples(st.just("payment"), st.integers(min_value=1, max_value=3000)),
    ),
    min_size=1,
    max_size=8,
)


class TestLedgerFuzzing:
    @given(operations=party_operations)
    @DB_SETTINGS
    def test_ledger_replays_after_any_history(
        self, session, create_document, document_engine, widget, customer, operations
    ):
        with rolled_back(session):
            for operation, amount in operations:
                if operation == "invoice":
                    create_document("invoice", lines=[(widget, str(amount))])
                else:
                    create_document("payment_received", amount=str(amount), auto_allocate=True)

            result = document_engine.ledger.replay(customer.id)
            assert result.consistent
            assert result.final_balance == document_engine.party_balance(customer.id)
            assert document_engine.ledger.advance_consistent(customer.id)
