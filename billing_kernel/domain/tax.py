"""
Tax computation -- GST line tax and document totals.

Responsibility:
    Pure functions computing the CGST/SGST (intra-state) or IGST
    (inter-state) split of each line and the rounded document totals.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Line values are NEVER rounded.  aggregate() rounds each total once
      (2 places, ROUND_HALF_UP via round_money).
    - Exactly one of {CGST+SGST, IGST} is used per line.
    - cgst + sgst + igst == tax_amount on every line and on the totals.
    - total == subtotal + tax - discount exactly, after rounding.

Failure modes:
    - ValidationError for negative quantities/rates, discounts outside
      0..100 %, or a flat document discount exceeding the post-tax subtotal.
"""

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from billing_kernel.db.types import HUNDRED, ZERO, round_money
from billing_kernel.exceptions import ValidationError

_TWO = Decimal("2")

# 2-digit state code, PAN (5 letters, 4 digits, 1 letter), entity number,
# the literal Z, checksum character.
_GSTIN_RE = re.compile(r"^[0-9]{2}[A-Z]{5}[0-9]{4}[A-Z][1-9A-Z]Z[0-9A-Z]$")


@dataclass(frozen=True)
class LineTax:
    """Unrounded tax breakdown of one line."""

    gross_amount: Decimal
    discount_amount: Decimal
    taxable_amount: Decimal
    tax_rate: Decimal
    cgst_rate: Decimal
    sgst_rate: Decimal
    igst_rate: Decimal
    cgst: Decimal
    sgst: Decimal
    igst: Decimal
    tax_amount: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class DocumentTotals:
    """Rounded header totals of a document."""

    subtotal: Decimal
    cgst_amount: Decimal
    sgst_amount: Decimal
    igst_amount: Decimal
    tax_amount: Decimal
    discount_percentage: Decimal
    discount_amount: Decimal
    total_amount: Decimal


def compute_line_tax(
    quantity: Decimal,
    rate: Decimal,
    discount_percentage: Decimal,
    tax_rate: Decimal,
    is_interstate: bool,
) -> LineTax:
    """
    Compute the tax breakdown of a single line.

    taxable = quantity * rate - quantity * rate * discount% / 100.  Inter-state
    supplies carry the whole rate as IGST; intra-state supplies split it
    evenly into CGST and SGST.
    """
    if quantity <= ZERO:
        raise ValidationError("quantity", f"must be positive, got {quantity}")
    if rate < ZERO:
        raise ValidationError("rate", f"must not be negative, got {rate}")
    if not ZERO <= discount_percentage <= HUNDRED:
        raise ValidationError(
            "discount_percentage", f"must be within 0..100, got {discount_percentage}"
        )
    if tax_rate < ZERO:
        raise ValidationError("tax_rate", f"must not be negative, got {tax_rate}")

    gross = quantity * rate
    discount = gross * discount_percentage / HUNDRED
    taxable = gross - discount

    if is_interstate:
        cgst_rate = sgst_rate = ZERO
        igst_rate = tax_rate
    else:
        cgst_rate = sgst_rate = tax_rate / _TWO
        igst_rate = ZERO

    cgst = taxable * cgst_rate / HUNDRED
    sgst = taxable * sgst_rate / HUNDRED
    igst = taxable * igst_rate / HUNDRED
    tax_amount = cgst + sgst + igst

    return LineTax(
        gross_amount=gross,
        discount_amount=discount,
        taxable_amount=taxable,
        tax_rate=tax_rate,
        cgst_rate=cgst_rate,
        sgst_rate=sgst_rate,
        igst_rate=igst_rate,
        cgst=cgst,
        sgst=sgst,
        igst=igst,
        tax_amount=tax_amount,
        line_total=taxable + tax_amount,
    )


def aggregate(
    lines: Iterable[LineTax],
    discount_percentage: Decimal | None = None,
    discount_amount: Decimal | None = None,
    decimal_places: int = 2,
) -> DocumentTotals:
    """
    Sum unrounded line values and apply the document-level discount.

    The discount applies to the post-tax subtotal.  A positive percentage
    takes priority over a flat amount; the stored percentage is zero when
    the flat amount was used.
    """
    lines = list(lines)
    subtotal = sum((line.taxable_amount for line in lines), ZERO)
    cgst = sum((line.cgst for line in lines), ZERO)
    sgst = sum((line.sgst for line in lines), ZERO)
    igst = sum((line.igst for line in lines), ZERO)

    subtotal_r = round_money(subtotal, decimal_places)
    cgst_r = round_money(cgst, decimal_places)
    sgst_r = round_money(sgst, decimal_places)
    igst_r = round_money(igst, decimal_places)
    tax_r = cgst_r + sgst_r + igst_r
    gross_r = subtotal_r + tax_r

    pct = discount_percentage or ZERO
    flat = discount_amount or ZERO
    if not ZERO <= pct <= HUNDRED:
        raise ValidationError("discount_percentage", f"must be within 0..100, got {pct}")
    if flat < ZERO:
        raise ValidationError("discount_amount", f"must not be negative, got {flat}")

    if pct > ZERO:
        discount_r = round_money((subtotal + cgst + sgst + igst) * pct / HUNDRED, decimal_places)
        flat_used = False
    else:
        discount_r = round_money(flat, decimal_places)
        flat_used = True
    if discount_r > gross_r:
        raise ValidationError(
            "discount_amount",
            f"{discount_r} exceeds the post-tax subtotal {gross_r}",
        )

    return DocumentTotals(
        subtotal=subtotal_r,
        cgst_amount=cgst_r,
        sgst_amount=sgst_r,
        igst_amount=igst_r,
        tax_amount=tax_r,
        discount_percentage=ZERO if flat_used else pct,
        discount_amount=discount_r,
        total_amount=gross_r - discount_r,
    )


def split_inclusive_price(price_with_tax: Decimal, tax_rate: Decimal) -> tuple[Decimal, Decimal]:
    """
    Back-calculate (taxable, tax) from a tax-inclusive price.

    Used for master pricing only, never for document lines.
    """
    if tax_rate < ZERO:
        raise ValidationError("tax_rate", f"must not be negative, got {tax_rate}")
    taxable = round_money(price_with_tax * HUNDRED / (HUNDRED + tax_rate))
    return taxable, price_with_tax - taxable


def state_code(tax_id: str | None) -> str | None:
    """First two characters of a GSTIN, or None when unusable."""
    if not tax_id:
        return None
    cleaned = tax_id.strip().upper()
    if len(cleaned) < 2:
        return None
    return cleaned[:2]


def is_interstate_supply(company_tax_id: str | None, party_tax_id: str | None) -> bool:
    """
    True when supplier and recipient are registered in different states.

    A missing or too-short tax id on either side counts as intra-state.
    """
    company_state = state_code(company_tax_id)
    party_state = state_code(party_tax_id)
    if company_state is None or party_state is None:
        return False
    return company_state != party_state


def validate_tax_id(tax_id: str, field: str = "tax_id") -> str:
    """Return the normalized GSTIN or raise ValidationError on a malformed one."""
    normalized = (tax_id or "").strip().upper()
    if not _GSTIN_RE.match(normalized):
        raise ValidationError(field, f"not a valid 15-character GSTIN: {tax_id!r}")
    return normalized
