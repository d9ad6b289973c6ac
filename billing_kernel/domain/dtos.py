"""
DTOs -- immutable data returned by kernel services.

Responsibility:
    Frozen dataclasses describing collaborators (company, branch, party,
    item), allocated numbers, stock and ledger changes, and composed
    documents.  Services never hand ORM instances to callers.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  ``from_model`` converters exist as
    boundary helpers and are invoked only from services and selectors.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Generic, TypeVar
from uuid import UUID

if TYPE_CHECKING:
    from billing_kernel.models.document import Document, DocumentLine
    from billing_kernel.models.item import Item


T = TypeVar("T")


# Collaborators


@dataclass(frozen=True)
class CompanyInfo:
    id: UUID
    name: str
    tax_id: str | None
    is_active: bool


@dataclass(frozen=True)
class BranchInfo:
    id: UUID
    company_id: UUID
    code: str
    name: str
    document_prefix: str | None
    is_active: bool


@dataclass(frozen=True)
class PartyInfo:
    id: UUID
    company_id: UUID
    party_code: str
    party_type: str
    name: str
    tax_id: str | None
    advance_balance: Decimal
    is_active: bool


@dataclass(frozen=True)
class ItemInfo:
    id: UUID
    company_id: UUID
    item_code: str
    name: str
    tax_code: str | None
    tax_rate: Decimal
    selling_price: Decimal | None
    purchase_price: Decimal | None
    current_stock: Decimal
    reserved_stock: Decimal
    available_stock: Decimal
    tracks_inventory: bool
    is_active: bool

    @classmethod
    def from_model(cls, item: Item) -> ItemInfo:
        return cls(
            id=item.id,
            company_id=item.company_id,
            item_code=item.item_code,
            name=item.name,
            tax_code=item.tax_code,
            tax_rate=item.tax_rate,
            selling_price=item.selling_price,
            purchase_price=item.purchase_price,
            current_stock=item.current_stock,
            reserved_stock=item.reserved_stock,
            available_stock=item.available_stock,
            tracks_inventory=item.tracks_inventory,
            is_active=item.is_active,
        )


# Numbering


@dataclass(frozen=True)
class AllocatedNumber:
    """
    A document number taken from a series.

    ``sequence_id`` is None for previews (nothing was reserved).
    """

    sequence_id: UUID | None
    number: int
    document_number: str
    fiscal_year: str


# Stock


@dataclass(frozen=True)
class StockChange:
    """Result of a movement or reservation change on one item."""

    item_id: UUID
    movement_id: UUID | None
    movement_type: str
    quantity: Decimal
    stock_before: Decimal
    stock_after: Decimal
    reserved_stock: Decimal
    available_stock: Decimal


# Balances


@dataclass(frozen=True)
class LedgerPosting:
    entry_id: UUID
    party_id: UUID
    entry_sequence: int
    entry_date: date
    debit_amount: Decimal
    credit_amount: Decimal
    balance: Decimal


@dataclass(frozen=True)
class AdvanceChange:
    entry_id: UUID
    party_id: UUID
    advance_type: str
    amount: Decimal
    balance_after: Decimal


@dataclass(frozen=True)
class PaymentAllocationInfo:
    document_id: UUID
    amount: Decimal


# Documents


@dataclass(frozen=True)
class DocumentLineInfo:
    id: UUID
    line_number: int
    item_id: UUID
    item_code: str
    item_name: str
    tax_code: str | None
    description: str | None
    quantity: Decimal
    rate: Decimal
    discount_percentage: Decimal
    discount_amount: Decimal
    taxable_amount: Decimal
    tax_rate: Decimal
    cgst_rate: Decimal
    sgst_rate: Decimal
    igst_rate: Decimal
    cgst_amount: Decimal
    sgst_amount: Decimal
    igst_amount: Decimal
    tax_amount: Decimal
    line_total: Decimal
    fulfilled_from_reservation: Decimal

    @classmethod
    def from_model(cls, line: DocumentLine) -> DocumentLineInfo:
        return cls(
            id=line.id,
            line_number=line.line_number,
            item_id=line.item_id,
            item_code=line.item_code,
            item_name=line.item_name,
            tax_code=line.tax_code,
            description=line.description,
            quantity=line.quantity,
            rate=line.rate,
            discount_percentage=line.discount_percentage,
            discount_amount=line.discount_amount,
            taxable_amount=line.taxable_amount,
            tax_rate=line.tax_rate,
            cgst_rate=line.cgst_rate,
            sgst_rate=line.sgst_rate,
            igst_rate=line.igst_rate,
            cgst_amount=line.cgst_amount,
            sgst_amount=line.sgst_amount,
            igst_amount=line.igst_amount,
            tax_amount=line.tax_amount,
            line_total=line.line_total,
            fulfilled_from_reservation=line.fulfilled_from_reservation,
        )


@dataclass(frozen=True)
class DocumentInfo:
    """A composed document with its lines and payment allocations."""

    id: UUID
    company_id: UUID
    branch_id: UUID
    document_type: str
    document_number: str
    sequence_number: int
    fiscal_year: str
    document_date: date
    due_date: date | None
    valid_until: date | None
    party_id: UUID
    party_name: str
    party_tax_id: str | None
    parent_document_id: UUID | None
    is_interstate: bool
    subtotal: Decimal
    cgst_amount: Decimal
    sgst_amount: Decimal
    igst_amount: Decimal
    tax_amount: Decimal
    discount_percentage: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    balance_amount: Decimal
    settled_amount: Decimal
    advance_amount: Decimal
    status: str
    payment_status: str | None
    payment_method: str | None
    reference_number: str | None
    notes: str | None
    lines: tuple[DocumentLineInfo, ...] = ()
    allocations: tuple[PaymentAllocationInfo, ...] = ()

    @classmethod
    def from_model(
        cls,
        document: Document,
        allocations: tuple[PaymentAllocationInfo, ...] = (),
    ) -> DocumentInfo:
        return cls(
            id=document.id,
            company_id=document.company_id,
            branch_id=document.branch_id,
            document_type=document.document_type,
            document_number=document.document_number,
            sequence_number=document.sequence_number,
            fiscal_year=document.fiscal_year,
            document_date=document.document_date,
            due_date=document.due_date,
            valid_until=document.valid_until,
            party_id=document.party_id,
            party_name=document.party_name,
            party_tax_id=document.party_tax_id,
            parent_document_id=document.parent_document_id,
            is_interstate=document.is_interstate,
            subtotal=document.subtotal,
            cgst_amount=document.cgst_amount,
            sgst_amount=document.sgst_amount,
            igst_amount=document.igst_amount,
            tax_amount=document.tax_amount,
            discount_percentage=document.discount_percentage,
            discount_amount=document.discount_amount,
            total_amount=document.total_amount,
            paid_amount=document.paid_amount,
            balance_amount=document.balance_amount,
            settled_amount=document.settled_amount,
            advance_amount=document.advance_amount,
            status=document.status,
            payment_status=document.payment_status,
            payment_method=document.payment_method,
            reference_number=document.reference_number,
            notes=document.notes,
            lines=tuple(DocumentLineInfo.from_model(line) for line in document.lines),
            allocations=allocations,
        )


@dataclass(frozen=True)
class Page(Generic[T]):
    """One page of a filtered, sorted listing."""

    items: tuple[T, ...]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total
