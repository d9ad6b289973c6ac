"""
Module: billing_kernel.models.document
Responsibility: ORM persistence for business documents (quotations, orders,
    invoices, receipts, bills, notes, payments), their lines, and the
    allocation of payments to invoices/bills.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - total_amount == subtotal + tax_amount - discount_amount (computed once
      by the tax module, stored rounded to 2 places).
    - balance_amount == total_amount - paid_amount after every write.
    - document_number is unique per company (uq_document_number).
    - line_total == taxable_amount + tax_amount on every line.

Failure modes:
    - IntegrityError on duplicate (company_id, document_number).  This can
      only happen if a number series was tampered with; the allocator never
      issues the same number twice.

Audit relevance:
    Header carries snapshots of the party name/tax id and lines carry item
    code/name/tax code snapshots so a document renders the same after master
    data changes.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    Boolean,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase, UUIDString
from billing_kernel.db.types import Quantity, Rate


class PaymentStatus:
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"


class Document(TrackedBase):
    """
    Header of a business document.

    Contract:
        Created by DocumentComposer; status and payment fields are mutated by
        lifecycle transitions and payment allocation; deleted only when the
        per-type policy does not lock it.
    """

    __tablename__ = "documents"

    __table_args__ = (
        UniqueConstraint("company_id", "document_number", name="uq_document_number"),
        Index("idx_document_company_type", "company_id", "document_type"),
        Index("idx_document_party", "party_id"),
        Index("idx_document_parent", "parent_document_id"),
        Index("idx_document_date", "document_date"),
    )

    company_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("companies.id"),
        nullable=False,
    )

    branch_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("branches.id"),
        nullable=False,
    )

    document_type: Mapped[str] = mapped_column(String(30), nullable=False)

    document_number: Mapped[str] = mapped_column(String(50), nullable=False)

    sequence_number: Mapped[int] = mapped_column(nullable=False)

    fiscal_year: Mapped[str] = mapped_column(String(9), nullable=False)

    document_date: Mapped[date] = mapped_column(Date, nullable=False)

    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    valid_until: Mapped[date | None] = mapped_column(Date, nullable=True)

    party_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("parties.id"),
        nullable=False,
    )

    party_name: Mapped[str] = mapped_column(String(255), nullable=False)

    party_tax_id: Mapped[str | None] = mapped_column(String(15), nullable=True)

    parent_document_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("documents.id", ondelete="SET NULL"),
        nullable=True,
    )

    is_interstate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    subtotal: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    cgst_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    sgst_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    igst_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    tax_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    discount_percentage: Mapped[Rate] = mapped_column(
        Numeric(9, 4),
        nullable=False,
        default=Decimal("0"),
    )

    discount_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    total_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    paid_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    balance_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    # Notes: part of the total applied against the parent's balance
    settled_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    # Notes and payments: part of the total credited to the party's advance
    advance_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    status: Mapped[str] = mapped_column(String(30), nullable=False)

    payment_status: Mapped[str | None] = mapped_column(String(20), nullable=True)

    payment_method: Mapped[str | None] = mapped_column(String(30), nullable=True)

    reference_number: Mapped[str | None] = mapped_column(String(100), nullable=True)

    notes: Mapped[str | None] = mapped_column(String(4000), nullable=True)

    lines: Mapped[list["DocumentLine"]] = relationship(
        back_populates="document",
        order_by="DocumentLine.line_number",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Document {self.document_number} ({self.document_type}, {self.status})>"


class DocumentLine(TrackedBase):
    """
    One item line of a document.

    Amounts are stored unrounded; only the header totals are rounded.
    """

    __tablename__ = "document_lines"

    __table_args__ = (
        UniqueConstraint("document_id", "line_number", name="uq_document_line_number"),
        Index("idx_document_line_item", "item_id"),
    )

    document_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("documents.id"),
        nullable=False,
    )

    line_number: Mapped[int] = mapped_column(Integer, nullable=False)

    item_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("items.id"),
        nullable=False,
    )

    item_code: Mapped[str] = mapped_column(String(50), nullable=False)

    item_name: Mapped[str] = mapped_column(String(255), nullable=False)

    tax_code: Mapped[str | None] = mapped_column(String(20), nullable=True)

    description: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    quantity: Mapped[Quantity] = mapped_column(Numeric(20, 6), nullable=False)

    rate: Mapped[Decimal] = mapped_column(nullable=False)

    discount_percentage: Mapped[Rate] = mapped_column(
        Numeric(9, 4),
        nullable=False,
        default=Decimal("0"),
    )

    discount_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    taxable_amount: Mapped[Decimal] = mapped_column(nullable=False)

    tax_rate: Mapped[Rate] = mapped_column(Numeric(9, 4), nullable=False)

    cgst_rate: Mapped[Rate] = mapped_column(Numeric(9, 4), nullable=False)

    sgst_rate: Mapped[Rate] = mapped_column(Numeric(9, 4), nullable=False)

    igst_rate: Mapped[Rate] = mapped_column(Numeric(9, 4), nullable=False)

    cgst_amount: Mapped[Decimal] = mapped_column(nullable=False)

    sgst_amount: Mapped[Decimal] = mapped_column(nullable=False)

    igst_amount: Mapped[Decimal] = mapped_column(nullable=False)

    tax_amount: Mapped[Decimal] = mapped_column(nullable=False)

    line_total: Mapped[Decimal] = mapped_column(nullable=False)

    # Sales-order reservation consumed by this line (invoices raised from orders)
    fulfilled_from_reservation: Mapped[Quantity] = mapped_column(
        Numeric(20, 6),
        nullable=False,
        default=Decimal("0"),
    )

    document: Mapped[Document] = relationship(back_populates="lines")


class PaymentAllocation(TrackedBase):
    """Part of a payment applied to one invoice or bill."""

    __tablename__ = "payment_allocations"

    __table_args__ = (
        UniqueConstraint("payment_id", "document_id", name="uq_payment_allocation"),
        Index("idx_payment_allocation_document", "document_id"),
    )

    payment_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("documents.id"),
        nullable=False,
    )

    document_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("documents.id"),
        nullable=False,
    )

    amount: Mapped[Decimal] = mapped_column(nullable=False)
