"""
Module: billing_kernel.models.company
Responsibility: ORM persistence for the owning company and its branches.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Branch.document_prefix is the first segment of every document number
      issued for the branch.  An empty prefix is rendered as the configured
      default (``BR``) by the numbering service, never stored as such.

Failure modes:
    - IntegrityError on duplicate (company_id, code) for branches.
"""

from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase, UUIDString


class Company(TrackedBase):
    """
    A GST-registered business.

    Contract:
        tax_id is the company's GSTIN.  Its first two characters are the state
        code that decides intra- vs inter-state supply for every document.
    """

    __tablename__ = "companies"

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    tax_id: Mapped[str | None] = mapped_column(String(15), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    branches: Mapped[list["Branch"]] = relationship(
        back_populates="company",
        order_by="Branch.name",
    )

    def __repr__(self) -> str:
        return f"<Company {self.name}>"


class Branch(TrackedBase):
    """A trading location of a company with its own number series."""

    __tablename__ = "branches"

    __table_args__ = (
        UniqueConstraint("company_id", "code", name="uq_branch_code"),
        Index("idx_branch_company", "company_id"),
    )

    company_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("companies.id"),
        nullable=False,
    )

    code: Mapped[str] = mapped_column(String(50), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # First segment of document numbers, e.g. "HQ" in HQ-INV-0001/24
    document_prefix: Mapped[str | None] = mapped_column(String(20), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    company: Mapped[Company] = relationship(back_populates="branches")

    def __repr__(self) -> str:
        return f"<Branch {self.code}: {self.name}>"
