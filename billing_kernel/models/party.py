"""
Module: billing_kernel.models.party
Responsibility: ORM persistence for customers and vendors a company trades
    with.  Party rows carry the snapshot data copied onto documents and the
    advance balance held for the party.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - advance_balance equals the sum of the party's AdvanceEntry amounts.
      It is mutated only by BalanceLedger, under a row lock.
    - party_code is unique per company.

Failure modes:
    - IntegrityError on duplicate (company_id, party_code).
"""

from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, Boolean, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase, UUIDString


class PartyType(str, Enum):
    """Customers receive sales documents, vendors purchase documents."""

    CUSTOMER = "customer"
    VENDOR = "vendor"


class Party(TrackedBase):
    """
    External entity the company sells to or buys from.

    Contract:
        The party_type decides which document types may reference the party
        (see the per-type policy table).

    Non-goals:
        - Credit limits and payment terms are not enforced here.
    """

    __tablename__ = "parties"

    __table_args__ = (
        UniqueConstraint("company_id", "party_code", name="uq_party_code"),
        Index("idx_party_company_type", "company_id", "party_type"),
        Index("idx_party_active", "is_active"),
    )

    company_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("companies.id"),
        nullable=False,
    )

    party_code: Mapped[str] = mapped_column(String(50), nullable=False)

    party_type: Mapped[PartyType] = mapped_column(String(20), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # GSTIN; first two characters are the state code
    tax_id: Mapped[str | None] = mapped_column(String(15), nullable=True)

    email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)

    billing_address: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    shipping_address: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    advance_balance: Mapped[Decimal] = mapped_column(
        nullable=False,
        default=Decimal("0"),
    )

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Party {self.party_code}: {self.name} ({self.party_type})>"
