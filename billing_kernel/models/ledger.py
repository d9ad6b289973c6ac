"""
Module: billing_kernel.models.ledger
Responsibility: ORM persistence for the per-party running-balance ledger and
    the party advance log.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Append-only.  LedgerEntry and AdvanceEntry rows are never updated or
      deleted; corrections are opposite entries linked by reverses_entry_id.
    - For a party ordered by (entry_date, entry_sequence):
          balance_n == balance_(n-1) + debit_amount_n - credit_amount_n
      with balance_0 == 0.  Exactly one of debit/credit is non-zero.
    - Sum of a party's AdvanceEntry.amount == Party.advance_balance.

Audit relevance:
    document_date keeps the date printed on the source document.  entry_date
    is the ledger position and is never earlier than the party's previous
    entry, so replaying the ledger in order always reproduces every stored
    balance.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase, UUIDString


class EntryDirection:
    DEBIT = "debit"
    CREDIT = "credit"

    ALL = frozenset({DEBIT, CREDIT})

    @staticmethod
    def opposite(direction: str) -> str:
        return EntryDirection.CREDIT if direction == EntryDirection.DEBIT else EntryDirection.DEBIT


class AdvanceType:
    CREATED = "created"
    UTILIZED = "utilized"
    REVERSED = "reversed"


class LedgerEntry(TrackedBase):
    """One posting on a party's running-balance ledger."""

    __tablename__ = "ledger_entries"

    __table_args__ = (
        Index("idx_ledger_party_order", "party_id", "entry_date", "entry_sequence"),
        Index("idx_ledger_reference", "reference_type", "reference_id"),
    )

    company_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("companies.id"),
        nullable=False,
    )

    party_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("parties.id"),
        nullable=False,
    )

    entry_date: Mapped[date] = mapped_column(Date, nullable=False)

    document_date: Mapped[date] = mapped_column(Date, nullable=False)

    entry_sequence: Mapped[int] = mapped_column(nullable=False, unique=True)

    # Source document type, or "reversal" / "advance" for derived entries
    entry_type: Mapped[str] = mapped_column(String(30), nullable=False)

    reference_type: Mapped[str] = mapped_column(String(30), nullable=False)

    reference_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    reference_number: Mapped[str | None] = mapped_column(String(50), nullable=True)

    debit_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    credit_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    balance: Mapped[Decimal] = mapped_column(nullable=False)

    reverses_entry_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("ledger_entries.id"),
        nullable=True,
    )

    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    @property
    def signed_amount(self) -> Decimal:
        return self.debit_amount - self.credit_amount


class AdvanceEntry(TrackedBase):
    """One change of a party's advance balance."""

    __tablename__ = "advance_entries"

    __table_args__ = (
        Index("idx_advance_party", "party_id", "entry_sequence"),
        Index("idx_advance_reference", "reference_type", "reference_id"),
    )

    company_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("companies.id"),
        nullable=False,
    )

    party_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("parties.id"),
        nullable=False,
    )

    entry_sequence: Mapped[int] = mapped_column(nullable=False, unique=True)

    advance_type: Mapped[str] = mapped_column(String(20), nullable=False)

    # Positive when the advance grows, negative when it is used or reversed
    amount: Mapped[Decimal] = mapped_column(nullable=False)

    balance_after: Mapped[Decimal] = mapped_column(nullable=False)

    reference_type: Mapped[str] = mapped_column(String(30), nullable=False)

    reference_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    reference_number: Mapped[str | None] = mapped_column(String(50), nullable=True)

    reverses_entry_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("advance_entries.id"),
        nullable=True,
    )
