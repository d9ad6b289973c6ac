"""
Module: billing_kernel.models.sequence
Responsibility: ORM persistence for document number series and for the
    named creation-order counters.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - One DocumentSequence row per (company, branch, document_type)
      (uq_document_sequence).
    - DocumentSequence.current_number is the NEXT number to issue.  Within a
      fiscal year it only moves forward, except when a compensating release
      hands back the number that was issued last.
    - SequenceCounter.current_value is strictly monotonic.

Failure modes:
    - IntegrityError when two transactions create the same series at once;
      DocumentSequenceService catches it inside a savepoint and falls back to
      the compare-and-swap path.
"""

from uuid import UUID

from sqlalchemy import BigInteger, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import Base, TrackedBase, UUIDString


class ResetPolicy:
    YEARLY = "yearly"
    NEVER = "never"

    ALL = frozenset({YEARLY, NEVER})


class DocumentSequence(TrackedBase):
    """
    Number series for one document type at one branch.

    Contract:
        Created lazily on the first document of a (branch, type).  Mutated
        only through compare_and_swap on (current_number, fiscal_year).
    """

    __tablename__ = "document_sequences"

    __table_args__ = (
        UniqueConstraint(
            "company_id",
            "branch_id",
            "document_type",
            name="uq_document_sequence",
        ),
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

    # Type prefix including its separator, e.g. "INV-"
    prefix: Mapped[str] = mapped_column(String(20), nullable=False)

    current_number: Mapped[int] = mapped_column(BigInteger, nullable=False, default=1)

    padding: Mapped[int] = mapped_column(Integer, nullable=False, default=4)

    # "2024-2025"
    fiscal_year: Mapped[str] = mapped_column(String(9), nullable=False)

    reset_policy: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default=ResetPolicy.YEARLY,
    )

    def __repr__(self) -> str:
        return (
            f"<DocumentSequence {self.document_type} "
            f"next={self.current_number} FY={self.fiscal_year}>"
        )


class SequenceCounter(Base):
    """
    Named monotonic counter.

    Each row represents a named sequence with its current value.  Row-level
    locking ensures monotonicity under concurrency.
    """

    __tablename__ = "sequence_counters"

    # Sequence name (e.g. "ledger_entry", "inventory_movement")
    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
