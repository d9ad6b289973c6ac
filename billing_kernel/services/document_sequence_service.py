"""
DocumentSequenceService -- branch/fiscal-year scoped document numbers.

Responsibility:
    Issues human-readable, sequential document numbers such as
    ``HQ-INV-0004/24`` per (company, branch, document type), restarting at
    1 when the fiscal year rolls over (reset_policy=yearly).

Architecture position:
    Kernel > Services -- imperative shell.  Called by DocumentComposer (and
    directly by the engine facade for previews).

Invariants enforced:
    - The stored current_number is the NEXT number to issue.  A new series
      issues 1 and stores 2; a yearly reset issues 1, stores 2 and records
      the new fiscal year.
    - Allocation is a compare-and-swap on (current_number, fiscal_year): the
      UPDATE succeeds only if the row still holds the values just read.  A
      lost race is re-read and retried ONCE; a second loss raises
      SequenceContentionError.  A number is never fabricated or skipped.
    - The series row is read FOR UPDATE, so on PostgreSQL concurrent
      writers queue on the row and the swap only loses to out-of-band
      writers.
    - Concurrent creation of the same series is resolved by the unique
      constraint: the loser rolls back its savepoint and takes the
      compare-and-swap path.

Failure modes:
    - SequenceContentionError after two lost compare-and-swaps.
    - ValidationError when asked to number a date in a fiscal year that the
      series has already left.
    - BranchNotFoundError when the branch prefix must be looked up and the
      branch does not exist.
"""

from datetime import date
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from billing_kernel.db.primitives import compare_and_swap
from billing_kernel.domain.document_policy import NumberingPolicy, PolicyTable
from billing_kernel.domain.dtos import AllocatedNumber
from billing_kernel.domain.fiscal import fiscal_year_for, format_document_number
from billing_kernel.exceptions import (
    BranchNotFoundError,
    SequenceContentionError,
    ValidationError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.company import Branch
from billing_kernel.models.sequence import DocumentSequence, ResetPolicy
from billing_kernel.services.base import BaseService

logger = get_logger("services.document_sequence")


class DocumentSequenceService(BaseService[DocumentSequence]):
    """
    Allocator for document number series.

    Contract:
        ``allocate`` returns an AllocatedNumber whose document_number has
        never been issued before for the (company, branch, type, fiscal year).
        ``release`` hands the number back if nothing was issued after it.

    Non-goals:
        - Does not retry beyond the single bounded retry; the caller decides
          whether to re-run the whole operation.
        - Does not commit.
    """

    MAX_ATTEMPTS = 2

    def __init__(self, session, policies: PolicyTable):
        super().__init__(session)
        self._policies = policies

    @property
    def _numbering(self) -> NumberingPolicy:
        return self._policies.numbering

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _read(self, company_id: UUID, branch_id: UUID, document_type: str) -> DocumentSequence | None:
        return self.session.execute(
            select(DocumentSequence)
            .where(
                DocumentSequence.company_id == company_id,
                DocumentSequence.branch_id == branch_id,
                DocumentSequence.document_type == document_type,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _branch_prefix(self, branch_id: UUID, branch_prefix: str | None) -> str | None:
        if branch_prefix is not None:
            return branch_prefix
        branch = self.session.get(Branch, branch_id)
        if branch is None:
            raise BranchNotFoundError(str(branch_id))
        return branch.document_prefix

    def _format(self, branch_prefix, prefix, number, padding, fiscal_year) -> str:
        return format_document_number(
            branch_prefix,
            prefix,
            number,
            padding,
            fiscal_year,
            default_branch_prefix=self._numbering.default_branch_prefix,
        )

    def _plan(self, seq: DocumentSequence, fiscal_year: str) -> tuple[int, str]:
        """Number to issue from ``seq`` and the fiscal year to store with it."""
        if seq.fiscal_year == fiscal_year:
            return seq.current_number, fiscal_year
        if seq.reset_policy == ResetPolicy.YEARLY:
            if fiscal_year < seq.fiscal_year:
                raise ValidationError(
                    "document_date",
                    f"fiscal year {fiscal_year} precedes the series' "
                    f"current fiscal year {seq.fiscal_year}",
                )
            return 1, fiscal_year
        return seq.current_number, max(fiscal_year, seq.fiscal_year)

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    def allocate(
        self,
        company_id: UUID,
        branch_id: UUID,
        document_type: str,
        as_of: date,
        branch_prefix: str | None = None,
    ) -> AllocatedNumber:
        """
        Take the next number of the (company, branch, type) series.

        Args:
            as_of: Date deciding the fiscal year of the number.
            branch_prefix: Branch document prefix when the caller already
                resolved the branch; looked up otherwise.

        Raises:
            SequenceContentionError: The compare-and-swap lost twice.
        """
        policy = self._policies.get(document_type)
        fiscal_year = fiscal_year_for(as_of, self._numbering.fiscal_start_month)
        branch_prefix = self._branch_prefix(branch_id, branch_prefix)

        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            seq = self._read(company_id, branch_id, document_type)
            if seq is None:
                created = self._create(
                    company_id, branch_id, document_type, policy.prefix, fiscal_year, branch_prefix
                )
                if created is not None:
                    return created
                seq = self._read(company_id, branch_id, document_type)
                if seq is None:
                    continue

            number, stored_fy = self._plan(seq, fiscal_year)
            swapped = compare_and_swap(
                self.session,
                DocumentSequence,
                key={"id": seq.id},
                expected={"current_number": seq.current_number, "fiscal_year": seq.fiscal_year},
                new_values={"current_number": number + 1, "fiscal_year": stored_fy},
            )
            if swapped:
                allocated = AllocatedNumber(
                    sequence_id=seq.id,
                    number=number,
                    document_number=self._format(
                        branch_prefix, seq.prefix, number, seq.padding, fiscal_year
                    ),
                    fiscal_year=fiscal_year,
                )
                logger.info(
                    "sequence_allocated",
                    extra={
                        "document_type": document_type,
                        "branch_id": str(branch_id),
                        "fiscal_year": fiscal_year,
                        "number": number,
                        "document_number": allocated.document_number,
                        "reset": number == 1 and seq.fiscal_year != fiscal_year,
                        "attempt": attempt,
                    },
                )
                return allocated

            logger.warning(
                "sequence_cas_conflict",
                extra={
                    "document_type": document_type,
                    "branch_id": str(branch_id),
                    "expected_number": seq.current_number,
                    "attempt": attempt,
                },
            )

        raise SequenceContentionError(
            company_id=str(company_id),
            branch_id=str(branch_id),
            document_type=document_type,
            fiscal_year=fiscal_year,
            attempts=self.MAX_ATTEMPTS,
        )

    def _create(
        self,
        company_id: UUID,
        branch_id: UUID,
        document_type: str,
        prefix: str,
        fiscal_year: str,
        branch_prefix: str | None,
    ) -> AllocatedNumber | None:
        """Create the series issuing number 1, or return None if another writer won."""
        savepoint = self.session.begin_nested()
        try:
            seq = DocumentSequence(
                company_id=company_id,
                branch_id=branch_id,
                document_type=document_type,
                prefix=prefix,
                current_number=2,
                padding=self._numbering.padding,
                fiscal_year=fiscal_year,
                reset_policy=self._numbering.reset_policy,
            )
            self.session.add(seq)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            logger.info(
                "sequence_create_race_lost",
                extra={"document_type": document_type, "branch_id": str(branch_id)},
            )
            return None

        allocated = AllocatedNumber(
            sequence_id=seq.id,
            number=1,
            document_number=self._format(branch_prefix, prefix, 1, seq.padding, fiscal_year),
            fiscal_year=fiscal_year,
        )
        logger.info(
            "sequence_created",
            extra={
                "document_type": document_type,
                "branch_id": str(branch_id),
                "fiscal_year": fiscal_year,
                "document_number": allocated.document_number,
            },
        )
        return allocated

    def preview(
        self,
        company_id: UUID,
        branch_id: UUID,
        document_type: str,
        as_of: date,
        branch_prefix: str | None = None,
    ) -> AllocatedNumber:
        """The number the next allocate() would issue.  Mutates nothing."""
        policy = self._policies.get(document_type)
        fiscal_year = fiscal_year_for(as_of, self._numbering.fiscal_start_month)
        branch_prefix = self._branch_prefix(branch_id, branch_prefix)
        seq = self._read(company_id, branch_id, document_type)
        if seq is None:
            number, prefix, padding = 1, policy.prefix, self._numbering.padding
        else:
            number, _ = self._plan(seq, fiscal_year)
            prefix, padding = seq.prefix, seq.padding
        return AllocatedNumber(
            sequence_id=None,
            number=number,
            document_number=self._format(branch_prefix, prefix, number, padding, fiscal_year),
            fiscal_year=fiscal_year,
        )

    def release(self, allocated: AllocatedNumber) -> bool:
        """
        Compensate an allocation whose document was never persisted.

        Moves the stored value back from number+1 to number if no other
        allocation happened since.  Otherwise the number stays a gap and the
        gap is logged.

        Returns:
            True if the number was handed back.
        """
        if allocated.sequence_id is None:
            return False
        released = compare_and_swap(
            self.session,
            DocumentSequence,
            key={"id": allocated.sequence_id},
            expected={
                "current_number": allocated.number + 1,
                "fiscal_year": allocated.fiscal_year,
            },
            new_values={"current_number": allocated.number},
        )
        if released:
            logger.info(
                "sequence_number_released",
                extra={"document_number": allocated.document_number},
            )
        else:
            logger.warning(
                "sequence_gap_left",
                extra={
                    "document_number": allocated.document_number,
                    "reason": "a later number was issued after it",
                },
            )
        return released

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def configure(
        self,
        company_id: UUID,
        branch_id: UUID,
        document_type: str,
        as_of: date,
        *,
        prefix: str | None = None,
        padding: int | None = None,
        reset_policy: str | None = None,
        next_number: int | None = None,
    ) -> DocumentSequence:
        """
        Create or change a series' prefix, padding, reset policy or next number.

        ``next_number`` may only move the series forward; moving it back
        would re-issue numbers.
        """
        policy = self._policies.get(document_type)
        if padding is not None and padding < 1:
            raise ValidationError("padding", f"must be >= 1, got {padding}")
        if reset_policy is not None and reset_policy not in ResetPolicy.ALL:
            raise ValidationError("reset_policy", f"unknown policy {reset_policy!r}")
        if next_number is not None and next_number < 1:
            raise ValidationError("next_number", f"must be >= 1, got {next_number}")

        seq = self.session.execute(
            select(DocumentSequence)
            .where(
                DocumentSequence.company_id == company_id,
                DocumentSequence.branch_id == branch_id,
                DocumentSequence.document_type == document_type,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

        if seq is None:
            seq = DocumentSequence(
                company_id=company_id,
                branch_id=branch_id,
                document_type=document_type,
                prefix=policy.prefix,
                current_number=1,
                padding=self._numbering.padding,
                fiscal_year=fiscal_year_for(as_of, self._numbering.fiscal_start_month),
                reset_policy=self._numbering.reset_policy,
            )
            self.session.add(seq)
        elif next_number is not None and next_number < seq.current_number:
            raise ValidationError(
                "next_number",
                f"{next_number} is below the series' next number {seq.current_number}",
            )

        if prefix is not None:
            seq.prefix = prefix
        if padding is not None:
            seq.padding = padding
        if reset_policy is not None:
            seq.reset_policy = reset_policy
        if next_number is not None:
            seq.current_number = next_number

        self.session.flush()
        logger.info(
            "sequence_configured",
            extra={
                "document_type": document_type,
                "branch_id": str(branch_id),
                "prefix": seq.prefix,
                "padding": seq.padding,
                "reset_policy": seq.reset_policy,
                "next_number": seq.current_number,
            },
        )
        return seq
