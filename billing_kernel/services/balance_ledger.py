"""
BalanceLedger -- party running balances, advances and settlements.

Responsibility:
    Posts append-only LedgerEntry rows carrying the party's running balance,
    keeps the advance log and Party.advance_balance, and applies payments and
    returns to the paid/balance fields of invoices and bills.

Architecture position:
    Kernel > Services -- imperative shell.  Called by DocumentComposer.

Invariants enforced:
    - Running balance: the new entry's balance is the balance of the party's
      latest entry (by entry_date, entry_sequence) plus debit minus credit.
      It is never recomputed from history on write.
    - Replay: entry_date is max(document date, latest entry_date); the
      document date is kept in document_date.  Summing the entries in
      (entry_date, entry_sequence) order therefore reproduces every stored
      balance, including after backdated postings.
    - The party row is locked (FOR UPDATE) before any balance or advance
      mutation; the document row is locked before its paid amount changes.
    - Party.advance_balance == sum of the party's AdvanceEntry amounts and
      never goes negative.
    - balance_amount == total_amount - paid_amount on every document touched.

Failure modes:
    - PartyNotFoundError for unknown parties.
    - PaymentAllocationError when an amount exceeds a document's balance, or
      an advance being reversed or utilized has already been spent.
    - ValidationError for non-positive amounts or unknown directions.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.dtos import AdvanceChange, LedgerPosting, PaymentAllocationInfo
from billing_kernel.exceptions import (
    DocumentNotFoundError,
    PartyNotFoundError,
    PaymentAllocationError,
    ValidationError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.document import Document, PaymentAllocation, PaymentStatus
from billing_kernel.models.ledger import AdvanceEntry, AdvanceType, EntryDirection, LedgerEntry
from billing_kernel.models.party import Party
from billing_kernel.selectors.ledger_selector import LedgerSelector
from billing_kernel.services.base import BaseService
from billing_kernel.services.sequence_service import SequenceService

logger = get_logger("services.balance")

ZERO = Decimal("0")


@dataclass(frozen=True)
class PaymentPostingResult:
    postings: tuple[LedgerPosting, ...]
    allocations: tuple[PaymentAllocationInfo, ...]
    advance: AdvanceChange | None


@dataclass(frozen=True)
class SettlementResult:
    applied: Decimal
    excess: Decimal
    advance: AdvanceChange | None


def derive_payment_status(total_amount: Decimal, paid_amount: Decimal) -> str:
    if total_amount > ZERO and paid_amount >= total_amount:
        return PaymentStatus.PAID
    if paid_amount > ZERO:
        return PaymentStatus.PARTIAL
    return PaymentStatus.UNPAID


class BalanceLedger(BaseService[LedgerEntry]):
    """
    Party ledger, advance log and document settlement.

    Contract:
        Mutating methods flush and return DTOs.  Reversal methods are
        idempotent.

    Non-goals:
        - No aggregation or statements; see LedgerSelector for reads.
    """

    def __init__(self, session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._sequences = SequenceService(session)

    # ------------------------------------------------------------------
    # Locks and reads
    # ------------------------------------------------------------------

    def _lock_party(self, party_id: UUID) -> Party:
        party = self.session.execute(
            select(Party)
            .where(Party.id == party_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if party is None:
            raise PartyNotFoundError(str(party_id))
        return party

    def lock_document(self, document_id: UUID) -> Document:
        document = self.session.execute(
            select(Document)
            .where(Document.id == document_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if document is None:
            raise DocumentNotFoundError(str(document_id))
        return document

    def _latest_entry(self, party_id: UUID) -> LedgerEntry | None:
        return self.session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.party_id == party_id)
            .order_by(LedgerEntry.entry_date.desc(), LedgerEntry.entry_sequence.desc())
            .limit(1)
        ).scalar_one_or_none()

    def current_balance(self, party_id: UUID) -> Decimal:
        latest = self._latest_entry(party_id)
        return latest.balance if latest is not None else ZERO

    @staticmethod
    def _posting(entry: LedgerEntry) -> LedgerPosting:
        return LedgerPosting(
            entry_id=entry.id,
            party_id=entry.party_id,
            entry_sequence=entry.entry_sequence,
            entry_date=entry.entry_date,
            debit_amount=entry.debit_amount,
            credit_amount=entry.credit_amount,
            balance=entry.balance,
        )

    # ------------------------------------------------------------------
    # Ledger entries
    # ------------------------------------------------------------------

    def post_entry(
        self,
        party_id: UUID,
        amount: Decimal,
        direction: str,
        *,
        entry_type: str,
        reference_type: str,
        reference_id: UUID,
        reference_number: str | None = None,
        entry_date: date | None = None,
        description: str | None = None,
        reverses_entry_id: UUID | None = None,
    ) -> LedgerPosting:
        """
        Append one entry and return it with the party's new running balance.

        Args:
            direction: ``debit`` raises the balance, ``credit`` lowers it.
            entry_date: Date of the source document; today when omitted.
        """
        if direction not in EntryDirection.ALL:
            raise ValidationError("direction", f"must be debit or credit, got {direction!r}")
        if amount <= ZERO:
            raise ValidationError("amount", f"must be positive, got {amount}")

        party = self._lock_party(party_id)
        document_date = entry_date or self._clock.today()
        latest = self._latest_entry(party_id)
        previous = latest.balance if latest is not None else ZERO
        position = document_date
        if latest is not None and latest.entry_date > position:
            position = latest.entry_date

        debit = amount if direction == EntryDirection.DEBIT else ZERO
        credit = amount if direction == EntryDirection.CREDIT else ZERO
        entry = LedgerEntry(
            company_id=party.company_id,
            party_id=party_id,
            entry_date=position,
            document_date=document_date,
            entry_sequence=self._sequences.next_value(SequenceService.LEDGER_ENTRY),
            entry_type=entry_type,
            reference_type=reference_type,
            reference_id=reference_id,
            reference_number=reference_number,
            debit_amount=debit,
            credit_amount=credit,
            balance=previous + debit - credit,
            reverses_entry_id=reverses_entry_id,
            description=description,
        )
        self.session.add(entry)
        self.session.flush()
        logger.info(
            "ledger_entry_posted",
            extra={
                "party_id": str(party_id),
                "entry_type": entry_type,
                "reference_number": reference_number,
                "debit_amount": debit,
                "credit_amount": credit,
                "balance": entry.balance,
                "backdated": position != document_date,
            },
        )
        return self._posting(entry)

    def reverse_entries_for_reference(
        self,
        reference_type: str,
        reference_id: UUID,
        entry_date: date | None = None,
    ) -> list[LedgerPosting]:
        """
        Post one opposite entry for every not-yet-reversed entry of a
        reference.  Idempotent.
        """
        entries = self.session.execute(
            select(LedgerEntry)
            .where(
                LedgerEntry.reference_type == reference_type,
                LedgerEntry.reference_id == reference_id,
                LedgerEntry.reverses_entry_id.is_(None),
            )
            .order_by(LedgerEntry.entry_sequence)
        ).scalars().all()
        if not entries:
            return []
        already = set(
            self.session.execute(
                select(LedgerEntry.reverses_entry_id).where(
                    LedgerEntry.reverses_entry_id.in_([e.id for e in entries])
                )
            ).scalars()
        )

        postings = []
        for original in entries:
            if original.id in already:
                continue
            if original.debit_amount > ZERO:
                amount, direction = original.debit_amount, EntryDirection.CREDIT
            else:
                amount, direction = original.credit_amount, EntryDirection.DEBIT
            postings.append(
                self.post_entry(
                    original.party_id,
                    amount,
                    direction,
                    entry_type="reversal",
                    reference_type=reference_type,
                    reference_id=reference_id,
                    reference_number=original.reference_number,
                    entry_date=entry_date,
                    description=f"Reversal of {original.entry_type} entry",
                    reverses_entry_id=original.id,
                )
            )
        return postings

    def replay_balance(self, party_id: UUID) -> Decimal:
        """Recompute the party's balance from its full history."""
        return LedgerSelector(self.session).replay(party_id).final_balance

    # ------------------------------------------------------------------
    # Advances
    # ------------------------------------------------------------------

    def _append_advance(
        self,
        party: Party,
        amount: Decimal,
        advance_type: str,
        reference_type: str,
        reference_id: UUID,
        reference_number: str | None,
        reverses_entry_id: UUID | None = None,
    ) -> AdvanceChange:
        party.advance_balance = party.advance_balance + amount
        entry = AdvanceEntry(
            company_id=party.company_id,
            party_id=party.id,
            entry_sequence=self._sequences.next_value(SequenceService.ADVANCE_ENTRY),
            advance_type=advance_type,
            amount=amount,
            balance_after=party.advance_balance,
            reference_type=reference_type,
            reference_id=reference_id,
            reference_number=reference_number,
            reverses_entry_id=reverses_entry_id,
        )
        self.session.add(entry)
        self.session.flush()
        logger.info(
            "advance_recorded",
            extra={
                "party_id": str(party.id),
                "advance_type": advance_type,
                "amount": amount,
                "advance_balance": party.advance_balance,
                "reference_number": reference_number,
            },
        )
        return AdvanceChange(
            entry_id=entry.id,
            party_id=party.id,
            advance_type=advance_type,
            amount=amount,
            balance_after=party.advance_balance,
        )

    def credit_advance(
        self,
        party_id: UUID,
        amount: Decimal,
        *,
        reference_type: str,
        reference_id: UUID,
        reference_number: str | None = None,
    ) -> AdvanceChange:
        """Hold ``amount`` for the party (unallocated payment, excess return)."""
        if amount <= ZERO:
            raise ValidationError("amount", f"must be positive, got {amount}")
        party = self._lock_party(party_id)
        return self._append_advance(
            party, amount, AdvanceType.CREATED, reference_type, reference_id, reference_number
        )

    def utilize_advance(
        self,
        party_id: UUID,
        amount: Decimal,
        *,
        reference_type: str,
        reference_id: UUID,
        reference_number: str | None = None,
    ) -> AdvanceChange:
        """Spend part of the party's advance on a document."""
        if amount <= ZERO:
            raise ValidationError("amount", f"must be positive, got {amount}")
        party = self._lock_party(party_id)
        if amount > party.advance_balance:
            raise PaymentAllocationError(
                str(reference_id),
                f"advance balance {party.advance_balance} is less than {amount}",
            )
        return self._append_advance(
            party, -amount, AdvanceType.UTILIZED, reference_type, reference_id, reference_number
        )

    def reverse_advances_for_reference(
        self,
        reference_type: str,
        reference_id: UUID,
    ) -> list[AdvanceChange]:
        """
        Undo every not-yet-reversed advance change of a reference.

        Raises:
            PaymentAllocationError: The advance created by the reference has
                already been spent elsewhere.
        """
        entries = self.session.execute(
            select(AdvanceEntry)
            .where(
                AdvanceEntry.reference_type == reference_type,
                AdvanceEntry.reference_id == reference_id,
                AdvanceEntry.reverses_entry_id.is_(None),
            )
            .order_by(AdvanceEntry.entry_sequence)
        ).scalars().all()
        if not entries:
            return []
        already = set(
            self.session.execute(
                select(AdvanceEntry.reverses_entry_id).where(
                    AdvanceEntry.reverses_entry_id.in_([e.id for e in entries])
                )
            ).scalars()
        )

        changes = []
        for original in entries:
            if original.id in already:
                continue
            party = self._lock_party(original.party_id)
            if party.advance_balance - original.amount < ZERO:
                raise PaymentAllocationError(
                    str(reference_id),
                    f"advance of {original.amount} has already been utilized "
                    f"(advance balance {party.advance_balance})",
                )
            changes.append(
                self._append_advance(
                    party,
                    -original.amount,
                    AdvanceType.REVERSED,
                    reference_type,
                    reference_id,
                    original.reference_number,
                    reverses_entry_id=original.id,
                )
            )
        return changes

    # ------------------------------------------------------------------
    # Settlement of invoices and bills
    # ------------------------------------------------------------------

    def apply_settlement(self, document: Document, amount: Decimal) -> None:
        """
        Record ``amount`` (cash or non-cash) as paid on ``document``.

        Raises:
            PaymentAllocationError: amount exceeds the document's balance.
        """
        if amount <= ZERO:
            raise ValidationError("amount", f"must be positive, got {amount}")
        if amount > document.balance_amount:
            raise PaymentAllocationError(
                str(document.id),
                f"{amount} exceeds the balance {document.balance_amount} "
                f"of {document.document_number}",
            )
        document.paid_amount = document.paid_amount + amount
        document.balance_amount = document.total_amount - document.paid_amount
        if document.payment_status is not None:
            document.payment_status = derive_payment_status(
                document.total_amount, document.paid_amount
            )
        self.session.flush()
        logger.info(
            "settlement_applied",
            extra={
                "document_number": document.document_number,
                "amount": amount,
                "paid_amount": document.paid_amount,
                "balance_amount": document.balance_amount,
            },
        )

    def remove_settlement(self, document: Document, amount: Decimal) -> None:
        """Undo apply_settlement.  Never drives paid_amount below zero."""
        if amount > document.paid_amount:
            raise PaymentAllocationError(
                str(document.id),
                f"cannot remove {amount}; only {document.paid_amount} is recorded as paid",
            )
        document.paid_amount = document.paid_amount - amount
        document.balance_amount = document.total_amount - document.paid_amount
        if document.payment_status is not None:
            document.payment_status = derive_payment_status(
                document.total_amount, document.paid_amount
            )
        self.session.flush()
        logger.info(
            "settlement_removed",
            extra={
                "document_number": document.document_number,
                "amount": amount,
                "paid_amount": document.paid_amount,
            },
        )

    def settle_note(self, note: Document, parent: Document) -> SettlementResult:
        """
        Apply a return note against its parent invoice/bill.

        The applicable part, min(note total, parent balance), reduces the
        parent's balance; any excess becomes an advance for the party.
        """
        applied = min(note.total_amount, max(parent.balance_amount, ZERO))
        if applied > ZERO:
            self.apply_settlement(parent, applied)
        excess = note.total_amount - applied
        advance = None
        if excess > ZERO:
            advance = self.credit_advance(
                note.party_id,
                excess,
                reference_type=note.document_type,
                reference_id=note.id,
                reference_number=note.document_number,
            )
        note.settled_amount = applied
        note.advance_amount = excess
        self.session.flush()
        return SettlementResult(applied=applied, excess=excess, advance=advance)

    def unsettle_note(self, note: Document, parent: Document | None) -> None:
        """Undo settle_note: reverse the advance first, then restore the parent."""
        self.reverse_advances_for_reference(note.document_type, note.id)
        if parent is not None and note.settled_amount > ZERO:
            self.remove_settlement(parent, note.settled_amount)
        note.settled_amount = ZERO
        note.advance_amount = ZERO
        self.session.flush()

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def post_payment(
        self,
        payment: Document,
        direction: str,
        targets: list[tuple[Document, Decimal]],
    ) -> PaymentPostingResult:
        """
        Allocate a payment to open documents and post it to the ledger.

        One ledger entry per allocation; the unallocated remainder gets its
        own entry and becomes an advance.

        Raises:
            PaymentAllocationError: allocations exceed the payment amount or
                a document's balance.
        """
        allocated_total = sum((amount for _, amount in targets), ZERO)
        if allocated_total > payment.total_amount:
            raise PaymentAllocationError(
                str(payment.id),
                f"allocations {allocated_total} exceed the payment amount {payment.total_amount}",
            )

        postings: list[LedgerPosting] = []
        allocations: list[PaymentAllocationInfo] = []
        for document, amount in targets:
            self.apply_settlement(document, amount)
            self.session.add(
                PaymentAllocation(payment_id=payment.id, document_id=document.id, amount=amount)
            )
            postings.append(
                self.post_entry(
                    payment.party_id,
                    amount,
                    direction,
                    entry_type=payment.document_type,
                    reference_type=payment.document_type,
                    reference_id=payment.id,
                    reference_number=payment.document_number,
                    entry_date=payment.document_date,
                    description=f"Against {document.document_number}",
                )
            )
            allocations.append(PaymentAllocationInfo(document_id=document.id, amount=amount))

        remainder = payment.total_amount - allocated_total
        advance = None
        if remainder > ZERO:
            postings.append(
                self.post_entry(
                    payment.party_id,
                    remainder,
                    direction,
                    entry_type="advance",
                    reference_type=payment.document_type,
                    reference_id=payment.id,
                    reference_number=payment.document_number,
                    entry_date=payment.document_date,
                    description="Unallocated amount held as advance",
                )
            )
            advance = self.credit_advance(
                payment.party_id,
                remainder,
                reference_type=payment.document_type,
                reference_id=payment.id,
                reference_number=payment.document_number,
            )
        payment.advance_amount = remainder
        self.session.flush()
        logger.info(
            "payment_posted",
            extra={
                "document_number": payment.document_number,
                "amount": payment.total_amount,
                "allocated": allocated_total,
                "advance": remainder,
                "allocation_count": len(allocations),
            },
        )
        return PaymentPostingResult(
            postings=tuple(postings),
            allocations=tuple(allocations),
            advance=advance,
        )

    def unpost_payment(self, payment: Document) -> None:
        """
        Undo post_payment: reverse the advance, un-allocate every document
        and reverse the ledger entries.
        """
        self.reverse_advances_for_reference(payment.document_type, payment.id)
        allocations = self.session.execute(
            select(PaymentAllocation)
            .where(PaymentAllocation.payment_id == payment.id)
            .order_by(PaymentAllocation.document_id)
        ).scalars().all()
        for allocation in allocations:
            document = self.lock_document(allocation.document_id)
            self.remove_settlement(document, allocation.amount)
            self.session.delete(allocation)
        self.reverse_entries_for_reference(payment.document_type, payment.id)
        payment.advance_amount = ZERO
        self.session.flush()
        logger.info(
            "payment_unposted",
            extra={
                "document_number": payment.document_number,
                "allocation_count": len(allocations),
            },
        )

    def allocations_for(self, payment_id: UUID) -> tuple[PaymentAllocationInfo, ...]:
        rows = self.session.execute(
            select(PaymentAllocation)
            .where(PaymentAllocation.payment_id == payment_id)
            .order_by(PaymentAllocation.created_at, PaymentAllocation.document_id)
        ).scalars().all()
        return tuple(PaymentAllocationInfo(document_id=r.document_id, amount=r.amount) for r in rows)
