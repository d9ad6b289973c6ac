"""
Module: billing_kernel.selectors.ledger_selector
Responsibility: Read-only queries over the party ledger and the advance log:
    entries in ledger order, replay of running balances and a canonical hash
    of a party's ledger.
Architecture position: Kernel > Selectors.  May import from models/ and
    selectors/base.py.  MUST NOT import from services/.

Invariants verified:
    - Replay: summing debit - credit over a party's entries ordered by
      (entry_date, entry_sequence) reproduces every stored balance.
    - Sum of a party's AdvanceEntry amounts equals Party.advance_balance.

Failure modes:
    - Returns empty results and zero balances for parties without entries.
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from billing_kernel.models.ledger import AdvanceEntry, LedgerEntry
from billing_kernel.models.party import Party
from billing_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class LedgerLine:
    """One ledger entry as read back."""

    entry_id: UUID
    entry_sequence: int
    entry_date: date
    document_date: date
    entry_type: str
    reference_type: str
    reference_id: UUID
    reference_number: str | None
    debit_amount: Decimal
    credit_amount: Decimal
    balance: Decimal
    reverses_entry_id: UUID | None
    description: str | None


@dataclass(frozen=True)
class ReplayResult:
    """Outcome of recomputing a party's balance from its history."""

    party_id: UUID
    entry_count: int
    final_balance: Decimal
    stored_balance: Decimal
    first_mismatch_sequence: int | None

    @property
    def consistent(self) -> bool:
        return self.first_mismatch_sequence is None and self.final_balance == self.stored_balance


@dataclass(frozen=True)
class AdvanceLine:
    entry_id: UUID
    entry_sequence: int
    advance_type: str
    amount: Decimal
    balance_after: Decimal
    reference_type: str
    reference_id: UUID
    reference_number: str | None


class LedgerSelector(BaseSelector[LedgerEntry]):
    """
    Read path for the per-party running-balance ledger.

    Contract:
        Entries are always returned in ledger order: entry_date, then
        entry_sequence.
    """

    def entries_for_party(
        self,
        party_id: UUID,
        as_of: date | None = None,
    ) -> list[LedgerLine]:
        stmt = select(LedgerEntry).where(LedgerEntry.party_id == party_id)
        if as_of is not None:
            stmt = stmt.where(LedgerEntry.entry_date <= as_of)
        rows = self.session.execute(
            stmt.order_by(LedgerEntry.entry_date, LedgerEntry.entry_sequence)
        ).scalars()
        return [self._to_line(row) for row in rows]

    def entries_for_reference(self, reference_type: str, reference_id: UUID) -> list[LedgerLine]:
        rows = self.session.execute(
            select(LedgerEntry)
            .where(
                LedgerEntry.reference_type == reference_type,
                LedgerEntry.reference_id == reference_id,
            )
            .order_by(LedgerEntry.entry_sequence)
        ).scalars()
        return [self._to_line(row) for row in rows]

    def balance(self, party_id: UUID) -> Decimal:
        """Stored balance of the party's latest entry."""
        latest = self.session.execute(
            select(LedgerEntry.balance)
            .where(LedgerEntry.party_id == party_id)
            .order_by(LedgerEntry.entry_date.desc(), LedgerEntry.entry_sequence.desc())
            .limit(1)
        ).scalar_one_or_none()
        return latest if latest is not None else Decimal("0")

    def replay(self, party_id: UUID) -> ReplayResult:
        """
        Recompute the party's balance from scratch and compare every stored
        running balance on the way.
        """
        running = Decimal("0")
        mismatch = None
        lines = self.entries_for_party(party_id)
        for line in lines:
            running = running + line.debit_amount - line.credit_amount
            if mismatch is None and running != line.balance:
                mismatch = line.entry_sequence
        return ReplayResult(
            party_id=party_id,
            entry_count=len(lines),
            final_balance=running,
            stored_balance=lines[-1].balance if lines else Decimal("0"),
            first_mismatch_sequence=mismatch,
        )

    def canonical_hash(self, party_id: UUID) -> str:
        """
        Deterministic SHA-256 over the party's entries in ledger order.

        Two databases holding the same ledger produce the same hash.
        """
        payload = [
            [
                line.entry_sequence,
                line.entry_date.isoformat(),
                line.reference_type,
                str(line.reference_id),
                str(line.debit_amount.normalize()),
                str(line.credit_amount.normalize()),
                str(line.balance.normalize()),
            ]
            for line in self.entries_for_party(party_id)
        ]
        encoded = json.dumps(payload, separators=(",", ":"), sort_keys=True)
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()

    # Advances

    def advances_for_party(self, party_id: UUID) -> list[AdvanceLine]:
        rows = self.session.execute(
            select(AdvanceEntry)
            .where(AdvanceEntry.party_id == party_id)
            .order_by(AdvanceEntry.entry_sequence)
        ).scalars()
        return [
            AdvanceLine(
                entry_id=row.id,
                entry_sequence=row.entry_sequence,
                advance_type=row.advance_type,
                amount=row.amount,
                balance_after=row.balance_after,
                reference_type=row.reference_type,
                reference_id=row.reference_id,
                reference_number=row.reference_number,
            )
            for row in rows
        ]

    def advance_consistent(self, party_id: UUID) -> bool:
        """True when Party.advance_balance equals the sum of its advance log."""
        total = self.session.execute(
            select(func.coalesce(func.sum(AdvanceEntry.amount), 0)).where(
                AdvanceEntry.party_id == party_id
            )
        ).scalar_one()
        party = self.session.get(Party, party_id)
        return party is not None and Decimal(total) == party.advance_balance

    @staticmethod
    def _to_line(row: LedgerEntry) -> LedgerLine:
        return LedgerLine(
            entry_id=row.id,
            entry_sequence=row.entry_sequence,
            entry_date=row.entry_date,
            document_date=row.document_date,
            entry_type=row.entry_type,
            reference_type=row.reference_type,
            reference_id=row.reference_id,
            reference_number=row.reference_number,
            debit_amount=row.debit_amount,
            credit_amount=row.credit_amount,
            balance=row.balance,
            reverses_entry_id=row.reverses_entry_id,
            description=row.description,
        )
