"""
billing_services.document_engine -- public entry point of the document engine.

Responsibility:
    Wires the kernel services for one request-scoped Session and exposes
    the engine's operations.  Payloads may be the kernel's frozen payload
    dataclasses or plain mappings (decoded JSON); mappings are coerced and
    validated before anything touches the database.

Architecture position:
    Services -- sits above ``billing_kernel`` and ``billing_config``.  This
    is the only place where the policy table built from configuration meets
    the kernel services.

Failure modes:
    - Every kernel error propagates unchanged (typed, with ``code``).

Usage:
    from billing_kernel.db.engine import session_scope
    from billing_services import DocumentEngine

    with session_scope() as session:
        engine = DocumentEngine(session)
        invoice = engine.create_document("invoice", {...})
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy.orm import Session

from billing_config import get_active_config
from billing_config.bridges import build_policy_table
from billing_kernel.db.immutability import register_immutability_listeners
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.document_policy import PolicyTable
from billing_kernel.domain.dtos import AllocatedNumber, DocumentInfo, Page, StockChange
from billing_kernel.domain.payloads import (
    DocumentInput,
    DocumentPatch,
    StockAdjustmentInput,
    StockMovementInput,
    coerce,
)
from billing_kernel.exceptions import ValidationError
from billing_kernel.logging_config import LogContext
from billing_kernel.selectors.document_selector import DocumentFilter, DocumentSelector
from billing_kernel.selectors.inventory_selector import InventorySelector, MovementLine
from billing_kernel.selectors.ledger_selector import LedgerLine, LedgerSelector
from billing_kernel.services.directory_service import BranchDirectory, ItemCatalog
from billing_kernel.services.document_composer import DocumentComposer
from billing_kernel.services.document_sequence_service import DocumentSequenceService
from billing_kernel.services.inventory_ledger import InventoryLedger


class DocumentEngine:
    """Facade over composer, ledgers, sequence allocator and selectors.

    Contract:
        Receives a SQLAlchemy Session and, optionally, a PolicyTable and a
        Clock.  Without a PolicyTable the active configuration is loaded
        and bridged.  Constructs every kernel service exactly once.

    Non-goals:
        - Does NOT manage transaction boundaries (caller's responsibility).
        - Does NOT own the Session lifecycle (no commit/rollback).
    """

    def __init__(
        self,
        session: Session,
        policy_table: PolicyTable | None = None,
        clock: Clock | None = None,
    ):
        register_immutability_listeners()
        self.session = session
        self.policies = policy_table or build_policy_table(get_active_config())
        self.clock = clock or SystemClock()

        self.composer = DocumentComposer(session, self.policies, self.clock)
        self.sequences = DocumentSequenceService(session, self.policies)
        self.inventory = InventoryLedger(session, self.clock)
        self.documents = DocumentSelector(session)
        self.stock = InventorySelector(session)
        self.ledger = LedgerSelector(session)
        self._branches = BranchDirectory(session)
        self._items = ItemCatalog(session)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def create_document(
        self,
        document_type: str,
        payload: DocumentInput | Mapping[str, Any],
    ) -> DocumentInfo:
        data = coerce(DocumentInput, payload)
        with LogContext.correlate():
            return self.composer.create(document_type, data)

    def update_document(
        self,
        document_id: UUID | str,
        patch: DocumentPatch | Mapping[str, Any],
    ) -> DocumentInfo:
        document_id, patch = self._id(document_id), coerce(DocumentPatch, patch)
        with LogContext.correlate():
            return self.composer.update(document_id, patch)

    def delete_document(self, document_id: UUID | str) -> DocumentInfo:
        """Delete a document, undoing its effects.  Returns its last state."""
        document_id = self._id(document_id)
        with LogContext.correlate():
            return self.composer.delete(document_id)

    def get_document(self, document_id: UUID | str, company_id: UUID | None = None) -> DocumentInfo:
        return self.documents.get_document(self._id(document_id), company_id)

    def list_documents(
        self,
        company_id: UUID,
        filters: DocumentFilter | None = None,
        sort_by: str = "document_date",
        descending: bool = True,
        limit: int = 50,
        offset: int = 0,
    ) -> Page[DocumentInfo]:
        return self.documents.list_documents(
            company_id,
            filters,
            sort_by=sort_by,
            descending=descending,
            limit=limit,
            offset=offset,
        )

    # ------------------------------------------------------------------
    # Numbering
    # ------------------------------------------------------------------

    def preview_document_number(
        self,
        company_id: UUID,
        branch_id: UUID,
        document_type: str,
        as_of: date | None = None,
    ) -> AllocatedNumber:
        branch = self._branches.resolve(branch_id, company_id)
        return self.sequences.preview(
            company_id,
            branch_id,
            document_type,
            as_of or self.clock.today(),
            branch_prefix=branch.document_prefix,
        )

    def configure_numbering(
        self,
        company_id: UUID,
        branch_id: UUID,
        document_type: str,
        *,
        prefix: str | None = None,
        padding: int | None = None,
        reset_policy: str | None = None,
        next_number: int | None = None,
    ) -> AllocatedNumber:
        """Change a series' settings; returns the number it would issue next."""
        self._branches.resolve(branch_id, company_id)
        self.sequences.configure(
            company_id,
            branch_id,
            document_type,
            self.clock.today(),
            prefix=prefix,
            padding=padding,
            reset_policy=reset_policy,
            next_number=next_number,
        )
        return self.preview_document_number(company_id, branch_id, document_type)

    # ------------------------------------------------------------------
    # Stock
    # ------------------------------------------------------------------

    def record_stock_movement(
        self,
        payload: StockMovementInput | Mapping[str, Any],
    ) -> StockChange:
        data = coerce(StockMovementInput, payload)
        self._items.resolve(data.item_id, data.company_id)
        with LogContext.correlate():
            return self.inventory.record_movement(
                data.item_id,
                data.movement_type,
                data.quantity,
                company_id=data.company_id,
                branch_id=data.branch_id,
                rate=data.rate or Decimal("0"),
                reference_type=data.reference_type,
                reference_id=data.reference_id,
                reference_number=data.reference_number,
                movement_date=data.movement_date or self.clock.today(),
                notes=data.notes,
            )

    def adjust_stock(
        self,
        payload: StockAdjustmentInput | Mapping[str, Any],
    ) -> StockChange:
        data = coerce(StockAdjustmentInput, payload)
        self._items.resolve(data.item_id, data.company_id)
        with LogContext.correlate():
            return self.inventory.adjust_stock(
                data.item_id,
                data.value,
                data.mode or "set",
                company_id=data.company_id,
                branch_id=data.branch_id,
                rate=data.rate or Decimal("0"),
                adjustment_date=data.adjustment_date or self.clock.today(),
                notes=data.notes,
            )

    def stock_movements(self, item_id: UUID) -> list[MovementLine]:
        return self.stock.movements_for_item(item_id)

    # ------------------------------------------------------------------
    # Party ledger
    # ------------------------------------------------------------------

    def party_balance(self, party_id: UUID) -> Decimal:
        return self.ledger.balance(party_id)

    def party_ledger(self, party_id: UUID, as_of: date | None = None) -> list[LedgerLine]:
        return self.ledger.entries_for_party(party_id, as_of)

    @staticmethod
    def _id(value: UUID | str) -> UUID:
        if isinstance(value, UUID):
            return value
        try:
            return UUID(str(value))
        except ValueError as exc:
            raise ValidationError("document_id", f"not a valid id: {value!r}") from exc
