"""
DocumentComposer -- one parameterised pipeline for every document type.

Responsibility:
    Creates, updates and deletes business documents.  What a type does to
    stock, to the party ledger and to its parent document is read from its
    DocumentTypePolicy; the pipeline itself is the same for quotations,
    orders, invoices, receipts, bills, notes and payments.

Architecture position:
    Kernel > Services -- imperative shell.  Orchestrates the sequence
    allocator, the tax module, InventoryLedger and BalanceLedger.

Creation protocol (each step in its own savepoint, with an undo action):
    1. validate the payload against the type's policy
    2. resolve company, branch, party, items and the parent document
    3. allocate the document number            (undo: release the number)
    4. compute line taxes and document totals
    5. insert the header                        (undo: delete it)
    6. insert the lines                         (undo: delete them)
    7. inventory effect                         (undo: reversal movements)
    8. ledger effect                            (undo: reversal entries)
    9. parent effect                            (undo: restore the parent)
    On failure the applied steps are undone newest first and the original
    error is re-raised.

Invariants enforced:
    - Items are locked in item_id order; documents and parties are locked
      before their balances change.
    - A document in a locked state, one with payments recorded where the
      type locks once paid, or one with child documents is never deleted.
    - Status changes follow the policy's transition table.  Entering a
      voiding status undoes the document's stock, ledger and parent
      effects; a reserving document leaving its holding statuses releases
      its reservation.

Failure modes:
    - ValidationError, *NotFoundError, InvalidParentDocumentError,
      InvalidStatusTransitionError, DocumentLockedError,
      PaymentAllocationError, InsufficientStockError,
      SequenceContentionError, PersistenceFailureError.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import exists, select

from billing_kernel.db.types import round_money
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.document_policy import (
    DocumentKind,
    DocumentTypePolicy,
    InventoryEffect,
    LedgerSide,
    PartyKind,
    PolicyTable,
)
from billing_kernel.domain.dtos import AllocatedNumber, DocumentInfo, ItemInfo
from billing_kernel.domain.payloads import DocumentInput, DocumentPatch, LineInput
from billing_kernel.domain.tax import (
    LineTax,
    aggregate,
    compute_line_tax,
    is_interstate_supply,
)
from billing_kernel.exceptions import (
    DocumentLockedError,
    DocumentNotFoundError,
    InvalidParentDocumentError,
    PaymentAllocationError,
    ValidationError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.models.document import Document, DocumentLine, PaymentStatus
from billing_kernel.models.inventory import MovementType
from billing_kernel.models.item import Item
from billing_kernel.models.party import Party
from billing_kernel.services.balance_ledger import BalanceLedger
from billing_kernel.services.base import BaseService
from billing_kernel.services.compensation import CompensationStack
from billing_kernel.services.directory_service import (
    BranchDirectory,
    CompanyDirectory,
    ItemCatalog,
    PartyDirectory,
)
from billing_kernel.services.document_sequence_service import DocumentSequenceService
from billing_kernel.services.inventory_ledger import InventoryLedger

logger = get_logger("services.composer")

ZERO = Decimal("0")


@dataclass(frozen=True)
class PricedLine:
    """A payload line with its resolved item, rate and unrounded tax."""

    line: LineInput
    item: ItemInfo
    rate: Decimal
    tax: LineTax


class DocumentComposer(BaseService[Document]):
    """
    Create/update/delete pipeline driven by the per-type policy table.

    Contract:
        Flushes, never commits.  Returns DocumentInfo DTOs.
    """

    def __init__(self, session, policies: PolicyTable, clock: Clock | None = None):
        super().__init__(session)
        self._policies = policies
        self._clock = clock or SystemClock()
        self._sequences = DocumentSequenceService(session, policies)
        self._inventory = InventoryLedger(session, self._clock)
        self._balances = BalanceLedger(session, self._clock)
        self._companies = CompanyDirectory(session)
        self._branches = BranchDirectory(session)
        self._parties = PartyDirectory(session)
        self._items = ItemCatalog(session)

    # ==================================================================
    # Create
    # ==================================================================

    def create(self, document_type: str, data: DocumentInput) -> DocumentInfo:
        policy = self._policies.get(document_type)
        with LogContext.bind(
            company_id=data.company_id,
            document_type=document_type,
            actor_id=data.created_by_id,
        ):
            self._validate_input(policy, data)

            company = self._companies.resolve(data.company_id)
            branch = self._branches.resolve(data.branch_id, data.company_id)
            party = self._parties.resolve(data.party_id, data.company_id, policy.party_kind.value)
            parent = self._resolve_parent(policy, data.parent_document_id, data.company_id, party.id)

            document_date = data.document_date or self._clock.today()
            is_interstate = is_interstate_supply(company.tax_id, party.tax_id)
            if policy.has_lines:
                priced = self._price_lines(policy, data.lines, data.company_id, is_interstate)
                totals = aggregate(
                    (p.tax for p in priced),
                    data.discount_percentage,
                    data.discount_amount,
                    self._policies.money_places,
                )
            else:
                priced = []
                totals = None
            status = self._initial_status(policy, data, parent)

            stack = CompensationStack(self.session, "create_document")
            try:
                allocated = stack.run(
                    "allocate_number",
                    lambda: self._sequences.allocate(
                        company.id,
                        branch.id,
                        document_type,
                        as_of=self._clock.today(),
                        branch_prefix=branch.document_prefix,
                    ),
                    undo=self._sequences.release,
                )
                document = stack.run(
                    "insert_header",
                    lambda: self._insert_header(
                        policy, data, allocated, party, parent, document_date,
                        is_interstate, totals, status,
                    ),
                    undo=self._delete_header,
                )
                if priced:
                    stack.run(
                        "insert_lines",
                        lambda: self._insert_lines(document, priced),
                        undo=lambda _: self._delete_lines(document),
                    )
                stack.run(
                    "inventory",
                    lambda: self._apply_inventory(policy, document, parent),
                    undo=lambda _: self._revert_inventory(policy, document, parent),
                )
                if policy.ledger_side != LedgerSide.NONE:
                    stack.run(
                        "ledger",
                        lambda: self._apply_ledger(policy, document, parent, data),
                        undo=lambda _: self._revert_ledger(policy, document, parent),
                    )
                if parent is not None:
                    stack.run(
                        "parent_effects",
                        lambda: self._apply_parent_effects(policy, document, parent),
                        undo=lambda previous: self._restore_parent(document, parent, previous),
                    )
            except Exception as exc:
                stack.unwind(exc)
                raise
            stack.clear()

            logger.info(
                "document_created",
                extra={
                    "document_id": str(document.id),
                    "document_number": document.document_number,
                    "status": document.status,
                    "party_id": str(document.party_id),
                    "total_amount": document.total_amount,
                    "line_count": len(document.lines),
                    "parent_document_id": str(parent.id) if parent is not None else None,
                },
            )
            return self._to_info(policy, document)

    # ------------------------------------------------------------------
    # Validation and resolution
    # ------------------------------------------------------------------

    def _validate_input(self, policy: DocumentTypePolicy, data: DocumentInput) -> None:
        name = policy.document_type
        if policy.has_lines:
            if not data.lines:
                raise ValidationError("lines", "at least one line is required")
            if data.amount is not None:
                raise ValidationError("amount", f"{name} documents take lines, not an amount")
            if data.allocations or data.auto_allocate:
                raise ValidationError("allocations", f"{name} documents cannot allocate payments")
        else:
            if data.lines:
                raise ValidationError("lines", f"{name} documents carry no lines")
            if data.amount is None:
                raise ValidationError("amount", "is required")
            if data.amount <= ZERO:
                raise ValidationError("amount", f"must be positive, got {data.amount}")
            if data.allocations and data.auto_allocate:
                raise ValidationError(
                    "allocations", "give explicit allocations or auto_allocate, not both"
                )
            seen = set()
            for index, allocation in enumerate(data.allocations):
                if allocation.amount <= ZERO:
                    raise ValidationError(
                        f"allocations[{index}].amount",
                        f"must be positive, got {allocation.amount}",
                    )
                if allocation.document_id in seen:
                    raise ValidationError(
                        f"allocations[{index}].document_id", "allocated more than once"
                    )
                seen.add(allocation.document_id)

        if data.apply_advance and not policy.can_apply_advance:
            raise ValidationError("apply_advance", f"{name} documents cannot use advances")
        if data.status is not None:
            if policy.kind == DocumentKind.NOTE:
                raise ValidationError("status", "the status of a note follows its parent")
            if data.status not in policy.selectable_statuses:
                raise ValidationError(
                    "status",
                    f"{name} documents start in one of {sorted(policy.selectable_statuses)}, "
                    f"got {data.status!r}",
                )
        if data.parent_document_id is None and policy.requires_parent:
            raise ValidationError("parent_document_id", f"is required for {name} documents")
        if data.parent_document_id is not None and not policy.parent_types:
            raise ValidationError("parent_document_id", f"{name} documents have no parent")

    def _resolve_parent(
        self,
        policy: DocumentTypePolicy,
        parent_id: UUID | None,
        company_id: UUID,
        party_id: UUID,
    ) -> Document | None:
        if parent_id is None:
            return None
        parent = self._balances.lock_document(parent_id)
        if parent.company_id != company_id:
            raise DocumentNotFoundError(str(parent_id))
        if parent.document_type not in policy.parent_types:
            raise InvalidParentDocumentError(
                str(parent_id),
                f"a {policy.document_type} cannot be raised from a {parent.document_type}",
            )
        if parent.party_id != party_id:
            raise InvalidParentDocumentError(
                str(parent_id), f"{parent.document_number} belongs to another party"
            )
        parent_policy = self._policies.get(parent.document_type)
        if parent.status in parent_policy.voiding_statuses:
            raise InvalidParentDocumentError(
                str(parent_id), f"{parent.document_number} is {parent.status}"
            )
        target = policy.parent_status_on_create.get(parent.document_type)
        if target is not None and not parent_policy.can_transition(parent.status, target):
            raise InvalidParentDocumentError(
                str(parent_id),
                f"{parent.document_number} is {parent.status} and cannot become {target}",
            )
        if parent_policy.tracks_receipts:
            stages = parent_policy.receipt_statuses
            if parent.status == stages.get("complete"):
                raise InvalidParentDocumentError(
                    str(parent_id), f"{parent.document_number} has been fully received"
                )
            # Receipts only land on an order that is open for receiving.
            if parent.status not in (stages.get("none"), stages.get("partial")):
                raise InvalidParentDocumentError(
                    str(parent_id),
                    f"{parent.document_number} is {parent.status} and cannot receive goods",
                )
        return parent

    def _price_lines(
        self,
        policy: DocumentTypePolicy,
        lines: tuple[LineInput, ...],
        company_id: UUID,
        is_interstate: bool,
    ) -> list[PricedLine]:
        items = {
            item_id: self._items.resolve(item_id, company_id)
            for item_id in sorted({line.item_id for line in lines}, key=str)
        }
        priced = []
        for index, line in enumerate(lines):
            item = items[line.item_id]
            rate = line.rate
            if rate is None:
                rate = (
                    item.selling_price
                    if policy.party_kind == PartyKind.CUSTOMER
                    else item.purchase_price
                )
                if rate is None:
                    raise ValidationError(
                        f"lines[{index}].rate",
                        f"is required; item {item.item_code} has no default price",
                    )
            try:
                tax = compute_line_tax(
                    line.quantity,
                    rate,
                    line.discount_percentage or ZERO,
                    item.tax_rate,
                    is_interstate,
                )
            except ValidationError as exc:
                raise ValidationError(f"lines[{index}].{exc.field}", exc.reason) from exc
            priced.append(PricedLine(line=line, item=item, rate=rate, tax=tax))
        return priced

    def _initial_status(
        self,
        policy: DocumentTypePolicy,
        data: DocumentInput,
        parent: Document | None,
    ) -> str:
        if policy.kind == DocumentKind.NOTE:
            # Decided against the parent's balance before this note settles.
            if parent is not None and parent.balance_amount > ZERO:
                return policy.note_open_status or policy.initial_status
            return policy.note_settled_status or policy.initial_status
        return data.status or policy.initial_status

    # ------------------------------------------------------------------
    # Header and lines
    # ------------------------------------------------------------------

    def _insert_header(
        self,
        policy: DocumentTypePolicy,
        data: DocumentInput,
        allocated: AllocatedNumber,
        party,
        parent: Document | None,
        document_date: date,
        is_interstate: bool,
        totals,
        status: str,
    ) -> Document:
        document = Document(
            company_id=data.company_id,
            branch_id=data.branch_id,
            document_type=policy.document_type,
            document_number=allocated.document_number,
            sequence_number=allocated.number,
            fiscal_year=allocated.fiscal_year,
            document_date=document_date,
            due_date=data.due_date,
            valid_until=data.valid_until,
            party_id=party.id,
            party_name=party.name,
            party_tax_id=party.tax_id,
            parent_document_id=parent.id if parent is not None else None,
            is_interstate=is_interstate,
            status=status,
            payment_status=PaymentStatus.UNPAID if policy.tracks_payment else None,
            payment_method=data.payment_method,
            reference_number=data.reference_number,
            notes=data.notes,
            created_by_id=data.created_by_id,
        )
        if totals is not None:
            self._set_totals(document, totals)
            document.paid_amount = ZERO
            document.balance_amount = document.total_amount
        else:
            amount = round_money(data.amount, self._policies.money_places)
            document.subtotal = amount
            document.total_amount = amount
            document.paid_amount = amount
            document.balance_amount = ZERO
        self.session.add(document)
        self.session.flush()
        return document

    @staticmethod
    def _set_totals(document: Document, totals) -> None:
        document.subtotal = totals.subtotal
        document.cgst_amount = totals.cgst_amount
        document.sgst_amount = totals.sgst_amount
        document.igst_amount = totals.igst_amount
        document.tax_amount = totals.tax_amount
        document.discount_percentage = totals.discount_percentage
        document.discount_amount = totals.discount_amount
        document.total_amount = totals.total_amount

    def _delete_header(self, document: Document) -> None:
        self.session.delete(document)
        self.session.flush()

    def _insert_lines(self, document: Document, priced: list[PricedLine]) -> None:
        for number, p in enumerate(priced, start=1):
            tax = p.tax
            document.lines.append(
                DocumentLine(
                    line_number=number,
                    item_id=p.item.id,
                    item_code=p.item.item_code,
                    item_name=p.item.name,
                    tax_code=p.item.tax_code,
                    description=p.line.description,
                    quantity=p.line.quantity,
                    rate=p.rate,
                    discount_percentage=p.line.discount_percentage or ZERO,
                    discount_amount=tax.discount_amount,
                    taxable_amount=tax.taxable_amount,
                    tax_rate=tax.tax_rate,
                    cgst_rate=tax.cgst_rate,
                    sgst_rate=tax.sgst_rate,
                    igst_rate=tax.igst_rate,
                    cgst_amount=tax.cgst,
                    sgst_amount=tax.sgst,
                    igst_amount=tax.igst,
                    tax_amount=tax.tax_amount,
                    line_total=tax.line_total,
                    fulfilled_from_reservation=ZERO,
                )
            )
        self.session.flush()

    def _delete_lines(self, document: Document) -> None:
        document.lines.clear()
        self.session.flush()

    # ------------------------------------------------------------------
    # Inventory effects
    # ------------------------------------------------------------------

    def _tracked_lines(self, document: Document) -> list[DocumentLine]:
        """Lines of items that track inventory, in item lock order."""
        item_ids = {line.item_id for line in document.lines}
        if not item_ids:
            return []
        tracked = set(
            self.session.execute(
                select(Item.id).where(Item.id.in_(item_ids), Item.tracks_inventory.is_(True))
            ).scalars()
        )
        return sorted(
            (line for line in document.lines if line.item_id in tracked),
            key=lambda line: (str(line.item_id), line.line_number),
        )

    def _movement_reference(self, document: Document, line: DocumentLine) -> dict:
        return {
            "company_id": document.company_id,
            "branch_id": document.branch_id,
            "rate": line.rate,
            "reference_type": document.document_type,
            "reference_id": document.id,
            "reference_number": document.document_number,
            "movement_date": document.document_date,
        }

    def _reservation_of(self, parent: Document | None) -> dict[UUID, Decimal]:
        """Quantities per item a parent order still holds in reservation."""
        if parent is None:
            return {}
        parent_policy = self._policies.get(parent.document_type)
        if (
            parent_policy.inventory_effect != InventoryEffect.RESERVE
            or parent.status not in parent_policy.holding_statuses
        ):
            return {}
        held: dict[UUID, Decimal] = defaultdict(lambda: ZERO)
        for line in self._tracked_lines(parent):
            held[line.item_id] += line.quantity
        return dict(held)

    def _reserve(self, document: Document) -> None:
        for line in self._tracked_lines(document):
            self._inventory.reserve(
                line.item_id,
                line.quantity,
                company_id=document.company_id,
                reference_number=document.document_number,
            )

    def _release(self, document: Document, quantities: dict[UUID, Decimal] | None = None) -> None:
        """Release the document's reservation, or only ``quantities`` of it."""
        if quantities is None:
            quantities = defaultdict(lambda: ZERO)
            for line in self._tracked_lines(document):
                quantities[line.item_id] += line.quantity
        for item_id in sorted(quantities, key=str):
            if quantities[item_id] > ZERO:
                self._inventory.release(
                    item_id,
                    quantities[item_id],
                    company_id=document.company_id,
                    reference_number=document.document_number,
                )

    def _apply_inventory(
        self,
        policy: DocumentTypePolicy,
        document: Document,
        parent: Document | None,
    ) -> None:
        effect = policy.inventory_effect
        if effect == InventoryEffect.NONE:
            return
        if parent is not None and parent.document_type in policy.skip_inventory_for_parent_types:
            logger.info(
                "inventory_effect_skipped",
                extra={
                    "document_number": document.document_number,
                    "parent_document_number": parent.document_number,
                },
            )
            return
        if effect == InventoryEffect.RESERVE:
            self._reserve(document)
            return

        lines = self._tracked_lines(document)
        if effect == InventoryEffect.INBOUND:
            for line in lines:
                self._inventory.record_movement(
                    line.item_id,
                    MovementType.IN,
                    line.quantity,
                    **self._movement_reference(document, line),
                )
            return

        reservable = self._reservation_of(parent)
        for line in lines:
            reserved = min(line.quantity, reservable.get(line.item_id, ZERO))
            if reserved > ZERO:
                reservable[line.item_id] -= reserved
                self._inventory.fulfil(
                    line.item_id,
                    line.quantity,
                    reserved,
                    **self._movement_reference(document, line),
                )
                line.fulfilled_from_reservation = reserved
            else:
                self._inventory.record_movement(
                    line.item_id,
                    MovementType.OUT,
                    line.quantity,
                    **self._movement_reference(document, line),
                )
        self.session.flush()

    def _revert_inventory(
        self,
        policy: DocumentTypePolicy,
        document: Document,
        parent: Document | None,
    ) -> None:
        effect = policy.inventory_effect
        if effect == InventoryEffect.NONE:
            return
        if effect == InventoryEffect.RESERVE:
            if document.status in policy.holding_statuses:
                self._release(document)
            return

        self._inventory.reverse_movements_for_reference(
            document.document_type,
            document.id,
            reason=f"reversal of {document.document_number}",
        )
        # Hand consumed reservations back to an order that holds again.
        reservable = self._reservation_of(parent)
        for line in self._tracked_lines(document):
            if line.fulfilled_from_reservation > ZERO:
                if line.item_id in reservable:
                    self._inventory.reserve(
                        line.item_id,
                        line.fulfilled_from_reservation,
                        company_id=document.company_id,
                        reference_number=parent.document_number,
                    )
                line.fulfilled_from_reservation = ZERO
        self.session.flush()

    # ------------------------------------------------------------------
    # Ledger effects
    # ------------------------------------------------------------------

    def _post_total(self, policy: DocumentTypePolicy, document: Document) -> None:
        if policy.ledger_side == LedgerSide.NONE or document.total_amount <= ZERO:
            return
        self._balances.post_entry(
            document.party_id,
            document.total_amount,
            policy.ledger_side.value,
            entry_type=document.document_type,
            reference_type=document.document_type,
            reference_id=document.id,
            reference_number=document.document_number,
            entry_date=document.document_date,
            description=f"{document.document_type} {document.document_number}",
        )

    def _apply_ledger(
        self,
        policy: DocumentTypePolicy,
        document: Document,
        parent: Document | None,
        data: DocumentInput,
    ) -> None:
        if policy.kind == DocumentKind.PAYMENT:
            targets = self._payment_targets(policy, document, data)
            self._balances.post_payment(document, policy.ledger_side.value, targets)
            return

        self._post_total(policy, document)
        if policy.kind == DocumentKind.NOTE:
            if parent is not None:
                self._balances.settle_note(document, parent)
        elif data.apply_advance:
            self._use_advance(document)

    def _use_advance(self, document: Document) -> None:
        party = self.session.get(Party, document.party_id)
        amount = min(party.advance_balance, document.balance_amount)
        if amount <= ZERO:
            logger.info(
                "advance_not_available",
                extra={"document_number": document.document_number},
            )
            return
        self._balances.utilize_advance(
            document.party_id,
            amount,
            reference_type=document.document_type,
            reference_id=document.id,
            reference_number=document.document_number,
        )
        self._balances.apply_settlement(document, amount)

    def _revert_ledger(
        self,
        policy: DocumentTypePolicy,
        document: Document,
        parent: Document | None,
    ) -> None:
        if policy.kind == DocumentKind.PAYMENT:
            self._balances.unpost_payment(document)
            return
        if policy.kind == DocumentKind.NOTE:
            self._balances.unsettle_note(document, parent)
        else:
            restored = self._balances.reverse_advances_for_reference(
                document.document_type, document.id
            )
            used = sum((change.amount for change in restored), ZERO)
            if used > ZERO:
                self._balances.remove_settlement(document, used)
        self._balances.reverse_entries_for_reference(document.document_type, document.id)

    def _payment_targets(
        self,
        policy: DocumentTypePolicy,
        payment: Document,
        data: DocumentInput,
    ) -> list[tuple[Document, Decimal]]:
        target_type = policy.allocates_to
        target_policy = self._policies.get(target_type)
        if data.allocations:
            requested = sorted(data.allocations, key=lambda a: str(a.document_id))
            targets = []
            for allocation in requested:
                document = self._balances.lock_document(allocation.document_id)
                if document.company_id != payment.company_id:
                    raise DocumentNotFoundError(str(allocation.document_id))
                if document.document_type != target_type:
                    raise PaymentAllocationError(
                        str(document.id),
                        f"a {policy.document_type} settles {target_type} documents, "
                        f"not {document.document_type}",
                    )
                if document.party_id != payment.party_id:
                    raise PaymentAllocationError(
                        str(document.id), f"{document.document_number} belongs to another party"
                    )
                if document.status in target_policy.voiding_statuses:
                    raise PaymentAllocationError(
                        str(document.id), f"{document.document_number} is {document.status}"
                    )
                targets.append((document, allocation.amount))
            return targets

        if not data.auto_allocate:
            return []
        open_documents = self.session.execute(
            select(Document)
            .where(
                Document.company_id == payment.company_id,
                Document.party_id == payment.party_id,
                Document.document_type == target_type,
                Document.balance_amount > ZERO,
                Document.status.not_in(sorted(target_policy.voiding_statuses)),
            )
            .order_by(Document.document_date, Document.sequence_number, Document.document_number)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().all()
        remaining = payment.total_amount
        targets = []
        for document in open_documents:
            if remaining <= ZERO:
                break
            amount = min(remaining, document.balance_amount)
            targets.append((document, amount))
            remaining -= amount
        logger.info(
            "payment_auto_allocated",
            extra={
                "document_number": payment.document_number,
                "open_documents": len(open_documents),
                "allocated_documents": len(targets),
            },
        )
        return targets

    # ------------------------------------------------------------------
    # Parent effects
    # ------------------------------------------------------------------

    def _apply_parent_effects(
        self,
        policy: DocumentTypePolicy,
        document: Document,
        parent: Document,
    ) -> str:
        """Move the parent forward; returns its previous status."""
        previous = parent.status
        parent_policy = self._policies.get(parent.document_type)
        target = policy.parent_status_on_create.get(parent.document_type)
        if target is not None:
            if (
                parent_policy.inventory_effect == InventoryEffect.RESERVE
                and parent.status in parent_policy.holding_statuses
                and target not in parent_policy.holding_statuses
            ):
                self._release(parent, self._unconsumed_reservation(parent, document))
            parent.status = target
        elif parent_policy.tracks_receipts:
            parent.status = self._receipt_status(parent, parent_policy)
        if parent.status != previous:
            logger.info(
                "parent_status_changed",
                extra={
                    "parent_document_number": parent.document_number,
                    "from_status": previous,
                    "to_status": parent.status,
                    "document_number": document.document_number,
                },
            )
        self.session.flush()
        return previous

    def _unconsumed_reservation(self, order: Document, document: Document) -> dict[UUID, Decimal]:
        left = self._reservation_of(order)
        for line in document.lines:
            if line.item_id in left:
                left[line.item_id] -= line.fulfilled_from_reservation
        return left

    def _restore_parent(self, document: Document, parent: Document, previous: str) -> None:
        """Undo _apply_parent_effects during compensation."""
        parent_policy = self._policies.get(parent.document_type)
        if parent_policy.tracks_receipts:
            parent.status = self._receipt_status(parent, parent_policy, excluding=document.id)
            if parent.status == parent_policy.receipt_statuses.get("none"):
                parent.status = previous
        else:
            was_holding = parent.status in parent_policy.holding_statuses
            parent.status = previous
            if (
                parent_policy.inventory_effect == InventoryEffect.RESERVE
                and previous in parent_policy.holding_statuses
                and not was_holding
            ):
                self._rereserve(parent, document)
        self.session.flush()

    def _revert_parent_effects(
        self,
        policy: DocumentTypePolicy,
        document: Document,
        parent: Document | None,
    ) -> None:
        """Undo a child's parent effect when the child is voided or deleted."""
        if parent is None:
            return
        parent_policy = self._policies.get(parent.document_type)
        target = policy.parent_status_on_create.get(parent.document_type)
        if target is not None:
            if parent.status != target or self._other_children(parent, document, policy):
                return
            previous = self._status_before(parent_policy, target)
            self._restore_parent(document, parent, previous)
        elif parent_policy.tracks_receipts:
            self._restore_parent(
                document, parent, parent_policy.receipt_statuses.get("none", parent.status)
            )

    def _rereserve(self, order: Document, document: Document) -> None:
        """Reserve again what the order released when ``document`` was raised."""
        held: dict[UUID, Decimal] = defaultdict(lambda: ZERO)
        for line in self._tracked_lines(order):
            held[line.item_id] += line.quantity
        for line in document.lines:
            if line.item_id in held:
                held[line.item_id] -= line.fulfilled_from_reservation
        for item_id in sorted(held, key=str):
            if held[item_id] > ZERO:
                self._inventory.reserve(
                    item_id,
                    held[item_id],
                    company_id=order.company_id,
                    reference_number=order.document_number,
                )

    @staticmethod
    def _status_before(policy: DocumentTypePolicy, target: str) -> str:
        sources = sorted(s for s, targets in policy.transitions.items() if target in targets)
        if policy.initial_status in sources or not sources:
            return policy.initial_status
        return sources[0]

    def _other_children(
        self,
        parent: Document,
        document: Document,
        policy: DocumentTypePolicy,
    ) -> bool:
        types = [
            p.document_type
            for p in self._policies
            if parent.document_type in p.parent_status_on_create
        ]
        return self.session.execute(
            select(
                exists().where(
                    Document.parent_document_id == parent.id,
                    Document.id != document.id,
                    Document.document_type.in_(types),
                )
            )
        ).scalar()

    def _receipt_status(
        self,
        order: Document,
        order_policy: DocumentTypePolicy,
        excluding: UUID | None = None,
    ) -> str:
        """Derive a purchase order's status from quantities received against it."""
        inbound_types = [
            p.document_type
            for p in self._policies
            if p.inventory_effect == InventoryEffect.INBOUND and order.document_type in p.parent_types
        ]
        conditions = [
            Document.parent_document_id == order.id,
            Document.document_type.in_(inbound_types),
        ]
        if excluding is not None:
            conditions.append(Document.id != excluding)
        received: dict[UUID, Decimal] = defaultdict(lambda: ZERO)
        rows = self.session.execute(
            select(DocumentLine.item_id, DocumentLine.quantity)
            .join(Document, DocumentLine.document_id == Document.id)
            .where(*conditions)
        ).all()
        for item_id, quantity in rows:
            received[item_id] += quantity

        ordered: dict[UUID, Decimal] = defaultdict(lambda: ZERO)
        for line in order.lines:
            ordered[line.item_id] += line.quantity

        statuses = order_policy.receipt_statuses
        if not any(q > ZERO for q in received.values()):
            return statuses.get("none", order.status)
        if all(received[item_id] >= quantity for item_id, quantity in ordered.items()):
            return statuses.get("complete", order.status)
        return statuses.get("partial", order.status)

    # ==================================================================
    # Update
    # ==================================================================

    def update(self, document_id: UUID, patch: DocumentPatch) -> DocumentInfo:
        """
        Apply a patch: line replacement, header fields, then status.

        The whole patch runs as one savepoint step, so a failed status
        change also discards the line and header changes of the same call.
        """
        document = self._balances.lock_document(document_id)
        policy = self._policies.get(document.document_type)
        with LogContext.bind(
            company_id=document.company_id,
            document_id=document.id,
            document_type=document.document_type,
        ):
            if patch.status is not None:
                policy.check_transition(document.status, patch.status)
            previous_status = document.status

            stack = CompensationStack(self.session, "update_document")
            try:
                changed = stack.run("apply_patch", lambda: self._apply_patch(policy, document, patch))
            except Exception as exc:
                stack.unwind(exc)
                raise

            if "status" in changed:
                logger.info(
                    "document_status_changed",
                    extra={
                        "document_number": document.document_number,
                        "from_status": previous_status,
                        "to_status": document.status,
                    },
                )
            logger.info(
                "document_updated",
                extra={"document_number": document.document_number, "changed": changed},
            )
            return self._to_info(policy, document)

    def _apply_patch(
        self,
        policy: DocumentTypePolicy,
        document: Document,
        patch: DocumentPatch,
    ) -> list[str]:
        changed: list[str] = []
        if (
            patch.lines is not None
            or patch.discount_percentage is not None
            or patch.discount_amount is not None
        ):
            self._replace_lines(policy, document, patch)
            changed.append("lines")

        for name in ("notes", "reference_number", "due_date", "valid_until"):
            value = getattr(patch, name)
            if value is not None:
                setattr(document, name, value)
                changed.append(name)

        if patch.status is not None:
            self._change_status(policy, document, patch.status)
            changed.append("status")
        self.session.flush()
        return changed

    def _check_editable(self, policy: DocumentTypePolicy, document: Document) -> None:
        if not policy.has_lines:
            raise ValidationError("lines", f"{document.document_type} documents carry no lines")
        reason = None
        if not policy.is_editable(document.status):
            reason = f"lines cannot be changed in status '{document.status}'"
        elif document.paid_amount > ZERO:
            reason = "payments have been recorded against it"
        elif self._has_children(document):
            reason = "documents have been raised from it"
        if reason is not None:
            raise DocumentLockedError(
                str(document.id), document.document_number, document.status, reason
            )

    def _replace_lines(
        self,
        policy: DocumentTypePolicy,
        document: Document,
        patch: DocumentPatch,
    ) -> None:
        """
        Swap the lines of an editable document.

        Effects of the old lines are reverted, totals recomputed from the
        new lines and the effects applied again.  Runs as one savepoint step,
        so a failure anywhere restores the old lines and effects.
        """
        self._check_editable(policy, document)
        if patch.lines is not None:
            lines = patch.lines
        else:
            lines = tuple(
                LineInput(
                    item_id=line.item_id,
                    quantity=line.quantity,
                    rate=line.rate,
                    discount_percentage=line.discount_percentage,
                    description=line.description,
                )
                for line in document.lines
            )
        parent = (
            self.session.get(Document, document.parent_document_id)
            if document.parent_document_id is not None
            else None
        )
        priced = self._price_lines(policy, lines, document.company_id, document.is_interstate)
        totals = aggregate(
            (p.tax for p in priced),
            patch.discount_percentage
            if patch.discount_percentage is not None
            else document.discount_percentage,
            patch.discount_amount if patch.discount_amount is not None else document.discount_amount,
            self._policies.money_places,
        )

        if parent is not None:
            self._revert_parent_effects(policy, document, parent)
        self._revert_ledger(policy, document, parent)
        self._revert_inventory(policy, document, parent)

        self._delete_lines(document)
        self._insert_lines(document, priced)
        self._set_totals(document, totals)
        document.balance_amount = document.total_amount - document.paid_amount

        self._apply_inventory(policy, document, parent)
        self._post_total(policy, document)
        if parent is not None:
            self._apply_parent_effects(policy, document, parent)
        logger.info(
            "document_lines_replaced",
            extra={
                "document_number": document.document_number,
                "line_count": len(priced),
                "total_amount": document.total_amount,
            },
        )

    def _change_status(
        self,
        policy: DocumentTypePolicy,
        document: Document,
        to_status: str,
    ) -> None:
        policy.check_transition(document.status, to_status)
        parent = (
            self.session.get(Document, document.parent_document_id)
            if document.parent_document_id is not None
            else None
        )
        if to_status in policy.voiding_statuses:
            if document.paid_amount > ZERO and policy.tracks_payment:
                raise DocumentLockedError(
                    str(document.id),
                    document.document_number,
                    document.status,
                    "payments have been recorded against it",
                )
            if self._has_children(document):
                raise DocumentLockedError(
                    str(document.id),
                    document.document_number,
                    document.status,
                    "documents have been raised from it",
                )
            self._void(policy, document, parent)
        elif (
            policy.inventory_effect == InventoryEffect.RESERVE
            and document.status in policy.holding_statuses
            and to_status not in policy.holding_statuses
        ):
            self._release(document)
        document.status = to_status
        self.session.flush()

    def _void(
        self,
        policy: DocumentTypePolicy,
        document: Document,
        parent: Document | None,
    ) -> None:
        """Undo every effect of a document that stays on file (cancellation)."""
        self._revert_parent_effects(policy, document, parent)
        if policy.ledger_side != LedgerSide.NONE:
            self._revert_ledger(policy, document, parent)
        self._revert_inventory(policy, document, parent)
        logger.info("document_voided", extra={"document_number": document.document_number})

    # ==================================================================
    # Delete
    # ==================================================================

    def delete(self, document_id: UUID) -> DocumentInfo:
        """
        Delete a document after reverting its effects.

        Returns the document as it was before deletion.
        """
        document = self._balances.lock_document(document_id)
        policy = self._policies.get(document.document_type)
        with LogContext.bind(
            company_id=document.company_id,
            document_id=document.id,
            document_type=document.document_type,
        ):
            self._check_deletable(policy, document)
            snapshot = self._to_info(policy, document)
            parent = (
                self.session.get(Document, document.parent_document_id)
                if document.parent_document_id is not None
                else None
            )
            stack = CompensationStack(self.session, "delete_document")
            try:
                stack.run("delete_document", lambda: self._remove(policy, document, parent))
            except Exception as exc:
                stack.unwind(exc)
                raise
            logger.info(
                "document_deleted",
                extra={
                    "document_number": snapshot.document_number,
                    "status": snapshot.status,
                    "total_amount": snapshot.total_amount,
                },
            )
            return snapshot

    def _check_deletable(self, policy: DocumentTypePolicy, document: Document) -> None:
        reason = policy.lock_reason(document.status, document.paid_amount)
        if reason is None and self._has_children(document):
            reason = "documents have been raised from it"
        if reason is None and document.advance_amount > ZERO:
            party = self.session.get(Party, document.party_id)
            if party.advance_balance < document.advance_amount:
                reason = "the advance it created has already been utilized"
        if reason is not None:
            logger.warning(
                "document_delete_rejected",
                extra={"document_number": document.document_number, "reason": reason},
            )
            raise DocumentLockedError(
                str(document.id), document.document_number, document.status, reason
            )

    def _remove(
        self,
        policy: DocumentTypePolicy,
        document: Document,
        parent: Document | None,
    ) -> None:
        if document.status not in policy.voiding_statuses:
            self._revert_parent_effects(policy, document, parent)
            if policy.ledger_side != LedgerSide.NONE:
                self._revert_ledger(policy, document, parent)
            self._revert_inventory(policy, document, parent)
        self._delete_header(document)

    # ==================================================================
    # Helpers
    # ==================================================================

    def _has_children(self, document: Document) -> bool:
        return self.session.execute(
            select(exists().where(Document.parent_document_id == document.id))
        ).scalar()

    def _to_info(self, policy: DocumentTypePolicy, document: Document) -> DocumentInfo:
        allocations = ()
        if policy.kind == DocumentKind.PAYMENT:
            allocations = self._balances.allocations_for(document.id)
        return DocumentInfo.from_model(document, allocations)
