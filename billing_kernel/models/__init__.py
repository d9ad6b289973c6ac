"""Persistent models for the billing kernel."""

from billing_kernel.models.company import Branch, Company
from billing_kernel.models.document import (
    Document,
    DocumentLine,
    PaymentAllocation,
    PaymentStatus,
)
from billing_kernel.models.inventory import InventoryMovement, MovementType
from billing_kernel.models.item import Item
from billing_kernel.models.ledger import (
    AdvanceEntry,
    AdvanceType,
    EntryDirection,
    LedgerEntry,
)
from billing_kernel.models.party import Party, PartyType
from billing_kernel.models.sequence import (
    DocumentSequence,
    ResetPolicy,
    SequenceCounter,
)

__all__ = [
    "Company",
    "Branch",
    "Party",
    "PartyType",
    "Item",
    "DocumentSequence",
    "ResetPolicy",
    "SequenceCounter",
    "Document",
    "DocumentLine",
    "PaymentAllocation",
    "PaymentStatus",
    "InventoryMovement",
    "MovementType",
    "LedgerEntry",
    "AdvanceEntry",
    "AdvanceType",
    "EntryDirection",
]
