"""Services for the billing kernel (write side)."""

from billing_kernel.services.balance_ledger import (
    BalanceLedger,
    PaymentPostingResult,
    SettlementResult,
)
from billing_kernel.services.compensation import CompensationStack
from billing_kernel.services.directory_service import (
    BranchDirectory,
    CompanyDirectory,
    ItemCatalog,
    PartyDirectory,
)
from billing_kernel.services.document_composer import DocumentComposer
from billing_kernel.services.document_sequence_service import DocumentSequenceService
from billing_kernel.services.inventory_ledger import AdjustmentMode, InventoryLedger
from billing_kernel.services.sequence_service import SequenceService

__all__ = [
    "AdjustmentMode",
    "BalanceLedger",
    "BranchDirectory",
    "CompanyDirectory",
    "CompensationStack",
    "DocumentComposer",
    "DocumentSequenceService",
    "InventoryLedger",
    "ItemCatalog",
    "PartyDirectory",
    "PaymentPostingResult",
    "SequenceService",
    "SettlementResult",
]
