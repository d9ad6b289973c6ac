"""Selectors for the billing kernel (read side)."""

from billing_kernel.selectors.document_selector import DocumentFilter, DocumentSelector
from billing_kernel.selectors.inventory_selector import InventorySelector, MovementLine
from billing_kernel.selectors.ledger_selector import (
    AdvanceLine,
    LedgerLine,
    LedgerSelector,
    ReplayResult,
)

__all__ = [
    "AdvanceLine",
    "DocumentFilter",
    "DocumentSelector",
    "InventorySelector",
    "LedgerLine",
    "LedgerSelector",
    "MovementLine",
    "ReplayResult",
]
