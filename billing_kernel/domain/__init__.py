"""
Pure domain layer.

This module contains pure data transfer objects and domain logic with NO
dependencies on the ORM, the database or I/O (the system clock excepted).
All domain objects are immutable and deterministic.
"""

from billing_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from billing_kernel.domain.document_policy import (
    DocumentKind,
    DocumentTypePolicy,
    NumberingPolicy,
    InventoryEffect,
    LedgerSide,
    PartyKind,
    PolicyTable,
)
from billing_kernel.domain.dtos import (
    AdvanceChange,
    AllocatedNumber,
    BranchInfo,
    CompanyInfo,
    DocumentInfo,
    DocumentLineInfo,
    ItemInfo,
    LedgerPosting,
    Page,
    PartyInfo,
    PaymentAllocationInfo,
    StockChange,
)
from billing_kernel.domain.fiscal import fiscal_year_for, format_document_number
from billing_kernel.domain.payloads import (
    AllocationInput,
    DocumentInput,
    DocumentPatch,
    LineInput,
    StockAdjustmentInput,
    StockMovementInput,
    coerce,
)
from billing_kernel.domain.tax import (
    DocumentTotals,
    LineTax,
    aggregate,
    compute_line_tax,
    is_interstate_supply,
    split_inclusive_price,
)

__all__ = [
    # Time
    "Clock",
    "DeterministicClock",
    "SystemClock",
    # Policy
    "DocumentKind",
    "DocumentTypePolicy",
    "NumberingPolicy",
    "InventoryEffect",
    "LedgerSide",
    "PartyKind",
    "PolicyTable",
    # DTOs
    "AdvanceChange",
    "AllocatedNumber",
    "BranchInfo",
    "CompanyInfo",
    "DocumentInfo",
    "DocumentLineInfo",
    "ItemInfo",
    "LedgerPosting",
    "Page",
    "PartyInfo",
    "PaymentAllocationInfo",
    "StockChange",
    # Payloads
    "AllocationInput",
    "DocumentInput",
    "DocumentPatch",
    "LineInput",
    "StockAdjustmentInput",
    "StockMovementInput",
    "coerce",
    # Pure functions
    "fiscal_year_for",
    "format_document_number",
    "DocumentTotals",
    "LineTax",
    "aggregate",
    "compute_line_tax",
    "is_interstate_supply",
    "split_inclusive_price",
]
