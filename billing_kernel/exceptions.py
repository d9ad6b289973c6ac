"""
Typed Exception Hierarchy for the Billing Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the document engine (HTTP handlers, import jobs, tests) need to
react differently to a missing branch, a stock shortfall and a lost sequence
race.  Parsing message strings for that is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        engine.create_document("invoice", payload)
    except InsufficientStockError as e:
        prompt_user(item=e.item_id, available=e.available, requested=e.requested)
    except SequenceContentionError:
        retry_whole_operation()

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BillingKernelError (base)
    |
    +-- ValidationError
    |
    +-- NotFoundError
    |   +-- CompanyNotFoundError
    |   +-- BranchNotFoundError
    |   +-- PartyNotFoundError
    |   +-- ItemNotFoundError
    |   +-- DocumentNotFoundError
    |
    +-- SequenceError
    |   +-- SequenceContentionError
    |
    +-- InventoryError
    |   +-- InsufficientStockError
    |   +-- InvalidStockAdjustmentError
    |
    +-- DocumentError
    |   +-- UnsupportedDocumentTypeError
    |   +-- DocumentLockedError
    |   +-- InvalidStatusTransitionError
    |   +-- InvalidParentDocumentError
    |   +-- PaymentAllocationError
    |
    +-- PersistenceFailureError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                        | When Raised
-------------|-----------------------------|-----------------------------------------
Validation   | VALIDATION_ERROR            | Missing or malformed payload field
-------------|-----------------------------|-----------------------------------------
Not found    | COMPANY_NOT_FOUND           | Company id unknown
             | BRANCH_NOT_FOUND            | Branch id unknown for company
             | PARTY_NOT_FOUND             | Customer/vendor id unknown for company
             | ITEM_NOT_FOUND              | Item id unknown for company
             | DOCUMENT_NOT_FOUND          | Document id unknown
-------------|-----------------------------|-----------------------------------------
Sequence     | SEQUENCE_CONTENTION         | CAS lost twice; retry the operation
-------------|-----------------------------|-----------------------------------------
Inventory    | INSUFFICIENT_STOCK          | Outbound quantity > available stock
             | INVALID_STOCK_ADJUSTMENT    | Adjustment would make stock negative
-------------|-----------------------------|-----------------------------------------
Document     | UNSUPPORTED_DOCUMENT_TYPE   | Type not in the policy table
             | DOCUMENT_LOCKED             | Delete/edit of approved/verified/paid doc
             | INVALID_STATUS_TRANSITION   | Transition not allowed by policy
             | INVALID_PARENT_DOCUMENT     | Parent of wrong type/party/company
             | PAYMENT_ALLOCATION_ERROR    | Over-allocation or foreign document
-------------|-----------------------------|-----------------------------------------
Persistence  | PERSISTENCE_FAILURE         | Storage failed mid-pipeline
-------------|-----------------------------|-----------------------------------------
Immutability | IMMUTABILITY_VIOLATION      | UPDATE/DELETE of an append-only row

===============================================================================
HANDLING PATTERNS
===============================================================================

1. Only SequenceContentionError is meant to be retried, and only by
   re-running the whole operation.

2. PersistenceFailureError is raised AFTER the compensation attempt.  If a
   compensating step failed too, the failure is logged and attached to the
   original exception via ``add_note`` -- it never replaces it.

3. InsufficientStockError carries ``available`` and ``requested`` so the
   caller can decide whether to block or prompt.
"""

from decimal import Decimal


class BillingKernelError(Exception):
    """
    Base exception for all billing kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "BILLING_KERNEL_ERROR"


# Validation


class ValidationError(BillingKernelError):
    """A required field is missing or a field value is malformed."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


# Lookups


class NotFoundError(BillingKernelError):
    """Base exception for unresolved references."""

    code: str = "NOT_FOUND"
    entity_type: str = "entity"

    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__(f"{self.entity_type} not found: {entity_id}")


class CompanyNotFoundError(NotFoundError):
    code: str = "COMPANY_NOT_FOUND"
    entity_type: str = "Company"


class BranchNotFoundError(NotFoundError):
    code: str = "BRANCH_NOT_FOUND"
    entity_type: str = "Branch"


class PartyNotFoundError(NotFoundError):
    code: str = "PARTY_NOT_FOUND"
    entity_type: str = "Party"


class ItemNotFoundError(NotFoundError):
    code: str = "ITEM_NOT_FOUND"
    entity_type: str = "Item"


class DocumentNotFoundError(NotFoundError):
    code: str = "DOCUMENT_NOT_FOUND"
    entity_type: str = "Document"


# Sequence allocation


class SequenceError(BillingKernelError):
    """Base exception for document number allocation errors."""

    code: str = "SEQUENCE_ERROR"


class SequenceContentionError(SequenceError):
    """
    Compare-and-swap on the sequence row failed on the retry as well.

    The caller should retry the whole operation.  No number was issued.
    """

    code: str = "SEQUENCE_CONTENTION"

    def __init__(
        self,
        company_id: str,
        branch_id: str,
        document_type: str,
        fiscal_year: str,
        attempts: int,
    ):
        self.company_id = company_id
        self.branch_id = branch_id
        self.document_type = document_type
        self.fiscal_year = fiscal_year
        self.attempts = attempts
        super().__init__(
            f"Sequence contention for {document_type} "
            f"(branch {branch_id}, FY {fiscal_year}) after {attempts} attempts"
        )


# Inventory


class InventoryError(BillingKernelError):
    """Base exception for stock bookkeeping errors."""

    code: str = "INVENTORY_ERROR"


class InsufficientStockError(InventoryError):
    """Outbound movement exceeds available (unreserved) stock."""

    code: str = "INSUFFICIENT_STOCK"

    def __init__(self, item_id: str, available: Decimal, requested: Decimal):
        self.item_id = item_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for item {item_id}: "
            f"available={available}, requested={requested}"
        )


class InvalidStockAdjustmentError(InventoryError):
    """Stock adjustment would drive current stock below zero."""

    code: str = "INVALID_STOCK_ADJUSTMENT"

    def __init__(self, item_id: str, current_stock: Decimal, reason: str):
        self.item_id = item_id
        self.current_stock = current_stock
        self.reason = reason
        super().__init__(
            f"Invalid stock adjustment for item {item_id} "
            f"(current={current_stock}): {reason}"
        )


# Documents


class DocumentError(BillingKernelError):
    """Base exception for document lifecycle errors."""

    code: str = "DOCUMENT_ERROR"


class UnsupportedDocumentTypeError(DocumentError):
    code: str = "UNSUPPORTED_DOCUMENT_TYPE"

    def __init__(self, document_type: str):
        self.document_type = document_type
        super().__init__(f"Unsupported document type: {document_type}")


class DocumentLockedError(DocumentError):
    """Document is in a locked state and cannot be deleted or edited."""

    code: str = "DOCUMENT_LOCKED"

    def __init__(self, document_id: str, document_number: str, status: str, reason: str):
        self.document_id = document_id
        self.document_number = document_number
        self.status = status
        self.reason = reason
        super().__init__(
            f"Document {document_number} ({status}) is locked: {reason}"
        )


class InvalidStatusTransitionError(DocumentError):
    code: str = "INVALID_STATUS_TRANSITION"

    def __init__(self, document_type: str, from_status: str, to_status: str):
        self.document_type = document_type
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Cannot move {document_type} from '{from_status}' to '{to_status}'"
        )


class InvalidParentDocumentError(DocumentError):
    code: str = "INVALID_PARENT_DOCUMENT"

    def __init__(self, parent_id: str, reason: str):
        self.parent_id = parent_id
        self.reason = reason
        super().__init__(f"Invalid parent document {parent_id}: {reason}")


class PaymentAllocationError(DocumentError):
    code: str = "PAYMENT_ALLOCATION_ERROR"

    def __init__(self, document_id: str, reason: str):
        self.document_id = document_id
        self.reason = reason
        super().__init__(f"Cannot allocate payment to {document_id}: {reason}")


# Persistence


class PersistenceFailureError(BillingKernelError):
    """
    Storage failed in the middle of a multi-step operation.

    Raised after compensation of the steps already applied was attempted.
    """

    code: str = "PERSISTENCE_FAILURE"

    def __init__(self, step: str, detail: str):
        self.step = step
        self.detail = detail
        super().__init__(f"Persistence failure during {step}: {detail}")


# Immutability


class ImmutabilityError(BillingKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an append-only record.

    InventoryMovement, LedgerEntry and AdvanceEntry rows are never changed;
    corrections are new rows.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
