"""
ORM-Level Append-Only Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

Stock movements and party ledger postings are the evidence behind every
stock counter and running balance.  If a row could be edited in place, the
counters could no longer be re-derived from history.  Corrections are
therefore always NEW rows that reference the row they undo.

SQLAlchemy fires mapper events before UPDATE/DELETE statements reach the
database.  We register listeners that reject them:

    session.flush()
         |
         v
    [before_update] --> _reject_update() --> ImmutabilityViolationError
         |
    [before_delete] --> _reject_delete() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if no protected row is touched)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity              | When Immutable          | Correction
--------------------|-------------------------|------------------------------
InventoryMovement   | ALWAYS (from creation)  | Reversal movement
LedgerEntry         | ALWAYS (from creation)  | Opposite entry
AdvanceEntry        | ALWAYS (from creation)  | Opposite advance entry

Bulk ``session.execute(update(...))`` bypasses mapper events; the services
never issue bulk statements against these tables.

===============================================================================
USAGE
===============================================================================

    from billing_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # idempotent

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import event

from billing_kernel.exceptions import ImmutabilityViolationError
from billing_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _protected_models() -> tuple[type, ...]:
    # Inline import: models import from db.
    from billing_kernel.models.inventory import InventoryMovement
    from billing_kernel.models.ledger import AdvanceEntry, LedgerEntry

    return (InventoryMovement, LedgerEntry, AdvanceEntry)


def _reject(target, operation: str) -> None:
    entity_type = type(target).__name__
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
        },
    )
    verb = "modified" if operation == "UPDATE" else "deleted"
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=f"{entity_type} rows are append-only and cannot be {verb}",
    )


def _reject_update(mapper, connection, target):
    """Block any UPDATE of an append-only row."""
    _reject(target, "UPDATE")


def _reject_delete(mapper, connection, target):
    """Block any DELETE of an append-only row."""
    _reject(target, "DELETE")


def register_immutability_listeners() -> None:
    """
    Register the append-only listeners on every protected model.

    Safe to call more than once; already-registered listeners are skipped.
    """
    for model in _protected_models():
        if not event.contains(model, "before_update", _reject_update):
            event.listen(model, "before_update", _reject_update)
        if not event.contains(model, "before_delete", _reject_delete):
            event.listen(model, "before_delete", _reject_delete)


def unregister_immutability_listeners() -> None:
    """
    Remove the append-only listeners.

    WARNING: Only use this in tests that need to simulate tampering.
    """
    for model in _protected_models():
        if event.contains(model, "before_update", _reject_update):
            event.remove(model, "before_update", _reject_update)
        if event.contains(model, "before_delete", _reject_delete):
            event.remove(model, "before_delete", _reject_delete)
