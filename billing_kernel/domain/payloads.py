"""
Payloads -- typed inputs of the document engine operations.

Responsibility:
    Frozen dataclasses for create/update/stock payloads, and ``coerce()``,
    which accepts either an instance or a plain mapping (e.g. decoded JSON)
    and returns a validated instance.  Strings are converted to UUID, date
    and Decimal; nested line and allocation mappings are converted too.

Architecture position:
    Kernel > Domain -- pure, zero I/O.

Failure modes:
    - ValidationError naming the offending field for unknown keys, missing
      required keys and unconvertible values.
"""

from __future__ import annotations

from dataclasses import MISSING, dataclass, fields
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Mapping, TypeVar
from uuid import UUID

from billing_kernel.db.types import to_decimal
from billing_kernel.exceptions import ValidationError

P = TypeVar("P")


@dataclass(frozen=True)
class LineInput:
    item_id: UUID
    quantity: Decimal
    rate: Decimal | None = None
    discount_percentage: Decimal = Decimal("0")
    description: str | None = None


@dataclass(frozen=True)
class AllocationInput:
    document_id: UUID
    amount: Decimal


@dataclass(frozen=True)
class DocumentInput:
    """
    Input of create_document.

    Payment types use ``amount`` and ``allocations`` instead of ``lines``.
    ``status`` may pick a non-default initial status where the type allows
    it (e.g. a draft invoice).
    """

    company_id: UUID
    branch_id: UUID
    party_id: UUID
    lines: tuple[LineInput, ...] = ()
    document_date: date | None = None
    due_date: date | None = None
    valid_until: date | None = None
    parent_document_id: UUID | None = None
    status: str | None = None
    discount_percentage: Decimal | None = None
    discount_amount: Decimal | None = None
    amount: Decimal | None = None
    allocations: tuple[AllocationInput, ...] = ()
    auto_allocate: bool = False
    apply_advance: bool = False
    payment_method: str | None = None
    reference_number: str | None = None
    notes: str | None = None
    created_by_id: UUID | None = None


@dataclass(frozen=True)
class DocumentPatch:
    """Input of update_document.  Only fields that are not None are applied."""

    status: str | None = None
    notes: str | None = None
    reference_number: str | None = None
    due_date: date | None = None
    valid_until: date | None = None
    lines: tuple[LineInput, ...] | None = None
    discount_percentage: Decimal | None = None
    discount_amount: Decimal | None = None


@dataclass(frozen=True)
class StockMovementInput:
    company_id: UUID
    item_id: UUID
    movement_type: str
    quantity: Decimal
    rate: Decimal = Decimal("0")
    branch_id: UUID | None = None
    reference_type: str | None = None
    reference_id: UUID | None = None
    reference_number: str | None = None
    movement_date: date | None = None
    notes: str | None = None


@dataclass(frozen=True)
class StockAdjustmentInput:
    company_id: UUID
    item_id: UUID
    value: Decimal
    mode: str = "set"
    branch_id: UUID | None = None
    rate: Decimal = Decimal("0")
    adjustment_date: date | None = None
    notes: str | None = None


# ----------------------------------------------------------------------------
# Coercion
# ----------------------------------------------------------------------------


def _to_uuid(value: Any, field: str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError as exc:
        raise ValidationError(field, f"not a valid id: {value!r}") from exc


def _to_date(value: Any, field: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError as exc:
        raise ValidationError(field, f"not an ISO date: {value!r}") from exc


def _to_dec(value: Any, field: str) -> Decimal:
    try:
        return to_decimal(value, field)
    except ValueError as exc:
        raise ValidationError(field, str(exc)) from exc


def _to_bool(value: Any, field: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ValidationError(field, f"must be a boolean, got {value!r}")


def _to_str(value: Any, field: str) -> str:
    if isinstance(value, str):
        return value
    raise ValidationError(field, f"must be a string, got {type(value).__name__}")


def _many(item_type: type) -> Callable[[Any, str], tuple]:
    def convert(value: Any, field: str) -> tuple:
        if isinstance(value, (str, bytes)) or not hasattr(value, "__iter__"):
            raise ValidationError(field, "must be a list")
        return tuple(
            coerce(item_type, item, prefix=f"{field}[{index}]")
            for index, item in enumerate(value)
        )

    return convert


_CONVERTERS: dict[type, dict[str, Callable[[Any, str], Any]]] = {
    LineInput: {
        "item_id": _to_uuid,
        "quantity": _to_dec,
        "rate": _to_dec,
        "discount_percentage": _to_dec,
        "description": _to_str,
    },
    AllocationInput: {
        "document_id": _to_uuid,
        "amount": _to_dec,
    },
    DocumentInput: {
        "company_id": _to_uuid,
        "branch_id": _to_uuid,
        "party_id": _to_uuid,
        "lines": _many(LineInput),
        "document_date": _to_date,
        "due_date": _to_date,
        "valid_until": _to_date,
        "parent_document_id": _to_uuid,
        "status": _to_str,
        "discount_percentage": _to_dec,
        "discount_amount": _to_dec,
        "amount": _to_dec,
        "allocations": _many(AllocationInput),
        "auto_allocate": _to_bool,
        "apply_advance": _to_bool,
        "payment_method": _to_str,
        "reference_number": _to_str,
        "notes": _to_str,
        "created_by_id": _to_uuid,
    },
    DocumentPatch: {
        "status": _to_str,
        "notes": _to_str,
        "reference_number": _to_str,
        "due_date": _to_date,
        "valid_until": _to_date,
        "lines": _many(LineInput),
        "discount_percentage": _to_dec,
        "discount_amount": _to_dec,
    },
    StockMovementInput: {
        "company_id": _to_uuid,
        "item_id": _to_uuid,
        "movement_type": _to_str,
        "quantity": _to_dec,
        "rate": _to_dec,
        "branch_id": _to_uuid,
        "reference_type": _to_str,
        "reference_id": _to_uuid,
        "reference_number": _to_str,
        "movement_date": _to_date,
        "notes": _to_str,
    },
    StockAdjustmentInput: {
        "company_id": _to_uuid,
        "item_id": _to_uuid,
        "value": _to_dec,
        "mode": _to_str,
        "branch_id": _to_uuid,
        "rate": _to_dec,
        "adjustment_date": _to_date,
        "notes": _to_str,
    },
}


def coerce(payload_type: type[P], payload: P | Mapping[str, Any], prefix: str = "") -> P:
    """
    Return ``payload`` as an instance of ``payload_type``.

    Instances pass through unchanged.  Mappings are converted field by
    field.  A ``None`` value means "not supplied" and leaves the field at
    its default, so ``"allocations": null`` becomes ``()``.
    """
    if isinstance(payload, payload_type):
        return payload
    if not isinstance(payload, Mapping):
        raise ValidationError(
            prefix or payload_type.__name__,
            f"expected {payload_type.__name__} or mapping, got {type(payload).__name__}",
        )

    converters = _CONVERTERS[payload_type]
    unknown = set(payload) - set(converters)
    if unknown:
        name = sorted(unknown)[0]
        raise ValidationError(f"{prefix}.{name}" if prefix else name, "unknown field")

    kwargs: dict[str, Any] = {}
    for f in fields(payload_type):
        qualified = f"{prefix}.{f.name}" if prefix else f.name
        if f.name not in payload:
            if f.default is MISSING and f.default_factory is MISSING:
                raise ValidationError(qualified, "is required")
            continue
        value = payload[f.name]
        if value is None:
            if f.default is MISSING and f.default_factory is MISSING:
                raise ValidationError(qualified, "is required")
            continue
        kwargs[f.name] = converters[f.name](value, qualified)
    return payload_type(**kwargs)
