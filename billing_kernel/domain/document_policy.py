"""
Document policy -- per-type behaviour table.

Responsibility:
    Describes, for every document type, what the single parameterised
    composer must do: number prefix, counterparty kind, inventory effect,
    ledger side, lifecycle states and transitions, lock rules and allowed
    parents.  The table is built from configuration by
    ``billing_config.bridges.build_policy_table``; the kernel never reads
    configuration itself.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Every status named in transitions, locks or editable sets is a known
      status of the type (checked at construction).
    - A transition is allowed only if listed; there is no implicit
      self-transition.

Failure modes:
    - UnsupportedDocumentTypeError from PolicyTable.get().
    - InvalidStatusTransitionError from DocumentTypePolicy.check_transition().
    - ValueError when a policy is internally inconsistent.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Iterable, Mapping

from billing_kernel.exceptions import (
    InvalidStatusTransitionError,
    UnsupportedDocumentTypeError,
)


class InventoryEffect(str, Enum):
    """What a document does to stock counters of tracked items."""

    NONE = "none"
    INBOUND = "in"
    OUTBOUND = "out"
    RESERVE = "reserve"


class LedgerSide(str, Enum):
    """Side of the party ledger the document total is posted to."""

    NONE = "none"
    DEBIT = "debit"
    CREDIT = "credit"


class PartyKind(str, Enum):
    CUSTOMER = "customer"
    VENDOR = "vendor"


class DocumentKind(str, Enum):
    """
    Structural family of a document type.

    Contract:
        STANDARD documents carry item lines.  NOTE documents carry lines and
        settle against their parent's balance.  PAYMENT documents carry no
        lines; their amount is allocated to open documents of the
        ``allocates_to`` type.
    """

    STANDARD = "standard"
    NOTE = "note"
    PAYMENT = "payment"


@dataclass(frozen=True)
class DocumentTypePolicy:
    """
    Behaviour of one document type.

    Contract:
        Immutable.  ``transitions`` maps a status to the statuses reachable
        from it.  ``parent_status_on_create`` maps a parent document type to
        the status the parent moves to when this type is raised from it.

    Non-goals:
        - Does not know about persistence; the composer applies it.
    """

    document_type: str
    prefix: str
    party_kind: PartyKind
    kind: DocumentKind = DocumentKind.STANDARD
    inventory_effect: InventoryEffect = InventoryEffect.NONE
    ledger_side: LedgerSide = LedgerSide.NONE
    initial_status: str = "draft"
    selectable_statuses: frozenset[str] = frozenset()
    statuses: frozenset[str] = frozenset()
    transitions: Mapping[str, frozenset[str]] = field(default_factory=dict)
    locked_statuses: frozenset[str] = frozenset()
    lock_when_paid: bool = False
    editable_statuses: frozenset[str] = frozenset()
    parent_types: frozenset[str] = frozenset()
    requires_parent: bool = False
    parent_status_on_create: Mapping[str, str] = field(default_factory=dict)
    # Parent types whose stock effect already happened (bill from a receipt)
    skip_inventory_for_parent_types: frozenset[str] = frozenset()
    # Statuses that undo the document's stock and ledger effects when entered
    voiding_statuses: frozenset[str] = frozenset()
    # Statuses in which a RESERVE document still holds its reservation
    holding_statuses: frozenset[str] = frozenset()
    # Note statuses: pending while the parent has a balance, else settled
    note_open_status: str | None = None
    note_settled_status: str | None = None
    tracks_payment: bool = False
    tracks_receipts: bool = False
    receipt_statuses: Mapping[str, str] = field(default_factory=dict)
    allocates_to: str | None = None
    can_apply_advance: bool = False

    def __post_init__(self):
        object.__setattr__(
            self,
            "transitions",
            MappingProxyType({k: frozenset(v) for k, v in self.transitions.items()}),
        )
        object.__setattr__(
            self, "parent_status_on_create", MappingProxyType(dict(self.parent_status_on_create))
        )
        object.__setattr__(
            self, "receipt_statuses", MappingProxyType(dict(self.receipt_statuses))
        )

        known = set(self.statuses) | {self.initial_status}
        for source, targets in self.transitions.items():
            known.add(source)
            known.update(targets)
        object.__setattr__(self, "statuses", frozenset(known))

        selectable = set(self.selectable_statuses) | {self.initial_status}
        object.__setattr__(self, "selectable_statuses", frozenset(selectable))

        for name in ("locked_statuses", "editable_statuses", "voiding_statuses", "holding_statuses"):
            unknown = set(getattr(self, name)) - known
            if unknown:
                raise ValueError(
                    f"{self.document_type}: {name} names unknown statuses {sorted(unknown)}"
                )
        if self.kind == DocumentKind.PAYMENT and self.allocates_to is None:
            raise ValueError(f"{self.document_type}: payment types must set allocates_to")
        if self.kind == DocumentKind.NOTE and not self.parent_types:
            raise ValueError(f"{self.document_type}: note types must list parent_types")

    @property
    def has_lines(self) -> bool:
        return self.kind != DocumentKind.PAYMENT

    def can_transition(self, from_status: str, to_status: str) -> bool:
        return to_status in self.transitions.get(from_status, frozenset())

    def check_transition(self, from_status: str, to_status: str) -> None:
        if not self.can_transition(from_status, to_status):
            raise InvalidStatusTransitionError(self.document_type, from_status, to_status)

    def lock_reason(self, status: str, paid_amount) -> str | None:
        """Why a document in this state may not be deleted or edited, if it may not."""
        if status in self.locked_statuses:
            return f"status '{status}' is locked"
        if self.lock_when_paid and paid_amount > 0:
            return "payments have been recorded against it"
        return None

    def is_editable(self, status: str) -> bool:
        return status in self.editable_statuses


@dataclass(frozen=True)
class NumberingPolicy:
    """Defaults for new number series."""

    padding: int = 4
    reset_policy: str = "yearly"
    fiscal_start_month: int = 4
    default_branch_prefix: str = "BR"

    def __post_init__(self):
        if self.padding < 1:
            raise ValueError(f"padding must be >= 1, got {self.padding}")
        if self.reset_policy not in ("yearly", "never"):
            raise ValueError(f"Unknown reset policy {self.reset_policy!r}")
        if not 1 <= self.fiscal_start_month <= 12:
            raise ValueError(f"fiscal_start_month must be 1..12, got {self.fiscal_start_month}")


class PolicyTable:
    """
    Lookup of DocumentTypePolicy by document type.

    Guarantees:
        - Unknown types raise UnsupportedDocumentTypeError, never KeyError.
    """

    def __init__(
        self,
        policies: Iterable[DocumentTypePolicy],
        numbering: NumberingPolicy | None = None,
        money_places: int = 2,
    ):
        self.numbering = numbering or NumberingPolicy()
        self.money_places = money_places
        self._policies: dict[str, DocumentTypePolicy] = {}
        for policy in policies:
            if policy.document_type in self._policies:
                raise ValueError(f"Duplicate policy for {policy.document_type}")
            self._policies[policy.document_type] = policy
        for policy in self._policies.values():
            for parent in policy.parent_types:
                if parent not in self._policies:
                    raise ValueError(
                        f"{policy.document_type}: unknown parent type {parent}"
                    )
            if policy.allocates_to and policy.allocates_to not in self._policies:
                raise ValueError(
                    f"{policy.document_type}: unknown allocation target {policy.allocates_to}"
                )

    def get(self, document_type: str) -> DocumentTypePolicy:
        try:
            return self._policies[document_type]
        except KeyError:
            raise UnsupportedDocumentTypeError(document_type) from None

    def __contains__(self, document_type: str) -> bool:
        return document_type in self._policies

    def __iter__(self):
        return iter(self._policies.values())

    def __len__(self) -> int:
        return len(self._policies)

    @property
    def document_types(self) -> tuple[str, ...]:
        return tuple(self._policies)
