"""
Engine configuration schema.

Defines the human-authored source artifact for the document engine.  YAML
is parsed into these types by the loader, checked by the validator and
translated into the kernel's PolicyTable by the bridges.

Key distinction:
  EngineConfig = source artifact (human-authored, versioned, checksummed)
  PolicyTable  = runtime artifact owned by the kernel
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Numbering
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NumberingDefaults:
    """Defaults applied when a number series is created."""

    padding: int = 4
    reset_policy: str = "yearly"  # yearly | never
    fiscal_start_month: int = 4
    default_branch_prefix: str = "BR"


# ---------------------------------------------------------------------------
# Document types (declarative data, no executable logic)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DocumentTypeDef:
    """Behaviour of one document type as written in configuration."""

    name: str
    prefix: str
    party_kind: str  # customer | vendor
    kind: str = "standard"  # standard | note | payment
    inventory_effect: str = "none"  # none | in | out | reserve
    ledger_side: str = "none"  # none | debit | credit
    initial_status: str = "draft"
    selectable_statuses: tuple[str, ...] = ()
    transitions: tuple[tuple[str, tuple[str, ...]], ...] = ()
    locked_statuses: tuple[str, ...] = ()
    lock_when_paid: bool = False
    editable_statuses: tuple[str, ...] = ()
    parent_types: tuple[str, ...] = ()
    requires_parent: bool = False
    parent_status_on_create: tuple[tuple[str, str], ...] = ()
    skip_inventory_for_parent_types: tuple[str, ...] = ()
    voiding_statuses: tuple[str, ...] = ()
    holding_statuses: tuple[str, ...] = ()
    note_open_status: str | None = None
    note_settled_status: str | None = None
    tracks_payment: bool = False
    tracks_receipts: bool = False
    receipt_statuses: tuple[tuple[str, str], ...] = ()
    allocates_to: str | None = None
    can_apply_advance: bool = False

    @property
    def statuses(self) -> frozenset[str]:
        """Every status the definition mentions."""
        known = {self.initial_status, *self.selectable_statuses}
        for source, targets in self.transitions:
            known.add(source)
            known.update(targets)
        for status in (self.note_open_status, self.note_settled_status):
            if status:
                known.add(status)
        known.update(status for _, status in self.receipt_statuses)
        return frozenset(known)


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EngineConfig:
    """
    Complete, validated configuration of the document engine.

    ``checksum`` is the SHA-256 of the canonical JSON form of the source
    document and identifies the configuration in logs.
    """

    config_id: str
    version: int
    checksum: str
    money_places: int = 2
    numbering: NumberingDefaults = field(default_factory=NumberingDefaults)
    document_types: tuple[DocumentTypeDef, ...] = ()
    source_path: str | None = None

    def document_type(self, name: str) -> DocumentTypeDef:
        for definition in self.document_types:
            if definition.name == name:
                return definition
        raise KeyError(name)

    @property
    def document_type_names(self) -> tuple[str, ...]:
        return tuple(d.name for d in self.document_types)
