"""
Config → Kernel Bridges.

Functions that convert EngineConfig artifacts into kernel-compatible
inputs. These live in billing_config (the producer) because the kernel
must NEVER import billing_config.

Usage:
    from billing_config.bridges import build_policy_table

    config = get_active_config()
    policies = build_policy_table(config)
"""

from __future__ import annotations

from billing_config.schema import DocumentTypeDef, EngineConfig
from billing_kernel.domain.document_policy import (
    DocumentKind,
    DocumentTypePolicy,
    InventoryEffect,
    LedgerSide,
    NumberingPolicy,
    PartyKind,
    PolicyTable,
)


def build_document_policy(definition: DocumentTypeDef) -> DocumentTypePolicy:
    """Translate one DocumentTypeDef into the kernel's DocumentTypePolicy."""
    return DocumentTypePolicy(
        document_type=definition.name,
        prefix=definition.prefix,
        party_kind=PartyKind(definition.party_kind),
        kind=DocumentKind(definition.kind),
        inventory_effect=InventoryEffect(definition.inventory_effect),
        ledger_side=LedgerSide(definition.ledger_side),
        initial_status=definition.initial_status,
        selectable_statuses=frozenset(definition.selectable_statuses),
        statuses=definition.statuses,
        transitions={source: frozenset(targets) for source, targets in definition.transitions},
        locked_statuses=frozenset(definition.locked_statuses),
        lock_when_paid=definition.lock_when_paid,
        editable_statuses=frozenset(definition.editable_statuses),
        parent_types=frozenset(definition.parent_types),
        requires_parent=definition.requires_parent,
        parent_status_on_create=dict(definition.parent_status_on_create),
        skip_inventory_for_parent_types=frozenset(definition.skip_inventory_for_parent_types),
        voiding_statuses=frozenset(definition.voiding_statuses),
        holding_statuses=frozenset(definition.holding_statuses),
        note_open_status=definition.note_open_status,
        note_settled_status=definition.note_settled_status,
        tracks_payment=definition.tracks_payment,
        tracks_receipts=definition.tracks_receipts,
        receipt_statuses=dict(definition.receipt_statuses),
        allocates_to=definition.allocates_to,
        can_apply_advance=definition.can_apply_advance,
    )


def build_numbering_policy(config: EngineConfig) -> NumberingPolicy:
    numbering = config.numbering
    return NumberingPolicy(
        padding=numbering.padding,
        reset_policy=numbering.reset_policy,
        fiscal_start_month=numbering.fiscal_start_month,
        default_branch_prefix=numbering.default_branch_prefix,
    )


def build_policy_table(config: EngineConfig) -> PolicyTable:
    """Build the PolicyTable the document engine runs on.

    The kernel re-checks cross-type references (parents, allocation
    targets) when the table is constructed, so a config that skipped
    validation still cannot produce an inconsistent table.
    """
    return PolicyTable(
        (build_document_policy(d) for d in config.document_types),
        numbering=build_numbering_policy(config),
        money_places=config.money_places,
    )
