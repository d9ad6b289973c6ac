"""
Configuration Validator (``billing_config.validator``).

Responsibility
--------------
Checks an ``EngineConfig`` for structural integrity before the bridges turn
it into a PolicyTable: known enum values, statuses that exist, parents and
allocation targets that are defined, unique prefixes.

Failure modes
-------------
* Validation errors  -> the configuration MUST NOT be used.
* Validation warnings  -> usable, but should be reviewed.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from billing_config.schema import DocumentTypeDef, EngineConfig

_KINDS = frozenset({"standard", "note", "payment"})
_INVENTORY_EFFECTS = frozenset({"none", "in", "out", "reserve"})
_LEDGER_SIDES = frozenset({"none", "debit", "credit"})
_PARTY_KINDS = frozenset({"customer", "vendor"})
_RESET_POLICIES = frozenset({"yearly", "never"})
_RECEIPT_STAGES = frozenset({"none", "partial", "complete"})


@dataclass
class ConfigValidationResult:
    """
    Result of configuration validation.

    ``is_valid`` is True only when ``errors`` is empty.
    """

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)


def validate_configuration(config: EngineConfig) -> ConfigValidationResult:
    """Validate a parsed configuration."""
    result = ConfigValidationResult()

    _validate_numbering(config, result)
    _validate_uniqueness(config, result)
    names = set(config.document_type_names)
    for definition in config.document_types:
        _validate_enums(definition, result)
        _validate_statuses(definition, result)
        _validate_references(definition, names, result)
        _validate_kind_rules(definition, result)

    return result


def _validate_numbering(config: EngineConfig, result: ConfigValidationResult) -> None:
    numbering = config.numbering
    if numbering.padding < 1:
        result.add_error(f"numbering.padding must be >= 1, got {numbering.padding}")
    if numbering.reset_policy not in _RESET_POLICIES:
        result.add_error(f"numbering.reset_policy '{numbering.reset_policy}' is unknown")
    if not 1 <= numbering.fiscal_start_month <= 12:
        result.add_error(
            f"numbering.fiscal_start_month must be 1..12, got {numbering.fiscal_start_month}"
        )
    if not 0 <= config.money_places <= 9:
        result.add_error(f"money_places must be 0..9, got {config.money_places}")


def _validate_uniqueness(config: EngineConfig, result: ConfigValidationResult) -> None:
    seen: dict[str, str] = {}
    for definition in config.document_types:
        if definition.prefix in seen:
            result.add_error(
                f"Prefix '{definition.prefix}' is used by both "
                f"'{seen[definition.prefix]}' and '{definition.name}'"
            )
        seen[definition.prefix] = definition.name


def _validate_enums(definition: DocumentTypeDef, result: ConfigValidationResult) -> None:
    checks = (
        ("kind", definition.kind, _KINDS),
        ("inventory_effect", definition.inventory_effect, _INVENTORY_EFFECTS),
        ("ledger_side", definition.ledger_side, _LEDGER_SIDES),
        ("party_kind", definition.party_kind, _PARTY_KINDS),
    )
    for name, value, allowed in checks:
        if value not in allowed:
            result.add_error(
                f"Document type '{definition.name}': {name} '{value}' "
                f"is not one of {sorted(allowed)}"
            )
    for stage, _ in definition.receipt_statuses:
        if stage not in _RECEIPT_STAGES:
            result.add_error(
                f"Document type '{definition.name}': receipt stage '{stage}' is unknown"
            )


def _validate_statuses(definition: DocumentTypeDef, result: ConfigValidationResult) -> None:
    known = definition.statuses
    for name in ("locked_statuses", "editable_statuses", "voiding_statuses", "holding_statuses"):
        for status in getattr(definition, name):
            if status not in known:
                result.add_error(
                    f"Document type '{definition.name}': {name} names unknown status '{status}'"
                )
    if not definition.transitions and definition.kind != "payment":
        result.add_warning(f"Document type '{definition.name}' has no status transitions")


def _validate_references(
    definition: DocumentTypeDef,
    names: set[str],
    result: ConfigValidationResult,
) -> None:
    for parent in definition.parent_types:
        if parent not in names:
            result.add_error(
                f"Document type '{definition.name}': parent type '{parent}' is not defined"
            )
    for parent, _ in definition.parent_status_on_create:
        if parent not in definition.parent_types:
            result.add_error(
                f"Document type '{definition.name}': parent_status_on_create names "
                f"'{parent}', which is not a parent type"
            )
    for parent in definition.skip_inventory_for_parent_types:
        if parent not in definition.parent_types:
            result.add_error(
                f"Document type '{definition.name}': skip_inventory_for_parent_types names "
                f"'{parent}', which is not a parent type"
            )
    if definition.allocates_to is not None and definition.allocates_to not in names:
        result.add_error(
            f"Document type '{definition.name}': allocates_to '{definition.allocates_to}' "
            f"is not defined"
        )


def _validate_kind_rules(definition: DocumentTypeDef, result: ConfigValidationResult) -> None:
    if definition.kind == "payment":
        if definition.allocates_to is None:
            result.add_error(f"Payment type '{definition.name}' must set allocates_to")
        if definition.inventory_effect != "none":
            result.add_error(f"Payment type '{definition.name}' cannot move stock")
    if definition.kind == "note":
        if not definition.parent_types:
            result.add_error(f"Note type '{definition.name}' must list parent_types")
        if not (definition.note_open_status and definition.note_settled_status):
            result.add_error(
                f"Note type '{definition.name}' must set note_open_status and note_settled_status"
            )
    if definition.holding_statuses and definition.inventory_effect != "reserve":
        result.add_warning(
            f"Document type '{definition.name}' lists holding_statuses but does not reserve stock"
        )
