"""
Configuration Loader (``billing_config.loader``).

Responsibility
--------------
Loads the engine's YAML document and parses it into the frozen
``billing_config.schema`` dataclasses.  This is internal tooling; the
single public entry point for runtime config is
``billing_config.get_active_config()``.

Invariants enforced
-------------------
* Missing required keys raise ``KeyError``/``ValueError`` with descriptive
  messages; there are no silent defaults for required fields.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Wrong shape (list where a mapping is expected, ...)  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from billing_config.schema import DocumentTypeDef, EngineConfig, NumberingDefaults


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level, got {type(data).__name__}")
    return data


def _strings(value: Any, where: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise ValueError(f"{where}: expected a list of strings, got {value!r}")
    return tuple(str(v) for v in value)


def _mapping(value: Any, where: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{where}: expected a mapping, got {value!r}")
    return value


def parse_numbering(data: dict[str, Any]) -> NumberingDefaults:
    """Parse NumberingDefaults; every key is optional."""
    defaults = NumberingDefaults()
    return NumberingDefaults(
        padding=int(data.get("padding", defaults.padding)),
        reset_policy=str(data.get("reset_policy", defaults.reset_policy)),
        fiscal_start_month=int(data.get("fiscal_start_month", defaults.fiscal_start_month)),
        default_branch_prefix=str(data.get("default_branch_prefix", defaults.default_branch_prefix)),
    )


def parse_document_type(name: str, data: dict[str, Any]) -> DocumentTypeDef:
    """
    Parse a ``DocumentTypeDef`` from its YAML mapping.

    ``prefix`` and ``party_kind`` are required.
    """
    where = f"document_types.{name}"
    data = _mapping(data, where)
    transitions = _mapping(data.get("transitions"), f"{where}.transitions")
    parent_status = _mapping(data.get("parent_status_on_create"), f"{where}.parent_status_on_create")
    receipt_statuses = _mapping(data.get("receipt_statuses"), f"{where}.receipt_statuses")
    return DocumentTypeDef(
        name=name,
        prefix=str(data["prefix"]),
        party_kind=str(data["party_kind"]),
        kind=str(data.get("kind", "standard")),
        inventory_effect=str(data.get("inventory_effect", "none")),
        ledger_side=str(data.get("ledger_side", "none")),
        initial_status=str(data.get("initial_status", "draft")),
        selectable_statuses=_strings(data.get("selectable_statuses"), f"{where}.selectable_statuses"),
        transitions=tuple(
            (str(source), _strings(targets, f"{where}.transitions.{source}"))
            for source, targets in sorted(transitions.items())
        ),
        locked_statuses=_strings(data.get("locked_statuses"), f"{where}.locked_statuses"),
        lock_when_paid=bool(data.get("lock_when_paid", False)),
        editable_statuses=_strings(data.get("editable_statuses"), f"{where}.editable_statuses"),
        parent_types=_strings(data.get("parent_types"), f"{where}.parent_types"),
        requires_parent=bool(data.get("requires_parent", False)),
        parent_status_on_create=tuple(
            (str(parent), str(status)) for parent, status in sorted(parent_status.items())
        ),
        skip_inventory_for_parent_types=_strings(
            data.get("skip_inventory_for_parent_types"),
            f"{where}.skip_inventory_for_parent_types",
        ),
        voiding_statuses=_strings(data.get("voiding_statuses"), f"{where}.voiding_statuses"),
        holding_statuses=_strings(data.get("holding_statuses"), f"{where}.holding_statuses"),
        note_open_status=data.get("note_open_status"),
        note_settled_status=data.get("note_settled_status"),
        tracks_payment=bool(data.get("tracks_payment", False)),
        tracks_receipts=bool(data.get("tracks_receipts", False)),
        receipt_statuses=tuple(
            (str(stage), str(status)) for stage, status in sorted(receipt_statuses.items())
        ),
        allocates_to=data.get("allocates_to"),
        can_apply_advance=bool(data.get("can_apply_advance", False)),
    )


def parse_config(data: dict[str, Any], source_path: str | None = None) -> EngineConfig:
    """
    Parse the whole configuration document.

    Postconditions:
        - ``checksum`` is computed over the raw document, so any edit to the
          YAML changes it.
    """
    types = _mapping(data.get("document_types"), "document_types")
    if not types:
        raise ValueError("document_types: at least one document type is required")
    return EngineConfig(
        config_id=str(data["config_id"]),
        version=int(data.get("version", 1)),
        checksum=compute_checksum(data),
        money_places=int(data.get("money_places", 2)),
        numbering=parse_numbering(_mapping(data.get("numbering"), "numbering")),
        document_types=tuple(parse_document_type(name, types[name]) for name in types),
        source_path=source_path,
    )


def load_config(path: Path) -> EngineConfig:
    """Load and parse a configuration file (no validation)."""
    return parse_config(load_yaml_file(path), source_path=str(path))


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
