"""
billing_config -- single public entrypoint for document engine configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  Returns an ``EngineConfig``; the bridges turn
    it into the kernel's ``PolicyTable``.  YAML loading is internal tooling
    and never exposed to callers.

Architecture position:
    Configuration -- sits above ``billing_kernel`` and below
    ``billing_services``.  The kernel MUST NEVER import from
    ``billing_config``.

Invariants enforced:
    - Single entrypoint: all runtime config flows through ``get_active_config()``.
    - Validation before use: a configuration with validation errors is
      never returned.
    - Deterministic identity: the same YAML always yields the same checksum.

Failure modes:
    - ``FileNotFoundError`` -- the configuration file does not exist.
    - ``ValueError`` -- shape or structural validation failures.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``BILLING_CONFIG_TRACE`` log entry with the config_id, version,
    checksum and document type count.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from billing_config.loader import load_config
from billing_config.schema import DocumentTypeDef, EngineConfig, NumberingDefaults
from billing_config.validator import ConfigValidationResult, validate_configuration

_logger = logging.getLogger("billing_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"
CONFIG_PATH_ENV = "BILLING_CONFIG_PATH"


def get_active_config(config_path: Path | str | None = None) -> EngineConfig:
    """The ONLY public configuration entrypoint.

    Resolution order of the source file: the ``config_path`` argument, the
    ``BILLING_CONFIG_PATH`` environment variable, then the packaged
    ``defaults.yaml``.

    Guarantees:
        - The returned config has passed ``validate_configuration``.
        - Warnings are logged, not raised.
        - A ``BILLING_CONFIG_TRACE`` log entry is emitted on every
          successful call.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is malformed or validation fails.
    """
    path = Path(config_path or os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)
    config = load_config(path)

    validation = validate_configuration(config)
    if not validation.is_valid:
        raise ValueError(
            "Configuration validation failed:\n"
            + "\n".join(f"  - {e}" for e in validation.errors)
        )
    for warning in validation.warnings:
        _logger.warning("config_warning", extra={"config_id": config.config_id, "detail": warning})

    _logger.info(
        "BILLING_CONFIG_TRACE",
        extra={
            "trace_type": "BILLING_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "source_path": config.source_path,
            "document_type_count": len(config.document_types),
        },
    )
    return config


__all__ = [
    "ConfigValidationResult",
    "DocumentTypeDef",
    "EngineConfig",
    "NumberingDefaults",
    "get_active_config",
    "validate_configuration",
]
