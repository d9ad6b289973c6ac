"""
Kernel Boundary Contract.

Tests that enforce the layering of the document engine:

1. billing_kernel/** may NOT import billing_config or billing_services.
   The kernel never depends upward.

2. billing_config/** may import the kernel (bridges only) but never
   billing_services.

3. The append-only row classes (InventoryMovement, LedgerEntry,
   AdvanceEntry) are written by the two ledger services only.  Every
   other kernel module goes through them, so counters and logs cannot
   drift apart.

4. Every append-only model is guarded by the immutability listeners.

These tests read source code via AST -- they cannot break anything.
"""

import ast
import glob
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[2]

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _python_files(root: str) -> list[str]:
    """Return all .py files under root, relative to the repository root."""
    return sorted(
        str(Path(p).relative_to(REPO_ROOT))
        for p in glob.glob(str(REPO_ROOT / root / "**" / "*.py"), recursive=True)
    )


def _is_test_file(path: str) -> bool:
    return "test_" in path or "/tests/" in path or "conftest" in path


def _parse(filepath: str) -> ast.AST:
    return ast.parse((REPO_ROOT / filepath).read_text(), filename=filepath)


def _extract_imports(filepath: str) -> list[tuple[int, str]]:
    """Extract (line_number, module_string) for all imports in a file."""
    results: list[tuple[int, str]] = []
    for node in ast.walk(_parse(filepath)):
        if isinstance(node, ast.Import):
            for alias in node.names:
                results.append((node.lineno, alias.name))
        elif isinstance(node, ast.ImportFrom):
            if node.module:
                results.append((node.lineno, node.module))
    return results


def _extract_imported_names(filepath: str) -> list[tuple[int, str]]:
    """Extract (line_number, name) for every ``from x import name``."""
    results: list[tuple[int, str]] = []
    for node in ast.walk(_parse(filepath)):
        if isinstance(node, ast.ImportFrom):
            for alias in node.names:
                results.append((node.lineno, alias.name))
    return results


def _violations(root: str, forbidden: tuple[str, ...]) -> list[str]:
    found: list[str] = []
    for filepath in _python_files(root):
        for lineno, module in _extract_imports(filepath):
            for prefix in forbidden:
                if module == prefix or module.startswith(f"{prefix}."):
                    found.append(f"  {filepath}:{lineno} imports '{module}'")
    return found


# ---------------------------------------------------------------------------
# Test: Kernel has no upward dependencies
# ---------------------------------------------------------------------------


class TestKernelNoUpwardDependencies:
    """billing_kernel/** must not import billing_config or billing_services."""

    FORBIDDEN_PREFIXES = (
        "billing_config",
        "billing_services",
    )

    def test_kernel_does_not_import_forbidden_packages(self):
        violations = _violations("billing_kernel", self.FORBIDDEN_PREFIXES)

        assert not violations, (
            "Kernel boundary violation -- billing_kernel/** must not import "
            "upward packages:\n" + "\n".join(violations)
        )

    def test_kernel_files_were_found(self):
        assert len(_python_files("billing_kernel")) > 10


class TestConfigBoundary:
    """billing_config/** sits below the services layer."""

    def test_config_does_not_import_services(self):
        violations = _violations("billing_config", ("billing_services",))

        assert not violations, (
            "Config boundary violation -- billing_config/** must not import "
            "billing_services:\n" + "\n".join(violations)
        )

    def test_only_bridges_touch_the_kernel(self):
        importers = {
            filepath
            for filepath in _python_files("billing_config")
            for _, module in _extract_imports(filepath)
            if module.startswith("billing_kernel")
        }

        assert importers <= {"billing_config/bridges.py"}


# ---------------------------------------------------------------------------
# Test: Append-only rows have exactly one writer each
# ---------------------------------------------------------------------------


class TestAppendOnlyWriters:
    APPEND_ONLY_CLASSES = ("InventoryMovement", "LedgerEntry", "AdvanceEntry")

    ALLOWED_IMPORTERS = (
        "billing_kernel/models/",
        "billing_kernel/db/immutability.py",
        "billing_kernel/selectors/",
        "billing_kernel/services/inventory_ledger.py",
        "billing_kernel/services/balance_ledger.py",
    )

    def test_only_ledger_services_import_append_only_models(self):
        violations: list[str] = []

        for root in ("billing_kernel", "billing_services", "billing_config"):
            for filepath in _python_files(root):
                if filepath.startswith(self.ALLOWED_IMPORTERS):
                    continue
                for lineno, name in _extract_imported_names(filepath):
                    if name in self.APPEND_ONLY_CLASSES:
                        violations.append(f"  {filepath}:{lineno} imports '{name}'")

        assert not violations, (
            "Append-only rows must be written through InventoryLedger or "
            "BalanceLedger:\n" + "\n".join(violations)
        )

    def test_listeners_cover_every_append_only_model(self):
        from billing_kernel.db.immutability import _protected_models

        protected = {model.__name__ for model in _protected_models()}

        assert protected == set(self.APPEND_ONLY_CLASSES)
