"""
billing_services -- Package init and public API.

Responsibility:
    Request-scoped orchestration over the billing kernel.  Builds the policy
    table from configuration and exposes the engine operations through
    ``DocumentEngine``.

Architecture position:
    Services -- top layer.

    Dependency direction (enforced by tests/architecture/test_kernel_boundary.py):
        billing_services/ -> billing_kernel/   (allowed)
        billing_services/ -> billing_config/   (allowed)
        billing_config/   -> billing_kernel/   (allowed, bridges only)
        billing_kernel/   -> billing_services/ (FORBIDDEN)
        billing_kernel/   -> billing_config/   (FORBIDDEN)
"""

from billing_services.document_engine import DocumentEngine

__all__ = ["DocumentEngine"]
