"""
Fiscal years and document number formatting.

Responsibility:
    Pure helpers for the April-March fiscal year and the human-readable
    document number ``{BRANCH}-{TYPE_PREFIX}{NUMBER}/{FY_SHORT}``.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Examples:
    >>> fiscal_year_for(date(2024, 4, 1))
    '2024-2025'
    >>> fiscal_year_for(date(2025, 3, 31))
    '2024-2025'
    >>> format_document_number("HQ", "INV-", 4, 4, "2024-2025")
    'HQ-INV-0004/24'
"""

from datetime import date

DEFAULT_FISCAL_START_MONTH = 4
DEFAULT_PADDING = 4
DEFAULT_BRANCH_PREFIX = "BR"


def fiscal_year_for(
    day: date,
    start_month: int = DEFAULT_FISCAL_START_MONTH,
) -> str:
    """
    Return the fiscal year containing ``day`` as ``"YYYY-YYYY"``.

    A date on or after the first day of ``start_month`` belongs to the year
    starting that calendar year; earlier dates to the year before.
    """
    if not 1 <= start_month <= 12:
        raise ValueError(f"start_month must be 1..12, got {start_month}")
    start_year = day.year if day.month >= start_month else day.year - 1
    if start_month == 1:
        return f"{start_year}-{start_year}"
    return f"{start_year}-{start_year + 1}"


def fiscal_year_start(fiscal_year: str) -> int:
    """Calendar year the fiscal year starts in."""
    head, _, _ = fiscal_year.partition("-")
    if len(head) != 4 or not head.isdigit():
        raise ValueError(f"Malformed fiscal year: {fiscal_year!r}")
    return int(head)


def fiscal_year_short(fiscal_year: str) -> str:
    """Two-digit form used in document numbers: ``"2024-2025"`` -> ``"24"``."""
    return f"{fiscal_year_start(fiscal_year) % 100:02d}"


def format_document_number(
    branch_prefix: str | None,
    type_prefix: str,
    number: int,
    padding: int,
    fiscal_year: str,
    default_branch_prefix: str = DEFAULT_BRANCH_PREFIX,
) -> str:
    """Render a document number.  Numbers wider than the padding are kept whole."""
    if number < 1:
        raise ValueError(f"Document numbers start at 1, got {number}")
    branch = (branch_prefix or "").strip() or default_branch_prefix
    return (
        f"{branch}-{type_prefix}{str(number).zfill(padding)}"
        f"/{fiscal_year_short(fiscal_year)}"
    )
