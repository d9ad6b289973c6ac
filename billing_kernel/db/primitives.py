"""
Module: billing_kernel.db.primitives
Responsibility: Storage primitives the services build on that are not
    expressible through plain ORM attribute assignment.
Architecture position: Kernel > DB.

compare_and_swap() is a single conditional UPDATE:

    UPDATE <table> SET <new values>
     WHERE <key columns> = <key> AND <guarded columns> = <expected>

It reports whether exactly one row matched.  It is portable across
PostgreSQL and SQLite because it relies only on statement atomicity, not on
isolation level.  The ORM identity map is NOT synchronized; callers that keep
the instance around must refresh it.
"""

from typing import Any, Mapping

from sqlalchemy import update
from sqlalchemy.orm import Session


def compare_and_swap(
    session: Session,
    model: type,
    key: Mapping[str, Any],
    expected: Mapping[str, Any],
    new_values: Mapping[str, Any],
) -> bool:
    """
    Atomically replace ``new_values`` on the row identified by ``key`` iff
    every column in ``expected`` still holds the expected value.

    Args:
        session: Session whose transaction the UPDATE joins.
        model: Mapped class owning the table.
        key: Column name -> value identifying the row.
        expected: Column name -> value that must be current.
        new_values: Column name -> value to write.

    Returns:
        True if the row was updated, False if another writer got there first
        (or the row does not exist).
    """
    conditions = [getattr(model, name) == value for name, value in key.items()]
    conditions.extend(
        getattr(model, name) == value for name, value in expected.items()
    )
    stmt = (
        update(model)
        .where(*conditions)
        .values(**new_values)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    return result.rowcount == 1
