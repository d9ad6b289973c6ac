"""
CompensationStack -- step runner with manual undo for multi-table writes.

Responsibility:
    Runs each step of a document operation inside its own SAVEPOINT and
    remembers how to undo it.  When a later step fails the already-applied
    steps are compensated in reverse order.

Architecture position:
    Kernel > Services -- imperative shell infrastructure used by
    DocumentComposer.

Invariants enforced:
    - A failed step leaves no partial writes: its savepoint is rolled back
      before the error propagates, so the session stays usable.
    - SQLAlchemy errors raised by a step surface as PersistenceFailureError
      naming the step, chained to the driver error.
    - Compensation never masks the original error.  Each undo that fails is
      logged as ``compensation_failed`` and attached to the original
      exception as a note; unwinding continues with the next undo.
"""

from typing import Any, Callable, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_kernel.exceptions import PersistenceFailureError
from billing_kernel.logging_config import get_logger

logger = get_logger("services.compensation")

T = TypeVar("T")


class CompensationStack:
    """
    Ordered undo log for one operation.

    Usage:
        stack = CompensationStack(session, "create_document")
        try:
            number = stack.run("allocate_number", allocate, undo=release)
            ...
        except Exception as exc:
            stack.unwind(exc)
            raise
    """

    def __init__(self, session: Session, operation: str):
        self.session = session
        self.operation = operation
        self._undo: list[tuple[str, Callable[[Any], Any], Any]] = []

    def __len__(self) -> int:
        return len(self._undo)

    @property
    def applied_steps(self) -> tuple[str, ...]:
        return tuple(step for step, _, _ in self._undo)

    def run(
        self,
        step: str,
        action: Callable[[], T],
        undo: Callable[[T], Any] | None = None,
    ) -> T:
        """
        Execute ``action`` in a savepoint and register ``undo(result)``.

        Raises:
            PersistenceFailureError: The step failed in the storage layer.
            Any other exception raised by ``action`` unchanged.
        """
        savepoint = self.session.begin_nested()
        try:
            result = action()
            self.session.flush()
        except SQLAlchemyError as exc:
            if savepoint.is_active:
                savepoint.rollback()
            logger.error(
                "step_persistence_failed",
                extra={"operation": self.operation, "step": step, "detail": str(exc)},
            )
            raise PersistenceFailureError(step, str(exc)) from exc
        except Exception:
            if savepoint.is_active:
                savepoint.rollback()
            raise
        savepoint.commit()
        if undo is not None:
            self._undo.append((step, undo, result))
        logger.debug("step_applied", extra={"operation": self.operation, "step": step})
        return result

    def unwind(self, error: BaseException) -> list[str]:
        """
        Undo every applied step, newest first.

        Returns:
            Names of the steps whose compensation failed.
        """
        if not self._undo:
            return []
        logger.warning(
            "compensation_started",
            extra={
                "operation": self.operation,
                "steps": list(self.applied_steps),
                "error_type": type(error).__name__,
            },
        )
        failed: list[str] = []
        while self._undo:
            step, undo, result = self._undo.pop()
            savepoint = self.session.begin_nested()
            try:
                undo(result)
                self.session.flush()
            except Exception as exc:  # reported on the original error below
                if savepoint.is_active:
                    savepoint.rollback()
                failed.append(step)
                logger.error(
                    "compensation_failed",
                    exc_info=True,
                    extra={"operation": self.operation, "step": step},
                )
                error.add_note(f"compensation of step '{step}' failed: {exc!r}")
                continue
            savepoint.commit()
            logger.info(
                "compensation_applied",
                extra={"operation": self.operation, "step": step},
            )
        return failed

    def clear(self) -> None:
        """Forget the undo log once the operation has succeeded."""
        self._undo.clear()
