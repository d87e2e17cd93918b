import logging
from typing import Callable, List, Tuple

from errors import ConsistencyError, InternalError, ServiceError

logger = logging.getLogger(__name__)


class Compensations:
    """Undo steps for a multi-document operation, run newest first.

    Used as a context manager: an exception inside the block rolls back every
    registered step. The original error propagates when the rollback is
    clean; otherwise a ``ConsistencyError`` naming the failed steps does.
    Storage errors are reported as ``InternalError``.
    """

    def __init__(self, operation: str):
        self.operation = operation
        self._steps: List[Tuple[str, Callable[[], object]]] = []

    def __enter__(self) -> "Compensations":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is None or not isinstance(exc, Exception):
            return False
        error = self.abort(exc)
        if error is exc:
            return False
        raise error from exc

    def add(self, label: str, undo: Callable[[], object]) -> None:
        self._steps.append((label, undo))

    def clear(self) -> None:
        self._steps = []

    def rollback(self) -> List[str]:
        failed = []
        while self._steps:
            label, undo = self._steps.pop()
            try:
                undo()
            except Exception:
                logger.exception("%s: compensation step %r failed", self.operation, label)
                failed.append(label)
        return failed

    def abort(self, error: Exception) -> ServiceError:
        """Roll back and return the error the caller should raise."""
        failed = self.rollback()
        if failed:
            logger.error("%s left inconsistent records, failed steps: %s", self.operation, ", ".join(failed))
            return ConsistencyError(
                f"{self.operation} failed and could not be fully rolled back",
                fields=[{"name": label, "message": "compensation failed"} for label in failed],
            )
        if isinstance(error, ServiceError):
            return error
        logger.error("%s failed and was rolled back: %r", self.operation, error)
        return InternalError(str(error))
