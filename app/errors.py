"""
Error taxonomy shared by the service layer and the transport adapter.

Every failure a service function can report is a ``ServiceError`` tagged
with one of four kinds.  The routers never translate errors themselves;
a single exception handler in ``app.main`` maps ``kind`` to a status code.
"""
import functools
import logging
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    STORAGE_FAILURE = "storage_failure"


class ServiceError(Exception):
    kind: ErrorKind
    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": {"kind": self.kind.value, "message": self.message}}


class NotFoundError(ServiceError):
    """No row matches a lookup key."""

    kind = ErrorKind.NOT_FOUND
    status_code = 404


class ForbiddenError(ServiceError):
    """The viewer attempted to mutate a resource they do not own."""

    kind = ErrorKind.FORBIDDEN
    status_code = 403


class ConflictError(ServiceError):
    """A uniqueness constraint was violated (e.g. a duplicate favorite)."""

    kind = ErrorKind.CONFLICT
    status_code = 409


class StorageError(ServiceError):
    """
    Any driver, I/O or pool failure.

    ``operation`` names the service call that failed so callers can decide
    whether to retry the whole operation from scratch.
    """

    kind = ErrorKind.STORAGE_FAILURE
    status_code = 503

    def __init__(self, operation: str, message: str | None = None) -> None:
        super().__init__(message or f"storage failure during {operation}")
        self.operation = operation


def guard_storage(operation: str):
    """
    Decorate an async service function so that raw SQLAlchemy errors leave
    it as ``StorageError`` chained to the original exception.

    ``ServiceError`` subclasses raised inside the function pass through
    unchanged.
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except SQLAlchemyError as exc:
                logger.error("Storage failure in %s: %s", operation, exc)
                raise StorageError(operation) from exc

        return wrapper

    return decorator
