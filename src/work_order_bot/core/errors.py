"""Error taxonomy and the structured result returned by lifecycle operations."""

import functools
import logging
import sqlite3
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    INVALID_STATE = "INVALID_STATE"
    VALIDATION = "VALIDATION"
    STORE_FAILURE = "STORE_FAILURE"


class TrackerError(Exception):
    """Base class for expected work order failures."""

    kind = ErrorKind.STORE_FAILURE

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(TrackerError):
    kind = ErrorKind.NOT_FOUND


class PermissionDenied(TrackerError):
    kind = ErrorKind.PERMISSION_DENIED


class InvalidState(TrackerError):
    kind = ErrorKind.INVALID_STATE


class ValidationError(TrackerError):
    kind = ErrorKind.VALIDATION


class StoreFailure(TrackerError):
    kind = ErrorKind.STORE_FAILURE


@dataclass
class Result:
    ok: bool
    value: object = None
    error: ErrorKind | None = None
    message: str | None = None

    @classmethod
    def success(cls, value=None) -> "Result":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: ErrorKind, message: str) -> "Result":
        return cls(ok=False, error=error, message=message)

    @property
    def work_order(self):
        return self.value if self.ok else None


def as_result(failure_message: str):
    """Run an operation that takes a connection first and wrap its outcome in a Result.

    Expected failures (TrackerError) become a failure Result with their kind.
    Database errors are logged, rolled back and reported as a generic
    STORE_FAILURE carrying ``failure_message``.
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(db: sqlite3.Connection, *args, **kwargs) -> Result:
            try:
                return Result.success(func(db, *args, **kwargs))
            except TrackerError as e:
                return Result.failure(e.kind, e.message)
            except sqlite3.Error:
                logger.exception("Store failure in %s", func.__name__)
                db.rollback()
                return Result.failure(ErrorKind.STORE_FAILURE, failure_message)

        return wrapper

    return decorator
