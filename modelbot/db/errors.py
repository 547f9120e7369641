"""Typed exceptions and failure classification for the data-access layer.

Transient store conditions are recognised from SQLite's native result codes
(``sqlite3.Error.sqlite_errorcode``). Message matching is only used for
errors that carry no code, such as failures raised by test doubles or by
the driver before a statement reaches SQLite.
"""

from __future__ import annotations

import enum
from typing import Iterator, Optional

from .models import DatabaseErrorType


class DatabaseError(Exception):
    """Base exception for database-related errors."""


class DatabaseConnectionError(DatabaseError):
    """The physical connection could not be opened or was lost."""


class ConnectionUnavailableError(DatabaseConnectionError):
    """No validated connection is available to hand out."""

    def __init__(self, message: str = "Database connection is not available or unhealthy") -> None:
        super().__init__(message)


class ReconnectFailedError(DatabaseConnectionError):
    """Every reconnection attempt failed."""

    def __init__(self, attempts: int, last_error: Optional[BaseException]) -> None:
        super().__init__(f"Database reconnection failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class OperationFailedError(DatabaseError):
    """A unit of work failed and will not be retried any further."""

    label = "Operation"

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{self.label} failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class TransactionFailedError(OperationFailedError):
    """A transactional unit of work was rolled back and will not be retried."""

    label = "Transaction"


class TransactionTimeoutError(DatabaseError):
    """The caller stopped waiting for a transaction.

    The transaction itself may still be running; it commits or rolls back on
    its own.
    """

    def __init__(self, timeout_ms: float) -> None:
        super().__init__(f"Transaction timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class BackupError(DatabaseError):
    """Exception for backup-related errors."""


class DataAccessError(DatabaseError):
    """The only failure the facade lets escape to its callers.

    Carries a message that is safe to show to chat users and an id that
    correlates with the detailed error record in the logs.
    """

    def __init__(self, user_message: str, error_id: str, error_type: DatabaseErrorType) -> None:
        super().__init__(f"{user_message} (Error ID: {error_id})")
        self.user_message = user_message
        self.error_id = error_id
        self.error_type = error_type


class StoreErrorCode(enum.IntEnum):
    """SQLite primary result codes."""

    ERROR = 1
    INTERNAL = 2
    PERM = 3
    ABORT = 4
    BUSY = 5
    LOCKED = 6
    NOMEM = 7
    READONLY = 8
    INTERRUPT = 9
    IOERR = 10
    CORRUPT = 11
    NOTFOUND = 12
    FULL = 13
    CANTOPEN = 14
    PROTOCOL = 15
    EMPTY = 16
    SCHEMA = 17
    TOOBIG = 18
    CONSTRAINT = 19
    MISMATCH = 20
    MISUSE = 21
    NOLFS = 22
    AUTH = 23
    FORMAT = 24
    RANGE = 25
    NOTADB = 26


RETRYABLE_CODES = frozenset({StoreErrorCode.BUSY, StoreErrorCode.LOCKED, StoreErrorCode.IOERR})
CORRUPTION_CODES = frozenset({StoreErrorCode.CORRUPT, StoreErrorCode.NOTADB})

RETRYABLE_PATTERNS = (
    "database is locked",
    "database is busy",
    "disk i/o error",
    "temporary failure",
    "connection lost",
    "sqlite_busy",
    "sqlite_locked",
    "sqlite_ioerr",
)


def iter_causes(error: BaseException) -> Iterator[BaseException]:
    """Yield ``error`` followed by the errors it wraps, outermost first."""
    seen = set()
    current: Optional[BaseException] = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        wrapped = getattr(current, "last_error", None)
        current = wrapped if isinstance(wrapped, BaseException) else current.__cause__


def root_cause(error: BaseException) -> BaseException:
    """Return the innermost error in the chain."""
    for current in iter_causes(error):
        last = current
    return last


def store_error_code(error: BaseException) -> Optional[StoreErrorCode]:
    """Return the SQLite primary result code carried anywhere in the chain."""
    for current in iter_causes(error):
        code = getattr(current, "sqlite_errorcode", None)
        if isinstance(code, int):
            try:
                return StoreErrorCode(code & 0xFF)
            except ValueError:
                return None
    return None


def store_error_name(error: BaseException) -> Optional[str]:
    """Return the extended SQLite error name, e.g. ``SQLITE_CONSTRAINT_FOREIGNKEY``."""
    for current in iter_causes(error):
        name = getattr(current, "sqlite_errorname", None)
        if name:
            return name
    code = store_error_code(error)
    return f"SQLITE_{code.name}" if code is not None else None


def is_retryable_error(error: BaseException) -> bool:
    """Return True for transient failures that are safe to re-attempt."""
    code = store_error_code(error)
    if code is not None:
        return code in RETRYABLE_CODES
    message = str(error).lower()
    return any(pattern in message for pattern in RETRYABLE_PATTERNS)


def is_connection_unavailable(error: BaseException) -> bool:
    """Return True when the chain ends in a missing or unhealthy connection."""
    return any(isinstance(e, ConnectionUnavailableError) for e in iter_causes(error))
