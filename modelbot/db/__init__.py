"""Database access layer (DAL) for the model nations bot.

This sub-package owns the single SQLite connection and gives the rest of
the bot retrying, transactional access to it through ``DatabaseManager``.
"""

from .errors import DataAccessError, DatabaseError
from .manager import DatabaseManager
from .models import DatabaseErrorType, ErrorSeverity, Health, OperationContext, RetryConfig

__all__ = [
    "DataAccessError",
    "DatabaseError",
    "DatabaseErrorType",
    "DatabaseManager",
    "ErrorSeverity",
    "Health",
    "OperationContext",
    "RetryConfig",
]
